"""Cloud provider collectors for Azure, AWS, GCP and MongoDB Atlas."""

# Import collector implementations to register them with CollectorFactory
from . import aws, azure, gcp, mongodb

from .base import (
    ALL_PROVIDERS,
    CloudProviderError,
    CollectorFactory,
    CostCollector,
    CostRecord,
    Provider,
    ProviderSummary,
    SummarySource,
)
