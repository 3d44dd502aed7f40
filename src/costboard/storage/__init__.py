"""Storage backends for credentials, cost records and summaries."""

from .base import (
    CostStorage,
    CostSummarySnapshot,
    CredentialStatus,
    ServicePrincipal,
    StorageError,
)
from .memory import MemoryStorage

__all__ = [
    "CostStorage",
    "CostSummarySnapshot",
    "CredentialStatus",
    "MemoryStorage",
    "ServicePrincipal",
    "StorageError",
]
