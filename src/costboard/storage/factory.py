"""Storage backend selection from configuration."""

import logging
from typing import Any

from .base import CostStorage
from .memory import MemoryStorage
from .postgres import PostgresStorage

logger = logging.getLogger(__name__)


def build_storage(config: dict[str, Any]) -> CostStorage:
    """Create the configured storage backend (``memory`` or ``postgres``)."""
    backend = (config.get("backend") or "memory").lower()
    if backend == "postgres":
        database_url = config.get("database_url")
        if not database_url:
            raise ValueError("storage.database_url is required for the postgres backend")
        return PostgresStorage(
            database_url,
            min_size=int(config.get("pool_min_size", 2)),
            max_size=int(config.get("pool_max_size", 10)),
        )
    if backend != "memory":
        raise ValueError(f"Unknown storage backend: {backend}")
    logger.info("Using in-memory storage; data is lost on restart")
    return MemoryStorage()
