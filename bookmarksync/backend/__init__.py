"""Backend capabilities and adapters."""

import logging

from ..config import Config
from ..errors import ConfigurationMissing
from .base import (
    AuthBackend,
    Backend,
    ChangeFeed,
    MutationBackend,
    QueryBackend,
    Subscription,
)
from .memory import MemoryBackend, create_memory_backend

logger = logging.getLogger(__name__)


def create_backend(config: Config) -> Backend:
    """Build the capability bundle described by ``config``.

    Raises:
        ConfigurationMissing: If the backend url or key is not set.
    """
    backend_config = config.backend

    if backend_config.kind == "memory":
        backend, _ = create_memory_backend(table=backend_config.table)
        logger.info("Using in-memory backend")
        return backend

    if not backend_config.is_configured:
        raise ConfigurationMissing(
            "Backend is not configured. Set BOOKMARKSYNC_URL and "
            "BOOKMARKSYNC_ANON_KEY, then restart."
        )

    from .mqtt_feed import MQTTChangeFeed
    from .rest import SupabaseRestBackend

    rest = SupabaseRestBackend(backend_config)
    changes = MQTTChangeFeed(config.realtime)
    logger.info(f"Using backend at {backend_config.url}")
    return Backend(
        auth=rest,
        query=rest,
        mutation=rest,
        changes=changes,
        table=backend_config.table,
    )


__all__ = [
    "AuthBackend",
    "Backend",
    "ChangeFeed",
    "MemoryBackend",
    "MutationBackend",
    "QueryBackend",
    "Subscription",
    "create_backend",
    "create_memory_backend",
]
