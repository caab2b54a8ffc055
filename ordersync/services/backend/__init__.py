"""
Backend Client Factory

Provides a single entry point for obtaining the backend client the
application wires into its views. Automatically selects the in-memory
backend or the SQL + Redis backend based on ENV_MODE configuration.

Usage:
    from ordersync.services.backend import get_backend_client

    backend = get_backend_client()
    order = await backend.fetch_one("orders", order_id, relations=("order_items",))

Environment Switching:
    - ENV_MODE=development → InMemoryBackendClient (seeded demo data)
    - ENV_MODE=staging → SqlBackendClient
    - ENV_MODE=production → SqlBackendClient

Views never call this factory themselves; the application passes the
client in explicitly.

Version: 1.0.0
"""

import logging
from functools import lru_cache

from ordersync.core.config import get_settings
from ordersync.services.backend.base import (
    BackendError,
    BaseBackendClient,
    ChangeFilter,
    DuplicateRecord,
    RecordNotFound,
    Subscription,
    SubscriptionError,
)
from ordersync.services.backend.memory import InMemoryBackendClient, seed_demo_data

logger = logging.getLogger(__name__)


@lru_cache()
def get_backend_client() -> BaseBackendClient:
    """
    Get the configured backend client instance.

    Returns:
        BaseBackendClient: Configured backend client (cached)
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Backend: Using InMemoryBackendClient (development mode)")
        backend = InMemoryBackendClient()
        seed_demo_data(backend)
        return backend

    # Imported lazily so development mode needs neither driver
    from ordersync.services.backend.sql import create_sql_backend

    logger.info(f"Backend: Using SqlBackendClient ({settings.env_mode.value} mode)")
    return create_sql_backend(settings)


def reset_backend_client() -> None:
    """
    Clear the cached backend client instance.

    Useful for testing or when configuration changes at runtime.
    """
    get_backend_client.cache_clear()
    logger.debug("Backend client cache cleared")


__all__ = [
    "get_backend_client",
    "reset_backend_client",
    "BaseBackendClient",
    "BackendError",
    "DuplicateRecord",
    "RecordNotFound",
    "SubscriptionError",
    "ChangeFilter",
    "Subscription",
    "InMemoryBackendClient",
]
