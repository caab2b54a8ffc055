"""
Core module initialization.
Exports configuration and logging utilities.
"""

from ordersync.core.config import (
    get_settings,
    setup_logging,
    Settings,
    EnvironmentMode,
    OptimisticFailurePolicy,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "OptimisticFailurePolicy",
]
