"""Utility modules"""

from .config_loader import load_config, save_config
from .errors import (
    ScrapeSyncError,
    ConcurrencyError,
    ValidationError,
    ScraperError,
    PersistenceError,
    FinalizationError,
    StateManagerError,
    ConfigurationError
)

__all__ = [
    "load_config",
    "save_config",
    "ScrapeSyncError",
    "ConcurrencyError",
    "ValidationError",
    "ScraperError",
    "PersistenceError",
    "FinalizationError",
    "StateManagerError",
    "ConfigurationError"
]
