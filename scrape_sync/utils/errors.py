"""Custom exceptions for the scrape ingestion pipeline"""

from typing import Optional


class ScrapeSyncError(Exception):
    """Base exception for scrape pipeline errors"""

    error_type = "SCRAPE_ERROR"

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint


class ConcurrencyError(ScrapeSyncError):
    """Another scrape is already running"""

    error_type = "CONCURRENCY_ERROR"


class ValidationError(ScrapeSyncError):
    """Unknown vendor or missing credential fields"""

    error_type = "VALIDATION_ERROR"


class ScraperError(ScrapeSyncError):
    """External scraper raised or reported an unsuccessful result"""

    error_type = "SCRAPER_ERROR"


class PersistenceError(ScrapeSyncError):
    """Database operation errors"""

    error_type = "PERSISTENCE_ERROR"


class FinalizationError(ScrapeSyncError):
    """Terminal audit write or last-synced update failed after processing"""

    error_type = "FINALIZATION_ERROR"


class StateManagerError(ScrapeSyncError):
    """Run state snapshot errors"""

    error_type = "STATE_ERROR"


class ConfigurationError(ScrapeSyncError):
    """Configuration loading errors"""

    error_type = "CONFIGURATION_ERROR"
