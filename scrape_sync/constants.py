"""Constants and enums for the scrape pipeline"""

from enum import Enum


class ScrapeStatus(str, Enum):
    """Scrape audit row status"""
    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CategorySource(str, Enum):
    """How a transaction's category was decided"""
    CACHE = "cache"
    RULE = "rule"
    MAPPING = "mapping"
    SCRAPER = "scraper"


class TransactionType(str, Enum):
    """Derived institution type of a transaction"""
    BANK = "bank"
    CREDIT_CARD = "credit_card"


class UpsertOutcome(str, Enum):
    """Dedup/upsert classification"""
    SAVED = "saved"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class ProgressPhase(str, Enum):
    """Progress phases, in run order"""
    INITIALIZATION = "initialization"
    AUTHENTICATION = "authentication"
    DATA_FETCHING = "data_fetching"
    PROCESSING = "processing"
    SAVING = "saving"
    COMPLETE = "complete"


class EventKind(str, Enum):
    """Progress stream event names"""
    PROGRESS = "progress"
    NETWORK = "network"
    ERROR = "error"
    COMPLETE = "complete"
    # batch sync
    QUEUE = "queue"
    ACCOUNT_START = "account_start"
    ACCOUNT_COMPLETE = "account_complete"
    ACCOUNT_ERROR = "account_error"


TERMINAL_EVENTS = {EventKind.ERROR, EventKind.COMPLETE}

# Vendors
CREDIT_CARD_VENDORS = ['visaCal', 'max', 'isracard', 'amex']
STANDARD_BANK_VENDORS = ['hapoalim', 'leumi', 'mizrahi', 'discount', 'mercantile', 'yahav', 'oneZero']
BEINLEUMI_GROUP_VENDORS = ['otsarHahayal', 'beinleumi', 'massad', 'pagi']
BANK_VENDORS = STANDARD_BANK_VENDORS + BEINLEUMI_GROUP_VENDORS
ALL_VENDORS = CREDIT_CARD_VENDORS + BANK_VENDORS

# Vendors that need longer timeouts
RATE_LIMITED_VENDORS = ['isracard', 'amex', 'max', 'visaCal']

# Scraper-provided category values that mean "no category"
EMPTY_CATEGORY_VALUES = {"", "N/A"}

FALLBACK_BANK_CATEGORY = "Bank"
FALLBACK_INCOME_CATEGORY = "Income"
UNCATEGORIZED = "Uncategorized"

# Default configuration values
DEFAULT_STALE_SCRAPE_MINUTES = 20
DEFAULT_SCRAPER_TIMEOUT_MS = 60000
DEFAULT_RATE_LIMITED_TIMEOUT_MS = 120000
DEFAULT_CATEGORY_CACHE_TTL_SECONDS = 300
DEFAULT_RETENTION_DAYS = 90

# Run state snapshots
RUN_STATE_TTL_SECONDS = 86400  # 24 hours
