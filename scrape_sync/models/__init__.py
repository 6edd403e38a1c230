"""Data models for the scrape pipeline"""

from .transaction import Transaction, ScrapedTransaction, ScrapedAccount, ScrapeResult
from .scrape_event import ScrapeEvent
from .card_ownership import CardOwnership, OwnershipClaim
from .categorization import CategorizationRule, CategoryMapping, CategoryQuery, CategoryResolution
from .credential import VendorCredential
from .run_stats import RunStats, RunOutcome, BatchOutcome
from .scrape_request import ScrapeRequest, Checkpoint
from .progress import ProgressEvent

__all__ = [
    "Transaction",
    "ScrapedTransaction",
    "ScrapedAccount",
    "ScrapeResult",
    "ScrapeEvent",
    "CardOwnership",
    "OwnershipClaim",
    "CategorizationRule",
    "CategoryMapping",
    "CategoryQuery",
    "CategoryResolution",
    "VendorCredential",
    "RunStats",
    "RunOutcome",
    "BatchOutcome",
    "ScrapeRequest",
    "Checkpoint",
    "ProgressEvent",
]
