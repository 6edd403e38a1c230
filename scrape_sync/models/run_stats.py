"""Run statistics accumulated during ingestion"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from scrape_sync.constants import CategorySource, ScrapeStatus, UpsertOutcome


class RunStats(BaseModel):
    """Counters written to the audit row's report_json and the complete event"""

    accounts: int = 0
    transactions: int = 0
    saved_transactions: int = Field(0, alias="savedTransactions")
    duplicate_transactions: int = Field(0, alias="duplicateTransactions")
    updated_transactions: int = Field(0, alias="updatedTransactions")
    bank_transactions: int = Field(0, alias="bankTransactions")
    failed_transactions: int = Field(0, alias="failedTransactions")
    cached_categories: int = Field(0, alias="cachedCategories")
    rule_categories: int = Field(0, alias="ruleCategories")
    mapping_categories: int = Field(0, alias="mappingCategories")
    scraper_categories: int = Field(0, alias="scraperCategories")
    skipped_cards: int = Field(0, alias="skippedCards")
    processed_transactions: List[Dict[str, Any]] = Field(default_factory=list, alias="processedTransactions")
    duration_seconds: Optional[int] = Field(None, alias="durationSeconds")
    cancelled: bool = False

    class Config:
        populate_by_name = True

    def record_category(self, source: Optional[CategorySource]) -> None:
        if source == CategorySource.CACHE:
            self.cached_categories += 1
        elif source == CategorySource.RULE:
            self.rule_categories += 1
        elif source == CategorySource.MAPPING:
            self.mapping_categories += 1
        elif source == CategorySource.SCRAPER:
            self.scraper_categories += 1

    def record_outcome(self, outcome: UpsertOutcome, is_bank: bool) -> None:
        if outcome == UpsertOutcome.SAVED:
            self.saved_transactions += 1
        elif outcome == UpsertOutcome.UPDATED:
            self.updated_transactions += 1
        elif outcome == UpsertOutcome.DUPLICATE:
            self.duplicate_transactions += 1
        elif outcome == UpsertOutcome.FAILED:
            self.failed_transactions += 1

        if is_bank and outcome in (UpsertOutcome.SAVED, UpsertOutcome.UPDATED):
            self.bank_transactions += 1

    def to_report(self) -> Dict[str, Any]:
        """camelCase JSON-safe dict for report_json"""
        return self.model_dump(by_alias=True, mode="json")

    def summary_message(self) -> str:
        return (
            f"fetched={self.transactions}, saved={self.saved_transactions}, "
            f"updated={self.updated_transactions}, duplicates={self.duplicate_transactions}"
        )


class RunOutcome(BaseModel):
    """What a single run ended with"""

    run_id: str
    vendor: str
    status: ScrapeStatus
    audit_id: Optional[int] = None
    stats: RunStats = Field(default_factory=RunStats)
    error_type: Optional[str] = None
    message: str = ""


class BatchOutcome(BaseModel):
    """Result of syncing every active credential"""

    batch_id: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    runs: List[RunOutcome] = Field(default_factory=list)
    error_type: Optional[str] = None
    message: str = ""
