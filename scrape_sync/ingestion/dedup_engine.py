"""
Dedup/upsert engine: at most one stored row per (identifier, vendor).

An incoming transaction is saved when new, updated (changed fields only) when a
stored row differs on price, category, status or installments, and counted as a
duplicate otherwise.
"""

import hashlib
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from scrape_sync.constants import BANK_VENDORS, TransactionType, UpsertOutcome
from scrape_sync.ingestion.category_cache import normalize_name
from scrape_sync.ingestion.category_resolver import may_replace_category
from scrape_sync.models import CategoryResolution, ScrapedTransaction, Transaction
from scrape_sync.utils import metrics
from scrape_sync.utils.errors import PersistenceError
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)


class UpsertResult(BaseModel):
    """Classification of one write"""

    outcome: UpsertOutcome
    identifier: str
    changed_fields: List[str] = Field(default_factory=list)
    error: Optional[str] = None


def is_bank_vendor(vendor: str) -> bool:
    return vendor in BANK_VENDORS


def generate_identifier(vendor: str, account_number: Optional[str], scraped: ScrapedTransaction) -> str:
    """Deterministic identifier for scrapers that supply none"""
    price = scraped.price.quantize(Decimal("0.01"))
    unique = "|".join([
        vendor,
        account_number or "",
        scraped.date.isoformat(),
        normalize_name(scraped.description),
        str(price),
    ])
    return hashlib.sha256(unique.encode("utf-8")).hexdigest()[:40]


def normalize_transaction(
    scraped: ScrapedTransaction,
    vendor: str,
    account_number: Optional[str],
    resolution: CategoryResolution,
) -> Transaction:
    """Stored form of a scraped transaction"""
    installments = scraped.installments
    return Transaction(
        identifier=scraped.identifier or generate_identifier(vendor, account_number, scraped),
        vendor=vendor,
        date=scraped.date,
        processed_date=scraped.processed_date or scraped.date,
        name=scraped.description,
        price=scraped.price,
        category=resolution.category,
        category_source=resolution.source,
        rule_matched=resolution.rule_matched,
        account_number=account_number,
        installments_number=installments.number if installments else None,
        installments_total=installments.total if installments else None,
        original_amount=scraped.original_amount,
        original_currency=scraped.original_currency,
        charged_currency=scraped.charged_currency,
        memo=scraped.memo,
        status=scraped.status or "completed",
        type=scraped.type,
        transaction_type=TransactionType.BANK if is_bank_vendor(vendor) else TransactionType.CREDIT_CARD,
    )


class DedupEngine:
    """Conflict-aware writer used for every ingested transaction"""

    def __init__(self, store, update_category_on_rescrape: bool = False):
        self.store = store
        self.update_category_on_rescrape = update_category_on_rescrape

    async def upsert(self, txn: Transaction, derived_identifier: bool = False) -> UpsertResult:
        """
        Write one transaction.

        Args:
            txn: Normalized transaction
            derived_identifier: True when the identifier was generated locally,
                which enables the business-key lookup for shifted dates

        Returns:
            UpsertResult; PersistenceError is reported as outcome FAILED
        """
        try:
            result = await self._upsert(txn, derived_identifier)
        except PersistenceError as e:
            logger.error(f"Failed to persist transaction: {e.message}",
                         identifier=txn.identifier, vendor=txn.vendor)
            result = UpsertResult(outcome=UpsertOutcome.FAILED, identifier=txn.identifier, error=e.message)

        metrics.transactions_ingested.labels(vendor=txn.vendor, outcome=result.outcome.value).inc()
        return result

    async def _upsert(self, txn: Transaction, derived_identifier: bool) -> UpsertResult:
        existing = await self.store.get_transaction(txn.identifier, txn.vendor)

        if existing is None and derived_identifier:
            existing = await self._find_by_business_key(txn)

        if existing is None and (txn.installments_total or 0) > 1:
            if await self._has_full_purchase(txn):
                logger.info("Installment matches an earlier full purchase, skipping",
                            vendor=txn.vendor, name=txn.name, date=txn.date)
                return UpsertResult(outcome=UpsertOutcome.DUPLICATE, identifier=txn.identifier)

        if existing is None:
            if await self.store.insert_transaction(txn):
                return UpsertResult(outcome=UpsertOutcome.SAVED, identifier=txn.identifier)
            # Row appeared between lookup and insert
            existing = await self.store.get_transaction(txn.identifier, txn.vendor)
            if existing is None:
                raise PersistenceError(f"Insert of {txn.identifier} was ignored but no row exists")

        changes = self.diff(existing, txn)
        if not changes:
            return UpsertResult(outcome=UpsertOutcome.DUPLICATE, identifier=existing.identifier)

        await self.store.update_transaction_fields(existing.identifier, txn.vendor, changes)
        logger.info("Updated transaction on re-scrape", identifier=existing.identifier,
                    vendor=txn.vendor, fields=sorted(changes))
        return UpsertResult(outcome=UpsertOutcome.UPDATED, identifier=existing.identifier,
                            changed_fields=sorted(changes))

    def diff(self, existing: Transaction, incoming: Transaction) -> Dict[str, Any]:
        """Fields to write on the stored row; empty means duplicate"""
        changes: Dict[str, Any] = {}

        if existing.price != incoming.price:
            changes["price"] = incoming.price
        if incoming.status and incoming.status != existing.status:
            changes["status"] = incoming.status
        for field in ("installments_number", "installments_total"):
            value = getattr(incoming, field)
            if value is not None and value != getattr(existing, field):
                changes[field] = value

        resolution = CategoryResolution(
            category=incoming.category,
            source=incoming.category_source,
            rule_matched=incoming.rule_matched,
        )
        if may_replace_category(existing, resolution, self.update_category_on_rescrape):
            changes["category"] = incoming.category
            changes["category_source"] = incoming.category_source
            changes["rule_matched"] = incoming.rule_matched

        return changes

    async def _find_by_business_key(self, txn: Transaction) -> Optional[Transaction]:
        candidates = await self.store.find_transactions_near(txn.vendor, txn.name, txn.date)
        for row in candidates:
            if abs(row.price) == abs(txn.price) and (row.account_number or "") == (txn.account_number or ""):
                logger.debug("Matched stored row by business key",
                             identifier=row.identifier, vendor=txn.vendor)
                return row
        return None

    async def _has_full_purchase(self, txn: Transaction) -> bool:
        amount = abs(txn.original_amount if txn.original_amount is not None else txn.price)
        candidates = await self.store.find_transactions_near(txn.vendor, txn.name, txn.date)
        for row in candidates:
            if (row.installments_total or 0) > 1:
                continue
            if abs(row.price) == amount or (row.original_amount is not None and abs(row.original_amount) == amount):
                return True
        return False
