"""Unit tests for the dedup/upsert engine"""

import asyncio
from decimal import Decimal

import pytest

from scrape_sync.constants import CategorySource, TransactionType, UpsertOutcome
from scrape_sync.ingestion import DedupEngine, generate_identifier, normalize_transaction
from scrape_sync.models import CategoryResolution, ScrapedTransaction
from scrape_sync.utils.errors import PersistenceError


def build(raw, vendor="max", account="4580", category=None, source=None):
    scraped = ScrapedTransaction.from_raw(raw)
    resolution = CategoryResolution(category=category, source=source)
    return normalize_transaction(scraped, vendor, account, resolution), scraped.identifier is None


PHARM = {"identifier": "900001", "date": "2025-01-05T22:00:00.000Z", "description": "SUPER-PHARM",
         "chargedAmount": -120.5, "status": "completed"}


def test_upsert_is_idempotent(store):
    """Same transaction twice: saved, then duplicate, one stored row"""
    async def scenario():
        engine = DedupEngine(store)
        txn, derived = build(PHARM, category="Health", source=CategorySource.SCRAPER)
        first = await engine.upsert(txn, derived)
        second = await engine.upsert(txn, derived)
        return first, second, await store.count_transactions()

    first, second, count = asyncio.run(scenario())
    assert first.outcome == UpsertOutcome.SAVED
    assert second.outcome == UpsertOutcome.DUPLICATE
    assert second.changed_fields == []
    assert count == 1


def test_changed_price_is_updated(store):
    """Only the differing field is written"""
    async def scenario():
        engine = DedupEngine(store)
        txn, _ = build(PHARM, category="Health", source=CategorySource.SCRAPER)
        await engine.upsert(txn)
        changed, _ = build({**PHARM, "chargedAmount": -99.9, "status": "pending"},
                           category="Health", source=CategorySource.SCRAPER)
        result = await engine.upsert(changed)
        return result, await store.get_transaction("900001", "max")

    result, row = asyncio.run(scenario())
    assert result.outcome == UpsertOutcome.UPDATED
    assert result.changed_fields == ["price", "status"]
    assert row.price == Decimal("-99.9")
    assert row.status == "pending"
    assert row.category == "Health"


def test_price_comparison_is_exact_decimal(store):
    async def scenario():
        engine = DedupEngine(store)
        txn, _ = build({**PHARM, "chargedAmount": "-120.50"})
        await engine.upsert(txn)
        same, _ = build({**PHARM, "chargedAmount": -120.5})
        return await engine.upsert(same)

    assert asyncio.run(scenario()).outcome == UpsertOutcome.DUPLICATE


def test_blank_category_is_filled_on_rescrape(store):
    async def scenario():
        engine = DedupEngine(store)
        txn, _ = build(PHARM)
        await engine.upsert(txn)
        categorized, _ = build(PHARM, category="Health", source=CategorySource.SCRAPER)
        result = await engine.upsert(categorized)
        return result, await store.get_transaction("900001", "max")

    result, row = asyncio.run(scenario())
    assert result.outcome == UpsertOutcome.UPDATED
    assert row.category == "Health"
    assert row.category_source == CategorySource.SCRAPER


def test_manual_category_preserved_unless_flag(store):
    """category_source 'cache' survives a re-scrape with the flag off"""
    async def scenario():
        txn, _ = build(PHARM, category="Health", source=CategorySource.SCRAPER)
        await DedupEngine(store).upsert(txn)
        await store.set_manual_category("900001", "max", "Pharmacy")

        rescraped, _ = build(PHARM, category="Drugstore", source=CategorySource.RULE)
        kept = await DedupEngine(store, update_category_on_rescrape=False).upsert(rescraped)
        row_kept = await store.get_transaction("900001", "max")

        replaced = await DedupEngine(store, update_category_on_rescrape=True).upsert(rescraped)
        row_replaced = await store.get_transaction("900001", "max")
        return kept, row_kept, replaced, row_replaced

    kept, row_kept, replaced, row_replaced = asyncio.run(scenario())
    assert kept.outcome == UpsertOutcome.DUPLICATE
    assert row_kept.category == "Pharmacy"
    assert row_kept.category_source == CategorySource.CACHE
    assert replaced.outcome == UpsertOutcome.UPDATED
    assert row_replaced.category == "Drugstore"
    assert row_replaced.category_source == CategorySource.RULE


def test_derived_identifier_is_deterministic():
    scraped = ScrapedTransaction.from_raw({"date": "2025-01-03", "description": " Netflix ", "chargedAmount": -49.9})
    same = ScrapedTransaction.from_raw({"date": "2025-01-03", "description": "NETFLIX", "chargedAmount": "-49.90"})
    other = ScrapedTransaction.from_raw({"date": "2025-01-04", "description": "NETFLIX", "chargedAmount": -49.9})

    identifier = generate_identifier("max", "2222", scraped)
    assert len(identifier) == 40
    assert identifier == generate_identifier("max", "2222", same)
    assert identifier != generate_identifier("max", "2222", other)
    assert identifier != generate_identifier("max", "3333", scraped)


def test_business_key_matches_shifted_date(store):
    """A derived-identifier row one day off is the same bank transaction"""
    rent = {"date": "2025-01-03", "description": "STANDING ORDER RENT", "chargedAmount": -5200}

    async def scenario():
        engine = DedupEngine(store)
        txn, derived = build(rent, vendor="hapoalim", account="12-345")
        first = await engine.upsert(txn, derived)
        shifted, derived = build({**rent, "date": "2025-01-04"}, vendor="hapoalim", account="12-345")
        second = await engine.upsert(shifted, derived)
        elsewhere, derived = build({**rent, "date": "2025-01-04"}, vendor="hapoalim", account="99-999")
        third = await engine.upsert(elsewhere, derived)
        return first, second, third, await store.count_transactions("hapoalim")

    first, second, third, count = asyncio.run(scenario())
    assert first.outcome == UpsertOutcome.SAVED
    assert second.outcome == UpsertOutcome.DUPLICATE
    assert second.identifier == first.identifier
    assert third.outcome == UpsertOutcome.SAVED
    assert count == 2


def test_installment_after_full_purchase_is_duplicate(store):
    async def scenario():
        engine = DedupEngine(store)
        full, _ = build({"identifier": "p1", "date": "2025-01-09", "description": "IKEA NETANYA",
                         "chargedAmount": -1200})
        await engine.upsert(full)
        installment, _ = build({"identifier": "p2", "date": "2025-01-10", "description": "IKEA NETANYA",
                                "originalAmount": -1200, "chargedAmount": -400,
                                "installments": {"number": 1, "total": 3}})
        return await engine.upsert(installment), await store.count_transactions()

    result, count = asyncio.run(scenario())
    assert result.outcome == UpsertOutcome.DUPLICATE
    assert count == 1


def test_normalize_transaction_fields():
    txn, derived = build({"date": "2025-01-02", "description": "SALARY", "chargedAmount": 15000,
                          "installmentsNumber": 2, "installmentsTotal": 5},
                         vendor="hapoalim", account="12-345", category="Bank")
    assert derived
    assert txn.transaction_type == TransactionType.BANK
    assert txn.processed_date == txn.date
    assert txn.installments_number == 2
    assert txn.installments_total == 5
    assert txn.status == "completed"
    assert txn.category_source is None


def test_persistence_error_is_reported_as_failed():
    """A failing write is classified, not raised"""
    class BrokenStore:
        async def get_transaction(self, identifier, vendor):
            raise PersistenceError("database is locked")

    async def scenario():
        txn, _ = build(PHARM)
        return await DedupEngine(BrokenStore()).upsert(txn)

    result = asyncio.run(scenario())
    assert result.outcome == UpsertOutcome.FAILED
    assert "locked" in result.error


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
