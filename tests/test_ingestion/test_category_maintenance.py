"""Unit tests for manual category edits and category rename"""

import asyncio

import pytest

from scrape_sync.constants import CategorySource
from scrape_sync.ingestion import CategoryCache, CategoryMaintenance
from scrape_sync.models import Transaction
from scrape_sync.utils.errors import ValidationError


def seed(store):
    async def scenario():
        for identifier, name in (("f1", "Cafe Xoho"), ("f2", "Benedict")):
            await store.insert_transaction(Transaction(
                identifier=identifier, vendor="max", date="2025-01-01", name=name, price="-60",
                category="Food", category_source=CategorySource.SCRAPER))
        await store.add_categorization_rule("xoho", "Food")
        await store.add_category_mapping("Restaurants", "Food")
    asyncio.run(scenario())


def test_manual_category_invalidates_cache(store):
    seed(store)
    cache = CategoryCache()
    cache.prime([("Cafe Xoho", "Food")])

    async def scenario():
        maintenance = CategoryMaintenance(store, cache)
        updated = await maintenance.set_manual_category("f1", "max", " Brunch ")
        missing = await maintenance.set_manual_category("nope", "max", "Brunch")
        return updated, missing, await store.get_transaction("f1", "max")

    updated, missing, row = asyncio.run(scenario())
    assert updated and not missing
    assert cache.is_stale
    assert row.category == "Brunch"
    assert row.category_source == CategorySource.CACHE


def test_manual_category_must_not_be_empty(store):
    with pytest.raises(ValidationError):
        asyncio.run(CategoryMaintenance(store, CategoryCache()).set_manual_category("f1", "max", "  "))


def test_rename_category_everywhere(store):
    """Transactions, rules and mappings move together and old -> new is remembered"""
    seed(store)
    cache = CategoryCache()
    cache.prime([("Cafe Xoho", "Food")])

    async def scenario():
        counts = await CategoryMaintenance(store, cache).rename_category("Food", "Dining")
        rules = await store.load_categorization_rules()
        mappings = await store.load_category_mappings()
        row = await store.get_transaction("f2", "max")
        return counts, rules, mappings, row

    counts, rules, mappings, row = asyncio.run(scenario())
    assert counts == {"transactions": 2, "rules": 1, "mappings": 1}
    assert [r.target_category for r in rules] == ["Dining"]
    assert mappings == {"Restaurants": "Dining", "Food": "Dining"}
    assert row.category == "Dining"
    assert cache.is_stale


def test_rename_merges_into_existing_rule(store):
    """A rule that already targets the new name absorbs the renamed one"""
    async def scenario():
        await store.add_categorization_rule("xoho", "Food")
        await store.add_categorization_rule("xoho", "Dining")
        await CategoryMaintenance(store, CategoryCache()).rename_category("Food", "Dining")
        return await store.load_categorization_rules()

    rules = asyncio.run(scenario())
    assert [(r.name_pattern, r.target_category) for r in rules] == [("xoho", "Dining")]


def test_rename_requires_two_different_names(store):
    maintenance = CategoryMaintenance(store, CategoryCache())
    with pytest.raises(ValidationError):
        asyncio.run(maintenance.rename_category("Food", ""))
    with pytest.raises(ValidationError):
        asyncio.run(maintenance.rename_category("Food", "Food"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
