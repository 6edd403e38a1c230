"""User-facing category edits that must keep the category cache honest"""

from typing import Dict

from scrape_sync.ingestion.category_cache import CategoryCache
from scrape_sync.utils.errors import ValidationError
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)


class CategoryMaintenance:
    """Manual edits and renames; both invalidate the injected cache"""

    def __init__(self, store, cache: CategoryCache):
        self.store = store
        self.cache = cache

    async def set_manual_category(self, identifier: str, vendor: str, category: str) -> bool:
        """
        Store a user's category for one transaction.

        The row gets category_source 'cache', which re-scrapes leave alone unless
        update_category_on_rescrape is on.

        Returns:
            False if no such transaction exists
        """
        category = (category or "").strip()
        if not category:
            raise ValidationError("Category must not be empty")
        updated = await self.store.set_manual_category(identifier, vendor, category)
        if updated:
            self.cache.invalidate()
            logger.info("Manual category set", identifier=identifier, vendor=vendor, category=category)
        return updated

    async def rename_category(self, old_category: str, new_category: str) -> Dict[str, int]:
        """
        Rename or merge a category everywhere, atomically.

        Transactions, rules and mappings are rewritten in one database
        transaction and old -> new is kept as a mapping so future scraper
        categories follow the rename.

        Returns:
            Rows touched per table
        """
        old_category = (old_category or "").strip()
        new_category = (new_category or "").strip()
        if not old_category or not new_category:
            raise ValidationError("Both the old and the new category name are required")
        if old_category == new_category:
            raise ValidationError("New category name must differ from the old one")

        counts = await self.store.rename_category(old_category, new_category)
        self.cache.invalidate()
        logger.info("Category renamed", old_category=old_category, new_category=new_category, **counts)
        return counts
