"""
Category resolution as an ordered list of strategies.

Each strategy takes a CategoryQuery and returns a CategoryResolution or None;
the first non-empty answer wins. When none answers, a bank/income fallback
applies and the source stays unset.
"""

from typing import Callable, Dict, List, Optional

from scrape_sync.constants import (
    CategorySource,
    EMPTY_CATEGORY_VALUES,
    FALLBACK_BANK_CATEGORY,
    FALLBACK_INCOME_CATEGORY,
    UNCATEGORIZED,
)
from scrape_sync.ingestion.category_cache import CategoryCache
from scrape_sync.models import CategorizationRule, CategoryQuery, CategoryResolution, Transaction
from scrape_sync.utils import metrics
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)

Strategy = Callable[[CategoryQuery], Optional[CategoryResolution]]


def is_empty_category(category: Optional[str]) -> bool:
    return category is None or category.strip() in EMPTY_CATEGORY_VALUES


def apply_category_mappings(category: str, mappings: Dict[str, str]) -> str:
    """Follow source -> target links to the last target; cycles stop at the repeat"""
    seen = set()
    current = category
    while current in mappings and current not in seen:
        seen.add(current)
        current = mappings[current]
    return current


class CategoryResolver:
    """cache -> rule -> mapping -> scraper, then fallback"""

    def __init__(
        self,
        cache: CategoryCache,
        rules: Optional[List[CategorizationRule]] = None,
        mappings: Optional[Dict[str, str]] = None,
    ):
        self.cache = cache
        self.rules = [r for r in (rules or []) if r.is_active]
        self.mappings = mappings or {}
        self.strategies: List[Strategy] = [
            self.from_cache,
            self.from_rules,
            self.from_mapping,
            self.from_scraper,
        ]

    @classmethod
    async def load(cls, store, cache: CategoryCache) -> "CategoryResolver":
        """Resolver over the store's current rules and mappings; refreshes a stale cache"""
        await cache.ensure_fresh(store)
        rules = await store.load_categorization_rules()
        mappings = await store.load_category_mappings()
        logger.info("Category resolver loaded", rules=len(rules), mappings=len(mappings), cached=len(cache))
        return cls(cache, rules, mappings)

    def from_cache(self, query: CategoryQuery) -> Optional[CategoryResolution]:
        category = self.cache.lookup(query.name)
        if is_empty_category(category):
            return None
        return CategoryResolution(category=category, source=CategorySource.CACHE)

    def from_rules(self, query: CategoryQuery) -> Optional[CategoryResolution]:
        for rule in self.rules:
            if rule.matches(query.name):
                return CategoryResolution(
                    category=rule.target_category,
                    source=CategorySource.RULE,
                    rule_matched=rule.name_pattern,
                )
        return None

    def from_mapping(self, query: CategoryQuery) -> Optional[CategoryResolution]:
        if is_empty_category(query.scraper_category) or query.scraper_category not in self.mappings:
            return None
        return CategoryResolution(
            category=apply_category_mappings(query.scraper_category, self.mappings),
            source=CategorySource.MAPPING,
        )

    def from_scraper(self, query: CategoryQuery) -> Optional[CategoryResolution]:
        if is_empty_category(query.scraper_category):
            return None
        return CategoryResolution(category=query.scraper_category.strip(), source=CategorySource.SCRAPER)

    @staticmethod
    def fallback(query: CategoryQuery) -> CategoryResolution:
        if query.is_bank:
            return CategoryResolution(category=FALLBACK_BANK_CATEGORY)
        if query.price is not None and query.price > 0:
            return CategoryResolution(category=FALLBACK_INCOME_CATEGORY)
        return CategoryResolution()

    def resolve(self, query: CategoryQuery) -> CategoryResolution:
        for strategy in self.strategies:
            resolution = strategy(query)
            if resolution is not None:
                metrics.category_resolutions.labels(source=resolution.source.value).inc()
                return resolution

        resolution = self.fallback(query)
        metrics.category_resolutions.labels(source="fallback" if resolution.category else "none").inc()
        return resolution


def is_blank_stored_category(category: Optional[str]) -> bool:
    return is_empty_category(category) or category.strip().lower() == UNCATEGORIZED.lower()


def may_replace_category(existing: Transaction, resolution: CategoryResolution, update_on_rescrape: bool) -> bool:
    """
    Re-scrape policy for an already stored transaction.

    A blank stored category may always be filled. Anything else, a manual edit
    (category_source 'cache') included, is only replaced when
    update_category_on_rescrape is on.
    """
    if is_empty_category(resolution.category) or resolution.category == existing.category:
        return False
    if is_blank_stored_category(existing.category):
        return True
    return update_on_rescrape
