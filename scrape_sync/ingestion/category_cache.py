"""Name -> category memo built from previously stored transactions"""

import time
from typing import Callable, Dict, Iterable, Optional, Tuple

from scrape_sync.constants import DEFAULT_CATEGORY_CACHE_TTL_SECONDS, EMPTY_CATEGORY_VALUES
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)


def normalize_name(name: Optional[str]) -> str:
    return (name or "").strip().lower()


class CategoryCache:
    """
    Explicit, invalidatable category cache.

    One instance is injected into the orchestrator; tests prime it directly.
    Entries expire as a whole after ttl_seconds and are rebuilt from the store.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_CATEGORY_CACHE_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, str] = {}
        self._loaded_at: Optional[float] = None

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return (self._clock() - self._loaded_at) >= self.ttl_seconds

    def prime(self, entries: Iterable[Tuple[str, str]]) -> None:
        """Replace the contents; later pairs win over earlier ones"""
        self._entries = {}
        for name, category in entries:
            key = normalize_name(name)
            if key and category and category not in EMPTY_CATEGORY_VALUES:
                self._entries[key] = category
        self._loaded_at = self._clock()

    async def refresh(self, store) -> None:
        self.prime(await store.load_category_cache_entries())
        logger.info("Category cache rebuilt", entries=len(self._entries))

    async def ensure_fresh(self, store) -> None:
        if self.is_stale:
            await self.refresh(store)

    def lookup(self, name: Optional[str]) -> Optional[str]:
        return self._entries.get(normalize_name(name))

    def invalidate(self) -> None:
        self._entries = {}
        self._loaded_at = None
        logger.debug("Category cache invalidated")
