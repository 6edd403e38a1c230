"""Global single-scrape admission and the audit row lifecycle."""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from scrape_sync.constants import DEFAULT_STALE_SCRAPE_MINUTES, ScrapeStatus
from scrape_sync.models import ScrapeEvent
from scrape_sync.tools.database_client import utc_now
from scrape_sync.utils import metrics
from scrape_sync.utils.errors import ConcurrencyError
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)

CONCURRENCY_HINT = "Wait for the current sync to finish, then try again."


class ConcurrencyGuard:
    """
    At most one scrape (or batch of scrapes) per system.

    The scrape_events ledger is the cross-process signal; an asyncio lock plus an
    in-process holder close the gap between checking and inserting the audit row.
    """

    def __init__(self, store, stale_after_minutes: int = DEFAULT_STALE_SCRAPE_MINUTES):
        self.store = store
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self._lock = asyncio.Lock()
        self._holder: Optional[str] = None

    async def check_concurrency(self) -> Optional[ScrapeEvent]:
        """
        Reject when a recent 'started' row exists.

        Returns:
            The abandoned 'started' row being admitted over, if any

        Raises:
            ConcurrencyError: If another scrape started within the stale window
        """
        latest = await self.store.latest_scrape_event(status=ScrapeStatus.STARTED)
        if latest is None or latest.created_at is None:
            return None

        age = utc_now() - latest.created_at
        if age < self.stale_after:
            metrics.concurrency_rejections.inc()
            logger.warning("Scrape rejected, another scrape is running",
                           running_event_id=latest.id, running_vendor=latest.vendor,
                           age_seconds=int(age.total_seconds()))
            raise ConcurrencyError(
                f"Another scrape is already running ({latest.vendor}, started {int(age.total_seconds() // 60)} min ago)",
                hint=CONCURRENCY_HINT,
            )

        logger.warning("Admitting scrape over an abandoned run", abandoned_event_id=latest.id,
                       age_minutes=int(age.total_seconds() // 60))
        return latest

    @asynccontextmanager
    async def exclusive(self, holder: str, prepare: Optional[Callable[[], Awaitable[Any]]] = None):
        """
        Hold the global admission for the duration of the block.

        The concurrency check and prepare() (validation, audit insert) run under
        one lock; a failure in either leaves nothing held.

        Yields:
            Whatever prepare() returned
        """
        async with self._lock:
            if self._holder is not None:
                metrics.concurrency_rejections.inc()
                logger.warning("Scrape rejected, run active in this process", active_run=self._holder)
                raise ConcurrencyError("Another scrape is already running", hint=CONCURRENCY_HINT)
            await self.check_concurrency()
            prepared = await prepare() if prepare is not None else None
            self._holder = holder

        metrics.scrape_in_progress.set(1)
        try:
            yield prepared
        finally:
            self._holder = None
            metrics.scrape_in_progress.set(0)

    async def insert_scrape_audit(self, triggered_by: str, vendor: str, start_date: date,
                                  retry_count: int = 0) -> int:
        audit_id = await self.store.insert_scrape_event(
            triggered_by=triggered_by,
            vendor=vendor,
            start_date=start_date,
            message="Scrape initiated",
            retry_count=retry_count,
        )
        logger.info("Scrape audit started", audit_id=audit_id, vendor=vendor, triggered_by=triggered_by)
        return audit_id

    async def update_scrape_audit(self, audit_id: int, status: ScrapeStatus, message: str,
                                  report: Optional[Dict[str, Any]] = None,
                                  duration_seconds: Optional[int] = None) -> None:
        await self.store.update_scrape_event(audit_id, status, message, report, duration_seconds)
        logger.info("Scrape audit finalized", audit_id=audit_id, status=status.value)
