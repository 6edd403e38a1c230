"""Sync health read path and scrape ledger retention"""

from datetime import timedelta
from typing import Any, Dict, List, Optional

from scrape_sync.constants import DEFAULT_RETENTION_DAYS, DEFAULT_STALE_SCRAPE_MINUTES, ScrapeStatus
from scrape_sync.models import ScrapeEvent
from scrape_sync.tools.database_client import utc_now
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)

TIMED_OUT_MESSAGE = "Sync timed out or process crashed"


def _event_summary(event: Optional[ScrapeEvent]) -> Optional[Dict[str, Any]]:
    if event is None:
        return None
    return event.model_dump(mode="json", exclude={"report_json"})


class SyncStatusReporter:
    """Classifies overall sync health from the scrape ledger"""

    def __init__(self, store, stale_after_minutes: int = DEFAULT_STALE_SCRAPE_MINUTES,
                 healthy_hours: int = 24, history_limit: int = 10):
        self.store = store
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.healthy_window = timedelta(hours=healthy_hours)
        self.history_limit = history_limit

    async def get_sync_status(self) -> Dict[str, Any]:
        """
        Overall sync health.

        A 'started' row older than the concurrency timeout is reported as an
        error and marked failed here; the guard never does this itself.

        Returns:
            {
                'syncHealth': 'healthy' | 'stale' | 'outdated' | 'syncing' | 'error'
                              | 'no_accounts' | 'never_synced',
                'activeAccounts': 2,
                'latestScrape': {...} or None,
                'settings': {'enabled': True, 'daysBack': 30},
                'history': [...],
                'accountSyncStatus': [{'id': 1, 'vendor': 'max', 'nickname': ..., 'last_synced_at': ...}],
                'summary': {'oldest_sync_at': ..., 'has_never_synced': False}
            }
        """
        credentials = await self.store.list_active_credentials()
        latest = await self.store.latest_scrape_event()
        health = self._classify(latest, len(credentials))

        latest_summary = _event_summary(latest)
        if health == "error" and latest is not None and latest.status == ScrapeStatus.STARTED:
            if await self.store.fail_started_event(latest.id, TIMED_OUT_MESSAGE):
                logger.warning("Marked abandoned scrape as failed", event_id=latest.id, vendor=latest.vendor)
            latest_summary["status"] = ScrapeStatus.FAILED.value
            latest_summary["message"] = TIMED_OUT_MESSAGE

        account_status: List[Dict[str, Any]] = [
            {
                "id": c.id,
                "vendor": c.vendor,
                "nickname": c.display_name(),
                "last_synced_at": c.last_synced_at.isoformat() if c.last_synced_at else None,
            }
            for c in credentials
        ]
        synced = [a["last_synced_at"] for a in account_status if a["last_synced_at"]]

        history = await self.store.recent_scrape_events(self.history_limit)
        return {
            "syncHealth": health,
            "activeAccounts": len(credentials),
            "latestScrape": latest_summary,
            "settings": {
                "enabled": await self.store.get_bool_setting("sync_enabled", True),
                "daysBack": await self.store.get_int_setting("sync_days_back", 30),
            },
            "history": [_event_summary(e) for e in history],
            "accountSyncStatus": account_status,
            "summary": {
                "oldest_sync_at": min(synced) if synced else None,
                "has_never_synced": any(a["last_synced_at"] is None for a in account_status),
            },
        }

    def _classify(self, latest: Optional[ScrapeEvent], active_accounts: int) -> str:
        if latest is None or latest.created_at is None:
            return "no_accounts" if active_accounts == 0 else "never_synced"

        age = utc_now() - latest.created_at
        if latest.status == ScrapeStatus.SUCCESS:
            if age < self.healthy_window:
                return "healthy"
            if age < self.healthy_window * 2:
                return "stale"
            return "outdated"
        if latest.status == ScrapeStatus.STARTED:
            return "error" if age > self.stale_after else "syncing"
        if latest.status == ScrapeStatus.FAILED:
            return "error"
        return "healthy"

    async def purge_scrape_events(self, older_than_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete terminal ledger rows older than the retention window"""
        cutoff = utc_now() - timedelta(days=older_than_days)
        deleted = await self.store.purge_scrape_events(cutoff)
        logger.info("Purged old scrape events", deleted=deleted, older_than_days=older_than_days)
        return deleted
