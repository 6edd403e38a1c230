"""Main entry point: run one scrape (or a batch sync) against the local database"""

import argparse
import asyncio
import os
from datetime import date, timedelta
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables FIRST, before any other imports
# Find the .env file in the project root
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(dotenv_path=env_path)

from scrape_sync.ingestion import CategoryCache
from scrape_sync.models import ScrapeRequest
from scrape_sync.orchestrator.concurrency_guard import ConcurrencyGuard
from scrape_sync.orchestrator.scrape_orchestrator import ScrapeOrchestrator
from scrape_sync.orchestrator.state_manager import RunStateStore
from scrape_sync.orchestrator.sync_status import SyncStatusReporter
from scrape_sync.tools.credentials import CredentialCipher
from scrape_sync.tools.database_client import get_store
from scrape_sync.tools.scraper_client import FixtureScraper
from scrape_sync.utils.config_loader import load_config, get_section
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)


def build_orchestrator(config):
    """Wire store, cache, guard, state store and the replay scraper from config"""
    database = get_section(config, "database")
    scraper = get_section(config, "scraper")
    concurrency = get_section(config, "concurrency")
    cache_section = get_section(config, "category_cache")

    store = get_store(os.getenv("SCRAPE_SYNC_DB", database["path"]))
    orchestrator = ScrapeOrchestrator(
        store=store,
        scraper=FixtureScraper(os.getenv("SCRAPER_FIXTURES_DIR", scraper.get("fixtures_dir", "tests/fixtures"))),
        cache=CategoryCache(ttl_seconds=cache_section.get("ttl_seconds", 300)),
        guard=ConcurrencyGuard(store, stale_after_minutes=concurrency.get("stale_after_minutes", 20)),
        state_store=RunStateStore.from_config(config),
        cipher=CredentialCipher.from_env(),
    )
    return store, orchestrator


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Scrape ingestion & reconciliation pipeline")
    parser.add_argument("--credential-id", type=int, help="Stored credential to scrape with")
    parser.add_argument("--vendor", help="Vendor key (defaults to the credential's vendor)")
    parser.add_argument("--days-back", type=int, default=30, help="How many days back to fetch")
    parser.add_argument("--retry-count", type=int, default=0, help="Re-trigger attempt number")
    parser.add_argument("--all", action="store_true", help="Sync every active credential")
    parser.add_argument("--status", action="store_true", help="Print sync health and exit")
    parser.add_argument("--purge", action="store_true", help="Delete scrape events past the retention window")
    return parser.parse_args(argv)


async def run(args, config):
    store, orchestrator = build_orchestrator(config)

    sync_status = get_section(config, "sync_status")
    reporter = SyncStatusReporter(
        store,
        stale_after_minutes=get_section(config, "concurrency").get("stale_after_minutes", 20),
        healthy_hours=sync_status.get("healthy_hours", 24),
        history_limit=sync_status.get("history_limit", 10),
    )

    if args.purge:
        days = get_section(config, "retention").get("scrape_events_days", 90)
        return {"deleted": await reporter.purge_scrape_events(days)}

    if args.status:
        status = await reporter.get_sync_status()
        logger.info(f"Sync health: {status['syncHealth']}", active_accounts=status["activeAccounts"])
        return status

    if args.all:
        outcome = await orchestrator.sync_all(days_back=args.days_back)
        logger.info(f"Batch: {outcome.message}", succeeded=outcome.succeeded, failed=outcome.failed)
        return outcome.model_dump(mode="json")

    if args.credential_id is None:
        raise SystemExit("--credential-id is required unless --all, --status or --purge is given")

    vendor = args.vendor
    if vendor is None:
        credential = await store.get_credential(args.credential_id)
        vendor = credential.vendor if credential else ""

    request = ScrapeRequest(
        vendor=vendor,
        credential_id=args.credential_id,
        start_date=date.today() - timedelta(days=args.days_back),
        retry_count=args.retry_count,
    )
    outcome = await orchestrator.run(request)

    logger.info("=" * 60)
    logger.info("SCRAPE SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Run ID: {outcome.run_id}")
    logger.info(f"Status: {outcome.status.value}")
    logger.info(f"Message: {outcome.message}")
    logger.info(f"Saved: {outcome.stats.saved_transactions}, Updated: {outcome.stats.updated_transactions}, "
                f"Duplicates: {outcome.stats.duplicate_transactions}")
    logger.info("=" * 60)
    return outcome.model_dump(mode="json")


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    try:
        config = load_config()
        return asyncio.run(run(args, config))
    except Exception as e:
        logger.error(f"Scrape pipeline failed: {e}")
        raise


if __name__ == "__main__":
    main()
