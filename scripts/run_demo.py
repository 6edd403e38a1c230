#!/usr/bin/env python
"""
Demo runner script for the scrape ingestion pipeline

Seeds a throwaway SQLite database with two credentials, a categorization rule
and a category mapping, then replays the recorded scrapes from tests/fixtures
and prints the SSE stream a browser client would receive.

Usage:
    python scripts/run_demo.py                  # Single scrape (max card)
    python scripts/run_demo.py --all            # Batch sync of every account
    python scripts/run_demo.py --db demo.db     # Keep the database afterwards
"""

import os
import sys
import argparse
import asyncio
import tempfile
from datetime import date, timedelta
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set demo mode environment variables
os.environ["STATE_BACKEND"] = "memory"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from scrape_sync.ingestion import CategoryCache
from scrape_sync.models import ScrapeRequest
from scrape_sync.orchestrator.progress_channel import stream_sse
from scrape_sync.orchestrator.scrape_orchestrator import ScrapeOrchestrator
from scrape_sync.orchestrator.state_manager import RunStateStore
from scrape_sync.tools.database_client import ScrapeStore
from scrape_sync.tools.scraper_client import FixtureScraper
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)

FIXTURES_DIR = project_root / "tests" / "fixtures"


def print_header(title: str):
    """Print formatted section header"""
    print("\n" + "=" * 70)
    print(f"  {title}")
    print("=" * 70)


async def seed_demo_data(store: ScrapeStore) -> int:
    """Credentials, one rule and one mapping; returns the card credential id"""
    card_id = await store.add_credential("max", nickname="Family Max", username="demo-user", password="demo-pass")
    await store.add_credential("hapoalim", nickname="Main Account", user_code="AB12345", password="demo-pass",
                               bank_account_number="12-345-678901")
    await store.add_categorization_rule("wolt", "Food Delivery")
    await store.add_category_mapping("Home", "Household")
    print(f"✅ Seeded demo credentials, 1 rule and 1 mapping into {store.db_path}")
    return card_id


async def print_stream(channel):
    async for frame in stream_sse(channel):
        print(frame, end="")


async def run_demo(db_path: str, batch: bool):
    store = ScrapeStore(db_path)
    card_id = await seed_demo_data(store)

    orchestrator = ScrapeOrchestrator(
        store=store,
        scraper=FixtureScraper(str(FIXTURES_DIR), step_delay=0.05),
        cache=CategoryCache(),
        state_store=RunStateStore("memory"),
    )
    channel = orchestrator.new_channel()
    printer = asyncio.create_task(print_stream(channel))

    if batch:
        print_header("Batch sync (SSE stream)")
        outcome = await orchestrator.sync_all(days_back=60, channel=channel)
        await printer
        print_header("Batch Summary")
        print(f"📊 Accounts: {outcome.total}, succeeded: {outcome.succeeded}, failed: {outcome.failed}")
        print(f"📝 {outcome.message}")
    else:
        print_header("Single scrape (SSE stream)")
        request = ScrapeRequest(vendor="max", credential_id=card_id,
                                start_date=date.today() - timedelta(days=60))
        outcome = await orchestrator.run(request, channel)
        await printer
        print_header("Scrape Summary")
        stats = outcome.stats
        print(f"📊 Status: {outcome.status.value}")
        print(f"  • Saved: {stats.saved_transactions}")
        print(f"  • Updated: {stats.updated_transactions}")
        print(f"  • Duplicates: {stats.duplicate_transactions}")
        print(f"  • Categories: rule={stats.rule_categories}, mapping={stats.mapping_categories}, "
              f"scraper={stats.scraper_categories}")

    print(f"\n🗄️  Stored transactions: {await store.count_transactions()}")
    store.close()


def main():
    parser = argparse.ArgumentParser(description="Run the scrape pipeline against recorded fixtures")
    parser.add_argument("--all", action="store_true", help="Sync every seeded account")
    parser.add_argument("--db", help="SQLite file to use (default: temporary)")
    args = parser.parse_args()

    if args.db:
        asyncio.run(run_demo(args.db, args.all))
        return

    with tempfile.TemporaryDirectory() as tmp:
        asyncio.run(run_demo(str(Path(tmp) / "demo.db"), args.all))


if __name__ == "__main__":
    main()
