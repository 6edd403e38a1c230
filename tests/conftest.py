"""Shared fixtures: temporary SQLite store and an in-process scraper"""

import asyncio
from pathlib import Path

import pytest

from scrape_sync.tools.database_client import ScrapeStore
from scrape_sync.tools.scraper_client import ScraperClient

FIXTURES_DIR = Path(__file__).parent / "fixtures"


class FakeScraper(ScraperClient):
    """Returns a canned result (or raises) after emitting the given steps"""

    def __init__(self, result=None, steps=None, error=None, delay=0.0):
        self.result = result if result is not None else {"success": True, "accounts": []}
        self.steps = steps if steps is not None else ["startScraping", "loginSuccess", "endScraping"]
        self.error = error
        self.delay = delay
        self.calls = []

    async def scrape(self, options, credentials, on_progress):
        self.calls.append({"options": options, "credentials": credentials})
        for step in self.steps:
            on_progress(options["companyId"], step if isinstance(step, dict) else {"type": step})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def store(tmp_path):
    """Fresh database per test"""
    store = ScrapeStore(str(tmp_path / "scrape.db"))
    yield store
    store.close()


@pytest.fixture
def fixtures_dir():
    return FIXTURES_DIR


@pytest.fixture
def make_scraper():
    """Factory for FakeScraper instances"""
    return FakeScraper


@pytest.fixture
def card_result():
    """Two-account card scrape without vendor identifiers on the second account"""
    return {
        "success": True,
        "accounts": [
            {
                "accountNumber": "1111",
                "txns": [
                    {"identifier": "a1", "date": "2025-01-01", "description": "WOLT", "chargedAmount": -50},
                    {"identifier": "a2", "date": "2025-01-02", "description": "RAMI LEVY", "chargedAmount": -230.4,
                     "category": "Groceries"},
                ],
            },
            {
                "accountNumber": "2222",
                "txns": [
                    {"date": "2025-01-03", "description": "NETFLIX", "chargedAmount": -49.9,
                     "category": "Subscriptions"},
                ],
            },
        ],
    }
