"""
External scraper boundary.

The bank/card scraper is a black box: it takes an options dict and a progress
callback and returns {success, accounts, errorType?, errorMessage?} or raises.
FixtureScraper replays recorded results from JSON files for local runs and tests.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from scrape_sync.constants import (
    DEFAULT_RATE_LIMITED_TIMEOUT_MS,
    DEFAULT_SCRAPER_TIMEOUT_MS,
    RATE_LIMITED_VENDORS,
)
from scrape_sync.tools.credentials import mask_credentials
from scrape_sync.utils.errors import ScraperError
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)

# on_progress(company_id, {"type": step, ...details})
ProgressCallback = Callable[[str, Dict[str, Any]], None]


class ScraperSettings(BaseModel):
    """Scraper-related values read from app_settings before a run starts"""

    scraper_timeout: int = DEFAULT_SCRAPER_TIMEOUT_MS
    scraper_timeout_rate_limited: int = DEFAULT_RATE_LIMITED_TIMEOUT_MS
    fetch_categories_from_scrapers: bool = True
    isracard_scrape_categories: bool = True
    show_browser: bool = False
    log_http_requests: bool = False
    update_category_on_rescrape: bool = False


async def load_scraper_settings(store) -> ScraperSettings:
    """Read the run's behaviour settings with typed defaults"""
    defaults = ScraperSettings()
    return ScraperSettings(
        scraper_timeout=await store.get_int_setting("scraper_timeout", defaults.scraper_timeout),
        scraper_timeout_rate_limited=await store.get_int_setting(
            "scraper_timeout_rate_limited", defaults.scraper_timeout_rate_limited),
        fetch_categories_from_scrapers=await store.get_bool_setting(
            "fetch_categories_from_scrapers", defaults.fetch_categories_from_scrapers),
        isracard_scrape_categories=await store.get_bool_setting(
            "isracard_scrape_categories", defaults.isracard_scrape_categories),
        show_browser=await store.get_bool_setting("show_browser", defaults.show_browser),
        log_http_requests=await store.get_bool_setting("log_http_requests", defaults.log_http_requests),
        update_category_on_rescrape=await store.get_bool_setting(
            "update_category_on_rescrape", defaults.update_category_on_rescrape),
    )


def build_scraper_options(
    vendor: str,
    start_date: date,
    credentials: Dict[str, Any],
    settings: ScraperSettings,
    show_browser: Optional[bool] = None,
) -> Dict[str, Any]:
    """
    Build the options passed to the external scraper.

    Args:
        vendor: Canonical vendor key (companyId)
        start_date: Earliest transaction date to fetch
        credentials: Prepared, validated credential payload
        settings: Scraper settings for this run
        show_browser: Request-level override of the show_browser setting

    Returns:
        Options dict in the scraper's camelCase naming
    """
    if vendor in RATE_LIMITED_VENDORS:
        timeout = settings.scraper_timeout_rate_limited
    else:
        timeout = settings.scraper_timeout

    fetch_categories = settings.fetch_categories_from_scrapers
    if vendor in ("isracard", "amex"):
        fetch_categories = settings.isracard_scrape_categories

    options = {
        "companyId": vendor,
        "startDate": start_date.isoformat(),
        "credentials": credentials,
        "timeout": timeout,
        "showBrowser": settings.show_browser if show_browser is None else bool(show_browser),
        "fetchCategories": fetch_categories,
        "logRequests": settings.log_http_requests,
    }
    logger.info(
        "Built scraper options",
        vendor=vendor,
        timeout=timeout,
        fetch_categories=fetch_categories,
        credentials=mask_credentials(credentials),
    )
    return options


class ScraperClient(ABC):
    """Interface of the external scraper collaborator"""

    @abstractmethod
    async def scrape(
        self,
        options: Dict[str, Any],
        credentials: Dict[str, Any],
        on_progress: ProgressCallback,
    ) -> Dict[str, Any]:
        """Run one scrape, reporting steps through on_progress; returns the raw result dict"""


class FixtureScraper(ScraperClient):
    """
    Replays a recorded scrape from <fixtures_dir>/<vendor>.json.

    Fixture layout:
        {"steps": ["startScraping", "loginSuccess", ...],
         "result": {"success": true, "accounts": [...]},
         "raise": "optional message to raise instead of returning"}
    """

    def __init__(self, fixtures_dir: str, step_delay: float = 0.0):
        self.fixtures_dir = Path(fixtures_dir)
        self.step_delay = step_delay

    def _load_fixture(self, vendor: str) -> Dict[str, Any]:
        path = self.fixtures_dir / f"{vendor}.json"
        if not path.exists():
            path = self.fixtures_dir / "sample_scrape.json"
        if not path.exists():
            raise ScraperError(f"No recorded scrape for {vendor} in {self.fixtures_dir}")
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    async def scrape(self, options, credentials, on_progress):
        vendor = options["companyId"]
        fixture = self._load_fixture(vendor)
        steps: List[Any] = fixture.get("steps", [])

        for step in steps:
            event = step if isinstance(step, dict) else {"type": step}
            on_progress(vendor, event)
            if self.step_delay:
                await asyncio.sleep(self.step_delay)

        if fixture.get("raise"):
            raise ScraperError(fixture["raise"])

        logger.info("Replayed recorded scrape", vendor=vendor, steps=len(steps))
        return fixture.get("result", {"success": False, "errorMessage": "Fixture has no result"})
