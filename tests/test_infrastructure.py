"""Unit tests for core infrastructure components."""

import asyncio
import json
import logging
import sqlite3
from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from scrape_sync.constants import EventKind, ProgressPhase, ScrapeStatus
from scrape_sync.tools.database_client import utc_now


def test_config_loader_reads_default_settings():
    """Test loading config/settings.yaml"""
    from scrape_sync.utils.config_loader import load_config, get_section

    config = load_config()
    assert config["version"] == 1
    assert get_section(config, "concurrency")["stale_after_minutes"] == 20
    assert get_section(config, "missing") == {}


def test_config_loader_errors(tmp_path):
    """Missing file, bad YAML and missing keys all raise ConfigurationError"""
    from scrape_sync.utils.config_loader import load_config, save_config
    from scrape_sync.utils.errors import ConfigurationError

    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path / "nope.yaml"))

    bad = tmp_path / "bad.yaml"
    bad.write_text("version: [1\n")
    with pytest.raises(ConfigurationError):
        load_config(str(bad))

    partial = tmp_path / "partial.yaml"
    save_config(str(partial), {"version": 1, "database": {"path": "x.db"}})
    with pytest.raises(ConfigurationError, match="Missing required configuration keys"):
        load_config(str(partial))


def test_schemas_create_all_tables():
    """Test that schemas are idempotent and create every table"""
    from scrape_sync.db.schemas import create_all_tables

    conn = sqlite3.connect(":memory:")
    create_all_tables(conn)
    create_all_tables(conn)
    tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"transactions", "card_ownership", "vendor_credentials", "scrape_events",
            "categorization_rules", "category_mappings", "app_settings"} <= tables

    conn.execute("INSERT INTO vendor_credentials (vendor) VALUES ('max')")
    conn.execute("INSERT INTO card_ownership (vendor, account_number, credential_id) VALUES ('max', '1', 1)")
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("INSERT INTO card_ownership (vendor, account_number, credential_id) VALUES ('max', '1', 1)")
    conn.close()


def test_store_settings_are_typed(store):
    async def scenario():
        await store.set_setting("scraper_timeout", 90000)
        await store.set_setting("show_browser", "true")
        await store.set_setting("sync_days_back", "not a number")
        return (
            await store.get_int_setting("scraper_timeout", 1),
            await store.get_bool_setting("show_browser"),
            await store.get_int_setting("sync_days_back", 30),
            await store.get_setting("missing", "fallback"),
        )

    assert asyncio.run(scenario()) == (90000, True, 30, "fallback")


def test_state_store_memory_backend():
    """Test in-memory run state snapshots"""
    from scrape_sync.orchestrator.state_manager import RunStateStore

    state_store = RunStateStore("memory")
    state_store.save_run_state("run-1", {"percent": 40, "at": date(2025, 1, 1)})
    assert state_store.restore_run_state("run-1") == {"percent": 40, "at": "2025-01-01"}
    assert state_store.restore_run_state("unknown") == {}

    state_store.mark_run_complete("run-1", "completed", {"savedTransactions": 3})
    restored = state_store.restore_run_state("run-1")
    assert restored["status"] == "completed"
    assert restored["summary"] == {"savedTransactions": 3}
    assert state_store.check_health()


def test_state_store_redis_backend_uses_setex():
    from scrape_sync.orchestrator.state_manager import RunStateStore

    client = MagicMock()
    client.get.return_value = json.dumps({"percent": 55})
    state_store = RunStateStore("redis", redis_client=client, ttl_seconds=60)

    state_store.save_run_state("abc", {"percent": 55})
    client.setex.assert_called_once_with("run:abc:state", 60, json.dumps({"percent": 55}))
    assert state_store.restore_run_state("abc") == {"percent": 55}
    assert state_store.check_health()


def test_state_store_redis_failure_degrades_to_memory():
    import redis
    from scrape_sync.orchestrator.state_manager import RunStateStore

    client = MagicMock()
    client.ping.side_effect = redis.ConnectionError("refused")
    state_store = RunStateStore("redis", redis_client=client)

    assert state_store.backend == "memory"
    state_store.save_run_state("abc", {"percent": 1})
    assert state_store.restore_run_state("abc") == {"percent": 1}


def test_state_store_write_failure_raises():
    import redis
    from scrape_sync.orchestrator.state_manager import RunStateStore
    from scrape_sync.utils.errors import StateManagerError

    client = MagicMock()
    client.setex.side_effect = redis.ConnectionError("gone")
    state_store = RunStateStore("redis", redis_client=client)
    with pytest.raises(StateManagerError):
        state_store.save_run_state("abc", {"percent": 1})


def test_structured_logger_emits_json():
    from scrape_sync.utils.logging import JSONFormatter, StructuredLogger, get_logger

    logger = get_logger("scrape_sync.test")
    assert isinstance(logger, StructuredLogger)
    assert len(get_logger("scrape_sync.test").logger.handlers) == 1

    record = logging.LogRecord("scrape_sync.test", logging.INFO, __file__, 1, "hello", None, None)
    payload = json.loads(JSONFormatter().format(record))
    assert payload["level"] == "INFO"
    assert payload["message"] == "hello"


def test_sse_framing():
    from scrape_sync.orchestrator.progress_channel import format_sse

    frame = format_sse("progress", {"step": "init", "percent": 0})
    assert frame == 'event: progress\ndata: {"step": "init", "percent": 0}\n\n'


def test_translator_maps_steps_and_passes_network_through():
    from scrape_sync.orchestrator.progress_channel import ProgressChannel, ProgressTranslator

    channel = ProgressChannel("run-1")
    translate = ProgressTranslator(channel)
    translate("max", {"type": "loginStarted"})
    translate("max", {"type": "endScraping"})
    translate("max", {"type": "loginSuccess"})
    translate("max", {"type": "somethingNew"})
    translate("network", {"url": "https://example.test", "status": 200})
    translate("max", {"type": "processingAccount", "accountNumber": "4580"})

    progress = [e.data for e in channel.history if e.kind == EventKind.PROGRESS]
    assert [p["percent"] for p in progress] == [20, 75, 75, 75, 75]
    assert progress[0]["phase"] == ProgressPhase.AUTHENTICATION.value
    assert progress[0]["success"] is None
    assert progress[2]["completedSteps"] == ["endScraping", "loginSuccess"]
    assert progress[2]["phase"] == ProgressPhase.PROCESSING.value
    assert progress[3]["phase"] == ProgressPhase.PROCESSING.value
    assert progress[3]["message"] == "somethingNew..."
    assert progress[4]["message"] == "Processing account 4580..."
    assert progress[1]["details"] == {"type": "endScraping"}
    network = [e for e in channel.history if e.kind == EventKind.NETWORK]
    assert network[0].data == {"url": "https://example.test", "status": 200}


def test_unknown_step_keeps_current_phase():
    """A step missing from the table reports the run's current percent and phase"""
    from scrape_sync.orchestrator.progress_channel import ProgressChannel, ProgressTranslator

    channel = ProgressChannel("run-1")
    translate = ProgressTranslator(channel)
    translate("max", {"type": "loginStarted"})
    translate("max", {"type": "captchaShown"})
    translate("max", {"type": "fetchingTransactions"})
    translate("max", {"type": "pageScrolled"})

    progress = [e.data for e in channel.history if e.kind == EventKind.PROGRESS]
    assert [(p["percent"], p["phase"]) for p in progress] == [
        (20, ProgressPhase.AUTHENTICATION.value),
        (20, ProgressPhase.AUTHENTICATION.value),
        (45, ProgressPhase.DATA_FETCHING.value),
        (45, ProgressPhase.DATA_FETCHING.value),
    ]


def test_channel_allows_one_terminal_event():
    from scrape_sync.orchestrator.progress_channel import ProgressChannel

    channel = ProgressChannel("run-1")
    channel.progress("init", "Initializing", 0, ProgressPhase.INITIALIZATION)
    assert channel.complete("done", {"savedTransactions": 1}) is not None
    assert channel.error("late failure", "SCRAPER_ERROR") is None
    assert channel.progress("late", "late", 50, ProgressPhase.PROCESSING) is None
    assert [e.kind for e in channel.history] == [EventKind.PROGRESS, EventKind.COMPLETE]


def test_late_subscriber_replays_history():
    from scrape_sync.orchestrator.progress_channel import ProgressChannel, stream_sse

    channel = ProgressChannel("run-1")
    channel.progress("init", "Initializing", 0, ProgressPhase.INITIALIZATION)
    channel.error("Boom", "SCRAPER_ERROR", hint="Check credentials")

    async def collect():
        return [frame async for frame in stream_sse(channel)]

    frames = asyncio.run(collect())
    assert len(frames) == 2
    assert frames[0].startswith("event: progress\n")
    assert frames[1].startswith("event: error\n")
    assert '"hint": "Check credentials"' in frames[1]


def test_sync_status_classification(store):
    """Test health classes derived from the latest audit row"""
    from scrape_sync.orchestrator.sync_status import SyncStatusReporter

    reporter = SyncStatusReporter(store)

    async def health():
        return (await reporter.get_sync_status())["syncHealth"]

    async def scenario():
        results = {"empty": await health()}
        await store.add_credential("max", nickname="Family Max", username="dana", password="pw")
        results["never"] = await health()
        await store.insert_scrape_event("x", "max", date.today(), status=ScrapeStatus.SUCCESS,
                                        created_at=utc_now() - timedelta(hours=72))
        results["outdated"] = await health()
        await store.insert_scrape_event("x", "max", date.today(), status=ScrapeStatus.SUCCESS,
                                        created_at=utc_now() - timedelta(hours=30))
        results["stale"] = await health()
        await store.insert_scrape_event("x", "max", date.today(), status=ScrapeStatus.SUCCESS)
        results["healthy"] = await health()
        await store.insert_scrape_event("x", "max", date.today(), status=ScrapeStatus.FAILED,
                                        created_at=utc_now() + timedelta(seconds=1))
        results["failed"] = await health()
        await store.insert_scrape_event("x", "max", date.today(), created_at=utc_now() + timedelta(seconds=2))
        results["syncing"] = await health()
        return results

    results = asyncio.run(scenario())
    assert results == {
        "empty": "no_accounts",
        "never": "never_synced",
        "outdated": "outdated",
        "stale": "stale",
        "healthy": "healthy",
        "failed": "error",
        "syncing": "syncing",
    }


def test_sync_status_marks_abandoned_run_failed(store):
    from scrape_sync.orchestrator.sync_status import SyncStatusReporter, TIMED_OUT_MESSAGE

    async def scenario():
        await store.add_credential("max", nickname="Family Max", username="dana", password="pw")
        event_id = await store.insert_scrape_event("x", "max", date.today(),
                                                   created_at=utc_now() - timedelta(minutes=45))
        status = await SyncStatusReporter(store).get_sync_status()
        return status, await store.get_scrape_event(event_id)

    status, event = asyncio.run(scenario())
    assert status["syncHealth"] == "error"
    assert status["latestScrape"]["message"] == TIMED_OUT_MESSAGE
    assert status["activeAccounts"] == 1
    assert status["settings"] == {"enabled": True, "daysBack": 30}
    assert status["summary"]["has_never_synced"] is True
    assert status["accountSyncStatus"][0]["nickname"] == "Family Max"
    assert event.status == ScrapeStatus.FAILED
    assert event.message == TIMED_OUT_MESSAGE


def test_purge_keeps_started_and_recent_rows(store):
    from scrape_sync.orchestrator.sync_status import SyncStatusReporter

    async def scenario():
        old = utc_now() - timedelta(days=120)
        await store.insert_scrape_event("x", "max", date.today(), status=ScrapeStatus.SUCCESS, created_at=old)
        await store.insert_scrape_event("x", "max", date.today(), status=ScrapeStatus.FAILED, created_at=old)
        await store.insert_scrape_event("x", "max", date.today(), created_at=old)
        await store.insert_scrape_event("x", "max", date.today(), status=ScrapeStatus.SUCCESS)
        deleted = await SyncStatusReporter(store).purge_scrape_events(older_than_days=90)
        return deleted, await store.count_scrape_events(), await store.count_scrape_events(ScrapeStatus.STARTED)

    assert asyncio.run(scenario()) == (2, 2, 1)


def test_credential_variants():
    """Test payload shaping per vendor family"""
    from scrape_sync.models import VendorCredential
    from scrape_sync.tools.credentials import prepare_credentials

    hapoalim = VendorCredential(id=1, vendor="hapoalim", username="AB123", password="pw",
                                bank_account_number="12-345")
    assert prepare_credentials("hapoalim", hapoalim) == {"userCode": "AB123", "password": "pw", "num": "12-345"}

    isracard = VendorCredential(id=2, vendor="isracard", id_number="123456789", card6_digits="654321",
                                password="pw")
    assert prepare_credentials("isracard", isracard) == {
        "id": "123456789", "card6Digits": "654321", "password": "pw"}

    assert prepare_credentials("visaCal", {"username": "dana", "password": "pw"}) == {
        "username": "dana", "password": "pw"}


def test_validate_credentials_names_missing_fields():
    from scrape_sync.tools.credentials import validate_credentials
    from scrape_sync.utils.errors import ValidationError

    with pytest.raises(ValidationError, match="userCode, password"):
        validate_credentials("hapoalim", {"userCode": "", "password": ""})
    validate_credentials("max", {"username": "dana", "password": "pw"})


def test_resolve_vendor():
    from scrape_sync.tools.credentials import resolve_vendor
    from scrape_sync.utils.errors import ValidationError

    assert resolve_vendor("visacal") == "visaCal"
    assert resolve_vendor("max") == "max"
    with pytest.raises(ValidationError):
        resolve_vendor("paypal")
    with pytest.raises(ValidationError):
        resolve_vendor("")


def test_cipher_decrypts_stored_secrets():
    from scrape_sync.models import VendorCredential
    from scrape_sync.tools.credentials import CredentialCipher, prepare_credentials
    from scrape_sync.utils.errors import ValidationError

    cipher = CredentialCipher(CredentialCipher.generate_key())
    stored = VendorCredential(id=1, vendor="max", username=cipher.encrypt("dana"), password=cipher.encrypt("pw"))
    assert prepare_credentials("max", stored, cipher) == {"username": "dana", "password": "pw"}

    other = CredentialCipher(CredentialCipher.generate_key())
    with pytest.raises(ValidationError):
        prepare_credentials("max", stored, other)


def test_mask_credentials():
    from scrape_sync.tools.credentials import mask_credentials, mask_value

    assert mask_value("secret-password") == "se***********rd"
    assert mask_value("abcd") == "****"
    assert mask_value(None) == ""
    assert mask_credentials({"username": "dana.levi"}) == {"username": "da*****vi"}


def test_scraper_options_per_vendor():
    """Rate-limited timeouts, isracard category override, request-level showBrowser"""
    from scrape_sync.tools.scraper_client import ScraperSettings, build_scraper_options

    settings = ScraperSettings(scraper_timeout=60000, scraper_timeout_rate_limited=120000,
                               fetch_categories_from_scrapers=True, isracard_scrape_categories=False,
                               log_http_requests=True)
    creds = {"username": "dana", "password": "pw"}

    max_options = build_scraper_options("max", date(2025, 1, 1), creds, settings)
    assert max_options["timeout"] == 120000
    assert max_options["fetchCategories"] is True
    assert max_options["showBrowser"] is False
    assert max_options["logRequests"] is True
    assert max_options["startDate"] == "2025-01-01"

    leumi_options = build_scraper_options("leumi", date(2025, 1, 1), creds, settings, show_browser=True)
    assert leumi_options["timeout"] == 60000
    assert leumi_options["showBrowser"] is True

    isracard_options = build_scraper_options("isracard", date(2025, 1, 1), creds, settings)
    assert isracard_options["fetchCategories"] is False


def test_load_scraper_settings_from_store(store):
    from scrape_sync.tools.scraper_client import load_scraper_settings

    async def scenario():
        await store.set_setting("scraper_timeout", 30000)
        await store.set_setting("update_category_on_rescrape", True)
        return await load_scraper_settings(store)

    settings = asyncio.run(scenario())
    assert settings.scraper_timeout == 30000
    assert settings.scraper_timeout_rate_limited == 120000
    assert settings.update_category_on_rescrape is True
    assert settings.show_browser is False


def test_scraper_client_requires_scrape():
    from scrape_sync.tools.scraper_client import ScraperClient

    class Incomplete(ScraperClient):
        pass

    with pytest.raises(TypeError):
        ScraperClient()
    with pytest.raises(TypeError):
        Incomplete()


def test_fixture_scraper_falls_back_to_sample(fixtures_dir, tmp_path):
    from scrape_sync.tools.scraper_client import FixtureScraper
    from scrape_sync.utils.errors import ScraperError

    seen = []
    scraper = FixtureScraper(str(fixtures_dir))
    result = asyncio.run(scraper.scrape({"companyId": "visaCal"}, {}, lambda company, event: seen.append(event)))
    assert result["success"] is True
    assert result["accounts"][0]["accountNumber"] == "4580"
    assert seen[0] == {"type": "initializing"}

    with pytest.raises(ScraperError):
        asyncio.run(FixtureScraper(str(tmp_path)).scrape({"companyId": "max"}, {}, lambda *_: None))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
