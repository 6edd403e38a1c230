"""Scrape Orchestrator - drives one external scrape from admission to audit record"""

import asyncio
import inspect
import time
import uuid
from datetime import date, timedelta
from decimal import InvalidOperation
from typing import Any, Callable, Dict, Optional, Set, Tuple

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from scrape_sync.constants import EventKind, ProgressPhase, ScrapeStatus, UpsertOutcome
from scrape_sync.ingestion import (
    CategoryCache,
    CategoryResolver,
    DedupEngine,
    OwnershipClaimer,
    normalize_transaction,
)
from scrape_sync.ingestion.dedup_engine import is_bank_vendor
from scrape_sync.models import (
    BatchOutcome,
    CategoryQuery,
    Checkpoint,
    ProgressEvent,
    RunOutcome,
    RunStats,
    ScrapedAccount,
    ScrapedTransaction,
    ScrapeRequest,
    ScrapeResult,
    VendorCredential,
)
from scrape_sync.orchestrator.concurrency_guard import ConcurrencyGuard
from scrape_sync.orchestrator.progress_channel import ProgressChannel, ProgressTranslator
from scrape_sync.tools.credentials import (
    CREDENTIALS_HINT,
    CredentialCipher,
    prepare_credentials,
    resolve_vendor,
    validate_credentials,
)
from scrape_sync.tools.scraper_client import (
    ScraperClient,
    ScraperSettings,
    build_scraper_options,
    load_scraper_settings,
)
from scrape_sync.utils import metrics
from scrape_sync.utils.errors import (
    FinalizationError,
    PersistenceError,
    ScraperError,
    ScrapeSyncError,
    ValidationError,
)
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)

# should_continue(checkpoint) -> bool (or awaitable bool); False stops processing
ContinuationPredicate = Callable[[Checkpoint], Any]

SAVING_START_PERCENT = 80
SAVING_END_PERCENT = 98


class CancellationSignal:
    """Explicit cancellation channel usable as a continuation predicate"""

    def __init__(self):
        self.reason: Optional[str] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "Cancelled by user") -> None:
        self._cancelled = True
        self.reason = reason
        logger.info("Cancellation requested", reason=reason)

    def __call__(self, checkpoint: Checkpoint) -> bool:
        return not self._cancelled


class PreparedRun(BaseModel):
    """Everything resolved before the audit row is written"""

    request: ScrapeRequest
    vendor: str
    credential: Optional[VendorCredential] = None
    credentials: Dict[str, str]
    settings: ScraperSettings
    triggered_by: str
    audit_id: int


class ScrapeOrchestrator:
    """
    Runs scrapes: init -> credential_prep -> validating -> scraping -> saving
    -> finalizing -> success | failed | cancelled.

    Every outcome is reported as exactly one terminal channel event; no
    exception escapes run() or sync_all().
    """

    def __init__(
        self,
        store,
        scraper: ScraperClient,
        cache: Optional[CategoryCache] = None,
        guard: Optional[ConcurrencyGuard] = None,
        state_store=None,
        cipher: Optional[CredentialCipher] = None,
    ):
        self.store = store
        self.scraper = scraper
        self.cache = cache or CategoryCache()
        self.guard = guard or ConcurrencyGuard(store)
        self.state_store = state_store
        self.cipher = cipher
        self.claimer = OwnershipClaimer(store)
        self._background: Set[asyncio.Task] = set()

    def new_channel(self) -> ProgressChannel:
        return ProgressChannel(uuid.uuid4().hex, self.state_store)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(
        self,
        request: ScrapeRequest,
        channel: Optional[ProgressChannel] = None,
        should_continue: Optional[ContinuationPredicate] = None,
    ) -> RunOutcome:
        """
        Execute one scrape end to end.

        Args:
            request: What to scrape and with which credential
            channel: Channel to publish on; a fresh one when omitted
            should_continue: Checked before every account and every transaction

        Returns:
            RunOutcome with the final status and statistics
        """
        channel = channel or self.new_channel()
        self._announce(request, channel)
        try:
            async with self.guard.exclusive(channel.run_id, lambda: self._prepare(request)) as prepared:
                return await self._execute(prepared, channel, should_continue)
        except ScrapeSyncError as e:
            return self._reject(request, channel, e)

    def start_in_background(
        self,
        request: ScrapeRequest,
        should_continue: Optional[ContinuationPredicate] = None,
    ) -> Tuple[ProgressChannel, asyncio.Task]:
        """Schedule run() as a task; the run outlives any subscriber of the returned channel"""
        channel = self.new_channel()
        task = asyncio.create_task(self.run(request, channel, should_continue))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        logger.info("Scrape scheduled in background", run_id=channel.run_id, vendor=request.vendor)
        return channel, task

    async def sync_all(
        self,
        start_date: Optional[date] = None,
        days_back: Optional[int] = None,
        channel: Optional[ProgressChannel] = None,
        should_continue: Optional[ContinuationPredicate] = None,
        scheduled: bool = False,
    ) -> BatchOutcome:
        """
        Scrape every active credential in turn under one admission.

        Credentials never synced go first, then the least recently synced.
        A failing account is reported with account_error and the batch moves on.

        Args:
            start_date: Earliest date to fetch; defaults to today - days_back
            days_back: Defaults to the sync_days_back setting (30)
            channel: Batch channel; per-account progress is forwarded onto it
            should_continue: Checked before each account and inside each run
            scheduled: True for background syncs, which honour sync_enabled
        """
        channel = channel or self.new_channel()
        outcome = BatchOutcome(batch_id=channel.run_id)
        started = time.monotonic()

        if scheduled and not await self.store.get_bool_setting("sync_enabled", True):
            outcome.message = "Background sync is disabled"
            channel.complete(outcome.message, summary=outcome.model_dump(mode="json", exclude={"runs"}))
            return outcome

        if start_date is None:
            if days_back is None:
                days_back = await self.store.get_int_setting("sync_days_back", 30)
            start_date = date.today() - timedelta(days=days_back)

        try:
            async with self.guard.exclusive(channel.run_id):
                credentials = await self.store.list_active_credentials()
                outcome.total = len(credentials)
                if not credentials:
                    outcome.message = "No active accounts to sync"
                    channel.complete(outcome.message, summary=outcome.model_dump(mode="json", exclude={"runs"}))
                    return outcome

                channel.publish(EventKind.QUEUE, {
                    "total": len(credentials),
                    "accounts": [{"id": c.id, "nickname": c.display_name(), "vendor": c.vendor} for c in credentials],
                })
                logger.info(f"🚀 Starting batch sync of {len(credentials)} accounts", batch_id=channel.run_id)

                for index, credential in enumerate(credentials):
                    checkpoint = Checkpoint(kind="account", account_index=index)
                    if not await self._continue(should_continue, checkpoint):
                        outcome.cancelled = True
                        break

                    run = await self._sync_one(index, len(credentials), credential, start_date,
                                               channel, should_continue)
                    outcome.runs.append(run)
                    if run.status == ScrapeStatus.FAILED:
                        outcome.failed += 1
                    else:
                        outcome.succeeded += 1
                    if run.status == ScrapeStatus.CANCELLED:
                        outcome.cancelled = True
                        break
        except ScrapeSyncError as e:
            outcome.error_type = e.error_type
            outcome.message = e.message
            channel.error(e.message, e.error_type, hint=e.hint)
            return outcome

        duration = int(time.monotonic() - started)
        if outcome.cancelled:
            outcome.message = f"Batch sync cancelled after {len(outcome.runs)} of {outcome.total} accounts"
        elif outcome.failed:
            outcome.message = f"Synced {outcome.succeeded} of {outcome.total} accounts, {outcome.failed} failed"
        else:
            outcome.message = "All accounts synced successfully"
        summary = outcome.model_dump(mode="json", exclude={"runs"})
        summary["durationSeconds"] = duration
        channel.complete(outcome.message, summary=summary, cancelled=outcome.cancelled)
        logger.info(f"✅ Batch sync finished: {outcome.message}", batch_id=channel.run_id, duration_seconds=duration)
        return outcome

    # ------------------------------------------------------------------
    # Run phases
    # ------------------------------------------------------------------

    def _announce(self, request: ScrapeRequest, channel: ProgressChannel) -> None:
        channel.progress("init", f"Initializing scraper for {request.vendor}...", 0,
                         ProgressPhase.INITIALIZATION)

    async def _prepare(self, request: ScrapeRequest) -> PreparedRun:
        """credential_prep + validating, then the audit row; raises before any external call"""
        vendor = resolve_vendor(request.vendor)

        credential = None
        if request.credential_id is not None:
            credential = await self.store.get_credential(request.credential_id)
            if credential is None:
                raise ValidationError(f"Credential {request.credential_id} not found")
            if credential.vendor != vendor:
                raise ValidationError(
                    f"Credential {request.credential_id} belongs to {credential.vendor}, not {vendor}")
            payload = prepare_credentials(vendor, credential, self.cipher)
        else:
            payload = prepare_credentials(vendor, request.credentials or {})

        validate_credentials(vendor, payload)
        settings = await load_scraper_settings(self.store)

        triggered_by = (
            request.triggered_by
            or (credential.display_name() if credential else None)
            or payload.get("username") or payload.get("id") or payload.get("userCode")
            or "unknown"
        )
        audit_id = await self.guard.insert_scrape_audit(triggered_by, vendor, request.start_date,
                                                        request.retry_count)
        return PreparedRun(
            request=request,
            vendor=vendor,
            credential=credential,
            credentials=payload,
            settings=settings,
            triggered_by=triggered_by,
            audit_id=audit_id,
        )

    def _reject(self, request: ScrapeRequest, channel: ProgressChannel, error: ScrapeSyncError) -> RunOutcome:
        """Run refused before an audit row existed"""
        logger.warning(f"Scrape not started: {error.message}", vendor=request.vendor,
                       error_type=error.error_type)
        channel.error(error.message, error.error_type, hint=error.hint)
        metrics.scrape_runs_total.labels(vendor=request.vendor, status="rejected").inc()
        return RunOutcome(
            run_id=channel.run_id,
            vendor=request.vendor,
            status=ScrapeStatus.FAILED,
            error_type=error.error_type,
            message=error.message,
        )

    async def _execute(
        self,
        prepared: PreparedRun,
        channel: ProgressChannel,
        should_continue: Optional[ContinuationPredicate],
    ) -> RunOutcome:
        """scraping -> saving -> finalizing; the audit row is finalized exactly once, in finally"""
        vendor = prepared.vendor
        stats = RunStats()
        started = time.monotonic()
        error: Optional[ScrapeSyncError] = None
        interrupted = False
        logger.info(f"🚀 Starting scrape run: {channel.run_id}", vendor=vendor, audit_id=prepared.audit_id)

        try:
            channel.progress(
                "date_range",
                f"Scraping from {prepared.request.start_date.isoformat()} to {date.today().isoformat()}",
                4, ProgressPhase.INITIALIZATION,
            )
            channel.progress("browser", "Launching browser...", 5, ProgressPhase.INITIALIZATION)
            options = build_scraper_options(vendor, prepared.request.start_date, prepared.credentials,
                                            prepared.settings, prepared.request.show_browser)
            channel.progress("scraping", "Connecting to bank/credit card website...", 15,
                             ProgressPhase.INITIALIZATION)

            result = await self._invoke_scraper(options, prepared.credentials, ProgressTranslator(channel))

            channel.progress("saving", "Saving transactions...", SAVING_START_PERCENT, ProgressPhase.SAVING)
            stats.cancelled = await self._ingest(prepared, result, stats, channel, should_continue)

            if not stats.cancelled and prepared.credential is not None:
                try:
                    await self.store.update_credential_last_synced(prepared.credential.id)
                except PersistenceError as e:
                    raise FinalizationError(f"Failed to update last synced time: {e.message}")
        except asyncio.CancelledError:
            logger.warning(f"Scrape task cancelled: {channel.run_id}", vendor=vendor, audit_id=prepared.audit_id)
            interrupted = stats.cancelled = True
            raise
        except ScrapeSyncError as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected scrape failure: {e}", vendor=vendor, run_id=channel.run_id)
            error = ScrapeSyncError(f"Unexpected error: {e}")
        finally:
            stats.duration_seconds = int(time.monotonic() - started)
            if error is not None:
                status = ScrapeStatus.FAILED
                message = f"Failed: {error.message}"
            elif interrupted:
                status = ScrapeStatus.CANCELLED
                message = f"Cancelled: run interrupted before completion; {stats.summary_message()}"
            elif stats.cancelled:
                status = ScrapeStatus.CANCELLED
                message = f"Cancelled: {stats.summary_message()}"
            else:
                status = ScrapeStatus.SUCCESS
                message = f"Success: {stats.summary_message()}"

            try:
                await self.guard.update_scrape_audit(prepared.audit_id, status, message,
                                                     stats.to_report(), stats.duration_seconds)
            except PersistenceError as e:
                logger.error(f"Failed to finalize audit record: {e.message}", audit_id=prepared.audit_id)
                if error is None:
                    error = FinalizationError(f"Failed to write final audit record: {e.message}")
                    status = ScrapeStatus.FAILED
                    message = f"Failed: {error.message}"

            self._emit_terminal(channel, prepared, status, stats, error)
            metrics.scrape_runs_total.labels(vendor=vendor, status=status.value).inc()
            metrics.scrape_run_duration.labels(vendor=vendor).observe(stats.duration_seconds)

        logger.info(f"✅ Scrape run finished: {channel.run_id} ({status.value})", vendor=vendor,
                    audit_id=prepared.audit_id, duration_seconds=stats.duration_seconds)
        return RunOutcome(
            run_id=channel.run_id,
            vendor=vendor,
            status=status,
            audit_id=prepared.audit_id,
            stats=stats,
            error_type=error.error_type if error else None,
            message=message,
        )

    async def _invoke_scraper(self, options: Dict[str, Any], credentials: Dict[str, str],
                              on_progress: ProgressTranslator) -> ScrapeResult:
        """Call the external scraper once; no retry"""
        try:
            raw = await self.scraper.scrape(options, credentials, on_progress)
        except ScraperError as e:
            raise ScraperError(e.message, hint=e.hint or CREDENTIALS_HINT)
        except Exception as e:
            logger.error(f"Scraper raised: {e}", vendor=options.get("companyId"))
            raise ScraperError(str(e) or e.__class__.__name__, hint=CREDENTIALS_HINT)

        try:
            result = ScrapeResult.model_validate(raw or {})
        except PydanticValidationError as e:
            raise ScraperError(f"Scraper returned a malformed result: {e.error_count()} problems")

        if not result.success:
            reason = result.error_message or result.error_type or "Scraper reported failure"
            raise ScraperError(reason, hint=CREDENTIALS_HINT)
        return result

    async def _ingest(
        self,
        prepared: PreparedRun,
        result: ScrapeResult,
        stats: RunStats,
        channel: ProgressChannel,
        should_continue: Optional[ContinuationPredicate],
    ) -> bool:
        """
        Route every account and transaction through ownership, category and upsert.

        Returns:
            True when the continuation predicate stopped processing
        """
        vendor = prepared.vendor
        is_bank = is_bank_vendor(vendor)
        credential_id = prepared.credential.id if prepared.credential else None
        resolver = await CategoryResolver.load(self.store, self.cache)
        engine = DedupEngine(self.store, prepared.settings.update_category_on_rescrape)
        accounts = result.accounts

        for account_index, account in enumerate(accounts):
            checkpoint = Checkpoint(kind="account", account_index=account_index,
                                    account_number=account.account_number)
            if not await self._continue(should_continue, checkpoint):
                logger.info("Processing stopped before account", vendor=vendor, account_index=account_index)
                return True

            claim = await self.claimer.claim(vendor, account.account_number, credential_id)
            if claim.conflict:
                stats.skipped_cards += 1
                continue

            stats.accounts += 1
            for txn_index, raw in enumerate(account.transactions):
                checkpoint = Checkpoint(kind="transaction", account_index=account_index,
                                        transaction_index=txn_index, account_number=account.account_number)
                if not await self._continue(should_continue, checkpoint):
                    logger.info("Processing stopped mid-account", vendor=vendor,
                                account_index=account_index, transaction_index=txn_index)
                    return True
                stats.transactions += 1
                await self._ingest_transaction(vendor, account, raw, is_bank, resolver, engine, stats)

            percent = SAVING_START_PERCENT + (SAVING_END_PERCENT - SAVING_START_PERCENT) * (account_index + 1) // len(accounts)
            channel.progress(
                "savingAccount",
                f"Saved account {account.account_number} ({account_index + 1}/{len(accounts)})",
                percent, ProgressPhase.SAVING, True,
                accountNumber=account.account_number,
            )
        return False

    async def _ingest_transaction(self, vendor: str, account: ScrapedAccount, raw: Dict[str, Any],
                                  is_bank: bool, resolver: CategoryResolver, engine: DedupEngine,
                                  stats: RunStats) -> None:
        try:
            scraped = ScrapedTransaction.from_raw(raw)
            resolution = resolver.resolve(CategoryQuery(
                name=scraped.description,
                scraper_category=scraped.category,
                is_bank=is_bank,
                price=scraped.price,
            ))
            txn = normalize_transaction(scraped, vendor, account.account_number, resolution)
        except PydanticValidationError as e:
            self._skip_malformed(vendor, account, is_bank, stats, f"{e.error_count()} problems")
            return
        except InvalidOperation as e:
            self._skip_malformed(vendor, account, is_bank, stats, f"bad amount ({e.__class__.__name__})")
            return

        result = await engine.upsert(txn, derived_identifier=scraped.identifier is None)
        stats.record_outcome(result.outcome, is_bank)

        if result.outcome in (UpsertOutcome.SAVED, UpsertOutcome.UPDATED):
            stats.record_category(resolution.source)
            stats.processed_transactions.append({
                "identifier": result.identifier,
                "accountNumber": account.account_number,
                "date": txn.date.isoformat(),
                "name": txn.name,
                "price": str(txn.price),
                "category": txn.category,
                "categorySource": txn.category_source.value if txn.category_source else None,
                "outcome": result.outcome.value,
            })

    @staticmethod
    def _skip_malformed(vendor: str, account: ScrapedAccount, is_bank: bool, stats: RunStats, reason: str) -> None:
        logger.warning(f"Skipping malformed transaction: {reason}",
                       vendor=vendor, account_number=account.account_number)
        stats.record_outcome(UpsertOutcome.FAILED, is_bank)
        metrics.transactions_ingested.labels(vendor=vendor, outcome=UpsertOutcome.FAILED.value).inc()

    def _emit_terminal(self, channel: ProgressChannel, prepared: PreparedRun, status: ScrapeStatus,
                       stats: RunStats, error: Optional[ScrapeSyncError]) -> Optional[ProgressEvent]:
        if error is not None:
            return channel.error(
                f"Scrape failed: {error.message}",
                error.error_type,
                hint=error.hint,
                auditId=prepared.audit_id,
                summary=stats.to_report(),
            )
        if status == ScrapeStatus.CANCELLED:
            message = "Scrape cancelled, processed transactions were kept"
        else:
            message = "Scraping completed successfully!"
        return channel.complete(message, stats.to_report(), cancelled=stats.cancelled,
                                auditId=prepared.audit_id, vendor=prepared.vendor)

    async def _sync_one(self, index: int, total: int, credential: VendorCredential, start_date: date,
                        batch: ProgressChannel, should_continue: Optional[ContinuationPredicate]) -> RunOutcome:
        """One account of a batch; its progress is forwarded with overall percent"""
        batch.publish(EventKind.ACCOUNT_START, {
            "index": index,
            "id": credential.id,
            "nickname": credential.display_name(),
            "vendor": credential.vendor,
        })

        child = ProgressChannel(f"{batch.run_id}:{credential.id}", self.state_store)

        def forward(event: ProgressEvent) -> None:
            if event.kind == EventKind.NETWORK:
                batch.publish(EventKind.NETWORK, {"accountId": credential.id, **event.data})
            elif event.kind == EventKind.PROGRESS:
                account_percent = event.data.get("percent", 0)
                overall = (index * 100 + account_percent) * SAVING_END_PERCENT // (total * 100)
                batch.progress(
                    event.data.get("step", "unknown"),
                    event.data.get("message", ""),
                    overall,
                    ProgressPhase(event.data.get("phase", ProgressPhase.PROCESSING.value)),
                    event.data.get("success"),
                    accountId=credential.id,
                    accountPercent=account_percent,
                )

        child.add_listener(forward)
        request = ScrapeRequest(
            vendor=credential.vendor,
            start_date=start_date,
            credential_id=credential.id,
            show_browser=False,
            triggered_by="sync-all",
        )
        self._announce(request, child)
        try:
            prepared = await self._prepare(request)
        except ScrapeSyncError as e:
            run = self._reject(request, child, e)
        else:
            run = await self._execute(prepared, child, should_continue)

        if run.status == ScrapeStatus.FAILED:
            batch.publish(EventKind.ACCOUNT_ERROR, {
                "id": credential.id,
                "message": run.message,
                "type": run.error_type,
            })
        else:
            batch.publish(EventKind.ACCOUNT_COMPLETE, {
                "id": credential.id,
                "summary": run.stats.to_report(),
                "cancelled": run.status == ScrapeStatus.CANCELLED,
            })
        return run

    @staticmethod
    async def _continue(should_continue: Optional[ContinuationPredicate], checkpoint: Checkpoint) -> bool:
        if should_continue is None:
            return True
        decision = should_continue(checkpoint)
        if inspect.isawaitable(decision):
            decision = await decision
        return bool(decision)
