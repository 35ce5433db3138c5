"""
MLS Sync Orchestrator

Runs the fetch -> validate -> reconcile -> persist loop for one provider as a
state machine:

    idle -> running -> {completed, failed, paused}
    paused -> running (resume) | failed (abandon)

At most one non-terminal run exists per provider. The SyncRunRegistry is the
single place that knows which run owns a provider; only the task executing a
run mutates it, everyone else reads immutable snapshots.
"""

import asyncio
import dataclasses
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Union

from config.record_id import generate_run_id
from config.sync_config import SyncSettings
from .data_quality_service import DataQualityValidator
from .duplicate_detection_service import DuplicateDetector
from .errors import (
    AuthenticationError,
    DataError,
    InvalidTransitionError,
    ProviderError,
    RateLimitExceeded,
    RunNotFoundError,
)
from .mls_provider_service import BaseMLSProvider
from .models import (
    DateRange,
    PropertyPage,
    StartSyncResult,
    SuggestedAction,
    SyncError,
    SyncErrorType,
    SyncOptions,
    SyncRun,
    SyncRunSnapshot,
    SyncStatus,
    parse_datetime,
    utcnow,
)
from .property_store import CREATED, PropertyStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    SyncStatus.IDLE: {SyncStatus.RUNNING},
    SyncStatus.RUNNING: {SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.PAUSED},
    SyncStatus.PAUSED: {SyncStatus.RUNNING, SyncStatus.FAILED},
}

# Progress stays below this until the run actually completes
MAX_RUNNING_PROGRESS = 99.0


def transition(run: SyncRun, status: SyncStatus):
    """Move a run along an allowed edge; terminal states are set exactly once"""
    if status not in ALLOWED_TRANSITIONS.get(run.status, set()):
        raise InvalidTransitionError(
            f"Sync run {run.id} cannot move from {run.status.value} to {status.value}")

    previous = run.status
    run.status = status
    if status == SyncStatus.RUNNING and run.started_at is None:
        run.started_at = utcnow()
    if status.is_terminal:
        run.ended_at = utcnow()
        if status == SyncStatus.COMPLETED:
            run.progress = 100.0

    logger.info(f"Sync run {run.id}: {previous.value} -> {status.value}")


class SyncRunRegistry:
    """
    Active run per provider plus a bounded history of recent runs.

    Methods never await, so claim() is atomic with respect to the event loop.
    Paused runs keep their provider slot.
    """

    def __init__(self, history_limit: int = 50):
        self.history_limit = history_limit
        self._active: Dict[str, SyncRun] = {}
        self._runs: 'OrderedDict[str, SyncRun]' = OrderedDict()

    def claim(self, run: SyncRun) -> bool:
        current = self._active.get(run.provider_id)
        if current is not None and not current.status.is_terminal:
            return False
        self._active[run.provider_id] = run
        self._runs[run.id] = run
        self._trim()
        return True

    def release(self, run: SyncRun):
        if self._active.get(run.provider_id) is run:
            del self._active[run.provider_id]

    def _trim(self):
        while len(self._runs) > self.history_limit:
            oldest_id = next(
                (run_id for run_id, run in self._runs.items() if run.status.is_terminal), None)
            if oldest_id is None:
                break
            del self._runs[oldest_id]

    def active_run(self, provider_id: str) -> Optional[SyncRun]:
        return self._active.get(provider_id)

    def get(self, run_id: str) -> Optional[SyncRun]:
        return self._runs.get(run_id)

    def snapshot(self, run_id: str) -> Optional[SyncRunSnapshot]:
        run = self._runs.get(run_id)
        return run.snapshot() if run else None

    def latest_for(self, provider_id: str) -> Optional[SyncRun]:
        for run in reversed(self._runs.values()):
            if run.provider_id == provider_id:
                return run
        return None

    def active_snapshots(self) -> Dict[str, SyncRunSnapshot]:
        return {provider_id: run.snapshot() for provider_id, run in self._active.items()}


class MLSSyncOrchestrator:
    """
    Orchestrator for one provider's sync runs.

    Coordinates:
    - Provider adapter (authenticate, paged fetch with retry/backoff)
    - Data quality validation against the configured policy
    - Duplicate detection within a page and against recently synced listings
    - Persistence, counters, progress and the error log
    """

    def __init__(
        self,
        provider: BaseMLSProvider,
        store: PropertyStore,
        registry: Optional[SyncRunRegistry] = None,
        settings: Optional[SyncSettings] = None,
        validator: Optional[DataQualityValidator] = None,
        detector: Optional[DuplicateDetector] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.provider = provider
        self.store = store
        self.settings = settings or SyncSettings()
        self.registry = registry or SyncRunRegistry(self.settings.run_history_limit)
        self.validator = validator or DataQualityValidator(self.settings.min_quality_score)
        self.detector = detector or DuplicateDetector(store, self.settings.duplicate_batch_size)
        self._sleep = sleep
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def provider_id(self) -> str:
        return self.provider.provider_id

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    async def start(self, options: Union[SyncOptions, Dict[str, Any], None] = None,
                    wait: bool = False) -> StartSyncResult:
        """
        Start a sync run unless one is already active for this provider.

        Args:
            options: SyncOptions or an options payload
            wait: Await the run before returning

        Returns:
            StartSyncResult; status 'conflict' (no new run) when a run is active
        """
        if not isinstance(options, SyncOptions):
            options = SyncOptions.from_dict(options)

        active = self.registry.active_run(self.provider_id)
        if active is not None:
            return self._conflict(active)

        if not self.provider.config.enabled:
            logger.warning(f"Sync requested for disabled provider {self.provider_id}")
            return StartSyncResult(False, self.provider_id, 'disabled',
                                   message=f"Provider {self.provider_id} is disabled")

        options = await self._effective_options(options)

        run = SyncRun(id=generate_run_id(self.provider_id), provider_id=self.provider_id, options=options)
        if not self.registry.claim(run):
            return self._conflict(self.registry.active_run(self.provider_id))

        transition(run, SyncStatus.RUNNING)
        logger.info(f"Starting sync run {run.id} for {self.provider_id} "
                    f"({'full' if options.full_sync else 'incremental'})")

        task = asyncio.create_task(self._execute(run))
        self._tasks[run.id] = task
        if wait:
            await task

        return StartSyncResult(True, self.provider_id, 'started', run_id=run.id,
                               message="Sync started", run=run.snapshot())

    async def run_sync(self, options: Union[SyncOptions, Dict[str, Any], None] = None) -> StartSyncResult:
        """Start a run and wait for it to finish"""
        return await self.start(options, wait=True)

    def _conflict(self, active: SyncRun) -> StartSyncResult:
        logger.warning(f"Sync already {active.status.value} for {self.provider_id} (run {active.id})")
        return StartSyncResult(
            False, self.provider_id, 'conflict', run_id=active.id,
            message=f"Sync already {active.status.value} for provider {self.provider_id}",
            run=active.snapshot(),
        )

    def _own_run(self, run_id: str) -> SyncRun:
        run = self.registry.get(run_id)
        if run is None or run.provider_id != self.provider_id:
            raise RunNotFoundError(f"Sync run {run_id} not found for provider {self.provider_id}")
        return run

    def stop(self, run_id: str) -> bool:
        """
        Request cooperative cancellation.

        The run pauses before its next page fetch (or completes if the page in
        flight was the last one). Returns False if the run is not running.
        """
        run = self._own_run(run_id)
        if run.status != SyncStatus.RUNNING:
            return False
        run.stop_requested = True
        logger.info(f"Stop requested for sync run {run_id}")
        return True

    async def resume(self, run_id: str, wait: bool = False) -> StartSyncResult:
        """Continue a paused run from the next unfetched page"""
        run = self._own_run(run_id)
        if run.status != SyncStatus.PAUSED:
            return StartSyncResult(False, self.provider_id, run.status.value, run_id=run.id,
                                   message=f"Sync run {run_id} is {run.status.value}, not paused",
                                   run=run.snapshot())

        run.stop_requested = False
        transition(run, SyncStatus.RUNNING)
        logger.info(f"Resuming sync run {run.id} at page {run.next_page}")

        task = asyncio.create_task(self._execute(run))
        self._tasks[run.id] = task
        if wait:
            await task
        return StartSyncResult(True, self.provider_id, 'started', run_id=run.id,
                               message="Sync resumed", run=run.snapshot())

    async def abandon(self, run_id: str) -> bool:
        """Fail a paused run and free the provider slot"""
        run = self._own_run(run_id)
        if run.status != SyncStatus.PAUSED:
            return False
        transition(run, SyncStatus.FAILED)
        self.registry.release(run)
        await self._persist_run(run)
        return True

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> SyncRunSnapshot:
        """Wait for the run's current execution to finish and return its snapshot"""
        run = self._own_run(run_id)
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return run.snapshot()

    def has_active_run(self) -> bool:
        return self.registry.active_run(self.provider_id) is not None

    async def shutdown(self):
        """Cancel in-flight run tasks"""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self) -> Dict[str, Any]:
        """Last known run state plus its accumulated errors"""
        active = self.registry.active_run(self.provider_id)
        latest = active or self.registry.latest_for(self.provider_id)
        rate_limit = await self.provider.get_rate_limit_status()

        status = {
            'provider_id': self.provider_id,
            'enabled': self.provider.config.enabled,
            'is_running': bool(active and active.status == SyncStatus.RUNNING),
            'status': latest.status.value if latest else SyncStatus.IDLE.value,
            'current_run': None,
            'errors': [],
            'rate_limit': {
                'remaining': rate_limit.remaining,
                'reset_time': rate_limit.reset_time.isoformat(),
            },
        }
        if latest:
            snapshot = latest.snapshot()
            status['current_run'] = snapshot.to_dict()
            status['errors'] = [error.to_dict() for error in snapshot.errors]
        return status

    def get_progress(self, run_id: str) -> Optional[SyncRunSnapshot]:
        run = self.registry.get(run_id)
        if run is None or run.provider_id != self.provider_id:
            return None
        return run.snapshot()

    async def list_recent_errors(self, limit: int = 50, unresolved_only: bool = False) -> List[SyncError]:
        return await self.store.list_sync_errors(
            provider_id=self.provider_id, unresolved_only=unresolved_only, limit=limit)

    async def retry_error(self, error_id: str) -> bool:
        """
        Re-fetch the record an error refers to and ingest it.

        Returns:
            True if the record was fetched, stored and the error resolved
        """
        error = await self.store.get_sync_error(error_id)
        if error is None or error.provider_id != self.provider_id:
            logger.warning(f"Sync error {error_id} not found for {self.provider_id}")
            return False
        if error.resolved:
            return True
        if not error.mls_record_id:
            logger.warning(f"Sync error {error_id} does not reference a record, cannot retry")
            return False

        try:
            record = await self.provider.get_property_by_id(error.mls_record_id)
        except ProviderError as e:
            logger.error(f"Retry of {error.mls_record_id} failed: {e}")
            return False
        if record is None:
            logger.warning(f"Record {error.mls_record_id} no longer available from {self.provider_id}")
            return False

        action = await self.store.upsert_property(record)
        await self.store.append_history(error.run_id, self.provider_id, record.record_id, record.mls_id, action)
        await self._mark_resolved(error)
        logger.info(f"Retried {error.mls_record_id} ({action}), error {error_id} resolved")
        return True

    async def resolve_error(self, error_id: str) -> bool:
        error = await self.store.get_sync_error(error_id)
        if error is None or error.provider_id != self.provider_id:
            return False
        if not error.resolved:
            await self._mark_resolved(error)
        return True

    async def _mark_resolved(self, error: SyncError):
        error.resolved = True
        error.resolved_at = utcnow()
        await self.store.update_sync_error(error)

        run = self.registry.get(error.run_id) if error.run_id else None
        if run is not None:
            for entry in run.errors:
                if entry.id == error.id:
                    entry.resolved = True
                    entry.resolved_at = error.resolved_at

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _effective_options(self, options: SyncOptions) -> SyncOptions:
        """Incremental runs without a date range start where the last completed run started"""
        if options.full_sync or options.date_range is not None:
            return options
        try:
            previous = await self.store.list_sync_runs(
                provider_id=self.provider_id, status=SyncStatus.COMPLETED.value, limit=1)
        except Exception as e:
            logger.warning(f"Could not load previous runs for {self.provider_id}: {str(e)}")
            return options

        since = parse_datetime(previous[0].get('started_at')) if previous else None
        if since is None:
            return options
        return dataclasses.replace(options, date_range=DateRange(start=since, end=utcnow()))

    async def _execute(self, run: SyncRun):
        try:
            await self._persist_run(run)

            if not await self.provider.authenticate():
                await self._record_error(run, AuthenticationError(
                    f"Failed to authenticate with MLS provider {self.provider_id}"))
                transition(run, SyncStatus.FAILED)
                return

            await self._page_loop(run)

        except asyncio.CancelledError:
            if run.status == SyncStatus.RUNNING:
                await self._record_error(run, SyncError(
                    SyncErrorType.API, "Sync run cancelled during shutdown", retryable=True))
                transition(run, SyncStatus.FAILED)
            raise
        except Exception as e:
            logger.error(f"Unexpected error in sync run {run.id}: {str(e)}")
            if run.status == SyncStatus.RUNNING:
                await self._record_error(run, SyncError(SyncErrorType.API, str(e), retryable=False))
                transition(run, SyncStatus.FAILED)
        finally:
            self._tasks.pop(run.id, None)
            if run.status.is_terminal:
                self.registry.release(run)
            await self._persist_run(run)
            logger.info(
                f"Sync run {run.id} {run.status.value}: {run.records_processed} processed, "
                f"{run.records_created} created, {run.records_updated} updated, "
                f"{run.records_failed} failed, {len(run.errors)} errors")

    async def _page_loop(self, run: SyncRun):
        options = run.options
        while True:
            page_number = run.next_page

            try:
                page = await self._fetch_with_retry(run, page_number)
            except DataError as e:
                # Malformed page: record it and move on if more pages are known to exist
                await self._record_error(run, e)
                run.next_page = page_number + 1
                fetched_upto = page_number * self.provider.config.page_size
                if run.estimated_total is not None and fetched_upto < run.estimated_total:
                    if run.stop_requested:
                        transition(run, SyncStatus.PAUSED)
                        return
                    continue
                transition(run, SyncStatus.COMPLETED)
                return
            except ProviderError as e:
                await self._record_error(run, e)
                transition(run, SyncStatus.FAILED)
                return

            await self._process_page(run, page)

            run.pages_fetched += 1
            run.next_page = page_number + 1
            self._update_progress(run, page)
            await self._persist_run(run)

            reached_cap = bool(options.max_records and run.records_processed >= options.max_records)
            if not page.has_more or reached_cap:
                transition(run, SyncStatus.COMPLETED)
                return
            if run.stop_requested:
                transition(run, SyncStatus.PAUSED)
                return

    async def _fetch_with_retry(self, run: SyncRun, page_number: int) -> PropertyPage:
        """
        Fetch one page, retrying retryable failures with exponential backoff.

        Raises:
            The last ProviderError once attempts are exhausted, or immediately
            for non-retryable errors
        """
        attempts = max(1, self.settings.max_retries)
        for attempt in range(1, attempts + 1):
            try:
                return await self.provider.fetch_page(run.options, page_number)
            except AuthenticationError:
                raise
            except ProviderError as e:
                if not e.retryable or attempt >= attempts:
                    if e.retryable:
                        logger.error(f"Page {page_number} of run {run.id} failed after {attempt} attempts: {e}")
                    raise
                delay = self._retry_delay(e, attempt)
                logger.warning(f"Page {page_number} attempt {attempt}/{attempts} failed ({e}), "
                               f"retrying in {delay:.1f}s")
                await self._sleep(delay)

    def _retry_delay(self, error: ProviderError, attempt: int) -> float:
        if isinstance(error, RateLimitExceeded) and error.reset_at is not None:
            wait = (error.reset_at - utcnow()).total_seconds()
            return max(0.0, min(wait, self.settings.rate_limit_max_wait))
        return min(self.settings.retry_base_delay * (2 ** (attempt - 1)), self.settings.retry_max_delay)

    async def _process_page(self, run: SyncRun, page: PropertyPage):
        options = run.options

        # Records the adapter could not map
        for error in page.errors:
            await self._record_error(run, error)
            run.records_failed += 1
            run.records_processed += 1

        accepted = []
        if options.validate_data:
            scores = self.validator.validate_batch(page.records)
            for record, score in zip(page.records, scores):
                if not score.passes(self.settings.min_quality_score):
                    await self._record_error(run, SyncError(
                        SyncErrorType.VALIDATION,
                        f"Quality score {score.overall} below {self.settings.min_quality_score} "
                        f"for {record.mls_id}",
                        retryable=False,
                        mls_record_id=record.mls_id,
                        details={'score': score.overall, 'issues': list(score.issues)},
                    ))
                    if self.settings.exclude_below_quality:
                        run.records_failed += 1
                        run.records_processed += 1
                        await self._append_history(run, record, 'skipped')
                        continue
                accepted.append(record)
        else:
            accepted = list(page.records)

        candidates = []
        if not options.skip_duplicates and accepted:
            candidates = await self._detect_duplicates(run, accepted)

        for record in accepted:
            try:
                action = await self.store.upsert_property(record)
            except Exception as e:
                await self._record_error(run, DataError(
                    f"Failed to persist record {record.mls_id}: {str(e)}",
                    retryable=True, mls_record_id=record.mls_id))
                run.records_failed += 1
                run.records_processed += 1
                continue

            if action == CREATED:
                run.records_created += 1
            else:
                run.records_updated += 1
            run.records_processed += 1
            await self._append_history(run, record, action)

        if candidates:
            await self._store_candidates(run, candidates)

    async def _detect_duplicates(self, run: SyncRun, records) -> list:
        try:
            existing = await self.store.list_recent_properties(limit=self.settings.recent_window_size)
        except Exception as e:
            logger.warning(f"Could not load recent properties, comparing within page only: {str(e)}")
            existing = []

        return await self.detector.find_duplicates_async(
            records, existing, should_cancel=lambda: run.stop_requested)

    async def _store_candidates(self, run: SyncRun, candidates):
        try:
            run.duplicates_found += await self.detector.save_candidates(candidates)
        except Exception as e:
            logger.error(f"Error saving duplicate candidates for run {run.id}: {str(e)}")
            return

        if self.settings.auto_merge_duplicates:
            to_merge = [c for c in candidates if c.suggested_action == SuggestedAction.MERGE]
            for resolution in await self.detector.resolve_duplicates(to_merge):
                if not resolution.success:
                    logger.warning(f"Auto-merge of {resolution.candidate_id} failed: {resolution.error_message}")

    def _update_progress(self, run: SyncRun, page: PropertyPage):
        max_records = run.options.max_records
        if page.total_records is not None:
            total = page.total_records
            if max_records:
                total = min(total, max_records)
            run.estimated_total = total
        elif page.has_more:
            run.estimated_total = max(run.estimated_total or 0,
                                      run.records_processed + self.provider.config.page_size)
        else:
            run.estimated_total = run.records_processed

        if run.estimated_total:
            progress = min(run.records_processed / run.estimated_total * 100, MAX_RUNNING_PROGRESS)
            run.progress = max(run.progress, progress)

    async def _record_error(self, run: SyncRun, error: Union[ProviderError, SyncError]):
        if isinstance(error, ProviderError):
            error = error.to_sync_error(run.id, self.provider_id)
        else:
            error.run_id = run.id
            error.provider_id = self.provider_id

        run.errors.append(error)
        logger.warning(f"[{self.provider_id}] {error.error_type.value} error in run {run.id}: {error.message}")
        try:
            await self.store.append_sync_error(error)
        except Exception as e:
            logger.error(f"Error logging sync error {error.id}: {str(e)}")

    async def _append_history(self, run: SyncRun, record, action: str):
        try:
            await self.store.append_history(run.id, self.provider_id, record.record_id, record.mls_id, action)
        except Exception as e:
            logger.warning(f"Error writing sync history for {record.mls_id}: {str(e)}")

    async def _persist_run(self, run: SyncRun):
        try:
            await self.store.save_sync_run(run.snapshot())
        except Exception as e:
            logger.error(f"Error saving sync run {run.id}: {str(e)}")
