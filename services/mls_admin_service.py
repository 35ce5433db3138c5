"""
MLS Admin Service

Caller surface over the sync subsystem: one orchestrator and one scheduler
per configured provider, sharing a run registry and a property store.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from config.sync_config import SyncConfig, get_config
from .duplicate_detection_service import DuplicateDetector
from .mls_provider_service import BaseMLSProvider, create_provider
from .mls_sync_orchestrator import MLSSyncOrchestrator, SyncRunRegistry
from .models import (
    DuplicateCandidate,
    DuplicateResolution,
    StartSyncResult,
    SuggestedAction,
    SyncError,
    SyncOptions,
    SyncStatus,
    utcnow,
)
from .property_store import PropertyStore
from .scheduler_service import SchedulerStatus, SyncScheduler

logger = logging.getLogger(__name__)


class MLSAdminService:
    """
    Service for operating MLS syncs.

    Handles:
    - Triggering, cancelling and resuming runs
    - Status, progress, history and error views
    - Provider toggles and sync intervals
    - Scheduler control
    - Duplicate review
    """

    def __init__(
        self,
        store: PropertyStore,
        config: Optional[SyncConfig] = None,
        providers: Optional[Dict[str, BaseMLSProvider]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.store = store
        self.config = config or get_config()
        self.registry = SyncRunRegistry(self.config.sync.run_history_limit)
        self.detector = DuplicateDetector(store, self.config.sync.duplicate_batch_size)

        self.providers: Dict[str, BaseMLSProvider] = {}
        self.orchestrators: Dict[str, MLSSyncOrchestrator] = {}
        self.schedulers: Dict[str, SyncScheduler] = {}

        providers = providers or {}
        for provider_id, provider_config in self.config.providers.items():
            provider = providers.get(provider_id) or create_provider(
                provider_config,
                token_refresh_margin=self.config.sync.token_refresh_margin,
                rate_limit_max_wait=self.config.sync.rate_limit_max_wait,
            )
            orchestrator = MLSSyncOrchestrator(
                provider,
                store,
                registry=self.registry,
                settings=self.config.sync,
                detector=self.detector,
                sleep=sleep,
            )
            self.providers[provider_id] = provider
            self.orchestrators[provider_id] = orchestrator
            self.schedulers[provider_id] = SyncScheduler(orchestrator, sleep=sleep)

    def _orchestrator(self, provider_id: str) -> Optional[MLSSyncOrchestrator]:
        orchestrator = self.orchestrators.get(provider_id)
        if orchestrator is None:
            logger.warning(f"Unknown MLS provider: {provider_id}")
        return orchestrator

    # Runs

    async def trigger_sync(self, provider_id: str,
                           options: Union[SyncOptions, Dict[str, Any], None] = None,
                           wait: bool = False) -> StartSyncResult:
        orchestrator = self._orchestrator(provider_id)
        if orchestrator is None:
            return StartSyncResult(False, provider_id, 'not_found',
                                   message=f"Provider {provider_id} not found")
        return await orchestrator.start(options, wait=wait)

    def cancel_sync(self, provider_id: str) -> bool:
        """Request the provider's running sync to pause"""
        active = self.registry.active_run(provider_id)
        if active is None or active.status != SyncStatus.RUNNING:
            return False
        return self.orchestrators[provider_id].stop(active.id)

    async def resume_sync(self, provider_id: str, wait: bool = False) -> StartSyncResult:
        orchestrator = self._orchestrator(provider_id)
        active = self.registry.active_run(provider_id)
        if orchestrator is None or active is None:
            return StartSyncResult(False, provider_id, 'not_found',
                                   message=f"No paused sync for provider {provider_id}")
        return await orchestrator.resume(active.id, wait=wait)

    async def abandon_sync(self, provider_id: str) -> bool:
        active = self.registry.active_run(provider_id)
        if active is None:
            return False
        return await self.orchestrators[provider_id].abandon(active.id)

    # Status

    async def get_all_sync_status(self) -> List[Dict[str, Any]]:
        return [await self.get_provider_sync_status(provider_id) for provider_id in self.orchestrators]

    async def get_provider_sync_status(self, provider_id: str) -> Optional[Dict[str, Any]]:
        orchestrator = self._orchestrator(provider_id)
        if orchestrator is None:
            return None
        status = await orchestrator.get_status()
        status['name'] = orchestrator.provider.config.name
        status['sync_interval_minutes'] = orchestrator.provider.config.sync_interval_minutes
        status['scheduler'] = self.schedulers[provider_id].get_status().to_dict()
        return status

    async def get_sync_progress(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Progress of a run from the registry, falling back to the stored row"""
        snapshot = self.registry.snapshot(run_id)
        if snapshot is not None:
            return snapshot.to_dict()
        try:
            return await self.store.get_sync_run(run_id)
        except Exception as e:
            logger.error(f"Error loading sync run {run_id}: {e}")
            return None

    async def get_recent_errors(self, provider_id: Optional[str] = None, limit: int = 50,
                                unresolved_only: bool = False) -> List[SyncError]:
        try:
            return await self.store.list_sync_errors(
                provider_id=provider_id, unresolved_only=unresolved_only, limit=limit)
        except Exception as e:
            logger.error(f"Error getting sync errors: {e}")
            return []

    async def retry_error(self, error_id: str) -> bool:
        error = await self.store.get_sync_error(error_id)
        if error is None or error.provider_id not in self.orchestrators:
            return False
        return await self.orchestrators[error.provider_id].retry_error(error_id)

    async def resolve_error(self, error_id: str) -> bool:
        error = await self.store.get_sync_error(error_id)
        if error is None or error.provider_id not in self.orchestrators:
            return False
        return await self.orchestrators[error.provider_id].resolve_error(error_id)

    async def get_sync_history(self, provider_id: Optional[str] = None, limit: int = 10) -> List[Dict]:
        """
        Get recent sync runs.

        Args:
            provider_id: Specific provider to filter (None = all providers)
            limit: Maximum records to return

        Returns:
            List of sync run rows, newest first
        """
        try:
            return await self.store.list_sync_runs(provider_id=provider_id, limit=limit)
        except Exception as e:
            logger.error(f"Error getting sync history: {e}")
            return []

    async def get_sync_summary(self, days: int = 7) -> Dict:
        """
        Get a summary of sync activity over the specified period.

        Args:
            days: Number of days to look back

        Returns:
            Dictionary with summary statistics
        """
        try:
            cutoff = utcnow() - timedelta(days=days)
            runs = await self.store.list_sync_runs(since=cutoff, limit=10_000)

            summary = {
                'period_days': days,
                'total_runs': len(runs),
                'successful_runs': len([r for r in runs if r.get('status') == SyncStatus.COMPLETED.value]),
                'failed_runs': len([r for r in runs if r.get('status') == SyncStatus.FAILED.value]),
                'total_processed': sum(r.get('records_processed', 0) for r in runs),
                'total_created': sum(r.get('records_created', 0) for r in runs),
                'total_updated': sum(r.get('records_updated', 0) for r in runs),
                'total_failed': sum(r.get('records_failed', 0) for r in runs),
                'total_duplicates': sum(r.get('duplicates_found', 0) for r in runs),
                'by_provider': {},
            }

            for provider_id in self.orchestrators:
                provider_runs = [r for r in runs if r.get('provider_id') == provider_id]
                summary['by_provider'][provider_id] = {
                    'runs': len(provider_runs),
                    'successful': len([r for r in provider_runs
                                       if r.get('status') == SyncStatus.COMPLETED.value]),
                    'processed': sum(r.get('records_processed', 0) for r in provider_runs),
                    'errors': sum(r.get('error_count', 0) for r in provider_runs),
                }

            return summary

        except Exception as e:
            logger.error(f"Error getting sync summary: {e}")
            return {}

    # Provider settings

    async def toggle_provider(self, provider_id: str, enabled: bool) -> bool:
        orchestrator = self._orchestrator(provider_id)
        if orchestrator is None:
            return False
        orchestrator.provider.config.enabled = enabled
        if not enabled:
            await self.schedulers[provider_id].stop()
        logger.info(f"Provider {provider_id} {'enabled' if enabled else 'disabled'}")
        return True

    def update_sync_interval(self, provider_id: str, interval_minutes: float) -> bool:
        orchestrator = self._orchestrator(provider_id)
        if orchestrator is None:
            return False
        if interval_minutes <= 0:
            raise ValueError(f"Sync interval must be positive: {interval_minutes}")
        orchestrator.provider.config.sync_interval_minutes = interval_minutes
        self.schedulers[provider_id].set_interval(interval_minutes * 60)
        return True

    # Scheduler

    def start_scheduler(self, provider_id: Optional[str] = None) -> Dict[str, bool]:
        """Start schedulers for enabled providers (or just one)"""
        provider_ids = [provider_id] if provider_id else list(self.schedulers)
        started = {}
        for pid in provider_ids:
            scheduler = self.schedulers.get(pid)
            if scheduler is None:
                continue
            if not self.providers[pid].config.enabled:
                logger.info(f"Not scheduling disabled provider {pid}")
                started[pid] = False
                continue
            started[pid] = scheduler.start()
        return started

    async def stop_scheduler(self, provider_id: Optional[str] = None) -> Dict[str, bool]:
        provider_ids = [provider_id] if provider_id else list(self.schedulers)
        return {
            pid: await self.schedulers[pid].stop()
            for pid in provider_ids if pid in self.schedulers
        }

    def get_scheduler_status(self) -> List[SchedulerStatus]:
        return [scheduler.get_status() for scheduler in self.schedulers.values()]

    # Duplicates

    async def get_pending_duplicates(self, limit: int = 50) -> List[DuplicateCandidate]:
        return await self.detector.get_pending_duplicates(limit)

    async def resolve_duplicate(self, candidate_id: str,
                                action: Optional[Union[SuggestedAction, str]] = None) -> DuplicateResolution:
        return await self.detector.resolve_duplicate_by_id(candidate_id, action)

    async def shutdown(self):
        """Stop schedulers, cancel in-flight runs and close provider sessions"""
        await self.stop_scheduler()
        for orchestrator in self.orchestrators.values():
            await orchestrator.shutdown()
        for provider in self.providers.values():
            provider.close()
        logger.info("MLS admin service shut down")
