"""
Scheduler Service for MLS sync

Periodically triggers a provider's orchestrator at the configured sync
interval. A tick that finds a run still active for the provider is skipped,
never queued.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from .mls_sync_orchestrator import MLSSyncOrchestrator
from .models import StartSyncResult, SyncOptions, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SchedulerStatus:
    """Status of a provider's schedule"""
    provider_id: str
    enabled: bool
    interval_seconds: float
    last_run_id: Optional[str] = None
    next_run_eta: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    skipped_ticks: int = 0
    is_running: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'provider_id': self.provider_id,
            'enabled': self.enabled,
            'interval_seconds': self.interval_seconds,
            'last_run_id': self.last_run_id,
            'next_run_eta': self.next_run_eta.isoformat() if self.next_run_eta else None,
            'last_tick_at': self.last_tick_at.isoformat() if self.last_tick_at else None,
            'skipped_ticks': self.skipped_ticks,
            'is_running': self.is_running,
        }


class SyncScheduler:
    """
    Timer driving one provider's orchestrator.

    Manages:
    - Starting and stopping the periodic loop
    - Skipping ticks while a run is active
    - Reporting the next expected run
    """

    def __init__(
        self,
        orchestrator: MLSSyncOrchestrator,
        interval_seconds: Optional[float] = None,
        options: Union[SyncOptions, Dict[str, Any], None] = None,
        run_immediately: bool = False,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds or orchestrator.provider.config.sync_interval_seconds
        self.options = options if isinstance(options, SyncOptions) else SyncOptions.from_dict(options)
        self.run_immediately = run_immediately
        self._sleep = sleep

        self._task: Optional[asyncio.Task] = None
        self.last_run_id: Optional[str] = None
        self.next_run_eta: Optional[datetime] = None
        self.last_tick_at: Optional[datetime] = None
        self.skipped_ticks = 0

    @property
    def provider_id(self) -> str:
        return self.orchestrator.provider_id

    @property
    def enabled(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """
        Start the periodic timer.

        Returns:
            False if the scheduler was already running
        """
        if self.enabled:
            return False

        first_delay = 0 if self.run_immediately else self.interval_seconds
        self.next_run_eta = utcnow() + timedelta(seconds=first_delay)
        self._task = asyncio.create_task(self._run_loop(first_delay))

        logger.info(f"Scheduler started for {self.provider_id} (interval: {self.interval_seconds:.0f}s)")
        return True

    async def stop(self) -> bool:
        """Stop the timer; a run already in progress is left to finish"""
        if not self.enabled:
            return False

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.next_run_eta = None

        logger.info(f"Scheduler stopped for {self.provider_id}")
        return True

    def set_interval(self, interval_seconds: float):
        """Change the interval; takes effect from the next wait"""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        logger.info(f"Scheduler interval for {self.provider_id} set to {interval_seconds:.0f}s")

    async def tick(self) -> Optional[StartSyncResult]:
        """
        Trigger one sync unless a run is already active.

        Returns:
            The start result, or None when the tick was skipped
        """
        self.last_tick_at = utcnow()

        if self.orchestrator.has_active_run():
            self.skipped_ticks += 1
            logger.info(f"Skipping scheduled sync for {self.provider_id}: a run is already active")
            return None

        result = await self.orchestrator.start(self.options)
        if result.success:
            self.last_run_id = result.run_id
        elif result.status == 'conflict':
            self.skipped_ticks += 1
        else:
            logger.warning(f"Scheduled sync for {self.provider_id} not started: {result.message}")
        return result

    async def _run_loop(self, first_delay: float):
        if first_delay:
            await self._sleep(first_delay)

        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in scheduler loop for {self.provider_id}: {e}")

            self.next_run_eta = utcnow() + timedelta(seconds=self.interval_seconds)
            await self._sleep(self.interval_seconds)

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            provider_id=self.provider_id,
            enabled=self.enabled,
            interval_seconds=self.interval_seconds,
            last_run_id=self.last_run_id,
            next_run_eta=self.next_run_eta if self.enabled else None,
            last_tick_at=self.last_tick_at,
            skipped_ticks=self.skipped_ticks,
            is_running=self.orchestrator.has_active_run(),
        )
