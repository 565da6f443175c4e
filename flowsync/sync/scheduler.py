"""SyncScheduler: recurring and on-demand sync passes, one at a time.

States: ``stopped`` (no loop), ``idle`` (loop armed, nothing running) and
``running`` (a pass is in flight). At most one pass runs per process. An
automatic tick that finds a pass in flight is skipped and logged; a manual
trigger in the same situation returns a ``busy`` report immediately.

``stop()`` never cancels a pass mid-flight: the loop finishes the current
pass, sees the stop signal, and exits.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from flowsync.config import FlowSyncConfig
from flowsync.exceptions import ConfigurationError, FlowSyncError
from flowsync.sync.common import read_setting
from flowsync.types import (
    FanOutResult, SchedulerState, SchedulerStatus, SyncKind, SyncReport, SyncRunStatus,
)

if TYPE_CHECKING:
    from flowsync.configstore import ConfigStore
    from flowsync.providers import ProviderRegistry
    from flowsync.sync.backups import BackupSyncer
    from flowsync.sync.executions import ExecutionSyncer
    from flowsync.sync.workflows import WorkflowSyncer

logger = logging.getLogger(__name__)

SYNC_ENABLED_KEY = "features.sync_enabled"
SYNC_INTERVAL_KEY = "features.sync_interval_minutes"


class SyncScheduler:
    """Owns the sync timer and the single-flight lock.

    Args:
        workflow_syncer: runs workflow passes.
        execution_syncer: runs execution passes.
        registry: resolves a provider id when a manual trigger is scoped to one.
        config_store: optional source of the interval and the enable flag.
        config: process settings; fallback interval and batch sizes.
        clock: returns the current UTC time.
        backup_syncer: runs backup passes; ``full`` passes skip backups without one.
    """

    def __init__(
        self,
        workflow_syncer: "WorkflowSyncer",
        execution_syncer: "ExecutionSyncer",
        registry: "ProviderRegistry",
        config_store: Optional["ConfigStore"] = None,
        config: Optional[FlowSyncConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        backup_syncer: Optional["BackupSyncer"] = None,
    ) -> None:
        self._workflows = workflow_syncer
        self._executions = execution_syncer
        self._backups = backup_syncer
        self._registry = registry
        self._config_store = config_store
        self._config = config or FlowSyncConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._state = SchedulerState.STOPPED
        self._interval_seconds = self._config.sync_interval_minutes * 60
        self._last_run_at: datetime | None = None
        self._next_run_at: datetime | None = None
        self._last_result: SyncReport | None = None
        self._last_error: str | None = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Arm the loop. The first pass fires immediately when ``sync_on_start`` is set."""
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        if not self._lock.locked():
            self._state = SchedulerState.IDLE
        self._interval_seconds = await self._resolve_interval()
        self._task = asyncio.create_task(self._loop(), name="flowsync-sync-scheduler")
        logger.info("SyncScheduler started (interval %.0fs)", self._interval_seconds)

    async def stop(self) -> None:
        """Stop the loop, letting any in-flight pass complete first."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        self._state = SchedulerState.STOPPED
        self._next_run_at = None
        logger.info("SyncScheduler stopped")

    @property
    def state(self) -> SchedulerState:
        return self._state

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            state=self._state,
            running=self._state == SchedulerState.RUNNING,
            interval_seconds=self._interval_seconds,
            last_run_at=self._last_run_at,
            next_run_at=self._next_run_at,
            last_result=self._last_result,
            last_error=self._last_error,
        )

    # ── Passes ───────────────────────────────────────────────────────────────

    async def trigger_sync(
        self, kind: SyncKind = SyncKind.FULL, scope: str = "all", full_resync: bool = False
    ) -> SyncReport:
        """Run a manual pass now, or report ``busy`` if one is already in flight.

        Args:
            kind: ``workflows``, ``executions``, ``backups`` or ``full``.
            scope: ``"all"`` or a single provider id.
            full_resync: walk the whole execution history instead of resuming
                from each provider's cursor.
        """
        kind = SyncKind(kind)
        if self._lock.locked():
            logger.info("Manual %s sync requested while a pass is running; reporting busy", kind.value)
            return SyncReport(status=SyncRunStatus.BUSY, kind=kind, scope=scope, started_at=self._clock())
        return await self._run(kind, scope, manual=True, full_resync=full_resync)

    async def tick(self) -> Optional[SyncReport]:
        """One automatic pass. Returns ``None`` when skipped because a pass is running."""
        if self._lock.locked():
            logger.info("Scheduled sync skipped: previous pass still running")
            return None
        if not await self._sync_enabled():
            logger.info("Scheduled sync skipped: %s is false", SYNC_ENABLED_KEY)
            report = SyncReport(status=SyncRunStatus.SKIPPED, kind=SyncKind.FULL, started_at=self._clock())
            self._last_result = report
            return report
        return await self._run(SyncKind.FULL, "all", manual=False)

    async def _run(self, kind: SyncKind, scope: str, manual: bool, full_resync: bool = False) -> SyncReport:
        async with self._lock:
            self._state = SchedulerState.RUNNING
            report = SyncReport(status=SyncRunStatus.COMPLETED, kind=kind, scope=scope, started_at=self._clock())
            logger.info("%s %s sync started (scope=%s)", "Manual" if manual else "Scheduled", kind.value, scope)
            try:
                providers = await self._providers(scope)
                batch_size = self._config.manual_execution_batch_size if manual else None
                if kind in (SyncKind.WORKFLOWS, SyncKind.FULL):
                    report.workflows = await self._workflows.sync_providers(providers)
                if kind in (SyncKind.EXECUTIONS, SyncKind.FULL):
                    report.executions = await self._executions.sync_providers(
                        providers, full_resync=full_resync, batch_size=batch_size,
                    )
                if kind == SyncKind.BACKUPS and self._backups is None:
                    raise ConfigurationError("Workflow backups are not configured")
                if kind in (SyncKind.BACKUPS, SyncKind.FULL) and self._backups is not None:
                    report.backups = await self._backups.sync_providers(providers)
            except FlowSyncError as exc:
                logger.warning("%s sync failed: [%s] %s", kind.value, exc.kind, exc.message)
                report.status = SyncRunStatus.FAILED
                report.error = exc.message
            except Exception as exc:
                logger.exception("%s sync raised unexpectedly", kind.value)
                report.status = SyncRunStatus.FAILED
                report.error = f"{exc.__class__.__name__}: {exc}"
            finally:
                report.finished_at = self._clock()
                self._last_run_at = report.started_at
                self._last_result = report
                self._last_error = report.error or self._provider_error(report)
                self._state = SchedulerState.IDLE if self._loop_active() else SchedulerState.STOPPED
            logger.info("%s sync finished with status %s", kind.value, report.status.value)
            return report

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        first = True
        while not self._stop_event.is_set():
            if first and self._config.sync_on_start:
                delay = 0.0
            else:
                self._interval_seconds = await self._resolve_interval()
                delay = self._interval_seconds
            first = False
            self._next_run_at = self._clock() + timedelta(seconds=delay)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.tick()
            except Exception:
                logger.exception("SyncScheduler tick raised unexpectedly")

    def _loop_active(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stop_event.is_set()

    async def _providers(self, scope: str):
        if scope == "all":
            return await self._registry.list_providers(connected_only=True)
        return [await self._registry.get_provider(scope)]

    async def _sync_enabled(self) -> bool:
        if self._config_store is None:
            return True
        try:
            enabled = await self._config_store.get(SYNC_ENABLED_KEY)
        except FlowSyncError as exc:
            logger.warning("Could not read %s (%s); assuming enabled", SYNC_ENABLED_KEY, exc.message)
            return True
        return enabled is None or bool(enabled)

    async def _resolve_interval(self) -> float:
        minutes = await read_setting(self._config_store, SYNC_INTERVAL_KEY, self._config.sync_interval_minutes)
        return float(minutes) * 60

    @staticmethod
    def _provider_error(report: SyncReport) -> Optional[str]:
        for fan_out in (report.executions, report.workflows, report.backups):
            if isinstance(fan_out, FanOutResult):
                for outcome in fan_out.per_provider:
                    if not outcome.success:
                        return f"{outcome.provider_name}: {outcome.error}"
        return None
