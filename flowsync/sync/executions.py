"""ExecutionSyncer: incremental ingestion of execution history.

The cursor is the latest ``startedAt`` seen by the last successful pass for
a provider (stored on its sync log). Listings arrive newest first, so a pass
stops paging at the first execution older than the cursor. Executions still
``running`` locally are then re-fetched by id so they can reach a terminal
status; one the provider no longer has is marked ``crashed``. Full resync
ignores the cursor.

A record that fails to store is retried: the cursor stops at the oldest
such record. A record that cannot be parsed is reported and passed over,
since reading it again would fail the same way.

Terminal statuses never change once stored. AI token and cost totals are
recomputed from the payload and assigned on every upsert, so replaying a
record cannot inflate them.
"""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, NamedTuple, Optional

from flowsync.config import FlowSyncConfig
from flowsync.db.database import session_scope
from flowsync.db.models import ExecutionModel
from flowsync.db.repository import Repository
from flowsync.exceptions import FlowSyncError, NotFoundError
from flowsync.providers.client import ProviderClient
from flowsync.providers.registry import ProviderRegistry
from flowsync.sync.ai_metrics import extract_ai_metrics
from flowsync.sync.common import ProviderLocks, fan_out, parse_timestamp, read_setting
from flowsync.types import (
    AIMetrics, ExecutionStatus, ExecutionSyncResult, FanOutResult, Provider,
    SyncKind, SyncLogStatus, TERMINAL_STATUSES,
)

if TYPE_CHECKING:
    from flowsync.configstore import ConfigStore

logger = logging.getLogger(__name__)

BATCH_SIZE_KEY = "sync.execution_batch_size"
CONCURRENCY_KEY = "sync.max_concurrent_providers"

_STATUS_MAP = {
    "success": ExecutionStatus.SUCCESS,
    "failed": ExecutionStatus.FAILED,
    "error": ExecutionStatus.ERROR,
    "crashed": ExecutionStatus.CRASHED,
    "canceled": ExecutionStatus.FAILED,
    "running": ExecutionStatus.RUNNING,
    "new": ExecutionStatus.RUNNING,
    "waiting": ExecutionStatus.RUNNING,
}


def map_status(remote: dict) -> ExecutionStatus:
    """Map a remote execution to a local status. Unknown values become ``error``."""
    raw = remote.get("status")
    if raw:
        return _STATUS_MAP.get(str(raw).lower(), ExecutionStatus.ERROR)
    # Older instances omit status; infer it from the completion flags.
    if remote.get("finished"):
        return ExecutionStatus.SUCCESS
    if remote.get("stoppedAt"):
        return ExecutionStatus.ERROR
    return ExecutionStatus.RUNNING


def _metric_fields(metrics: AIMetrics) -> dict:
    return {
        "total_tokens": metrics.total_tokens,
        "input_tokens": metrics.input_tokens,
        "output_tokens": metrics.output_tokens,
        "ai_cost": metrics.ai_cost,
        "ai_provider": metrics.ai_provider,
        "ai_model": metrics.ai_model,
    }


class _Walk(NamedTuple):
    seen: set[str]
    newest: Optional[datetime]
    retry: list[Optional[datetime]]     # startedAt of records that failed to store


class ExecutionSyncer:
    """Syncs execution history for one or all providers."""

    def __init__(
        self,
        session_factory,
        registry: ProviderRegistry,
        config: Optional[FlowSyncConfig] = None,
        locks: Optional[ProviderLocks] = None,
        clock: Optional[Callable[[], datetime]] = None,
        config_store: Optional["ConfigStore"] = None,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._config = config or FlowSyncConfig()
        self._locks = locks or ProviderLocks()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._config_store = config_store

    async def sync_provider(
        self,
        provider: Provider,
        full_resync: bool = False,
        batch_size: Optional[int] = None,
    ) -> ExecutionSyncResult:
        """Ingest executions for *provider* since its last successful pass.

        Args:
            full_resync: ignore the stored cursor and walk the whole history.
            batch_size: page size; defaults to ``sync.execution_batch_size``.
        """
        batch_size = batch_size or int(await read_setting(
            self._config_store, BATCH_SIZE_KEY, self._config.execution_batch_size,
        ))
        async with self._locks.for_provider(provider.id):
            api_key = await self._registry.get_api_key(provider.id)
            async with session_scope(self._session_factory) as session:
                repo = Repository(session)
                previous = None if full_resync else await repo.get_last_cursor(provider.id, SyncKind.EXECUTIONS.value)
                log = await repo.start_sync_log(provider.id, SyncKind.EXECUTIONS.value)

            watermark = parse_timestamp(previous)
            result = ExecutionSyncResult()
            try:
                async with self._registry.client(provider.base_url, api_key, provider_id=provider.id) as client:
                    walk = await self._ingest(client, provider, watermark, batch_size, result)
                    await self._refresh_running(client, provider, walk.seen, result)
            except FlowSyncError as exc:
                await self._finish(log.id, provider.id, result, error=exc.message)
                raise

            result.cursor = self._next_cursor(previous, watermark, walk)
            await self._finish(log.id, provider.id, result)
            logger.info(
                "Execution sync for %s: %d processed, %d inserted, %d updated, %d refreshed, "
                "%d abandoned, %d error(s)",
                provider.name, result.processed, result.inserted, result.updated, result.refreshed,
                result.abandoned, len(result.errors),
            )
            return result

    async def sync_providers(
        self, providers: list[Provider], full_resync: bool = False, batch_size: Optional[int] = None
    ) -> FanOutResult:
        async def one(provider: Provider) -> ExecutionSyncResult:
            return await self.sync_provider(provider, full_resync=full_resync, batch_size=batch_size)

        concurrency = await read_setting(self._config_store, CONCURRENCY_KEY, self._config.max_concurrent_providers)
        return await fan_out(SyncKind.EXECUTIONS, providers, one, int(concurrency))

    async def sync_all_providers(self, full_resync: bool = False, batch_size: Optional[int] = None) -> FanOutResult:
        """Sync every connected provider; failures are isolated per provider."""
        providers = await self._registry.list_providers(connected_only=True)
        return await self.sync_providers(providers, full_resync=full_resync, batch_size=batch_size)

    async def backfill_ai_metrics(self, provider_id: Optional[str] = None) -> int:
        """Recompute token and cost totals from stored execution payloads.

        Returns:
            Number of executions whose totals changed.
        """
        async with session_scope(self._session_factory) as session:
            repo = Repository(session)
            changed = 0
            for execution in await repo.list_executions_with_data(provider_id):
                fields = _metric_fields(extract_ai_metrics(execution.execution_data))
                if all(getattr(execution, k) == v for k, v in fields.items()):
                    continue
                await repo.upsert_execution(execution.provider_id, execution.provider_execution_id, fields)
                changed += 1
        logger.info("Backfilled AI metrics on %d execution(s)", changed)
        return changed

    # ── Internals ──

    @staticmethod
    def _next_cursor(previous: Optional[str], watermark: Optional[datetime], walk: _Walk) -> Optional[str]:
        if walk.retry:
            if any(started is None for started in walk.retry):
                return previous
            return min(walk.retry).isoformat()
        latest = max(filter(None, [watermark, walk.newest]), default=None)
        return latest.isoformat() if latest else previous

    async def _ingest(
        self,
        client: ProviderClient,
        provider: Provider,
        watermark: Optional[datetime],
        batch_size: int,
        result: ExecutionSyncResult,
    ) -> _Walk:
        walk = _Walk(seen=set(), newest=None, retry=[])
        newest: Optional[datetime] = None
        async for page in client.list_executions(limit=batch_size, include_data=True):
            reached_cursor = False
            for remote in page:
                started = parse_timestamp(remote.get("startedAt"))
                if watermark is not None and started is not None and started < watermark:
                    reached_cursor = True
                    break
                remote_id = str(remote.get("id") or "")
                walk.seen.add(remote_id)
                result.processed += 1
                if started is not None and (newest is None or started > newest):
                    newest = started
                try:
                    created = await self._store(provider.id, remote)
                except FlowSyncError as exc:
                    result.errors.append(f"Failed to store execution {remote_id}: {exc.message}")
                    walk.retry.append(started)
                    continue
                except (KeyError, TypeError, ValueError) as exc:
                    result.errors.append(f"Skipped unparseable execution {remote_id}: {exc}")
                    continue
                if created:
                    result.inserted += 1
                else:
                    result.updated += 1
            if reached_cursor:
                break
        return walk._replace(newest=newest)

    async def _refresh_running(
        self, client: ProviderClient, provider: Provider, seen: set[str], result: ExecutionSyncResult
    ) -> None:
        async with session_scope(self._session_factory) as session:
            running = await Repository(session).list_running_executions(provider.id)
        for execution in running:
            remote_id = execution.provider_execution_id
            if remote_id in seen:
                continue
            try:
                remote = await client.get_execution(remote_id)
            except NotFoundError:
                await self._abandon(provider.id, remote_id)
                result.abandoned += 1
                continue
            except FlowSyncError as exc:
                result.errors.append(f"Failed to refresh execution {remote_id}: {exc.message}")
                continue
            try:
                await self._store(provider.id, remote)
            except FlowSyncError as exc:
                result.errors.append(f"Failed to store execution {remote_id}: {exc.message}")
                continue
            except (KeyError, TypeError, ValueError) as exc:
                result.errors.append(f"Skipped unparseable execution {remote_id}: {exc}")
                continue
            result.refreshed += 1

    async def _abandon(self, provider_id: str, remote_id: str) -> None:
        """The provider deleted an execution we still hold as running."""
        async with session_scope(self._session_factory) as session:
            await Repository(session).upsert_execution(provider_id, remote_id, {
                "status": ExecutionStatus.CRASHED.value,
                "finished": True,
            })
        logger.info("Execution %s vanished from provider %s while running; marked crashed", remote_id, provider_id)

    async def _store(self, provider_id: str, remote: dict) -> bool:
        """Upsert one remote execution. Returns True when a row was inserted."""
        remote_id = str(remote["id"])
        remote_workflow_id = str(remote.get("workflowId") or "")
        if not remote_workflow_id:
            raise ValueError("execution has no workflowId")

        started = parse_timestamp(remote.get("startedAt"))
        stopped = parse_timestamp(remote.get("stoppedAt"))
        status = map_status(remote)
        fields = {
            "provider_workflow_id": remote_workflow_id,
            "status": status.value,
            "mode": remote.get("mode"),
            "finished": bool(remote.get("finished", status in TERMINAL_STATUSES)),
            "started_at": started,
            "stopped_at": stopped,
            "duration_ms": int((stopped - started).total_seconds() * 1000) if started and stopped else None,
        }
        # Listings fetched without run data must not wipe stored totals.
        if remote.get("data"):
            fields["execution_data"] = {"data": remote["data"]}
            fields.update(_metric_fields(extract_ai_metrics(remote)))

        async with session_scope(self._session_factory) as session:
            repo = Repository(session)
            existing = await repo.get_execution_by_remote_id(provider_id, remote_id)
            if existing is not None and self._is_terminal(existing):
                for key in ("status", "mode", "finished", "started_at", "stopped_at", "duration_ms"):
                    fields.pop(key)
            workflow = await repo.ensure_workflow(provider_id, remote_workflow_id)
            fields["workflow_id"] = workflow.id
            _, created = await repo.upsert_execution(provider_id, remote_id, fields)
        return created

    @staticmethod
    def _is_terminal(execution: ExecutionModel) -> bool:
        return ExecutionStatus(execution.status) in TERMINAL_STATUSES

    async def _finish(self, log_id: str, provider_id: str, result: ExecutionSyncResult, error: Optional[str] = None) -> None:
        async with session_scope(self._session_factory) as session:
            await Repository(session).complete_sync_log(
                log_id,
                SyncLogStatus.ERROR if error else SyncLogStatus.SUCCESS,
                processed=result.processed,
                inserted=result.inserted,
                updated=result.updated,
                cursor=None if error else result.cursor,
                error_message=error,
            )
        await self._registry.mark_health(provider_id, error is None, error=error, synced=error is None)
