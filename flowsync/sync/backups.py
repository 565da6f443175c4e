"""BackupSyncer: versioned snapshots of workflow definitions.

A pass walks the provider's workflow listing and stores a new backup
version whenever a mirrored workflow changed since its last backup. A
workflow only gets backups once the workflow syncer has mirrored it, and
never when its backups are switched off. Each workflow keeps at most
``sync.backup_retention`` versions; older ones are pruned.
"""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

from flowsync.config import FlowSyncConfig
from flowsync.db.database import session_scope
from flowsync.db.repository import Repository, as_utc
from flowsync.exceptions import FlowSyncError
from flowsync.providers.client import ProviderClient
from flowsync.providers.registry import ProviderRegistry
from flowsync.sync.common import ProviderLocks, fan_out, parse_timestamp, read_setting
from flowsync.sync.cron import count_nodes
from flowsync.types import BackupSyncResult, FanOutResult, Provider, SyncKind, SyncLogStatus

if TYPE_CHECKING:
    from flowsync.configstore import ConfigStore

logger = logging.getLogger(__name__)

RETENTION_KEY = "sync.backup_retention"
PAGE_SIZE_KEY = "sync.workflow_page_size"
CONCURRENCY_KEY = "sync.max_concurrent_providers"


class BackupSyncer:
    """Backs up workflow definitions for one or all providers."""

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

    async def sync_provider(self, provider: Provider) -> BackupSyncResult:
        """Run one backup pass for *provider*.

        Per-workflow failures land in ``errors``; a failed listing aborts
        the pass and raises.
        """
        retention = int(await read_setting(self._config_store, RETENTION_KEY, self._config.backup_retention))
        page_size = int(await read_setting(self._config_store, PAGE_SIZE_KEY, self._config.workflow_page_size))
        async with self._locks.for_provider(provider.id):
            api_key = await self._registry.get_api_key(provider.id)
            async with session_scope(self._session_factory) as session:
                log = await Repository(session).start_sync_log(provider.id, SyncKind.BACKUPS.value)

            result = BackupSyncResult()
            try:
                async with self._registry.client(provider.base_url, api_key, provider_id=provider.id) as client:
                    async for page in client.list_workflows(limit=page_size):
                        for remote in page:
                            await self._backup_one(client, provider, remote, retention, result)
            except FlowSyncError as exc:
                await self._finish(log.id, provider.id, result, error=exc.message)
                raise

            await self._finish(log.id, provider.id, result)
            logger.info(
                "Backup sync for %s: %d processed, %d backed up, %d unchanged, %d skipped, %d pruned, %d error(s)",
                provider.name, result.processed, result.backed_up, result.unchanged, result.skipped,
                result.pruned, len(result.errors),
            )
            return result

    async def sync_providers(self, providers: list[Provider]) -> FanOutResult:
        concurrency = await read_setting(self._config_store, CONCURRENCY_KEY, self._config.max_concurrent_providers)
        return await fan_out(SyncKind.BACKUPS, providers, self.sync_provider, int(concurrency))

    async def sync_all_providers(self) -> FanOutResult:
        providers = await self._registry.list_providers(connected_only=True)
        return await self.sync_providers(providers)

    # ── Internals ──

    async def _backup_one(
        self, client: ProviderClient, provider: Provider, remote: dict, retention: int, result: BackupSyncResult
    ) -> None:
        remote_id = str(remote.get("id") or "")
        if not remote_id:
            result.errors.append("Skipped a workflow without an id")
            return
        result.processed += 1
        try:
            async with session_scope(self._session_factory) as session:
                repo = Repository(session)
                workflow = await repo.get_workflow_by_remote_id(provider.id, remote_id)
                if workflow is None or workflow.backup_enabled is False:
                    result.skipped += 1
                    return
                latest = await repo.latest_workflow_backup(workflow.id)

            remote_updated = parse_timestamp(remote.get("updatedAt"))
            if latest is not None and remote_updated is not None and as_utc(latest.remote_updated_at) == remote_updated:
                result.unchanged += 1
                return
            definition = remote if "nodes" in remote else await client.get_workflow(remote_id)
            if latest is not None and remote_updated is None and latest.definition == definition:
                result.unchanged += 1
                return

            async with session_scope(self._session_factory) as session:
                repo = Repository(session)
                backup = await repo.add_workflow_backup(
                    workflow, definition, remote_updated, count_nodes(definition.get("nodes") or []),
                )
                result.pruned += await repo.prune_workflow_backups(workflow.id, retention)
            result.backed_up += 1
            logger.debug("Backed up workflow %s as version %d", backup.name, backup.version)
        except FlowSyncError as exc:
            result.errors.append(f"Failed to back up workflow {remote.get('name') or remote_id}: {exc.message}")
        except (KeyError, TypeError, ValueError) as exc:
            result.errors.append(f"Failed to parse workflow {remote.get('name') or remote_id}: {exc}")

    async def _finish(self, log_id: str, provider_id: str, result: BackupSyncResult, error: Optional[str] = None) -> None:
        async with session_scope(self._session_factory) as session:
            await Repository(session).complete_sync_log(
                log_id,
                SyncLogStatus.ERROR if error else SyncLogStatus.SUCCESS,
                processed=result.processed,
                inserted=result.backed_up,
                error_message=error,
            )
        await self._registry.mark_health(provider_id, error is None, error=error)
