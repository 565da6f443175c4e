"""WorkflowSyncer: mirror remote workflow definitions into the local store.

One pass per provider: page through the remote listing, upsert each
workflow by ``(provider_id, provider_workflow_id)``, then archive every
local workflow the listing no longer contains. Archived rows are kept so
stored executions keep their parent.
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
from flowsync.sync.cron import count_connections, count_nodes, extract_cron_schedules
from flowsync.types import FanOutResult, Provider, SyncKind, SyncLogStatus, WorkflowSyncResult

if TYPE_CHECKING:
    from flowsync.configstore import ConfigStore

logger = logging.getLogger(__name__)

PAGE_SIZE_KEY = "sync.workflow_page_size"
CONCURRENCY_KEY = "sync.max_concurrent_providers"


def _tag_names(tags) -> list[str]:
    names = []
    for tag in tags or []:
        if isinstance(tag, dict):
            if tag.get("name"):
                names.append(str(tag["name"]))
        elif tag:
            names.append(str(tag))
    return names


class WorkflowSyncer:
    """Syncs workflow definitions for one or all providers."""

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

    async def sync_provider(self, provider: Provider) -> WorkflowSyncResult:
        """Run one workflow pass for *provider*.

        Per-workflow failures land in ``errors``. Failing to list, or to
        decrypt the provider's key, aborts the pass and raises.
        """
        async with self._locks.for_provider(provider.id):
            api_key = await self._registry.get_api_key(provider.id)
            async with session_scope(self._session_factory) as session:
                log = await Repository(session).start_sync_log(provider.id, SyncKind.WORKFLOWS.value)

            result = WorkflowSyncResult()
            try:
                async with self._registry.client(provider.base_url, api_key, provider_id=provider.id) as client:
                    present = await self._sync_listing(client, provider, result)

                now = self._clock()
                async with session_scope(self._session_factory) as session:
                    archived = await Repository(session).archive_missing_workflows(provider.id, present, now)
                result.archived = len(archived)
                if archived:
                    logger.info("Archived %d workflow(s) missing from %s: %s",
                                len(archived), provider.name, ", ".join(archived))
            except FlowSyncError as exc:
                await self._finish(log.id, provider.id, result, error=exc.message)
                raise

            await self._finish(log.id, provider.id, result)
            logger.info(
                "Workflow sync for %s: %d synced, %d created, %d updated, %d archived, %d error(s)",
                provider.name, result.synced, result.created, result.updated, result.archived, len(result.errors),
            )
            return result

    async def sync_providers(self, providers: list[Provider]) -> FanOutResult:
        concurrency = await read_setting(self._config_store, CONCURRENCY_KEY, self._config.max_concurrent_providers)
        return await fan_out(SyncKind.WORKFLOWS, providers, self.sync_provider, int(concurrency))

    async def sync_all_providers(self) -> FanOutResult:
        """Sync every connected provider; one provider's failure never stops the rest."""
        providers = await self._registry.list_providers(connected_only=True)
        return await self.sync_providers(providers)

    # ── Internals ──

    async def _sync_listing(self, client: ProviderClient, provider: Provider, result: WorkflowSyncResult) -> set[str]:
        present: set[str] = set()
        page_size = await read_setting(self._config_store, PAGE_SIZE_KEY, self._config.workflow_page_size)
        async for page in client.list_workflows(limit=int(page_size)):
            for remote in page:
                remote_id = str(remote.get("id") or "")
                if not remote_id:
                    result.errors.append("Skipped a workflow without an id")
                    continue
                present.add(remote_id)
                try:
                    await self._sync_one(client, provider, remote, result)
                except FlowSyncError as exc:
                    result.errors.append(f"Failed to sync workflow {remote.get('name') or remote_id}: {exc.message}")
                except (KeyError, TypeError, ValueError) as exc:
                    result.errors.append(f"Failed to parse workflow {remote.get('name') or remote_id}: {exc}")
        return present

    async def _sync_one(self, client: ProviderClient, provider: Provider, remote: dict, result: WorkflowSyncResult) -> None:
        remote_id = str(remote["id"])
        if "nodes" not in remote:
            remote = await client.get_workflow(remote_id)

        nodes = remote.get("nodes") or []
        remote_updated = parse_timestamp(remote.get("updatedAt"))
        fields = {
            "name": remote.get("name") or f"Workflow {remote_id}",
            "is_active": bool(remote.get("active")),
            "is_archived": bool(remote.get("isArchived", False)),
            "tags": _tag_names(remote.get("tags")),
            "cron_schedules": [c.model_dump() for c in extract_cron_schedules(nodes)],
            "node_count": count_nodes(nodes),
            "connection_count": count_connections(remote.get("connections")),
            "raw_definition": remote,
            "remote_updated_at": remote_updated,
            "last_synced_at": self._clock(),
        }

        async with session_scope(self._session_factory) as session:
            repo = Repository(session)
            existing = await repo.get_workflow_by_remote_id(provider.id, remote_id)
            if (
                existing is not None
                and remote_updated is not None
                and as_utc(existing.remote_updated_at) == remote_updated
                and bool(existing.is_archived) == fields["is_archived"]
            ):
                result.synced += 1
                result.skipped += 1
                return
            _, created = await repo.upsert_workflow(provider.id, remote_id, fields)

        result.synced += 1
        if created:
            result.created += 1
        else:
            result.updated += 1

    async def _finish(self, log_id: str, provider_id: str, result: WorkflowSyncResult, error: Optional[str] = None) -> None:
        async with session_scope(self._session_factory) as session:
            await Repository(session).complete_sync_log(
                log_id,
                SyncLogStatus.ERROR if error else SyncLogStatus.SUCCESS,
                processed=result.synced,
                inserted=result.created,
                updated=result.updated,
                error_message=error,
            )
        await self._registry.mark_health(provider_id, error is None, error=error, synced=error is None)
