"""FlowSyncEngine: wires the sync subsystem together and exposes its boundary operations.

Usage:
    engine = FlowSyncEngine.from_config()
    await engine.start()
    report = await engine.trigger_manual_sync("all", "executions")
    await engine.stop()
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from sqlalchemy.engine import make_url

from flowsync.config import FlowSyncConfig
from flowsync.configstore import ConfigStore
from flowsync.credentials import CredentialVault
from flowsync.db.database import create_engine, create_session_factory, session_scope
from flowsync.db.repository import Repository
from flowsync.providers import ProviderRegistry
from flowsync.sync import BackupSyncer, ExecutionSyncer, ProviderLocks, SyncScheduler, WorkflowSyncer
from flowsync.types import (
    AuditMeta, ConfigAuditEntry, ConfigBatchResult, ConfigCategory, ConfigItem, ConnectionTestResult,
    Execution, ExecutionFilter, ExecutionMetrics, Provider, ProviderUpdate, SchedulerStatus,
    SyncKind, SyncReport, User, Workflow, WorkflowBackup, WorkflowFilter,
)

logger = logging.getLogger(__name__)


def _ensure_sqlite_dir(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def _meta(meta: Optional[AuditMeta], user: Optional[User]) -> AuditMeta:
    if meta is not None:
        return meta
    return AuditMeta.for_user(user) if user is not None else AuditMeta()


class FlowSyncEngine:
    """The Provider Sync & Metrics Engine.

    Every collaborator is injected; :meth:`from_config` builds the default set.
    """

    def __init__(
        self,
        config: FlowSyncConfig,
        db_engine,
        session_factory,
        vault: CredentialVault,
        config_store: ConfigStore,
        registry: ProviderRegistry,
        workflow_syncer: WorkflowSyncer,
        execution_syncer: ExecutionSyncer,
        scheduler: SyncScheduler,
        backup_syncer: Optional[BackupSyncer] = None,
    ):
        self.config = config
        self.db_engine = db_engine
        self.session_factory = session_factory
        self.vault = vault
        self.config_store = config_store
        self.registry = registry
        self.workflow_syncer = workflow_syncer
        self.execution_syncer = execution_syncer
        self.scheduler = scheduler
        self.backup_syncer = backup_syncer
        self._initialized = False

    @classmethod
    def from_config(
        cls,
        config: Optional[FlowSyncConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "FlowSyncEngine":
        """Build every collaborator from process settings.

        Raises:
            ConfigurationError: no encryption key is configured.
        """
        config = config or FlowSyncConfig()
        vault = CredentialVault.from_config(config)
        _ensure_sqlite_dir(config.database_url)
        db_engine = create_engine(config.database_url, echo=config.debug)
        session_factory = create_session_factory(db_engine)

        locks = ProviderLocks()
        config_store = ConfigStore(session_factory, vault, engine=db_engine)
        registry = ProviderRegistry(session_factory, vault, config=config, clock=clock, locks=locks)
        syncer_args = dict(config=config, locks=locks, clock=clock, config_store=config_store)
        workflow_syncer = WorkflowSyncer(session_factory, registry, **syncer_args)
        execution_syncer = ExecutionSyncer(session_factory, registry, **syncer_args)
        backup_syncer = BackupSyncer(session_factory, registry, **syncer_args)
        scheduler = SyncScheduler(
            workflow_syncer, execution_syncer, registry,
            config_store=config_store, config=config, clock=clock, backup_syncer=backup_syncer,
        )
        return cls(
            config, db_engine, session_factory, vault, config_store,
            registry, workflow_syncer, execution_syncer, scheduler, backup_syncer=backup_syncer,
        )

    # ── Lifecycle ──

    async def initialize(self) -> None:
        """Create or migrate the schema, seed configuration defaults, and import
        a single-instance n8n setup as the first provider."""
        if self._initialized:
            return
        await self.config_store.initialize()
        await self.registry.import_legacy_provider(self.config_store)
        self._initialized = True

    async def start(self) -> None:
        await self.initialize()
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.db_engine.dispose()

    # ── Sync ──

    async def trigger_manual_sync(
        self, scope: str = "all", kind: SyncKind = SyncKind.FULL, full_resync: bool = False
    ) -> SyncReport:
        """Run a pass now for every provider (``"all"``) or one provider id."""
        return await self.scheduler.trigger_sync(SyncKind(kind), scope, full_resync=full_resync)

    def get_scheduler_status(self) -> SchedulerStatus:
        return self.scheduler.get_status()

    async def backfill_ai_metrics(self, provider_id: Optional[str] = None) -> int:
        return await self.execution_syncer.backfill_ai_metrics(provider_id)

    # ── Configuration ──

    async def get_config(self, key: str) -> Any:
        return await self.config_store.get(key)

    async def set_config(
        self, key: str, value: Any, meta: Optional[AuditMeta] = None, user: Optional[User] = None
    ) -> ConfigItem:
        return await self.config_store.set(key, value, _meta(meta, user))

    async def set_configs(
        self, values: dict[str, Any], meta: Optional[AuditMeta] = None, user: Optional[User] = None
    ) -> ConfigBatchResult:
        return await self.config_store.set_many(values, _meta(meta, user))

    async def get_categories(self) -> list[ConfigCategory]:
        return await self.config_store.get_categories()

    async def reset_to_defaults(self, meta: Optional[AuditMeta] = None, user: Optional[User] = None) -> list[str]:
        return await self.config_store.reset_to_defaults(_meta(meta, user) if (meta or user) else None)

    async def get_config_audit_log(self, key: Optional[str] = None, limit: int = 100) -> list[ConfigAuditEntry]:
        return await self.config_store.get_audit_log(key, limit)

    # ── Providers ──

    async def register_provider(
        self, name: str, base_url: str, api_key: str, user: Optional[User] = None
    ) -> Provider:
        return await self.registry.register_provider(name, base_url, api_key, user_id=user.id if user else None)

    async def update_provider(self, provider_id: str, patch: ProviderUpdate) -> Provider:
        return await self.registry.update_provider(provider_id, patch)

    async def delete_provider(self, provider_id: str) -> bool:
        return await self.registry.delete_provider(provider_id)

    async def test_connection(self, base_url: str, api_key: str) -> ConnectionTestResult:
        return await self.registry.test_connection(base_url, api_key)

    async def list_providers(self, user: Optional[User] = None) -> list[Provider]:
        return await self.registry.list_providers(user_id=user.id if user else None)

    # ── Queries ──

    async def list_executions(self, ex_filter: Optional[ExecutionFilter] = None) -> list[Execution]:
        async with session_scope(self.session_factory) as session:
            rows = await Repository(session).list_executions(ex_filter)
        return [Repository.model_to_execution(r) for r in rows]

    async def execution_metrics(self, ex_filter: Optional[ExecutionFilter] = None) -> ExecutionMetrics:
        async with session_scope(self.session_factory) as session:
            return await Repository(session).execution_metrics(ex_filter)

    async def list_workflows(self, wf_filter: Optional[WorkflowFilter] = None) -> list[Workflow]:
        async with session_scope(self.session_factory) as session:
            rows = await Repository(session).list_workflows(wf_filter)
        return [Repository.model_to_workflow(r) for r in rows]

    async def list_cron_jobs(self, wf_filter: Optional[WorkflowFilter] = None) -> list[Workflow]:
        async with session_scope(self.session_factory) as session:
            rows = await Repository(session).list_cron_jobs(wf_filter)
        return [Repository.model_to_workflow(r) for r in rows]

    # ── Workflow backups ──

    async def list_workflow_backups(self, workflow_id: str) -> list[WorkflowBackup]:
        """Stored versions of a workflow, newest first, without their definitions."""
        async with session_scope(self.session_factory) as session:
            rows = await Repository(session).list_workflow_backups(workflow_id)
        return [Repository.model_to_backup(r) for r in rows]

    async def get_workflow_backup(self, backup_id: str) -> Optional[WorkflowBackup]:
        async with session_scope(self.session_factory) as session:
            row = await Repository(session).get_workflow_backup(backup_id)
        return Repository.model_to_backup(row, with_definition=True) if row is not None else None

    async def delete_workflow_backup(self, backup_id: str) -> bool:
        async with session_scope(self.session_factory) as session:
            return await Repository(session).delete_workflow_backup(backup_id)

    async def set_workflow_backup(self, workflow_id: str, enabled: bool) -> Optional[Workflow]:
        """Switch backups on or off for one workflow. Existing versions are kept."""
        async with session_scope(self.session_factory) as session:
            row = await Repository(session).set_workflow_backup_enabled(workflow_id, enabled)
        return Repository.model_to_workflow(row) if row is not None else None
