"""Data access layer.

This is the ONLY layer that talks to the database. Every filter is compiled
into SQLAlchemy expressions; no SQL is assembled from strings.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, delete, update, case

from flowsync.db.models import (
    ProviderModel, WorkflowModel, WorkflowBackupModel, ExecutionModel, SyncLogModel,
    ConfigCategoryModel, ConfigItemModel, ConfigAuditLogModel,
)
from flowsync.types import (
    ExecutionFilter, ExecutionMetrics, ExecutionStatus, SyncLogStatus,
    TimeRange, WorkflowFilter, WorkflowState, AuditMeta,
    Provider, ProviderStatus, Workflow, WorkflowBackup, CronSchedule, Execution, ConfigAuditEntry,
)

_TIME_RANGES = {
    TimeRange.HOUR: timedelta(hours=1),
    TimeRange.DAY: timedelta(hours=24),
    TimeRange.WEEK: timedelta(days=7),
    TimeRange.MONTH: timedelta(days=30),
}

_FAILED_STATUSES = [
    ExecutionStatus.FAILED.value,
    ExecutionStatus.ERROR.value,
    ExecutionStatus.CRASHED.value,
]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Repository:
    """All database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    # ── Converters ──
    @staticmethod
    def model_to_provider(m: ProviderModel) -> Provider:
        """Convert a ProviderModel row to a Provider. The API key never leaves the row."""
        return Provider(
            id=m.id,
            user_id=m.user_id,
            name=m.name,
            base_url=m.base_url,
            is_connected=bool(m.is_connected),
            status=ProviderStatus(m.status or ProviderStatus.UNKNOWN.value),
            version=m.version,
            last_error=m.last_error,
            last_checked_at=as_utc(m.last_checked_at),
            last_synced_at=as_utc(m.last_synced_at),
            created_at=as_utc(m.created_at),
        )

    @staticmethod
    def model_to_workflow(m: WorkflowModel) -> Workflow:
        return Workflow(
            id=m.id,
            provider_id=m.provider_id,
            provider_workflow_id=m.provider_workflow_id,
            name=m.name,
            is_active=bool(m.is_active),
            is_archived=bool(m.is_archived),
            tags=list(m.tags or []),
            cron_schedules=[CronSchedule(**c) for c in (m.cron_schedules or [])],
            node_count=m.node_count or 0,
            connection_count=m.connection_count or 0,
            remote_updated_at=as_utc(m.remote_updated_at),
            last_synced_at=as_utc(m.last_synced_at),
            backup_enabled=m.backup_enabled is not False,
        )

    @staticmethod
    def model_to_backup(m: WorkflowBackupModel, with_definition: bool = False) -> WorkflowBackup:
        return WorkflowBackup(
            id=m.id,
            workflow_id=m.workflow_id,
            provider_id=m.provider_id,
            version=m.version,
            name=m.name,
            remote_updated_at=as_utc(m.remote_updated_at),
            node_count=m.node_count or 0,
            created_at=as_utc(m.created_at),
            definition=m.definition if with_definition else None,
        )

    @staticmethod
    def model_to_execution(m: ExecutionModel) -> Execution:
        return Execution(
            id=m.id,
            provider_id=m.provider_id,
            provider_execution_id=m.provider_execution_id,
            workflow_id=m.workflow_id,
            provider_workflow_id=m.provider_workflow_id,
            status=ExecutionStatus(m.status),
            mode=m.mode,
            finished=bool(m.finished),
            started_at=as_utc(m.started_at),
            stopped_at=as_utc(m.stopped_at),
            duration_ms=m.duration_ms,
            total_tokens=m.total_tokens or 0,
            input_tokens=m.input_tokens or 0,
            output_tokens=m.output_tokens or 0,
            ai_cost=m.ai_cost or 0.0,
            ai_provider=m.ai_provider,
            ai_model=m.ai_model,
        )

    @staticmethod
    def model_to_audit_entry(m: ConfigAuditLogModel) -> ConfigAuditEntry:
        return ConfigAuditEntry(
            id=m.id,
            config_key=m.config_key,
            old_value=m.old_value,
            new_value=m.new_value,
            changed_by=m.changed_by,
            change_reason=m.change_reason,
            ip_address=m.ip_address,
            user_agent=m.user_agent,
            timestamp=as_utc(m.created_at),
        )

    # ── Providers ──
    async def get_provider(self, provider_id: str) -> Optional[ProviderModel]:
        result = await self.session.execute(
            select(ProviderModel).where(ProviderModel.id == provider_id)
        )
        return result.scalar_one_or_none()

    async def list_providers(
        self,
        user_id: Optional[str] = None,
        connected_only: bool = False,
    ) -> list[ProviderModel]:
        """List providers, optionally only those marked connected."""
        query = select(ProviderModel)
        if user_id is not None:
            query = query.where(ProviderModel.user_id == user_id)
        if connected_only:
            query = query.where(ProviderModel.is_connected.is_(True))
        result = await self.session.execute(query.order_by(ProviderModel.name))
        return list(result.scalars().all())

    async def create_provider(self, **fields: Any) -> ProviderModel:
        provider = ProviderModel(**fields)
        self.session.add(provider)
        await self.session.commit()
        await self.session.refresh(provider)
        return provider

    async def update_provider(self, provider_id: str, updates: dict) -> Optional[ProviderModel]:
        """Apply *updates* and commit them as one transaction."""
        provider = await self.get_provider(provider_id)
        if provider is None:
            return None
        for key, value in updates.items():
            if hasattr(provider, key):
                setattr(provider, key, value)
        await self.session.commit()
        await self.session.refresh(provider)
        return provider

    async def delete_provider(self, provider_id: str) -> bool:
        """Delete a provider. Workflows, executions, backups and sync logs cascade."""
        result = await self.session.execute(
            delete(ProviderModel).where(ProviderModel.id == provider_id)
        )
        await self.session.commit()
        return result.rowcount > 0

    # ── Workflows ──
    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowModel]:
        result = await self.session.execute(
            select(WorkflowModel).where(WorkflowModel.id == workflow_id)
        )
        return result.scalar_one_or_none()

    async def get_workflow_by_remote_id(
        self, provider_id: str, provider_workflow_id: str
    ) -> Optional[WorkflowModel]:
        result = await self.session.execute(
            select(WorkflowModel).where(
                WorkflowModel.provider_id == provider_id,
                WorkflowModel.provider_workflow_id == provider_workflow_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_workflow(
        self, provider_id: str, provider_workflow_id: str, fields: dict
    ) -> tuple[WorkflowModel, bool]:
        """Insert or update by ``(provider_id, provider_workflow_id)``.

        Returns ``(record, created)``.
        """
        existing = await self.get_workflow_by_remote_id(provider_id, provider_workflow_id)
        if existing is not None:
            for key, value in fields.items():
                setattr(existing, key, value)
            await self.session.commit()
            return existing, False
        record = WorkflowModel(
            provider_id=provider_id,
            provider_workflow_id=provider_workflow_id,
            **fields,
        )
        self.session.add(record)
        await self.session.commit()
        await self.session.refresh(record)
        return record, True

    async def ensure_workflow(self, provider_id: str, provider_workflow_id: str) -> WorkflowModel:
        """Return the workflow row, creating a placeholder when the execution arrives first."""
        existing = await self.get_workflow_by_remote_id(provider_id, provider_workflow_id)
        if existing is not None:
            return existing
        record, _ = await self.upsert_workflow(
            provider_id,
            provider_workflow_id,
            {"name": f"Workflow {provider_workflow_id}", "is_active": False},
        )
        return record

    async def archive_missing_workflows(
        self, provider_id: str, present_remote_ids: set[str], now: datetime
    ) -> list[str]:
        """Mark every non-archived workflow not in *present_remote_ids* as archived.

        Rows are never deleted, so executions referencing them stay valid.
        Returns the names of the newly archived workflows.
        """
        result = await self.session.execute(
            select(WorkflowModel).where(
                WorkflowModel.provider_id == provider_id,
                WorkflowModel.is_archived.is_(False),
            )
        )
        archived = []
        for workflow in result.scalars().all():
            if workflow.provider_workflow_id in present_remote_ids:
                continue
            workflow.is_archived = True
            workflow.is_active = False
            workflow.last_synced_at = now
            archived.append(workflow.name)
        await self.session.commit()
        return archived

    async def list_workflows(self, wf_filter: Optional[WorkflowFilter] = None) -> list[WorkflowModel]:
        wf_filter = wf_filter or WorkflowFilter()
        query = select(WorkflowModel)
        if wf_filter.provider_id:
            query = query.where(WorkflowModel.provider_id == wf_filter.provider_id)
        if wf_filter.state == WorkflowState.ACTIVE:
            query = query.where(WorkflowModel.is_active.is_(True), WorkflowModel.is_archived.is_(False))
        elif wf_filter.state == WorkflowState.INACTIVE:
            query = query.where(WorkflowModel.is_active.is_(False), WorkflowModel.is_archived.is_(False))
        elif wf_filter.state == WorkflowState.ARCHIVED:
            query = query.where(WorkflowModel.is_archived.is_(True))
        result = await self.session.execute(query.order_by(WorkflowModel.name))
        workflows = list(result.scalars().all())
        if wf_filter.has_cron:
            # JSON emptiness is not portable across dialects; filter after load.
            workflows = [w for w in workflows if w.cron_schedules]
        return workflows

    async def list_cron_jobs(self, wf_filter: Optional[WorkflowFilter] = None) -> list[WorkflowModel]:
        """Workflows carrying at least one cron schedule."""
        wf_filter = (wf_filter or WorkflowFilter()).model_copy(update={"has_cron": True})
        return await self.list_workflows(wf_filter)

    # ── Workflow backups ──
    async def set_workflow_backup_enabled(self, workflow_id: str, enabled: bool) -> Optional[WorkflowModel]:
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            return None
        workflow.backup_enabled = enabled
        await self.session.commit()
        return workflow

    async def latest_workflow_backup(self, workflow_id: str) -> Optional[WorkflowBackupModel]:
        result = await self.session.execute(
            select(WorkflowBackupModel)
            .where(WorkflowBackupModel.workflow_id == workflow_id)
            .order_by(WorkflowBackupModel.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add_workflow_backup(
        self, workflow: WorkflowModel, definition: dict, remote_updated_at: Optional[datetime], node_count: int
    ) -> WorkflowBackupModel:
        """Store *definition* as the next version of *workflow*."""
        latest = await self.latest_workflow_backup(workflow.id)
        backup = WorkflowBackupModel(
            workflow_id=workflow.id,
            provider_id=workflow.provider_id,
            version=(latest.version if latest else 0) + 1,
            name=definition.get("name") or workflow.name,
            remote_updated_at=remote_updated_at,
            node_count=node_count,
            definition=definition,
        )
        self.session.add(backup)
        await self.session.commit()
        await self.session.refresh(backup)
        return backup

    async def list_workflow_backups(self, workflow_id: str) -> list[WorkflowBackupModel]:
        """Versions of one workflow, newest first."""
        result = await self.session.execute(
            select(WorkflowBackupModel)
            .where(WorkflowBackupModel.workflow_id == workflow_id)
            .order_by(WorkflowBackupModel.version.desc())
        )
        return list(result.scalars().all())

    async def get_workflow_backup(self, backup_id: str) -> Optional[WorkflowBackupModel]:
        result = await self.session.execute(
            select(WorkflowBackupModel).where(WorkflowBackupModel.id == backup_id)
        )
        return result.scalar_one_or_none()

    async def delete_workflow_backup(self, backup_id: str) -> bool:
        result = await self.session.execute(
            delete(WorkflowBackupModel).where(WorkflowBackupModel.id == backup_id)
        )
        await self.session.commit()
        return result.rowcount > 0

    async def prune_workflow_backups(self, workflow_id: str, keep: int) -> int:
        """Delete all but the newest *keep* versions. Returns rows removed."""
        stale = [b.id for b in (await self.list_workflow_backups(workflow_id))[keep:]]
        if not stale:
            return 0
        await self.session.execute(delete(WorkflowBackupModel).where(WorkflowBackupModel.id.in_(stale)))
        await self.session.commit()
        return len(stale)

    # ── Executions ──
    async def get_execution(self, execution_id: str) -> Optional[ExecutionModel]:
        result = await self.session.execute(
            select(ExecutionModel).where(ExecutionModel.id == execution_id)
        )
        return result.scalar_one_or_none()

    async def get_execution_by_remote_id(
        self, provider_id: str, provider_execution_id: str
    ) -> Optional[ExecutionModel]:
        result = await self.session.execute(
            select(ExecutionModel).where(
                ExecutionModel.provider_id == provider_id,
                ExecutionModel.provider_execution_id == provider_execution_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert_execution(
        self, provider_id: str, provider_execution_id: str, fields: dict
    ) -> tuple[ExecutionModel, bool]:
        """Insert or update by ``(provider_id, provider_execution_id)``.

        Fields are assigned, never added to, so replaying a record is a no-op.
        Returns ``(record, created)``.
        """
        existing = await self.get_execution_by_remote_id(provider_id, provider_execution_id)
        if existing is not None:
            for key, value in fields.items():
                setattr(existing, key, value)
            await self.session.commit()
            return existing, False
        record = ExecutionModel(
            provider_id=provider_id,
            provider_execution_id=provider_execution_id,
            **fields,
        )
        self.session.add(record)
        await self.session.commit()
        await self.session.refresh(record)
        return record, True

    async def list_running_executions(self, provider_id: str) -> list[ExecutionModel]:
        result = await self.session.execute(
            select(ExecutionModel).where(
                ExecutionModel.provider_id == provider_id,
                ExecutionModel.status == ExecutionStatus.RUNNING.value,
            )
        )
        return list(result.scalars().all())

    async def list_executions_with_data(self, provider_id: Optional[str] = None) -> list[ExecutionModel]:
        query = select(ExecutionModel).where(ExecutionModel.execution_data.is_not(None))
        if provider_id:
            query = query.where(ExecutionModel.provider_id == provider_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    def _execution_conditions(self, ex_filter: ExecutionFilter, now: Optional[datetime]) -> list:
        conditions = []
        if ex_filter.provider_id:
            conditions.append(ExecutionModel.provider_id == ex_filter.provider_id)
        if ex_filter.workflow_id:
            conditions.append(ExecutionModel.workflow_id == ex_filter.workflow_id)
        if ex_filter.statuses:
            conditions.append(ExecutionModel.status.in_([s.value for s in ex_filter.statuses]))
        if ex_filter.time_range is not None:
            now = now or datetime.now(timezone.utc)
            conditions.append(ExecutionModel.started_at >= now - _TIME_RANGES[ex_filter.time_range])
        if ex_filter.started_after is not None:
            conditions.append(ExecutionModel.started_at >= as_utc(ex_filter.started_after))
        if ex_filter.started_before is not None:
            conditions.append(ExecutionModel.started_at <= as_utc(ex_filter.started_before))
        return conditions

    async def list_executions(
        self, ex_filter: Optional[ExecutionFilter] = None, now: Optional[datetime] = None
    ) -> list[ExecutionModel]:
        """Filtered, paginated execution history, newest first."""
        ex_filter = ex_filter or ExecutionFilter()
        query = (
            select(ExecutionModel)
            .where(*self._execution_conditions(ex_filter, now))
            .order_by(ExecutionModel.started_at.desc())
            .limit(ex_filter.limit)
            .offset(ex_filter.offset)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_executions(self, provider_id: Optional[str] = None) -> int:
        query = select(func.count(ExecutionModel.id))
        if provider_id:
            query = query.where(ExecutionModel.provider_id == provider_id)
        result = await self.session.execute(query)
        return result.scalar_one()

    async def execution_metrics(
        self, ex_filter: Optional[ExecutionFilter] = None, now: Optional[datetime] = None
    ) -> ExecutionMetrics:
        """Aggregate counts, token totals and cost over the filtered executions."""
        ex_filter = ex_filter or ExecutionFilter()
        query = select(
            func.count(ExecutionModel.id),
            func.sum(case((ExecutionModel.status == ExecutionStatus.SUCCESS.value, 1), else_=0)),
            func.sum(case((ExecutionModel.status.in_(_FAILED_STATUSES), 1), else_=0)),
            func.sum(case((ExecutionModel.status == ExecutionStatus.RUNNING.value, 1), else_=0)),
            func.coalesce(func.sum(ExecutionModel.total_tokens), 0),
            func.coalesce(func.sum(ExecutionModel.input_tokens), 0),
            func.coalesce(func.sum(ExecutionModel.output_tokens), 0),
            func.coalesce(func.sum(ExecutionModel.ai_cost), 0.0),
            func.avg(ExecutionModel.duration_ms),
        ).where(*self._execution_conditions(ex_filter, now))
        row = (await self.session.execute(query)).one()
        total = row[0] or 0
        successful = int(row[1] or 0)
        finished = successful + int(row[2] or 0)
        return ExecutionMetrics(
            total=total,
            successful=successful,
            failed=int(row[2] or 0),
            running=int(row[3] or 0),
            success_rate=round(successful / finished * 100, 2) if finished else 0.0,
            total_tokens=int(row[4]),
            input_tokens=int(row[5]),
            output_tokens=int(row[6]),
            ai_cost=float(row[7]),
            avg_duration_ms=float(row[8]) if row[8] is not None else None,
        )

    # ── Sync logs ──
    async def start_sync_log(self, provider_id: str, sync_type: str) -> SyncLogModel:
        log = SyncLogModel(provider_id=provider_id, sync_type=sync_type, status=SyncLogStatus.RUNNING.value)
        self.session.add(log)
        await self.session.commit()
        await self.session.refresh(log)
        return log

    async def complete_sync_log(
        self,
        log_id: str,
        status: SyncLogStatus,
        processed: int = 0,
        inserted: int = 0,
        updated: int = 0,
        cursor: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        await self.session.execute(
            update(SyncLogModel)
            .where(SyncLogModel.id == log_id)
            .values(
                status=status.value,
                completed_at=datetime.now(timezone.utc),
                records_processed=processed,
                records_inserted=inserted,
                records_updated=updated,
                last_cursor=cursor,
                error_message=error_message,
            )
        )
        await self.session.commit()

    async def get_last_cursor(self, provider_id: str, sync_type: str) -> Optional[str]:
        """Cursor of the most recent successful pass for this provider and sync type."""
        result = await self.session.execute(
            select(SyncLogModel.last_cursor)
            .where(
                SyncLogModel.provider_id == provider_id,
                SyncLogModel.sync_type == sync_type,
                SyncLogModel.status == SyncLogStatus.SUCCESS.value,
                SyncLogModel.last_cursor.is_not(None),
            )
            .order_by(SyncLogModel.completed_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_sync_logs(self, provider_id: str, limit: int = 20) -> list[SyncLogModel]:
        result = await self.session.execute(
            select(SyncLogModel)
            .where(SyncLogModel.provider_id == provider_id)
            .order_by(SyncLogModel.started_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ── Configuration ──
    async def get_config_item(self, key: str) -> Optional[ConfigItemModel]:
        result = await self.session.execute(
            select(ConfigItemModel).where(ConfigItemModel.key == key)
        )
        return result.scalar_one_or_none()

    async def list_config_items(self, category: Optional[str] = None) -> list[ConfigItemModel]:
        query = select(ConfigItemModel)
        if category is not None:
            query = query.where(ConfigItemModel.category == category)
        result = await self.session.execute(query.order_by(ConfigItemModel.key))
        return list(result.scalars().all())

    async def list_config_categories(self) -> list[ConfigCategoryModel]:
        result = await self.session.execute(
            select(ConfigCategoryModel).order_by(ConfigCategoryModel.sort_order, ConfigCategoryModel.name)
        )
        return list(result.scalars().all())

    async def seed_config(self, categories: list[dict], items: list[dict]) -> int:
        """Insert categories and items that do not exist yet. Returns items inserted."""
        existing_categories = {c.name for c in await self.list_config_categories()}
        for category in categories:
            if category["name"] not in existing_categories:
                self.session.add(ConfigCategoryModel(**category))

        existing_keys = {i.key for i in await self.list_config_items()}
        inserted = 0
        for item in items:
            if item["key"] not in existing_keys:
                self.session.add(ConfigItemModel(**item))
                inserted += 1
        await self.session.commit()
        return inserted

    def _audit(self, key: str, old_value: Optional[str], new_value: Optional[str], meta: AuditMeta) -> None:
        self.session.add(ConfigAuditLogModel(
            config_key=key,
            old_value=old_value,
            new_value=new_value,
            changed_by=meta.changed_by,
            change_reason=meta.change_reason,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        ))

    async def write_config_value(
        self,
        item: ConfigItemModel,
        stored_value: Optional[str],
        meta: AuditMeta,
        audit_old: Optional[str],
        audit_new: Optional[str],
    ) -> None:
        """Persist a value change and its audit entry in ONE commit."""
        item.value = stored_value
        item.updated_by = meta.changed_by
        item.updated_at = datetime.now(timezone.utc)
        self._audit(item.key, audit_old, audit_new, meta)
        await self.session.commit()

    async def create_config_item(
        self, fields: dict, meta: AuditMeta, audit_new: Optional[str]
    ) -> ConfigItemModel:
        """Create a key definition and its audit entry in ONE commit."""
        item = ConfigItemModel(updated_by=meta.changed_by, **fields)
        self.session.add(item)
        self._audit(fields["key"], None, audit_new, meta)
        await self.session.commit()
        return item

    async def list_config_audit(self, key: Optional[str] = None, limit: int = 100) -> list[ConfigAuditLogModel]:
        """Audit entries, oldest first."""
        query = select(ConfigAuditLogModel)
        if key is not None:
            query = query.where(ConfigAuditLogModel.config_key == key)
        result = await self.session.execute(
            query.order_by(ConfigAuditLogModel.id.desc()).limit(limit)
        )
        return list(reversed(result.scalars().all()))
