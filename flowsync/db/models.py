"""All ORM models. These map 1:1 to the Pydantic types but are SQLAlchemy models.

Tables: providers, workflows, workflow_backups, executions, sync_logs,
config_categories, config_items, config_audit_log.
Deleting a provider cascades to its workflows, backups, executions and sync logs.
"""

from sqlalchemy import Column, String, Integer, Float, DateTime, JSON, Boolean, Text, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, relationship
from datetime import datetime, timezone
import uuid


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ProviderModel(Base):
    __tablename__ = "providers"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    base_url = Column(String, nullable=False)
    api_key_encrypted = Column(Text, nullable=False)    # CredentialVault token
    is_connected = Column(Boolean, default=False)
    status = Column(String, default="unknown")          # ProviderStatus value
    version = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)

    workflows = relationship("WorkflowModel", back_populates="provider", passive_deletes=True)
    executions = relationship("ExecutionModel", back_populates="provider", passive_deletes=True)


class WorkflowModel(Base):
    __tablename__ = "workflows"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_id = Column(String, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_workflow_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, default=False)
    is_archived = Column(Boolean, default=False)
    tags = Column(JSON, default=list)
    cron_schedules = Column(JSON, default=list)         # serialized CronSchedule list
    node_count = Column(Integer, default=0)
    connection_count = Column(Integer, default=0)
    raw_definition = Column(JSON, nullable=True)
    remote_updated_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    backup_enabled = Column(Boolean, default=True)     # NULL on migrated rows counts as enabled
    created_at = Column(DateTime(timezone=True), default=_now)

    provider = relationship("ProviderModel", back_populates="workflows")
    backups = relationship("WorkflowBackupModel", back_populates="workflow", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("provider_id", "provider_workflow_id", name="uq_workflow_provider_remote"),
        Index("ix_workflow_provider_archived", "provider_id", "is_archived"),
    )


class ExecutionModel(Base):
    __tablename__ = "executions"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_id = Column(String, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, index=True)
    workflow_id = Column(String, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_execution_id = Column(String, nullable=False)
    provider_workflow_id = Column(String, nullable=True)
    status = Column(String, nullable=False)             # ExecutionStatus value
    mode = Column(String, nullable=True)
    finished = Column(Boolean, default=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    stopped_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    total_tokens = Column(Integer, default=0)
    input_tokens = Column(Integer, default=0)
    output_tokens = Column(Integer, default=0)
    ai_cost = Column(Float, default=0.0)
    ai_provider = Column(String, nullable=True)
    ai_model = Column(String, nullable=True)
    execution_data = Column(JSON, nullable=True)        # raw remote payload, for metric backfill
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    provider = relationship("ProviderModel", back_populates="executions")

    __table_args__ = (
        UniqueConstraint("provider_id", "provider_execution_id", name="uq_execution_provider_remote"),
        Index("ix_execution_provider_started", "provider_id", "started_at"),
        Index("ix_execution_status", "status"),
    )


class WorkflowBackupModel(Base):
    __tablename__ = "workflow_backups"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workflow_id = Column(String, ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_id = Column(String, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, index=True)
    version = Column(Integer, nullable=False)           # 1-based, per workflow
    name = Column(String, nullable=False)
    remote_updated_at = Column(DateTime(timezone=True), nullable=True)
    node_count = Column(Integer, default=0)
    definition = Column(JSON, nullable=False)           # full remote workflow payload
    created_at = Column(DateTime(timezone=True), default=_now)

    workflow = relationship("WorkflowModel", back_populates="backups")

    __table_args__ = (
        UniqueConstraint("workflow_id", "version", name="uq_workflow_backup_version"),
    )


class SyncLogModel(Base):
    __tablename__ = "sync_logs"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_id = Column(String, ForeignKey("providers.id", ondelete="CASCADE"), nullable=False, index=True)
    sync_type = Column(String, nullable=False)          # SyncKind value
    status = Column(String, default="running")          # SyncLogStatus value
    started_at = Column(DateTime(timezone=True), default=_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    records_processed = Column(Integer, default=0)
    records_inserted = Column(Integer, default=0)
    records_updated = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    last_cursor = Column(String, nullable=True)

    __table_args__ = (Index("ix_sync_log_provider_type_status", "provider_id", "sync_type", "status"),)


# ── Configuration store ─────────────────────────────────────────────────────


class ConfigCategoryModel(Base):
    __tablename__ = "config_categories"
    name = Column(String, primary_key=True)
    display_name = Column(String, nullable=False)
    description = Column(Text, default="")
    icon = Column(String, default="")
    sort_order = Column(Integer, default=0)
    is_system = Column(Boolean, default=False)


class ConfigItemModel(Base):
    __tablename__ = "config_items"
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)                 # serialized; ciphertext when is_secret
    value_type = Column(String, nullable=False, default="string")
    category = Column(String, nullable=False, default="general", index=True)
    description = Column(Text, default="")
    is_secret = Column(Boolean, default=False)
    is_system = Column(Boolean, default=False)
    validation_schema = Column(JSON, nullable=True)     # JSON Schema fragment
    updated_by = Column(String, default="system")
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)


class ConfigAuditLogModel(Base):
    __tablename__ = "config_audit_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    config_key = Column(String, nullable=False, index=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    changed_by = Column(String, nullable=False, default="system")
    change_reason = Column(Text, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now, index=True)
