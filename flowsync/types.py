"""All shared types, enums, and type aliases. Everything imports from here."""

from enum import Enum
from typing import Any, Optional
from datetime import datetime
from pydantic import BaseModel, Field


# ── Enums ──────────────────────────────────────────────────────────────

class ProviderStatus(str, Enum):
    UNKNOWN = "unknown"     # registered, never synced
    HEALTHY = "healthy"
    ERROR = "error"         # last connection test or sync failed

class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"
    CRASHED = "crashed"
    RUNNING = "running"     # also covers remote "new" / "waiting"

TERMINAL_STATUSES = frozenset({
    ExecutionStatus.SUCCESS,
    ExecutionStatus.FAILED,
    ExecutionStatus.ERROR,
    ExecutionStatus.CRASHED,
})

class SyncKind(str, Enum):
    WORKFLOWS = "workflows"
    EXECUTIONS = "executions"
    BACKUPS = "backups"     # versioned copies of full workflow definitions
    FULL = "full"           # workflows, executions, then backups

class SyncLogStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"

class SyncRunStatus(str, Enum):
    COMPLETED = "completed"
    BUSY = "busy"           # another pass was in flight; nothing ran
    SKIPPED = "skipped"     # sync disabled by feature flag
    FAILED = "failed"

class SchedulerState(str, Enum):
    STOPPED = "stopped"
    IDLE = "idle"
    RUNNING = "running"

class ConfigValueType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"

class TimeRange(str, Enum):
    HOUR = "1h"
    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"

class WorkflowState(str, Enum):
    ALL = "all"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


# ── Caller identity ────────────────────────────────────────────────────

class User(BaseModel):
    """Already-authenticated caller. Used for audit attribution only."""
    id: str
    email: str = ""
    name: str = ""
    role: str = "user"


# ── Providers / workflows / executions ─────────────────────────────────

class Provider(BaseModel):
    """Provider record as returned to callers. Never carries the API key."""
    id: str
    user_id: Optional[str] = None
    name: str
    base_url: str
    is_connected: bool = False
    status: ProviderStatus = ProviderStatus.UNKNOWN
    version: Optional[str] = None
    last_error: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

class ProviderUpdate(BaseModel):
    """Patch for update_provider(); None means 'leave unchanged'."""
    name: Optional[str] = None
    base_url: Optional[str] = None
    api_key: Optional[str] = None

class ConnectionTestResult(BaseModel):
    success: bool
    version: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

class CronSchedule(BaseModel):
    node_name: str
    node_type: str
    cron_expression: str

class Workflow(BaseModel):
    id: str
    provider_id: str
    provider_workflow_id: str
    name: str
    is_active: bool = False
    is_archived: bool = False
    tags: list[str] = Field(default_factory=list)
    cron_schedules: list[CronSchedule] = Field(default_factory=list)
    node_count: int = 0
    connection_count: int = 0
    remote_updated_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    backup_enabled: bool = True

class WorkflowBackup(BaseModel):
    """One stored version of a workflow definition."""
    id: str
    workflow_id: str
    provider_id: str
    version: int
    name: str
    remote_updated_at: Optional[datetime] = None
    node_count: int = 0
    created_at: Optional[datetime] = None
    definition: Optional[dict[str, Any]] = None   # only filled when a single backup is fetched

class Execution(BaseModel):
    id: str
    provider_id: str
    provider_execution_id: str
    workflow_id: str
    provider_workflow_id: Optional[str] = None
    status: ExecutionStatus
    mode: Optional[str] = None
    finished: bool = False
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    ai_cost: float = 0.0
    ai_provider: Optional[str] = None
    ai_model: Optional[str] = None

class NodeUsage(BaseModel):
    node_name: str
    node_type: str
    tokens: int
    cost: float
    model: Optional[str] = None

class AIMetrics(BaseModel):
    """Token/cost totals for one execution, summed over its AI nodes."""
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    ai_cost: float = 0.0
    ai_provider: Optional[str] = None
    ai_model: Optional[str] = None
    node_breakdown: list[NodeUsage] = Field(default_factory=list)


# ── Query filters ──────────────────────────────────────────────────────

class ExecutionFilter(BaseModel):
    """Fixed set of supported execution predicates. Compiled by the repository."""
    provider_id: Optional[str] = None
    workflow_id: Optional[str] = None
    statuses: list[ExecutionStatus] = Field(default_factory=list)
    started_after: Optional[datetime] = None
    started_before: Optional[datetime] = None
    time_range: Optional[TimeRange] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

class WorkflowFilter(BaseModel):
    provider_id: Optional[str] = None
    state: WorkflowState = WorkflowState.ALL
    has_cron: bool = False

class ExecutionMetrics(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    running: int = 0
    success_rate: float = 0.0
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    ai_cost: float = 0.0
    avg_duration_ms: Optional[float] = None


# ── Sync results ───────────────────────────────────────────────────────

class WorkflowSyncResult(BaseModel):
    synced: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0            # unchanged since the last pass
    archived: int = 0
    errors: list[str] = Field(default_factory=list)

class ExecutionSyncResult(BaseModel):
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    refreshed: int = 0          # locally-running executions re-fetched by id
    abandoned: int = 0          # running locally, gone remotely; marked crashed
    cursor: Optional[str] = None
    errors: list[str] = Field(default_factory=list)

class BackupSyncResult(BaseModel):
    processed: int = 0
    backed_up: int = 0          # new versions stored
    unchanged: int = 0
    skipped: int = 0            # not mirrored yet, or backups disabled
    pruned: int = 0
    errors: list[str] = Field(default_factory=list)

class ProviderSyncOutcome(BaseModel):
    """One provider's entry in a fan-out result."""
    provider_id: str
    provider_name: str
    success: bool
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

class FanOutResult(BaseModel):
    kind: SyncKind
    providers: int = 0
    successful: int = 0
    failed: int = 0
    per_provider: list[ProviderSyncOutcome] = Field(default_factory=list)

class SyncReport(BaseModel):
    """What a scheduler pass (automatic or manual) produced."""
    status: SyncRunStatus
    kind: SyncKind
    scope: str = "all"
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    workflows: Optional[FanOutResult] = None
    executions: Optional[FanOutResult] = None
    backups: Optional[FanOutResult] = None
    error: Optional[str] = None

class SchedulerStatus(BaseModel):
    state: SchedulerState
    running: bool
    interval_seconds: float
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_result: Optional[SyncReport] = None
    last_error: Optional[str] = None


# ── Configuration store ────────────────────────────────────────────────

class ConfigItem(BaseModel):
    key: str
    value: Any = None
    type: ConfigValueType = ConfigValueType.STRING
    category: str = "general"
    description: str = ""
    is_secret: bool = False
    is_system: bool = False
    schema_: Optional[dict[str, Any]] = Field(default=None, alias="schema")
    updated_at: Optional[datetime] = None

    model_config = {"populate_by_name": True}

class ConfigCategory(BaseModel):
    name: str
    display_name: str
    description: str = ""
    icon: str = ""
    sort_order: int = 0
    is_system: bool = False

class AuditMeta(BaseModel):
    """Attribution attached to every config mutation."""
    changed_by: str = "system"
    change_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def for_user(cls, user: User, **kwargs) -> "AuditMeta":
        return cls(changed_by=user.email or user.id, **kwargs)

class ConfigAuditEntry(BaseModel):
    id: Optional[int] = None
    config_key: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    changed_by: str = "system"
    change_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime

class ConfigBatchResult(BaseModel):
    applied: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
