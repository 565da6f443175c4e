"""FlowSync: Provider Sync & Metrics Engine.

Mirrors workflows and executions from workflow-automation providers into a
local store, with AI token/cost metrics, cron metadata and versioned
workflow backups.

Usage:
    from flowsync import FlowSyncEngine

    engine = FlowSyncEngine.from_config()
    await engine.start()
"""

from flowsync.types import (
    Provider, ProviderUpdate, ConnectionTestResult, Workflow, WorkflowBackup, Execution, CronSchedule,
    AIMetrics, ExecutionFilter, WorkflowFilter, ExecutionMetrics, SyncReport, SchedulerStatus,
    ConfigItem, ConfigCategory, AuditMeta, ConfigAuditEntry, ConfigBatchResult, User,
    ExecutionStatus, SyncKind, SyncRunStatus, SchedulerState, TimeRange, WorkflowState,
)
from flowsync.exceptions import (
    FlowSyncError, ConfigurationError, ValidationError, ConfigKeyNotFound, DecryptionError,
    PersistenceError, ProviderError, AuthError, NotFoundError, ProviderConnectionError,
    ProviderNotFound,
)
from flowsync.config import FlowSyncConfig
from flowsync.engine import FlowSyncEngine
from flowsync.version import __version__

__all__ = [
    "Provider", "ProviderUpdate", "ConnectionTestResult", "Workflow", "WorkflowBackup", "Execution", "CronSchedule",
    "AIMetrics", "ExecutionFilter", "WorkflowFilter", "ExecutionMetrics", "SyncReport", "SchedulerStatus",
    "ConfigItem", "ConfigCategory", "AuditMeta", "ConfigAuditEntry", "ConfigBatchResult", "User",
    "ExecutionStatus", "SyncKind", "SyncRunStatus", "SchedulerState", "TimeRange", "WorkflowState",
    "FlowSyncError", "ConfigurationError", "ValidationError", "ConfigKeyNotFound", "DecryptionError",
    "PersistenceError", "ProviderError", "AuthError", "NotFoundError", "ProviderConnectionError",
    "ProviderNotFound",
    "FlowSyncConfig", "FlowSyncEngine",
    "__version__",
]
