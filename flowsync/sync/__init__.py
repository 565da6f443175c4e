"""Sync engine: workflow, execution and backup syncers, the scheduler, and metric extraction."""

from flowsync.sync.ai_metrics import extract_ai_metrics
from flowsync.sync.backups import BackupSyncer
from flowsync.sync.common import ProviderLocks
from flowsync.sync.cron import extract_cron_schedules, next_run_times
from flowsync.sync.executions import ExecutionSyncer
from flowsync.sync.scheduler import SyncScheduler
from flowsync.sync.workflows import WorkflowSyncer

__all__ = [
    "BackupSyncer",
    "ExecutionSyncer",
    "ProviderLocks",
    "SyncScheduler",
    "WorkflowSyncer",
    "extract_ai_metrics",
    "extract_cron_schedules",
    "next_run_times",
]
