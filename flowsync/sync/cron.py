"""Cron-trigger extraction and workflow graph metrics."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from croniter import croniter

from flowsync.types import CronSchedule

logger = logging.getLogger(__name__)

_SCHEDULE_TRIGGER = "n8n-nodes-base.scheduleTrigger"
_LEGACY_CRON = "n8n-nodes-base.cron"


def _croniter(expression: str, base: datetime | None = None) -> croniter:
    # Six-field expressions carry seconds in front.
    seconds_first = len(expression.split()) == 6
    return croniter(expression, base or datetime.now(timezone.utc), second_at_beginning=seconds_first)


def is_valid_cron(expression: str) -> bool:
    if not expression or not isinstance(expression, str):
        return False
    try:
        _croniter(expression.strip())
    except (ValueError, KeyError):
        return False
    return True


def _schedule_trigger_expressions(parameters: dict) -> list[str]:
    rule = parameters.get("rule") or {}
    intervals = rule.get("interval") or []
    return [
        entry.get("expression", "")
        for entry in intervals
        if isinstance(entry, dict) and entry.get("field") == "cronExpression"
    ]


def _legacy_cron_expressions(parameters: dict) -> list[str]:
    trigger_times = parameters.get("triggerTimes") or {}
    items = trigger_times.get("item") or []
    return [
        entry.get("cronExpression", "")
        for entry in items
        if isinstance(entry, dict) and entry.get("mode") == "custom"
    ]


def extract_cron_schedules(nodes: list[dict[str, Any]] | None) -> list[CronSchedule]:
    """Find every enabled trigger node carrying a custom cron expression.

    Invalid expressions are dropped with a warning.
    """
    schedules: list[CronSchedule] = []
    for node in nodes or []:
        if not isinstance(node, dict) or node.get("disabled"):
            continue
        node_type = node.get("type", "")
        parameters = node.get("parameters") or {}
        if node_type == _SCHEDULE_TRIGGER:
            expressions = _schedule_trigger_expressions(parameters)
        elif node_type == _LEGACY_CRON:
            expressions = _legacy_cron_expressions(parameters)
        else:
            continue
        for expression in expressions:
            expression = (expression or "").strip()
            if not is_valid_cron(expression):
                logger.warning("Ignoring invalid cron expression %r on node %r", expression, node.get("name"))
                continue
            schedules.append(CronSchedule(
                node_name=node.get("name", ""),
                node_type=node_type,
                cron_expression=expression,
            ))
    return schedules


def count_nodes(nodes: list | None) -> int:
    return len(nodes or [])


def count_connections(connections: dict | None) -> int:
    """Count edges in an n8n ``connections`` map: source -> channel -> outputs -> targets."""
    total = 0
    for channels in (connections or {}).values():
        if not isinstance(channels, dict):
            continue
        for outputs in channels.values():
            for targets in outputs or []:
                total += len(targets or [])
    return total


def next_run_times(expression: str, count: int = 5, base: datetime | None = None) -> list[datetime]:
    """The next *count* fire times of *expression*, as UTC datetimes."""
    itr = _croniter(expression, base)
    runs = []
    for _ in range(count):
        nxt = itr.get_next(datetime)
        # croniter returns tz-naive for naive bases
        runs.append(nxt if nxt.tzinfo else nxt.replace(tzinfo=timezone.utc))
    return runs
