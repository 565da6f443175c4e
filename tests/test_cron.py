"""Cron-trigger extraction and workflow graph counts."""

from datetime import datetime, timezone

import pytest

from flowsync.sync.cron import (
    count_connections, count_nodes, extract_cron_schedules, is_valid_cron, next_run_times,
)

from tests.conftest import workflow_payload


def _schedule_node(name, *expressions, disabled=False):
    node = {
        "name": name,
        "type": "n8n-nodes-base.scheduleTrigger",
        "parameters": {"rule": {"interval": [
            {"field": "cronExpression", "expression": e} for e in expressions
        ]}},
    }
    if disabled:
        node["disabled"] = True
    return node


def test_schedule_trigger_expression():
    schedules = extract_cron_schedules([_schedule_node("Nightly", "0 2 * * *")])
    assert len(schedules) == 1
    assert schedules[0].node_name == "Nightly"
    assert schedules[0].cron_expression == "0 2 * * *"


def test_multiple_expressions_on_one_node():
    schedules = extract_cron_schedules([_schedule_node("Twice", "0 8 * * 1-5", "30 17 * * 1-5")])
    assert [s.cron_expression for s in schedules] == ["0 8 * * 1-5", "30 17 * * 1-5"]


def test_six_field_expression_with_seconds():
    assert extract_cron_schedules([_schedule_node("Fast", "*/30 * * * * *")])[0].cron_expression == "*/30 * * * * *"


def test_non_cron_intervals_ignored():
    node = {
        "name": "Hourly",
        "type": "n8n-nodes-base.scheduleTrigger",
        "parameters": {"rule": {"interval": [{"field": "hours", "hoursInterval": 1}]}},
    }
    assert extract_cron_schedules([node]) == []


def test_legacy_cron_node():
    node = {
        "name": "Old cron",
        "type": "n8n-nodes-base.cron",
        "parameters": {"triggerTimes": {"item": [
            {"mode": "everyHour"},
            {"mode": "custom", "cronExpression": "15 * * * *"},
        ]}},
    }
    schedules = extract_cron_schedules([node])
    assert [s.cron_expression for s in schedules] == ["15 * * * *"]
    assert schedules[0].node_type == "n8n-nodes-base.cron"


def test_disabled_and_invalid_nodes_skipped():
    nodes = [
        _schedule_node("Off", "0 1 * * *", disabled=True),
        _schedule_node("Broken", "not a cron"),
        {"name": "Webhook", "type": "n8n-nodes-base.webhook", "parameters": {}},
    ]
    assert extract_cron_schedules(nodes) == []


@pytest.mark.parametrize("expression, valid", [
    ("* * * * *", True),
    ("0 0 1 1 *", True),
    ("61 * * * *", False),
    ("", False),
    ("* * *", False),
])
def test_is_valid_cron(expression, valid):
    assert is_valid_cron(expression) is valid


def test_next_run_times_are_utc_and_ordered():
    base = datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)
    runs = next_run_times("0 */6 * * *", count=3, base=base)
    assert runs == [
        datetime(2025, 1, 1, 6, 0, tzinfo=timezone.utc),
        datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc),
        datetime(2025, 1, 1, 18, 0, tzinfo=timezone.utc),
    ]


def test_graph_counts():
    payload = workflow_payload("wf-1", cron="0 9 * * *")
    assert count_nodes(payload["nodes"]) == 3
    assert count_connections(payload["connections"]) == 1
    assert count_nodes(None) == 0
    assert count_connections({"A": {"main": [[{"node": "B"}, {"node": "C"}], [{"node": "D"}]]}}) == 3
