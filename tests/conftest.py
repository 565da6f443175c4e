"""Test fixtures: settings, vault, a file-backed SQLite database, wired components,
and builders for provider API payloads.

Provider HTTP traffic is mocked with respx; no test touches the network.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from flowsync.config import FlowSyncConfig
from flowsync.configstore import ConfigStore
from flowsync.credentials import CredentialVault
from flowsync.db.database import create_engine, create_session_factory, init_db, session_scope
from flowsync.db.repository import Repository
from flowsync.providers import ProviderRegistry
from flowsync.sync import BackupSyncer, ExecutionSyncer, ProviderLocks, WorkflowSyncer
from flowsync.types import ProviderStatus

BASE_URL = "https://n8n.test.local"
API = f"{BASE_URL}/api/v1"
API_KEY = "n8n_api_test_key_0123456789"


@pytest.fixture
def config(tmp_path):
    """Test configuration with an explicit master secret and a throwaway DB."""
    return FlowSyncConfig(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/flowsync-test.db",
        encryption_key="test-master-secret",
        sync_interval_minutes=15,
        sync_on_start=False,
        connect_timeout_seconds=2.0,
        listing_timeout_seconds=5.0,
        max_concurrent_providers=2,
    )


@pytest.fixture
def vault(config):
    return CredentialVault.from_config(config)


@pytest_asyncio.fixture
async def db_engine(config):
    engine = create_engine(config.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def config_store(session_factory, vault, db_engine):
    store = ConfigStore(session_factory, vault, engine=db_engine)
    await store.initialize()
    return store


@pytest.fixture
def registry(session_factory, vault, config, locks):
    return ProviderRegistry(session_factory, vault, config=config, locks=locks)


@pytest.fixture
def locks():
    return ProviderLocks()


@pytest.fixture
def workflow_syncer(session_factory, registry, config, locks):
    return WorkflowSyncer(session_factory, registry, config=config, locks=locks)


@pytest.fixture
def execution_syncer(session_factory, registry, config, locks):
    return ExecutionSyncer(session_factory, registry, config=config, locks=locks)


@pytest.fixture
def backup_syncer(session_factory, registry, config, locks):
    return BackupSyncer(session_factory, registry, config=config, locks=locks)


async def add_provider(session_factory, vault, name="Primary", base_url=BASE_URL, api_key=API_KEY):
    """Insert a connected provider directly, skipping the connection test."""
    async with session_scope(session_factory) as session:
        record = await Repository(session).create_provider(
            name=name,
            base_url=base_url,
            api_key_encrypted=vault.encrypt(api_key),
            is_connected=True,
            status=ProviderStatus.HEALTHY.value,
        )
    return Repository.model_to_provider(record)


@pytest_asyncio.fixture
async def provider(session_factory, vault):
    return await add_provider(session_factory, vault)


# ── Payload builders ─────────────────────────────────────────────────────────


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def workflow_payload(wf_id, name=None, active=True, cron=None, updated_at="2025-01-01T00:00:00.000Z"):
    nodes = [
        {"name": "Start", "type": "n8n-nodes-base.manualTrigger", "parameters": {}},
        {"name": "Do thing", "type": "n8n-nodes-base.set", "parameters": {}},
    ]
    if cron:
        nodes.append({
            "name": "Every morning",
            "type": "n8n-nodes-base.scheduleTrigger",
            "parameters": {"rule": {"interval": [{"field": "cronExpression", "expression": cron}]}},
        })
    return {
        "id": wf_id,
        "name": name or f"Workflow {wf_id}",
        "active": active,
        "tags": [{"id": "t1", "name": "ops"}],
        "nodes": nodes,
        "connections": {"Start": {"main": [[{"node": "Do thing", "type": "main", "index": 0}]]}},
        "updatedAt": updated_at,
    }


def ai_run(tokens: int, cost: float, model: str = "gpt-4o-mini") -> list:
    """One node run whose output carries OpenAI-style usage."""
    return [{
        "executionStatus": "success",
        "data": {"main": [[{"json": {
            "model": model,
            "usage": {
                "prompt_tokens": tokens - tokens // 4,
                "completion_tokens": tokens // 4,
                "total_tokens": tokens,
                "cost": cost,
            },
        }}]]},
    }]


def execution_payload(ex_id, workflow_id="wf-1", status="success", started_at=None, ai_nodes=None):
    started = started_at or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    finished = status not in ("running", "new", "waiting")
    payload = {
        "id": ex_id,
        "workflowId": workflow_id,
        "status": status,
        "mode": "trigger",
        "finished": status == "success",
        "startedAt": iso(started),
        "stoppedAt": iso(started.replace(second=30)) if finished else None,
    }
    run_data = {name: ai_run(tokens, cost) for name, (tokens, cost) in (ai_nodes or {}).items()}
    payload["data"] = {"resultData": {"runData": run_data}}
    return payload
