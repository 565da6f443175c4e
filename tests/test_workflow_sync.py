"""WorkflowSyncer tests: upsert, cron metadata, archival, and failure isolation."""

from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from flowsync.db.database import session_scope
from flowsync.db.repository import Repository
from flowsync.exceptions import AuthError, DecryptionError
from flowsync.sync import WorkflowSyncer
from flowsync.types import ProviderStatus, SyncLogStatus, WorkflowFilter, WorkflowState

from tests.conftest import API, add_provider, execution_payload, workflow_payload

OTHER_URL = "https://n8n-2.test.local"


def _listing(*workflows, next_cursor=None):
    return httpx.Response(200, json={"data": list(workflows), "nextCursor": next_cursor})


async def _workflows(session_factory, provider_id, state=WorkflowState.ALL):
    async with session_scope(session_factory) as session:
        rows = await Repository(session).list_workflows(WorkflowFilter(provider_id=provider_id, state=state))
    return {w.provider_workflow_id: Repository.model_to_workflow(w) for w in rows}


@pytest.mark.asyncio
@respx.mock
async def test_first_pass_creates_workflows_with_metadata(workflow_syncer, provider, session_factory):
    respx.get(f"{API}/workflows").mock(return_value=_listing(
        workflow_payload("wf-1", name="Nightly report", cron="0 2 * * *"),
        workflow_payload("wf-2", active=False),
    ))
    result = await workflow_syncer.sync_provider(provider)

    assert (result.synced, result.created, result.updated, result.archived) == (2, 2, 0, 0)
    assert result.errors == []
    stored = await _workflows(session_factory, provider.id)
    nightly = stored["wf-1"]
    assert nightly.name == "Nightly report"
    assert nightly.is_active is True
    assert nightly.tags == ["ops"]
    assert nightly.node_count == 3
    assert nightly.connection_count == 1
    assert [c.cron_expression for c in nightly.cron_schedules] == ["0 2 * * *"]
    assert stored["wf-2"].is_active is False
    assert stored["wf-2"].cron_schedules == []


@pytest.mark.asyncio
@respx.mock
async def test_second_pass_skips_unchanged_and_updates_changed(workflow_syncer, provider, session_factory):
    route = respx.get(f"{API}/workflows")
    route.mock(return_value=_listing(workflow_payload("wf-1"), workflow_payload("wf-2")))
    await workflow_syncer.sync_provider(provider)

    route.mock(return_value=_listing(
        workflow_payload("wf-1"),
        workflow_payload("wf-2", name="Renamed", updated_at="2025-02-01T00:00:00.000Z"),
    ))
    result = await workflow_syncer.sync_provider(provider)

    assert (result.synced, result.created, result.updated, result.skipped) == (2, 0, 1, 1)
    stored = await _workflows(session_factory, provider.id)
    assert len(stored) == 2
    assert stored["wf-2"].name == "Renamed"


@pytest.mark.asyncio
@respx.mock
async def test_follows_next_cursor(workflow_syncer, provider, session_factory):
    def pages(request):
        if request.url.params.get("cursor") == "page-2":
            return _listing(workflow_payload("wf-3"))
        return _listing(workflow_payload("wf-1"), workflow_payload("wf-2"), next_cursor="page-2")

    respx.get(f"{API}/workflows").mock(side_effect=pages)
    result = await workflow_syncer.sync_provider(provider)
    assert result.created == 3
    assert set(await _workflows(session_factory, provider.id)) == {"wf-1", "wf-2", "wf-3"}


@pytest.mark.asyncio
@respx.mock
async def test_missing_workflow_is_archived_and_keeps_executions(
    workflow_syncer, execution_syncer, provider, session_factory,
):
    route = respx.get(f"{API}/workflows")
    route.mock(return_value=_listing(workflow_payload("wf-1"), workflow_payload("wf-2")))
    await workflow_syncer.sync_provider(provider)

    respx.get(f"{API}/executions").mock(return_value=httpx.Response(200, json={
        "data": [execution_payload("ex-1", workflow_id="wf-2")], "nextCursor": None,
    }))
    await execution_syncer.sync_provider(provider)

    route.mock(return_value=_listing(workflow_payload("wf-1")))
    result = await workflow_syncer.sync_provider(provider)

    assert result.archived == 1
    archived = await _workflows(session_factory, provider.id, WorkflowState.ARCHIVED)
    assert list(archived) == ["wf-2"]
    assert archived["wf-2"].is_active is False
    assert list(await _workflows(session_factory, provider.id, WorkflowState.ACTIVE)) == ["wf-1"]

    async with session_scope(session_factory) as session:
        execution = await Repository(session).get_execution_by_remote_id(provider.id, "ex-1")
    assert execution is not None
    assert execution.workflow_id == archived["wf-2"].id


@pytest.mark.asyncio
@respx.mock
async def test_listing_summary_fetches_full_definition(workflow_syncer, provider, session_factory):
    summary = {"id": "wf-1", "name": "Summary only", "active": True}
    respx.get(f"{API}/workflows").mock(return_value=_listing(summary))
    detail = respx.get(f"{API}/workflows/wf-1").mock(
        return_value=httpx.Response(200, json=workflow_payload("wf-1", cron="*/5 * * * *")),
    )
    await workflow_syncer.sync_provider(provider)
    assert detail.called
    stored = await _workflows(session_factory, provider.id)
    assert stored["wf-1"].cron_schedules[0].cron_expression == "*/5 * * * *"


@pytest.mark.asyncio
@respx.mock
async def test_one_bad_workflow_does_not_stop_the_pass(workflow_syncer, provider, session_factory):
    respx.get(f"{API}/workflows").mock(return_value=_listing(
        workflow_payload("wf-1"),
        {"id": "wf-gone", "name": "Deleted mid-sync"},
        workflow_payload("wf-3"),
    ))
    respx.get(f"{API}/workflows/wf-gone").mock(return_value=httpx.Response(404))

    result = await workflow_syncer.sync_provider(provider)

    assert result.created == 2
    assert len(result.errors) == 1
    assert "Deleted mid-sync" in result.errors[0]
    assert set(await _workflows(session_factory, provider.id)) == {"wf-1", "wf-3"}


@pytest.mark.asyncio
@respx.mock
async def test_listing_failure_raises_and_marks_provider(workflow_syncer, registry, provider, session_factory):
    respx.get(f"{API}/workflows").mock(return_value=httpx.Response(401))
    with pytest.raises(AuthError):
        await workflow_syncer.sync_provider(provider)

    stored = await registry.get_provider(provider.id)
    assert stored.status == ProviderStatus.ERROR
    assert stored.last_error
    async with session_scope(session_factory) as session:
        log = (await Repository(session).list_sync_logs(provider.id))[0]
    assert log.status == SyncLogStatus.ERROR.value
    assert log.error_message


@pytest.mark.asyncio
@respx.mock
async def test_successful_pass_records_health(workflow_syncer, registry, provider):
    respx.get(f"{API}/workflows").mock(return_value=_listing(workflow_payload("wf-1")))
    await workflow_syncer.sync_provider(provider)
    stored = await registry.get_provider(provider.id)
    assert stored.status == ProviderStatus.HEALTHY
    assert stored.last_synced_at is not None


@pytest.mark.asyncio
@respx.mock
async def test_sync_all_isolates_failing_provider(workflow_syncer, provider, session_factory, vault):
    broken = await add_provider(session_factory, vault, name="Broken", base_url=OTHER_URL)
    respx.get(f"{API}/workflows").mock(return_value=_listing(workflow_payload("wf-1")))
    respx.get(f"{OTHER_URL}/api/v1/workflows").mock(return_value=httpx.Response(500))

    result = await workflow_syncer.sync_all_providers()

    assert (result.providers, result.successful, result.failed) == (2, 1, 1)
    outcomes = {o.provider_id: o for o in result.per_provider}
    assert outcomes[provider.id].success is True
    assert outcomes[provider.id].result["created"] == 1
    assert outcomes[broken.id].success is False
    assert outcomes[broken.id].error_kind == "provider_error"


@pytest.mark.asyncio
async def test_disconnected_providers_are_not_synced(workflow_syncer, session_factory, vault):
    disconnected = await add_provider(session_factory, vault, name="Off")
    async with session_scope(session_factory) as session:
        await Repository(session).update_provider(disconnected.id, {"is_connected": False})
    result = await workflow_syncer.sync_all_providers()
    assert result.providers == 0


@pytest.mark.asyncio
@respx.mock
async def test_page_size_read_from_config_store(provider, session_factory, registry, config, locks, config_store):
    await config_store.set("sync.workflow_page_size", 25)
    syncer = WorkflowSyncer(session_factory, registry, config=config, locks=locks, config_store=config_store)
    route = respx.get(f"{API}/workflows").mock(return_value=_listing(workflow_payload("wf-1")))

    await syncer.sync_provider(provider)

    assert route.calls.last.request.url.params["limit"] == "25"


@pytest.mark.asyncio
@respx.mock
async def test_unreadable_stored_page_size_falls_back(provider, session_factory, registry, config, locks):
    store = AsyncMock()
    store.get.side_effect = DecryptionError("stored value was sealed with another key")
    syncer = WorkflowSyncer(session_factory, registry, config=config, locks=locks, config_store=store)
    route = respx.get(f"{API}/workflows").mock(return_value=_listing(workflow_payload("wf-1")))

    await syncer.sync_provider(provider)

    assert route.calls.last.request.url.params["limit"] == str(config.workflow_page_size)
