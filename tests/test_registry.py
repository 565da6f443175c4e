"""ProviderRegistry tests: connection testing, error taxonomy, encrypted keys, cascade delete, legacy import."""

import asyncio
import logging

import httpx
import pytest
import respx

from flowsync.db.database import session_scope
from flowsync.db.repository import Repository
from flowsync.exceptions import (
    AuthError, NotFoundError, ProviderConnectionError, ProviderError, ProviderNotFound, ValidationError,
)
from flowsync.providers import classify_http_error
from flowsync.types import ProviderStatus, ProviderUpdate, SyncLogStatus

from tests.conftest import API, API_KEY, BASE_URL, add_provider

OTHER_URL = "https://n8n-2.test.local"


def _mock_healthy(api=API, version="1.45.0"):
    respx.get(f"{api}/workflows").mock(return_value=httpx.Response(200, json={"data": [], "nextCursor": None}))
    respx.get(f"{api}/owner").mock(return_value=httpx.Response(200, json={"version": version}))


class TestClassifyHttpError:
    @pytest.mark.parametrize("status, expected", [
        (401, AuthError), (403, AuthError), (404, NotFoundError), (500, ProviderError), (502, ProviderError),
    ])
    def test_status_mapping(self, status, expected):
        exc = classify_http_error(status)
        assert type(exc) is expected
        assert exc.status_code == status


class TestRegister:
    @pytest.mark.asyncio
    @respx.mock
    async def test_register_success_stores_encrypted_key(self, registry, session_factory):
        _mock_healthy()
        provider = await registry.register_provider("Prod", BASE_URL + "/", API_KEY, user_id="u-1")

        assert provider.base_url == BASE_URL
        assert provider.is_connected is True
        assert provider.status == ProviderStatus.HEALTHY
        assert provider.version == "1.45.0"
        assert "api_key" not in provider.model_dump()

        async with session_scope(session_factory) as session:
            record = await Repository(session).get_provider(provider.id)
        assert API_KEY not in record.api_key_encrypted
        assert await registry.get_api_key(provider.id) == API_KEY

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_sends_api_key_header(self, registry):
        route = respx.get(f"{API}/workflows").mock(return_value=httpx.Response(200, json={"data": []}))
        respx.get(f"{API}/owner").mock(return_value=httpx.Response(404))
        provider = await registry.register_provider("Prod", BASE_URL, API_KEY)
        assert route.calls.last.request.headers["X-N8N-API-KEY"] == API_KEY
        assert route.calls.last.request.url.params["limit"] == "1"
        assert provider.version is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_api_key_never_reaches_the_logs(self, registry, caplog):
        caplog.set_level(logging.DEBUG, logger="flowsync")
        _mock_healthy()
        await registry.register_provider("Prod", BASE_URL, API_KEY)

        assert "GET https://n8n.test.local/api/v1/workflows" in caplog.text
        assert API_KEY not in caplog.text
        assert "***" in caplog.text

    @pytest.mark.asyncio
    @respx.mock
    async def test_register_auth_failure_persists_nothing(self, registry):
        respx.get(f"{API}/workflows").mock(return_value=httpx.Response(401, json={"message": "unauthorized"}))
        with pytest.raises(AuthError):
            await registry.register_provider("Prod", BASE_URL, "bad-key")
        assert await registry.list_providers() == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_register_wrong_base_url(self, registry):
        respx.get(f"{API}/workflows").mock(return_value=httpx.Response(404))
        with pytest.raises(NotFoundError):
            await registry.register_provider("Prod", BASE_URL, API_KEY)
        assert await registry.list_providers() == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_register_timeout(self, registry):
        respx.get(f"{API}/workflows").mock(side_effect=httpx.ConnectTimeout("timed out"))
        with pytest.raises(ProviderConnectionError):
            await registry.register_provider("Prod", BASE_URL, API_KEY)

    @pytest.mark.asyncio
    @respx.mock
    async def test_register_server_error(self, registry):
        respx.get(f"{API}/workflows").mock(return_value=httpx.Response(500, text="boom"))
        with pytest.raises(ProviderError) as exc_info:
            await registry.register_provider("Prod", BASE_URL, API_KEY)
        assert type(exc_info.value) is ProviderError
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name, url, key", [
        ("", BASE_URL, API_KEY),
        ("Prod", "n8n.test.local", API_KEY),
        ("Prod", BASE_URL, ""),
    ])
    async def test_register_rejects_bad_input(self, registry, name, url, key):
        with pytest.raises(ValidationError):
            await registry.register_provider(name, url, key)


class TestConnectionTest:
    @pytest.mark.asyncio
    @respx.mock
    async def test_success(self, registry):
        _mock_healthy(version="1.50.2")
        result = await registry.test_connection(BASE_URL, API_KEY)
        assert result.success is True
        assert result.version == "1.50.2"

    @pytest.mark.asyncio
    @respx.mock
    @pytest.mark.parametrize("response, kind", [
        (httpx.Response(401), "auth_error"),
        (httpx.Response(403), "auth_error"),
        (httpx.Response(404), "not_found"),
        (httpx.Response(503), "provider_error"),
    ])
    async def test_http_failures_are_classified(self, registry, response, kind):
        respx.get(f"{API}/workflows").mock(return_value=response)
        result = await registry.test_connection(BASE_URL, API_KEY)
        assert result.success is False
        assert result.error_kind == kind
        assert result.error

    @pytest.mark.asyncio
    @respx.mock
    async def test_unreachable_host(self, registry):
        respx.get(f"{API}/workflows").mock(side_effect=httpx.ConnectError("refused"))
        result = await registry.test_connection(BASE_URL, API_KEY)
        assert result.error_kind == "connection_error"

    @pytest.mark.asyncio
    async def test_malformed_url_never_raises(self, registry):
        result = await registry.test_connection("not-a-url", API_KEY)
        assert result.success is False
        assert result.error_kind == "validation_error"

    @pytest.mark.asyncio
    @respx.mock
    async def test_non_json_body(self, registry):
        respx.get(f"{API}/workflows").mock(return_value=httpx.Response(200, text="<html>login</html>"))
        result = await registry.test_connection(BASE_URL, API_KEY)
        assert result.error_kind == "provider_error"


class TestUpdate:
    @pytest.mark.asyncio
    async def test_rename_does_not_reconnect(self, registry, provider):
        """No routes are mocked: any request would fail the test."""
        with respx.mock:
            updated = await registry.update_provider(provider.id, ProviderUpdate(name="Renamed"))
        assert updated.name == "Renamed"
        assert updated.base_url == BASE_URL

    @pytest.mark.asyncio
    @respx.mock
    async def test_url_change_is_tested_with_new_values(self, registry, provider):
        _mock_healthy(api=f"{OTHER_URL}/api/v1", version="2.0.0")
        updated = await registry.update_provider(
            provider.id, ProviderUpdate(base_url=OTHER_URL, api_key="new-key-123"),
        )
        assert updated.base_url == OTHER_URL
        assert updated.version == "2.0.0"
        assert await registry.get_api_key(provider.id) == "new-key-123"

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_retest_leaves_record_unchanged(self, registry, provider):
        respx.get(f"{OTHER_URL}/api/v1/workflows").mock(return_value=httpx.Response(401))
        with pytest.raises(AuthError):
            await registry.update_provider(
                provider.id, ProviderUpdate(name="Renamed", base_url=OTHER_URL, api_key="bad"),
            )
        stored = await registry.get_provider(provider.id)
        assert stored.name == "Primary"
        assert stored.base_url == BASE_URL
        assert await registry.get_api_key(provider.id) == API_KEY

    @pytest.mark.asyncio
    async def test_unknown_provider(self, registry):
        with pytest.raises(ProviderNotFound):
            await registry.update_provider("missing", ProviderUpdate(name="x"))


class TestDeleteAndHealth:
    @pytest.mark.asyncio
    async def test_delete_cascades_to_workflows_and_executions(self, registry, provider, session_factory):
        async with session_scope(session_factory) as session:
            repo = Repository(session)
            workflow = await repo.ensure_workflow(provider.id, "wf-1")
            await repo.upsert_execution(provider.id, "ex-1", {
                "workflow_id": workflow.id, "provider_workflow_id": "wf-1", "status": "success",
            })
            log = await repo.start_sync_log(provider.id, "workflows")
            await repo.complete_sync_log(log.id, SyncLogStatus.SUCCESS, processed=1, inserted=1)

        assert await registry.delete_provider(provider.id) is True
        assert await registry.delete_provider(provider.id) is False

        async with session_scope(session_factory) as session:
            repo = Repository(session)
            assert await repo.get_workflow(workflow.id) is None
            assert await repo.get_execution_by_remote_id(provider.id, "ex-1") is None
            assert await repo.list_sync_logs(provider.id) == []

    @pytest.mark.asyncio
    async def test_list_filters_by_user(self, registry, session_factory, vault):
        mine = await add_provider(session_factory, vault, name="Mine")
        async with session_scope(session_factory) as session:
            await Repository(session).update_provider(mine.id, {"user_id": "u-1"})
        await add_provider(session_factory, vault, name="Theirs")

        assert [p.name for p in await registry.list_providers(user_id="u-1")] == ["Mine"]
        assert len(await registry.list_providers()) == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_check_provider_records_failure(self, registry, provider):
        respx.get(f"{API}/workflows").mock(return_value=httpx.Response(403))
        result = await registry.check_provider(provider.id)
        assert result.success is False
        stored = await registry.get_provider(provider.id)
        assert stored.status == ProviderStatus.ERROR
        assert stored.last_error
        assert stored.last_checked_at is not None

    @pytest.mark.asyncio
    @respx.mock
    async def test_delete_drops_the_provider_lock(self, registry, provider, workflow_syncer, locks):
        respx.get(f"{API}/workflows").mock(return_value=httpx.Response(200, json={"data": [], "nextCursor": None}))
        await workflow_syncer.sync_provider(provider)
        assert provider.id in locks

        assert await registry.delete_provider(provider.id) is True
        assert provider.id not in locks

    @pytest.mark.asyncio
    async def test_delete_waits_for_a_running_sync(self, registry, provider, locks):
        async with locks.for_provider(provider.id):
            deleting = asyncio.create_task(registry.delete_provider(provider.id))
            await asyncio.sleep(0.05)
            assert not deleting.done()
            assert await registry.get_provider(provider.id)
        assert await deleting is True
        assert await registry.list_providers() == []


class TestLegacyImport:
    @pytest.mark.asyncio
    @respx.mock
    async def test_imports_once(self, registry, config_store):
        _mock_healthy()
        await config_store.set("integrations.n8n.url", BASE_URL + "/")
        await config_store.set("integrations.n8n.api_key", API_KEY)

        provider = await registry.import_legacy_provider(config_store, user_id="u-1")

        assert provider.name == "Default n8n"
        assert provider.base_url == BASE_URL
        assert provider.status == ProviderStatus.HEALTHY
        assert provider.version == "1.45.0"
        assert await registry.get_api_key(provider.id) == API_KEY
        assert await registry.import_legacy_provider(config_store) is None
        assert len(await registry.list_providers()) == 1

    @pytest.mark.asyncio
    @respx.mock
    async def test_unreachable_instance_is_still_imported(self, registry, config_store):
        respx.get(f"{API}/workflows").mock(return_value=httpx.Response(401))
        await config_store.set("integrations.n8n.url", BASE_URL)
        await config_store.set("integrations.n8n.api_key", "expired-key")

        provider = await registry.import_legacy_provider(config_store)

        assert provider.is_connected is True
        assert provider.status == ProviderStatus.ERROR
        assert "401" in provider.last_error

    @pytest.mark.asyncio
    async def test_nothing_to_import(self, registry, config_store, session_factory, vault):
        assert await registry.import_legacy_provider(config_store) is None

        await config_store.set("integrations.n8n.url", BASE_URL)
        assert await registry.import_legacy_provider(config_store) is None

        await add_provider(session_factory, vault)
        await config_store.set("integrations.n8n.api_key", API_KEY)
        assert await registry.import_legacy_provider(config_store) is None
        assert len(await registry.list_providers()) == 1
