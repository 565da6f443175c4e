"""ConfigStore tests: typed values, schema validation, secrets, and the audit trail."""

import pytest

from flowsync.db.database import session_scope
from flowsync.db.repository import Repository
from flowsync.db.seed import DEFAULT_CONFIG
from flowsync.exceptions import ConfigKeyNotFound, ValidationError
from flowsync.types import AuditMeta, ConfigValueType, User


@pytest.mark.asyncio
async def test_initialize_is_idempotent(config_store):
    """initialize() already ran in the fixture; a second call inserts nothing."""
    assert await config_store.initialize() == 0
    items = await config_store.get_all()
    assert {i.key for i in items} == {d["key"] for d in DEFAULT_CONFIG}


@pytest.mark.asyncio
async def test_seeded_defaults_are_typed(config_store):
    assert await config_store.get("features.sync_enabled") is True
    assert await config_store.get("features.sync_interval_minutes") == 15
    assert await config_store.get("security.cors_origins") == ["http://localhost:3000"]
    assert await config_store.get("integrations.n8n.api_key") is None


@pytest.mark.asyncio
async def test_get_unknown_key_returns_none(config_store):
    assert await config_store.get("no.such.key") is None


@pytest.mark.asyncio
async def test_two_sets_give_two_ordered_audit_entries(config_store):
    await config_store.upsert("k", "v0", ConfigValueType.STRING)
    await config_store.set("k", "v1", AuditMeta(changed_by="alice"))
    await config_store.set("k", "v2", AuditMeta(changed_by="bob", change_reason="typo"))

    assert await config_store.get("k") == "v2"
    entries = await config_store.get_audit_log("k")
    updates = entries[1:]  # first entry records the key's creation
    assert [(e.old_value, e.new_value) for e in updates] == [("v0", "v1"), ("v1", "v2")]
    assert [e.changed_by for e in updates] == ["alice", "bob"]
    assert updates[1].change_reason == "typo"


@pytest.mark.asyncio
async def test_set_records_user_attribution(config_store):
    user = User(id="u-1", email="ops@example.com", name="Ops", role="admin")
    meta = AuditMeta.for_user(user, ip_address="10.0.0.1", user_agent="pytest")
    await config_store.set("app.timezone", "Europe/Paris", meta)
    entry = (await config_store.get_audit_log("app.timezone"))[-1]
    assert entry.changed_by == "ops@example.com"
    assert entry.ip_address == "10.0.0.1"
    assert entry.user_agent == "pytest"


@pytest.mark.asyncio
async def test_schema_violation_rejected_without_audit(config_store):
    with pytest.raises(ValidationError) as exc_info:
        await config_store.set("features.sync_interval_minutes", 5000)
    assert exc_info.value.key == "features.sync_interval_minutes"
    assert exc_info.value.errors
    assert await config_store.get("features.sync_interval_minutes") == 15
    assert await config_store.get_audit_log("features.sync_interval_minutes") == []


@pytest.mark.asyncio
async def test_form_values_are_coerced(config_store):
    await config_store.set("features.sync_interval_minutes", "30")
    await config_store.set("features.sync_enabled", "false")
    assert await config_store.get("features.sync_interval_minutes") == 30
    assert await config_store.get("features.sync_enabled") is False


@pytest.mark.asyncio
async def test_type_mismatch_rejected(config_store):
    with pytest.raises(ValidationError):
        await config_store.set("features.sync_enabled", "maybe")
    with pytest.raises(ValidationError):
        await config_store.set("features.sync_interval_minutes", "fifteen")


@pytest.mark.asyncio
async def test_enum_and_pattern_schemas(config_store):
    with pytest.raises(ValidationError):
        await config_store.set("app.log_level", "verbose")
    with pytest.raises(ValidationError):
        await config_store.set("integrations.n8n.url", "ftp://nope")
    await config_store.set("integrations.n8n.url", "https://n8n.example.com")
    assert await config_store.get("integrations.n8n.url") == "https://n8n.example.com"


@pytest.mark.asyncio
async def test_unknown_key_on_set(config_store):
    with pytest.raises(ConfigKeyNotFound):
        await config_store.set("no.such.key", "x")


@pytest.mark.asyncio
async def test_read_only_key_rejects_set(config_store):
    with pytest.raises(ValidationError):
        await config_store.set("app.version", "9.9.9")


@pytest.mark.asyncio
async def test_batch_applies_valid_keys_only(config_store):
    result = await config_store.set_many({
        "app.name": "Dashboard",
        "features.sync_interval_minutes": 0,
        "no.such.key": 1,
        "features.analytics_enabled": False,
    })
    assert sorted(result.applied) == ["app.name", "features.analytics_enabled"]
    assert set(result.errors) == {"features.sync_interval_minutes", "no.such.key"}
    assert await config_store.get("app.name") == "Dashboard"
    assert await config_store.get("features.sync_interval_minutes") == 15


@pytest.mark.asyncio
async def test_secret_encrypted_at_rest_and_masked(config_store, session_factory, vault):
    await config_store.set("integrations.n8n.api_key", "n8n_api_supersecret")

    async with session_scope(session_factory) as session:
        row = await Repository(session).get_config_item("integrations.n8n.api_key")
    assert row.value != "n8n_api_supersecret"
    assert vault.decrypt(row.value) == "n8n_api_supersecret"

    assert await config_store.get("integrations.n8n.api_key") == "n8n_api_supersecret"
    listed = {i.key: i for i in await config_store.get_by_category("integration")}
    assert listed["integrations.n8n.api_key"].value == "***"

    entry = (await config_store.get_audit_log("integrations.n8n.api_key"))[-1]
    assert entry.new_value == "***"
    assert "supersecret" not in str(entry.model_dump())


@pytest.mark.asyncio
async def test_upsert_creates_then_updates_value_only(config_store):
    await config_store.upsert(
        "custom.retries", 3, ConfigValueType.NUMBER, category="advanced",
        description="Retry budget", schema={"type": "integer", "minimum": 0},
    )
    await config_store.upsert(
        "custom.retries", 5, ConfigValueType.STRING, category="general", description="changed",
    )
    item = await config_store.get_item("custom.retries")
    assert item.value == 5
    assert item.type == ConfigValueType.NUMBER
    assert item.category == "advanced"
    assert item.description == "Retry budget"
    assert len(await config_store.get_audit_log("custom.retries")) == 2


@pytest.mark.asyncio
async def test_reset_to_defaults_audits_each_change(config_store):
    await config_store.set("app.name", "Renamed")
    await config_store.set("features.sync_interval_minutes", 60)

    changed = await config_store.reset_to_defaults(AuditMeta(changed_by="admin"))

    assert sorted(changed) == ["app.name", "features.sync_interval_minutes"]
    assert await config_store.get("app.name") == "FlowSync"
    assert await config_store.get("features.sync_interval_minutes") == 15
    last = (await config_store.get_audit_log("app.name"))[-1]
    assert (last.old_value, last.new_value, last.changed_by) == ("Renamed", "FlowSync", "admin")


@pytest.mark.asyncio
async def test_categories_sorted(config_store):
    categories = await config_store.get_categories()
    assert [c.name for c in categories][:2] == ["general", "features"]
    assert all(c.display_name for c in categories)
