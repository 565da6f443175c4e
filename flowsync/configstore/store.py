"""ConfigStore: typed key/value settings with encrypted secrets and an audit trail.

Every successful mutation writes the new value and exactly one audit entry
in the same commit. Secret values are encrypted with the CredentialVault
and are recorded as ``***`` in the audit log.
"""

import logging
from typing import Any, Optional

from flowsync.configstore.validation import (
    coerce_value, deserialize_value, serialize_value, validate_value,
)
from flowsync.credentials import CredentialVault
from flowsync.db.database import init_db, session_scope
from flowsync.db.models import ConfigItemModel
from flowsync.db.repository import Repository, as_utc
from flowsync.db.seed import DEFAULT_CATEGORIES, DEFAULT_CONFIG
from flowsync.exceptions import ConfigKeyNotFound, ValidationError
from flowsync.types import (
    AuditMeta, ConfigAuditEntry, ConfigBatchResult, ConfigCategory, ConfigItem, ConfigValueType,
)

logger = logging.getLogger(__name__)

SECRET_PLACEHOLDER = "***"


class ConfigStore:
    """Encrypted configuration backed by the ``config_items`` table.

    Args:
        session_factory: async session factory for the shared database.
        vault: encrypts ``is_secret`` values at rest.
        engine: when given, :meth:`initialize` also creates missing tables.
    """

    def __init__(self, session_factory, vault: CredentialVault, engine=None):
        self._session_factory = session_factory
        self._vault = vault
        self._engine = engine

    async def initialize(self) -> int:
        """Create schema if absent and insert missing default keys. Safe to repeat.

        Returns:
            Number of default keys inserted.
        """
        if self._engine is not None:
            await init_db(self._engine)
        items = [self._seed_row(d) for d in DEFAULT_CONFIG]
        async with session_scope(self._session_factory) as session:
            inserted = await Repository(session).seed_config(DEFAULT_CATEGORIES, items)
        if inserted:
            logger.info("Seeded %d default configuration keys", inserted)
        return inserted

    # ── Reads ──

    async def get(self, key: str) -> Any:
        """Return the typed value of *key*, or ``None`` when unset or undefined.

        Raises:
            DecryptionError: the stored secret cannot be decrypted with this key.
        """
        async with session_scope(self._session_factory) as session:
            item = await Repository(session).get_config_item(key)
        if item is None:
            return None
        return self._read_value(item)

    async def get_item(self, key: str) -> Optional[ConfigItem]:
        async with session_scope(self._session_factory) as session:
            item = await Repository(session).get_config_item(key)
        return self._to_item(item, reveal=True) if item is not None else None

    async def get_all(self) -> list[ConfigItem]:
        """All items; secret values are masked."""
        async with session_scope(self._session_factory) as session:
            items = await Repository(session).list_config_items()
        return [self._to_item(i, reveal=False) for i in items]

    async def get_by_category(self, category: str) -> list[ConfigItem]:
        async with session_scope(self._session_factory) as session:
            items = await Repository(session).list_config_items(category=category)
        return [self._to_item(i, reveal=False) for i in items]

    async def get_categories(self) -> list[ConfigCategory]:
        async with session_scope(self._session_factory) as session:
            categories = await Repository(session).list_config_categories()
        return [
            ConfigCategory(
                name=c.name,
                display_name=c.display_name,
                description=c.description or "",
                icon=c.icon or "",
                sort_order=c.sort_order or 0,
                is_system=bool(c.is_system),
            )
            for c in categories
        ]

    async def get_audit_log(self, key: Optional[str] = None, limit: int = 100) -> list[ConfigAuditEntry]:
        """Audit entries oldest first, optionally for one key."""
        async with session_scope(self._session_factory) as session:
            entries = await Repository(session).list_config_audit(key=key, limit=limit)
        return [Repository.model_to_audit_entry(e) for e in entries]

    # ── Writes ──

    async def set(self, key: str, value: Any, meta: Optional[AuditMeta] = None) -> ConfigItem:
        """Validate and persist *value*, appending one audit entry.

        Raises:
            ConfigKeyNotFound: *key* has no definition.
            ValidationError: the key is read-only or *value* fails its schema.
        """
        meta = meta or AuditMeta()
        async with session_scope(self._session_factory) as session:
            repo = Repository(session)
            item = await repo.get_config_item(key)
            if item is None:
                raise ConfigKeyNotFound(f"Unknown configuration key: {key}", key=key)
            if item.is_system:
                raise ValidationError(f"{key} is read-only", key=key)
            await self._write(repo, item, value, meta)
            logger.info("Config %s updated by %s", key, meta.changed_by)
            return self._to_item(item, reveal=False)

    async def set_many(self, values: dict[str, Any], meta: Optional[AuditMeta] = None) -> ConfigBatchResult:
        """Apply several keys. A rejected key does not stop the others."""
        result = ConfigBatchResult()
        for key, value in values.items():
            try:
                await self.set(key, value, meta)
            except ValidationError as exc:
                result.errors[key] = exc.message
                continue
            result.applied.append(key)
        if result.errors:
            logger.warning("Config batch rejected %d key(s): %s", len(result.errors), ", ".join(result.errors))
        return result

    async def upsert(
        self,
        key: str,
        value: Any,
        value_type: ConfigValueType = ConfigValueType.STRING,
        category: str = "general",
        description: str = "",
        is_secret: bool = False,
        is_system: bool = False,
        schema: Optional[dict] = None,
        meta: Optional[AuditMeta] = None,
    ) -> ConfigItem:
        """Create the key definition if missing, else update its value only."""
        meta = meta or AuditMeta()
        value_type = ConfigValueType(value_type)
        async with session_scope(self._session_factory) as session:
            repo = Repository(session)
            item = await repo.get_config_item(key)
            if item is not None:
                await self._write(repo, item, value, meta)
                return self._to_item(item, reveal=False)

            typed = coerce_value(key, value, value_type)
            validate_value(key, typed, schema)
            plain = serialize_value(typed, value_type)
            item = await repo.create_config_item(
                {
                    "key": key,
                    "value": self._seal(plain, is_secret),
                    "value_type": value_type.value,
                    "category": category,
                    "description": description,
                    "is_secret": is_secret,
                    "is_system": is_system,
                    "validation_schema": schema,
                },
                meta,
                audit_new=self._audit_text(plain, is_secret),
            )
            logger.info("Config key %s created in category %s", key, category)
            return self._to_item(item, reveal=False)

    async def reset_to_defaults(self, meta: Optional[AuditMeta] = None) -> list[str]:
        """Write every seeded default back, auditing each key that changes.

        Returns:
            Keys whose value was changed or created.
        """
        meta = meta or AuditMeta(change_reason="reset to defaults")
        changed = []
        async with session_scope(self._session_factory) as session:
            repo = Repository(session)
            await repo.seed_config(DEFAULT_CATEGORIES, [])
            for default in DEFAULT_CONFIG:
                key = default["key"]
                value_type = ConfigValueType(default["value_type"])
                plain = serialize_value(default["value"], value_type)
                item = await repo.get_config_item(key)
                if item is None:
                    row = self._seed_row(default)
                    await repo.create_config_item(row, meta, audit_new=self._audit_text(plain, row["is_secret"]))
                    changed.append(key)
                    continue
                if self._plain_value(item) == plain:
                    continue
                await repo.write_config_value(
                    item,
                    self._seal(plain, item.is_secret),
                    meta,
                    audit_old=self._audit_text(item.value, item.is_secret),
                    audit_new=self._audit_text(plain, item.is_secret),
                )
                changed.append(key)
        logger.info("Reset %d configuration key(s) to defaults", len(changed))
        return changed

    # ── Internals ──

    async def _write(self, repo: Repository, item: ConfigItemModel, value: Any, meta: AuditMeta) -> None:
        value_type = ConfigValueType(item.value_type)
        typed = coerce_value(item.key, value, value_type)
        validate_value(item.key, typed, item.validation_schema)
        plain = serialize_value(typed, value_type)
        await repo.write_config_value(
            item,
            self._seal(plain, item.is_secret),
            meta,
            audit_old=self._audit_text(item.value, item.is_secret),
            audit_new=self._audit_text(plain, item.is_secret),
        )

    def _seed_row(self, default: dict) -> dict:
        value_type = ConfigValueType(default["value_type"])
        row = dict(default)
        row["value"] = self._seal(serialize_value(default["value"], value_type), default["is_secret"])
        return row

    def _seal(self, plain: Optional[str], is_secret: bool) -> Optional[str]:
        if is_secret and plain:
            return self._vault.encrypt(plain)
        return plain

    @staticmethod
    def _audit_text(text: Optional[str], is_secret: bool) -> Optional[str]:
        if is_secret and text:
            return SECRET_PLACEHOLDER
        return text

    def _plain_value(self, item: ConfigItemModel) -> Optional[str]:
        if item.is_secret and item.value:
            return self._vault.decrypt(item.value)
        return item.value

    def _read_value(self, item: ConfigItemModel) -> Any:
        return deserialize_value(self._plain_value(item), ConfigValueType(item.value_type))

    def _to_item(self, item: ConfigItemModel, reveal: bool) -> ConfigItem:
        if item.is_secret and not reveal:
            value = SECRET_PLACEHOLDER if item.value else None
        else:
            value = self._read_value(item)
        return ConfigItem(
            key=item.key,
            value=value,
            type=ConfigValueType(item.value_type),
            category=item.category,
            description=item.description or "",
            is_secret=bool(item.is_secret),
            is_system=bool(item.is_system),
            schema=item.validation_schema,
            updated_at=as_utc(item.updated_at),
        )
