"""ProviderRegistry: CRUD over provider records plus connection testing.

API keys are encrypted with the CredentialVault before they touch storage
and decrypted only when a client is built for a sync pass. Log lines show
keys masked.
"""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

from flowsync.config import FlowSyncConfig
from flowsync.credentials import CredentialVault, mask_secret
from flowsync.db.database import session_scope
from flowsync.db.models import ProviderModel
from flowsync.db.repository import Repository
from flowsync.exceptions import ProviderError, ProviderNotFound, ValidationError
from flowsync.providers.client import ProviderClient
from flowsync.types import ConnectionTestResult, Provider, ProviderStatus, ProviderUpdate

if TYPE_CHECKING:
    from flowsync.configstore import ConfigStore
    from flowsync.sync.common import ProviderLocks

logger = logging.getLogger(__name__)

LEGACY_URL_KEY = "integrations.n8n.url"
LEGACY_KEY_KEY = "integrations.n8n.api_key"
LEGACY_PROVIDER_NAME = "Default n8n"


def _validate_base_url(base_url: str) -> str:
    base_url = (base_url or "").strip().rstrip("/")
    if not base_url.startswith(("http://", "https://")):
        raise ValidationError(f"Base URL must start with http:// or https://, got {base_url!r}", key="base_url")
    return base_url


class ProviderRegistry:
    """Provider records and their health.

    Args:
        session_factory: async session factory.
        vault: encrypts/decrypts provider API keys.
        config: supplies HTTP timeouts and header names.
        clock: returns the current UTC time; injectable for tests.
        locks: the syncers' per-provider locks; a delete waits on them.
    """

    def __init__(
        self,
        session_factory,
        vault: CredentialVault,
        config: Optional[FlowSyncConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional["ProviderLocks"] = None,
    ):
        self._session_factory = session_factory
        self._vault = vault
        self._config = config or FlowSyncConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks = locks

    # ── Connection testing ──

    def client(self, base_url: str, api_key: str, timeout: Optional[float] = None, provider_id: str = "") -> ProviderClient:
        return ProviderClient(
            base_url,
            api_key,
            timeout=timeout or self._config.listing_timeout_seconds,
            api_key_header=self._config.api_key_header,
            api_prefix=self._config.api_prefix,
            provider_id=provider_id,
        )

    async def _ping(self, base_url: str, api_key: str) -> Optional[str]:
        async with self.client(base_url, api_key, timeout=self._config.connect_timeout_seconds) as client:
            return await client.ping()

    async def test_connection(self, base_url: str, api_key: str) -> ConnectionTestResult:
        """Check *base_url* with *api_key*. Failures are classified, never raised."""
        try:
            base_url = _validate_base_url(base_url)
            version = await self._ping(base_url, api_key)
        except (ProviderError, ValidationError) as exc:
            logger.info("Connection test to %s failed: %s", base_url, exc.message)
            return ConnectionTestResult(success=False, error=exc.message, error_kind=exc.kind)
        return ConnectionTestResult(success=True, version=version)

    # ── CRUD ──

    async def register_provider(
        self, name: str, base_url: str, api_key: str, user_id: Optional[str] = None
    ) -> Provider:
        """Test connectivity, then persist the provider with its key encrypted.

        Raises:
            ValidationError: empty name or key, or malformed URL.
            AuthError, NotFoundError, ProviderConnectionError, ProviderError:
                the connection test failed; nothing is stored.
        """
        if not name or not name.strip():
            raise ValidationError("Provider name is required", key="name")
        if not api_key:
            raise ValidationError("API key is required", key="api_key")
        base_url = _validate_base_url(base_url)

        version = await self._ping(base_url, api_key)
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            record = await Repository(session).create_provider(
                user_id=user_id,
                name=name.strip(),
                base_url=base_url,
                api_key_encrypted=self._vault.encrypt(api_key),
                is_connected=True,
                status=ProviderStatus.HEALTHY.value,
                version=version,
                last_checked_at=now,
            )
        logger.info("Registered provider %s (%s) at %s with key %s",
                    record.name, record.id, base_url, mask_secret(api_key))
        return Repository.model_to_provider(record)

    async def update_provider(self, provider_id: str, patch: ProviderUpdate) -> Provider:
        """Apply *patch*. A changed URL or key is tested first; on failure nothing changes.

        The new values and the resulting health are written in one commit.
        """
        async with session_scope(self._session_factory) as session:
            repo = Repository(session)
            record = await repo.get_provider(provider_id)
            if record is None:
                raise ProviderNotFound(f"Provider not found: {provider_id}", provider_id=provider_id)

            updates: dict = {}
            if patch.name is not None:
                if not patch.name.strip():
                    raise ValidationError("Provider name is required", key="name")
                updates["name"] = patch.name.strip()

            new_url = _validate_base_url(patch.base_url) if patch.base_url is not None else record.base_url
            url_changed = new_url != record.base_url
            key_changed = bool(patch.api_key)

            if url_changed or key_changed:
                api_key = patch.api_key or self._vault.decrypt(record.api_key_encrypted)
                version = await self._ping(new_url, api_key)
                updates.update({
                    "base_url": new_url,
                    "is_connected": True,
                    "status": ProviderStatus.HEALTHY.value,
                    "version": version,
                    "last_error": None,
                    "last_checked_at": self._clock(),
                })
                if key_changed:
                    updates["api_key_encrypted"] = self._vault.encrypt(patch.api_key)

            if updates:
                record = await repo.update_provider(provider_id, updates)
                logger.info("Updated provider %s: %s", provider_id, ", ".join(sorted(updates)))
            return Repository.model_to_provider(record)

    async def delete_provider(self, provider_id: str) -> bool:
        """Delete a provider; its workflows, executions, backups and sync logs go with it.

        Waits for any sync pass holding the provider's lock, then drops the lock.
        """
        if self._locks is None:
            deleted = await self._delete_record(provider_id)
        else:
            async with self._locks.for_provider(provider_id):
                deleted = await self._delete_record(provider_id)
            self._locks.discard(provider_id)
        if deleted:
            logger.info("Deleted provider %s", provider_id)
        return deleted

    async def _delete_record(self, provider_id: str) -> bool:
        async with session_scope(self._session_factory) as session:
            return await Repository(session).delete_provider(provider_id)

    async def import_legacy_provider(self, config_store: "ConfigStore", user_id: Optional[str] = None) -> Optional[Provider]:
        """Turn the single-instance ``integrations.n8n.*`` settings into a provider.

        Runs only while no provider exists. The connection is tested but a
        failure does not block the import; the provider is stored with status
        ``error`` and the next sync retries it.

        Returns:
            The imported provider, or None when there was nothing to import.
        """
        if await self.list_providers():
            return None
        base_url = (await config_store.get(LEGACY_URL_KEY) or "").strip().rstrip("/")
        api_key = await config_store.get(LEGACY_KEY_KEY) or ""
        if not base_url or not api_key:
            return None
        base_url = _validate_base_url(base_url)

        check = await self.test_connection(base_url, api_key)
        async with session_scope(self._session_factory) as session:
            record = await Repository(session).create_provider(
                user_id=user_id,
                name=LEGACY_PROVIDER_NAME,
                base_url=base_url,
                api_key_encrypted=self._vault.encrypt(api_key),
                is_connected=True,
                status=(ProviderStatus.HEALTHY if check.success else ProviderStatus.ERROR).value,
                version=check.version,
                last_error=check.error,
                last_checked_at=self._clock(),
            )
        logger.info("Imported provider %s (%s) at %s with key %s",
                    record.name, record.id, base_url, mask_secret(api_key))
        return Repository.model_to_provider(record)

    async def get_provider(self, provider_id: str) -> Provider:
        return Repository.model_to_provider(await self._get_record(provider_id))

    async def list_providers(self, user_id: Optional[str] = None, connected_only: bool = False) -> list[Provider]:
        async with session_scope(self._session_factory) as session:
            records = await Repository(session).list_providers(user_id=user_id, connected_only=connected_only)
        return [Repository.model_to_provider(r) for r in records]

    # ── Credentials & health ──

    async def get_api_key(self, provider_id: str) -> str:
        """Decrypt the provider's API key.

        Raises:
            ProviderNotFound: unknown id.
            DecryptionError: stored token is corrupt or was sealed with another key.
        """
        record = await self._get_record(provider_id)
        return self._vault.decrypt(record.api_key_encrypted)

    async def check_provider(self, provider_id: str) -> ConnectionTestResult:
        """Re-test a stored provider and record the outcome."""
        record = await self._get_record(provider_id)
        result = await self.test_connection(record.base_url, self._vault.decrypt(record.api_key_encrypted))
        await self.mark_health(provider_id, result.success, error=result.error, version=result.version)
        return result

    async def mark_health(
        self,
        provider_id: str,
        healthy: bool,
        error: Optional[str] = None,
        synced: bool = False,
        version: Optional[str] = None,
    ) -> None:
        now = self._clock()
        updates = {
            "status": (ProviderStatus.HEALTHY if healthy else ProviderStatus.ERROR).value,
            "last_error": None if healthy else error,
            "last_checked_at": now,
        }
        if synced and healthy:
            updates["last_synced_at"] = now
        if version:
            updates["version"] = version
        async with session_scope(self._session_factory) as session:
            await Repository(session).update_provider(provider_id, updates)

    async def _get_record(self, provider_id: str) -> ProviderModel:
        async with session_scope(self._session_factory) as session:
            record = await Repository(session).get_provider(provider_id)
        if record is None:
            raise ProviderNotFound(f"Provider not found: {provider_id}", provider_id=provider_id)
        return record
