"""Helpers shared by the workflow and execution syncers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable

from pydantic import BaseModel

from flowsync.exceptions import FlowSyncError
from flowsync.types import FanOutResult, Provider, ProviderSyncOutcome, SyncKind

if TYPE_CHECKING:
    from flowsync.configstore import ConfigStore

logger = logging.getLogger(__name__)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from a provider payload into an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unparseable timestamp %r", value)
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ProviderLocks:
    """One asyncio.Lock per provider id.

    Shared by both syncers so writes for a single provider never interleave,
    while different providers proceed in parallel.
    """

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def for_provider(self, provider_id: str) -> asyncio.Lock:
        return self._locks[provider_id]

    def discard(self, provider_id: str) -> None:
        """Forget a deleted provider's lock."""
        self._locks.pop(provider_id, None)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._locks


async def read_setting(config_store: "ConfigStore | None", key: str, fallback: float) -> float:
    """A positive number from ConfigStore, else *fallback*.

    Unreadable or non-positive stored values fall back and are logged.
    """
    if config_store is None:
        return fallback
    try:
        stored = await config_store.get(key)
    except FlowSyncError as exc:
        logger.warning("Could not read %s (%s); using %s", key, exc.message, fallback)
        return fallback
    if isinstance(stored, (int, float)) and not isinstance(stored, bool) and stored > 0:
        return stored
    if stored is not None:
        logger.warning("Ignoring %s=%r; using %s", key, stored, fallback)
    return fallback


async def fan_out(
    kind: SyncKind,
    providers: Iterable[Provider],
    sync_one: Callable[[Provider], Awaitable[BaseModel]],
    max_concurrency: int = 3,
) -> FanOutResult:
    """Run *sync_one* for every provider with bounded concurrency.

    A provider's exception is recorded in its own outcome entry and never
    stops the others.
    """
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def run(provider: Provider) -> ProviderSyncOutcome:
        async with semaphore:
            try:
                result = await sync_one(provider)
            except FlowSyncError as exc:
                logger.warning("%s sync failed for provider %s: [%s] %s",
                               kind.value, provider.name, exc.kind, exc.message)
                return ProviderSyncOutcome(
                    provider_id=provider.id, provider_name=provider.name,
                    success=False, error=exc.message, error_kind=exc.kind,
                )
            except Exception as exc:
                logger.exception("%s sync crashed for provider %s", kind.value, provider.name)
                return ProviderSyncOutcome(
                    provider_id=provider.id, provider_name=provider.name,
                    success=False, error=f"{exc.__class__.__name__}: {exc}", error_kind="internal_error",
                )
            return ProviderSyncOutcome(
                provider_id=provider.id, provider_name=provider.name,
                success=True, result=result.model_dump(),
            )

    providers = list(providers)
    outcomes = await asyncio.gather(*(run(p) for p in providers))
    successful = sum(1 for o in outcomes if o.success)
    return FanOutResult(
        kind=kind,
        providers=len(providers),
        successful=successful,
        failed=len(providers) - successful,
        per_provider=list(outcomes),
    )
