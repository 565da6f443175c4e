"""HTTP client for the provider REST API (n8n public API v1).

Listings are cursor-paged: each response carries ``data`` and an optional
``nextCursor``. Requests authenticate with an API-key header. Nothing here
retries; a failing provider is simply tried again on the next pass.
"""

import logging
from typing import Any, AsyncIterator, Optional

import httpx

from flowsync.credentials.vault import redact_headers
from flowsync.exceptions import AuthError, NotFoundError, ProviderConnectionError, ProviderError

logger = logging.getLogger(__name__)


def classify_http_error(status_code: int, detail: str = "", provider_id: str = "") -> ProviderError:
    """Map an HTTP failure status to the provider error taxonomy."""
    suffix = f": {detail}" if detail else ""
    if status_code in (401, 403):
        return AuthError(
            f"Provider rejected the API key (HTTP {status_code}){suffix}",
            status_code=status_code, provider_id=provider_id,
        )
    if status_code == 404:
        return NotFoundError(
            f"Provider endpoint not found (HTTP 404); check the base URL{suffix}",
            status_code=status_code, provider_id=provider_id,
        )
    return ProviderError(
        f"Provider returned HTTP {status_code}{suffix}",
        status_code=status_code, provider_id=provider_id,
    )


def classify_transport_error(exc: httpx.HTTPError, provider_id: str = "") -> ProviderError:
    """Map an httpx transport failure (timeout, DNS, refused) to ProviderConnectionError."""
    if isinstance(exc, httpx.TimeoutException):
        return ProviderConnectionError(
            "Connection timeout; check the URL and network", provider_id=provider_id,
        )
    return ProviderConnectionError(
        f"Cannot reach provider: {exc.__class__.__name__}: {exc}", provider_id=provider_id,
    )


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "")[:200]
    return ""


class ProviderClient:
    """Async client for one provider instance. Use as an async context manager.

    Args:
        base_url: instance root, e.g. ``https://n8n.example.com``.
        api_key: plaintext API key; only ever placed in the request header.
        timeout: per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        api_key_header: str = "X-N8N-API-KEY",
        api_prefix: str = "/api/v1",
        provider_id: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.provider_id = provider_id
        self._api_root = f"{self.base_url}/{api_prefix.strip('/')}"
        self._headers = {api_key_header: api_key, "Accept": "application/json"}
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "ProviderClient":
        self._client = httpx.AsyncClient(
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        if self._client is None:
            raise RuntimeError("ProviderClient must be used inside 'async with'")
        url = f"{self._api_root}/{path.lstrip('/')}"
        logger.debug("GET %s params=%s headers=%s", url, params, redact_headers(self._headers))
        kwargs = {"params": params}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._client.get(url, **kwargs)
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc, self.provider_id) from exc
        if response.status_code >= 400:
            raise classify_http_error(response.status_code, _error_detail(response), self.provider_id)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                f"Provider returned a non-JSON body for {path}", status_code=response.status_code,
                provider_id=self.provider_id,
            ) from exc

    async def _pages(self, path: str, params: dict) -> AsyncIterator[list[dict]]:
        seen: set[str] = set()
        cursor = None
        while True:
            query = dict(params)
            if cursor:
                query["cursor"] = cursor
            body = await self._get(path, query)
            items = body.get("data", []) if isinstance(body, dict) else body
            yield list(items or [])
            cursor = body.get("nextCursor") if isinstance(body, dict) else None
            if not cursor or cursor in seen:
                return
            seen.add(cursor)

    # ── Public API ──

    async def ping(self) -> Optional[str]:
        """Cheap authenticated request. Returns the remote version when the instance exposes it.

        Raises:
            AuthError, NotFoundError, ProviderConnectionError, ProviderError
        """
        await self._get("workflows", {"limit": 1})
        try:
            owner = await self._get("owner")
        except ProviderError as exc:
            logger.debug("Version lookup unavailable for %s: %s", self.base_url, exc.message)
            return None
        if isinstance(owner, dict):
            return owner.get("version")
        return None

    def list_workflows(self, limit: int = 100) -> AsyncIterator[list[dict]]:
        """Yield pages of workflow definitions, following ``nextCursor``."""
        return self._pages("workflows", {"limit": limit})

    async def get_workflow(self, provider_workflow_id: str) -> dict:
        return await self._get(f"workflows/{provider_workflow_id}")

    def list_executions(self, limit: int = 100, include_data: bool = True) -> AsyncIterator[list[dict]]:
        """Yield pages of executions, newest first, following ``nextCursor``."""
        params = {"limit": limit}
        if include_data:
            params["includeData"] = "true"
        return self._pages("executions", params)

    async def get_execution(self, provider_execution_id: str, include_data: bool = True) -> dict:
        params = {"includeData": "true"} if include_data else None
        return await self._get(f"executions/{provider_execution_id}", params)
