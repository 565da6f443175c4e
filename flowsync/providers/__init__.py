"""Provider registry and the REST client used to talk to provider instances."""

from flowsync.providers.client import ProviderClient, classify_http_error
from flowsync.providers.registry import ProviderRegistry

__all__ = ["ProviderClient", "ProviderRegistry", "classify_http_error"]
