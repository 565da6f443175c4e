"""Typed exception hierarchy. Every error FlowSync can raise.

Each class carries a stable ``kind`` string. Callers at the system boundary
report ``to_dict()`` (kind + message) and never the traceback.
"""


class FlowSyncError(Exception):
    """Base exception for all FlowSync errors."""

    kind = "internal_error"

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ConfigurationError(FlowSyncError):
    """Process configuration is missing or unusable (e.g. no master secret)."""
    kind = "configuration_error"


class ValidationError(FlowSyncError):
    """A config value or request input failed validation."""
    kind = "validation_error"

    def __init__(self, message: str, key: str = "", errors: list = None, **kwargs):
        super().__init__(message, **kwargs)
        self.key = key
        self.errors = errors or []


class ConfigKeyNotFound(ValidationError):
    """The configuration key has no definition."""
    kind = "config_key_not_found"


class DecryptionError(FlowSyncError):
    """Ciphertext failed authentication: tampered data or wrong key."""
    kind = "decryption_error"


class PersistenceError(FlowSyncError):
    """The storage layer rejected or failed a read/write."""
    kind = "persistence_error"


# ── Provider errors ─────────────────────────────────────────────────────────


class ProviderError(FlowSyncError):
    """A provider endpoint answered with an unexpected status or payload."""
    kind = "provider_error"

    def __init__(self, message: str, status_code: int = None, provider_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.provider_id = provider_id


class AuthError(ProviderError):
    """Provider rejected the API key (HTTP 401/403)."""
    kind = "auth_error"


class NotFoundError(ProviderError):
    """Provider endpoint or remote object does not exist (HTTP 404)."""
    kind = "not_found"


class ProviderConnectionError(ProviderError):
    """Provider host unreachable or the request timed out."""
    kind = "connection_error"


class ProviderNotFound(FlowSyncError):
    """No local provider record with this id."""
    kind = "provider_not_found"

    def __init__(self, message: str, provider_id: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.provider_id = provider_id
