"""ConfigStore: encrypted runtime settings with a change-audit trail."""

from flowsync.configstore.store import ConfigStore

__all__ = ["ConfigStore"]
