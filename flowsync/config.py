"""Application configuration. All env vars defined here with defaults."""

from pydantic_settings import BaseSettings

from flowsync.exceptions import ConfigurationError


class FlowSyncConfig(BaseSettings):
    # ── App ──
    app_name: str = "flowsync"
    debug: bool = False
    log_level: str = "INFO"

    # ── Database ──
    database_url: str = "sqlite+aiosqlite:///./data/flowsync.db"

    # ── Credentials ──
    encryption_key: str = ""                    # master secret; required, no fallback

    # ── Scheduler ──
    sync_interval_minutes: float = 15
    sync_on_start: bool = True                  # fire the first pass immediately

    # ── Provider HTTP ──
    connect_timeout_seconds: float = 10.0         # connection tests
    listing_timeout_seconds: float = 30.0       # paged workflow/execution listings
    api_key_header: str = "X-N8N-API-KEY"
    api_prefix: str = "/api/v1"

    # ── Sync batching ──
    execution_batch_size: int = 100
    manual_execution_batch_size: int = 200      # larger batches for manual triggers
    workflow_page_size: int = 100
    max_concurrent_providers: int = 3
    backup_retention: int = 10                  # workflow backup versions kept per workflow

    model_config = {"env_prefix": "FLOWSYNC_", "env_file": ".env", "extra": "ignore"}

    def require_encryption_key(self) -> str:
        """Return the master secret or refuse to start without one."""
        if not self.encryption_key:
            raise ConfigurationError(
                "FLOWSYNC_ENCRYPTION_KEY is not set; refusing to start without an "
                "externally supplied encryption secret"
            )
        return self.encryption_key
