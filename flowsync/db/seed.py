"""Default configuration categories and values.

``ConfigStore.initialize()`` inserts whatever is missing here;
``ConfigStore.reset_to_defaults()`` writes these values back.
"""

from flowsync.version import __version__

DEFAULT_CATEGORIES = [
    {"name": "general", "display_name": "General", "description": "General application settings",
     "icon": "settings", "sort_order": 0, "is_system": False},
    {"name": "features", "display_name": "Features", "description": "Application feature toggles",
     "icon": "toggle", "sort_order": 1, "is_system": True},
    {"name": "sync", "display_name": "Synchronization", "description": "Provider polling and ingestion",
     "icon": "refresh", "sort_order": 2, "is_system": False},
    {"name": "integration", "display_name": "Integrations", "description": "Third-party service integrations",
     "icon": "plug", "sort_order": 3, "is_system": False},
    {"name": "advanced", "display_name": "Advanced", "description": "Advanced system configuration",
     "icon": "settings", "sort_order": 4, "is_system": True},
]


def _item(key, value, value_type, category, description, schema=None, is_secret=False, is_system=False):
    return {
        "key": key,
        "value": value,
        "value_type": value_type,
        "category": category,
        "description": description,
        "is_secret": is_secret,
        "is_system": is_system,
        "validation_schema": schema,
    }


DEFAULT_CONFIG = [
    # General
    _item("app.name", "FlowSync", "string", "general", "Application display name",
          {"type": "string", "minLength": 1, "maxLength": 50}),
    _item("app.version", __version__, "string", "general", "Application version",
          {"type": "string", "pattern": r"^[0-9]+\.[0-9]+\.[0-9]+"}, is_system=True),
    _item("app.timezone", "UTC", "string", "general", "Default application timezone",
          {"type": "string", "minLength": 1}),
    _item("app.log_level", "info", "string", "advanced", "Application log level",
          {"enum": ["debug", "info", "warning", "error"]}),

    # Feature flags
    _item("features.sync_enabled", True, "boolean", "features", "Enable automatic data synchronization",
          {"type": "boolean"}),
    _item("features.sync_interval_minutes", 15, "number", "features", "Data sync interval in minutes",
          {"type": "number", "minimum": 1, "maximum": 1440}),
    _item("features.analytics_enabled", True, "boolean", "features", "Enable usage analytics collection",
          {"type": "boolean"}),

    # Sync tuning
    _item("sync.execution_batch_size", 100, "number", "sync", "Executions fetched per page on scheduled passes",
          {"type": "integer", "minimum": 1, "maximum": 250}),
    _item("sync.workflow_page_size", 100, "number", "sync", "Workflows fetched per page",
          {"type": "integer", "minimum": 1, "maximum": 250}),
    _item("sync.max_concurrent_providers", 3, "number", "sync", "Providers synchronized in parallel",
          {"type": "integer", "minimum": 1, "maximum": 16}),
    _item("sync.backup_retention", 10, "number", "sync", "Workflow backup versions kept per workflow",
          {"type": "integer", "minimum": 1, "maximum": 100}),

    # Integrations
    _item("integrations.n8n.url", "", "string", "integration", "n8n instance imported as the first provider",
          {"type": "string", "pattern": r"^(https?://\S+)?$"}),
    _item("integrations.n8n.api_key", None, "string", "integration", "API key for the imported n8n instance",
          {"type": "string", "minLength": 1}, is_secret=True),

    # Advanced
    _item("security.cors_origins", ["http://localhost:3000"], "json", "advanced", "Allowed CORS origins",
          {"type": "array", "items": {"type": "string"}}),
]
