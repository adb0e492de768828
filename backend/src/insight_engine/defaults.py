"""Shared default configuration for the engine, CLI and scheduled sweep."""


def default_config() -> dict:
    """Return a fresh default config dict.

    ``config.get_config`` falls back to this when ``config.yaml`` cannot be
    loaded from S3 or the local filesystem.
    """
    return {
        "storage": {
            "backend": "postgres",
            "database_url": None,
        },
        "insights": {
            "cooldown_hours": 24,
            "conflict_retries": 3,
            "list_limit_default": 50,
            "list_limit_max": 200,
        },
    }
