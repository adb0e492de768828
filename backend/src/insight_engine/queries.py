"""Read-only insight lookups, listing and statistics."""

from insight_engine.config import insight_settings
from insight_engine.models import Insight


def find_by_cluster(storage, cluster_key: str) -> Insight | None:
    """Most recent non-closed insight for a cluster key."""
    return storage.find_by_cluster(cluster_key)


def get_insight(storage, insight_id: str) -> Insight | None:
    return storage.get_insight(insight_id)


def list_insights(
    storage,
    filters: dict | None = None,
    limit: int | None = None,
    offset: int = 0,
    config: dict | None = None,
) -> dict:
    """Filtered page of insights, highest score first, newest first on ties.

    Filters: status ('all' disables it), priority, workflow_stage,
    failure_family, impacted_unit. ``limit`` is capped at the configured max.
    """
    settings = insight_settings(config)
    if limit is None:
        limit = settings["list_limit_default"]
    limit = max(0, min(int(limit), settings["list_limit_max"]))
    offset = max(0, int(offset))

    insights, total = storage.list_insights(filters or {}, limit, offset)
    return {"insights": insights, "total": total}


def insight_stats(storage) -> dict:
    """Total, counts by status and priority, top 20 failure families."""
    return storage.insight_stats()


def get_orphaned_insights(storage) -> list[Insight]:
    return storage.get_orphaned_insights()
