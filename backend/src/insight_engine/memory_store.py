"""
In-process reflection and insight store.

Same methods as ``storage.InsightStorage``. Used by tests and single-process
tooling. A re-entrant lock stands in for the database transaction and a
snapshot taken on entry is restored if the transaction body raises, so a
failed lifecycle step leaves nothing half-applied. The open-cluster
uniqueness rule is enforced on insert and save, like the partial unique
index in PostgreSQL.
"""

import threading
from collections import Counter
from contextlib import contextmanager
from datetime import datetime

from insight_engine.errors import DuplicateClusterError
from insight_engine.models import Insight, Reflection

_LIST_FILTERS = ("status", "priority", "workflow_stage", "failure_family", "impacted_unit")


class MemoryInsightStorage:
    def __init__(self):
        self._lock = threading.RLock()
        self._reflections: dict[str, Reflection] = {}
        self._insights: dict[str, Insight] = {}
        self._tx_depth = 0

    def close(self):
        pass

    @contextmanager
    def transaction(self):
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            snapshot = {k: v.model_copy(deep=True) for k, v in self._insights.items()}
            self._tx_depth = 1
            try:
                yield self
            except Exception:
                self._insights = snapshot
                raise
            finally:
                self._tx_depth = 0

    # ── Reflections ─────────────────────────────────────────────────

    def insert_reflection(self, reflection: Reflection):
        with self._lock:
            self._reflections.setdefault(reflection.id, reflection)

    def get_reflection(self, reflection_id: str) -> Reflection | None:
        return self._reflections.get(reflection_id)

    def get_reflections_by_ids(self, ids: list[str]) -> list[Reflection]:
        return [self._reflections[i] for i in ids if i in self._reflections]

    # ── Insights ────────────────────────────────────────────────────

    def get_insight(self, insight_id: str, for_update: bool = False) -> Insight | None:
        insight = self._insights.get(insight_id)
        return insight.model_copy(deep=True) if insight else None

    def find_by_cluster(self, cluster_key: str, for_update: bool = False) -> Insight | None:
        matches = [
            i for i in self._insights.values()
            if i.cluster_key == cluster_key and i.status != "closed"
        ]
        if not matches:
            return None
        latest = max(matches, key=lambda i: i.created_at)
        return latest.model_copy(deep=True)

    def insert_insight(self, insight: Insight):
        with self._lock:
            self._check_open_cluster(insight)
            self._insights[insight.id] = insight.model_copy(deep=True)

    def save_insight(self, insight: Insight):
        with self._lock:
            if insight.id not in self._insights:
                return
            self._check_open_cluster(insight)
            self._insights[insight.id] = insight.model_copy(deep=True)

    def close_insight(self, insight_id: str, now: datetime) -> bool:
        with self._lock:
            insight = self._insights.get(insight_id)
            if not insight or insight.status == "closed":
                return False
            insight.status = "closed"
            insight.updated_at = now
            return True

    def update_insight_status(
        self, insight_id: str, status: str, now: datetime, task_id: str | None = None
    ) -> bool:
        with self._lock:
            insight = self._insights.get(insight_id)
            if not insight:
                return False
            updated = insight.model_copy(update={"status": status, "updated_at": now})
            if task_id:
                updated.task_id = task_id
            if status == "candidate":
                updated.cooldown_until = None
            self._check_open_cluster(updated)
            self._insights[insight_id] = updated
            return True

    # ── Cooldown sweep ──────────────────────────────────────────────

    def cool_expired_promotions(self, now: datetime) -> int:
        count = 0
        with self._lock:
            for insight in self._insights.values():
                if (
                    insight.status == "promoted"
                    and insight.cooldown_until is not None
                    and insight.cooldown_until <= now
                ):
                    insight.status = "cooldown"
                    insight.cooldown_reason = "auto-cooldown"
                    insight.updated_at = now
                    count += 1
        return count

    def close_stale_cooldowns(self, cutoff: datetime, now: datetime) -> int:
        count = 0
        with self._lock:
            for insight in self._insights.values():
                if insight.status == "cooldown" and insight.updated_at < cutoff:
                    insight.status = "closed"
                    insight.updated_at = now
                    count += 1
        return count

    # ── Listing / stats ─────────────────────────────────────────────

    def list_insights(self, filters: dict, limit: int, offset: int) -> tuple[list[Insight], int]:
        rows = list(self._insights.values())
        for field in _LIST_FILTERS:
            value = filters.get(field)
            if not value or (field == "status" and value == "all"):
                continue
            rows = [r for r in rows if getattr(r, field) == value]
        rows.sort(key=lambda r: (r.score, r.created_at), reverse=True)
        page = rows[offset:offset + limit]
        return [r.model_copy(deep=True) for r in page], len(rows)

    def insight_stats(self) -> dict:
        insights = list(self._insights.values())
        families = Counter(i.failure_family for i in insights)
        top = sorted(families.items(), key=lambda kv: (-kv[1], kv[0]))[:20]
        return {
            "total": len(insights),
            "by_status": dict(Counter(i.status for i in insights)),
            "by_priority": dict(Counter(i.priority for i in insights)),
            "by_failure_family": dict(top),
        }

    def get_orphaned_insights(self) -> list[Insight]:
        rows = [
            i for i in self._insights.values()
            if i.status in ("promoted", "task_created") and not i.task_id
        ]
        rows.sort(key=lambda i: i.score, reverse=True)
        return [r.model_copy(deep=True) for r in rows]

    def _check_open_cluster(self, insight: Insight):
        if insight.status == "closed":
            return
        for other in self._insights.values():
            if (
                other.id != insight.id
                and other.cluster_key == insight.cluster_key
                and other.status != "closed"
            ):
                raise DuplicateClusterError(insight.cluster_key)
