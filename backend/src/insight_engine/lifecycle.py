"""
Insight lifecycle controller.

Ingests reflections into insights and moves insights through their states:

    candidate ──▶ promoted ──▶ cooldown ──▶ closed
                     ▲            │
                     └── reopen ──┘

A reflection is routed by its cluster key to the single open insight for that
key. No open insight: create one. Open candidate/promoted insight: merge.
Cooldown insight: reopen while the cooldown window is still running,
otherwise close it and start a brand-new insight. Closed insights are never
revived.

Each step runs inside one store transaction and emits its events only after
the transaction commits. Creation races are resolved by the store's
open-cluster uniqueness constraint: a DuplicateClusterError on insert means
another writer created the insight first, so the whole ingest is retried and
lands on the merge path.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from insight_engine.cluster_key import build_cluster_key_string, extract_cluster_key
from insight_engine.config import insight_settings
from insight_engine.errors import DuplicateClusterError
from insight_engine.events import (
    INSIGHT_CREATED,
    INSIGHT_PROMOTED,
    INSIGHT_REOPENED,
    EventBus,
    insight_event,
)
from insight_engine.models import INSIGHT_STATUSES, ClusterKey, Insight, Reflection
from insight_engine.promotion import PROMOTION_THRESHOLD, can_promote, is_override
from insight_engine.scoring import (
    SCORING_ENGINE_VERSION,
    build_decision_trace,
    compute_score,
    max_severity,
    score_to_priority,
)
from insight_engine.sweeper import tick_cooldowns

logger = logging.getLogger(__name__)

RECURRING_THRESHOLD = 4
TITLE_PAIN_CHARS = 80


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _generate_id() -> str:
    return f"ins-{uuid.uuid4().hex[:16]}"


def _union(existing: list[str], new: list[str]) -> list[str]:
    """Ordered set union: keeps first-seen order, drops duplicates."""
    return list(dict.fromkeys([*existing, *new]))


class InsightEngine:
    """Stateful core: ingest, create, merge, reopen, close."""

    def __init__(
        self,
        storage,
        events: EventBus | None = None,
        config: dict | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        settings = insight_settings(config)
        self.storage = storage
        self.events = events or EventBus()
        self.cooldown = timedelta(hours=settings["cooldown_hours"])
        self.conflict_retries = int(settings["conflict_retries"])
        self.clock = clock or _utcnow

    # ── Ingest ──────────────────────────────────────────────────────

    def ingest_reflection(self, reflection: Reflection) -> Insight:
        """Route a persisted reflection into its insight and return that insight."""
        key = extract_cluster_key(reflection)
        key_str = build_cluster_key_string(key)

        attempt = 0
        while True:
            try:
                with self.storage.transaction():
                    insight, pending = self._ingest(reflection, key, key_str)
                break
            except DuplicateClusterError:
                if attempt >= self.conflict_retries:
                    raise
                attempt += 1
                logger.warning(
                    "Cluster %s created concurrently; retrying reflection %s as merge (attempt %d)",
                    key_str, reflection.id, attempt,
                )

        for event in pending:
            self.events.emit(event)
        return insight

    def _ingest(self, reflection: Reflection, key: ClusterKey, key_str: str):
        now = self.clock()
        existing = self.storage.find_by_cluster(key_str, for_update=True)

        # Checked before the cooldown branches too: a re-delivery never reopens or closes.
        if existing and reflection.id in existing.reflection_ids:
            logger.debug("Reflection %s already linked to %s; nothing to do", reflection.id, existing.id)
            return existing, []

        if existing and existing.status == "cooldown":
            if existing.cooldown_until and now < existing.cooldown_until:
                return self._reopen(existing, reflection, now)
            self.storage.close_insight(existing.id, now)
            logger.info("Closed insight %s (cooldown elapsed) before new reflection on %s", existing.id, key_str)
            existing = None

        if existing:
            return self._merge(existing, reflection, now)
        return self._create(key, key_str, reflection, now)

    def _create(self, key: ClusterKey, key_str: str, reflection: Reflection, now: datetime):
        members = [reflection]
        score = compute_score(members)
        priority = score_to_priority(score)
        promote = can_promote(members)

        if promote:
            status = "promoted"
            # A lone reflection can only pass the gate through the override path.
            readiness = "override" if is_override(reflection) else "promoted"
            cooldown_until = now + self.cooldown
            cooldown_reason = "auto-promoted"
        else:
            status = "candidate"
            readiness = "not_ready"
            cooldown_until = None
            cooldown_reason = None

        insight = Insight(
            id=_generate_id(),
            cluster_key=key_str,
            workflow_stage=key.workflow_stage,
            failure_family=key.failure_family,
            impacted_unit=key.impacted_unit,
            title=f"{key.failure_family}: {reflection.pain[:TITLE_PAIN_CHARS]}",
            status=status,
            score=score,
            priority=priority,
            reflection_ids=[reflection.id],
            independent_count=1,
            evidence_refs=_union([], reflection.evidence),
            authors=[reflection.author],
            promotion_readiness=readiness,
            recurring_candidate=False,
            cooldown_until=cooldown_until,
            cooldown_reason=cooldown_reason,
            severity_max=max_severity(members),
            metadata=self._trace_metadata({}, members, key_str, readiness, None, score),
            created_at=now,
            updated_at=now,
        )
        self.storage.insert_insight(insight)

        if promote:
            logger.info("Created insight %s on %s as promoted (%s, score %.1f)", insight.id, key_str, readiness, score)
            event = insight_event(INSIGHT_PROMOTED, insight.id, priority=priority, score=score)
        else:
            logger.info("Created candidate insight %s on %s (score %.1f)", insight.id, key_str, score)
            event = insight_event(INSIGHT_CREATED, insight.id)
        return insight, [event]

    def _merge(self, existing: Insight, reflection: Reflection, now: datetime):
        members = self._members_with(existing, reflection)
        reflection_ids = [*existing.reflection_ids, reflection.id]
        authors = _union(existing.authors, [reflection.author])
        score = compute_score(members)
        priority = score_to_priority(score)

        promote = existing.status == "candidate" and can_promote(members)
        if promote:
            status = "promoted"
            readiness = "promoted" if len(authors) >= PROMOTION_THRESHOLD else "override"
            cooldown_until = now + self.cooldown
            cooldown_reason = "auto-promoted"
        else:
            status = existing.status
            readiness = existing.promotion_readiness
            if readiness == "not_ready" and status != "candidate" and can_promote(members):
                readiness = "ready"
            cooldown_until = existing.cooldown_until
            cooldown_reason = existing.cooldown_reason

        insight = existing.model_copy(update={
            "reflection_ids": reflection_ids,
            "authors": authors,
            "independent_count": len(authors),
            "evidence_refs": _union(existing.evidence_refs, reflection.evidence),
            "score": score,
            "priority": priority,
            "status": status,
            "promotion_readiness": readiness,
            "recurring_candidate": existing.recurring_candidate or len(reflection_ids) >= RECURRING_THRESHOLD,
            "cooldown_until": cooldown_until,
            "cooldown_reason": cooldown_reason,
            "severity_max": max_severity(members),
            "metadata": self._trace_metadata(
                existing.metadata, members, existing.cluster_key, readiness, existing.priority, score
            ),
            "updated_at": now,
        })
        self.storage.save_insight(insight)

        if promote:
            logger.info("Promoted insight %s (%s, %d authors, score %.1f)", insight.id, readiness, len(authors), score)
            return insight, [insight_event(INSIGHT_PROMOTED, insight.id, priority=priority, score=score)]
        logger.info("Merged reflection %s into insight %s (%d linked)", reflection.id, insight.id, len(reflection_ids))
        return insight, []

    def _reopen(self, existing: Insight, reflection: Reflection, now: datetime):
        members = self._members_with(existing, reflection)
        authors = _union(existing.authors, [reflection.author])
        score = compute_score(members)
        priority = score_to_priority(score)

        metadata = self._trace_metadata(
            existing.metadata, members, existing.cluster_key, "promoted", existing.priority, score
        )
        metadata["reopen_count"] = int(existing.metadata.get("reopen_count", 0)) + 1

        insight = existing.model_copy(update={
            "reflection_ids": [*existing.reflection_ids, reflection.id],
            "authors": authors,
            "independent_count": len(authors),
            "evidence_refs": _union(existing.evidence_refs, reflection.evidence),
            "score": score,
            "priority": priority,
            "status": "promoted",
            "promotion_readiness": "promoted",
            "recurring_candidate": True,
            "cooldown_until": now + self.cooldown,
            "cooldown_reason": "reopened",
            "severity_max": max_severity(members),
            "metadata": metadata,
            "updated_at": now,
        })
        self.storage.save_insight(insight)

        logger.info("Reopened insight %s from cooldown (reopen #%d)", insight.id, metadata["reopen_count"])
        return insight, [insight_event(INSIGHT_REOPENED, insight.id, priority=priority, score=score)]

    def _members_with(self, existing: Insight, reflection: Reflection) -> list[Reflection]:
        """Current member set plus the incoming reflection."""
        members = self.storage.get_reflections_by_ids(existing.reflection_ids)
        if len(members) != len(existing.reflection_ids):
            logger.warning(
                "Insight %s links %d reflections but only %d were found",
                existing.id, len(existing.reflection_ids), len(members),
            )
        return [*members, reflection]

    @staticmethod
    def _trace_metadata(metadata, members, key_str, readiness, previous_priority, score) -> dict:
        updated = dict(metadata or {})
        updated.update({
            "decision_trace": build_decision_trace(members, key_str, readiness, previous_priority, score),
            "dedupe_cluster_id": key_str,
            "promotion_band": readiness,
            "scoring_version": SCORING_ENGINE_VERSION,
        })
        return updated

    # ── Administrative ──────────────────────────────────────────────

    def update_insight_status(self, insight_id: str, status: str, task_id: str | None = None) -> bool:
        """Set status (and optionally link a task). False if the id is unknown."""
        if status not in INSIGHT_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Allowed: {', '.join(INSIGHT_STATUSES)}")
        with self.storage.transaction():
            updated = self.storage.update_insight_status(insight_id, status, self.clock(), task_id=task_id)
        if updated:
            logger.info("Insight %s status set to %s%s", insight_id, status, f" (task {task_id})" if task_id else "")
        return updated

    def tick_cooldowns(self, now: datetime | None = None) -> dict:
        return tick_cooldowns(self.storage, now or self.clock(), self.cooldown)

    def reconcile_task_links(
        self,
        create_task_fn: Callable[[Insight], dict | None],
        dry_run: bool = False,
    ) -> dict:
        """Create and link tasks for promoted insights that never got one.

        ``create_task_fn`` returns ``{"task_id": ...}`` or None to skip. Adding
        ``"existing": True`` means the id belongs to a task that was already
        there (a dedup hit), so it is counted as linked rather than created.
        A failure on one insight is recorded and the scan continues.
        """
        orphans = self.storage.get_orphaned_insights()
        result = {"scanned": len(orphans), "linked": 0, "created": 0, "skipped": 0, "errors": [], "details": []}

        for insight in orphans:
            if dry_run:
                result["created"] += 1
                result["details"].append({"insight_id": insight.id, "action": "would_create", "reason": "dry run"})
                continue
            try:
                task = create_task_fn(insight)
                if task:
                    self.update_insight_status(insight.id, "task_created", task_id=task["task_id"])
                    action = "linked" if task.get("existing") else "created"
                    result[action] += 1
                    result["details"].append({"insight_id": insight.id, "action": action, "task_id": task["task_id"]})
                else:
                    result["skipped"] += 1
                    result["details"].append({
                        "insight_id": insight.id,
                        "action": "skipped",
                        "reason": "create_task_fn returned None",
                    })
            except Exception as e:
                logger.error("Task reconciliation failed for %s: %s", insight.id, e)
                result["errors"].append(f"{insight.id}: {e}")
                result["details"].append({"insight_id": insight.id, "action": "error", "reason": str(e)})

        return result
