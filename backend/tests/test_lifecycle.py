from datetime import timedelta

import pytest

from conftest import T0
from insight_engine.errors import DuplicateClusterError
from insight_engine.events import INSIGHT_CREATED, INSIGHT_PROMOTED, INSIGHT_REOPENED
from insight_engine.lifecycle import InsightEngine
from insight_engine.memory_store import MemoryInsightStorage
from insight_engine.scoring import SCORING_ENGINE_VERSION

CRITICAL = {"severity": "critical", "evidence": ["logs/run-41.log"]}


def _kinds(events):
    return [e["data"]["kind"] for e in events]


# ── Create ──────────────────────────────────────────────────────────


def test_first_reflection_creates_candidate(ingest, make_reflection, emitted):
    r = make_reflection()
    insight = ingest(r)

    assert insight.id.startswith("ins-")
    assert insight.cluster_key == "test::testing::api"
    assert (insight.workflow_stage, insight.failure_family, insight.impacted_unit) == ("test", "testing", "api")
    assert insight.title == "testing: Integration tests time out against the staging API"
    assert insight.status == "candidate"
    assert insight.promotion_readiness == "not_ready"
    assert insight.score == 5.0
    assert insight.priority == "P1"
    assert insight.reflection_ids == [r.id]
    assert insight.authors == ["alice"]
    assert insight.independent_count == 1
    assert insight.cooldown_until is None
    assert insight.created_at == insight.updated_at == T0
    assert _kinds(emitted) == [INSIGHT_CREATED]
    assert emitted[0]["data"] == {"kind": INSIGHT_CREATED, "insightId": insight.id}


def test_title_truncates_pain(ingest, make_reflection):
    insight = ingest(make_reflection(pain="x" * 200))
    assert insight.title == "testing: " + "x" * 80


def test_critical_with_evidence_promotes_immediately(ingest, make_reflection, emitted):
    insight = ingest(make_reflection(confidence=5, **CRITICAL))

    assert insight.status == "promoted"
    assert insight.promotion_readiness == "override"
    assert insight.score == 7.0
    assert insight.priority == "P1"
    assert insight.severity_max == "critical"
    assert insight.evidence_refs == ["logs/run-41.log"]
    assert insight.cooldown_until == T0 + timedelta(hours=24)
    assert insight.cooldown_reason == "auto-promoted"

    assert _kinds(emitted) == [INSIGHT_PROMOTED]
    assert emitted[0]["type"] == "insight_created"
    assert emitted[0]["id"] == f"evt-insight-promoted-{insight.id}"
    assert emitted[0]["data"]["priority"] == "P1"
    assert emitted[0]["data"]["score"] == 7.0


def test_decision_trace_recorded(ingest, make_reflection):
    insight = ingest(make_reflection(**CRITICAL))
    assert insight.metadata["scoring_version"] == SCORING_ENGINE_VERSION
    assert insight.metadata["dedupe_cluster_id"] == insight.cluster_key
    assert insight.metadata["promotion_band"] == "override"
    trace = insight.metadata["decision_trace"]
    assert trace["raw_score"] == insight.score
    assert trace["previous_priority"] is None


# ── Merge ───────────────────────────────────────────────────────────


def test_second_author_promotes_candidate(ingest, make_reflection, emitted, clock):
    first = ingest(make_reflection(author="alice"))
    clock.advance(hours=2)
    second = ingest(make_reflection(author="bob"))

    assert second.id == first.id
    assert second.status == "promoted"
    assert second.promotion_readiness == "promoted"
    assert second.independent_count == 2
    assert second.authors == ["alice", "bob"]
    assert second.score == 5.5
    assert second.cooldown_until == T0 + timedelta(hours=26)
    assert second.created_at == T0
    assert second.updated_at == T0 + timedelta(hours=2)
    assert _kinds(emitted) == [INSIGHT_CREATED, INSIGHT_PROMOTED]


def test_same_author_repeats_stay_candidate_and_become_recurring(ingest, make_reflection, emitted):
    results = [ingest(make_reflection(author="alice")) for _ in range(4)]

    assert [r.recurring_candidate for r in results] == [False, False, False, True]
    final = results[-1]
    assert final.status == "candidate"
    assert final.independent_count == 1
    assert len(final.reflection_ids) == 4
    assert final.score == 6.5
    assert _kinds(emitted) == [INSIGHT_CREATED]


def test_override_on_merge_sets_override_readiness(ingest, make_reflection):
    ingest(make_reflection(author="alice"))
    insight = ingest(make_reflection(author="alice", **CRITICAL))
    assert insight.status == "promoted"
    assert insight.promotion_readiness == "override"


def test_promoted_insight_never_regresses(ingest, make_reflection, clock, emitted):
    promoted = ingest(make_reflection(**CRITICAL))
    clock.advance(hours=2)
    weak = make_reflection(impact=None, suspected_why=None, proposed_fix=None, confidence=1)
    insight = ingest(weak)

    assert insight.status == "promoted"
    assert insight.promotion_readiness == "override"
    assert insight.cooldown_until == promoted.cooldown_until
    assert insight.reflection_ids == [*promoted.reflection_ids, weak.id]
    assert _kinds(emitted) == [INSIGHT_PROMOTED]


def test_merge_into_triaged_insight_marks_ready(ingest, make_reflection, engine, emitted):
    insight = ingest(make_reflection(author="alice"))
    assert engine.update_insight_status(insight.id, "pending_triage")

    merged = ingest(make_reflection(author="bob"))
    assert merged.status == "pending_triage"
    assert merged.promotion_readiness == "ready"
    assert _kinds(emitted) == [INSIGHT_CREATED]


def test_evidence_and_authors_are_ordered_sets(ingest, make_reflection):
    ingest(make_reflection(author="alice", evidence=["a.log", "b.log"]))
    ingest(make_reflection(author="bob", evidence=["b.log", "c.log"]))
    insight = ingest(make_reflection(author="alice", evidence=["a.log"]))

    assert insight.evidence_refs == ["a.log", "b.log", "c.log"]
    assert insight.authors == ["alice", "bob"]
    assert insight.independent_count == 2


def test_different_families_land_in_different_insights(ingest, make_reflection):
    a = ingest(make_reflection(tags=["stage:test", "family:access", "unit:api"]))
    b = ingest(make_reflection(tags=["stage:test", "family:config", "unit:api"]))
    assert a.id != b.id


def test_ingest_is_idempotent(ingest, make_reflection, store, emitted, clock):
    r = make_reflection()
    insight = ingest(r)
    before = store.get_insight(insight.id).model_dump()
    emitted.clear()

    clock.advance(hours=1)
    again = ingest(r)

    assert again.id == insight.id
    assert store.get_insight(insight.id).model_dump() == before
    assert emitted == []


# ── Cooldown, reopen, close ─────────────────────────────────────────


def test_reflection_during_cooldown_window_reopens(ingest, make_reflection, engine, clock, emitted):
    insight = ingest(make_reflection(author="alice", **CRITICAL))
    engine.update_insight_status(insight.id, "cooldown")

    clock.advance(hours=1)
    reopened = ingest(make_reflection(author="bob"))

    assert reopened.id == insight.id
    assert reopened.status == "promoted"
    assert reopened.promotion_readiness == "promoted"
    assert reopened.recurring_candidate is True
    assert reopened.cooldown_until == T0 + timedelta(hours=25)
    assert reopened.cooldown_reason == "reopened"
    assert reopened.metadata["reopen_count"] == 1
    assert reopened.independent_count == 2
    assert _kinds(emitted) == [INSIGHT_PROMOTED, INSIGHT_REOPENED]
    assert emitted[-1]["type"] == "insight_updated"


def test_reflection_after_cooldown_closes_and_starts_over(ingest, make_reflection, engine, store, clock, emitted):
    old = ingest(make_reflection(**CRITICAL))
    clock.advance(hours=24)
    assert engine.tick_cooldowns() == {"cooled": 1, "closed": 0}

    clock.advance(hours=1)
    r = make_reflection()
    new = ingest(r)

    assert new.id != old.id
    assert new.cluster_key == old.cluster_key
    assert new.status == "candidate"
    assert new.reflection_ids == [r.id]
    assert store.get_insight(old.id).status == "closed"
    assert store.find_by_cluster(old.cluster_key).id == new.id
    assert _kinds(emitted) == [INSIGHT_PROMOTED, INSIGHT_CREATED]


def test_already_linked_reflection_is_noop_during_cooldown(ingest, make_reflection, engine, store, clock):
    r = make_reflection(**CRITICAL)
    insight = ingest(r)
    clock.advance(hours=24)
    engine.tick_cooldowns()
    clock.advance(hours=1)

    assert ingest(r).id == insight.id
    assert store.get_insight(insight.id).status == "cooldown"


def test_closed_insights_are_never_revived(ingest, make_reflection, engine, store, clock):
    old = ingest(make_reflection(**CRITICAL))
    engine.update_insight_status(old.id, "closed")

    new = ingest(make_reflection())
    assert new.id != old.id
    assert store.get_insight(old.id).status == "closed"


# ── Concurrency and atomicity ───────────────────────────────────────


class StaleReadStore(MemoryInsightStorage):
    """Misses the open insight on the next N lookups, as a racing writer would."""

    def __init__(self):
        super().__init__()
        self.stale_reads = 0

    def find_by_cluster(self, cluster_key, for_update=False):
        if self.stale_reads:
            self.stale_reads -= 1
            return None
        return super().find_by_cluster(cluster_key, for_update)


def test_creation_conflict_retries_as_merge(bus, clock, emitted, make_reflection):
    store = StaleReadStore()
    engine = InsightEngine(store, events=bus, clock=clock)
    first = make_reflection(author="alice")
    store.insert_reflection(first)
    created = engine.ingest_reflection(first)

    store.stale_reads = 1
    second = make_reflection(author="bob")
    store.insert_reflection(second)
    merged = engine.ingest_reflection(second)

    assert merged.id == created.id
    assert merged.reflection_ids == [first.id, second.id]
    assert merged.status == "promoted"
    assert store.list_insights({"status": "all"}, 10, 0)[1] == 1
    assert _kinds(emitted) == [INSIGHT_CREATED, INSIGHT_PROMOTED]


def test_conflict_gives_up_after_retries(bus, clock, emitted, make_reflection):
    store = StaleReadStore()
    engine = InsightEngine(store, events=bus, clock=clock, config={"insights": {"conflict_retries": 2}})
    first = make_reflection()
    store.insert_reflection(first)
    created = engine.ingest_reflection(first)

    store.stale_reads = 10
    second = make_reflection()
    store.insert_reflection(second)
    with pytest.raises(DuplicateClusterError) as exc:
        engine.ingest_reflection(second)

    assert exc.value.cluster_key == created.cluster_key
    assert store.stale_reads == 7
    assert store.get_insight(created.id).reflection_ids == [first.id]
    assert _kinds(emitted) == [INSIGHT_CREATED]


class FailingInsertStore(MemoryInsightStorage):
    fail_inserts = False

    def insert_insight(self, insight):
        if self.fail_inserts:
            raise RuntimeError("disk full")
        super().insert_insight(insight)


def test_failed_step_leaves_nothing_applied(bus, clock, emitted, make_reflection):
    store = FailingInsertStore()
    engine = InsightEngine(store, events=bus, clock=clock)
    first = make_reflection(**CRITICAL)
    store.insert_reflection(first)
    old = engine.ingest_reflection(first)

    clock.advance(hours=24)
    engine.tick_cooldowns()
    clock.advance(hours=1)

    store.fail_inserts = True
    second = make_reflection()
    store.insert_reflection(second)
    with pytest.raises(RuntimeError):
        engine.ingest_reflection(second)

    # The close of the expired insight was rolled back with the failed create.
    assert store.get_insight(old.id).status == "cooldown"
    assert _kinds(emitted) == [INSIGHT_PROMOTED]


# ── Events ──────────────────────────────────────────────────────────


def test_failing_subscriber_does_not_break_ingest(ingest, make_reflection, bus, emitted):
    def broken(event):
        raise RuntimeError("consumer down")

    bus.subscribe("broken", broken)
    insight = ingest(make_reflection())

    assert insight.status == "candidate"
    assert _kinds(emitted) == [INSIGHT_CREATED]


def test_subscriber_kind_filter(ingest, make_reflection, bus):
    promoted_only = []
    bus.subscribe("promotions", promoted_only.append, kind=INSIGHT_PROMOTED)

    ingest(make_reflection(author="alice"))
    assert promoted_only == []
    ingest(make_reflection(author="bob"))
    assert _kinds(promoted_only) == [INSIGHT_PROMOTED]

    assert bus.unsubscribe("promotions")
    assert not bus.unsubscribe("promotions")


# ── Administrative ──────────────────────────────────────────────────


def test_update_insight_status(ingest, make_reflection, engine, store, clock):
    insight = ingest(make_reflection(**CRITICAL))
    clock.advance(minutes=5)

    assert engine.update_insight_status(insight.id, "task_created", task_id="T-12")
    stored = store.get_insight(insight.id)
    assert stored.status == "task_created"
    assert stored.task_id == "T-12"
    assert stored.updated_at == T0 + timedelta(minutes=5)
    assert stored.cooldown_until == insight.cooldown_until


def test_update_insight_status_unknown_id(engine):
    assert engine.update_insight_status("ins-missing", "closed") is False


def test_update_insight_status_rejects_unknown_status(engine):
    with pytest.raises(ValueError):
        engine.update_insight_status("ins-any", "archived")


def test_reconcile_task_links(ingest, make_reflection, engine, store):
    high = ingest(make_reflection(tags=["family:access"], **CRITICAL))
    low = ingest(make_reflection(tags=["family:config"], severity="high", evidence=["x.log"]))
    ingest(make_reflection(tags=["family:ui"]))

    def create_task(insight):
        if insight.id == high.id:
            return {"task_id": "T-1"}
        raise RuntimeError("tracker unavailable")

    result = engine.reconcile_task_links(create_task)

    assert result["scanned"] == 2
    assert result["created"] == 1
    assert result["skipped"] == 0
    assert len(result["errors"]) == 1
    assert result["errors"][0].startswith(low.id)
    assert store.get_insight(high.id).task_id == "T-1"
    assert store.get_insight(high.id).status == "task_created"
    assert [i.id for i in store.get_orphaned_insights()] == [low.id]


def test_reconcile_skips_and_dry_run(ingest, make_reflection, engine, store):
    insight = ingest(make_reflection(**CRITICAL))

    dry = engine.reconcile_task_links(lambda i: {"task_id": "T-9"}, dry_run=True)
    assert dry["created"] == 1
    assert dry["details"][0]["action"] == "would_create"
    assert store.get_insight(insight.id).task_id is None

    skipped = engine.reconcile_task_links(lambda i: None)
    assert skipped["skipped"] == 1
    assert store.get_insight(insight.id).status == "promoted"


def test_demoting_to_candidate_clears_cooldown(ingest, make_reflection, engine, store):
    insight = ingest(make_reflection(**CRITICAL))
    engine.update_insight_status(insight.id, "candidate")
    assert store.get_insight(insight.id).cooldown_until is None


def test_event_payload_names_insight_for_every_kind(ingest, make_reflection, engine, clock, emitted):
    insight = ingest(make_reflection(author="alice"))
    ingest(make_reflection(author="bob"))
    engine.update_insight_status(insight.id, "cooldown")
    clock.advance(hours=1)
    ingest(make_reflection(author="carol"))

    assert _kinds(emitted) == [INSIGHT_CREATED, INSIGHT_PROMOTED, INSIGHT_REOPENED]
    for event in emitted:
        assert event["data"]["insightId"] == insight.id
        assert "insight_id" not in event["data"]


def test_reconcile_counts_existing_tasks_as_linked(ingest, make_reflection, engine, store):
    first = ingest(make_reflection(tags=["family:access"], severity="critical", evidence=["a.log"]))
    second = ingest(make_reflection(tags=["family:config"], severity="high", evidence=["b.log"]))

    def create_task(insight):
        if insight.id == first.id:
            return {"task_id": "T-existing", "existing": True}
        return {"task_id": "T-new"}

    result = engine.reconcile_task_links(create_task)

    assert result["linked"] == 1
    assert result["created"] == 1
    actions = {d["insight_id"]: d["action"] for d in result["details"]}
    assert actions == {first.id: "linked", second.id: "created"}
    assert store.get_insight(first.id).task_id == "T-existing"
    assert store.get_insight(second.id).status == "task_created"
