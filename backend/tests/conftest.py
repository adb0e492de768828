import itertools
from datetime import UTC, datetime, timedelta

import pytest

from insight_engine.events import EventBus
from insight_engine.lifecycle import InsightEngine
from insight_engine.memory_store import MemoryInsightStorage
from insight_engine.models import Reflection

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryInsightStorage()


@pytest.fixture
def emitted():
    return []


@pytest.fixture
def bus(emitted):
    bus = EventBus()
    bus.subscribe("recorder", emitted.append)
    return bus


@pytest.fixture
def engine(store, bus, clock):
    return InsightEngine(store, events=bus, clock=clock)


@pytest.fixture
def make_reflection():
    """Reflection factory. Defaults pass the quality gate and pin the cluster key."""
    counter = itertools.count(1)

    def _make(**overrides) -> Reflection:
        n = next(counter)
        data = {
            "id": f"ref-{n}",
            "pain": "Integration tests time out against the staging API",
            "impact": "Pull requests sit blocked for hours waiting on reruns",
            "evidence": [],
            "went_well": "Retry script kept the queue moving",
            "suspected_why": "Shared staging database is saturated by parallel jobs",
            "proposed_fix": "Give each CI job its own ephemeral database",
            "confidence": 5,
            "role_type": "agent",
            "severity": None,
            "author": "alice",
            "tags": ["stage:test", "family:testing", "unit:api"],
            "team_id": None,
            "created_at": T0,
        }
        data.update(overrides)
        return Reflection(**data)

    return _make


@pytest.fixture
def ingest(engine, store):
    """Persist a reflection (as the upstream caller does) and ingest it."""

    def _ingest(reflection: Reflection):
        store.insert_reflection(reflection)
        return engine.ingest_reflection(reflection)

    return _ingest
