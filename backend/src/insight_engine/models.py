"""
Data model for the insight engine.

Reflections are produced upstream (validated and persisted before they reach
the engine) and are read-only here. Insights are owned by the engine: one per
open cluster key, mutated by every reflection that maps to the same key and by
the cooldown sweep.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ROLE_TYPES = ("human", "agent", "team")
SEVERITY_LEVELS = ("low", "medium", "high", "critical")

INSIGHT_STATUSES = ("candidate", "promoted", "pending_triage", "task_created", "cooldown", "closed")
PROMOTION_READINESS = ("not_ready", "ready", "promoted", "override")

Severity = Literal["low", "medium", "high", "critical"]
InsightStatus = Literal["candidate", "promoted", "pending_triage", "task_created", "cooldown", "closed"]
PromotionReadiness = Literal["not_ready", "ready", "promoted", "override"]


class Reflection(BaseModel):
    """A persisted post-mortem report. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str
    pain: str
    impact: str | None = None
    evidence: list[str] = Field(default_factory=list)
    went_well: str | None = None
    suspected_why: str | None = None
    proposed_fix: str | None = None
    confidence: int = 0
    role_type: str = "agent"
    severity: Severity | None = None
    author: str
    tags: list[str] | None = None
    team_id: str | None = None
    task_id: str | None = None
    created_at: datetime


class ReflectionInput(BaseModel):
    """Submission shape checked before a reflection is persisted.

    The engine itself never re-validates; this is the upstream gate used by
    the CLI when loading reflections from JSON files.
    """

    pain: str
    impact: str
    evidence: list[str]
    went_well: str
    suspected_why: str
    proposed_fix: str
    confidence: int = Field(ge=0, le=10)
    role_type: Literal["human", "agent", "team"]
    author: str
    severity: Severity | None = None
    task_id: str | None = None
    tags: list[str] | None = None
    team_id: str | None = None

    @field_validator("pain", "impact", "went_well", "suspected_why", "proposed_fix", "author")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be a non-empty string")
        return value

    @field_validator("evidence")
    @classmethod
    def _evidence_entries(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("evidence must contain at least one entry")
        cleaned = [e.strip() for e in value]
        if not all(cleaned):
            raise ValueError("each evidence entry must be a non-empty string")
        return cleaned


class ClusterKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    workflow_stage: str
    failure_family: str
    impacted_unit: str


class Insight(BaseModel):
    """Deduplicated aggregate of reflections sharing a cluster key."""

    id: str
    cluster_key: str
    workflow_stage: str
    failure_family: str
    impacted_unit: str
    title: str
    status: InsightStatus = "candidate"
    score: float = 0.0
    priority: str = "P3"
    # Ordered sets: insertion order is kept, duplicates never appear.
    reflection_ids: list[str] = Field(default_factory=list)
    independent_count: int = 0
    evidence_refs: list[str] = Field(default_factory=list)
    authors: list[str] = Field(default_factory=list)
    promotion_readiness: PromotionReadiness = "not_ready"
    recurring_candidate: bool = False
    cooldown_until: datetime | None = None
    cooldown_reason: str | None = None
    severity_max: Severity | None = None
    task_id: str | None = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
