"""
Promotion gate.

An insight may be promoted when at least one member reflection is substantive
and either:
  - one substantive reflection is high/critical severity with evidence
    (the override path, no author-count requirement), or
  - the set has at least PROMOTION_THRESHOLD distinct authors.
"""

from collections.abc import Sequence

from insight_engine.models import Reflection

PROMOTION_THRESHOLD = 2
MIN_FIELD_LENGTH = 10
MIN_QUALITY_FIELDS = 3
OVERRIDE_SEVERITIES = ("high", "critical")


def has_minimum_quality(reflection: Reflection) -> bool:
    """At least 3 of pain/impact/suspected_why/proposed_fix carry 10+ chars."""
    fields = (reflection.pain, reflection.impact, reflection.suspected_why, reflection.proposed_fix)
    qualifying = [f for f in fields if f and len(f.strip()) >= MIN_FIELD_LENGTH]
    return len(qualifying) >= MIN_QUALITY_FIELDS


def is_override(reflection: Reflection) -> bool:
    return (
        reflection.severity in OVERRIDE_SEVERITIES
        and bool(reflection.evidence)
        and has_minimum_quality(reflection)
    )


def can_promote(reflections: Sequence[Reflection]) -> bool:
    if not any(has_minimum_quality(r) for r in reflections):
        return False
    if any(is_override(r) for r in reflections):
        return True
    return len({r.author for r in reflections}) >= PROMOTION_THRESHOLD
