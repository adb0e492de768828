"""
Insight scoring.

Score = max confidence + severity boost + volume boost, capped at 10 and
rounded to one decimal. Priority bands are inclusive at their lower edge.
All functions here are pure over the member reflection set.
"""

from collections.abc import Sequence

from insight_engine.models import SEVERITY_LEVELS, Reflection

# Increment on any scoring rule change; stored in each insight's decision trace.
SCORING_ENGINE_VERSION = "1.1.0"

MAX_SCORE = 10.0
SEVERITY_BOOST = {"critical": 2, "high": 1}
VOLUME_STEP = 0.5
VOLUME_CAP = 2.0

PRIORITY_THRESHOLDS = {"P0": 8, "P1": 5, "P2": 3}
HYSTERESIS_BUFFER = 0.3


def _max_confidence(reflections: Sequence[Reflection]) -> int:
    return max((r.confidence for r in reflections), default=0)


def _severity_boost(reflections: Sequence[Reflection]) -> int:
    return max((SEVERITY_BOOST.get(r.severity, 0) for r in reflections), default=0)


def _volume_boost(reflections: Sequence[Reflection]) -> float:
    if not reflections:
        return 0.0
    return min((len(reflections) - 1) * VOLUME_STEP, VOLUME_CAP)


def compute_score(reflections: Sequence[Reflection]) -> float:
    """Aggregate 0-10 score for a reflection set. Empty set scores 0."""
    if not reflections:
        return 0.0
    raw = _max_confidence(reflections) + _severity_boost(reflections) + _volume_boost(reflections)
    return min(MAX_SCORE, round(raw * 10) / 10)


def score_to_priority(score: float) -> str:
    if score >= PRIORITY_THRESHOLDS["P0"]:
        return "P0"
    if score >= PRIORITY_THRESHOLDS["P1"]:
        return "P1"
    if score >= PRIORITY_THRESHOLDS["P2"]:
        return "P2"
    return "P3"


def score_to_priority_with_hysteresis(score: float, previous_priority: str | None) -> str:
    """Priority that only moves once the score clears a threshold by the buffer.

    Upgrades need ``threshold + buffer``; downgrades need ``threshold - buffer``.
    Inside the buffer zone the previous priority is kept.
    """
    if not previous_priority:
        return score_to_priority(score)

    buf = HYSTERESIS_BUFFER
    p0, p1, p2 = PRIORITY_THRESHOLDS["P0"], PRIORITY_THRESHOLDS["P1"], PRIORITY_THRESHOLDS["P2"]

    if previous_priority == "P0":
        if score >= p0 - buf:
            return "P0"
    elif previous_priority == "P1":
        if score >= p0 + buf:
            return "P0"
        if score >= p1 - buf:
            return "P1"
    elif previous_priority == "P2":
        if score >= p0 + buf:
            return "P0"
        if score >= p1 + buf:
            return "P1"
        if score >= p2 - buf:
            return "P2"
    elif previous_priority == "P3":
        if score >= p0 + buf:
            return "P0"
        if score >= p1 + buf:
            return "P1"
        if score >= p2 + buf:
            return "P2"
        return "P3"

    return score_to_priority(score)


def max_severity(reflections: Sequence[Reflection]) -> str | None:
    """Highest severity present (low < medium < high < critical), or None."""
    best = -1
    for r in reflections:
        if r.severity:
            best = max(best, SEVERITY_LEVELS.index(r.severity))
    return SEVERITY_LEVELS[best] if best >= 0 else None


def build_decision_trace(
    reflections: Sequence[Reflection],
    cluster_key: str,
    readiness: str,
    previous_priority: str | None,
    score: float,
) -> dict:
    """Audit record explaining how a score and band were reached."""
    contributors = [
        {
            "factor": "max_confidence",
            "value": _max_confidence(reflections),
            "description": "Highest reflection confidence",
        }
    ]
    severity = _severity_boost(reflections)
    if severity > 0:
        contributors.append({
            "factor": "severity_boost",
            "value": severity,
            "description": "Max severity boost (high=+1, critical=+2)",
        })
    volume = _volume_boost(reflections)
    if volume > 0:
        contributors.append({
            "factor": "volume_boost",
            "value": volume,
            "description": f"{len(reflections)} reflections (+0.5 each, max +2)",
        })

    with_hysteresis = score_to_priority_with_hysteresis(score, previous_priority)
    return {
        "version": SCORING_ENGINE_VERSION,
        "dedupe_cluster_id": cluster_key,
        "promotion_band": readiness,
        "top_contributors": sorted(contributors, key=lambda c: c["value"], reverse=True),
        "hysteresis_applied": with_hysteresis != score_to_priority(score),
        "previous_priority": previous_priority,
        "raw_score": score,
    }
