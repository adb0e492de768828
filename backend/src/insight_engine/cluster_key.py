"""
Cluster key extraction.

Maps a reflection to a ``(workflow_stage, failure_family, impacted_unit)``
triple. Each field is resolved in order, first match wins:

  1. Explicit tag prefix (``stage:``, ``family:``, ``unit:``)
  2. Keyword heuristics over ``pain`` plus the joined tags, using the ordered
     tables below (unit: single-word tags naming a known unit)
  3. ``team_id`` (impacted_unit only)
  4. ``general`` for stage and unit, ``uncategorized`` for family

The tables are data, not control flow: the first pattern that matches wins,
so entries must stay in this order.
"""

import re

from insight_engine.models import ClusterKey, Reflection

KEY_DELIMITER = "::"

DEFAULT_STAGE = "general"
DEFAULT_FAMILY = "uncategorized"
DEFAULT_UNIT = "general"

STAGE_PATTERNS: list[tuple[str, str]] = [
    (r"\b(code[- ]?review|review(er|ed|ing)?|approv(al|e|ed))\b", "review"),
    (r"\b(deploy(ed|ing|ment)?|release[ds]?|rollout|roll(ed)?[- ]?back|ship(ped|ping)?)\b", "deploy"),
    (r"\b(build(s|ing)?|compil(e|er|ation)|bundl(e|er|ing)|transpil)", "build"),
    (r"\b(tests?|testing|coverage|flak(y|e)|assertion|e2e)\b", "test"),
    (r"\b(design(ed|ing)?|architect(ure)?|mockups?|wireframes?|schema design)\b", "design"),
    (r"\b(implement(ed|ing|ation)?|refactor(ed|ing)?|coding|wrote the code)\b", "implement"),
    (r"\b(triag(e|ed|ing)|backlog|prioriti[sz](e|ed|ation)|assign(ed|ment)?)\b", "triage"),
    (r"\b(process|handoffs?|hand-offs?|standups?|workflow|coordinat(e|ion))\b", "process"),
    (r"\b(discover(y|ed)?|research(ed|ing)?|investigat(e|ed|ion)|explor(e|ed|ation))\b", "discovery"),
]

FAMILY_PATTERNS: list[tuple[str, str]] = [
    (r"truncat|cut.?off|missing.?text|incomplete|data.?loss|lost (data|work|changes)", "data-loss"),
    (r"crash|exception|error|fail|traceback|panic", "runtime-error"),
    (r"slow|timeout|timed out|latency|performance|memory leak", "performance"),
    (r"auth|permission|denied|forbidden|unauthori[sz]ed|credential", "access"),
    (r"\bui\b|display|render|layout|styl(e|ing)|css", "ui"),
    (r"config|setting|\benv\b|environment variable", "config"),
    (r"deploy|release|\bbuild\b|\bci\b|pipeline", "deployment"),
    (r"\btests?\b|testing|coverage|flak", "testing"),
    (r"couldn.?t find|could not find|where .* (lives|is defined)|\bgrep\b|codebase|locat(e|ing) (the )?(code|file)", "code-discovery"),
    (r"process|handoff|miscommunicat|duplicate(d)? work|status update|coordinat", "process"),
    (r"pull request|\bprs?\b|merge conflict|rebase|review queue", "pr-workflow"),
]

KNOWN_UNITS = ("api", "frontend", "backend", "infra", "ci", "ux", "docs", "node", "cloud", "cli")

_STAGE_REGEXES = [(re.compile(p, re.IGNORECASE), label) for p, label in STAGE_PATTERNS]
_FAMILY_REGEXES = [(re.compile(p, re.IGNORECASE), label) for p, label in FAMILY_PATTERNS]
_UNIT_REGEX = re.compile(r"^(" + "|".join(KNOWN_UNITS) + r")$")


def extract_cluster_key(reflection: Reflection) -> ClusterKey:
    """Derive the cluster key triple for a reflection. Pure and deterministic."""
    tags = [t.strip() for t in (reflection.tags or []) if t and t.strip()]
    text = f"{reflection.pain or ''} {' '.join(tags)}"

    stage = (
        sanitize_part(_tag_value(tags, "stage:"))
        or _first_match(_STAGE_REGEXES, text)
        or DEFAULT_STAGE
    )
    family = (
        sanitize_part(_tag_value(tags, "family:"))
        or _first_match(_FAMILY_REGEXES, text)
        or DEFAULT_FAMILY
    )
    unit = (
        sanitize_part(_tag_value(tags, "unit:"))
        or _unit_from_tags(tags)
        or sanitize_part(reflection.team_id)
        or DEFAULT_UNIT
    )
    return ClusterKey(workflow_stage=stage, failure_family=family, impacted_unit=unit)


def build_cluster_key_string(key: ClusterKey) -> str:
    return KEY_DELIMITER.join((key.workflow_stage, key.failure_family, key.impacted_unit))


def parse_cluster_key_string(value: str) -> ClusterKey | None:
    """Split ``stage::family::unit`` back into a key, or None if malformed."""
    parts = [p.strip() for p in value.split(KEY_DELIMITER)]
    if len(parts) != 3 or not all(parts):
        return None
    stage, family, unit = (sanitize_part(p) for p in parts)
    if not (stage and family and unit):
        return None
    return ClusterKey(workflow_stage=stage, failure_family=family, impacted_unit=unit)


def sanitize_part(part: str | None) -> str:
    """Normalize one key part so it can never contain the delimiter."""
    if not part:
        return ""
    cleaned = part.strip().lower()
    cleaned = re.sub(r":+", "-", cleaned)
    cleaned = re.sub(r"\s+", "-", cleaned)
    cleaned = re.sub(r"[^a-z0-9._-]", "", cleaned)
    return cleaned[:64]


def _tag_value(tags: list[str], prefix: str) -> str | None:
    for tag in tags:
        if tag.lower().startswith(prefix):
            value = tag[len(prefix):].strip()
            if value:
                return value
    return None


def _first_match(table, text: str) -> str | None:
    for regex, label in table:
        if regex.search(text):
            return label
    return None


def _unit_from_tags(tags: list[str]) -> str | None:
    for tag in tags:
        lowered = tag.lower()
        if _UNIT_REGEX.match(lowered):
            return lowered
    return None
