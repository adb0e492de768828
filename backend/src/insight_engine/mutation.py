"""
Admin insight mutation: status changes and cluster re-keying with an audit trail.

Every successful patch records which fields changed, who changed them and
why. Entries are kept in a bounded in-memory log and appended as JSON lines
under ``INSIGHTS_DATA_DIR``; a failed audit write is logged and never blocks
the mutation itself.
"""

import json
import logging
import os
from collections import deque
from datetime import UTC, datetime
from pathlib import Path

from insight_engine.cluster_key import build_cluster_key_string, parse_cluster_key_string
from insight_engine.errors import DuplicateClusterError
from insight_engine.models import INSIGHT_STATUSES, Insight

logger = logging.getLogger(__name__)

MAX_IN_MEMORY = 2000
AUDITED_FIELDS = ("status", "cluster_key", "workflow_stage", "failure_family", "impacted_unit", "metadata")
PATCHABLE_METADATA = ("notes", "cluster_key_override")


class MutationAuditLog:
    def __init__(self, data_dir: str | None = None, max_entries: int = MAX_IN_MEMORY):
        data_dir = data_dir or os.environ.get("INSIGHTS_DATA_DIR") or os.path.join(os.getcwd(), "data")
        self.audit_file = Path(data_dir) / "insight-mutation-audit.jsonl"
        self._entries: deque[dict] = deque(maxlen=max_entries)

    def record(self, entry: dict):
        self._entries.append(entry)
        try:
            self.audit_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.error("Failed to write insight mutation audit entry: %s", e)

    def recent(self, limit: int = 50) -> list[dict]:
        limit = max(1, min(limit, 500))
        return list(self._entries)[-limit:]


def _diff(before: Insight, after: Insight) -> list[dict]:
    changes = []
    for field in AUDITED_FIELDS:
        b, a = getattr(before, field), getattr(after, field)
        if b != a:
            changes.append({"field": field, "before": b, "after": a})
    return changes


def patch_insight(
    storage,
    insight_id: str,
    patch: dict,
    audit_log: MutationAuditLog | None = None,
    now: datetime | None = None,
) -> dict:
    """Apply an admin patch to one insight.

    ``patch`` carries ``actor`` and ``reason`` (both required) plus any of
    ``status``, ``cluster_key`` (``stage::family::unit``) and ``metadata``
    (only ``notes`` and ``cluster_key_override`` are accepted).

    Returns ``{"success": True, "insight": ...}`` or
    ``{"success": False, "error": ...}``.
    """
    actor = (patch.get("actor") or "").strip()
    reason = (patch.get("reason") or "").strip()
    if not actor:
        return {"success": False, "error": "actor is required"}
    if not reason:
        return {"success": False, "error": "reason is required"}

    status = patch.get("status")
    if status is not None and status not in INSIGHT_STATUSES:
        return {"success": False, "error": f"Invalid status. Allowed: {', '.join(INSIGHT_STATUSES)}"}

    parsed_key = None
    if patch.get("cluster_key") is not None:
        parsed_key = parse_cluster_key_string(patch["cluster_key"])
        if parsed_key is None:
            return {"success": False, "error": 'Invalid cluster_key. Expected "stage::family::unit"'}

    now = now or datetime.now(UTC)
    try:
        with storage.transaction():
            before = storage.get_insight(insight_id, for_update=True)
            if before is None:
                return {"success": False, "error": "Insight not found"}

            metadata = dict(before.metadata)
            for field in PATCHABLE_METADATA:
                if field in (patch.get("metadata") or {}):
                    metadata[field] = patch["metadata"][field]

            update = {"metadata": metadata, "updated_at": now}
            if status is not None:
                update["status"] = status
            if parsed_key is not None:
                update.update({
                    "cluster_key": build_cluster_key_string(parsed_key),
                    "workflow_stage": parsed_key.workflow_stage,
                    "failure_family": parsed_key.failure_family,
                    "impacted_unit": parsed_key.impacted_unit,
                })
            after = before.model_copy(update=update)
            storage.save_insight(after)
    except DuplicateClusterError as e:
        return {"success": False, "error": str(e)}

    if audit_log is not None:
        audit_log.record({
            "timestamp": now.isoformat(),
            "insight_id": insight_id,
            "actor": actor,
            "reason": reason,
            "changes": _diff(before, after),
            "context": "patch_insight",
        })
    logger.info("Insight %s patched by %s: %s", insight_id, actor, reason)
    return {"success": True, "insight": after}
