"""In-process event bus for insight lifecycle events."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

INSIGHT_CREATED = "insight:created"
INSIGHT_PROMOTED = "insight:promoted"
INSIGHT_REOPENED = "insight:reopened"

# Event ``type`` for each kind; subscribers usually match on data["kind"].
_EVENT_TYPES = {
    INSIGHT_CREATED: "insight_created",
    INSIGHT_PROMOTED: "insight_created",
    INSIGHT_REOPENED: "insight_updated",
}


class EventBus:
    """Synchronous fan-out to subscribers.

    A subscriber that raises is logged and skipped so a broken consumer can
    never fail the lifecycle call that produced the event.
    """

    def __init__(self):
        self._listeners: dict[str, tuple[Callable[[dict], None], str | None]] = {}

    def subscribe(self, listener_id: str, callback: Callable[[dict], None], kind: str | None = None):
        """Register ``callback``; with ``kind`` set it only sees that kind."""
        self._listeners[listener_id] = (callback, kind)

    def unsubscribe(self, listener_id: str) -> bool:
        return self._listeners.pop(listener_id, None) is not None

    def emit(self, event: dict):
        kind = event.get("data", {}).get("kind")
        for listener_id, (callback, wanted) in list(self._listeners.items()):
            if wanted is not None and wanted != kind:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.warning("Event listener %s failed on %s: %s", listener_id, kind, e)


def insight_event(kind: str, insight_id: str, priority: str | None = None, score: float | None = None) -> dict:
    """Build the event envelope for an insight lifecycle change."""
    # Consumers outside this package read ``insightId``.
    data = {"kind": kind, "insightId": insight_id}
    if priority is not None:
        data["priority"] = priority
    if score is not None:
        data["score"] = score
    suffix = kind.split(":", 1)[1]
    return {
        "id": f"evt-insight-{suffix}-{insight_id}",
        "type": _EVENT_TYPES[kind],
        "timestamp": datetime.now(UTC).isoformat(),
        "data": data,
    }
