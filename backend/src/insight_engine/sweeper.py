"""
Cooldown sweep.

Two bulk transitions over the whole insight set, run by a scheduler:

  a. promoted with cooldown_until <= now          -> cooldown ('auto-cooldown')
  b. cooldown with updated_at < now - cooldown     -> closed

Rule (b) keys off ``updated_at``, which any mutation touches, not the moment
the insight entered cooldown. Insights cooled in this same sweep have just had
``updated_at`` set to ``now`` and so are never closed by it. Safe to call
repeatedly; candidates are never touched.
"""

import logging
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(hours=24)


def tick_cooldowns(storage, now: datetime, cooldown: timedelta = DEFAULT_COOLDOWN) -> dict:
    with storage.transaction():
        cooled = storage.cool_expired_promotions(now)
        closed = storage.close_stale_cooldowns(now - cooldown, now)

    if cooled or closed:
        logger.info("Cooldown sweep: %d cooled, %d closed", cooled, closed)
    return {"cooled": cooled, "closed": closed}
