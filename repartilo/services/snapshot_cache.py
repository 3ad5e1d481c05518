"""Last-write-wins holder for the most recent SubscriptionSnapshot."""

from __future__ import annotations

import logging
from typing import Optional

from repartilo.models.subscription import SubscriptionSnapshot

logger = logging.getLogger(__name__)


class SnapshotCache:
    """Shared between the workflow (reader) and the reconciler (writer).

    Snapshots are immutable, so readers never see a partial update; a write
    simply swaps the reference.
    """

    def __init__(self, snapshot: Optional[SubscriptionSnapshot] = None) -> None:
        self._snapshot = snapshot

    def get(self) -> Optional[SubscriptionSnapshot]:
        return self._snapshot

    def set(self, snapshot: SubscriptionSnapshot) -> None:
        previous = self._snapshot
        self._snapshot = snapshot
        if previous is not None and previous.tier != snapshot.tier:
            logger.info(
                "Cached subscription tier changed: user=%s %s → %s",
                snapshot.user_id, previous.tier.value, snapshot.tier.value,
            )
