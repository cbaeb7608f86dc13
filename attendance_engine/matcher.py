from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import numpy as np

from .descriptor_store import DescriptorStore, GallerySnapshot, as_descriptor
from .exceptions import DimensionMismatch
from .types import MatchResult


DEFAULT_THRESHOLD = 0.6


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FaceMatcher:
    """Nearest-neighbour lookup of a probe descriptor against the gallery.

    Every active descriptor is scanned; an identity with several reference
    descriptors is represented by its closest one. The overall closest
    identity is returned only when its distance is strictly below the
    threshold. On exact ties the identity enrolled first wins.
    """

    def __init__(
        self,
        store: DescriptorStore,
        threshold: float = DEFAULT_THRESHOLD,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.threshold = threshold
        self.clock = clock

    def identify(self, probe, threshold: Optional[float] = None) -> MatchResult:
        limit = self.threshold if threshold is None else threshold
        snapshot = self.store.snapshot()
        now = self.clock()

        if snapshot.empty:
            return MatchResult(None, None, float("inf"), 0.0, now)

        distances = self._distances(snapshot, probe)
        idx = int(np.argmin(distances))
        best = float(distances[idx])

        if best < limit:
            identity_id = snapshot.owners[idx]
            return MatchResult(identity_id, snapshot.names[identity_id], best, 1.0 - best, now)
        return MatchResult(None, None, best, 0.0, now)

    def nearest_distances(self, probe, exclude: Optional[str] = None) -> dict[str, float]:
        """Minimum distance from the probe to each active identity."""
        snapshot = self.store.snapshot()
        if snapshot.empty:
            return {}

        distances = self._distances(snapshot, probe)
        result: dict[str, float] = {}
        for owner, distance in zip(snapshot.owners, distances):
            if owner == exclude:
                continue
            value = float(distance)
            if owner not in result or value < result[owner]:
                result[owner] = value
        return result

    @staticmethod
    def _distances(snapshot: GallerySnapshot, probe) -> np.ndarray:
        query = as_descriptor(probe)
        expected = snapshot.matrix.shape[1]
        if query.size != expected:
            raise DimensionMismatch(expected, int(query.size))
        return np.linalg.norm(snapshot.matrix - query, axis=1)
