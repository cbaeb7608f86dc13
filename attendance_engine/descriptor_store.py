from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Iterable, Iterator, Optional, Sequence

import numpy as np

from .exceptions import AttendanceError, DimensionMismatch, IdentityNotFound
from .logger import setup_logger
from .types import Identity


def as_descriptor(values, dimension: Optional[int] = None) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float32)
    if vector.ndim != 1 or vector.size == 0:
        raise DimensionMismatch(
            dimension or 0,
            int(vector.size),
            message=f"Descriptor must be a non-empty 1D vector, got shape {vector.shape}.",
        )
    if not np.all(np.isfinite(vector)):
        raise AttendanceError("Descriptor contains non-finite values.")
    if dimension is not None and vector.size != dimension:
        raise DimensionMismatch(dimension, int(vector.size))
    return vector


@dataclass(frozen=True)
class GallerySnapshot:
    """Immutable view of the gallery used for one scan.

    Rows of ``matrix`` are grouped by identity in enrollment order, so the
    first row at a given distance belongs to the first-scanned identity.
    """

    matrix: np.ndarray
    owners: tuple[str, ...]
    names: dict[str, str]

    @property
    def empty(self) -> bool:
        return self.matrix.shape[0] == 0


class DescriptorStore:
    """In-process gallery of enrolled identities.

    Writers build a new identity map and swap it in under a lock, so an
    enrollment with several descriptors becomes visible all at once.
    """

    def __init__(self, dimension: Optional[int] = None):
        self._dimension = dimension
        self._identities: dict[str, Identity] = {}
        self._snapshot: Optional[GallerySnapshot] = None
        self._lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def __len__(self) -> int:
        return len(self._identities)

    def __contains__(self, identity_id: object) -> bool:
        return identity_id in self._identities

    def get(self, identity_id: str) -> Optional[Identity]:
        return self._identities.get(identity_id)

    def add(self, identity: Identity, descriptor) -> None:
        with self._lock:
            vector = self._validate(descriptor)
            current = self._identities.get(identity.identity_id)
            if current is None:
                updated = replace(identity, descriptors=[vector], metadata=dict(identity.metadata))
            else:
                updated = replace(current, descriptors=[*current.descriptors, vector])
            self._commit({**self._identities, identity.identity_id: updated}, vector.size)

    def enroll(self, identity: Identity) -> None:
        if not identity.descriptors:
            raise AttendanceError(f"Identity {identity.identity_id} has no descriptors.")
        with self._lock:
            vectors = self.validate(identity.descriptors)
            updated = replace(identity, descriptors=vectors, metadata=dict(identity.metadata))
            self._commit({**self._identities, identity.identity_id: updated}, vectors[0].size)

    def replace_descriptors(self, identity_id: str, descriptors: Sequence) -> None:
        if len(descriptors) == 0:
            raise AttendanceError(f"Identity {identity_id} needs at least one descriptor.")
        with self._lock:
            current = self._identities.get(identity_id)
            if current is None:
                raise IdentityNotFound(f"Identity {identity_id} is not enrolled.")
            vectors = self.validate(descriptors)
            updated = replace(current, descriptors=vectors)
            self._commit({**self._identities, identity_id: updated}, vectors[0].size)

    def set_active(self, identity_id: str, active: bool) -> None:
        with self._lock:
            current = self._identities.get(identity_id)
            if current is None:
                raise IdentityNotFound(f"Identity {identity_id} is not enrolled.")
            self._commit({**self._identities, identity_id: replace(current, is_active=active)}, None)

    def remove(self, identity_id: str) -> None:
        with self._lock:
            if identity_id not in self._identities:
                return
            remaining = {key: value for key, value in self._identities.items() if key != identity_id}
            self._commit(remaining, None)
        self.logger.info("Removed identity %s from the gallery", identity_id)

    def load(self, identities: Iterable[Identity]) -> None:
        """Replace the whole gallery, e.g. from the identity directory."""
        staged: dict[str, Identity] = {}
        dimension: Optional[int] = None
        for identity in identities:
            if not identity.descriptors:
                continue
            vectors = []
            for raw in identity.descriptors:
                vector = as_descriptor(raw, dimension or self._dimension)
                dimension = dimension or vector.size
                vectors.append(vector)
            staged[identity.identity_id] = replace(identity, descriptors=vectors, metadata=dict(identity.metadata))

        with self._lock:
            self._identities = staged
            if dimension is not None:
                self._dimension = dimension
            self._snapshot = None
        self.logger.info("Loaded %d identities into the gallery", len(staged))

    def refresh(self, directory) -> None:
        self.load(directory.list_identities(active_only=True))

    def all_active(self) -> Iterator[tuple[str, np.ndarray]]:
        identities = self._identities
        for identity in identities.values():
            if not identity.is_active:
                continue
            for descriptor in identity.descriptors:
                yield identity.identity_id, descriptor

    def snapshot(self) -> GallerySnapshot:
        cached = self._snapshot
        if cached is not None:
            return cached

        with self._lock:
            if self._snapshot is None:
                vectors: list[np.ndarray] = []
                owners: list[str] = []
                names: dict[str, str] = {}
                for identity_id, descriptor in self.all_active():
                    vectors.append(descriptor)
                    owners.append(identity_id)
                    names[identity_id] = self._identities[identity_id].display_name

                if vectors:
                    matrix = np.vstack(vectors).astype(np.float32)
                else:
                    matrix = np.empty((0, self._dimension or 0), dtype=np.float32)
                self._snapshot = GallerySnapshot(matrix=matrix, owners=tuple(owners), names=names)
            return self._snapshot

    def _validate(self, descriptor) -> np.ndarray:
        return as_descriptor(descriptor, self._current_dimension())

    def validate(self, descriptors: Sequence) -> list[np.ndarray]:
        expected = self._current_dimension()
        vectors: list[np.ndarray] = []
        for raw in descriptors:
            vector = as_descriptor(raw, expected)
            expected = expected or vector.size
            vectors.append(vector)
        return vectors

    def _current_dimension(self) -> Optional[int]:
        if self._dimension is not None:
            return self._dimension
        for identity in self._identities.values():
            if identity.descriptors:
                return int(identity.descriptors[0].size)
        return None

    def _commit(self, identities: dict[str, Identity], dimension: Optional[int]) -> None:
        self._identities = identities
        if self._dimension is None and dimension is not None:
            self._dimension = int(dimension)
        self._snapshot = None
