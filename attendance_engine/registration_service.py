from __future__ import annotations

from typing import Any, Optional, Sequence

import numpy as np

from .config import get_settings
from .database import AttendanceDatabase
from .descriptor_store import DescriptorStore
from .exceptions import AttendanceError, IdentityNotFound
from .logger import setup_logger
from .matcher import FaceMatcher
from .types import Identity


class RegistrationService:
    def __init__(
        self,
        db: AttendanceDatabase,
        store: DescriptorStore,
        matcher: Optional[FaceMatcher] = None,
        duplicate_threshold: Optional[float] = None,
    ):
        self.db = db
        self.store = store
        self.matcher = matcher or FaceMatcher(store)
        if duplicate_threshold is None:
            duplicate_threshold = get_settings().duplicate_enrollment_threshold
        self.duplicate_threshold = duplicate_threshold
        self.logger = setup_logger(self.__class__.__name__)

    def enroll(
        self,
        identity_id: str,
        display_name: str,
        descriptors: Sequence,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Identity:
        identity_id = identity_id.strip()
        display_name = display_name.strip()
        if not identity_id:
            raise AttendanceError("identity_id cannot be empty.")
        if not display_name:
            raise AttendanceError("display_name cannot be empty.")
        if len(descriptors) == 0:
            raise AttendanceError("At least one descriptor is required for enrollment.")

        vectors = self.store.validate(descriptors)
        for vector in vectors:
            self._validate_identity_uniqueness(vector, identity_id)

        # Re-enrollment replaces descriptors and details but keeps a deactivation.
        existing = self.db.get_identity(identity_id)
        identity = Identity(
            identity_id=identity_id,
            display_name=display_name,
            descriptors=vectors,
            metadata=dict(metadata or {}),
            is_active=existing.is_active if existing is not None else True,
        )
        self.db.save_identity(identity)
        self.store.enroll(identity)
        self.logger.info("Enrolled %s (%s) with %d descriptors", identity_id, display_name, len(vectors))
        return identity

    def add_descriptor(self, identity_id: str, descriptor) -> int:
        identity = self.store.get(identity_id) or self.db.get_identity(identity_id)
        if identity is None:
            raise IdentityNotFound(f"Identity {identity_id} not found.")

        (vector,) = self.store.validate([descriptor])
        self._validate_identity_uniqueness(vector, identity_id)

        count = self.db.add_descriptor(identity_id, vector)
        if identity_id in self.store:
            self.store.add(identity, vector)
        else:
            # Enrolled elsewhere; take every stored descriptor, not just the new one.
            self.store.enroll(self.db.get_identity(identity_id))
        self.logger.info("Added descriptor #%d for %s", count, identity_id)
        return count

    def set_active(self, identity_id: str, active: bool) -> None:
        if not self.db.set_identity_active(identity_id, active):
            raise IdentityNotFound(f"Identity {identity_id} not found.")
        if identity_id in self.store:
            self.store.set_active(identity_id, active)
        else:
            self.reload_store()

    def remove(self, identity_id: str) -> bool:
        removed = self.db.delete_identity(identity_id.strip())
        self.store.remove(identity_id.strip())
        if removed:
            self.logger.info("Removed identity %s", identity_id)
        return removed

    def reload_store(self) -> int:
        self.store.refresh(self.db)
        return len(self.store)

    def _validate_identity_uniqueness(self, descriptor: np.ndarray, identity_id: str) -> None:
        if not self.duplicate_threshold or self.duplicate_threshold <= 0:
            return

        distances = self.matcher.nearest_distances(descriptor, exclude=identity_id)
        for other_id, distance in distances.items():
            if distance < self.duplicate_threshold:
                other = self.store.get(other_id)
                name = other.display_name if other is not None else other_id
                raise AttendanceError(
                    f"Descriptor is too close to existing identity '{name}' ({other_id}), "
                    f"distance {distance:.3f}. Use a different person or capture cleaner samples."
                )
