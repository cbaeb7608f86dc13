from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from attendance_engine.api.deps import get_engine
from attendance_engine.engine import AttendanceEngine
from attendance_engine.schemas.identity import (
    DescriptorAdd,
    IdentityCreate,
    IdentityRemovedResponse,
    IdentityResponse,
)
from attendance_engine.types import Identity

router = APIRouter(prefix="/identities", tags=["identities"])


def _to_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        identity_id=identity.identity_id,
        display_name=identity.display_name,
        metadata=identity.metadata,
        is_active=identity.is_active,
        descriptor_count=len(identity.descriptors),
    )


@router.get("", response_model=list[IdentityResponse])
def list_identities(active_only: bool = True, engine: AttendanceEngine = Depends(get_engine)):
    return [_to_response(identity) for identity in engine.db.list_identities(active_only=active_only)]


@router.post("", response_model=IdentityResponse, status_code=status.HTTP_201_CREATED)
def enroll_identity(payload: IdentityCreate, engine: AttendanceEngine = Depends(get_engine)):
    identity = engine.registration.enroll(
        identity_id=payload.identity_id,
        display_name=payload.display_name,
        descriptors=payload.descriptors,
        metadata=payload.metadata,
    )
    return _to_response(identity)


@router.get("/{identity_id}", response_model=IdentityResponse)
def get_identity(identity_id: str, engine: AttendanceEngine = Depends(get_engine)):
    identity = engine.db.get_identity(identity_id)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Identity {identity_id} not found.")
    return _to_response(identity)


@router.post("/{identity_id}/descriptors", response_model=IdentityResponse)
def add_descriptor(identity_id: str, payload: DescriptorAdd, engine: AttendanceEngine = Depends(get_engine)):
    engine.registration.add_descriptor(identity_id, payload.descriptor)
    return get_identity(identity_id, engine)


@router.delete("/{identity_id}", response_model=IdentityRemovedResponse)
def remove_identity(identity_id: str, engine: AttendanceEngine = Depends(get_engine)):
    return IdentityRemovedResponse(removed=engine.registration.remove(identity_id))
