"""Profile, presence and practitioner directory routes."""
# ruff: noqa: B008  Depends() in function defaults is standard FastAPI

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, status

from src.api.deps import current_user_id, get_service
from src.api.schemas import (
    PractitionerResponse,
    PractitionerStatusResponse,
    PresenceRequest,
    ProfileResponse,
    ProfileUpdateRequest,
    RoleInitRequest,
)
from src.lifecycle.service import SessionLifecycleService

router = APIRouter(prefix="/api", tags=["practitioners"])


@router.post("/auth/role-init", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
async def role_init(
    body: RoleInitRequest,
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> ProfileResponse:
    """Pick a role once after signing up; creates the profile."""
    profile = await service.init_role(user_id, body.role, body.display_name)
    return ProfileResponse.from_record(profile)


@router.post("/presence/toggle", response_model=PractitionerStatusResponse)
async def toggle_presence(
    body: PresenceRequest,
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> PractitionerStatusResponse:
    practitioner = await service.set_presence(user_id, body.online)
    return PractitionerStatusResponse.from_record(practitioner)


@router.get("/practitioners/status", response_model=PractitionerStatusResponse)
async def practitioner_status(
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> PractitionerStatusResponse:
    practitioner = await service.practitioner_status(user_id)
    return PractitionerStatusResponse.from_record(practitioner)


@router.get("/practitioners", response_model=list[PractitionerResponse])
async def list_practitioners(
    online: bool = Query(default=False),
    service: SessionLifecycleService = Depends(get_service),
) -> list[PractitionerResponse]:
    """Practitioner directory, optionally only those online."""
    views = await service.list_practitioners(online_only=online)
    return [PractitionerResponse.from_view(v) for v in views]


@router.put("/profiles", response_model=ProfileResponse)
async def update_profile(
    body: ProfileUpdateRequest,
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> ProfileResponse:
    """Caller edits their own display name, country, bio, avatar and specialties."""
    profile = await service.update_profile(user_id, body.changes())
    return ProfileResponse.from_record(profile)
