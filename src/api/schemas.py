"""Request / response models for the HTTP API.

Field names are snake_case in Python and camelCase on the wire; the alias
generator is the only place the translation happens.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from src.lifecycle.service import PractitionerView, SessionView, SweepResult
from src.lifecycle.states import SessionState
from src.lifecycle.store import PractitionerRecord, ProfileRecord, ReviewRecord
from src.models.enums import EndReason, SessionAction, SessionPhase, UserRole


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Requests ─────────────────────────────────────────────────────────


class StartSessionRequest(ApiModel):
    practitioner_id: uuid.UUID
    live_seconds: int = Field(gt=0, le=4 * 60 * 60)


class SessionActionRequest(ApiModel):
    """One request shape for every participant action."""

    session_id: uuid.UUID
    action: Literal["acknowledge", "ready", "accept", "reject", "end"]

    @property
    def session_action(self) -> SessionAction:
        return SessionAction(self.action)


class ReviewRequest(ApiModel):
    session_id: uuid.UUID
    rating: int = Field(ge=1, le=5)
    comment: str | None = Field(default=None, max_length=2000)


class RoleInitRequest(ApiModel):
    role: UserRole
    display_name: str | None = Field(default=None, max_length=100)


class PresenceRequest(ApiModel):
    online: bool


class ProfileUpdateRequest(ApiModel):
    """Partial update; only fields present in the body are written."""

    display_name: str | None = Field(default=None, max_length=100)
    country: str | None = Field(default=None, max_length=100)
    bio: str | None = Field(default=None, max_length=2000)
    avatar_url: str | None = Field(default=None, max_length=500)
    specialties: list[str] | None = Field(default=None, max_length=20)

    @field_validator("display_name")
    @classmethod
    def display_name_not_blank(cls, v: str | None) -> str:
        """A display name can be changed but never cleared."""
        if v is None or not v.strip():
            msg = "displayName cannot be empty"
            raise ValueError(msg)
        return v.strip()

    @field_validator("specialties")
    @classmethod
    def specialties_not_null(cls, v: list[str] | None) -> list[str]:
        return [item.strip() for item in v or [] if item.strip()]

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


# ── Responses ────────────────────────────────────────────────────────


class ErrorResponse(ApiModel):
    error: str
    detail: str
    retryable: bool = False


class ProfileResponse(ApiModel):
    id: uuid.UUID
    role: UserRole
    display_name: str
    country: str | None = None
    bio: str | None = None
    avatar_url: str | None = None
    specialties: list[str] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: ProfileRecord) -> ProfileResponse:
        return cls(
            id=record.id,
            role=record.role,
            display_name=record.display_name,
            country=record.country,
            bio=record.bio,
            avatar_url=record.avatar_url,
            specialties=list(record.specialties),
        )


class SessionResponse(ApiModel):
    id: uuid.UUID
    practitioner_id: uuid.UUID
    guest_id: uuid.UUID
    phase: SessionPhase
    end_reason: EndReason | None = None
    version: int
    waiting_seconds: int
    live_seconds: int
    created_at: datetime | None = None
    waiting_started_at: datetime | None = None
    live_started_at: datetime | None = None
    ended_at: datetime | None = None
    acknowledged_practitioner: bool
    ready_guest: bool
    ready_practitioner: bool
    agora_channel: str | None = None
    agora_uid_guest: str | None = None
    agora_uid_practitioner: str | None = None

    @classmethod
    def from_state(cls, state: SessionState) -> SessionResponse:
        return cls(
            id=state.id,
            practitioner_id=state.practitioner_id,
            guest_id=state.guest_id,
            phase=state.phase,
            end_reason=state.end_reason,
            version=state.version,
            waiting_seconds=state.waiting_seconds,
            live_seconds=state.live_seconds,
            created_at=state.created_at,
            waiting_started_at=state.waiting_started_at,
            live_started_at=state.live_started_at,
            ended_at=state.ended_at,
            acknowledged_practitioner=state.acknowledged_practitioner,
            ready_guest=state.ready_guest,
            ready_practitioner=state.ready_practitioner,
            agora_channel=state.agora_channel,
            agora_uid_guest=state.agora_uid_guest,
            agora_uid_practitioner=state.agora_uid_practitioner,
        )


class SessionDetailResponse(SessionResponse):
    guest: ProfileResponse | None = None
    practitioner: ProfileResponse | None = None

    @classmethod
    def from_view(cls, view: SessionView) -> SessionDetailResponse:
        base = SessionResponse.from_state(view.session)
        return cls(
            **base.model_dump(),
            guest=ProfileResponse.from_record(view.guest) if view.guest else None,
            practitioner=ProfileResponse.from_record(view.practitioner) if view.practitioner else None,
        )


class StartSessionResponse(ApiModel):
    session_id: uuid.UUID
    session: SessionResponse


class SweptSessionResponse(ApiModel):
    session_id: uuid.UUID
    practitioner_id: uuid.UUID
    guest_id: uuid.UUID
    reason: SessionAction
    elapsed_seconds: int


class SweepResponse(ApiModel):
    checked: int
    canceled: int
    released: int
    sessions: list[SweptSessionResponse]

    @classmethod
    def from_result(cls, result: SweepResult) -> SweepResponse:
        return cls(
            checked=result.checked,
            canceled=len(result.ended),
            released=len(result.released),
            sessions=[
                SweptSessionResponse(
                    session_id=item.session_id,
                    practitioner_id=item.practitioner_id,
                    guest_id=item.guest_id,
                    reason=item.action,
                    elapsed_seconds=item.elapsed_seconds,
                )
                for item in result.ended
            ],
        )


class ReviewResponse(ApiModel):
    id: uuid.UUID
    session_id: uuid.UUID
    guest_id: uuid.UUID
    practitioner_id: uuid.UUID
    rating: int
    comment: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_record(cls, record: ReviewRecord) -> ReviewResponse:
        return cls(
            id=record.id,
            session_id=record.session_id,
            guest_id=record.guest_id,
            practitioner_id=record.practitioner_id,
            rating=record.rating,
            comment=record.comment,
            created_at=record.created_at,
        )


class SubmitReviewResponse(ApiModel):
    review: ReviewResponse
    average_rating: float
    review_count: int


class PractitionerStatusResponse(ApiModel):
    user_id: uuid.UUID
    is_online: bool
    in_service: bool
    is_available: bool
    rating: float
    review_count: int

    @classmethod
    def from_record(cls, record: PractitionerRecord) -> PractitionerStatusResponse:
        return cls(
            user_id=record.user_id,
            is_online=record.is_online,
            in_service=record.in_service,
            is_available=record.is_available,
            rating=float(record.rating),
            review_count=record.review_count,
        )


class PractitionerResponse(PractitionerStatusResponse):
    profile: ProfileResponse | None = None

    @classmethod
    def from_view(cls, view: PractitionerView) -> PractitionerResponse:
        base = PractitionerStatusResponse.from_record(view.practitioner)
        return cls(
            **base.model_dump(),
            profile=ProfileResponse.from_record(view.profile) if view.profile else None,
        )


class TransportTokenResponse(ApiModel):
    token: str
    app_id: str
    channel: str
    uid: str
    expires_at: datetime
