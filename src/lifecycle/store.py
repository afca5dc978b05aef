"""Collaborator interfaces the lifecycle service depends on.

These define the contract for session, participant and review persistence
without coupling to a specific database. The store is last-write-wins with
no multi-statement transactions; the only concurrency primitive offered is
`SessionStore.compare_and_set` on the session version.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from src.lifecycle.states import SessionState
from src.models.enums import UserRole


@dataclass(frozen=True)
class ProfileRecord:
    id: uuid.UUID
    role: UserRole
    display_name: str
    country: str | None = None
    bio: str | None = None
    avatar_url: str | None = None
    specialties: tuple[str, ...] = ()


@dataclass(frozen=True)
class PractitionerRecord:
    user_id: uuid.UUID
    is_online: bool = False
    in_service: bool = False
    rating: Decimal = Decimal("0.0")
    review_count: int = 0

    @property
    def is_available(self) -> bool:
        return self.is_online and not self.in_service


@dataclass(frozen=True)
class ReviewRecord:
    id: uuid.UUID
    session_id: uuid.UUID
    guest_id: uuid.UUID
    practitioner_id: uuid.UUID
    rating: int
    comment: str | None = None
    created_at: datetime | None = None


class SessionStore(ABC):
    """Persistence for session rows."""

    @abstractmethod
    async def get(self, session_id: uuid.UUID) -> SessionState | None:
        """Fetch one session, or None."""

    @abstractmethod
    async def insert(self, session: SessionState) -> SessionState:
        """Persist a new session.

        Raises:
            AdmissionConflictError: If the practitioner already has a
                non-terminal session (store-level uniqueness).
        """

    @abstractmethod
    async def compare_and_set(
        self,
        session_id: uuid.UUID,
        expected_version: int,
        patch: dict[str, Any],
    ) -> SessionState | None:
        """Apply `patch` only if the stored version still equals `expected_version`.

        Returns the updated session, or None if another writer got there first.
        """

    @abstractmethod
    async def list_pending(self) -> list[SessionState]:
        """Sessions in the waiting / room-timer phase."""

    @abstractmethod
    async def list_live(self) -> list[SessionState]:
        """Sessions in the live phase."""

    @abstractmethod
    async def list_active_for_practitioner(self, practitioner_id: uuid.UUID) -> list[SessionState]:
        """Non-terminal sessions bound to a practitioner."""

    @abstractmethod
    async def list_for_user(self, user_id: uuid.UUID) -> list[SessionState]:
        """Every session the user took part in, newest first."""


class ParticipantDirectory(ABC):
    """Profiles, roles and practitioner presence."""

    @abstractmethod
    async def get_profile(self, user_id: uuid.UUID) -> ProfileRecord | None:
        """Fetch a profile, or None."""

    @abstractmethod
    async def create_profile(self, profile: ProfileRecord) -> ProfileRecord:
        """Create a profile (and a practitioner row for practitioners).

        Raises:
            ProfileExistsError: If the user already has a profile.
        """

    @abstractmethod
    async def update_profile(self, user_id: uuid.UUID, changes: dict[str, Any]) -> ProfileRecord:
        """Overwrite the given public fields of a profile.

        Raises:
            ProfileNotFoundError: If the user has no profile.
        """

    @abstractmethod
    async def get_practitioner(self, user_id: uuid.UUID) -> PractitionerRecord | None:
        """Fetch presence data, or None if the user is not a practitioner."""

    @abstractmethod
    async def list_practitioners(self, online_only: bool = False) -> list[PractitionerRecord]:
        """All practitioners, optionally only the online ones."""

    @abstractmethod
    async def set_online(self, user_id: uuid.UUID, online: bool) -> PractitionerRecord:
        """Self-toggled availability."""

    @abstractmethod
    async def set_in_service(self, user_id: uuid.UUID, in_service: bool) -> PractitionerRecord:
        """Service-owned flag: true while bound to a non-terminal session."""

    @abstractmethod
    async def set_rating(self, user_id: uuid.UUID, rating: Decimal, review_count: int) -> PractitionerRecord:
        """Persist the recomputed aggregate rating."""

    @abstractmethod
    async def list_in_service(self) -> list[PractitionerRecord]:
        """Practitioners currently flagged in service."""


class ReviewStore(ABC):
    """Persistence for guest reviews."""

    @abstractmethod
    async def insert(self, review: ReviewRecord) -> ReviewRecord:
        """Persist a review.

        Raises:
            DuplicateReviewError: If the session already has a review.
        """

    @abstractmethod
    async def ratings_for_practitioner(self, practitioner_id: uuid.UUID) -> list[int]:
        """Every rating the practitioner has received."""

    @abstractmethod
    async def list_for_session(self, session_id: uuid.UUID) -> list[ReviewRecord]:
        """Reviews attached to a session."""
