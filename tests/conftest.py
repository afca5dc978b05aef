"""Shared fixtures: in-memory collaborators and a wired lifecycle service.

The in-memory stores yield to the event loop on every call so concurrent
tasks interleave the way they would against a real database.
"""

from __future__ import annotations

import asyncio
import dataclasses
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.config import LifecycleSettings
from src.events.bus import EventBus
from src.lifecycle.errors import (
    AdmissionConflictError,
    CollaboratorError,
    DuplicateReviewError,
    PractitionerNotFoundError,
    ProfileExistsError,
    ProfileNotFoundError,
)
from src.lifecycle.locks import LocalKeyedLock
from src.lifecycle.service import SessionLifecycleService
from src.lifecycle.states import SessionState
from src.lifecycle.store import (
    ParticipantDirectory,
    PractitionerRecord,
    ProfileRecord,
    ReviewRecord,
    ReviewStore,
    SessionStore,
)
from src.models.enums import SessionPhase, UserRole

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


# ── Fakes ────────────────────────────────────────────────────────────


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class InMemorySessionStore(SessionStore):
    def __init__(self, clock: FakeClock | None = None) -> None:
        self.rows: dict[uuid.UUID, SessionState] = {}
        self.cas_misses = 0
        self._clock = clock or FakeClock()

    async def get(self, session_id: uuid.UUID) -> SessionState | None:
        await asyncio.sleep(0)
        return self.rows.get(session_id)

    async def insert(self, session: SessionState) -> SessionState:
        await asyncio.sleep(0)
        for row in self.rows.values():
            if row.practitioner_id == session.practitioner_id and not row.phase.is_terminal:
                raise AdmissionConflictError("Practitioner already has an active session")
        stored = dataclasses.replace(session, created_at=session.created_at or self._clock())
        self.rows[stored.id] = stored
        return stored

    async def compare_and_set(
        self,
        session_id: uuid.UUID,
        expected_version: int,
        patch: dict[str, Any],
    ) -> SessionState | None:
        await asyncio.sleep(0)
        current = self.rows.get(session_id)
        if current is None or current.version != expected_version:
            self.cas_misses += 1
            return None
        updated = current.apply(patch)
        self.rows[session_id] = updated
        return updated

    def _sorted(self, rows: list[SessionState]) -> list[SessionState]:
        return sorted(rows, key=lambda s: s.created_at or T0, reverse=True)

    async def list_pending(self) -> list[SessionState]:
        await asyncio.sleep(0)
        return self._sorted([s for s in self.rows.values() if s.phase.is_pending])

    async def list_live(self) -> list[SessionState]:
        await asyncio.sleep(0)
        return self._sorted([s for s in self.rows.values() if s.phase is SessionPhase.LIVE])

    async def list_active_for_practitioner(self, practitioner_id: uuid.UUID) -> list[SessionState]:
        await asyncio.sleep(0)
        return self._sorted([
            s for s in self.rows.values()
            if s.practitioner_id == practitioner_id and not s.phase.is_terminal
        ])

    async def list_for_user(self, user_id: uuid.UUID) -> list[SessionState]:
        await asyncio.sleep(0)
        return self._sorted([s for s in self.rows.values() if user_id in (s.guest_id, s.practitioner_id)])


class InMemoryDirectory(ParticipantDirectory):
    def __init__(self) -> None:
        self.profiles: dict[uuid.UUID, ProfileRecord] = {}
        self.practitioners: dict[uuid.UUID, PractitionerRecord] = {}
        self.in_service_calls: list[tuple[uuid.UUID, bool]] = []
        self.fail_in_service = False

    async def get_profile(self, user_id: uuid.UUID) -> ProfileRecord | None:
        await asyncio.sleep(0)
        return self.profiles.get(user_id)

    async def create_profile(self, profile: ProfileRecord) -> ProfileRecord:
        await asyncio.sleep(0)
        if profile.id in self.profiles:
            raise ProfileExistsError("Profile already exists")
        self.profiles[profile.id] = profile
        if profile.role is UserRole.PRACTITIONER:
            self.practitioners[profile.id] = PractitionerRecord(user_id=profile.id)
        return profile

    async def update_profile(self, user_id: uuid.UUID, changes: dict[str, Any]) -> ProfileRecord:
        await asyncio.sleep(0)
        current = self.profiles.get(user_id)
        if current is None:
            raise ProfileNotFoundError("Profile not found")
        values = dict(changes)
        if "specialties" in values:
            values["specialties"] = tuple(values["specialties"])
        updated = dataclasses.replace(current, **values)
        self.profiles[user_id] = updated
        return updated

    async def get_practitioner(self, user_id: uuid.UUID) -> PractitionerRecord | None:
        await asyncio.sleep(0)
        return self.practitioners.get(user_id)

    async def list_practitioners(self, online_only: bool = False) -> list[PractitionerRecord]:
        await asyncio.sleep(0)
        return [p for p in self.practitioners.values() if p.is_online or not online_only]

    def _replace(self, user_id: uuid.UUID, **values: Any) -> PractitionerRecord:
        current = self.practitioners.get(user_id)
        if current is None:
            raise PractitionerNotFoundError(f"Practitioner {user_id} not found")
        updated = dataclasses.replace(current, **values)
        self.practitioners[user_id] = updated
        return updated

    async def set_online(self, user_id: uuid.UUID, online: bool) -> PractitionerRecord:
        await asyncio.sleep(0)
        return self._replace(user_id, is_online=online)

    async def set_in_service(self, user_id: uuid.UUID, in_service: bool) -> PractitionerRecord:
        await asyncio.sleep(0)
        if self.fail_in_service:
            raise CollaboratorError("Directory unavailable")
        self.in_service_calls.append((user_id, in_service))
        return self._replace(user_id, in_service=in_service)

    async def set_rating(self, user_id: uuid.UUID, rating: Decimal, review_count: int) -> PractitionerRecord:
        await asyncio.sleep(0)
        return self._replace(user_id, rating=rating, review_count=review_count)

    async def list_in_service(self) -> list[PractitionerRecord]:
        await asyncio.sleep(0)
        return [p for p in self.practitioners.values() if p.in_service]


class InMemoryReviewStore(ReviewStore):
    def __init__(self) -> None:
        self.rows: list[ReviewRecord] = []

    async def insert(self, review: ReviewRecord) -> ReviewRecord:
        await asyncio.sleep(0)
        if any(r.session_id == review.session_id for r in self.rows):
            raise DuplicateReviewError("Session has already been reviewed")
        self.rows.append(review)
        return review

    async def ratings_for_practitioner(self, practitioner_id: uuid.UUID) -> list[int]:
        await asyncio.sleep(0)
        return [r.rating for r in self.rows if r.practitioner_id == practitioner_id]

    async def list_for_session(self, session_id: uuid.UUID) -> list[ReviewRecord]:
        await asyncio.sleep(0)
        return [r for r in self.rows if r.session_id == session_id]


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def session_store(clock: FakeClock) -> InMemorySessionStore:
    return InMemorySessionStore(clock)


@pytest.fixture()
def directory() -> InMemoryDirectory:
    return InMemoryDirectory()


@pytest.fixture()
def review_store() -> InMemoryReviewStore:
    return InMemoryReviewStore()


@pytest.fixture()
def lifecycle_settings() -> LifecycleSettings:
    return LifecycleSettings(
        waiting_timeout_seconds=225,
        default_waiting_seconds=60,
        sweep_enabled=False,
        admission_lock_backend="local",
        max_transition_retries=5,
    )


@pytest.fixture()
def events() -> AsyncMock:
    return AsyncMock(spec=EventBus)


@pytest.fixture()
def service(
    session_store: InMemorySessionStore,
    directory: InMemoryDirectory,
    review_store: InMemoryReviewStore,
    lifecycle_settings: LifecycleSettings,
    events: AsyncMock,
    clock: FakeClock,
) -> SessionLifecycleService:
    return SessionLifecycleService(
        sessions=session_store,
        directory=directory,
        reviews=review_store,
        admission_lock=LocalKeyedLock(),
        settings=lifecycle_settings,
        events=events,
        clock=clock,
    )


@pytest.fixture()
def make_guest(directory: InMemoryDirectory):
    """Factory to register a guest profile."""
    def _make(name: str = "Guest") -> uuid.UUID:
        user_id = uuid.uuid4()
        directory.profiles[user_id] = ProfileRecord(id=user_id, role=UserRole.GUEST, display_name=name)
        return user_id
    return _make


@pytest.fixture()
def make_practitioner(directory: InMemoryDirectory):
    """Factory to register a practitioner profile with presence."""
    def _make(online: bool = True, in_service: bool = False, name: str = "Healer") -> uuid.UUID:
        user_id = uuid.uuid4()
        directory.profiles[user_id] = ProfileRecord(id=user_id, role=UserRole.PRACTITIONER, display_name=name)
        directory.practitioners[user_id] = PractitionerRecord(
            user_id=user_id,
            is_online=online,
            in_service=in_service,
        )
        return user_id
    return _make
