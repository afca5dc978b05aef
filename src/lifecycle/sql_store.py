"""SQLAlchemy implementations of the lifecycle store interfaces.

Each call runs in its own short transaction. Compare-and-set is a single
`UPDATE ... WHERE id = :id AND version = :expected RETURNING *`, so two
writers racing on the same session can never both succeed.
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from collections.abc import AsyncGenerator
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.lifecycle.errors import (
    AdmissionConflictError,
    CollaboratorError,
    DuplicateReviewError,
    PractitionerNotFoundError,
    ProfileExistsError,
    ProfileNotFoundError,
)
from src.lifecycle.states import SessionState
from src.lifecycle.store import (
    ParticipantDirectory,
    PractitionerRecord,
    ProfileRecord,
    ReviewRecord,
    ReviewStore,
    SessionStore,
)
from src.models.base import utcnow
from src.models.enums import EndReason, SessionPhase, UserRole
from src.models.practitioner import Practitioner
from src.models.profile import Profile
from src.models.review import Review
from src.models.session import Session

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


class _SqlStore:
    """Shared transaction helper."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    @contextlib.asynccontextmanager
    async def _unit(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session; commit on success, roll back on error.

        IntegrityError propagates untouched so callers can translate it;
        any other database failure becomes a CollaboratorError.
        """
        async with self._session_factory() as db:
            try:
                yield db
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.exception("Store operation failed")
                raise CollaboratorError("Session store unavailable") from exc


# ── Row ↔ snapshot conversion ────────────────────────────────────────


def session_to_state(row: Session) -> SessionState:
    return SessionState(
        id=row.id,
        practitioner_id=row.practitioner_id,
        guest_id=row.guest_id,
        phase=SessionPhase(row.phase),
        version=row.version,
        waiting_seconds=row.waiting_seconds,
        live_seconds=row.live_seconds,
        created_at=row.created_at,
        waiting_started_at=row.waiting_started_at,
        live_started_at=row.live_started_at,
        ended_at=row.ended_at,
        end_reason=EndReason(row.end_reason) if row.end_reason else None,
        acknowledged_practitioner=row.acknowledged_practitioner,
        ready_guest=row.ready_guest,
        ready_practitioner=row.ready_practitioner,
        agora_channel=row.agora_channel,
        agora_uid_guest=row.agora_uid_guest,
        agora_uid_practitioner=row.agora_uid_practitioner,
    )


def _column_values(patch: dict[str, Any]) -> dict[str, Any]:
    """Enums are stored by value."""
    return {key: value.value if isinstance(value, Enum) else value for key, value in patch.items()}


def profile_to_record(row: Profile) -> ProfileRecord:
    return ProfileRecord(
        id=row.id,
        role=UserRole(row.role),
        display_name=row.display_name,
        country=row.country,
        bio=row.bio,
        avatar_url=row.avatar_url,
        specialties=tuple(row.specialties or ()),
    )


def practitioner_to_record(row: Practitioner) -> PractitionerRecord:
    return PractitionerRecord(
        user_id=row.user_id,
        is_online=row.is_online,
        in_service=row.in_service,
        rating=Decimal(row.rating if row.rating is not None else "0.0"),
        review_count=row.review_count,
    )


def review_to_record(row: Review) -> ReviewRecord:
    return ReviewRecord(
        id=row.id,
        session_id=row.session_id,
        guest_id=row.guest_id,
        practitioner_id=row.practitioner_id,
        rating=row.rating,
        comment=row.comment,
        created_at=row.created_at,
    )


# ── Sessions ─────────────────────────────────────────────────────────


class SqlSessionStore(_SqlStore, SessionStore):
    """Session rows in PostgreSQL (SQLite in tests)."""

    async def get(self, session_id: uuid.UUID) -> SessionState | None:
        async with self._unit() as db:
            row = await db.get(Session, session_id)
            return session_to_state(row) if row is not None else None

    async def insert(self, session: SessionState) -> SessionState:
        row = Session(
            id=session.id,
            practitioner_id=session.practitioner_id,
            guest_id=session.guest_id,
            phase=session.phase.value,
            version=session.version,
            waiting_seconds=session.waiting_seconds,
            live_seconds=session.live_seconds,
            waiting_started_at=session.waiting_started_at,
            acknowledged_practitioner=session.acknowledged_practitioner,
            ready_guest=session.ready_guest,
            ready_practitioner=session.ready_practitioner,
            agora_channel=session.agora_channel,
            agora_uid_guest=session.agora_uid_guest,
            agora_uid_practitioner=session.agora_uid_practitioner,
        )
        try:
            async with self._unit() as db:
                db.add(row)
                await db.flush()
                state = session_to_state(row)
        except IntegrityError as exc:
            logger.warning(
                "Admission rejected by store: practitioner=%s already has an active session",
                session.practitioner_id,
            )
            raise AdmissionConflictError("Practitioner already has an active session") from exc
        return state

    async def compare_and_set(
        self,
        session_id: uuid.UUID,
        expected_version: int,
        patch: dict[str, Any],
    ) -> SessionState | None:
        stmt = (
            update(Session)
            .where(Session.id == session_id, Session.version == expected_version)
            .values(**_column_values(patch), version=Session.version + 1, updated_at=utcnow())
            .returning(Session)
            .execution_options(synchronize_session=False)
        )
        async with self._unit() as db:
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return session_to_state(row) if row is not None else None

    async def _list(self, *criteria: Any) -> list[SessionState]:
        async with self._unit() as db:
            result = await db.execute(select(Session).where(*criteria).order_by(Session.created_at.desc()))
            return [session_to_state(row) for row in result.scalars().all()]

    async def list_pending(self) -> list[SessionState]:
        return await self._list(Session.phase.in_([SessionPhase.WAITING.value, SessionPhase.ROOM_TIMER.value]))

    async def list_live(self) -> list[SessionState]:
        return await self._list(Session.phase == SessionPhase.LIVE.value)

    async def list_active_for_practitioner(self, practitioner_id: uuid.UUID) -> list[SessionState]:
        return await self._list(
            Session.practitioner_id == practitioner_id,
            Session.phase != SessionPhase.ENDED.value,
        )

    async def list_for_user(self, user_id: uuid.UUID) -> list[SessionState]:
        return await self._list(or_(Session.guest_id == user_id, Session.practitioner_id == user_id))


# ── Participants ─────────────────────────────────────────────────────


class SqlParticipantDirectory(_SqlStore, ParticipantDirectory):
    """Profiles and practitioner presence."""

    async def get_profile(self, user_id: uuid.UUID) -> ProfileRecord | None:
        async with self._unit() as db:
            row = await db.get(Profile, user_id)
            return profile_to_record(row) if row is not None else None

    async def create_profile(self, profile: ProfileRecord) -> ProfileRecord:
        try:
            async with self._unit() as db:
                db.add(Profile(
                    id=profile.id,
                    role=profile.role.value,
                    display_name=profile.display_name,
                    country=profile.country,
                    bio=profile.bio,
                    avatar_url=profile.avatar_url,
                    specialties=list(profile.specialties),
                ))
                await db.flush()
                if profile.role is UserRole.PRACTITIONER:
                    db.add(Practitioner(user_id=profile.id, is_online=False, in_service=False))
        except IntegrityError as exc:
            raise ProfileExistsError("Profile already exists") from exc
        return profile

    async def update_profile(self, user_id: uuid.UUID, changes: dict[str, Any]) -> ProfileRecord:
        values = dict(changes)
        if "specialties" in values:
            values["specialties"] = list(values["specialties"])
        stmt = (
            update(Profile)
            .where(Profile.id == user_id)
            .values(**values, updated_at=utcnow())
            .returning(Profile)
            .execution_options(synchronize_session=False)
        )
        async with self._unit() as db:
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                raise ProfileNotFoundError("Profile not found")
            return profile_to_record(row)

    async def get_practitioner(self, user_id: uuid.UUID) -> PractitionerRecord | None:
        async with self._unit() as db:
            row = await db.get(Practitioner, user_id)
            return practitioner_to_record(row) if row is not None else None

    async def list_practitioners(self, online_only: bool = False) -> list[PractitionerRecord]:
        stmt = select(Practitioner).order_by(Practitioner.rating.desc())
        if online_only:
            stmt = stmt.where(Practitioner.is_online.is_(True))
        async with self._unit() as db:
            result = await db.execute(stmt)
            return [practitioner_to_record(row) for row in result.scalars().all()]

    async def list_in_service(self) -> list[PractitionerRecord]:
        async with self._unit() as db:
            result = await db.execute(select(Practitioner).where(Practitioner.in_service.is_(True)))
            return [practitioner_to_record(row) for row in result.scalars().all()]

    async def _update(self, user_id: uuid.UUID, **values: Any) -> PractitionerRecord:
        stmt = (
            update(Practitioner)
            .where(Practitioner.user_id == user_id)
            .values(**values, updated_at=utcnow())
            .returning(Practitioner)
            .execution_options(synchronize_session=False)
        )
        async with self._unit() as db:
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                raise PractitionerNotFoundError(f"Practitioner {user_id} not found")
            return practitioner_to_record(row)

    async def set_online(self, user_id: uuid.UUID, online: bool) -> PractitionerRecord:
        return await self._update(user_id, is_online=online)

    async def set_in_service(self, user_id: uuid.UUID, in_service: bool) -> PractitionerRecord:
        return await self._update(user_id, in_service=in_service)

    async def set_rating(self, user_id: uuid.UUID, rating: Decimal, review_count: int) -> PractitionerRecord:
        return await self._update(user_id, rating=rating, review_count=review_count)


# ── Reviews ──────────────────────────────────────────────────────────


class SqlReviewStore(_SqlStore, ReviewStore):
    """Guest reviews."""

    async def insert(self, review: ReviewRecord) -> ReviewRecord:
        row = Review(
            id=review.id,
            session_id=review.session_id,
            guest_id=review.guest_id,
            practitioner_id=review.practitioner_id,
            rating=review.rating,
            comment=review.comment,
        )
        try:
            async with self._unit() as db:
                db.add(row)
                await db.flush()
                record = review_to_record(row)
        except IntegrityError as exc:
            raise DuplicateReviewError("Session has already been reviewed") from exc
        return record

    async def ratings_for_practitioner(self, practitioner_id: uuid.UUID) -> list[int]:
        async with self._unit() as db:
            result = await db.execute(select(Review.rating).where(Review.practitioner_id == practitioner_id))
            return [int(rating) for rating in result.scalars().all()]

    async def list_for_session(self, session_id: uuid.UUID) -> list[ReviewRecord]:
        async with self._unit() as db:
            result = await db.execute(
                select(Review).where(Review.session_id == session_id).order_by(Review.created_at.asc())
            )
            return [review_to_record(row) for row in result.scalars().all()]
