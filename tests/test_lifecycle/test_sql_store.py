"""Tests for the SQLAlchemy stores on an in-memory SQLite database.

Covers:
- Session insert/get, partial unique index backstop, compare-and-set
- Session listings by phase, practitioner and participant
- Profiles, profile edits, practitioner presence and rating updates
- Reviews uniqueness and rating queries
- Audit subscriber persistence
- End-to-end service flow over the SQL stores
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.config import LifecycleSettings
from src.events.audit import make_audit_subscriber
from src.lifecycle.errors import (
    AdmissionConflictError,
    DuplicateReviewError,
    PractitionerNotFoundError,
    ProfileExistsError,
    ProfileNotFoundError,
)
from src.lifecycle.locks import LocalKeyedLock
from src.lifecycle.service import SessionLifecycleService
from src.lifecycle.sql_store import SqlParticipantDirectory, SqlReviewStore, SqlSessionStore
from src.lifecycle.states import SessionState, as_utc
from src.lifecycle.store import ProfileRecord, ReviewRecord
from src.models import AuditLog, Base
from src.models.enums import EndReason, SessionAction, SessionPhase, UserRole
from src.schemas.events import EventType, SystemEvent

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest_asyncio.fixture()
async def session_factory():
    """In-memory SQLite with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture()
def sessions(session_factory) -> SqlSessionStore:
    return SqlSessionStore(session_factory)


@pytest.fixture()
def sql_directory(session_factory) -> SqlParticipantDirectory:
    return SqlParticipantDirectory(session_factory)


@pytest.fixture()
def reviews(session_factory) -> SqlReviewStore:
    return SqlReviewStore(session_factory)


def _make_state(practitioner_id: uuid.UUID, guest_id: uuid.UUID | None = None) -> SessionState:
    session_id = uuid.uuid4()
    return SessionState(
        id=session_id,
        practitioner_id=practitioner_id,
        guest_id=guest_id or uuid.uuid4(),
        phase=SessionPhase.ROOM_TIMER,
        waiting_started_at=NOW,
        live_seconds=900,
        agora_channel=f"sess_{str(session_id)[:8]}",
        agora_uid_guest="1001",
        agora_uid_practitioner="2002",
    )


async def _profile(directory: SqlParticipantDirectory, role: UserRole, name: str = "Someone") -> uuid.UUID:
    user_id = uuid.uuid4()
    await directory.create_profile(ProfileRecord(id=user_id, role=role, display_name=name))
    return user_id


# ── Sessions ─────────────────────────────────────────────────────────


class TestSqlSessionStore:

    @pytest.mark.asyncio()
    async def test_insert_and_get(self, sessions):
        state = _make_state(uuid.uuid4())

        stored = await sessions.insert(state)
        fetched = await sessions.get(state.id)

        assert stored.version == 1
        assert fetched.id == state.id
        assert fetched.phase is SessionPhase.ROOM_TIMER
        assert fetched.agora_uid_guest == "1001"
        assert fetched.created_at is not None
        assert as_utc(fetched.waiting_started_at) == NOW

    @pytest.mark.asyncio()
    async def test_get_missing(self, sessions):
        assert await sessions.get(uuid.uuid4()) is None

    @pytest.mark.asyncio()
    async def test_second_active_session_conflicts(self, sessions):
        practitioner = uuid.uuid4()
        await sessions.insert(_make_state(practitioner))

        with pytest.raises(AdmissionConflictError):
            await sessions.insert(_make_state(practitioner))

    @pytest.mark.asyncio()
    async def test_ended_session_frees_practitioner(self, sessions):
        practitioner = uuid.uuid4()
        first = await sessions.insert(_make_state(practitioner))
        await sessions.compare_and_set(first.id, 1, {"phase": SessionPhase.ENDED, "end_reason": EndReason.ENDED})

        second = await sessions.insert(_make_state(practitioner))
        assert second.practitioner_id == practitioner

    @pytest.mark.asyncio()
    async def test_compare_and_set_bumps_version(self, sessions):
        state = await sessions.insert(_make_state(uuid.uuid4()))

        updated = await sessions.compare_and_set(state.id, 1, {"ready_guest": True})

        assert updated.version == 2
        assert updated.ready_guest is True
        assert (await sessions.get(state.id)).version == 2

    @pytest.mark.asyncio()
    async def test_compare_and_set_stale_version(self, sessions):
        state = await sessions.insert(_make_state(uuid.uuid4()))
        await sessions.compare_and_set(state.id, 1, {"ready_guest": True})

        assert await sessions.compare_and_set(state.id, 1, {"ready_practitioner": True}) is None
        assert (await sessions.get(state.id)).ready_practitioner is False

    @pytest.mark.asyncio()
    async def test_compare_and_set_stores_enums_by_value(self, sessions):
        state = await sessions.insert(_make_state(uuid.uuid4()))

        updated = await sessions.compare_and_set(
            state.id, 1, {"phase": SessionPhase.LIVE, "live_started_at": NOW}
        )

        assert updated.phase is SessionPhase.LIVE
        assert as_utc(updated.live_started_at) == NOW

    @pytest.mark.asyncio()
    async def test_listings(self, sessions):
        practitioner, guest = uuid.uuid4(), uuid.uuid4()
        pending = await sessions.insert(_make_state(practitioner, guest))
        live = await sessions.insert(_make_state(uuid.uuid4(), guest))
        await sessions.compare_and_set(live.id, 1, {"phase": SessionPhase.LIVE, "live_started_at": NOW})

        assert [s.id for s in await sessions.list_pending()] == [pending.id]
        assert [s.id for s in await sessions.list_live()] == [live.id]
        assert [s.id for s in await sessions.list_active_for_practitioner(practitioner)] == [pending.id]
        assert {s.id for s in await sessions.list_for_user(guest)} == {pending.id, live.id}
        assert [s.id for s in await sessions.list_for_user(practitioner)] == [pending.id]


# ── Participants ─────────────────────────────────────────────────────


class TestSqlParticipantDirectory:

    @pytest.mark.asyncio()
    async def test_practitioner_profile_gets_presence_row(self, sql_directory):
        user_id = await _profile(sql_directory, UserRole.PRACTITIONER, "Sol")

        profile = await sql_directory.get_profile(user_id)
        practitioner = await sql_directory.get_practitioner(user_id)

        assert profile.role is UserRole.PRACTITIONER
        assert profile.display_name == "Sol"
        assert practitioner.is_online is False
        assert practitioner.in_service is False
        assert practitioner.review_count == 0

    @pytest.mark.asyncio()
    async def test_guest_has_no_presence_row(self, sql_directory):
        user_id = await _profile(sql_directory, UserRole.GUEST)
        assert await sql_directory.get_practitioner(user_id) is None

    @pytest.mark.asyncio()
    async def test_duplicate_profile(self, sql_directory):
        user_id = await _profile(sql_directory, UserRole.GUEST)
        with pytest.raises(ProfileExistsError):
            await sql_directory.create_profile(ProfileRecord(id=user_id, role=UserRole.GUEST, display_name="x"))

    @pytest.mark.asyncio()
    async def test_presence_updates(self, sql_directory):
        user_id = await _profile(sql_directory, UserRole.PRACTITIONER)

        await sql_directory.set_online(user_id, True)
        record = await sql_directory.set_in_service(user_id, True)

        assert record.is_online and record.in_service
        assert [p.user_id for p in await sql_directory.list_in_service()] == [user_id]
        assert [p.user_id for p in await sql_directory.list_practitioners(online_only=True)] == [user_id]

    @pytest.mark.asyncio()
    async def test_offline_practitioners_filtered(self, sql_directory):
        await _profile(sql_directory, UserRole.PRACTITIONER)

        assert await sql_directory.list_practitioners(online_only=True) == []
        assert len(await sql_directory.list_practitioners()) == 1

    @pytest.mark.asyncio()
    async def test_update_unknown_practitioner(self, sql_directory):
        with pytest.raises(PractitionerNotFoundError):
            await sql_directory.set_online(uuid.uuid4(), True)

    @pytest.mark.asyncio()
    async def test_update_profile(self, sql_directory):
        user_id = await _profile(sql_directory, UserRole.PRACTITIONER, "Sol")

        updated = await sql_directory.update_profile(
            user_id, {"bio": "Reiki since 2015", "specialties": ("reiki", "breathwork")}
        )
        stored = await sql_directory.get_profile(user_id)

        assert updated.bio == "Reiki since 2015"
        assert stored.specialties == ("reiki", "breathwork")
        assert stored.display_name == "Sol"
        assert stored.role is UserRole.PRACTITIONER

    @pytest.mark.asyncio()
    async def test_update_missing_profile(self, sql_directory):
        with pytest.raises(ProfileNotFoundError):
            await sql_directory.update_profile(uuid.uuid4(), {"bio": "nobody"})

    @pytest.mark.asyncio()
    async def test_set_rating(self, sql_directory):
        user_id = await _profile(sql_directory, UserRole.PRACTITIONER)

        record = await sql_directory.set_rating(user_id, Decimal("4.5"), 2)

        assert record.rating == Decimal("4.5")
        assert record.review_count == 2


# ── Reviews ──────────────────────────────────────────────────────────


class TestSqlReviewStore:

    def _review(self, session_id: uuid.UUID, practitioner_id: uuid.UUID, rating: int) -> ReviewRecord:
        return ReviewRecord(
            id=uuid.uuid4(),
            session_id=session_id,
            guest_id=uuid.uuid4(),
            practitioner_id=practitioner_id,
            rating=rating,
        )

    @pytest.mark.asyncio()
    async def test_insert_and_query(self, sessions, reviews):
        practitioner = uuid.uuid4()
        session = await sessions.insert(_make_state(practitioner))

        stored = await reviews.insert(self._review(session.id, practitioner, 4))

        assert stored.created_at is not None
        assert await reviews.ratings_for_practitioner(practitioner) == [4]
        assert [r.id for r in await reviews.list_for_session(session.id)] == [stored.id]

    @pytest.mark.asyncio()
    async def test_one_review_per_session(self, sessions, reviews):
        practitioner = uuid.uuid4()
        session = await sessions.insert(_make_state(practitioner))
        await reviews.insert(self._review(session.id, practitioner, 4))

        with pytest.raises(DuplicateReviewError):
            await reviews.insert(self._review(session.id, practitioner, 5))


# ── Audit ────────────────────────────────────────────────────────────


class TestAuditSubscriber:

    @pytest.mark.asyncio()
    async def test_event_persisted(self, session_factory):
        handler = make_audit_subscriber(session_factory)
        session_id = uuid.uuid4()

        await handler(SystemEvent(
            event_type=EventType.SESSION_STARTED,
            session_id=session_id,
            actor_id="guest-1",
            actor_role="guest",
            data={"live_seconds": 900},
        ))

        async with session_factory() as db:
            rows = (await db.execute(select(AuditLog))).scalars().all()
        assert len(rows) == 1
        assert rows[0].event_type == "session.started"
        assert rows[0].session_id == session_id
        assert rows[0].data == {"live_seconds": 900}


# ── End to end ───────────────────────────────────────────────────────


class TestServiceOverSql:

    @pytest.mark.asyncio()
    async def test_full_session(self, sessions, sql_directory, reviews):
        service = SessionLifecycleService(
            sessions=sessions,
            directory=sql_directory,
            reviews=reviews,
            admission_lock=LocalKeyedLock(),
            settings=LifecycleSettings(sweep_enabled=False),
        )
        guest = await _profile(sql_directory, UserRole.GUEST, "Ana")
        practitioner = await _profile(sql_directory, UserRole.PRACTITIONER, "Sol")
        await service.set_presence(practitioner, True)

        session = await service.start_session(guest, practitioner, 900)
        assert (await sql_directory.get_practitioner(practitioner)).in_service is True

        await service.apply_action(session.id, practitioner, SessionAction.ACCEPT)
        live = await service.apply_action(session.id, guest, SessionAction.READY)
        assert live.phase is SessionPhase.LIVE

        ended = await service.apply_action(session.id, guest, SessionAction.END)
        assert ended.end_reason is EndReason.ENDED
        assert (await sql_directory.get_practitioner(practitioner)).in_service is False

        result = await service.submit_review(session.id, guest, 5)
        assert result.review_count == 1
        assert (await sql_directory.get_practitioner(practitioner)).rating == Decimal("5.0")

    @pytest.mark.asyncio()
    async def test_sweep_expires_live_session(self, sessions, sql_directory, reviews):
        service = SessionLifecycleService(
            sessions=sessions,
            directory=sql_directory,
            reviews=reviews,
            admission_lock=LocalKeyedLock(),
            settings=LifecycleSettings(sweep_enabled=False),
        )
        guest = await _profile(sql_directory, UserRole.GUEST)
        practitioner = await _profile(sql_directory, UserRole.PRACTITIONER)
        await service.set_presence(practitioner, True)
        session = await service.start_session(guest, practitioner, 60)
        await service.apply_action(session.id, practitioner, SessionAction.ACCEPT)
        live = await service.apply_action(session.id, guest, SessionAction.READY)

        # SQLite hands timestamps back without an offset
        stored = await sessions.get(session.id)
        started = as_utc(stored.live_started_at)
        result = await service.sweep_timeouts(started + timedelta(seconds=120))

        assert live.phase is SessionPhase.LIVE
        assert result.ended_ids == [session.id]
        assert result.ended[0].action is SessionAction.EXPIRE
        assert result.ended[0].elapsed_seconds == 120
        assert (await sessions.get(session.id)).end_reason is EndReason.EXPIRED
        assert (await sql_directory.get_practitioner(practitioner)).in_service is False
