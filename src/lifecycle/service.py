"""Session lifecycle service: runs the state machine against the stores.

Owns admission (start_session), every participant action, lazy and swept
expiry, reviews, and practitioner presence. All collaborators are passed
in explicitly.

Concurrency model:
- Admission is serialized per practitioner by a keyed lock, with the
  store's partial unique index as a backstop.
- Every session write is a compare-and-set on the session version. A
  writer that loses re-reads and re-decides, so transitions within one
  session are linearized and mutual readiness flips to live exactly once.
- Only the writer whose compare-and-set moved a session to ENDED releases
  the practitioner, and the release re-checks for other active sessions
  under the same practitioner lock.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from src.config import LifecycleSettings
from src.events.bus import EventBus
from src.lifecycle.errors import (
    REJECTION_ERRORS,
    CollaboratorError,
    LifecycleError,
    NotParticipantError,
    NotPractitionerError,
    PractitionerNotFoundError,
    PractitionerUnavailableError,
    ProfileExistsError,
    ProfileNotFoundError,
    ReviewNotAllowedError,
    RoleMismatchError,
    SessionNotFoundError,
    TransitionConflictError,
    TransportNotConfiguredError,
    WrongPhaseError,
)
from src.lifecycle.locks import KeyedLock
from src.lifecycle.machine import Rejection, Transition, decide
from src.lifecycle.states import SessionState, as_utc
from src.lifecycle.store import (
    ParticipantDirectory,
    PractitionerRecord,
    ProfileRecord,
    ReviewRecord,
    ReviewStore,
    SessionStore,
)
from src.models.base import utcnow
from src.models.enums import EndReason, SessionAction, SessionPhase, UserRole
from src.schemas.events import EventType, SystemEvent
from src.transport.tokens import TransportToken, TransportTokenIssuer

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_ACTION_EVENTS: dict[SessionAction, EventType] = {
    SessionAction.ACKNOWLEDGE: EventType.SESSION_ACKNOWLEDGED,
    SessionAction.READY: EventType.SESSION_READY,
    SessionAction.ACCEPT: EventType.SESSION_ACCEPTED,
    SessionAction.REJECT: EventType.SESSION_REJECTED,
    SessionAction.END: EventType.SESSION_ENDED,
    SessionAction.TIMEOUT: EventType.SESSION_TIMED_OUT,
    SessionAction.EXPIRE: EventType.SESSION_ENDED,
}

_RATING_STEP = Decimal("0.1")

# Public profile fields the owner may edit
PROFILE_FIELDS: frozenset[str] = frozenset({"display_name", "country", "bio", "avatar_url", "specialties"})


@dataclass(frozen=True)
class SessionView:
    """A session with both parties' profiles denormalized."""

    session: SessionState
    guest: ProfileRecord | None
    practitioner: ProfileRecord | None


@dataclass(frozen=True)
class PractitionerView:
    practitioner: PractitionerRecord
    profile: ProfileRecord | None


@dataclass(frozen=True)
class SweptSession:
    session_id: uuid.UUID
    practitioner_id: uuid.UUID
    guest_id: uuid.UUID
    action: SessionAction
    elapsed_seconds: int


@dataclass
class SweepResult:
    """Outcome of one sweep pass."""

    checked: int = 0
    ended: list[SweptSession] = field(default_factory=list)
    released: list[uuid.UUID] = field(default_factory=list)

    @property
    def ended_ids(self) -> list[uuid.UUID]:
        return [item.session_id for item in self.ended]


@dataclass(frozen=True)
class ReviewResult:
    review: ReviewRecord
    average_rating: Decimal
    review_count: int


def admission_key(practitioner_id: uuid.UUID) -> str:
    return f"admission:{practitioner_id}"


def _new_uid(exclude: str | None = None) -> str:
    """Positive 31-bit video UID, distinct from `exclude`."""
    while True:
        uid = str(secrets.randbelow(2**31 - 1) + 1)
        if uid != exclude:
            return uid


class SessionLifecycleService:
    """Orchestrates session transitions against the collaborators."""

    def __init__(
        self,
        sessions: SessionStore,
        directory: ParticipantDirectory,
        reviews: ReviewStore,
        admission_lock: KeyedLock,
        settings: LifecycleSettings,
        *,
        events: EventBus | None = None,
        token_issuer: TransportTokenIssuer | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._sessions = sessions
        self._directory = directory
        self._reviews = reviews
        self._admission_lock = admission_lock
        self._settings = settings
        self._events = events
        self._token_issuer = token_issuer
        self._clock = clock

    # ── Admission ────────────────────────────────────────────────────

    async def start_session(
        self,
        guest_id: uuid.UUID,
        practitioner_id: uuid.UUID,
        live_seconds: int,
    ) -> SessionState:
        """Create a session for an online, unbound practitioner.

        Raises:
            RoleMismatchError: Caller is not a guest.
            PractitionerNotFoundError: No such practitioner.
            PractitionerUnavailableError: Offline or already in a session.
            AdmissionConflictError: Lost a concurrent admission race.
            CollaboratorError: Practitioner could not be marked in service;
                the new session has been ended again.
        """
        guest = await self._directory.get_profile(guest_id)
        if guest is None or guest.role is not UserRole.GUEST:
            raise RoleMismatchError("Only guests can start sessions")

        async with self._admission_lock.hold(admission_key(practitioner_id)):
            practitioner = await self._directory.get_practitioner(practitioner_id)
            if practitioner is None:
                raise PractitionerNotFoundError(f"Practitioner {practitioner_id} not found")
            if not practitioner.is_online:
                raise PractitionerUnavailableError("Practitioner is not available")

            active = await self._sessions.list_active_for_practitioner(practitioner_id)
            if active:
                logger.info(
                    "Admission refused: practitioner=%s already bound to session=%s",
                    practitioner_id,
                    active[0].id,
                )
                raise PractitionerUnavailableError(
                    "Practitioner is currently in another session. Please try again later."
                )

            session = await self._sessions.insert(self._new_session(guest_id, practitioner_id, live_seconds))

            try:
                await self._directory.set_in_service(practitioner_id, True)
            except (CollaboratorError, PractitionerNotFoundError) as exc:
                logger.exception(
                    "Could not mark practitioner %s in service; ending session %s",
                    practitioner_id,
                    session.id,
                )
                try:
                    await self._sessions.compare_and_set(
                        session.id,
                        session.version,
                        {"phase": SessionPhase.ENDED, "ended_at": self._clock(), "end_reason": EndReason.ENDED},
                    )
                except LifecycleError:
                    # Left pending; the sweep times it out
                    logger.exception(
                        "Could not end session %s after failed reservation; left for the sweep",
                        session.id,
                    )
                raise CollaboratorError("Could not reserve the practitioner, please retry") from exc

        logger.info(
            "Session started: id=%s guest=%s practitioner=%s live_seconds=%d",
            session.id,
            guest_id,
            practitioner_id,
            live_seconds,
        )
        await self._emit(SystemEvent(
            event_type=EventType.SESSION_STARTED,
            session_id=session.id,
            actor_id=str(guest_id),
            actor_role=UserRole.GUEST.value,
            data={
                "practitioner_id": str(practitioner_id),
                "live_seconds": live_seconds,
                "channel": session.agora_channel,
            },
            source_module="lifecycle.service",
        ))
        return session

    def _new_session(self, guest_id: uuid.UUID, practitioner_id: uuid.UUID, live_seconds: int) -> SessionState:
        session_id = uuid.uuid4()
        guest_uid = _new_uid()
        return SessionState(
            id=session_id,
            practitioner_id=practitioner_id,
            guest_id=guest_id,
            phase=SessionPhase.ROOM_TIMER,
            waiting_seconds=self._settings.default_waiting_seconds,
            live_seconds=live_seconds,
            waiting_started_at=self._clock(),
            agora_channel=f"sess_{str(session_id)[:8]}",
            agora_uid_guest=guest_uid,
            agora_uid_practitioner=_new_uid(exclude=guest_uid),
        )

    # ── Actions ──────────────────────────────────────────────────────

    async def apply_action(
        self,
        session_id: uuid.UUID,
        actor_id: uuid.UUID,
        action: SessionAction,
    ) -> SessionState:
        """Run a participant action and return the resulting session.

        Repeating an action that already took effect returns the session
        unchanged. Ending an ended session is a no-op.
        """
        if action.is_system:
            raise NotParticipantError(f"'{action.value}' is a system action")

        current = await self._load(session_id)
        if not current.is_participant(actor_id):
            raise NotParticipantError("Not a session participant")
        current = await self._expire_if_overdue(current)

        state, _ = await self._drive(current, actor_id, action, self._clock())
        return state

    async def _drive(
        self,
        current: SessionState,
        actor_id: uuid.UUID | None,
        action: SessionAction,
        now: datetime,
    ) -> tuple[SessionState, Transition | None]:
        """Decide and compare-and-set until the write lands or is unnecessary.

        Returns the latest session and the transition this call wrote
        (None when nothing needed writing).
        """
        for attempt in range(1, self._settings.max_transition_retries + 1):
            decision = decide(
                current,
                actor_id,
                action,
                now,
                waiting_timeout_seconds=self._settings.waiting_timeout_seconds,
            )
            if isinstance(decision, Rejection):
                raise REJECTION_ERRORS[decision.reason](decision.message)
            if decision.is_noop:
                return current, None

            updated = await self._sessions.compare_and_set(current.id, current.version, decision.patch)
            if updated is not None:
                await self._after_transition(updated, decision, actor_id)
                return updated, decision

            logger.debug(
                "Compare-and-set miss: session=%s action=%s attempt=%d",
                current.id,
                action.value,
                attempt,
            )
            current = await self._load(current.id)

        await self._emit(SystemEvent(
            event_type=EventType.SESSION_TRANSITION_CONFLICT,
            session_id=current.id,
            actor_id=str(actor_id) if actor_id else "system",
            data={"action": action.value, "attempts": self._settings.max_transition_retries},
            source_module="lifecycle.service",
        ))
        raise TransitionConflictError("Session changed concurrently, re-fetch and retry")

    async def _after_transition(
        self,
        session: SessionState,
        transition: Transition,
        actor_id: uuid.UUID | None,
    ) -> None:
        logger.info(
            "Session transition: %s --%s--> %s (session=%s)",
            transition.from_phase.value,
            transition.action.value,
            transition.to_phase.value,
            session.id,
        )

        actor_role = session.role_of(actor_id)
        await self._emit(SystemEvent(
            event_type=_ACTION_EVENTS[transition.action],
            session_id=session.id,
            actor_id=str(actor_id) if actor_id else "system",
            actor_role=actor_role.value if actor_role else "system",
            data={
                "from_phase": transition.from_phase.value,
                "to_phase": transition.to_phase.value,
                "fields": sorted(transition.patch),
            },
            source_module="lifecycle.service",
        ))

        if transition.went_live:
            await self._emit(SystemEvent(
                event_type=EventType.SESSION_LIVE,
                session_id=session.id,
                data={"live_seconds": session.live_seconds, "channel": session.agora_channel},
                source_module="lifecycle.service",
            ))

        if transition.ended and transition.releases_practitioner:
            await self._release_practitioner(session.practitioner_id, session.id)

    async def _release_practitioner(self, practitioner_id: uuid.UUID, session_id: uuid.UUID | None) -> bool:
        """Clear in_service unless the practitioner is bound to another session.

        Failures are logged as an inconsistency and left for the sweep.
        """
        try:
            async with self._admission_lock.hold(admission_key(practitioner_id)):
                active = await self._sessions.list_active_for_practitioner(practitioner_id)
                if active:
                    logger.debug(
                        "Practitioner %s still bound to session %s; not releasing",
                        practitioner_id,
                        active[0].id,
                    )
                    return False
                practitioner = await self._directory.get_practitioner(practitioner_id)
                if practitioner is None or not practitioner.in_service:
                    return False
                await self._directory.set_in_service(practitioner_id, False)
        except LifecycleError:
            logger.exception(
                "Inconsistency: session %s ended but practitioner %s could not be released",
                session_id,
                practitioner_id,
            )
            await self._emit(SystemEvent(
                event_type=EventType.PRACTITIONER_RELEASE_FAILED,
                session_id=session_id,
                data={"practitioner_id": str(practitioner_id)},
                source_module="lifecycle.service",
            ))
            return False

        await self._emit(SystemEvent(
            event_type=EventType.PRACTITIONER_RELEASED,
            session_id=session_id,
            data={"practitioner_id": str(practitioner_id)},
            source_module="lifecycle.service",
        ))
        return True

    # ── Reads ────────────────────────────────────────────────────────

    async def _load(self, session_id: uuid.UUID) -> SessionState:
        session = await self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    async def _expire_if_overdue(self, session: SessionState, now: datetime | None = None) -> SessionState:
        """Apply the timeout / live-expiry transition if its deadline has passed."""
        now = now or self._clock()
        action = self._overdue_action(session, now)
        if action is None:
            return session
        try:
            state, _ = await self._drive(session, None, action, now)
        except (WrongPhaseError, TransitionConflictError):
            # A concurrent writer moved the session on; report what is stored now
            return await self._load(session.id)
        return state

    def _overdue_action(self, session: SessionState, now: datetime) -> SessionAction | None:
        if session.phase.is_pending:
            deadline = session.waiting_deadline(self._settings.waiting_timeout_seconds)
            if deadline is not None and now > deadline:
                return SessionAction.TIMEOUT
        elif session.phase is SessionPhase.LIVE:
            deadline = session.live_deadline
            if deadline is not None and now > deadline:
                return SessionAction.EXPIRE
        return None

    async def get_session(self, session_id: uuid.UUID, actor_id: uuid.UUID) -> SessionView:
        """Participant-only read with denormalized profiles."""
        session = await self._load(session_id)
        if not session.is_participant(actor_id):
            raise NotParticipantError("Not a session participant")
        session = await self._expire_if_overdue(session)

        return SessionView(
            session=session,
            guest=await self._directory.get_profile(session.guest_id),
            practitioner=await self._directory.get_profile(session.practitioner_id),
        )

    async def sessions_for_practitioner(self, actor_id: uuid.UUID) -> list[SessionState]:
        """Non-terminal sessions of the calling practitioner."""
        await self._require_practitioner(actor_id)
        sessions = await self._sessions.list_active_for_practitioner(actor_id)
        refreshed = [await self._expire_if_overdue(session) for session in sessions]
        return [session for session in refreshed if not session.phase.is_terminal]

    async def session_history(self, actor_id: uuid.UUID) -> list[SessionState]:
        """Every session the caller took part in, newest first."""
        return await self._sessions.list_for_user(actor_id)

    # ── Sweep ────────────────────────────────────────────────────────

    async def sweep_timeouts(self, now: datetime | None = None) -> SweepResult:
        """End overdue sessions and release practitioners stuck in service.

        Idempotent: sessions already ended by a participant or a concurrent
        sweep are skipped without side effects.
        """
        now = now or self._clock()
        result = SweepResult()

        candidates = await self._sessions.list_pending() + await self._sessions.list_live()
        result.checked = len(candidates)

        for session in candidates:
            action = self._overdue_action(session, now)
            if action is None:
                continue
            try:
                _, transition = await self._drive(session, None, action, now)
            except (WrongPhaseError, TransitionConflictError):
                logger.debug("Sweep skipped session %s: changed concurrently", session.id)
                continue
            if transition is None or not transition.ended:
                continue

            started = session.timer_started_at if action is SessionAction.TIMEOUT else as_utc(session.live_started_at)
            elapsed = int((now - started).total_seconds()) if started else 0
            logger.info("Swept session %s (%s) after %ds", session.id, action.value, elapsed)
            result.ended.append(SweptSession(
                session_id=session.id,
                practitioner_id=session.practitioner_id,
                guest_id=session.guest_id,
                action=action,
                elapsed_seconds=elapsed,
            ))

        result.released = await self._reconcile_in_service()
        return result

    async def _reconcile_in_service(self) -> list[uuid.UUID]:
        """Release practitioners flagged in service with no active session."""
        released: list[uuid.UUID] = []
        for practitioner in await self._directory.list_in_service():
            active = await self._sessions.list_active_for_practitioner(practitioner.user_id)
            if active:
                continue
            logger.warning("Reconciling practitioner %s stuck in service", practitioner.user_id)
            if await self._release_practitioner(practitioner.user_id, None):
                released.append(practitioner.user_id)
        return released

    # ── Reviews ──────────────────────────────────────────────────────

    async def submit_review(
        self,
        session_id: uuid.UUID,
        guest_id: uuid.UUID,
        rating: int,
        comment: str | None = None,
    ) -> ReviewResult:
        """Record the guest's review and recompute the practitioner's mean rating."""
        if not 1 <= rating <= 5:
            raise ReviewNotAllowedError("Rating must be between 1 and 5")

        session = await self._load(session_id)
        role = session.role_of(guest_id)
        if role is None:
            raise NotParticipantError("Not a session participant")
        if role is not UserRole.GUEST:
            raise RoleMismatchError("Only the session's guest can submit a review")
        session = await self._expire_if_overdue(session)
        if not session.phase.is_terminal:
            raise ReviewNotAllowedError("Reviews can only be submitted after the session has ended")

        review = await self._reviews.insert(ReviewRecord(
            id=uuid.uuid4(),
            session_id=session.id,
            guest_id=guest_id,
            practitioner_id=session.practitioner_id,
            rating=rating,
            comment=comment or None,
        ))

        ratings = await self._reviews.ratings_for_practitioner(session.practitioner_id)
        average = Decimal(sum(ratings)) / Decimal(len(ratings))
        try:
            await self._directory.set_rating(
                session.practitioner_id,
                average.quantize(_RATING_STEP, rounding=ROUND_HALF_UP),
                len(ratings),
            )
        except LifecycleError:
            # Aggregate is recomputed from every review on the next submission
            logger.exception("Rating update failed for practitioner %s", session.practitioner_id)

        logger.info(
            "Review stored: session=%s rating=%d practitioner_avg=%s (n=%d)",
            session.id,
            rating,
            average,
            len(ratings),
        )
        await self._emit(SystemEvent(
            event_type=EventType.REVIEW_SUBMITTED,
            session_id=session.id,
            actor_id=str(guest_id),
            actor_role=UserRole.GUEST.value,
            data={"rating": rating, "average": str(average), "review_count": len(ratings)},
            source_module="lifecycle.service",
        ))
        return ReviewResult(review=review, average_rating=average, review_count=len(ratings))

    async def session_reviews(self, session_id: uuid.UUID, actor_id: uuid.UUID) -> list[ReviewRecord]:
        session = await self._load(session_id)
        if not session.is_participant(actor_id):
            raise NotParticipantError("Not a session participant")
        return await self._reviews.list_for_session(session_id)

    # ── Profiles & presence ──────────────────────────────────────────

    async def init_role(self, user_id: uuid.UUID, role: UserRole, display_name: str | None = None) -> ProfileRecord:
        """Create the caller's profile. The only place profiles are created."""
        if await self._directory.get_profile(user_id) is not None:
            raise ProfileExistsError("Profile already exists")

        profile = await self._directory.create_profile(ProfileRecord(
            id=user_id,
            role=role,
            display_name=display_name or "New User",
        ))
        await self._emit(SystemEvent(
            event_type=EventType.PROFILE_CREATED,
            actor_id=str(user_id),
            actor_role=role.value,
            source_module="lifecycle.service",
        ))
        return profile

    async def update_profile(self, actor_id: uuid.UUID, changes: dict[str, Any]) -> ProfileRecord:
        """Owner edits their own public profile fields. Role never changes."""
        profile = await self._directory.get_profile(actor_id)
        if profile is None:
            raise ProfileNotFoundError("Profile not found")

        updates = {key: value for key, value in changes.items() if key in PROFILE_FIELDS}
        if not updates:
            return profile

        updated = await self._directory.update_profile(actor_id, updates)
        logger.info("Profile updated: user=%s fields=%s", actor_id, sorted(updates))
        await self._emit(SystemEvent(
            event_type=EventType.PROFILE_UPDATED,
            actor_id=str(actor_id),
            actor_role=updated.role.value,
            data={"fields": sorted(updates)},
            source_module="lifecycle.service",
        ))
        return updated

    async def _require_practitioner(self, actor_id: uuid.UUID) -> ProfileRecord:
        profile = await self._directory.get_profile(actor_id)
        if profile is None:
            raise ProfileNotFoundError("Profile not found")
        if profile.role is not UserRole.PRACTITIONER:
            raise NotPractitionerError("Only practitioners can do this")
        return profile

    async def set_presence(self, actor_id: uuid.UUID, online: bool) -> PractitionerRecord:
        """Practitioner toggles availability; in_service is never touched here."""
        await self._require_practitioner(actor_id)
        practitioner = await self._directory.set_online(actor_id, online)

        logger.info("Presence changed: practitioner=%s online=%s", actor_id, online)
        await self._emit(SystemEvent(
            event_type=EventType.PRESENCE_CHANGED,
            actor_id=str(actor_id),
            actor_role=UserRole.PRACTITIONER.value,
            data={"online": online},
            source_module="lifecycle.service",
        ))
        return practitioner

    async def practitioner_status(self, actor_id: uuid.UUID) -> PractitionerRecord:
        practitioner = await self._directory.get_practitioner(actor_id)
        if practitioner is None:
            raise PractitionerNotFoundError("Practitioner not found")
        return practitioner

    async def list_practitioners(self, online_only: bool = False) -> list[PractitionerView]:
        practitioners = await self._directory.list_practitioners(online_only=online_only)
        return [
            PractitionerView(practitioner=p, profile=await self._directory.get_profile(p.user_id))
            for p in practitioners
        ]

    # ── Video transport ──────────────────────────────────────────────

    async def issue_transport_token(self, session_id: uuid.UUID, actor_id: uuid.UUID) -> TransportToken:
        """Join credential for a participant of a live (or about to go live) session."""
        session = await self._load(session_id)
        role = session.role_of(actor_id)
        if role is None:
            raise NotParticipantError("Not a session participant")
        session = await self._expire_if_overdue(session)

        imminent = session.phase.is_pending and session.ready_guest and session.ready_practitioner
        if session.phase is not SessionPhase.LIVE and not imminent:
            raise WrongPhaseError("Video is only available once both parties are ready")
        if self._token_issuer is None:
            raise TransportNotConfiguredError("Video transport not configured")

        uid = session.uid_for(role)
        if uid is None or session.agora_channel is None:
            raise WrongPhaseError("Session has no video channel")

        token = self._token_issuer.issue(session.agora_channel, uid)
        await self._emit(SystemEvent(
            event_type=EventType.TRANSPORT_TOKEN_ISSUED,
            session_id=session.id,
            actor_id=str(actor_id),
            actor_role=role.value,
            data={"channel": session.agora_channel},
            source_module="lifecycle.service",
        ))
        return token

    # ── Events ───────────────────────────────────────────────────────

    async def _emit(self, event: SystemEvent) -> None:
        if self._events is not None:
            await self._events.emit(event)
