"""Session snapshot and the static rules of the lifecycle.

`SessionState` is the immutable view of a session row the state machine
decides on. `ACTION_RULES` states who may perform each action and in which
phases; the per-action effects live in `src.lifecycle.machine`.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from src.models.enums import EndReason, SessionAction, SessionPhase, UserRole

PENDING_PHASES: frozenset[SessionPhase] = frozenset({SessionPhase.WAITING, SessionPhase.ROOM_TIMER})
ACTIVE_PHASES: frozenset[SessionPhase] = PENDING_PHASES | {SessionPhase.LIVE}

# Fields the state machine is allowed to write
MUTABLE_FIELDS: frozenset[str] = frozenset({
    "phase",
    "live_started_at",
    "ended_at",
    "end_reason",
    "acknowledged_practitioner",
    "ready_guest",
    "ready_practitioner",
})


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class SessionState:
    """Immutable snapshot of one session row."""

    id: uuid.UUID
    practitioner_id: uuid.UUID
    guest_id: uuid.UUID
    phase: SessionPhase
    version: int = 1
    waiting_seconds: int = 60
    live_seconds: int = 900
    created_at: datetime | None = None
    waiting_started_at: datetime | None = None
    live_started_at: datetime | None = None
    ended_at: datetime | None = None
    end_reason: EndReason | None = None
    acknowledged_practitioner: bool = False
    ready_guest: bool = False
    ready_practitioner: bool = False
    agora_channel: str | None = None
    agora_uid_guest: str | None = None
    agora_uid_practitioner: str | None = None

    def role_of(self, actor_id: uuid.UUID | None) -> UserRole | None:
        """Role the actor plays in this session, or None for outsiders."""
        if actor_id is None:
            return None
        if actor_id == self.practitioner_id:
            return UserRole.PRACTITIONER
        if actor_id == self.guest_id:
            return UserRole.GUEST
        return None

    def is_participant(self, actor_id: uuid.UUID | None) -> bool:
        return self.role_of(actor_id) is not None

    @property
    def timer_started_at(self) -> datetime | None:
        """Start of the waiting / room-timer countdown."""
        return as_utc(self.waiting_started_at or self.created_at)

    def waiting_deadline(self, timeout_seconds: int) -> datetime | None:
        started = self.timer_started_at
        if started is None:
            return None
        return started + timedelta(seconds=timeout_seconds)

    @property
    def live_deadline(self) -> datetime | None:
        started = as_utc(self.live_started_at)
        if started is None:
            return None
        return started + timedelta(seconds=self.live_seconds)

    def uid_for(self, role: UserRole) -> str | None:
        if role is UserRole.PRACTITIONER:
            return self.agora_uid_practitioner
        return self.agora_uid_guest

    def apply(self, patch: dict[str, Any]) -> SessionState:
        """Return a copy with the patch applied and the version bumped."""
        unknown = set(patch) - MUTABLE_FIELDS
        if unknown:
            msg = f"Patch touches immutable fields: {sorted(unknown)}"
            raise ValueError(msg)
        if not patch:
            return self
        return dataclasses.replace(self, version=self.version + 1, **patch)


@dataclass(frozen=True)
class ActionRule:
    """Who may perform an action, and from which phases."""

    practitioner_only: bool
    phases: frozenset[SessionPhase]
    system_only: bool = False
    # Phases in which the action is accepted as a no-op
    noop_phases: frozenset[SessionPhase] = frozenset()


ACTION_RULES: dict[SessionAction, ActionRule] = {
    SessionAction.ACKNOWLEDGE: ActionRule(
        practitioner_only=True,
        phases=PENDING_PHASES,
        noop_phases=frozenset({SessionPhase.LIVE}),
    ),
    SessionAction.READY: ActionRule(
        practitioner_only=False,
        phases=PENDING_PHASES,
        noop_phases=frozenset({SessionPhase.LIVE}),
    ),
    SessionAction.ACCEPT: ActionRule(
        practitioner_only=True,
        phases=PENDING_PHASES,
        noop_phases=frozenset({SessionPhase.LIVE}),
    ),
    SessionAction.REJECT: ActionRule(
        practitioner_only=True,
        phases=PENDING_PHASES,
        noop_phases=frozenset({SessionPhase.ENDED}),
    ),
    SessionAction.END: ActionRule(
        practitioner_only=False,
        phases=ACTIVE_PHASES,
        noop_phases=frozenset({SessionPhase.ENDED}),
    ),
    SessionAction.TIMEOUT: ActionRule(
        practitioner_only=False,
        phases=PENDING_PHASES,
        system_only=True,
        noop_phases=frozenset({SessionPhase.ENDED}),
    ),
    SessionAction.EXPIRE: ActionRule(
        practitioner_only=False,
        phases=frozenset({SessionPhase.LIVE}),
        system_only=True,
        noop_phases=frozenset({SessionPhase.ENDED}),
    ),
}

END_REASONS: dict[SessionAction, EndReason] = {
    SessionAction.REJECT: EndReason.REJECTED,
    SessionAction.END: EndReason.ENDED,
    SessionAction.TIMEOUT: EndReason.TIMEOUT,
    SessionAction.EXPIRE: EndReason.EXPIRED,
}
