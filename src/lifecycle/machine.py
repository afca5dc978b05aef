"""Session state machine: pure transition decisions.

`decide` never touches a store: given a snapshot, an actor, an action and
the current time it returns either a `Transition` (the fields to write and
the side effects the caller owes) or a `Rejection`. A rejected action
changes nothing.

Phases only move forward: pending (waiting / room_timer) → live → ended,
or pending → ended. Readiness flags are only ever set, never cleared.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.lifecycle.states import ACTION_RULES, END_REASONS, SessionState
from src.models.enums import RejectionReason, SessionAction, SessionPhase, UserRole


@dataclass(frozen=True)
class Transition:
    """An accepted action: what to write and which side effects follow."""

    action: SessionAction
    from_phase: SessionPhase
    to_phase: SessionPhase
    patch: dict[str, Any] = field(default_factory=dict)
    releases_practitioner: bool = False

    @property
    def is_noop(self) -> bool:
        return not self.patch

    @property
    def went_live(self) -> bool:
        return self.from_phase is not SessionPhase.LIVE and self.to_phase is SessionPhase.LIVE

    @property
    def ended(self) -> bool:
        return self.from_phase is not SessionPhase.ENDED and self.to_phase is SessionPhase.ENDED


@dataclass(frozen=True)
class Rejection:
    """A refused action and the reason the caller gets back."""

    action: SessionAction
    reason: RejectionReason
    message: str


Decision = Transition | Rejection


def decide(
    session: SessionState,
    actor_id: uuid.UUID | None,
    action: SessionAction,
    now: datetime,
    *,
    waiting_timeout_seconds: int,
) -> Decision:
    """Decide whether `actor_id` may perform `action` on `session` at `now`.

    Args:
        session: Current persisted snapshot.
        actor_id: Acting user, or None for the system (sweep / lazy expiry).
        action: Requested transition.
        now: Decision time; becomes live_started_at / ended_at when written.
        waiting_timeout_seconds: Hard deadline of the pending phase.
    """
    rule = ACTION_RULES[action]

    # ── Authorization ────────────────────────────────────────────────
    role = session.role_of(actor_id)
    if rule.system_only:
        if actor_id is not None:
            return Rejection(action, RejectionReason.NOT_PARTICIPANT, f"'{action.value}' is a system action")
    elif role is None:
        return Rejection(action, RejectionReason.NOT_PARTICIPANT, "Not a session participant")
    elif rule.practitioner_only and role is not UserRole.PRACTITIONER:
        return Rejection(
            action,
            RejectionReason.NOT_PRACTITIONER,
            f"Only the practitioner can {action.value} the session",
        )

    # ── Phase ────────────────────────────────────────────────────────
    if session.phase in rule.noop_phases:
        return _noop(session, action)
    if session.phase not in rule.phases:
        return Rejection(
            action,
            RejectionReason.WRONG_PHASE,
            f"Cannot {action.value} a session in phase '{session.phase.value}'",
        )

    # ── Effects ──────────────────────────────────────────────────────
    if action is SessionAction.ACKNOWLEDGE:
        if session.acknowledged_practitioner:
            return _noop(session, action)
        return Transition(action, session.phase, session.phase, {"acknowledged_practitioner": True})

    if action is SessionAction.READY:
        return _mark_ready(session, role, now)  # type: ignore[arg-type]

    if action is SessionAction.ACCEPT:
        return _accept(session, now)

    if action is SessionAction.TIMEOUT:
        deadline = session.waiting_deadline(waiting_timeout_seconds)
        if deadline is None or now <= deadline:
            return Rejection(action, RejectionReason.WRONG_PHASE, "Waiting deadline has not elapsed")

    if action is SessionAction.EXPIRE:
        deadline = session.live_deadline
        if deadline is None or now <= deadline:
            return Rejection(action, RejectionReason.WRONG_PHASE, "Live countdown has not elapsed")

    return _end(session, action, now)


def _noop(session: SessionState, action: SessionAction) -> Transition:
    return Transition(action, session.phase, session.phase)


def _go_live_if_both_ready(session: SessionState, patch: dict[str, Any], now: datetime) -> SessionPhase:
    ready_guest = patch.get("ready_guest", session.ready_guest)
    ready_practitioner = patch.get("ready_practitioner", session.ready_practitioner)
    if ready_guest and ready_practitioner:
        patch["phase"] = SessionPhase.LIVE
        patch["live_started_at"] = now
        return SessionPhase.LIVE
    return session.phase


def _mark_ready(session: SessionState, role: UserRole, now: datetime) -> Decision:
    if role is UserRole.PRACTITIONER and not session.acknowledged_practitioner:
        return Rejection(
            SessionAction.READY,
            RejectionReason.ACKNOWLEDGMENT_REQUIRED,
            "Please acknowledge the session request first",
        )

    patch: dict[str, Any] = {}
    if role is UserRole.GUEST and not session.ready_guest:
        patch["ready_guest"] = True
    if role is UserRole.PRACTITIONER and not session.ready_practitioner:
        patch["ready_practitioner"] = True

    to_phase = _go_live_if_both_ready(session, patch, now)
    return Transition(SessionAction.READY, session.phase, to_phase, patch)


def _accept(session: SessionState, now: datetime) -> Transition:
    patch: dict[str, Any] = {}
    if not session.acknowledged_practitioner:
        patch["acknowledged_practitioner"] = True
    if not session.ready_practitioner:
        patch["ready_practitioner"] = True

    to_phase = _go_live_if_both_ready(session, patch, now)
    return Transition(SessionAction.ACCEPT, session.phase, to_phase, patch)


def _end(session: SessionState, action: SessionAction, now: datetime) -> Transition:
    patch: dict[str, Any] = {
        "phase": SessionPhase.ENDED,
        "ended_at": now,
        "end_reason": END_REASONS[action],
    }
    return Transition(action, session.phase, SessionPhase.ENDED, patch, releases_practitioner=True)
