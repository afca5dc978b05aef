"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization.
"""

from __future__ import annotations

from enum import Enum


class UserRole(str, Enum):
    """Role chosen once at role-init; never changes afterwards."""

    GUEST = "guest"
    PRACTITIONER = "practitioner"


class SessionPhase(str, Enum):
    """Lifecycle position of a session.

    WAITING and ROOM_TIMER are both the pending phase; new sessions start in
    ROOM_TIMER (the room countdown starts at creation).
    """

    WAITING = "waiting"
    ROOM_TIMER = "room_timer"
    LIVE = "live"
    ENDED = "ended"

    @property
    def is_pending(self) -> bool:
        return self in (SessionPhase.WAITING, SessionPhase.ROOM_TIMER)

    @property
    def is_terminal(self) -> bool:
        return self is SessionPhase.ENDED


class SessionAction(str, Enum):
    """Transitions a session can be asked to perform."""

    ACKNOWLEDGE = "acknowledge"
    READY = "ready"
    ACCEPT = "accept"
    REJECT = "reject"
    END = "end"
    # System-only actions, driven by the sweep or a lazy read
    TIMEOUT = "timeout"
    EXPIRE = "expire"

    @property
    def is_system(self) -> bool:
        return self in (SessionAction.TIMEOUT, SessionAction.EXPIRE)


class EndReason(str, Enum):
    """Why a session reached ENDED."""

    ENDED = "ended"  # a participant hung up
    REJECTED = "rejected"  # practitioner declined the request
    TIMEOUT = "timeout"  # waiting deadline elapsed
    EXPIRED = "expired"  # live countdown elapsed


class RejectionReason(str, Enum):
    """Why the state machine refused a transition."""

    NOT_PARTICIPANT = "NotParticipant"
    NOT_PRACTITIONER = "NotPractitioner"
    WRONG_PHASE = "WrongPhase"
    ACKNOWLEDGMENT_REQUIRED = "AcknowledgmentRequired"
