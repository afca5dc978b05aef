"""SystemEvent schema: the event type that flows through the whole service.

Every lifecycle action emits a SystemEvent. Subscribers (the audit logger,
and anything registered at startup) consume these events asynchronously.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the system."""

    # Session lifecycle
    SESSION_STARTED = "session.started"
    SESSION_ACKNOWLEDGED = "session.acknowledged"
    SESSION_READY = "session.ready"
    SESSION_ACCEPTED = "session.accepted"
    SESSION_LIVE = "session.live"
    SESSION_REJECTED = "session.rejected"
    SESSION_ENDED = "session.ended"
    SESSION_TIMED_OUT = "session.timed_out"
    SESSION_TRANSITION_CONFLICT = "session.transition_conflict"

    # Practitioner presence
    PRESENCE_CHANGED = "practitioner.presence_changed"
    PRACTITIONER_RELEASED = "practitioner.released"
    PRACTITIONER_RELEASE_FAILED = "practitioner.release_failed"

    # Reviews & profiles
    REVIEW_SUBMITTED = "review.submitted"
    PROFILE_CREATED = "profile.created"
    PROFILE_UPDATED = "profile.updated"

    # Video transport
    TRANSPORT_TOKEN_ISSUED = "transport.token_issued"

    # System
    SYSTEM_SWEEP = "system.sweep"
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"


class SystemEvent(BaseModel):
    """Core event that flows through the service.

    Immutable once created. Consumed by the audit logger, which writes it
    to the audit_log table.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # Context (optional, not every event has a session)
    session_id: uuid.UUID | None = None
    actor_id: str | None = None
    actor_role: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    # Metadata
    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}
