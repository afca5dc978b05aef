"""Session model: one guest/practitioner video session from request to end.

Tracks lifecycle phase, readiness flags, timing, and the video channel
binding. `version` is bumped on every write and used for compare-and-set.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, IdMixin, TimestampMixin
from src.models.enums import SessionPhase


class Session(IdMixin, TimestampMixin, Base):
    """A single timed video session between a guest and a practitioner."""

    __tablename__ = "sessions"
    __table_args__ = (
        # At most one non-terminal session per practitioner
        Index(
            "uq_sessions_practitioner_active",
            "practitioner_id",
            unique=True,
            postgresql_where=text("phase <> 'ended'"),
            sqlite_where=text("phase <> 'ended'"),
        ),
    )

    # Parties (immutable after creation)
    practitioner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("profiles.id"), nullable=False, index=True
    )
    guest_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("profiles.id"), nullable=False, index=True
    )

    # Lifecycle
    phase: Mapped[str] = mapped_column(
        String(20), default=SessionPhase.ROOM_TIMER.value, nullable=False, index=True
    )
    end_reason: Mapped[str | None] = mapped_column(String(20))
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Durations
    waiting_seconds: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    live_seconds: Mapped[int] = mapped_column(Integer, default=900, nullable=False)

    # Timing
    waiting_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    live_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Readiness flags (monotonic)
    acknowledged_practitioner: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ready_practitioner: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ready_guest: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Video transport binding
    agora_channel: Mapped[str | None] = mapped_column(String(64))
    agora_uid_guest: Mapped[str | None] = mapped_column(String(20))
    agora_uid_practitioner: Mapped[str | None] = mapped_column(String(20))

    def __repr__(self) -> str:
        return f"<Session id={self.id} phase={self.phase} version={self.version}>"
