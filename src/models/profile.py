"""Profile model: one row per authenticated user, created at role-init."""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, JSONType, TimestampMixin
from src.models.enums import UserRole


class Profile(TimestampMixin, Base):
    """Public profile of a guest or practitioner."""

    __tablename__ = "profiles"

    # Same id as the auth provider's user id
    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)

    role: Mapped[str] = mapped_column(String(20), default=UserRole.GUEST.value, nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), default="New User", nullable=False)
    country: Mapped[str | None] = mapped_column(String(100))
    bio: Mapped[str | None] = mapped_column(Text)
    avatar_url: Mapped[str | None] = mapped_column(String(500))
    specialties: Mapped[list[Any] | None] = mapped_column(JSONType, default=list)

    def __repr__(self) -> str:
        return f"<Profile id={self.id} role={self.role}>"
