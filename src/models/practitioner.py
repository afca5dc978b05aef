"""Practitioner model: presence flags and aggregate rating."""

from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, TimestampMixin


class Practitioner(TimestampMixin, Base):
    """Presence and rating data for a practitioner profile.

    `in_service` is owned by the lifecycle service; practitioners only
    toggle `is_online`.
    """

    __tablename__ = "practitioners"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True
    )

    # Presence
    is_online: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    in_service: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Aggregate rating (mean of all reviews, one decimal)
    rating: Mapped[Decimal] = mapped_column(Numeric(2, 1), default=Decimal("0.0"), nullable=False)
    review_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<Practitioner id={self.user_id} online={self.is_online} in_service={self.in_service}>"
