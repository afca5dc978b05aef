"""SQLAlchemy ORM models for the healing sessions API.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from src.models.audit import AuditLog
from src.models.base import Base
from src.models.enums import EndReason, RejectionReason, SessionAction, SessionPhase, UserRole
from src.models.practitioner import Practitioner
from src.models.profile import Profile
from src.models.review import Review
from src.models.session import Session

__all__ = [
    # Base
    "Base",
    # Models
    "Profile",
    "Practitioner",
    "Session",
    "Review",
    "AuditLog",
    # Enums
    "UserRole",
    "SessionPhase",
    "SessionAction",
    "EndReason",
    "RejectionReason",
]
