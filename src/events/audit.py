"""Audit log subscriber: persists every SystemEvent to the audit_log table.

Registered as a global subscriber (receives ALL events). Failures are
logged but never propagate to the event bus.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.events.bus import EventHandler
from src.models.audit import AuditLog
from src.schemas.events import SystemEvent

logger = logging.getLogger(__name__)


def make_audit_subscriber(session_factory: async_sessionmaker[AsyncSession]) -> EventHandler:
    """Build the audit handler bound to a session factory."""

    async def audit_on_event(event: SystemEvent) -> None:
        try:
            async with session_factory() as db:
                db.add(AuditLog(
                    event_type=event.event_type.value,
                    session_id=event.session_id,
                    actor_id=event.actor_id,
                    actor_role=event.actor_role,
                    data=event.data,
                ))
                await db.commit()
        except Exception:
            logger.exception(
                "Failed to persist audit event: %s (session=%s)",
                event.event_type.value,
                event.session_id,
            )

    return audit_on_event
