"""FastAPI dependencies: service container and caller identity.

The container is built once in the application lifespan and stored on
`app.state.container`; tests swap individual dependencies through
`app.dependency_overrides`.
"""
# ruff: noqa: B008  Depends() in function defaults is standard FastAPI

from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.auth.provider import AuthProvider, SupabaseAuthProvider, parse_bearer
from src.config import Settings
from src.events.bus import EventBus
from src.lifecycle.locks import KeyedLock
from src.lifecycle.service import SessionLifecycleService
from src.lifecycle.sql_store import SqlParticipantDirectory, SqlReviewStore, SqlSessionStore
from src.transport.tokens import AgoraTokenIssuer


@dataclass
class Container:
    """Long-lived collaborators shared by every request."""

    service: SessionLifecycleService
    events: EventBus
    auth: AuthProvider


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    admission_lock: KeyedLock,
    events: EventBus,
) -> Container:
    """Wire the SQL stores, lock, token issuer and auth provider together."""
    service = SessionLifecycleService(
        sessions=SqlSessionStore(session_factory),
        directory=SqlParticipantDirectory(session_factory),
        reviews=SqlReviewStore(session_factory),
        admission_lock=admission_lock,
        settings=settings.lifecycle,
        events=events,
        token_issuer=AgoraTokenIssuer(settings.agora),
    )
    return Container(service=service, events=events, auth=SupabaseAuthProvider(settings.auth))


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_service(container: Container = Depends(get_container)) -> SessionLifecycleService:
    return container.service


def get_events(container: Container = Depends(get_container)) -> EventBus:
    return container.events


def get_auth_provider(container: Container = Depends(get_container)) -> AuthProvider:
    return container.auth


async def current_user_id(
    authorization: str | None = Header(default=None),
    auth: AuthProvider = Depends(get_auth_provider),
) -> uuid.UUID:
    """Resolve the caller from `Authorization: Bearer <token>`."""
    return await auth.resolve(parse_bearer(authorization))
