"""Session routes: admission, actions, reads, sweep trigger, video token."""
# ruff: noqa: B008  Depends() in function defaults is standard FastAPI

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends

from src.api.deps import current_user_id, get_events, get_service
from src.api.schemas import (
    SessionActionRequest,
    SessionDetailResponse,
    SessionResponse,
    StartSessionRequest,
    StartSessionResponse,
    SweepResponse,
    TransportTokenResponse,
)
from src.events.bus import EventBus
from src.lifecycle.errors import CollaboratorError
from src.lifecycle.service import SessionLifecycleService
from src.lifecycle.sweep import run_sweep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.post("/start", response_model=StartSessionResponse)
async def start_session(
    body: StartSessionRequest,
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> StartSessionResponse:
    """Guest requests a session with an available practitioner."""
    session = await service.start_session(user_id, body.practitioner_id, body.live_seconds)
    return StartSessionResponse(session_id=session.id, session=SessionResponse.from_state(session))


@router.post("/action", response_model=SessionResponse)
async def session_action(
    body: SessionActionRequest,
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> SessionResponse:
    """Acknowledge / ready / accept / reject / end."""
    session = await service.apply_action(body.session_id, user_id, body.session_action)
    return SessionResponse.from_state(session)


@router.get("/practitioner", response_model=list[SessionResponse])
async def practitioner_sessions(
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> list[SessionResponse]:
    """The calling practitioner's pending and live sessions."""
    sessions = await service.sessions_for_practitioner(user_id)
    return [SessionResponse.from_state(s) for s in sessions]


@router.get("/history", response_model=list[SessionResponse])
async def session_history(
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> list[SessionResponse]:
    sessions = await service.session_history(user_id)
    return [SessionResponse.from_state(s) for s in sessions]


@router.post("/check-timeouts", response_model=SweepResponse)
async def check_timeouts(
    service: SessionLifecycleService = Depends(get_service),
    events: EventBus = Depends(get_events),
) -> SweepResponse:
    """Run the timeout sweep now. Idempotent; safe to call from a cron."""
    result = await run_sweep(service, events)
    if result is None:
        raise CollaboratorError("Failed to check session timeouts")
    return SweepResponse.from_result(result)


@router.get("/{session_id}", response_model=SessionDetailResponse)
async def get_session(
    session_id: uuid.UUID,
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> SessionDetailResponse:
    view = await service.get_session(session_id, user_id)
    return SessionDetailResponse.from_view(view)


@router.get("/{session_id}/token", response_model=TransportTokenResponse)
async def session_token(
    session_id: uuid.UUID,
    user_id: uuid.UUID = Depends(current_user_id),
    service: SessionLifecycleService = Depends(get_service),
) -> TransportTokenResponse:
    """Video join credential for the caller."""
    token = await service.issue_transport_token(session_id, user_id)
    return TransportTokenResponse(**token.model_dump())
