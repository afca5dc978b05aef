"""Active timeout sweep.

Ends pending sessions past the waiting deadline and live sessions past
their countdown even when no participant is polling. Runs on an
APScheduler interval job inside the API process; the same pass is exposed
on demand via `POST /api/sessions/check-timeouts`.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.config import LifecycleSettings
from src.events.bus import EventBus
from src.lifecycle.errors import LifecycleError
from src.lifecycle.service import SessionLifecycleService, SweepResult
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "session-timeout-sweep"


async def run_sweep(service: SessionLifecycleService, events: EventBus | None = None) -> SweepResult | None:
    """One sweep pass. Never raises; failures are retried on the next tick."""
    try:
        result = await service.sweep_timeouts()
    except LifecycleError:
        logger.exception("Timeout sweep failed")
        return None

    if result.ended or result.released:
        logger.info(
            "Timeout sweep: checked=%d ended=%d released=%d",
            result.checked,
            len(result.ended),
            len(result.released),
        )
    else:
        logger.debug("Timeout sweep: checked=%d, nothing overdue", result.checked)

    if events is not None:
        await events.emit(SystemEvent(
            event_type=EventType.SYSTEM_SWEEP,
            data={
                "checked": result.checked,
                "ended": [str(session_id) for session_id in result.ended_ids],
                "released": [str(user_id) for user_id in result.released],
            },
            source_module="lifecycle.sweep",
        ))
    return result


def build_scheduler(
    service: SessionLifecycleService,
    lifecycle: LifecycleSettings,
    events: EventBus | None = None,
) -> AsyncIOScheduler:
    """Scheduler with the sweep job registered; caller starts and shuts it down."""
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        run_sweep,
        "interval",
        seconds=lifecycle.sweep_interval_seconds,
        args=[service, events],
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info("Timeout sweep scheduled every %ds", lifecycle.sweep_interval_seconds)
    return scheduler
