"""Video join credentials for the live phase.

The transport itself (Agora RTC) is external; this module only issues the
short-lived token a participant needs to join a session's channel.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import UTC, datetime

from agora_token_builder import RtcTokenBuilder
from pydantic import BaseModel

from src.config import AgoraSettings
from src.lifecycle.errors import CollaboratorError, TransportNotConfiguredError

logger = logging.getLogger(__name__)

# Both parties publish audio and video
_ROLE_PUBLISHER = 1


class TransportToken(BaseModel):
    """Credential returned to a participant joining the video channel."""

    token: str
    app_id: str
    channel: str
    uid: str
    expires_at: datetime


class TransportTokenIssuer(ABC):
    """Issues bounded-lifetime join credentials for a channel."""

    @abstractmethod
    def issue(self, channel: str, uid: str) -> TransportToken:
        """Build a token for `uid` on `channel`."""


class AgoraTokenIssuer(TransportTokenIssuer):
    """RTC publisher tokens signed with the project's App Certificate."""

    def __init__(self, agora: AgoraSettings) -> None:
        self._app_id = agora.agora_app_id
        self._app_certificate = agora.agora_app_certificate
        self._ttl_seconds = agora.agora_token_ttl_seconds

    @property
    def configured(self) -> bool:
        return bool(self._app_id and self._app_certificate)

    def issue(self, channel: str, uid: str) -> TransportToken:
        if not self.configured:
            raise TransportNotConfiguredError("Agora credentials not configured")

        expires_ts = int(time.time()) + self._ttl_seconds
        try:
            token = RtcTokenBuilder.buildTokenWithUid(
                self._app_id,
                self._app_certificate,
                channel,
                int(uid),
                _ROLE_PUBLISHER,
                expires_ts,
            )
        except (TypeError, ValueError) as exc:
            logger.exception("Agora token build failed for channel %s", channel)
            raise CollaboratorError("Could not issue video token") from exc

        logger.info("Issued RTC token: channel=%s uid=%s ttl=%ds", channel, uid, self._ttl_seconds)
        return TransportToken(
            token=token,
            app_id=self._app_id,
            channel=channel,
            uid=uid,
            expires_at=datetime.fromtimestamp(expires_ts, tz=UTC),
        )
