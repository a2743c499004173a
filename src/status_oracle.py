"""
Status Oracle - answers "is this feed's encoder active right now?"

Fail-closed: every ambiguous path (missing id, placeholder id, transport
error, non-2xx, unparseable body, any status other than "active") reports
not-live. check_status() never raises.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "active"


@dataclass
class StatusResult:
    is_live: bool
    raw_status: Optional[str] = None
    error: Optional[str] = None
    playback_ids: List[str] = field(default_factory=list)
    source: Optional[str] = None

    @property
    def playback_id(self) -> Optional[str]:
        return self.playback_ids[0] if self.playback_ids else None


def _short(value: str) -> str:
    return f"{value[:8]}..." if len(value) > 8 else value


class StatusOracle:
    def __init__(
        self,
        api_base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        placeholder: Optional[str] = None,
    ):
        self.api_base_url = (api_base_url or settings.DASHBOARD_API_URL).rstrip("/")
        self.placeholder = placeholder or settings.LIVE_STREAM_ID_PLACEHOLDER
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.STATUS_REQUEST_TIMEOUT,
            follow_redirects=True,
        )

    async def aclose(self):
        if self._owns_client:
            await self.http_client.aclose()

    def is_configured(self, encoder_status_id: Optional[str]) -> bool:
        return bool(encoder_status_id) and encoder_status_id != self.placeholder

    async def check_status(self, encoder_status_id: Optional[str]) -> StatusResult:
        if not self.is_configured(encoder_status_id):
            logger.debug("No live stream id configured - reporting NOT LIVE")
            return StatusResult(is_live=False, error="No live stream id configured")

        try:
            response = await self.http_client.get(
                f"{self.api_base_url}/stream-status",
                params={"liveStreamId": encoder_status_id, "_": int(time.time() * 1000)},
                headers={"Cache-Control": "no-cache", "Pragma": "no-cache"},
            )
        except Exception as e:
            logger.warning(
                f"Status check for {_short(encoder_status_id)} failed: {e} - assuming NOT LIVE")
            return StatusResult(is_live=False, error=str(e) or type(e).__name__)

        if response.status_code < 200 or response.status_code >= 300:
            logger.info(
                f"Status API returned {response.status_code} for {_short(encoder_status_id)} - assuming NOT LIVE")
            return StatusResult(is_live=False, error=f"HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            logger.warning(f"Unparseable status response for {_short(encoder_status_id)}: {e}")
            return StatusResult(is_live=False, error="Unparseable status response")

        if not isinstance(data, dict):
            return StatusResult(is_live=False, error="Unexpected status payload")

        raw_status = data.get("status")
        if not isinstance(raw_status, str):
            raw_status = None
        playback_ids = data.get("playbackIds")
        if not isinstance(playback_ids, list):
            playback_ids = []
        playback_ids = [p for p in playback_ids if isinstance(p, str) and p]

        # Only "active" means the encoder is actually pushing
        is_live = raw_status == ACTIVE_STATUS
        logger.debug(
            f"Stream {_short(encoder_status_id)} status: {raw_status!r}, isLive: {is_live}")
        return StatusResult(
            is_live=is_live,
            raw_status=raw_status,
            playback_ids=playback_ids,
            source=data.get("source"),
        )
