"""
Server side of the status and break-state endpoints.

Stream status prefers the encoder state pushed by provider webhooks (instant
for disconnects) and falls back to the provider's live-stream API, which keeps
reporting "active" through its reconnect window.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import httpx

from config import settings
from models import BreakEntry
from store import BREAK_MODE_KEY, ENCODER_STATES_KEY, BlobStore

logger = logging.getLogger(__name__)

# Webhook states trusted without asking the provider
INSTANT_NOT_LIVE_STATES = ("disconnected", "idle")

ENCODER_EVENT_TYPES = {
    "video.live_stream.active": "active",
    "video.live_stream.idle": "idle",
    "video.live_stream.connected": "connected",
    "video.live_stream.disconnected": "disconnected",
    "video.live_stream.recording": "recording",
}


class ProviderError(Exception):
    """Non-2xx answer from the provider API"""

    def __init__(self, status_code: int, details: str):
        super().__init__(f"Provider returned {status_code}")
        self.status_code = status_code
        self.details = details


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_break_state(feed_count: Optional[int] = None) -> Dict[str, Any]:
    feed_count = feed_count or settings.BREAK_FEED_COUNT
    state: Dict[str, Any] = {
        str(i): {"onBreak": False, "activeSlot": None} for i in range(feed_count)
    }
    state["lastUpdated"] = _now_iso()
    return state


class StreamStatusService:
    def __init__(self, store: BlobStore, http_client: Optional[httpx.AsyncClient] = None):
        self.store = store
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.STATUS_REQUEST_TIMEOUT)

    async def aclose(self):
        if self._owns_client:
            await self.http_client.aclose()

    async def get_status(self, live_stream_id: str) -> Dict[str, Any]:
        encoder_states = await self.store.get_json(ENCODER_STATES_KEY) or {}
        webhook_state = encoder_states.get(live_stream_id)
        if webhook_state:
            status = webhook_state.get("status")
            if status in INSTANT_NOT_LIVE_STATES:
                logger.info(f"Stream {live_stream_id}: {status} (webhook)")
                return {
                    "liveStreamId": live_stream_id,
                    "status": status,
                    "isLive": False,
                    "source": "webhook",
                    "timestamp": webhook_state.get("timestamp"),
                    "playbackIds": [],
                }
            logger.debug(f"Stream {live_stream_id}: webhook says {status}, verifying with API")

        if not settings.MUX_TOKEN_ID or not settings.MUX_TOKEN_SECRET:
            raise ProviderError(500, "Provider API credentials not configured")

        response = await self.http_client.get(
            f"{settings.MUX_API_URL.rstrip('/')}/live-streams/{live_stream_id}",
            auth=httpx.BasicAuth(settings.MUX_TOKEN_ID, settings.MUX_TOKEN_SECRET),
            headers={"Content-Type": "application/json"},
        )
        if response.status_code < 200 or response.status_code >= 300:
            logger.error(f"Provider API error for {live_stream_id}: {response.status_code}")
            raise ProviderError(response.status_code, response.text)

        stream = response.json().get("data") or {}
        status = stream.get("status")
        return {
            "liveStreamId": stream.get("id", live_stream_id),
            "status": status,
            "isLive": status == "active",
            "source": "api",
            "playbackIds": [p.get("id") for p in stream.get("playback_ids") or [] if p.get("id")],
            "reconnectWindow": stream.get("reconnect_window"),
            "createdAt": stream.get("created_at"),
        }

    async def record_webhook(self, payload: Dict[str, Any]) -> Tuple[bool, str]:
        """Store the encoder state carried by a live-stream webhook.

        Returns (handled, message); unknown event types are acknowledged and ignored.
        """
        event_type = payload.get("type")
        status = ENCODER_EVENT_TYPES.get(event_type)
        if status is None:
            return False, f"Event ignored ({event_type})"

        data = payload.get("data") or {}
        live_stream_id = data.get("id")
        if not live_stream_id:
            return False, "Event ignored (no live stream id)"

        encoder_states = await self.store.get_json(ENCODER_STATES_KEY) or {}
        encoder_states[live_stream_id] = {
            "status": status,
            "timestamp": _now_iso(),
            "eventType": event_type,
        }
        await self.store.set_json(ENCODER_STATES_KEY, encoder_states)
        logger.info(f"Encoder state for {live_stream_id} is now {status}")
        return True, f"Recorded {status} for {live_stream_id}"


class BreakStateService:
    def __init__(self, store: BlobStore, feed_count: Optional[int] = None):
        self.store = store
        self.feed_count = feed_count or settings.BREAK_FEED_COUNT

    @property
    def feed_keys(self):
        return [str(i) for i in range(self.feed_count)]

    async def get_state(self) -> Dict[str, Any]:
        state = await self.store.get_json(BREAK_MODE_KEY)
        if not state:
            state = default_break_state(self.feed_count)
            await self.store.set_json(BREAK_MODE_KEY, state)
            return state

        migrated = False
        for key in self.feed_keys:
            if isinstance(state.get(key), bool):
                state[key] = BreakEntry.from_raw(state[key]).model_dump(by_alias=True)
                migrated = True
        if migrated:
            state.pop("fallbackPlaybackId", None)
            state["lastUpdated"] = _now_iso()
            await self.store.set_json(BREAK_MODE_KEY, state)
            logger.info("Migrated break state to the slot format")
        return state

    async def set_break(self, stream_index: int, on_break: bool, slot: Optional[int],
                        updated_by: Optional[str] = None) -> Dict[str, Any]:
        """Write one feed's entry. Callers validate index and slot first."""
        state = await self.store.get_json(BREAK_MODE_KEY)
        if not state:
            state = default_break_state(self.feed_count)

        state[str(stream_index)] = {
            "onBreak": bool(on_break),
            "activeSlot": slot if on_break else None,
        }
        state["lastUpdated"] = _now_iso()
        state["updatedBy"] = updated_by or "producer"
        await self.store.set_json(BREAK_MODE_KEY, state)
        slot_msg = f" (Slot {slot})" if on_break else ""
        logger.info(f"Stream {stream_index} set to {'BREAK' + slot_msg if on_break else 'LIVE'}")
        return state
