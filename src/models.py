from pydantic import BaseModel, ConfigDict, Field, HttpUrl
from typing import List, Optional, Dict, Any
from enum import Enum
from datetime import datetime, timezone
import uuid


class FeedPhase(str, Enum):
    OFFLINE = "offline"
    CHECKING = "checking"
    LIVE = "live"
    ENDED = "ended"
    BREAK = "break"


class BandwidthMode(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EventType(str, Enum):
    FEED_CHECKING = "feed_checking"
    FEED_LIVE = "feed_live"
    FEED_OFFLINE = "feed_offline"
    FEED_BREAK_STARTED = "feed_break_started"
    FEED_BREAK_ENDED = "feed_break_ended"


class _CamelModel(BaseModel):
    # Wire documents use camelCase keys; accept either spelling
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class EventInfo(_CamelModel):
    date: Optional[str] = None
    call_time: Optional[str] = Field(default=None, alias="callTime")
    live_start: Optional[str] = Field(default=None, alias="liveStart")
    live_end: Optional[str] = Field(default=None, alias="liveEnd")
    role: Optional[str] = None
    brief: Optional[str] = None
    whatsapp_link: Optional[str] = Field(default=None, alias="whatsappLink")
    producer_name: Optional[str] = Field(default=None, alias="producerName")
    producer_phone: Optional[str] = Field(default=None, alias="producerPhone")


class StreamDescriptor(_CamelModel):
    name: str
    live_stream_id: Optional[str] = Field(default=None, alias="liveStreamId")
    playback_id: Optional[str] = Field(default=None, alias="playbackId")
    stream_key: Optional[str] = Field(default=None, alias="streamKey")
    rtmp_url: Optional[str] = Field(default=None, alias="rtmpUrl")
    break_video_1: Optional[str] = Field(default=None, alias="breakVideo1")
    break_video_2: Optional[str] = Field(default=None, alias="breakVideo2")
    fallback_playback_id: Optional[str] = Field(
        default=None, alias="fallbackPlaybackId")


class BreakVideo(_CamelModel):
    id: str
    name: str = ""
    playback_id: Optional[str] = Field(default=None, alias="playbackId")


class Visibility(_CamelModel):
    vu_meters: bool = Field(default=True, alias="vuMeters")
    stream_status: bool = Field(default=True, alias="streamStatus")
    stream_health: bool = Field(default=True, alias="streamHealth")
    duration: bool = True
    bitrate: bool = False
    viewers: bool = False


class DashboardConfig(_CamelModel):
    event_name: str = Field(default="Live Event", alias="eventName")
    stream_base_url: Optional[str] = Field(default=None, alias="streamBaseUrl")
    expiry_date: Optional[datetime] = Field(default=None, alias="expiryDate")
    producer_password: Optional[str] = Field(
        default=None, alias="producerPassword")
    event_info: EventInfo = Field(default_factory=EventInfo, alias="eventInfo")
    streams: List[StreamDescriptor] = Field(default_factory=list)
    break_video_library: List[BreakVideo] = Field(
        default_factory=list, alias="breakVideoLibrary")
    visibility: Visibility = Field(default_factory=Visibility)
    default_bandwidth: BandwidthMode = Field(
        default=BandwidthMode.MEDIUM, alias="defaultBandwidth")

    def public_dict(self) -> Dict[str, Any]:
        """Wire form without the producer secret."""
        return self.model_dump(mode="json", by_alias=True,
                               exclude={"producer_password"})


class BreakEntry(_CamelModel):
    on_break: bool = Field(default=False, alias="onBreak")
    active_slot: Optional[int] = Field(default=None, alias="activeSlot")

    @classmethod
    def from_raw(cls, value: Any) -> "BreakEntry":
        """Parse one per-feed entry, accepting the legacy boolean format."""
        if isinstance(value, bool):
            return cls(on_break=value, active_slot=1 if value else None)
        if isinstance(value, dict):
            on_break = bool(value.get("onBreak", value.get("on_break", False)))
            slot = value.get("activeSlot", value.get("active_slot"))
            if slot not in (1, 2):
                slot = None
            return cls(on_break=on_break, active_slot=slot if on_break else None)
        return cls()


class BreakModeUpdate(_CamelModel):
    stream_index: Optional[int] = Field(default=None, alias="streamIndex")
    is_on_break: Optional[bool] = Field(default=None, alias="isOnBreak")
    slot: Optional[int] = None
    updated_by: Optional[str] = Field(default=None, alias="updatedBy")


class BreakToggleRequest(BaseModel):
    on_break: bool
    slot: Optional[int] = Field(default=None, ge=1, le=2)


class BandwidthRequest(BaseModel):
    bandwidth: BandwidthMode


class Preferences(BaseModel):
    bandwidth: BandwidthMode = BandwidthMode.MEDIUM
    visibility: Dict[str, bool] = Field(default_factory=dict)


class FeedEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    feed_index: int
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)


class WebhookConfig(BaseModel):
    url: HttpUrl
    events: List[EventType] = Field(default_factory=lambda: list(EventType))
    # None subscribes to every feed
    feeds: Optional[List[int]] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=10, ge=1)
    retry_attempts: int = Field(default=3, ge=0)
