"""
Per-feed state machine.

Lifecycle: OFFLINE -> CHECKING -> LIVE -> (ENDED -> OFFLINE), plus the BREAK
override. Each FeedStateMachine exclusively owns its FeedState: the playback
session and the poll slots. Every transition tears down what it replaces
before arming or creating anything new, and all of it happens synchronously
inside one callback; the only suspension points are the status checks and
the player's own network loads.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from manifest_verifier import LevelDetails, ManifestVerifier, Verdict, bitrate_mbps
from models import BandwidthMode, EventType, FeedEvent, FeedPhase
from playback import PlaybackSession, PlayerEvent, PlayerEventType
from poll_scheduler import PollHandle, PollPurpose, PollScheduler, PollSlot
from status_oracle import StatusOracle, StatusResult

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    return f"{seconds // 3600:02d}:{(seconds % 3600) // 60:02d}:{seconds % 60:02d}"


@dataclass(frozen=True)
class Feed:
    """One configured camera/stage. Immutable for the life of a feed set."""
    index: int
    name: str
    encoder_status_id: Optional[str] = None
    content_id: Optional[str] = None
    fallback_content_id: Optional[str] = None
    break_content_slot_1: Optional[str] = None
    break_content_slot_2: Optional[str] = None

    def break_content_id(self, slot: Optional[int]) -> Optional[str]:
        if slot == 2:
            return self.break_content_slot_2
        return self.break_content_slot_1


@dataclass
class FeedState:
    feed: Feed
    phase: FeedPhase = FeedPhase.OFFLINE
    confirmed_not_live: bool = False
    session: Optional[PlaybackSession] = None
    offline_poller: PollSlot = field(default_factory=lambda: PollSlot(PollPurpose.OFFLINE))
    liveness_poller: PollSlot = field(default_factory=lambda: PollSlot(PollPurpose.LIVENESS))
    duration_ticker: PollSlot = field(default_factory=lambda: PollSlot(PollPurpose.DURATION))
    break_slot: Optional[int] = None
    discovered_content_id: Optional[str] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    bitrate_mbps: float = 0.0
    playing_seconds: float = 0.0
    live_since: Optional[datetime] = None
    changed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def armed_pollers(self) -> List[PollPurpose]:
        return [slot.purpose for slot in (self.offline_poller, self.liveness_poller) if slot.armed]

    @property
    def status_label(self) -> str:
        if self.phase == FeedPhase.BREAK:
            return "ON BREAK"
        if self.phase == FeedPhase.LIVE:
            return "LIVE"
        if self.phase == FeedPhase.CHECKING:
            return "Checking..."
        return "Not Live"

    def to_dict(self) -> Dict:
        session = self.session
        return {
            "index": self.feed.index,
            "name": self.feed.name,
            "phase": self.phase.value,
            "status": self.status_label,
            "confirmed_not_live": self.confirmed_not_live,
            "armed_pollers": [p.value for p in self.armed_pollers()],
            "break_slot": self.break_slot,
            "session": None if session is None else {
                "manifest_url": session.manifest_url,
                "loop": session.loop,
                "liveness_confirmed": session.liveness_confirmed,
                "playing": session.playing,
            },
            "last_status": self.last_status,
            "last_error": self.last_error,
            "bitrate_mbps": self.bitrate_mbps,
            "duration": format_duration(self.playing_seconds),
            "live_since": self.live_since.isoformat() if self.live_since else None,
            "changed_at": self.changed_at.isoformat(),
        }


class FeedStateMachine:
    def __init__(
        self,
        feed: Feed,
        oracle: StatusOracle,
        scheduler: PollScheduler,
        player_factory: Callable,
        stream_base_url: str,
        verifier: Optional[ManifestVerifier] = None,
        event_sink: Optional[Callable[[FeedEvent], None]] = None,
        bandwidth: BandwidthMode = BandwidthMode.MEDIUM,
    ):
        self.state = FeedState(feed=feed)
        self.oracle = oracle
        self.scheduler = scheduler
        self.player_factory = player_factory
        self.stream_base_url = stream_base_url if stream_base_url.endswith("/") else stream_base_url + "/"
        self.verifier = verifier or ManifestVerifier()
        self.event_sink = event_sink
        self.bandwidth = bandwidth
        self.torn_down = False

    def __repr__(self):
        return f"<FeedStateMachine {self.index} {self.state.phase.value}>"

    @property
    def feed(self) -> Feed:
        return self.state.feed

    @property
    def index(self) -> int:
        return self.state.feed.index

    @property
    def phase(self) -> FeedPhase:
        return self.state.phase

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Begin the normal cycle: OFFLINE with an immediate first status probe."""
        logger.info(f"Feed {self.index} ({self.feed.name}): starting in OFFLINE")
        self._arm_offline(fire_immediately=True)

    def teardown(self):
        """Clear pollers, destroy the session, clear the duration ticker."""
        self.torn_down = True
        self.state.offline_poller.clear()
        self.state.liveness_poller.clear()
        self._destroy_session()
        self.state.duration_ticker.clear()
        logger.info(f"Feed {self.index}: torn down")

    def manifest_url(self, content_id: Optional[str] = None) -> Optional[str]:
        content_id = (content_id or self.feed.content_id
                      or self.state.discovered_content_id or self.feed.fallback_content_id)
        if not content_id:
            return None
        return f"{self.stream_base_url}{content_id}.m3u8"

    def set_bandwidth(self, mode: BandwidthMode):
        self.bandwidth = mode
        session = self.state.session
        if session and not session.loop:
            session.set_bandwidth(mode)
            self.state.bitrate_mbps = session.bitrate_mbps

    # ------------------------------------------------------------------
    # Poll results
    # ------------------------------------------------------------------

    async def _offline_tick(self, handle: PollHandle):
        result = await self.oracle.check_status(self.feed.encoder_status_id)
        self._guarded("offline-poll", self.on_offline_poll, result, handle)

    async def _liveness_tick(self, handle: PollHandle):
        result = await self.oracle.check_status(self.feed.encoder_status_id)
        self._guarded("liveness-poll", self.on_liveness_poll, result, handle)

    async def _duration_tick(self, handle: PollHandle):
        if not self.state.duration_ticker.owns(handle):
            return
        session = self.state.session
        if session is not None and session.playing:
            self.state.playing_seconds += handle.interval

    def on_offline_poll(self, result: StatusResult, handle: Optional[PollHandle] = None):
        state = self.state
        if self.torn_down or (handle is not None and not state.offline_poller.owns(handle)):
            return
        state.last_status = result.raw_status
        state.last_error = result.error
        if result.playback_id and not state.discovered_content_id:
            state.discovered_content_id = result.playback_id

        if not result.is_live:
            if state.confirmed_not_live:
                logger.info(f"Feed {self.index}: encoder now idle - clearing block flag")
                state.confirmed_not_live = False
            if state.phase == FeedPhase.CHECKING:
                if state.session is not None:
                    self._end("encoder idle while verifying manifest", block=False)
                else:
                    self._set_phase(FeedPhase.OFFLINE)
                    self._emit(EventType.FEED_OFFLINE, {"reason": "encoder idle"})
            return

        if state.phase != FeedPhase.OFFLINE and not (
                state.phase == FeedPhase.CHECKING and state.session is None):
            return

        if state.confirmed_not_live:
            logger.info(
                f"Feed {self.index}: status says active but feed is blocked - likely reconnect window")
            return

        self._attempt_live()

    def on_liveness_poll(self, result: StatusResult, handle: Optional[PollHandle] = None):
        state = self.state
        if self.torn_down or (handle is not None and not state.liveness_poller.owns(handle)):
            return
        state.last_status = result.raw_status
        state.last_error = result.error
        if state.phase != FeedPhase.LIVE:
            return
        if not result.is_live:
            logger.info(f"Feed {self.index}: encoder STOPPED - ending playback")
            self._end("encoder stopped", block=True)

    # ------------------------------------------------------------------
    # Player events
    # ------------------------------------------------------------------

    def _on_player_event(self, session: PlaybackSession, event: PlayerEvent):
        self._guarded(f"player {event.type.value}", self.on_player_event, session, event)

    def on_player_event(self, session: PlaybackSession, event: PlayerEvent):
        if self.torn_down or session is not self.state.session:
            return
        if session.loop:
            self._on_fallback_event(session, event)
            return

        if event.type == PlayerEventType.MANIFEST_PARSED:
            # Not playing yet: wait for the level to prove the content is live
            logger.debug(f"Feed {self.index}: manifest parsed with {len(event.levels)} levels")
        elif event.type == PlayerEventType.LEVEL_LOADED:
            self.on_level_loaded(session, event.details)
        elif event.type == PlayerEventType.ERROR:
            if session.try_recover(event):
                logger.info(
                    f"Feed {self.index}: recoverable {event.error_kind.value} error, reloading in place")
                return
            self.state.last_error = event.message
            self._end(f"unrecoverable player error: {event.message}", block=True)
        elif event.type == PlayerEventType.ENDED:
            self._end("playback ended", block=True)

    def on_level_loaded(self, session: PlaybackSession, details: LevelDetails):
        state = self.state
        if self.torn_down or session is not state.session or session.loop:
            return

        if self.verifier.verify(self.index, details) == Verdict.FINISHED:
            session.pause()
            self._destroy_session()
            self._end("manifest has an end marker", block=True)
            return

        state.confirmed_not_live = False
        session.liveness_confirmed = True
        session.play()
        state.bitrate_mbps = bitrate_mbps(details.bitrate)
        if state.phase != FeedPhase.LIVE:
            self._enter_live()

    def _on_fallback_event(self, session: PlaybackSession, event: PlayerEvent):
        if event.type in (PlayerEventType.MANIFEST_PARSED, PlayerEventType.LEVEL_LOADED):
            if not session.playing:
                logger.info(f"Feed {self.index}: fallback video loaded - playing on loop")
                session.play()
        elif event.type == PlayerEventType.ERROR:
            if not session.try_recover(event):
                self.state.last_error = event.message
                logger.error(f"Feed {self.index}: fallback video error: {event.message}")

    # ------------------------------------------------------------------
    # Break mode
    # ------------------------------------------------------------------

    def enter_break(self, slot: Optional[int], content_id: str):
        state = self.state
        if self.torn_down:
            return
        logger.info(f"Feed {self.index}: GOING TO BREAK (slot {slot}) - loading fallback video")
        state.offline_poller.clear()
        state.liveness_poller.clear()
        state.duration_ticker.clear()
        self._destroy_session()

        state.break_slot = slot
        state.bitrate_mbps = 0.0
        self._set_phase(FeedPhase.BREAK)
        session = PlaybackSession(
            self.index, self.manifest_url(content_id), self.player_factory,
            self._on_player_event, loop=True, bandwidth=self.bandwidth,
        )
        state.session = session
        session.start()
        self._emit(EventType.FEED_BREAK_STARTED, {"slot": slot, "content_id": content_id})

    def exit_break(self):
        state = self.state
        if self.torn_down or state.phase != FeedPhase.BREAK:
            return
        logger.info(f"Feed {self.index}: LEAVING BREAK - checking for live stream")
        self._destroy_session()
        state.break_slot = None
        state.confirmed_not_live = False
        self._set_phase(FeedPhase.CHECKING)
        self._emit(EventType.FEED_BREAK_ENDED, {})
        self._arm_offline(fire_immediately=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def force_offline(self, reason: str):
        """Abandon whatever the feed is doing and settle in OFFLINE."""
        self._end(reason, block=False)

    def _attempt_live(self):
        state = self.state
        url = self.manifest_url()
        if url is None:
            logger.warning(f"Feed {self.index}: status is active but no playback id is known")
            return
        logger.info(f"Feed {self.index}: status says LIVE - loading {url} for verification")
        self._destroy_session()
        self._set_phase(FeedPhase.CHECKING)
        session = PlaybackSession(
            self.index, url, self.player_factory, self._on_player_event,
            loop=False, bandwidth=self.bandwidth,
        )
        state.session = session
        self._emit(EventType.FEED_CHECKING, {"manifest_url": url})
        session.start()

    def _enter_live(self):
        state = self.state
        state.offline_poller.clear()
        state.liveness_poller.arm(self.scheduler.create(
            f"feed-{self.index}-liveness", PollPurpose.LIVENESS, self._liveness_tick))
        state.duration_ticker.arm(self.scheduler.create(
            f"feed-{self.index}-duration", PollPurpose.DURATION, self._duration_tick))
        state.playing_seconds = 0.0
        state.live_since = datetime.now(timezone.utc)
        self._set_phase(FeedPhase.LIVE)
        logger.info(f"Feed {self.index}: ✅ PLAYING LIVE STREAM ({state.bitrate_mbps} Mbps)")
        self._emit(EventType.FEED_LIVE, {
            "manifest_url": state.session.manifest_url if state.session else None,
            "bitrate_mbps": state.bitrate_mbps,
        })

    def _end(self, reason: str, block: bool):
        """ENDED: tear everything down, then settle in OFFLINE and re-arm the offline poll."""
        state = self.state
        self._set_phase(FeedPhase.ENDED)
        state.offline_poller.clear()
        state.liveness_poller.clear()
        state.duration_ticker.clear()
        self._destroy_session()
        if block:
            state.confirmed_not_live = True
        state.bitrate_mbps = 0.0
        state.live_since = None
        self._set_phase(FeedPhase.OFFLINE)
        logger.info(f"Feed {self.index}: not live ({reason})")
        self._emit(EventType.FEED_OFFLINE, {"reason": reason, "blocked": state.confirmed_not_live})
        if not self.torn_down:
            self._arm_offline()

    def _arm_offline(self, fire_immediately: bool = False):
        state = self.state
        state.liveness_poller.clear()
        state.offline_poller.arm(self.scheduler.create(
            f"feed-{self.index}-offline", PollPurpose.OFFLINE, self._offline_tick,
            fire_immediately=fire_immediately))

    def _destroy_session(self):
        session, self.state.session = self.state.session, None
        if session is not None:
            session.destroy()

    def _set_phase(self, phase: FeedPhase):
        if self.state.phase != phase:
            logger.debug(f"Feed {self.index}: {self.state.phase.value} -> {phase.value}")
            self.state.phase = phase
            self.state.changed_at = datetime.now(timezone.utc)

    def _emit(self, event_type: EventType, data: dict):
        if self.event_sink is None:
            return
        try:
            self.event_sink(FeedEvent(event_type=event_type, feed_index=self.index,
                                      data={"name": self.feed.name, **data}))
        except Exception as e:
            logger.error(f"Feed {self.index}: error emitting {event_type.value}: {e}")

    def _guarded(self, label: str, handler: Callable, *args):
        """Contain a failure inside this feed: log it and fall back to OFFLINE."""
        try:
            handler(*args)
        except Exception as e:
            logger.error(f"Feed {self.index}: error handling {label}: {e}")
            self.state.last_error = str(e)
            if not self.torn_down and self.state.phase != FeedPhase.BREAK:
                self._end("internal error", block=False)
