"""
Dashboard coordinator.

Owns the indexed collection of per-feed state machines together with the
collaborators they share: poll scheduler, status oracle, player factory,
manifest verifier and the break-mode coordinator. Calls into a feed are
wrapped so a failure in one feed is logged and resolved into that feed's own
OFFLINE state; nothing crosses a feed boundary.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from break_mode import BreakModeCoordinator
from config import settings
from config_provider import ConfigProvider, ConfigurationError
from events import EventManager
from feed_state import Feed, FeedStateMachine
from manifest_verifier import ManifestVerifier
from models import BandwidthMode, BreakEntry, DashboardConfig, FeedPhase, Preferences
from playback import HlsPlayerFactory
from poll_scheduler import PollScheduler
from preferences import PreferencesStore
from status_oracle import StatusOracle

logger = logging.getLogger(__name__)


def build_feeds(config: DashboardConfig) -> List[Feed]:
    library = {video.id: video.playback_id for video in config.break_video_library if video.playback_id}
    feeds = []
    for index, stream in enumerate(config.streams):
        feeds.append(Feed(
            index=index,
            name=stream.name,
            encoder_status_id=stream.live_stream_id,
            content_id=stream.playback_id,
            fallback_content_id=stream.fallback_playback_id,
            break_content_slot_1=library.get(stream.break_video_1) if stream.break_video_1 else None,
            break_content_slot_2=library.get(stream.break_video_2) if stream.break_video_2 else None,
        ))
    return feeds


def resolve_break_content(feed: Feed, slot: Optional[int]) -> str:
    return feed.break_content_id(slot) or feed.fallback_content_id or settings.FALLBACK_PLAYBACK_ID


class Dashboard:
    def __init__(
        self,
        config_provider: Optional[ConfigProvider] = None,
        oracle: Optional[StatusOracle] = None,
        player_factory=None,
        scheduler: Optional[PollScheduler] = None,
        break_coordinator: Optional[BreakModeCoordinator] = None,
        event_manager: Optional[EventManager] = None,
        preferences_store: Optional[PreferencesStore] = None,
        verifier: Optional[ManifestVerifier] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        # Default collaborators share one client for the config, status and break-state calls
        self.config_provider = config_provider or ConfigProvider(http_client=http_client)
        self.oracle = oracle or StatusOracle(http_client=http_client)
        self.player_factory = player_factory or HlsPlayerFactory()
        self.scheduler = scheduler or PollScheduler()
        self.verifier = verifier or ManifestVerifier()
        self.break_coordinator = break_coordinator or BreakModeCoordinator(
            self.scheduler, self.apply_break, http_client=http_client)
        self.event_manager = event_manager
        self.preferences_store = preferences_store or PreferencesStore()
        self.config: Optional[DashboardConfig] = None
        self.machines: List[FeedStateMachine] = []
        self.bandwidth = BandwidthMode.MEDIUM
        self.preferences = Preferences()
        self.error: Optional[str] = None
        self.loaded_at: Optional[datetime] = None

    async def start(self) -> bool:
        """Load configuration and preferences, then bring up the feed set.

        Returns False when no configuration could be obtained at all.
        """
        try:
            config = await self.config_provider.load()
        except ConfigurationError as e:
            self.error = str(e)
            logger.error(f"❌ Dashboard cannot start: {e}")
            return False

        self.bandwidth = config.default_bandwidth
        prefs = self.preferences_store.load()
        if prefs is not None:
            self.preferences = prefs
            self.bandwidth = prefs.bandwidth
        self.load(config)
        return True

    def load(self, config: DashboardConfig):
        if self.machines:
            self.teardown()
        self.config = config
        self.error = None
        self.loaded_at = datetime.now(timezone.utc)
        if self.is_expired():
            logger.warning(f"Dashboard for '{config.event_name}' has expired - feeds not started")
            return

        sink = self.event_manager.emit_nowait if self.event_manager else None
        for feed in build_feeds(config):
            machine = FeedStateMachine(
                feed,
                oracle=self.oracle,
                scheduler=self.scheduler,
                player_factory=self.player_factory,
                stream_base_url=config.stream_base_url or settings.STREAM_BASE_URL,
                verifier=self.verifier,
                event_sink=sink,
                bandwidth=self.bandwidth,
            )
            self.machines.append(machine)
            self._contain(machine, "start", machine.start)

        self.break_coordinator.start()
        logger.info(f"Dashboard ready: {len(self.machines)} feeds for '{config.event_name}'")

    def rebuild(self, config: DashboardConfig):
        """Full feed-set rebuild: tear everything down, then recreate."""
        logger.info("Rebuilding feed set")
        self.teardown()
        self.break_coordinator.reset()
        self.load(config)

    async def reload(self) -> bool:
        try:
            config = await self.config_provider.load()
        except ConfigurationError as e:
            logger.error(f"Reload failed, keeping current feeds: {e}")
            return False
        self.rebuild(config)
        return True

    def teardown(self):
        self.break_coordinator.stop()
        for machine in self.machines:
            try:
                machine.teardown()
            except Exception as e:
                logger.error(f"Feed {machine.index}: error during teardown: {e}")
        self.machines = []

    async def aclose(self):
        self.teardown()
        self.scheduler.cancel_all()
        await self.break_coordinator.aclose()
        await self.oracle.aclose()
        await self.config_provider.aclose()
        if hasattr(self.player_factory, "aclose"):
            await self.player_factory.aclose()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.config is None or self.config.expiry_date is None:
            return False
        expiry = self.config.expiry_date
        if expiry.tzinfo is None:
            # Naive expiry dates are local wall-clock times
            expiry = expiry.astimezone()
        return (now or datetime.now(timezone.utc)) > expiry

    def feed(self, index: int) -> Optional[FeedStateMachine]:
        if 0 <= index < len(self.machines):
            return self.machines[index]
        return None

    def apply_break(self, index: int, entry: BreakEntry):
        machine = self.feed(index)
        if machine is None:
            logger.debug(f"Ignoring break state for unknown feed {index}")
            return
        if entry.on_break:
            content_id = resolve_break_content(machine.feed, entry.active_slot)
            self._contain(machine, "enter break", machine.enter_break, entry.active_slot, content_id)
        else:
            self._contain(machine, "exit break", machine.exit_break)

    async def set_break(self, index: int, on_break: bool, slot: Optional[int] = None,
                        updated_by: str = "producer") -> Optional[Dict[str, Any]]:
        if self.feed(index) is None:
            raise IndexError(f"No feed {index}")
        return await self.break_coordinator.set_break(index, on_break, slot, updated_by)

    def set_bandwidth(self, mode: BandwidthMode):
        self.bandwidth = mode
        for machine in self.machines:
            self._contain(machine, "set bandwidth", machine.set_bandwidth, mode)
        logger.info(f"Bandwidth mode set to {mode.value}")

    def update_preferences(self, prefs: Preferences):
        self.preferences = prefs
        self.preferences_store.save(prefs)
        if prefs.bandwidth != self.bandwidth:
            self.set_bandwidth(prefs.bandwidth)

    def snapshot(self) -> Dict[str, Any]:
        feeds = [machine.state.to_dict() for machine in self.machines]
        counts = {phase.value: 0 for phase in FeedPhase}
        for feed in feeds:
            counts[feed["phase"]] += 1
        return {
            "event_name": self.config.event_name if self.config else None,
            "expired": self.is_expired(),
            "error": self.error,
            "bandwidth": self.bandwidth.value,
            "loaded_at": self.loaded_at.isoformat() if self.loaded_at else None,
            "feed_count": len(feeds),
            "phases": counts,
            "break_state": {
                str(index): entry.model_dump(by_alias=True)
                for index, entry in sorted(self.break_coordinator.cache.items())
            },
            "feeds": feeds,
        }

    def _contain(self, machine: FeedStateMachine, label: str, fn, *args):
        try:
            fn(*args)
        except Exception as e:
            logger.error(f"Feed {machine.index}: error during {label}: {e}")
            machine.state.last_error = str(e)
            try:
                machine.force_offline("internal error")
            except Exception as inner:
                logger.error(f"Feed {machine.index}: could not force OFFLINE: {inner}")
