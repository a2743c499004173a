"""
Shared fakes for driving the dashboard engine deterministically.

FakeScheduler hands out poll handles that never start a real timer; tests fire
a tick by awaiting ``fire(slot)``. FakePlayerFactory records every player so
tests can push playback events and inspect teardown.
"""
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from manifest_verifier import LevelDetails, LevelInfo
from models import BandwidthMode, DashboardConfig, FeedPhase
from playback import ErrorKind, PlayerEvent, PlayerEventType
from poll_scheduler import PollHandle, PollScheduler, PollSlot
from status_oracle import StatusResult


class FakeHandle(PollHandle):
    def start(self):
        if self._started or self._cancelled:
            return
        self._started = True


class FakeScheduler(PollScheduler):
    def __init__(self, intervals=None):
        super().__init__(intervals)
        self.created = []

    def create(self, name, purpose, callback, fire_immediately=False, start_delay=None):
        handle = FakeHandle(
            name=name,
            purpose=purpose,
            interval=self.interval_for(purpose),
            callback=callback,
            fire_immediately=fire_immediately,
            start_delay=start_delay,
            on_cancel=self._forget,
        )
        self._handles.add(handle)
        self.created.append(handle)
        return handle


async def fire(slot: PollSlot):
    """Run one tick of whatever handle the slot holds."""
    handle = slot.handle
    assert handle is not None, f"no {slot.purpose.value} armed"
    await handle.callback(handle)


class FakeOracle:
    def __init__(self, status="idle", playback_ids=None):
        self.status = status
        self.playback_ids = playback_ids or []
        self.calls = []

    async def check_status(self, encoder_status_id):
        self.calls.append(encoder_status_id)
        return StatusResult(
            is_live=self.status == "active",
            raw_status=self.status,
            playback_ids=list(self.playback_ids),
        )

    async def aclose(self):
        pass


class FakePlayer:
    def __init__(self, url, on_event, loop=False, bandwidth=BandwidthMode.MEDIUM):
        self.url = url
        self.on_event = on_event
        self.loop = loop
        self.bandwidth = bandwidth
        self.muted = True
        self.paused = True
        self.started = False
        self.destroyed = False
        self.start_loads = []
        self.media_recoveries = 0
        self.bitrate_mbps = 0.0

    def start(self):
        self.started = True

    def start_load(self, delay=0):
        self.start_loads.append(delay)

    def recover_media_error(self):
        self.media_recoveries += 1

    def play(self):
        self.paused = False

    def pause(self):
        self.paused = True

    def set_bandwidth(self, mode):
        self.bandwidth = mode

    def destroy(self):
        self.destroyed = True
        self.paused = True

    def load_level(self, live=True, bitrate=3_000_000):
        levels = [LevelInfo(index=0, bitrate=bitrate, uri=self.url)]
        self.on_event(PlayerEvent(type=PlayerEventType.MANIFEST_PARSED, levels=levels))
        self.on_event(PlayerEvent(
            type=PlayerEventType.LEVEL_LOADED,
            details=LevelDetails(live=live, level=0, levels=levels, target_duration=2),
        ))

    def fail(self, kind=ErrorKind.OTHER, message="boom"):
        self.on_event(PlayerEvent(type=PlayerEventType.ERROR, error_kind=kind,
                                  fatal=True, message=message))

    def end(self):
        self.on_event(PlayerEvent(type=PlayerEventType.ENDED))


class FakePlayerFactory:
    def __init__(self):
        self.players = []

    def __call__(self, url, on_event, loop=False, bandwidth=BandwidthMode.MEDIUM):
        player = FakePlayer(url, on_event, loop=loop, bandwidth=bandwidth)
        self.players.append(player)
        return player

    @property
    def latest(self):
        return self.players[-1] if self.players else None

    def alive(self):
        return [p for p in self.players if not p.destroyed]

    async def aclose(self):
        pass


class FakeConfigProvider:
    def __init__(self, config=None, error=None):
        self.config = config
        self.error = error
        self.loads = 0

    async def load(self):
        self.loads += 1
        if self.error is not None:
            raise self.error
        return self.config

    async def aclose(self):
        pass


def assert_poller_invariant(machine):
    armed = machine.state.armed_pollers()
    if machine.phase == FeedPhase.BREAK:
        assert armed == [], f"pollers armed during BREAK: {armed}"
    else:
        assert len(armed) == 1, f"expected exactly one poller, got {armed}"


def make_config(**overrides):
    data = {
        "eventName": "Test Festival",
        "streamBaseUrl": "https://stream.example.com/",
        "streams": [
            {"name": "Main Stage", "liveStreamId": "ls-0", "playbackId": "pb-0",
             "breakVideo1": "bv-a", "breakVideo2": "bv-b"},
            {"name": "Yarns", "liveStreamId": "ls-1", "playbackId": "pb-1"},
            {"name": "Corroboree", "liveStreamId": "ls-2", "playbackId": "pb-2",
             "breakVideo1": "bv-a", "fallbackPlaybackId": "feed-fallback-2"},
            {"name": "Speak Out", "liveStreamId": "ls-3", "playbackId": "pb-3"},
        ],
        "breakVideoLibrary": [
            {"id": "bv-a", "name": "Holding loop", "playbackId": "holding-a"},
            {"id": "bv-b", "name": "Sponsors", "playbackId": "holding-b"},
        ],
    }
    data.update(overrides)
    return DashboardConfig.model_validate(data)


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def players():
    return FakePlayerFactory()
