"""
Playback layer - one HLS player per loaded manifest URL.

HlsPlayer fetches the manifest with httpx, parses it with m3u8 and reports
what it learned as PlayerEvents (manifest parsed, first level loaded, error,
ended). PlaybackSession wraps one player for one feed and drops any event
that arrives after the session was destroyed.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

import httpx
import m3u8

from config import settings
from manifest_verifier import LevelDetails, LevelInfo, bitrate_mbps, is_live_playlist
from models import BandwidthMode

logger = logging.getLogger(__name__)


class PlayerEventType(str, Enum):
    MANIFEST_PARSED = "manifest_parsed"
    LEVEL_LOADED = "level_loaded"
    ERROR = "error"
    ENDED = "ended"


class ErrorKind(str, Enum):
    NETWORK = "network"
    MEDIA = "media"
    OTHER = "other"


@dataclass
class PlayerEvent:
    type: PlayerEventType
    levels: List[LevelInfo] = field(default_factory=list)
    details: Optional[LevelDetails] = None
    error_kind: Optional[ErrorKind] = None
    fatal: bool = False
    message: Optional[str] = None


class PlayerLoadError(Exception):
    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


def choose_level(levels: List[LevelInfo], mode: BandwidthMode) -> int:
    """Pick a level index for the bandwidth mode.

    low is the lowest bitrate, high the highest, medium (automatic) the
    highest level that does not exceed the median bitrate.
    """
    if not levels:
        return 0
    ordered = sorted(levels, key=lambda lv: lv.bitrate)
    if mode == BandwidthMode.LOW:
        return ordered[0].index
    if mode == BandwidthMode.HIGH:
        return ordered[-1].index
    median = ordered[(len(ordered) - 1) // 2].bitrate
    return max((lv for lv in ordered if lv.bitrate <= median), key=lambda lv: lv.bitrate).index


PlayerEventCallback = Callable[[PlayerEvent], None]


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class HlsPlayer:
    def __init__(
        self,
        url: str,
        on_event: PlayerEventCallback,
        http_client: httpx.AsyncClient,
        loop: bool = False,
        bandwidth: BandwidthMode = BandwidthMode.MEDIUM,
        user_agent: Optional[str] = None,
    ):
        self.url = url
        self.on_event = on_event
        self.http_client = http_client
        self.loop = loop
        self.bandwidth = bandwidth
        self.user_agent = user_agent or settings.DEFAULT_USER_AGENT
        self.muted = True
        self.paused = True
        self.levels: List[LevelInfo] = []
        self.current_level = 0
        self.details: Optional[LevelDetails] = None
        self.media_recoveries = 0
        self.destroyed = False
        self._load_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def bitrate_mbps(self) -> float:
        for level in self.levels:
            if level.index == self.current_level:
                return bitrate_mbps(level.bitrate)
        return 0.0

    def start(self):
        self._spawn_load(0)

    def start_load(self, delay: float = 0):
        """Reload the same manifest in place."""
        logger.info(f"Reloading {self.url} in place")
        self._stop_refresh()
        self._spawn_load(delay)

    def recover_media_error(self):
        self.media_recoveries += 1
        logger.info(f"Media recovery attempt {self.media_recoveries} for {self.url}")
        self._stop_refresh()
        self._spawn_load(0)

    def play(self):
        if self.destroyed:
            return
        self.paused = False
        if self.details and self.details.live and self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    def pause(self):
        self.paused = True
        self._stop_refresh()

    def set_bandwidth(self, mode: BandwidthMode):
        self.bandwidth = mode
        if self.levels:
            self.current_level = choose_level(self.levels, mode)

    def destroy(self):
        if self.destroyed:
            return
        self.destroyed = True
        self.paused = True
        self._stop_refresh()
        if self._load_task and self._load_task is not _current_task():
            self._load_task.cancel()
        self._load_task = None

    def _spawn_load(self, delay: float):
        if self.destroyed:
            return
        if self._load_task and not self._load_task.done() and self._load_task is not _current_task():
            self._load_task.cancel()
        self._load_task = asyncio.create_task(self._load(delay))

    def _stop_refresh(self):
        task, self._refresh_task = self._refresh_task, None
        if task and task is not _current_task():
            task.cancel()

    def _emit(self, event: PlayerEvent):
        if not self.destroyed:
            self.on_event(event)

    async def _fetch(self, url: str) -> str:
        try:
            response = await self.http_client.get(
                url,
                headers={"User-Agent": self.user_agent, "Cache-Control": "no-cache"},
                timeout=settings.PLAYLIST_REQUEST_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise PlayerLoadError(ErrorKind.NETWORK, f"{type(e).__name__}: {e}") from e
        if response.status_code >= 500:
            raise PlayerLoadError(ErrorKind.NETWORK, f"HTTP {response.status_code} for {url}")
        if response.status_code >= 400:
            raise PlayerLoadError(ErrorKind.OTHER, f"HTTP {response.status_code} for {url}")
        return response.text

    def _parse(self, content: str, uri: str) -> m3u8.M3U8:
        if not content.lstrip().startswith("#EXTM3U"):
            raise PlayerLoadError(ErrorKind.MEDIA, f"Not a playlist: {uri}")
        try:
            return m3u8.loads(content, uri=uri)
        except Exception as e:
            raise PlayerLoadError(ErrorKind.MEDIA, f"Unparseable playlist {uri}: {e}") from e

    async def _load(self, delay: float):
        try:
            if delay:
                await asyncio.sleep(delay)
            playlist = self._parse(await self._fetch(self.url), self.url)

            if playlist.is_variant:
                levels = []
                for i, variant in enumerate(playlist.playlists):
                    info = variant.stream_info
                    resolution = None
                    if info and info.resolution:
                        resolution = f"{info.resolution[0]}x{info.resolution[1]}"
                    levels.append(LevelInfo(
                        index=i,
                        bitrate=(info.bandwidth if info and info.bandwidth else 0),
                        uri=variant.absolute_uri,
                        resolution=resolution,
                    ))
                if not levels:
                    raise PlayerLoadError(ErrorKind.OTHER, f"No levels in {self.url}")
                self.levels = levels
                self._emit(PlayerEvent(type=PlayerEventType.MANIFEST_PARSED, levels=levels))
                self.current_level = choose_level(levels, self.bandwidth)
                level_uri = levels[self.current_level].uri
                media = self._parse(await self._fetch(level_uri), level_uri)
            else:
                self.levels = [LevelInfo(index=0, bitrate=0, uri=self.url)]
                self.current_level = 0
                self._emit(PlayerEvent(type=PlayerEventType.MANIFEST_PARSED, levels=self.levels))
                media = playlist

            self.details = LevelDetails(
                live=is_live_playlist(media),
                level=self.current_level,
                levels=list(self.levels),
                target_duration=media.target_duration,
                segment_count=len(media.segments),
            )
            self._emit(PlayerEvent(type=PlayerEventType.LEVEL_LOADED, details=self.details))
        except asyncio.CancelledError:
            raise
        except PlayerLoadError as e:
            logger.warning(f"Player error ({e.kind.value}) loading {self.url}: {e}")
            self._emit(PlayerEvent(type=PlayerEventType.ERROR, error_kind=e.kind,
                                   fatal=True, message=str(e)))
        except Exception as e:
            logger.error(f"Unexpected player error loading {self.url}: {e}")
            self._emit(PlayerEvent(type=PlayerEventType.ERROR, error_kind=ErrorKind.OTHER,
                                   fatal=True, message=str(e)))

    async def _refresh_loop(self):
        """Re-read the live media playlist every target duration."""
        try:
            while not self.destroyed and not self.paused:
                await asyncio.sleep(max(1.0, float(self.details.target_duration or 2)))
                level_uri = self.levels[self.current_level].uri if self.levels else self.url
                media = self._parse(await self._fetch(level_uri), level_uri)
                if not is_live_playlist(media) and not self.loop:
                    logger.info(f"End marker appeared in {level_uri}")
                    self._refresh_task = None
                    self._emit(PlayerEvent(type=PlayerEventType.ENDED))
                    return
        except asyncio.CancelledError:
            pass
        except PlayerLoadError as e:
            self._refresh_task = None
            self._emit(PlayerEvent(type=PlayerEventType.ERROR, error_kind=e.kind,
                                   fatal=True, message=str(e)))


class HlsPlayerFactory:
    """Default player factory; all players share one pooled httpx client."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.PLAYLIST_REQUEST_TIMEOUT,
            follow_redirects=True,
            limits=httpx.Limits(
                max_keepalive_connections=10,
                max_connections=50,
                keepalive_expiry=30.0
            )
        )

    def __call__(self, url: str, on_event: PlayerEventCallback, loop: bool = False,
                 bandwidth: BandwidthMode = BandwidthMode.MEDIUM) -> HlsPlayer:
        return HlsPlayer(url, on_event, self.http_client, loop=loop, bandwidth=bandwidth)

    async def aclose(self):
        if self._owns_client:
            await self.http_client.aclose()


_session_ids = itertools.count(1)


class PlaybackSession:
    """One load of one manifest URL for one feed."""

    def __init__(
        self,
        feed_index: int,
        manifest_url: str,
        player_factory: Callable,
        on_event: Callable[["PlaybackSession", PlayerEvent], None],
        loop: bool = False,
        bandwidth: BandwidthMode = BandwidthMode.MEDIUM,
    ):
        self.session_id = next(_session_ids)
        self.feed_index = feed_index
        self.manifest_url = manifest_url
        self.loop = loop
        self.liveness_confirmed = False
        self.destroyed = False
        self._on_event = on_event
        self.player = player_factory(manifest_url, self._dispatch, loop=loop, bandwidth=bandwidth)

    def __repr__(self):
        kind = "fallback" if self.loop else "live"
        return f"<PlaybackSession #{self.session_id} feed={self.feed_index} {kind} {self.manifest_url}>"

    @property
    def playing(self) -> bool:
        return not self.destroyed and not self.player.paused

    @property
    def bitrate_mbps(self) -> float:
        return self.player.bitrate_mbps

    def start(self):
        self.player.start()

    def play(self):
        if not self.destroyed:
            self.player.play()

    def pause(self):
        self.player.pause()

    def set_bandwidth(self, mode: BandwidthMode):
        if not self.destroyed:
            self.player.set_bandwidth(mode)

    def try_recover(self, event: PlayerEvent) -> bool:
        """Attempt an in-place recovery. Returns False when the error is
        of the cannot-recover class."""
        if self.destroyed:
            return False
        if event.error_kind == ErrorKind.NETWORK:
            self.player.start_load(delay=settings.NETWORK_RECOVERY_DELAY)
            return True
        if event.error_kind == ErrorKind.MEDIA and self.player.media_recoveries < settings.MAX_MEDIA_RECOVERIES:
            self.player.recover_media_error()
            return True
        return False

    def destroy(self):
        if self.destroyed:
            return
        self.destroyed = True
        self.player.pause()
        self.player.destroy()
        logger.debug(f"Destroyed {self!r}")

    def _dispatch(self, event: PlayerEvent):
        if self.destroyed:
            return
        self._on_event(self, event)
