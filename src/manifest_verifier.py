"""
Manifest Verifier - the authoritative live/finished call.

The provider keeps reporting a stream as "active" for up to its reconnect
window after the encoder drops, while serving the recorded tail. The loaded
media playlist is the ground truth: an open-ended playlist is live, one that
carries an end marker (or declares itself VOD) is finished content.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import m3u8

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    LIVE = "live"
    FINISHED = "finished"


@dataclass
class LevelInfo:
    index: int
    bitrate: int
    uri: str
    resolution: Optional[str] = None


@dataclass
class LevelDetails:
    """What the playback layer learned from the first loaded media playlist."""
    live: bool
    level: int = 0
    levels: List[LevelInfo] = field(default_factory=list)
    target_duration: Optional[float] = None
    segment_count: int = 0

    @property
    def bitrate(self) -> Optional[int]:
        for level in self.levels:
            if level.index == self.level:
                return level.bitrate
        return None


def is_live_playlist(playlist: m3u8.M3U8) -> bool:
    playlist_type = (playlist.playlist_type or "").upper()
    return not (playlist.is_endlist or playlist_type == "VOD")


def bitrate_mbps(bitrate: Optional[int]) -> float:
    """Bitrate indicator value, Mbps rounded to one decimal."""
    if not bitrate:
        return 0.0
    return round(bitrate / 1_000_000 * 10) / 10


class ManifestVerifier:
    def verify(self, feed_index: int, details: LevelDetails) -> Verdict:
        if details.live:
            logger.info(f"Feed {feed_index}: playlist is open-ended - CONFIRMED LIVE")
            return Verdict.LIVE
        logger.info(
            f"Feed {feed_index}: playlist has an end marker - finished/recorded content")
        return Verdict.FINISHED
