"""
Configuration provider for the dashboard engine.

The configuration endpoint is the source; a local JSON file is the fallback.
When neither yields a document the dashboard cannot run at all, which is the
one failure surfaced as a hard error (ConfigurationError).
"""

import json
import logging
import os
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from config import settings
from models import DashboardConfig

logger = logging.getLogger(__name__)

DEFAULT_STREAM_BASE_URL = "https://stream.mux.com/"

DEFAULT_CONFIG: Dict[str, Any] = {
    "eventName": "Live Event",
    "streamBaseUrl": DEFAULT_STREAM_BASE_URL,
    "expiryDate": None,
    "producerPassword": None,
    "eventInfo": {
        "date": "",
        "callTime": "7:00 AM",
        "liveStart": "10:00 AM",
        "liveEnd": "6:00 PM",
        "role": "Production Crew",
        "brief": "Monitor your assigned stage. Report any audio/video issues to the producer immediately.",
        "whatsappLink": "",
        "producerName": "",
        "producerPhone": "",
    },
    "streams": [
        {"name": "Main Stage", "liveStreamId": "ENTER_LIVE_STREAM_ID", "playbackId": "",
         "streamKey": "", "rtmpUrl": "rtmp://global-live.mux.com:5222/app"},
        {"name": "Stage 2", "liveStreamId": "ENTER_LIVE_STREAM_ID", "playbackId": "",
         "streamKey": "", "rtmpUrl": "rtmp://global-live.mux.com:5222/app"},
        {"name": "Stage 3", "liveStreamId": "ENTER_LIVE_STREAM_ID", "playbackId": "",
         "streamKey": "", "rtmpUrl": "rtmp://global-live.mux.com:5222/app"},
        {"name": "Stage 4", "liveStreamId": "ENTER_LIVE_STREAM_ID", "playbackId": "",
         "streamKey": "", "rtmpUrl": "rtmp://global-live.mux.com:5222/app"},
    ],
    "breakVideoLibrary": [],
    "visibility": {
        "vuMeters": True,
        "streamStatus": True,
        "streamHealth": True,
        "duration": True,
        "bitrate": False,
        "viewers": False,
    },
    "defaultBandwidth": "medium",
}


class ConfigurationError(Exception):
    """No configuration could be obtained, including the fallback."""


def normalize_config(config: DashboardConfig) -> DashboardConfig:
    if not config.stream_base_url:
        config.stream_base_url = DEFAULT_STREAM_BASE_URL
        logger.info("No streamBaseUrl configured - using direct provider URL")
    for stream in config.streams:
        if stream.live_stream_id == settings.LIVE_STREAM_ID_PLACEHOLDER:
            stream.live_stream_id = None
        if not stream.playback_id:
            stream.playback_id = None
    return config


class ConfigProvider:
    def __init__(
        self,
        api_base_url: Optional[str] = None,
        fallback_file: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_base_url = (api_base_url or settings.DASHBOARD_API_URL).rstrip("/")
        self.fallback_file = fallback_file if fallback_file is not None else settings.CONFIG_FALLBACK_FILE
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=settings.STATUS_REQUEST_TIMEOUT,
            follow_redirects=True,
        )

    async def aclose(self):
        if self._owns_client:
            await self.http_client.aclose()

    async def load(self) -> DashboardConfig:
        try:
            response = await self.http_client.get(f"{self.api_base_url}/config")
            response.raise_for_status()
            config = DashboardConfig.model_validate(response.json())
            logger.info(f"Loaded configuration for '{config.event_name}' ({len(config.streams)} streams)")
            return normalize_config(config)
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.error(f"Config load failed: {e}")

        config = self._load_fallback()
        if config is None:
            raise ConfigurationError("Failed to load configuration")
        return normalize_config(config)

    def _load_fallback(self) -> Optional[DashboardConfig]:
        if not self.fallback_file or not os.path.exists(self.fallback_file):
            logger.error("No fallback configuration file available")
            return None
        try:
            with open(self.fallback_file, "r") as f:
                config = DashboardConfig.model_validate(json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Fallback config {self.fallback_file} also failed: {e}")
            return None
        logger.info(f"Using fallback config {self.fallback_file}")
        return config
