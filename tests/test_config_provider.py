"""
Tests for loading the dashboard configuration
"""
import json

import httpx
import pytest

from config_provider import (
    DEFAULT_CONFIG, DEFAULT_STREAM_BASE_URL, ConfigProvider, ConfigurationError, normalize_config,
)
from models import DashboardConfig


def provider_for(handler, fallback_file=""):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ConfigProvider(api_base_url="http://dash.test/api", fallback_file=fallback_file,
                          http_client=client)


class TestNormalizeConfig:

    def test_defaults_base_url_and_clears_placeholders(self):
        config = normalize_config(DashboardConfig.model_validate(DEFAULT_CONFIG))

        assert config.stream_base_url == DEFAULT_STREAM_BASE_URL
        assert all(s.live_stream_id is None for s in config.streams)
        assert all(s.playback_id is None for s in config.streams)

    def test_keeps_real_values(self):
        config = normalize_config(DashboardConfig.model_validate({
            "streamBaseUrl": "https://cdn.example.com/hls/",
            "streams": [{"name": "Main", "liveStreamId": "ls-0", "playbackId": "pb-0"}],
        }))

        assert config.stream_base_url == "https://cdn.example.com/hls/"
        assert config.streams[0].live_stream_id == "ls-0"
        assert config.streams[0].playback_id == "pb-0"


class TestConfigProvider:

    @pytest.mark.asyncio
    async def test_loads_from_endpoint(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"eventName": "Festival", "streams": [{"name": "Main"}]})

        config = await provider_for(handler).load()

        assert requests[0].url.path == "/api/config"
        assert config.event_name == "Festival"
        assert config.stream_base_url == DEFAULT_STREAM_BASE_URL

    @pytest.mark.asyncio
    async def test_falls_back_to_local_file(self, tmp_path):
        fallback = tmp_path / "config.json"
        fallback.write_text(json.dumps({"eventName": "Offline Copy", "streams": []}))

        config = await provider_for(lambda r: httpx.Response(503), str(fallback)).load()

        assert config.event_name == "Offline Copy"

    @pytest.mark.asyncio
    async def test_bad_endpoint_payload_uses_fallback(self, tmp_path):
        fallback = tmp_path / "config.json"
        fallback.write_text(json.dumps({"eventName": "Offline Copy"}))

        config = await provider_for(lambda r: httpx.Response(200, text="<html>"), str(fallback)).load()

        assert config.event_name == "Offline Copy"

    @pytest.mark.asyncio
    async def test_no_source_at_all(self, tmp_path):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ConfigurationError, match="Failed to load configuration"):
            await provider_for(refuse, str(tmp_path / "missing.json")).load()

    @pytest.mark.asyncio
    async def test_corrupt_fallback(self, tmp_path):
        fallback = tmp_path / "config.json"
        fallback.write_text("{not json")

        with pytest.raises(ConfigurationError):
            await provider_for(lambda r: httpx.Response(500), str(fallback)).load()
