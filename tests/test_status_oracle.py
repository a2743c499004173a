"""
Tests for the fail-closed status oracle
"""
import itertools
from types import SimpleNamespace

import httpx
import pytest

from status_oracle import StatusOracle


def make_oracle(handler, requests=None):
    def recording_handler(request):
        if requests is not None:
            requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording_handler))
    return StatusOracle(api_base_url="http://dash.test/api/", http_client=client)


class TestStatusOracle:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stream_id", [None, "", "ENTER_LIVE_STREAM_ID"])
    async def test_unconfigured_id_skips_network(self, stream_id):
        requests = []
        oracle = make_oracle(lambda r: httpx.Response(200, json={"status": "active"}), requests)

        result = await oracle.check_status(stream_id)

        assert result.is_live is False
        assert result.error
        assert requests == []

    @pytest.mark.asyncio
    async def test_active_is_live(self):
        requests = []
        oracle = make_oracle(
            lambda r: httpx.Response(200, json={
                "status": "active", "isLive": True, "source": "api", "playbackIds": ["pb-1"]}),
            requests,
        )

        result = await oracle.check_status("ls-1")

        assert result.is_live is True
        assert result.raw_status == "active"
        assert result.playback_id == "pb-1"
        assert result.source == "api"
        request = requests[0]
        assert request.url.path == "/api/stream-status"
        assert request.url.params["liveStreamId"] == "ls-1"
        assert "_" in request.url.params
        assert request.headers["cache-control"] == "no-cache"
        assert request.headers["pragma"] == "no-cache"

    @pytest.mark.asyncio
    async def test_cache_buster_changes(self, monkeypatch):
        requests = []
        oracle = make_oracle(lambda r: httpx.Response(200, json={"status": "idle"}), requests)
        clock = itertools.count(1000.0, 1.5)
        monkeypatch.setattr("status_oracle.time", SimpleNamespace(time=lambda: next(clock)))

        await oracle.check_status("ls-1")
        await oracle.check_status("ls-1")

        assert requests[0].url.params["_"] != requests[1].url.params["_"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["idle", "disconnected", "connected", "recording", "ACTIVE", None])
    async def test_anything_but_active_is_not_live(self, status):
        oracle = make_oracle(lambda r: httpx.Response(200, json={"status": status}))

        result = await oracle.check_status("ls-1")

        assert result.is_live is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [400, 404, 500, 503])
    async def test_non_2xx_is_not_live(self, code):
        oracle = make_oracle(lambda r: httpx.Response(code, json={"status": "active"}))

        result = await oracle.check_status("ls-1")

        assert result.is_live is False
        assert result.error == f"HTTP {code}"

    @pytest.mark.asyncio
    async def test_unparseable_body_is_not_live(self):
        oracle = make_oracle(lambda r: httpx.Response(200, text="<html>oops</html>"))

        result = await oracle.check_status("ls-1")

        assert result.is_live is False
        assert result.error == "Unparseable status response"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("playback_ids", [5, "abc", {"id": "pb-1"}, True])
    async def test_malformed_playback_ids_are_dropped(self, playback_ids):
        oracle = make_oracle(lambda r: httpx.Response(200, json={
            "status": "active", "playbackIds": playback_ids}))

        result = await oracle.check_status("ls-1")

        assert result.is_live is True
        assert result.playback_ids == []
        assert result.playback_id is None

    @pytest.mark.asyncio
    async def test_non_string_playback_ids_are_skipped(self):
        oracle = make_oracle(lambda r: httpx.Response(200, json={
            "status": "active", "playbackIds": [7, None, "", "pb-2"]}))

        result = await oracle.check_status("ls-1")

        assert result.playback_ids == ["pb-2"]

    @pytest.mark.asyncio
    async def test_unexpected_payload_is_not_live(self):
        oracle = make_oracle(lambda r: httpx.Response(200, json=["active"]))

        result = await oracle.check_status("ls-1")

        assert result.is_live is False

    @pytest.mark.asyncio
    async def test_transport_error_is_not_live(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        oracle = make_oracle(handler)

        result = await oracle.check_status("ls-1")

        assert result.is_live is False
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_not_live(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        oracle = make_oracle(handler)

        result = await oracle.check_status("ls-1")

        assert result.is_live is False

    @pytest.mark.asyncio
    async def test_shared_client_is_not_closed(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        oracle = StatusOracle(http_client=client)

        await oracle.aclose()

        assert not client.is_closed
        await client.aclose()
