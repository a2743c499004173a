"""
Tests for the server-side stream status and break state services
"""
import httpx
import pytest
from unittest.mock import patch

from config import settings
from status_service import (
    BreakStateService, ProviderError, StreamStatusService, default_break_state,
)
from store import BREAK_MODE_KEY, ENCODER_STATES_KEY, MemoryBlobStore


@pytest.fixture
def store():
    return MemoryBlobStore()


@pytest.fixture
def credentials():
    with patch.object(settings, "MUX_TOKEN_ID", "token-id"), \
            patch.object(settings, "MUX_TOKEN_SECRET", "token-secret"):
        yield


def service_for(store, handler):
    return StreamStatusService(store, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestStreamStatusService:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["disconnected", "idle"])
    async def test_webhook_not_live_states_skip_provider(self, store, status):
        calls = []
        service = service_for(store, lambda r: calls.append(r) or httpx.Response(200, json={}))
        await service.record_webhook({"type": f"video.live_stream.{status}", "data": {"id": "ls-1"}})

        result = await service.get_status("ls-1")

        assert result["isLive"] is False
        assert result["source"] == "webhook"
        assert calls == []

    @pytest.mark.asyncio
    async def test_provider_active(self, store, credentials):
        service = service_for(store, lambda r: httpx.Response(200, json={"data": {
            "id": "ls-1", "status": "active", "playback_ids": [{"id": "pb-1"}, {"policy": "signed"}]}}))

        result = await service.get_status("ls-1")

        assert result["isLive"] is True
        assert result["playbackIds"] == ["pb-1"]

    @pytest.mark.asyncio
    async def test_provider_idle(self, store, credentials):
        service = service_for(store, lambda r: httpx.Response(200, json={"data": {"status": "idle"}}))

        result = await service.get_status("ls-1")

        assert result["isLive"] is False
        assert result["liveStreamId"] == "ls-1"

    @pytest.mark.asyncio
    async def test_provider_failure(self, store, credentials):
        service = service_for(store, lambda r: httpx.Response(401, text="unauthorized"))

        with pytest.raises(ProviderError) as exc_info:
            await service.get_status("ls-1")

        assert exc_info.value.status_code == 401
        assert exc_info.value.details == "unauthorized"

    @pytest.mark.asyncio
    async def test_unknown_webhook_type_is_ignored(self, store):
        service = service_for(store, lambda r: httpx.Response(200))

        handled, message = await service.record_webhook({"type": "video.asset.created", "data": {"id": "x"}})

        assert handled is False
        assert "video.asset.created" in message
        assert await store.get_json(ENCODER_STATES_KEY) is None

    @pytest.mark.asyncio
    async def test_webhook_without_id_is_ignored(self, store):
        service = service_for(store, lambda r: httpx.Response(200))

        handled, _ = await service.record_webhook({"type": "video.live_stream.idle", "data": {}})

        assert handled is False


class TestBreakStateService:

    def test_default_state(self):
        state = default_break_state(2)
        assert state["0"] == {"onBreak": False, "activeSlot": None}
        assert "2" not in state
        assert "lastUpdated" in state

    @pytest.mark.asyncio
    async def test_get_initialises_store(self, store):
        service = BreakStateService(store, feed_count=4)

        state = await service.get_state()

        assert await store.get_json(BREAK_MODE_KEY) == state
        assert service.feed_keys == ["0", "1", "2", "3"]

    @pytest.mark.asyncio
    async def test_set_break_clears_slot_when_live(self, store):
        service = BreakStateService(store, feed_count=4)

        await service.set_break(0, True, 2, "producer-a")
        state = await service.set_break(0, False, 2)

        assert state["0"] == {"onBreak": False, "activeSlot": None}
        assert state["updatedBy"] == "producer"

    @pytest.mark.asyncio
    async def test_last_writer_wins(self, store):
        service = BreakStateService(store, feed_count=4)

        await service.set_break(1, True, 1, "producer-a")
        await service.set_break(1, True, 2, "producer-b")

        state = await service.get_state()
        assert state["1"] == {"onBreak": True, "activeSlot": 2}
        assert state["updatedBy"] == "producer-b"
