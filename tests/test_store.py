"""
Tests for the blob stores and local preferences file
"""
import pytest
from unittest.mock import AsyncMock, patch

from config import settings
from models import BandwidthMode, Preferences
from preferences import PreferencesStore
from redis_config import get_redis_config
from store import MemoryBlobStore, RedisBlobStore, create_store


class TestMemoryBlobStore:

    @pytest.mark.asyncio
    async def test_missing_key(self):
        assert await MemoryBlobStore().get_json("nothing") is None

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        store = MemoryBlobStore()
        document = {"0": {"onBreak": False}}
        await store.set_json("break-mode", document)

        document["0"]["onBreak"] = True
        fetched = await store.get_json("break-mode")
        fetched["1"] = "mutated"

        assert await store.get_json("break-mode") == {"0": {"onBreak": False}}


class TestRedisBlobStore:

    @pytest.mark.asyncio
    async def test_connect_pings(self):
        client = AsyncMock()
        with patch("store.redis.from_url", return_value=client) as from_url:
            store = RedisBlobStore("redis://cache:6379/2", key_prefix="crew")
            await store.connect()

        from_url.assert_called_once_with("redis://cache:6379/2", decode_responses=True)
        client.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_json_under_prefix(self):
        store = RedisBlobStore(key_prefix="crew")
        store.redis_client = AsyncMock()
        store.redis_client.get.return_value = '{"eventName": "Festival"}'

        await store.set_json("dashboard-config", {"eventName": "Festival"})
        value = await store.get_json("dashboard-config")

        store.redis_client.set.assert_awaited_once_with("crew:dashboard-config", '{"eventName": "Festival"}')
        store.redis_client.get.assert_awaited_once_with("crew:dashboard-config")
        assert value == {"eventName": "Festival"}

    @pytest.mark.asyncio
    async def test_missing_and_corrupt_values(self):
        store = RedisBlobStore()
        store.redis_client = AsyncMock()

        store.redis_client.get.return_value = None
        assert await store.get_json("break-mode") is None

        store.redis_client.get.return_value = "{corrupt"
        assert await store.get_json("break-mode") is None

    @pytest.mark.asyncio
    async def test_disconnect(self):
        store = RedisBlobStore()
        client = AsyncMock()
        store.redis_client = client

        await store.disconnect()

        client.close.assert_awaited_once()
        assert store.redis_client is None


class TestCreateStore:

    def test_memory_by_default(self):
        with patch.object(settings, "REDIS_ENABLED", False):
            assert isinstance(create_store(), MemoryBlobStore)

    def test_redis_when_enabled(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        with patch.object(settings, "REDIS_ENABLED", True), \
                patch.object(settings, "REDIS_HOST", "cache"), \
                patch.object(settings, "REDIS_PASSWORD", None), \
                patch.object(settings, "API_TOKEN", None):
            store = create_store()

        assert isinstance(store, RedisBlobStore)
        assert store.redis_url == "redis://cache:6379/0"
        assert store.key_prefix == "crew-dashboard"

    def test_password_in_url(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        with patch.object(settings, "REDIS_PASSWORD", "s3cret"):
            config = get_redis_config()

        assert config["redis_url"].startswith("redis://:s3cret@")


class TestPreferencesStore:

    def test_missing_file(self, tmp_path):
        assert PreferencesStore(str(tmp_path / "prefs.json")).load() is None

    def test_save_and_load(self, tmp_path):
        store = PreferencesStore(str(tmp_path / "nested" / "prefs.json"))

        store.save(Preferences(bandwidth=BandwidthMode.LOW, visibility={"vuMeters": False}))

        loaded = store.load()
        assert loaded.bandwidth == BandwidthMode.LOW
        assert loaded.visibility == {"vuMeters": False}
        assert not (tmp_path / "nested" / "prefs.json.tmp").exists()

    def test_unreadable_file_is_ignored(self, tmp_path):
        path = tmp_path / "prefs.json"
        path.write_text('{"bandwidth": "ultra"}')

        assert PreferencesStore(str(path)).load() is None
