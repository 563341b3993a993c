"""Unit tests for the key-value store backends."""
import json
import pytest

from tuneshift.memory.store import JsonFileStore, MemoryStore, RedisStore, create_store


@pytest.mark.unit
@pytest.mark.asyncio
class TestMemoryStore:
    async def test_get_set_delete(self):
        store = MemoryStore({"a": 1})

        assert await store.get("a") == 1
        assert await store.get("missing", "fallback") == "fallback"

        await store.set("b", {"x": [1, 2]})
        await store.delete("a")
        await store.delete("never-there")

        assert store.data == {"b": {"x": [1, 2]}}
        assert store.writes == 1


@pytest.mark.unit
@pytest.mark.asyncio
class TestJsonFileStore:
    """Test the single-document JSON backend."""

    async def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "store.json"
        store = JsonFileStore(str(path))

        await store.set("state", {"capture_events": True})
        await store.set("eventLog", [])

        reopened = JsonFileStore(str(path))
        assert await reopened.get("state") == {"capture_events": True}
        assert json.loads(path.read_text()) == {"state": {"capture_events": True}, "eventLog": []}
        assert not (tmp_path / "nested" / "store.json.tmp").exists()

    async def test_delete(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text(json.dumps({"twitch": {"access_token": "x"}, "state": {}}))
        store = JsonFileStore(str(path))

        await store.delete("twitch")

        assert json.loads(path.read_text()) == {"state": {}}

    async def test_corrupt_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json")
        store = JsonFileStore(str(path))

        assert await store.get("state") is None

        await store.set("state", {})
        assert json.loads(path.read_text()) == {"state": {}}


@pytest.mark.unit
class TestCreateStore:
    def test_backends(self, make_settings, tmp_path):
        assert isinstance(create_store(make_settings(store_backend="memory")), MemoryStore)
        assert isinstance(
            create_store(make_settings(store_backend="file", store_path=str(tmp_path / "s.json"))),
            JsonFileStore,
        )

        redis_store = create_store(make_settings(store_backend="redis", redis_namespace="test"))
        assert isinstance(redis_store, RedisStore)
        assert redis_store._key("state") == "test:state"
