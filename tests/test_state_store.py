"""
Tests for the key-value state stores
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from dr_orchestrator.error_models import StoreUnavailableError
from dr_orchestrator.resilience import RetryConfig
from dr_orchestrator.state_store import (
    InMemoryStateStore, RedisStateStore, create_state_store, glob_escape,
)


class TestInMemoryStateStore:

    async def test_compare_and_set_requires_absent_key_when_expected_is_none(self):
        store = InMemoryStateStore()

        assert await store.compare_and_set("k", None, "v1") is True
        assert await store.compare_and_set("k", None, "v2") is False
        assert await store.get("k") == "v1"

    async def test_compare_and_set_with_none_new_deletes(self):
        store = InMemoryStateStore()
        await store.put("k", "v1")

        assert await store.compare_and_set("k", "other", None) is False
        assert await store.compare_and_set("k", "v1", None) is True
        assert await store.get("k") is None

    async def test_scan_returns_sorted_prefix_matches(self):
        store = InMemoryStateStore()
        for key in ("dr:b", "dr:a", "other:c"):
            await store.put(key, "x")

        assert await store.scan("dr:") == ["dr:a", "dr:b"]


class TestRedisStateStore:

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.get = AsyncMock(return_value="value")
        client.set = AsyncMock(return_value=True)
        client.delete = AsyncMock(return_value=1)
        client.eval = AsyncMock(return_value=1)
        client.aclose = AsyncMock()
        return client

    def _store(self, client, attempts=2):
        config = RetryConfig(max_attempts=attempts, base_delay=0.001, max_delay=0.002, jitter=False,
                             retryable_exceptions=(RedisConnectionError,))
        return RedisStateStore("redis://localhost:6379/0", retry_config=config, client=client)

    async def test_get_and_put_delegate_to_redis(self, client):
        store = self._store(client)

        assert await store.get("dr:state") == "value"
        await store.put("dr:state", "{}")
        client.set.assert_awaited_once_with("dr:state", "{}")

    async def test_compare_and_set_passes_presence_flags(self, client):
        store = self._store(client)

        assert await store.compare_and_set("dr:lease:a", None, "new") is True
        args = client.eval.await_args.args
        assert args[1:] == (1, "dr:lease:a", "", "0", "new", "1")

    async def test_compare_and_set_reports_lost_race(self, client):
        client.eval = AsyncMock(return_value=0)
        store = self._store(client)

        assert await store.compare_and_set("k", "old", None) is False

    async def test_connection_errors_are_retried_then_surface_as_unavailable(self, client):
        client.get = AsyncMock(side_effect=RedisConnectionError("refused"))
        store = self._store(client, attempts=3)

        with pytest.raises(StoreUnavailableError):
            await store.get("dr:state")
        assert client.get.await_count == 3

    async def test_scan_escapes_glob_characters(self, client):
        seen = {}

        async def scan_iter(match, count):
            seen["match"] = match
            for key in ("dr:record:a:2", "dr:record:a:1"):
                yield key

        client.scan_iter = scan_iter
        store = self._store(client)

        assert await store.scan("dr:record:a[1]:") == ["dr:record:a:1", "dr:record:a:2"]
        assert seen["match"] == "dr:record:a\\[1\\]:*"


def test_glob_escape_leaves_plain_text_alone():
    assert glob_escape("dr:workload:shop/orders") == "dr:workload:shop/orders"
    assert glob_escape("a*b?") == "a\\*b\\?"


def test_create_state_store_requires_url_for_redis():
    with pytest.raises(ValueError):
        create_state_store("redis")
    assert isinstance(create_state_store("memory"), InMemoryStateStore)
