"""Unit tests for the persistence backends."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import fnmatch

from typing import Any
from unittest.mock import patch

import pytest

from authserver_oauth.auth.storage import (
    KeyringStore,
    MemoryStore,
    NamespacedStore,
    RedisStore,
    create_store,
)


# ── Fixtures ────────────────────────────────────────────────────────


class FakeRedis:
    """Minimal async stand-in for ``redis.asyncio.Redis``."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.closed = False

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: str = "*") -> Any:
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture()
def memory_store() -> MemoryStore:
    """Create a MemoryStore."""
    return MemoryStore()


@pytest.fixture()
def fake_redis() -> FakeRedis:
    """Create a fake Redis client."""
    return FakeRedis()


@pytest.fixture()
def keyring_vault() -> Any:
    """Patch the keyring API onto an in-memory dict."""
    import keyring
    import keyring.errors

    vault: dict[tuple[str, str], str] = {}

    def get_password(service: str, key: str) -> str | None:
        return vault.get((service, key))

    def set_password(service: str, key: str, value: str) -> None:
        vault[(service, key)] = value

    def delete_password(service: str, key: str) -> None:
        if (service, key) not in vault:
            raise keyring.errors.PasswordDeleteError("not found")
        del vault[(service, key)]

    with patch.multiple(
        keyring,
        get_password=get_password,
        set_password=set_password,
        delete_password=delete_password,
    ):
        yield vault


# ── MemoryStore ─────────────────────────────────────────────────────


class TestMemoryStore:
    """Tests for MemoryStore."""

    @pytest.mark.asyncio
    async def test_set_get_remove(self, memory_store: MemoryStore) -> None:
        assert await memory_store.get("k") is None
        await memory_store.set("k", "v")
        assert await memory_store.get("k") == "v"
        await memory_store.set("k", "v2")
        assert await memory_store.get("k") == "v2"
        await memory_store.remove("k")
        assert await memory_store.get("k") is None

    @pytest.mark.asyncio
    async def test_remove_missing_is_noop(self, memory_store: MemoryStore) -> None:
        await memory_store.remove("missing")

    @pytest.mark.asyncio
    async def test_clear(self, memory_store: MemoryStore) -> None:
        await memory_store.set("a", "1")
        await memory_store.set("b", "2")
        await memory_store.clear()
        assert memory_store.keys() == []

    @pytest.mark.asyncio
    async def test_json_helpers(self, memory_store: MemoryStore) -> None:
        await memory_store.set_json("obj", {"a": [1, 2]})
        assert await memory_store.get_json("obj") == {"a": [1, 2]}

    @pytest.mark.asyncio
    async def test_unreadable_json_is_none(self, memory_store: MemoryStore) -> None:
        await memory_store.set("obj", "{not json")
        assert await memory_store.get_json("obj") is None


# ── NamespacedStore ─────────────────────────────────────────────────


class TestNamespacedStore:
    """Tests for the prefixed view."""

    @pytest.mark.asyncio
    async def test_keys_are_prefixed(self, memory_store: MemoryStore) -> None:
        store = NamespacedStore(memory_store, "myapp")
        await store.set("tokens", "t")
        assert memory_store.keys() == ["myapp_tokens"]
        assert await store.get("tokens") == "t"
        assert store.key("user") == "myapp_user"

    @pytest.mark.asyncio
    async def test_clear_only_own_keys(self, memory_store: MemoryStore) -> None:
        """Two clients sharing a backend do not clear each other."""
        first = NamespacedStore(memory_store, "first")
        second = NamespacedStore(memory_store, "second")
        for store in (first, second):
            await store.set("tokens", "t")
            await store.set("user", "u")
            await store.set("flow", "f")
        await memory_store.set("unrelated", "x")

        await first.clear()

        assert sorted(memory_store.keys()) == [
            "second_flow",
            "second_tokens",
            "second_user",
            "unrelated",
        ]


# ── RedisStore ──────────────────────────────────────────────────────


class TestRedisStore:
    """Tests for RedisStore against a fake client."""

    @pytest.mark.asyncio
    async def test_key_layout(self, fake_redis: FakeRedis) -> None:
        store = RedisStore(prefix="app", client=fake_redis)
        await store.set("authserver_tokens", "t")
        assert fake_redis.data == {"app:oauth:authserver_tokens": "t"}
        assert await store.get("authserver_tokens") == "t"

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, fake_redis: FakeRedis) -> None:
        store = RedisStore(prefix="app", client=fake_redis)
        await store.set("a", "1")
        await store.set("b", "2")
        fake_redis.data["other:oauth:a"] = "keep"

        await store.remove("a")
        assert await store.get("a") is None

        await store.clear()
        assert fake_redis.data == {"other:oauth:a": "keep"}

    @pytest.mark.asyncio
    async def test_close(self, fake_redis: FakeRedis) -> None:
        store = RedisStore(client=fake_redis)
        await store.close()
        assert fake_redis.closed


# ── KeyringStore ────────────────────────────────────────────────────


class TestKeyringStore:
    """Tests for KeyringStore with the keyring API patched."""

    @pytest.mark.asyncio
    async def test_set_get_remove(self, keyring_vault: dict) -> None:
        store = KeyringStore(service_name="svc")
        await store.set("authserver_tokens", "t")
        assert await store.get("authserver_tokens") == "t"
        assert keyring_vault[("svc", "authserver_tokens")] == "t"

        await store.remove("authserver_tokens")
        assert await store.get("authserver_tokens") is None

    @pytest.mark.asyncio
    async def test_remove_missing_is_noop(self, keyring_vault: dict) -> None:
        store = KeyringStore(service_name="svc")
        await store.remove("missing")
        assert keyring_vault == {}

    @pytest.mark.asyncio
    async def test_clear_removes_written_keys(self, keyring_vault: dict) -> None:
        keyring_vault[("svc", "foreign")] = "keep"
        store = KeyringStore(service_name="svc")
        await store.set("a", "1")
        await store.set("b", "2")

        await store.clear()

        assert keyring_vault == {("svc", "foreign"): "keep"}


# ── Factory ─────────────────────────────────────────────────────────


class TestCreateStore:
    """Tests for create_store."""

    def test_memory_backend_returns_new_instances(self) -> None:
        first = create_store("memory")
        second = create_store("memory")
        assert isinstance(first, MemoryStore)
        assert first is not second

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError, match="Unknown storage backend"):
            create_store("sqlite")

    def test_redis_backend(self) -> None:
        store = create_store("redis", redis_url="redis://localhost:6379/1", prefix="x")
        assert isinstance(store, RedisStore)
