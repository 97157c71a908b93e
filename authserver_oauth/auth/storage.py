"""Pluggable persistence backends.

Provides the KeyValueStore ABC and concrete implementations for
in-memory, OS keyring, and Redis-backed persistence of the client's
token set, user profile and redirect flow state.
"""

from __future__ import annotations

import asyncio
import json
import logging

from abc import ABC, abstractmethod
from typing import Any


logger = logging.getLogger("authserver_oauth.auth")

TOKENS_KEY = "tokens"
USER_KEY = "user"
FLOW_KEY = "flow"


class KeyValueStore(ABC):
    """Abstract string key-value store.

    All methods are async to support both local and network-backed stores.
    Each ``set`` replaces the whole value atomically.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Get the value stored under ``key``.

        Parameters
        ----------
        key : str
            Storage key.

        Returns
        -------
        str or None
            The stored value, or None if not found.
        """

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value.

        Parameters
        ----------
        key : str
            Storage key.
        value : str
            Value to persist.
        """

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove ``key`` if present.

        Parameters
        ----------
        key : str
            Storage key.
        """

    @abstractmethod
    async def clear(self) -> None:
        """Remove every key owned by this store."""

    async def get_json(self, key: str) -> Any:
        """Get and decode a JSON value, or None if absent or unreadable."""
        data = await self.get(key)
        if data is None:
            return None
        try:
            return json.loads(data)
        except ValueError:
            logger.warning("Discarding unreadable stored value for key %r", key)
            return None

    async def set_json(self, key: str, value: Any) -> None:
        """Encode ``value`` as JSON and store it."""
        await self.set(key, json.dumps(value))


class MemoryStore(KeyValueStore):
    """In-memory store for development, tests and single-process use."""

    def __init__(self) -> None:
        """Initialize the memory store."""
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        """Get a value from memory."""
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        """Set a value in memory."""
        async with self._lock:
            self._data[key] = value

    async def remove(self, key: str) -> None:
        """Remove a value from memory."""
        async with self._lock:
            self._data.pop(key, None)

    async def clear(self) -> None:
        """Remove all values."""
        async with self._lock:
            self._data.clear()

    def keys(self) -> list[str]:
        """Stored keys (for inspection)."""
        return list(self._data)


class KeyringStore(KeyValueStore):
    """OS keyring-backed store for persistent desktop credentials.

    Requires the ``keyring`` package: ``pip install authserver-oauth[keyring]``

    The keyring API cannot enumerate entries, so the store keeps an index
    entry listing the keys it wrote; ``clear`` removes exactly those.

    Parameters
    ----------
    service_name : str
        Service name for keyring storage (default "authserver-oauth").
    """

    _INDEX_KEY = "__index__"

    def __init__(self, service_name: str = "authserver-oauth") -> None:
        """Initialize the keyring store."""
        try:
            import keyring as _keyring
        except ImportError:
            msg = "Install keyring for persistent storage: pip install authserver-oauth[keyring]"
            raise ImportError(msg) from None
        self._service_name = service_name
        self._keyring = _keyring
        self._lock = asyncio.Lock()

    async def _run(self, func: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, self._service_name, *args)

    async def _read_index(self) -> list[str]:
        data = await self._run(self._keyring.get_password, self._INDEX_KEY)
        if not data:
            return []
        try:
            keys = json.loads(data)
        except ValueError:
            return []
        return [k for k in keys if isinstance(k, str)]

    async def _write_index(self, keys: list[str]) -> None:
        if keys:
            await self._run(self._keyring.set_password, self._INDEX_KEY, json.dumps(keys))
        else:
            await self._delete(self._INDEX_KEY)

    async def _delete(self, key: str) -> None:
        try:
            await self._run(self._keyring.delete_password, key)
        except self._keyring.errors.PasswordDeleteError:
            pass  # Already absent

    async def get(self, key: str) -> str | None:
        """Get a value from the OS keyring."""
        return await self._run(self._keyring.get_password, key)

    async def set(self, key: str, value: str) -> None:
        """Set a value in the OS keyring."""
        async with self._lock:
            await self._run(self._keyring.set_password, key, value)
            keys = await self._read_index()
            if key not in keys:
                keys.append(key)
                await self._write_index(keys)

    async def remove(self, key: str) -> None:
        """Remove a value from the OS keyring."""
        async with self._lock:
            await self._delete(key)
            keys = await self._read_index()
            if key in keys:
                keys.remove(key)
                await self._write_index(keys)

    async def clear(self) -> None:
        """Remove every value this store wrote."""
        async with self._lock:
            for key in await self._read_index():
                await self._delete(key)
            await self._write_index([])


class RedisStore(KeyValueStore):
    """Redis-backed store for multi-worker deployments.

    Parameters
    ----------
    redis_url : str
        Redis connection URL.
    prefix : str
        Key prefix for namespacing (default "authserver").
    pool_size : int
        Connection pool size (default 10).
    client : Any, optional
        A pre-built ``redis.asyncio.Redis`` client (tests, shared pools).
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "authserver",
        pool_size: int = 10,
        client: Any = None,
    ) -> None:
        """Initialize the Redis store."""
        self._prefix = prefix
        if client is not None:
            self._redis = client
            return
        try:
            from redis.asyncio import Redis as RedisClient
        except ImportError:
            msg = "Redis backend requires the 'redis' package. Install with: pip install authserver-oauth[redis]"
            raise ImportError(msg) from None

        self._redis = RedisClient.from_url(
            redis_url,
            max_connections=pool_size,
            decode_responses=True,
        )

    def _key(self, key: str) -> str:
        """Build a Redis key with prefix."""
        return f"{self._prefix}:oauth:{key}"

    async def get(self, key: str) -> str | None:
        """Get a value from Redis."""
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: str) -> None:
        """Set a value in Redis."""
        await self._redis.set(self._key(key), value)

    async def remove(self, key: str) -> None:
        """Remove a value from Redis."""
        await self._redis.delete(self._key(key))

    async def clear(self) -> None:
        """Remove every key under this store's prefix."""
        pattern = f"{self._prefix}:oauth:*"
        keys = [key async for key in self._redis.scan_iter(match=pattern)]
        if keys:
            await self._redis.delete(*keys)

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self._redis.aclose()


class NamespacedStore(KeyValueStore):
    """View of another store with every key prefixed ``<prefix>_``.

    ``clear`` only removes the keys this view knows about, so several
    clients can share one backend.

    Parameters
    ----------
    store : KeyValueStore
        The backing store.
    prefix : str
        Key prefix (default "authserver").
    names : tuple of str
        The key names cleared by :meth:`clear`.
    """

    def __init__(
        self,
        store: KeyValueStore,
        prefix: str = "authserver",
        names: tuple[str, ...] = (TOKENS_KEY, USER_KEY, FLOW_KEY),
    ) -> None:
        """Initialize the namespaced view."""
        self._store = store
        self._prefix = prefix
        self._names = names

    @property
    def prefix(self) -> str:
        """The key prefix."""
        return self._prefix

    def key(self, name: str) -> str:
        """Full key for ``name``."""
        return f"{self._prefix}_{name}"

    async def get(self, key: str) -> str | None:
        """Get a namespaced value."""
        return await self._store.get(self.key(key))

    async def set(self, key: str, value: str) -> None:
        """Set a namespaced value."""
        await self._store.set(self.key(key), value)

    async def remove(self, key: str) -> None:
        """Remove a namespaced value."""
        await self._store.remove(self.key(key))

    async def clear(self) -> None:
        """Remove this namespace's keys only."""
        for name in self._names:
            await self._store.remove(self.key(name))


def create_store(backend: str = "memory", **kwargs: Any) -> KeyValueStore:
    """Factory function for key-value stores.

    Returns a new instance on every call; there is no shared global store.

    Parameters
    ----------
    backend : str
        Storage backend: "memory", "keyring", or "redis".
    **kwargs : Any
        Additional keyword arguments passed to the store constructor.

    Returns
    -------
    KeyValueStore
        A configured store instance.

    Raises
    ------
    ValueError
        If ``backend`` is unknown.
    """
    if backend == "memory":
        return MemoryStore()
    if backend == "keyring":
        return KeyringStore(service_name=kwargs.get("service_name", "authserver-oauth"))
    if backend == "redis":
        return RedisStore(
            redis_url=kwargs.get("redis_url", "redis://localhost:6379/0"),
            prefix=kwargs.get("prefix", "authserver"),
            pool_size=kwargs.get("pool_size", 10),
        )
    msg = f"Unknown storage backend: {backend}"
    raise ValueError(msg)
