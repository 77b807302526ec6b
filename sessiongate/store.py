from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Any


class SessionStore(ABC):
    """Key/value store with per-key TTL and hash-style multi-field access."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def get_multiple(self, key: str, fields: Sequence[str]) -> list[str | None]:
        raise NotImplementedError

    @abstractmethod
    async def set_multiple(self, key: str, values: Sequence[str]) -> None:
        """Write fields given as a flat ``field, value, field, value`` sequence."""
        raise NotImplementedError

    @abstractmethod
    async def get_single(self, key: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    async def set_single(self, key: str, value: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def pop_single(self, key: str) -> str | None:
        """Read and remove a string value in one step; at most one caller gets it."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def pair_fields(values: Sequence[str]) -> dict[str, str]:
    if len(values) % 2 != 0:
        raise ValueError("set_multiple expects an even number of items (field, value pairs).")
    return {values[i]: values[i + 1] for i in range(0, len(values), 2)}


class MemorySessionStore(SessionStore):
    """Single-process store.

    An expired key is dropped when it is next read. Writes also sweep every
    expired key, at most once per ``sweep_interval`` seconds, so records that
    are never read again do not accumulate.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = 60.0,
    ) -> None:
        self._values: dict[str, Any] = {}
        self._expires_at: dict[str, float] = {}
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def cleanup_expired(self) -> None:
        now = self._clock()
        expired = [key for key, expires_at in self._expires_at.items() if expires_at <= now]
        for key in expired:
            self._values.pop(key, None)
            del self._expires_at[key]
        self._next_sweep = now + self._sweep_interval

    def _maybe_sweep(self) -> None:
        if self._clock() >= self._next_sweep:
            self.cleanup_expired()

    def _purge(self, key: str) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    def _get(self, key: str) -> Any:
        self._purge(key)
        return self._values.get(key)

    async def exists(self, key: str) -> bool:
        return self._get(key) is not None

    async def get_multiple(self, key: str, fields: Sequence[str]) -> list[str | None]:
        value = self._get(key)
        if not isinstance(value, dict):
            return [None for _ in fields]
        return [value.get(field) for field in fields]

    async def set_multiple(self, key: str, values: Sequence[str]) -> None:
        pairs = pair_fields(values)
        self._maybe_sweep()
        current = self._get(key)
        if not isinstance(current, dict):
            current = {}
            self._values[key] = current
        current.update(pairs)

    async def get_single(self, key: str) -> str | None:
        value = self._get(key)
        if isinstance(value, dict):
            raise RuntimeError(f"Key {key!r} holds a hash, not a string value.")
        return value

    async def set_single(self, key: str, value: str) -> None:
        self._maybe_sweep()
        self._values[key] = value
        self._expires_at.pop(key, None)

    async def pop_single(self, key: str) -> str | None:
        value = await self.get_single(key)
        self._values.pop(key, None)
        self._expires_at.pop(key, None)
        return value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._expires_at.pop(key, None)

    async def expire(self, key: str, seconds: int) -> None:
        if self._get(key) is None:
            return
        self._expires_at[key] = self._clock() + seconds


class RedisSessionStore(SessionStore):
    """Store backed by ``redis.asyncio``; session records are Redis hashes."""

    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 5.0) -> "RedisSessionStore":
        import redis.asyncio as aioredis

        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(key))

    async def get_multiple(self, key: str, fields: Sequence[str]) -> list[str | None]:
        return list(await self._client.hmget(key, list(fields)))

    async def set_multiple(self, key: str, values: Sequence[str]) -> None:
        await self._client.hset(key, mapping=pair_fields(values))

    async def get_single(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set_single(self, key: str, value: str) -> None:
        await self._client.set(key, value)

    async def pop_single(self, key: str) -> str | None:
        return await self._client.getdel(key)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def expire(self, key: str, seconds: int) -> None:
        await self._client.expire(key, seconds)

    async def aclose(self) -> None:
        await self._client.aclose()
