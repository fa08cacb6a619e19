"""Redis-backed lock/cache store."""

from __future__ import annotations

import redis

from autotrade.utils.logging import get_logger

# Delete only when the key still holds the caller's token.
_COMPARE_AND_DELETE = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisLockStore:
    """LockStore over a Redis server.

    Acquisition is a single ``SET key token NX EX ttl`` so two processes can
    never both win. Connection failures on acquire fail closed.
    """

    def __init__(self, client: redis.Redis) -> None:
        self._client = client
        self._logger = get_logger("autotrade.lock.redis")
        self._compare_and_delete = client.register_script(_COMPARE_AND_DELETE)

    @classmethod
    def from_url(cls, url: str) -> RedisLockStore:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def try_acquire(self, key: str, ttl_seconds: int, token: str = "1") -> bool:
        try:
            return bool(self._client.set(key, token, nx=True, ex=ttl_seconds))
        except redis.RedisError as exc:
            self._logger.error("lock_store_unreachable", op="try_acquire", key=key, error=str(exc))
            return False

    def release(self, key: str, token: str | None = None) -> None:
        try:
            if token is None:
                self._client.delete(key)
            else:
                self._compare_and_delete(keys=[key], args=[token])
        except redis.RedisError as exc:
            # TTL expiry recovers the key.
            self._logger.error("lock_release_failed", key=key, error=str(exc))

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        self._client.set(key, value, ex=ttl_seconds)

    def get(self, key: str) -> str | None:
        try:
            value = self._client.get(key)
        except redis.RedisError as exc:
            self._logger.error("lock_store_unreachable", op="get", key=key, error=str(exc))
            return None
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def keys(self, prefix: str = "") -> list[str]:
        return [
            key.decode("utf-8") if isinstance(key, bytes) else str(key)
            for key in self._client.scan_iter(match=f"{prefix}*")
        ]

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            self._logger.error("lock_store_unreachable", op="ping", error=str(exc))
            return False
