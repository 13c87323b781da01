import json
import logging
from typing import Any, Dict

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "vibecap:"

_REDIS_ERRORS = (RedisConnectionError, RedisTimeoutError)


class RedisCrudService:
    """Namespaced string and JSON documents in Redis.

    Sessions and application records both live here. Nothing raises after
    connect(): a failed read comes back as None and a failed write as False,
    and the caller decides whether that matters.
    """

    def __init__(self, url: str, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._url = url
        self._namespace = namespace
        self._client: Redis | None = None

    def _k(self, key: str) -> str:
        return self._namespace + key

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the client and ping it. A failed ping leaves the service disconnected and re-raises."""
        if self.connected:
            return
        client = Redis.from_url(self._url, decode_responses=True)
        try:
            await client.ping()
        except _REDIS_ERRORS as e:
            logger.warning("Cannot reach Redis at %s: %s", self._url.rsplit("@", 1)[-1], e)
            await client.aclose()
            raise
        self._client = client
        logger.info("Connected to Redis at %s", self._url.rsplit("@", 1)[-1])

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        await client.aclose()
        logger.debug("Redis client closed")

    async def get(self, key: str, strict: bool = False) -> str | None:
        """Return the value at key, or None when it is missing.

        Read failures also give None unless strict is set, in which case they
        raise, so callers can tell "absent" from "could not read".
        """
        if self._client is None:
            if strict:
                raise RedisConnectionError("Redis client is not connected")
            return None
        try:
            value = await self._client.get(self._k(key))
        except _REDIS_ERRORS as e:
            logger.warning("Redis read of %s failed: %s", key, e)
            if strict:
                raise
            return None
        return None if value is None else str(value)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Store value under key, expiring after ttl_seconds when that is positive."""
        if self._client is None:
            return False
        name = self._k(key)
        try:
            if ttl_seconds:
                await self._client.setex(name, ttl_seconds, value)
            else:
                await self._client.set(name, value)
        except _REDIS_ERRORS as e:
            logger.warning("Redis write of %s failed: %s", key, e)
            return False
        return True

    async def get_json(self, key: str) -> Dict[str, Any] | None:
        """Decode the JSON object at key. Anything other than an object reads as missing."""
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Discarding malformed JSON at %s: %s", key, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Expected a JSON object at %s, got %s", key, type(data).__name__)
            return None
        return data

    async def set_json(
        self, key: str, data: Dict[str, Any], ttl_seconds: int | None = None
    ) -> bool:
        try:
            payload = json.dumps(data)
        except (TypeError, ValueError) as e:
            logger.warning("Cannot encode %s as JSON: %s", key, e)
            return False
        return await self.set(key, payload, ttl_seconds=ttl_seconds)

    async def delete(self, key: str) -> bool:
        """Remove key. A key that did not exist still counts as deleted."""
        if self._client is None:
            return False
        try:
            await self._client.delete(self._k(key))
        except _REDIS_ERRORS as e:
            logger.warning("Redis delete of %s failed: %s", key, e)
            return False
        return True


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a RedisCrudService for settings.redis_url, or None when no URL is set."""
    url = (get_settings().redis_url or "").strip()
    if not url:
        return None
    return RedisCrudService(url)
