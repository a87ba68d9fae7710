"""
Result Cache for the sandbox engine

Memoizes successful execution results in Redis, keyed by a SHA-256 hash of
the exact command string. The cache is an optimization only: when Redis is
not configured or cannot be reached, every lookup is a miss and every store
is a no-op.
"""

import asyncio
import hashlib
import logging

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ..errors import CacheUnavailableError
from ..schemas.execution import ExecutionResult

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "sandbox:exec:"

# Failures that mean "cache store unreachable or misbehaving"
_CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError, CacheUnavailableError)


def make_cache_key(command: str, prefix: str = DEFAULT_KEY_PREFIX) -> str:
    """Deterministic cache key for a literal command string."""
    digest = hashlib.sha256(command.encode("utf-8")).hexdigest()
    return f"{prefix}{digest}"


class ResultCache:
    """Redis-backed store of successful ExecutionResults."""

    def __init__(
        self,
        url: str | None = None,
        ttl_seconds: int = 3600,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        socket_timeout: float = 1.0,
        client: aioredis.Redis | None = None,
    ):
        self.url = url
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self.socket_timeout = socket_timeout
        self._client = client

        self.hits = 0
        self.misses = 0
        self.errors = 0

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def key_for(self, command: str) -> str:
        return make_cache_key(command, self.key_prefix)

    async def connect(self) -> bool:
        """
        Connect and ping the cache store.

        Returns:
            True if the cache is usable, False if caching is disabled.
        """
        if self._client is None:
            if not self.url:
                logger.info("No cache URL configured; result caching disabled")
                return False
            self._client = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )

        try:
            await self._client.ping()
        except _CACHE_ERRORS as e:
            logger.warning(f"Result cache unreachable; continuing without cache: {e}")
            await self._close_client()
            return False

        logger.info("Result cache connected")
        return True

    async def get(self, key: str) -> ExecutionResult | None:
        """Return the cached result for `key`, or None on miss or cache failure."""
        if self._client is None:
            self.misses += 1
            return None

        try:
            raw = await self._client.get(key)
        except _CACHE_ERRORS as e:
            self.errors += 1
            self.misses += 1
            logger.warning(f"Cache lookup failed, treating as miss: {e}")
            return None

        if raw is None:
            self.misses += 1
            return None

        try:
            result = ExecutionResult.model_validate_json(raw)
        except ValidationError:
            self.misses += 1
            logger.warning(f"Discarding malformed cache entry {key}")
            return None

        self.hits += 1
        return result

    async def set(self, key: str, result: ExecutionResult, ttl_seconds: int | None = None) -> bool:
        """
        Store a successful result.

        Unsuccessful results are never stored. Returns True if written.
        """
        if not result.success:
            return False
        if self._client is None:
            return False

        try:
            await self._client.set(
                key,
                result.model_dump_json(),
                ex=ttl_seconds or self.ttl_seconds,
            )
        except _CACHE_ERRORS as e:
            self.errors += 1
            logger.warning(f"Cache store failed, result not cached: {e}")
            return False
        return True

    async def close(self) -> None:
        await self._close_client()

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.aclose()
        except _CACHE_ERRORS:
            logger.debug("Error closing cache client", exc_info=True)
