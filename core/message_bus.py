"""
Redis Streams message bus carrying agent events to external observers.

Each logical channel (thoughts, executions, market conditions) maps to a
separate Redis Stream.  The presentation layer reads them through its own
consumer groups; the agent only ever publishes.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from pydantic import BaseModel

from config.settings import settings

logger = logging.getLogger(__name__)

# Stream names — single source of truth.
STREAM_AGENT_THOUGHTS = "agent:thoughts"
STREAM_AGENT_EXECUTIONS = "agent:executions"
STREAM_MARKET_CONDITIONS = "market:conditions"

# Cap stream length so an absent consumer cannot grow Redis unbounded.
_STREAM_MAXLEN = 10_000


def _serialize(model: BaseModel) -> dict[str, str]:
    """Flatten a Pydantic model into a Redis-friendly string dict."""
    return {"payload": model.model_dump_json()}


class MessageBus:
    """Thin async wrapper around Redis Streams."""

    def __init__(self, redis_url: str | None = None) -> None:
        self._url = redis_url or settings.redis_url
        self._redis: aioredis.Redis | None = None

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Open the Redis connection pool."""
        self._redis = aioredis.from_url(self._url, decode_responses=False)
        await self._redis.ping()
        logger.info("MessageBus connected to Redis at %s", self._url)

    async def close(self) -> None:
        """Drain and close the connection pool."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("MessageBus connection closed.")

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("MessageBus is not connected. Call connect() first.")
        return self._redis

    # -- publishing ----------------------------------------------------------

    async def publish_to(self, stream: str, model: BaseModel) -> str:
        """Publish a Pydantic model to *stream*. Returns the message id."""
        msg_id: bytes = await self.redis.xadd(
            stream, _serialize(model), maxlen=_STREAM_MAXLEN, approximate=True,
        )
        decoded = msg_id.decode() if isinstance(msg_id, bytes) else msg_id
        logger.debug("Published to %s: %s", stream, decoded)
        return decoded

    # -- utilities -----------------------------------------------------------

    async def health_check(self) -> bool:
        """Return True if Redis is reachable."""
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False
