"""WA Gateway – Redis event bus.

Session lifecycle transitions are published as JSON on ``wagw:events`` so
dashboards and other services can follow connection state without polling.
Publishing is best effort: the gateway keeps running when Redis is down.
"""

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()


class RedisBus:
    """Async Redis publisher for gateway events."""

    CHANNEL_EVENTS = "wagw:events"

    def __init__(self, redis_url: str = "redis://127.0.0.1:6379/0", client: redis.Redis | None = None) -> None:
        self._redis_url = redis_url
        self._client: redis.Redis | None = client

    async def connect(self) -> None:
        self._client = redis.from_url(
            self._redis_url,
            decode_responses=True,
            retry_on_timeout=True,
        )
        await self._client.ping()
        logger.info("redis.connected", url=self._redis_url)

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
        self._client = None
        logger.info("redis.disconnected")

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def health_check(self) -> bool:
        if not self._client:
            return False
        try:
            return bool(await self._client.ping())
        except (redis.ConnectionError, redis.TimeoutError):
            logger.error("redis.health_check_failed")
            return False

    async def publish(self, channel: str, message: str) -> int:
        """Publish ``message`` (JSON text) and return the subscriber count."""
        if not self._client:
            raise RuntimeError("Redis not connected. Call connect() first.")
        count = await self._client.publish(channel, message)
        logger.debug("redis.published", channel=channel, subscribers=count)
        return count
