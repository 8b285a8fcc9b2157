"""
Centralized Redis Client Management.

Provides singleton Redis client with connection pooling. Used by the Redis
balance store and the cross-worker subscription lock manager.
"""

from typing import TypeAlias

import structlog
from redis.asyncio import ConnectionPool, Redis

from dropmarket.settings import settings

logger = structlog.get_logger(__name__)

RedisClientType: TypeAlias = Redis


class RedisClientManager:
    """
    Singleton Redis client manager with connection pooling.

    The pool is created from settings on first use. Creating it opens no
    connection, so engine assembly works without a reachable server.
    """

    _instance: "RedisClientManager | None" = None
    _pool: ConnectionPool | None = None
    _client: RedisClientType | None = None

    def __new__(cls) -> "RedisClientManager":
        """Ensure singleton instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def use_client(self, client: RedisClientType) -> None:
        """Install an externally created client (tests, embedded workers)."""
        self._client = client

    def get_client(self, socket_timeout: int = 5) -> RedisClientType:
        """Get the shared Redis client, building the pool on first call."""
        if self._client is None:
            url = settings.redis.redis_url
            self._pool = ConnectionPool.from_url(
                url,
                decode_responses=True,
                max_connections=settings.redis.max_connections,
                socket_timeout=socket_timeout,
            )
            self._client = Redis(connection_pool=self._pool)
            logger.info("redis.initialized", url=url)
        return self._client

    async def release_connections(self) -> None:
        """
        Disconnect pooled connections.

        Asyncio connections belong to the event loop that opened them; call this
        before that loop closes so the next loop opens fresh ones.
        """
        if self._client is not None:
            await self._client.connection_pool.disconnect()


# Global Redis client manager instance
redis_manager = RedisClientManager()
