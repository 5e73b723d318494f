"""
Connection factory enforcing the connection-isolation rule.

A blocking XREADGROUP or a SUBSCRIBE monopolizes its connection for the
duration of the call. Producer traffic (XADD, XACK, PUBLISH, XPENDING) uses
the one shared pooled client; every blocking consumer, subscription and
drain gets its own dedicated single-connection client from ``dedicated()``.
"""

from __future__ import annotations

from typing import Optional, Protocol

import redis.asyncio as aioredis
from loguru import logger

from ..settings import OrchestratorSettings


class ConnectionFactory(Protocol):
    def shared(self): ...

    def dedicated(self, name: str): ...

    async def aclose(self) -> None: ...


class RedisConnections:
    """Builds Redis clients from settings.

    Example:
        connections = RedisConnections(settings)
        producer = ProducerStreams(connections.shared())
        blocking_client = connections.dedicated("thumbnail-consumer")
    """

    def __init__(self, settings: OrchestratorSettings):
        self._settings = settings
        self._shared: Optional[aioredis.Redis] = None

    def _options(self) -> dict:
        return {
            "decode_responses": True,
            # Must exceed BLOCK_MS or blocking claims would time out client-side.
            "socket_timeout": max(self._settings.SOCKET_TIMEOUT_S, self._settings.BLOCK_MS / 1000 + 5),
            "socket_connect_timeout": self._settings.SOCKET_CONNECT_TIMEOUT_S,
        }

    def shared(self) -> aioredis.Redis:
        if self._shared is None:
            self._shared = aioredis.Redis.from_url(self._settings.REDIS_URL, **self._options())
            logger.debug("Shared Redis client created")
        return self._shared

    def dedicated(self, name: str) -> aioredis.Redis:
        client = aioredis.Redis.from_url(
            self._settings.REDIS_URL,
            single_connection_client=True,
            client_name=name,
            **self._options(),
        )
        logger.debug(f"Dedicated Redis client created name={name}")
        return client

    async def aclose(self) -> None:
        shared, self._shared = self._shared, None
        if shared is not None:
            await shared.aclose()
