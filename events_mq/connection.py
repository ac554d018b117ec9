from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPException, ChannelInvalidStateError
from aio_pika.pool import Pool

from .config import Config
from .exceptions import ConnectionFailed

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractRobustConnection

logger = logging.getLogger(__name__)

# Errors that mean "the broker is unreachable or dropped us".
# ChannelInvalidStateError is a RuntimeError raised on a channel closed mid-operation.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (AMQPException, ChannelInvalidStateError, OSError)


class ConnectionManager:
    """One robust connection per process plus a bounded pool of channels.

    Channels are leased with ``async with manager.channel() as ch`` and go back
    to the pool afterwards; a leased channel that was closed underneath us is
    reopened before it is handed out.
    """

    def __init__(
        self,
        url: str,
        *,
        publisher_confirms: bool = False,
        channel_pool_size: int = 10,
        timeout: float | None = None,
        **connect_kwargs: Any,
    ):
        self._url = url
        self._publisher_confirms = publisher_confirms
        self._channel_pool_size = channel_pool_size
        self._timeout = timeout
        self._connect_kwargs = connect_kwargs
        self._connection: AbstractRobustConnection | None = None
        # Created on connect(); aio-pika pools bind to the running loop
        self._channel_pool: Pool[AbstractChannel] | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, cfg: Config) -> ConnectionManager:
        return cls(
            cfg.broker_url,
            publisher_confirms=cfg.publisher_confirms,
            channel_pool_size=cfg.channel_pool_size,
            timeout=cfg.connect_timeout,
        )

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> None:
        """Open the connection and channel pool. Idempotent while connected."""
        async with self._lock:
            if self.is_connected and self._channel_pool is not None:
                return
            try:
                self._connection = await aio_pika.connect_robust(
                    self._url, timeout=self._timeout, **self._connect_kwargs
                )
            except (*TRANSPORT_ERRORS, ValueError) as exc:
                # ValueError: malformed broker URL
                raise ConnectionFailed(f'could not connect to broker: {exc}') from exc
            self._channel_pool = Pool(self._new_channel, max_size=self._channel_pool_size)
            logger.info('Broker connection opened', extra={'pool_size': self._channel_pool_size})

    async def close(self) -> None:
        if self._channel_pool is not None:
            await self._channel_pool.close()
            self._channel_pool = None
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info('Broker connection closed')

    async def _new_channel(self) -> AbstractChannel:
        if self._connection is None:
            raise ConnectionFailed('Not connected; call connect() first')
        return await self._connection.channel(publisher_confirms=self._publisher_confirms)

    @asynccontextmanager
    async def channel(self) -> AsyncIterator[AbstractChannel]:
        """Lease a pooled channel, connecting first if needed."""
        await self.connect()
        if self._channel_pool is None:
            raise ConnectionFailed('Not connected; call connect() first')
        async with self._channel_pool.acquire() as channel:
            if channel.is_closed:
                logger.warning('Pooled channel was closed; reopening')
                await channel.reopen()
            yield channel

    async def open_channel(self, *, prefetch_count: int | None = None) -> AbstractChannel:
        """Open a dedicated, unpooled channel (the consumer keeps one for its lifetime)."""
        await self.connect()
        if self._connection is None:
            raise ConnectionFailed('Not connected; call connect() first')
        try:
            channel = await self._connection.channel()
            if prefetch_count is not None:
                await channel.set_qos(prefetch_count=prefetch_count)
        except TRANSPORT_ERRORS as exc:
            raise ConnectionFailed(f'could not open channel: {exc}') from exc
        return channel

    async def health_check(self) -> bool:
        return self.is_connected
