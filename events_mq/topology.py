"""Typed broker declarations shared by publishers, consumers and provisioning scripts.

Every service declares the exchange through ``declare_exchange`` so the
properties cannot drift between independently deployed publishers and consumers.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aio_pika

from .config import Config
from .connection import ConnectionManager
from .routing import validate_pattern

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExchangeSpec:
    """A durable topic exchange."""

    name: str = 'events'
    durable: bool = True

    @classmethod
    def from_config(cls, cfg: Config) -> ExchangeSpec:
        return cls(name=cfg.exchange_name)


@dataclass(frozen=True)
class QueueSpec:
    """A per-service queue and the routing key patterns bound to it."""

    name: str
    bindings: tuple[str, ...] = ()
    durable: bool = True
    dead_letter: bool = True
    arguments: Mapping[str, Any] = field(default_factory=dict)

    def dlq_name(self, suffix: str) -> str:
        return f'{self.name}{suffix}'


async def declare_exchange(channel: AbstractChannel, spec: ExchangeSpec) -> AbstractExchange:
    """Declare the exchange. Safe to repeat while properties match."""
    return await channel.declare_exchange(spec.name, aio_pika.ExchangeType.TOPIC, durable=spec.durable)


async def declare_queue(
    channel: AbstractChannel, exchange: AbstractExchange, spec: QueueSpec, *, dlq_suffix: str = '.dlq'
) -> AbstractQueue:
    """Declare the queue, bind every pattern, and declare its dead-letter queue."""
    queue = await channel.declare_queue(spec.name, durable=spec.durable, arguments=dict(spec.arguments) or None)
    for pattern in spec.bindings:
        await queue.bind(exchange, routing_key=validate_pattern(pattern))
    if spec.dead_letter:
        await channel.declare_queue(spec.dlq_name(dlq_suffix), durable=True)
    logger.info(
        'Queue declared',
        extra={'queue': spec.name, 'exchange': exchange.name, 'bindings': list(spec.bindings)},
    )
    return queue


async def declare_topology(
    url: str, exchange: ExchangeSpec, queues: Iterable[QueueSpec], *, dlq_suffix: str = '.dlq'
) -> None:
    """Provision an exchange and its queues ahead of deployment."""
    connection = ConnectionManager(url)
    try:
        channel = await connection.open_channel()
        ex = await declare_exchange(channel, exchange)
        for spec in queues:
            await declare_queue(channel, ex, spec, dlq_suffix=dlq_suffix)
    finally:
        await connection.close()
