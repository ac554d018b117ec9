import logging
from collections.abc import Mapping
from dataclasses import replace
from types import TracebackType
from typing import Any, Unpack

import aio_pika

from .config import Config, ConfigOverrides
from .connection import TRANSPORT_ERRORS, ConnectionManager
from .envelope import EventEnvelope
from .exceptions import ConnectionFailed, PublishFailed
from .observability import metrics
from .routing import validate_routing_key
from .topology import ExchangeSpec, declare_exchange

logger = logging.getLogger(__name__)


class Publisher:
    def __init__(
        self,
        cfg: Config | None = None,
        *,
        connection: ConnectionManager | None = None,
        **overrides: Unpack[ConfigOverrides],
    ):
        """Create a Publisher.

        Args:
            cfg: Optional Config instance. If not provided, defaults from env are used.
            connection: Optional shared ConnectionManager; one is built from cfg otherwise.
            **overrides: Individual Config field overrides (e.g., exchange_name='events').
        """
        # Base config from provided cfg or environment defaults, then apply overrides
        base_cfg = cfg or Config()
        # dataclasses.replace validates field names and immutably returns a new instance
        self.cfg = replace(base_cfg, **overrides) if overrides else base_cfg
        self.exchange = ExchangeSpec.from_config(self.cfg)
        self._owns_connection = connection is None
        self._connection = connection or ConnectionManager.from_config(self.cfg)

    async def start(self) -> None:
        await self._connection.connect()
        logger.info('Publisher started', extra={'service': self.cfg.service_name, 'exchange': self.exchange.name})

    async def stop(self) -> None:
        if self._owns_connection:
            await self._connection.close()
            logger.info('Publisher stopped', extra={'service': self.cfg.service_name})

    async def __aenter__(self) -> 'Publisher':
        await self.start()
        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: TracebackType | None
    ) -> None:
        await self.stop()

    async def publish(self, routing_key: str, data: Mapping[str, Any], version: int = 1) -> EventEnvelope:
        """Publish one event under ``routing_key``.

        Returns once the broker accepted the message (or confirmed it, when
        publisher confirms are enabled). Not retried on failure.

        Raises:
            ValueError: routing_key is empty or contains wildcards.
            MalformedEnvelope: data cannot be wrapped in an envelope.
            PublishFailed: the broker could not be reached or rejected the publish.
        """
        validate_routing_key(routing_key)
        envelope = EventEnvelope.build(
            event_type=routing_key,
            data=data,
            producer=self.cfg.service_name,
            event_version=version,
        )
        body = envelope.to_bytes()
        message = aio_pika.Message(
            body=body,
            content_type='application/json',
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=envelope.event_id,
            type=envelope.event_type,
            app_id=envelope.producer,
        )

        try:
            async with self._connection.channel() as channel:
                exchange = await declare_exchange(channel, self.exchange)
                await exchange.publish(message, routing_key=routing_key, timeout=self.cfg.publish_timeout)
        except (ConnectionFailed, *TRANSPORT_ERRORS) as exc:
            logger.error(
                'event_publish_failed',
                extra={'routing_key': routing_key, 'event_id': envelope.event_id, 'error': str(exc)},
            )
            raise PublishFailed(f'failed to publish {routing_key}: {exc}', routing_key=routing_key) from exc

        metrics.events_published.labels(
            routing_key=routing_key, service=self.cfg.service_name, version=str(envelope.event_version)
        ).inc()
        logger.info(
            'event_published',
            extra={
                'routing_key': routing_key,
                'event_id': envelope.event_id,
                'event_type': envelope.event_type,
                'version': envelope.event_version,
            },
        )
        return envelope


_default_publisher: Publisher | None = None


def default_publisher() -> Publisher:
    """Process-wide publisher configured from the environment."""
    global _default_publisher
    if _default_publisher is None:
        _default_publisher = Publisher()
    return _default_publisher


async def publish(routing_key: str, data: Mapping[str, Any], version: int = 1) -> EventEnvelope:
    return await default_publisher().publish(routing_key, data, version)


async def close_default_publisher() -> None:
    global _default_publisher
    if _default_publisher is not None:
        await _default_publisher.stop()
        _default_publisher = None
