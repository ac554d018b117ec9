from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import suppress
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Unpack

import aio_pika

from .config import Config, ConfigOverrides
from .connection import TRANSPORT_ERRORS, ConnectionManager
from .envelope import EventEnvelope, decode
from .exceptions import HandlerFailed, InvalidSchema, MalformedEnvelope
from .observability import metrics
from .retry import DeadLetter, Retry, RetryPolicy
from .routing import matches, validate_pattern
from .topology import ExchangeSpec, QueueSpec, declare_exchange, declare_queue

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

    from .schema import SchemaRegistry

logger = logging.getLogger(__name__)

# Type for consumer handler callbacks
ConsumerHandler = Callable[[EventEnvelope], Awaitable[None] | None]


class Consumer:
    """Consumes one durable per-service queue and dispatches envelopes to handlers.

    Delivery is at-least-once: a handler may see the same event_id more than once
    and must be idempotent. Each message ends either acknowledged, requeued for
    redelivery, or moved to ``<queue><dlq_suffix>``.
    """

    def __init__(
        self,
        queue_name: str | None = None,
        cfg: Config | None = None,
        *,
        connection: ConnectionManager | None = None,
        schema_registry: SchemaRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        **overrides: Unpack[ConfigOverrides],
    ):
        base_cfg = cfg or Config()
        self.cfg = replace(base_cfg, **overrides) if overrides else base_cfg
        self.queue_name = queue_name or self.cfg.service_name
        self.exchange = ExchangeSpec.from_config(self.cfg)
        self.schema_registry = schema_registry
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.cfg)
        self._owns_connection = connection is None
        self._connection = connection or ConnectionManager(self.cfg.broker_url, timeout=self.cfg.connect_timeout)
        # Internal state
        self._channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None
        self._handlers: list[tuple[str, ConsumerHandler]] = []
        self._default_handler: ConsumerHandler | None = None
        self._attempts: dict[str, int] = {}
        self._stopping = asyncio.Event()
        self._started = False
        self._task: asyncio.Task[None] | None = None

    def on(self, pattern: str, handler: ConsumerHandler) -> Consumer:
        """Bind a routing key pattern to the queue and route matching events to handler.

        Patterns use topic syntax: ``agenda.election.*`` or ``agenda.#``.
        The first registered matching pattern wins. Returns self for a fluent API.
        """
        if self._started:
            raise RuntimeError('Cannot register handlers after the consumer started')
        self._handlers.append((validate_pattern(pattern), handler))
        return self

    def on_default(self, handler: ConsumerHandler) -> Consumer:
        """Register a fallback handler for events no pattern matches."""
        self._default_handler = handler
        return self

    @property
    def patterns(self) -> tuple[str, ...]:
        # dict.fromkeys keeps registration order while dropping duplicates
        return tuple(dict.fromkeys(pattern for pattern, _ in self._handlers))

    @property
    def queue_spec(self) -> QueueSpec:
        return QueueSpec(name=self.queue_name, bindings=self.patterns, dead_letter=self.cfg.dead_letter_enabled)

    @property
    def dlq_name(self) -> str:
        return self.queue_spec.dlq_name(self.cfg.dlq_suffix)

    # -------- Lifecycle --------
    async def start(self) -> None:
        if self._started:
            return
        if not self._handlers:
            raise ValueError('No routing key patterns to bind. Register handlers via .on(...) first.')

        self._channel = await self._connection.open_channel(prefetch_count=self.cfg.prefetch_count)
        exchange = await declare_exchange(self._channel, self.exchange)
        self._queue = await declare_queue(self._channel, exchange, self.queue_spec, dlq_suffix=self.cfg.dlq_suffix)
        self._started = True
        logger.info(
            'Consumer started',
            extra={'service': self.cfg.service_name, 'queue': self.queue_name, 'bindings': list(self.patterns)},
        )

    async def stop(self) -> None:
        if self._owns_connection:
            await self._connection.close()
        elif self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        was_started = self._started
        # Counts are per delivery run; redeliveries after a restart start over
        self._attempts.clear()
        self._channel = None
        self._queue = None
        self._started = False
        if was_started:
            logger.info('Consumer stopped', extra={'service': self.cfg.service_name, 'queue': self.queue_name})

    def request_stop(self) -> None:
        """Ask the loop to exit after the message it is currently handling, or right away when idle."""
        self._stopping.set()

    async def run_forever(self) -> None:
        """Start (if needed) and consume until stopped, handling one message at a time."""
        if not self._started:
            await self.start()
        if self._queue is None:
            raise RuntimeError('Consumer not started')

        try:
            async with self._queue.iterator() as messages:
                while (message := await self._next_message(messages)) is not None:
                    await self._handle_message(message)
                    if self._stopping.is_set():
                        logger.info('Consumer stop requested; leaving loop', extra={'queue': self.queue_name})
                        break
        except asyncio.CancelledError:  # graceful shutdown
            raise
        finally:
            await self.stop()

    async def _next_message(self, messages: AsyncIterator[AbstractIncomingMessage]) -> AbstractIncomingMessage | None:
        """Next delivery, or None once a stop is requested while waiting."""
        if self._stopping.is_set():
            return None
        getter = asyncio.ensure_future(messages.__anext__())
        stopper = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait((getter, stopper), return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not getter.done():
                getter.cancel()
                with suppress(asyncio.CancelledError, StopAsyncIteration):
                    await getter
        if getter.cancelled():
            logger.info('Consumer stop requested while idle', extra={'queue': self.queue_name})
            return None
        try:
            return getter.result()
        except StopAsyncIteration:
            return None

    # -------- Background helpers --------
    def start_background(self) -> asyncio.Task[None]:
        """Start the consumer loop in a background task.

        Returns the created asyncio.Task. Safe to call once; subsequent calls
        while a task is active will raise RuntimeError.
        """
        if self._task and not self._task.done():
            raise RuntimeError('Consumer background task already running')
        self._stopping.clear()
        self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop_background(self) -> None:
        """Stop the background task, letting an in-flight message finish first."""
        self.request_stop()
        task = self._task
        if task and not task.done():
            with suppress(asyncio.CancelledError):
                await task
        self._task = None
        # Ensure underlying connection is closed (idempotent)
        await self.stop()

    async def health_check(self) -> bool:
        return self._started and await self._connection.health_check()

    # -------- Processing --------
    async def _handle_message(self, message: AbstractIncomingMessage) -> None:
        routing_key = message.routing_key or ''
        logger.debug('Message delivered', extra={'queue': self.queue_name, 'routing_key': routing_key})

        try:
            envelope = decode(message.body)
        except MalformedEnvelope as exc:
            logger.exception('Failed to decode message as EventEnvelope', extra={'routing_key': routing_key})
            await self._reject_malformed(message, exc)
            return

        if self.schema_registry is not None:
            try:
                await self.schema_registry.validate(envelope.event_type, envelope.event_version, envelope.data)
            except MalformedEnvelope as exc:
                logger.exception('Event data failed schema validation', extra={'event_type': envelope.event_type})
                await self._reject_malformed(message, exc)
                return
            except InvalidSchema as exc:
                # Broken schema file: retry like a failing handler until it is fixed
                await self._on_handler_failure(message, envelope, self._failure(message, envelope, exc))
                return

        try:
            await self._dispatch(envelope)
        except Exception as exc:
            await self._on_handler_failure(message, envelope, self._failure(message, envelope, exc))
            return

        await message.ack()
        self._forget(envelope)
        metrics.events_consumed.labels(queue=self.queue_name, service=self.cfg.service_name).inc()

    async def _dispatch(self, envelope: EventEnvelope) -> None:
        handler = next((h for pattern, h in self._handlers if matches(pattern, envelope.event_type)), None)
        handler = handler or self._default_handler
        if handler is None:
            logger.warning(
                'No handler registered for event_type; dropping',
                extra={'event_type': envelope.event_type, 'queue': self.queue_name},
            )
            return
        res = handler(envelope)
        if inspect.isawaitable(res):
            await res

    def _failure(self, message: AbstractIncomingMessage, envelope: EventEnvelope, exc: Exception) -> HandlerFailed:
        attempt = self._attempt_for(message, envelope)
        failure = HandlerFailed(str(exc), event_id=envelope.event_id, event_type=envelope.event_type, attempt=attempt)
        failure.__cause__ = exc
        return failure

    def _attempt_for(self, message: AbstractIncomingMessage, envelope: EventEnvelope) -> int:
        """1-based delivery attempt for this message."""
        count = (message.headers or {}).get('x-delivery-count')
        if isinstance(count, int) and not isinstance(count, bool):
            # quorum queues count previous failed deliveries
            return count + 1
        if envelope.event_id is None:
            return 2 if message.redelivered else 1
        self._attempts[envelope.event_id] = self._attempts.get(envelope.event_id, 0) + 1
        return self._attempts[envelope.event_id]

    def _forget(self, envelope: EventEnvelope) -> None:
        if envelope.event_id is not None:
            self._attempts.pop(envelope.event_id, None)

    async def _on_handler_failure(
        self, message: AbstractIncomingMessage, envelope: EventEnvelope, failure: HandlerFailed
    ) -> None:
        extra = {
            'queue': self.queue_name,
            'event_id': envelope.event_id,
            'event_type': envelope.event_type,
            'attempt': failure.attempt,
        }
        outcome = self.retry_policy.decide(failure.attempt, failure)

        if isinstance(outcome, Retry):
            logger.warning(
                'Event handler failed; requeueing', extra={**extra, 'delay': outcome.delay}, exc_info=failure
            )
            if outcome.delay > 0:
                await asyncio.sleep(outcome.delay)
            await message.nack(requeue=True)
            metrics.events_redelivered.labels(queue=self.queue_name, service=self.cfg.service_name).inc()
            return

        if isinstance(outcome, DeadLetter):
            logger.error('Event processing failed; retries exhausted', extra=extra, exc_info=failure)
            if not self.cfg.dead_letter_enabled:
                # No dead-letter queue to park it in; the queue has no broker-side DLX either
                logger.warning('Dead-lettering disabled; requeueing exhausted event', extra=extra)
                await message.nack(requeue=True)
                metrics.events_redelivered.labels(queue=self.queue_name, service=self.cfg.service_name).inc()
                return
            if await self._send_to_dlq(message, reason=outcome.reason, error=failure):
                await message.ack()
                self._forget(envelope)
                metrics.events_failed.labels(
                    queue=self.queue_name, service=self.cfg.service_name, reason='dead_lettered'
                ).inc()
            else:
                # Keep the message rather than lose it
                await message.nack(requeue=True)

    async def _reject_malformed(self, message: AbstractIncomingMessage, error: MalformedEnvelope) -> None:
        if not self.cfg.dead_letter_enabled:
            await message.nack(requeue=False)
        elif await self._send_to_dlq(message, reason=str(error), error=error):
            await message.ack()
        else:
            await message.nack(requeue=True)
            return
        metrics.events_failed.labels(queue=self.queue_name, service=self.cfg.service_name, reason='malformed').inc()

    async def _send_to_dlq(self, message: AbstractIncomingMessage, *, reason: str, error: Exception) -> bool:
        """Republish the original body to the dead-letter queue. Returns False if that failed."""
        if self._channel is None:
            raise RuntimeError('Consumer not started')

        # Attach error metadata via headers to keep the body unchanged
        headers: dict[str, Any] = dict(message.headers or {})
        headers.update(
            {
                'x-error-type': type(error).__name__,
                'x-error-msg': reason,
                'x-source-service': self.cfg.service_name,
                'x-original-queue': self.queue_name,
                'x-original-routing-key': message.routing_key or '',
            }
        )
        dead = aio_pika.Message(
            body=message.body,
            content_type=message.content_type or 'application/json',
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=message.message_id,
            headers=headers,
        )
        try:
            await self._channel.default_exchange.publish(dead, routing_key=self.dlq_name)
        except TRANSPORT_ERRORS:
            logger.exception('Failed to publish to DLQ', extra={'dlq': self.dlq_name})
            return False
        return True


async def run(
    queue_name: str,
    routing_key_patterns: Iterable[str],
    handler: ConsumerHandler,
    *,
    cfg: Config | None = None,
    **overrides: Unpack[ConfigOverrides],
) -> None:
    """Bind ``queue_name`` to every pattern and feed each event to ``handler`` until cancelled.

    Intended for a dedicated worker task, never the request path.
    """
    consumer = Consumer(queue_name, cfg, **overrides)
    for pattern in routing_key_patterns:
        consumer.on(pattern, handler)
    await consumer.run_forever()
