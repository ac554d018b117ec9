import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from events_mq import Consumer, EventEnvelope
from events_mq.schema import schema_registry

logger = logging.getLogger(__name__)

# Handlers must be idempotent: the same event_id can arrive more than once.
_seen: set[str] = set()


async def handle_election(event: EventEnvelope) -> None:
    if event.event_id in _seen:
        return
    logger.info('election event', extra={'event_type': event.event_type, 'data': event.data})
    _seen.add(event.event_id or '')


def handle_vote_created(event: EventEnvelope) -> None:
    logger.info('vote created', extra={'options': event.data['options']})


# One durable queue per service, bound to every pattern registered below
consumer = (
    Consumer('notification-service', schema_registry=schema_registry)
    .on('agenda.election.*', handle_election)
    .on('voting.create', handle_vote_created)
)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    # Startup: start consumer in background
    consumer.start_background()
    try:
        yield
    finally:
        # Shutdown: finish the in-flight message, then close the connection
        await consumer.stop_background()


app = FastAPI(title='Example events-mq consumer', lifespan=lifespan)


@app.get('/health')
async def health() -> dict[str, str]:
    return {'status': 'ok' if await consumer.health_check() else 'degraded'}
