"""Canonical JSON wrapper carried by every event on the broker.

Wire shape::

    {"event_type": "voting.create", "event_version": 1, "event_id": "<uuid4>",
     "timestamp": "2024-01-01T00:00:00.000Z", "producer": "voting-service",
     "data": {...}}

Only ``event_type`` and ``data`` are set by callers; the rest is stamped at
publish time.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from .exceptions import MalformedEnvelope

ENVELOPE_KEYS = ('event_type', 'event_version', 'event_id', 'timestamp', 'producer', 'data')


def iso_utc_ts() -> str:
    return datetime.now(UTC).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@dataclass(frozen=True)
class EventEnvelope:
    event_type: str
    data: dict[str, Any]
    event_version: int = 1
    event_id: str | None = None
    timestamp: str | None = None
    producer: str | None = None

    @classmethod
    def build(
        cls,
        *,
        event_type: str,
        data: Mapping[str, Any],
        producer: str,
        event_version: int = 1,
        event_id: str | None = None,
    ) -> EventEnvelope:
        if not isinstance(event_type, str) or not event_type:
            raise MalformedEnvelope('event_type must be a non-empty string')
        if not isinstance(data, Mapping):
            raise MalformedEnvelope(f'data must be a mapping, got {type(data).__name__}')
        _check_version(event_version)
        return cls(
            event_type=event_type,
            data=dict(data),
            event_version=event_version,
            event_id=event_id or str(uuid.uuid4()),
            timestamp=iso_utc_ts(),
            producer=producer,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_bytes(self) -> bytes:
        try:
            return json.dumps(self.to_dict()).encode('utf-8')
        except (TypeError, ValueError) as exc:
            raise MalformedEnvelope(f'data is not JSON serializable: {exc}') from exc


def _check_version(version: Any) -> None:
    # bool is an int subclass; True must not pass as version 1
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise MalformedEnvelope(f'event_version must be a positive integer, got {version!r}')


def encode(event_type: str, data: Mapping[str, Any], version: int = 1, *, producer: str) -> bytes:
    """Build a fresh envelope (new event_id and timestamp) and serialize it to JSON bytes."""
    envelope = EventEnvelope.build(event_type=event_type, data=data, producer=producer, event_version=version)
    return envelope.to_bytes()


def decode(raw: bytes) -> EventEnvelope:
    """Parse JSON bytes back into an EventEnvelope.

    Raises:
        MalformedEnvelope: body is not a JSON object, or event_type/data are missing or invalid.
    """
    try:
        obj = json.loads(raw.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedEnvelope(f'body is not valid JSON: {exc}') from exc

    if not isinstance(obj, dict):
        raise MalformedEnvelope(f'envelope must be a JSON object, got {type(obj).__name__}')

    missing = [key for key in ('event_type', 'data') if key not in obj]
    if missing:
        raise MalformedEnvelope(f'envelope missing required keys: {", ".join(missing)}')

    event_type = obj['event_type']
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEnvelope('event_type must be a non-empty string')
    data = obj['data']
    if not isinstance(data, dict):
        raise MalformedEnvelope(f'data must be a JSON object, got {type(data).__name__}')
    version = obj.get('event_version', 1)
    _check_version(version)

    return EventEnvelope(
        event_type=event_type,
        data=data,
        event_version=version,
        event_id=obj.get('event_id'),
        timestamp=obj.get('timestamp'),
        producer=obj.get('producer'),
    )
