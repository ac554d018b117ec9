from __future__ import annotations


class EventsBusError(Exception):
    """Base class for all events-mq errors."""


class MalformedEnvelope(EventsBusError):
    """The message body could not be decoded as a valid event envelope.

    Not retryable: redelivering the same bytes cannot succeed.
    """


class ConnectionFailed(EventsBusError):
    """Connecting to the broker or opening a channel failed."""


class PublishFailed(EventsBusError):
    """Transport-level failure while publishing an event. Never retried internally."""

    def __init__(self, message: str, routing_key: str | None = None) -> None:
        self.routing_key = routing_key
        super().__init__(message)


class HandlerFailed(EventsBusError):
    """The business handler raised while processing a delivered event."""

    def __init__(self, message: str, *, event_id: str | None, event_type: str, attempt: int) -> None:
        self.event_id = event_id
        self.event_type = event_type
        self.attempt = attempt
        super().__init__(message)


class InvalidSchema(EventsBusError):
    """A registered schema file exists but cannot be parsed or is not a valid JSON Schema.

    A deployment error rather than a bad message; consumers treat it like a handler failure.
    """
