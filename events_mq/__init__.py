from .config import Config
from .connection import ConnectionManager
from .consumer import Consumer, run
from .envelope import EventEnvelope, decode, encode
from .exceptions import (
    ConnectionFailed,
    EventsBusError,
    HandlerFailed,
    InvalidSchema,
    MalformedEnvelope,
    PublishFailed,
)
from .publisher import Publisher, publish
from .retry import RetryPolicy
from .schema import SchemaRegistry
from .topology import ExchangeSpec, QueueSpec

__all__ = [
    'Config',
    'ConnectionFailed',
    'ConnectionManager',
    'Consumer',
    'EventEnvelope',
    'EventsBusError',
    'ExchangeSpec',
    'HandlerFailed',
    'InvalidSchema',
    'MalformedEnvelope',
    'PublishFailed',
    'Publisher',
    'QueueSpec',
    'RetryPolicy',
    'SchemaRegistry',
    'decode',
    'encode',
    'publish',
    'run',
]
