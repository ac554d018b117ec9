from __future__ import annotations

import dataclasses

import pytest

from events_mq.config import Config
from events_mq.consumer import Consumer
from events_mq.publisher import Publisher


def test_overrides_replace_fields_without_mutating_base() -> None:
    base = Config(service_name='base', exchange_name='events')
    pub = Publisher(base, service_name='voting-service', publish_timeout=2.0)
    assert pub.cfg.service_name == 'voting-service'
    assert pub.cfg.publish_timeout == 2.0
    assert pub.cfg.exchange_name == 'events'
    assert base.service_name == 'base'


def test_unknown_override_is_rejected() -> None:
    with pytest.raises(TypeError):
        Consumer('q', Config(), no_such_field=1)  # type: ignore[call-arg]


def test_config_is_frozen() -> None:
    with pytest.raises(dataclasses.FrozenInstanceError):
        Config().exchange_name = 'x'  # type: ignore[misc]


def test_consumer_retry_policy_follows_config() -> None:
    consumer = Consumer('q', Config(max_retry_attempts=0, initial_retry_backoff_ms=100))
    assert consumer.retry_policy.unbounded
    assert consumer.retry_policy.initial_backoff == 0.1
