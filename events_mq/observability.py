from __future__ import annotations

from prometheus_client import Counter


class _Metrics:
    def __init__(self) -> None:
        self.events_published = Counter(
            "events_mq_published_total",
            "Total number of events published",
            labelnames=["routing_key", "service", "version"],
        )
        self.events_consumed = Counter(
            "events_mq_consumed_total",
            "Total number of events handled and acknowledged",
            labelnames=["queue", "service"],
        )
        self.events_failed = Counter(
            "events_mq_failed_total",
            "Total number of events rejected or sent to the dead-letter queue",
            labelnames=["queue", "service", "reason"],
        )
        self.events_redelivered = Counter(
            "events_mq_redelivered_total",
            "Total number of events requeued after a handler failure",
            labelnames=["queue", "service"],
        )


metrics = _Metrics()
