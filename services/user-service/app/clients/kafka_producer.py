"""
Async Kafka producer.

Publishes three event types:
  user-followed     — a new follower → following edge was committed.
                      Keyed by follow-{follower_id}-{following_id} so
                      consumers can drop redeliveries.
  user-unfollowed   — an edge was deleted.
  dead-letter-queue — a follow/unfollow failed after the client was already
                      answered with 202; consumed by reconciliation tooling.

Payloads are flat JSON objects with camelCase keys, the same shape the
rest of the platform already consumes.
"""
import json
import logging
from typing import Any, Optional

from aiokafka import AIOKafkaProducer

from app.config import settings

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(self) -> None:
        self._producer: Optional[AIOKafkaProducer] = None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k is not None else None,
            acks="all",          # wait for all in-sync replicas
            enable_idempotence=True,
            request_timeout_ms=settings.kafka_request_timeout_ms,
            retry_backoff_ms=settings.kafka_retry_backoff_ms,
        )
        await self._producer.start()
        logger.info("Kafka producer started → %s", settings.kafka_bootstrap_servers)

    async def stop(self) -> None:
        if self._producer:
            await self._producer.stop()

    def _get_producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            raise RuntimeError("Kafka producer not initialised")
        return self._producer

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        dedup_key: Optional[str] = None,
    ) -> None:
        """
        Send one event and wait for the broker acknowledgement.

        The dedup key doubles as the Kafka message key, which also pins every
        event for the same edge to one partition. Errors propagate to the
        caller.
        """
        producer = self._get_producer()
        await producer.send_and_wait(topic, payload, key=dedup_key)
        logger.debug("Published %s event (key=%s)", topic, dedup_key)


# Singleton
event_publisher = EventPublisher()


def get_event_publisher() -> EventPublisher:
    """FastAPI dependency; overridden in tests."""
    return event_publisher
