"""
Kafka realtime bus — fire-and-forget.

Publishes emergency fan-out events for connected clients
(donor apps, hospital dashboards).
Gracefully degrades if Kafka is disabled or unavailable.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import structlog

from bloodmatch.core.config import Settings, get_settings

logger = structlog.get_logger()


class KafkaRealtimeBus:

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._producer = None

    async def _get_producer(self):
        if not self.settings.kafka_enabled:
            return None
        if self._producer is None:
            from aiokafka import AIOKafkaProducer
            self._producer = AIOKafkaProducer(bootstrap_servers=self.settings.kafka_bootstrap)
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, event: dict[str, Any]) -> None:
        if not self.settings.kafka_enabled:
            return

        try:
            producer = await self._get_producer()
            if producer:
                key = event.get("request_id")
                await producer.send_and_wait(
                    topic,
                    json.dumps(event, default=str).encode("utf-8"),
                    key=key.encode("utf-8") if key else None,
                )
                logger.info("kafka_event_published", topic=topic, request_id=key)
        except Exception as e:
            # Fire-and-forget: log but don't fail the caller
            logger.warning("kafka_publish_failed", topic=topic, error=str(e))

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
