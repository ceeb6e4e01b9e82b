"""
Kafka producer for recovered messages.

Provides async Kafka producer functionality with:
- acks=all and a bounded wait for the broker acknowledgment
- Header support for recovery metadata (id, correlation_id, timestamps)
"""

import asyncio
import logging
import time
from typing import Dict, Optional

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError
from aiokafka.structs import RecordMetadata

from dlq_recovery.common.exceptions import BrokerError
from dlq_recovery.config import KafkaConfig
from dlq_recovery.metrics import publish_duration_seconds

logger = logging.getLogger(__name__)


class RecoveryProducer:
    """
    Async Kafka producer that waits for the broker acknowledgment.

    Usage:
        >>> config = KafkaConfig.from_env()
        >>> async with RecoveryProducer(config) as producer:
        ...     metadata = await producer.send(
        ...         topic="orders",
        ...         key="msg-123",
        ...         value=b'{"id": "msg-123"}',
        ...         headers={"id": "msg-123"},
        ...     )
    """

    def __init__(
        self,
        config: KafkaConfig,
        producer: Optional[AIOKafkaProducer] = None,
    ):
        """
        Initialize Kafka producer.

        Args:
            config: Kafka configuration
            producer: Optional pre-built aiokafka producer (tests inject a fake broker)
        """
        self.config = config
        self._producer = producer
        self._started = False

    async def start(self) -> None:
        """
        Start the Kafka producer and establish connection.

        Raises:
            BrokerError: If producer fails to start or connect
        """
        if self._started:
            logger.warning("Producer already started, ignoring duplicate start call")
            return

        if self._producer is None:
            self._producer = AIOKafkaProducer(
                acks=self.config.acks,
                request_timeout_ms=self.config.publish_timeout_ms,
                **self.config.connection_kwargs(),
            )

        try:
            await self._producer.start()
        except KafkaError as e:
            raise BrokerError("Failed to start Kafka producer", cause=e) from e
        self._started = True

        logger.info(
            "Kafka producer started",
            extra={
                "bootstrap_servers": self.config.bootstrap_servers,
                "acks": self.config.acks,
            },
        )

    async def stop(self) -> None:
        """
        Flush and stop the producer.

        Safe to call multiple times.
        """
        if not self._started or self._producer is None:
            logger.debug("Producer not started or already stopped")
            return

        try:
            await self._producer.stop()
            logger.debug("Kafka producer stopped")
        finally:
            self._started = False

    async def __aenter__(self) -> "RecoveryProducer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def send(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> RecordMetadata:
        """
        Send a single message and wait for the broker acknowledgment.

        Args:
            topic: Kafka topic name
            key: Message key (used for partitioning)
            value: Encoded message value
            headers: Optional key-value pairs for message headers
            timeout: Seconds to wait for the acknowledgment
                (default: config publish timeout)

        Returns:
            RecordMetadata with topic, partition, offset information

        Raises:
            RuntimeError: If producer not started
            asyncio.TimeoutError: If no acknowledgment arrives in time
            KafkaError: If the broker rejects the message
        """
        if not self._started or self._producer is None:
            raise RuntimeError("Producer not started. Call start() first.")

        timeout = self.config.publish_timeout_seconds if timeout is None else timeout
        headers_list = None
        if headers:
            headers_list = [(k, v.encode("utf-8")) for k, v in headers.items()]

        logger.debug(
            "Sending message to Kafka",
            extra={
                "topic": topic,
                "message_id": key,
                "headers": headers,
                "value_size": len(value),
            },
        )

        start = time.perf_counter()
        try:
            metadata = await asyncio.wait_for(
                self._producer.send_and_wait(
                    topic,
                    key=key.encode("utf-8"),
                    value=value,
                    headers=headers_list,
                ),
                timeout=timeout,
            )
        except Exception as e:
            logger.error(
                "Failed to send message",
                extra={
                    "topic": topic,
                    "message_id": key,
                    "error_message": str(e) or type(e).__name__,
                },
            )
            raise
        finally:
            publish_duration_seconds.labels(destination_topic=topic).observe(
                time.perf_counter() - start
            )

        logger.info(
            "Message acknowledged",
            extra={
                "topic": metadata.topic,
                "partition": metadata.partition,
                "offset": metadata.offset,
            },
        )
        return metadata


__all__ = [
    "RecoveryProducer",
]
