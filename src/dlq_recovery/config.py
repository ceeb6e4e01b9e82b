"""Kafka connection configuration for DLQ recovery, loaded from environment variables."""

import os
from dataclasses import dataclass
from typing import Any, Dict

DEFAULT_GROUP_ID = "poison_queue_cli_consumer_group_id"


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka connection and behavior configuration.

    Built once per invocation with KafkaConfig.from_env() and passed to the
    scanner, producer and admin client. Frozen so no command can alter
    connection settings another component depends on.
    All timing values in milliseconds.
    """

    # Connection
    bootstrap_servers: str
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str = "PLAIN"
    sasl_plain_username: str = ""
    sasl_plain_password: str = ""

    # Consumer (manual commit; scans always rewind to the earliest offset)
    group_id: str = DEFAULT_GROUP_ID
    auto_offset_reset: str = "earliest"
    session_timeout_ms: int = 6000
    max_poll_interval_ms: int = 900000  # 15 minutes, covers the confirmation prompt
    poll_timeout_ms: int = 1000
    assignment_timeout_ms: int = 10000

    # Producer
    acks: str = "all"
    publish_timeout_ms: int = 6000

    # Commit
    commit_timeout_ms: int = 6000

    # Archive topic naming
    archive_topic_suffix: str = ".archive"

    @classmethod
    def from_env(cls) -> "KafkaConfig":
        """Load configuration from environment variables.

        Required environment variables:
            KAFKA_BOOTSTRAP_SERVERS: Kafka broker addresses

        Optional environment variables (with defaults):
            KAFKA_SECURITY_PROTOCOL: PLAINTEXT (default)
            KAFKA_SASL_MECHANISM: PLAIN (default)
            KAFKA_SASL_PLAIN_USERNAME / KAFKA_SASL_PLAIN_PASSWORD: empty
            DLQ_CONSUMER_GROUP_ID: poison_queue_cli_consumer_group_id (default)
            KAFKA_SESSION_TIMEOUT_MS: 6000 (default)
            KAFKA_MAX_POLL_INTERVAL_MS: 900000 (default)
            DLQ_POLL_TIMEOUT_MS: 1000 (default)
            DLQ_ASSIGNMENT_TIMEOUT_MS: 10000 (default)
            DLQ_PUBLISH_TIMEOUT_MS: 6000 (default)
            DLQ_COMMIT_TIMEOUT_MS: 6000 (default)
            DLQ_ARCHIVE_TOPIC_SUFFIX: .archive (default)

        Raises:
            ValueError: If required environment variables are missing or
                timeouts are not positive integers
        """
        bootstrap_servers = os.getenv("KAFKA_BOOTSTRAP_SERVERS")
        if not bootstrap_servers:
            raise ValueError("KAFKA_BOOTSTRAP_SERVERS environment variable is required")

        return cls(
            # Connection
            bootstrap_servers=bootstrap_servers,
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM", "PLAIN"),
            sasl_plain_username=os.getenv("KAFKA_SASL_PLAIN_USERNAME", ""),
            sasl_plain_password=os.getenv("KAFKA_SASL_PLAIN_PASSWORD", ""),

            # Consumer
            group_id=os.getenv("DLQ_CONSUMER_GROUP_ID", DEFAULT_GROUP_ID),
            session_timeout_ms=_positive_int("KAFKA_SESSION_TIMEOUT_MS", 6000),
            max_poll_interval_ms=_positive_int("KAFKA_MAX_POLL_INTERVAL_MS", 900000),
            poll_timeout_ms=_positive_int("DLQ_POLL_TIMEOUT_MS", 1000),
            assignment_timeout_ms=_positive_int("DLQ_ASSIGNMENT_TIMEOUT_MS", 10000),

            # Producer / commit
            publish_timeout_ms=_positive_int("DLQ_PUBLISH_TIMEOUT_MS", 6000),
            commit_timeout_ms=_positive_int("DLQ_COMMIT_TIMEOUT_MS", 6000),

            archive_topic_suffix=os.getenv("DLQ_ARCHIVE_TOPIC_SUFFIX", ".archive"),
        )

    @property
    def publish_timeout_seconds(self) -> float:
        return self.publish_timeout_ms / 1000

    @property
    def commit_timeout_seconds(self) -> float:
        return self.commit_timeout_ms / 1000

    @property
    def assignment_timeout_seconds(self) -> float:
        return self.assignment_timeout_ms / 1000

    def get_archive_topic(self, dlq_topic: str) -> str:
        """Get archive topic name for a DLQ topic.

        Args:
            dlq_topic: DLQ topic the message is archived from

        Returns:
            Archive topic name (e.g., "orders-dlq.archive")
        """
        return f"{dlq_topic}{self.archive_topic_suffix}"

    def connection_kwargs(self) -> Dict[str, Any]:
        """aiokafka keyword arguments shared by consumer, producer and admin client."""
        kwargs: Dict[str, Any] = {
            "bootstrap_servers": self.bootstrap_servers,
            "security_protocol": self.security_protocol,
        }
        if self.security_protocol.startswith("SASL"):
            kwargs["sasl_mechanism"] = self.sasl_mechanism
            if self.sasl_plain_username:
                kwargs["sasl_plain_username"] = self.sasl_plain_username
                kwargs["sasl_plain_password"] = self.sasl_plain_password
        return kwargs


def _positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value
