"""Pytest fixtures for dlq_recovery tests."""

import pytest
from aiokafka.errors import KafkaConnectionError

from dlq_recovery.config import KafkaConfig
from tests.dlq_recovery.fakes import FakeBroker


@pytest.fixture
def kafka_config() -> KafkaConfig:
    """Create test Kafka configuration with short timeouts."""
    return KafkaConfig(
        bootstrap_servers="localhost:9092",
        group_id="test-dlq-group",
        poll_timeout_ms=10,
        assignment_timeout_ms=200,
        publish_timeout_ms=500,
        commit_timeout_ms=500,
    )


@pytest.fixture
def broker() -> FakeBroker:
    """Broker with an empty DLQ topic and its original topic."""
    broker = FakeBroker()
    broker.create_topic("orders-dlq")
    broker.create_topic("orders")
    return broker


@pytest.fixture
def connection_error() -> KafkaConnectionError:
    return KafkaConnectionError("Connection refused")
