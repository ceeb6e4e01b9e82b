"""Tests for the publish-then-commit coordinator."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest
from aiokafka.errors import KafkaTimeoutError

from dlq_recovery.common.exceptions import (
    BrokerError,
    CommitFailedError,
    ErrorCategory,
    PublishFailedError,
)
from dlq_recovery.coordinator import PublishCommitCoordinator, RecoveryState
from dlq_recovery.planner import RecoveryAction, RecoveryPlanner, StaticConfirmation
from dlq_recovery.scanner import ScanRecord
from dlq_recovery.schemas.envelope import BrokerPosition, DlqEnvelope, EnvelopeMetadata


def _plan(kafka_config, action=RecoveryAction.REPUBLISH, confirm=True, dry_run=False, **kwargs):
    record = ScanRecord(
        envelope=DlqEnvelope(
            id="msg-1",
            correlation_id="corr-1",
            payload={"orderId": 42},
            metadata=EnvelopeMetadata(original_topic="orders"),
        ),
        position=BrokerPosition(topic="orders-dlq", partition=0, offset=5),
    )
    planner = RecoveryPlanner(kafka_config, confirmation=StaticConfirmation(True))
    plan = planner.plan(record, action, dry_run=dry_run, **kwargs)
    if confirm:
        planner.confirm(plan)
    return plan


@pytest.fixture
def calls():
    """Shared call log; publish and commit append in the order they run."""
    return Mock()


@pytest.fixture
def publisher(calls):
    publisher = Mock()
    publisher.send = AsyncMock(
        return_value=SimpleNamespace(topic="orders", partition=2, offset=99)
    )
    calls.attach_mock(publisher.send, "send")
    return publisher


@pytest.fixture
def committer(calls):
    committer = Mock()
    committer.commit = AsyncMock(return_value=None)
    calls.attach_mock(committer.commit, "commit")
    return committer


@pytest.mark.asyncio
class TestHappyPath:
    async def test_publishes_then_commits(self, kafka_config, calls, publisher, committer):
        plan = _plan(kafka_config)
        coordinator = PublishCommitCoordinator(plan, publisher, committer)

        outcome = await coordinator.execute()

        assert [c[0] for c in calls.mock_calls] == ["send", "commit"]
        assert outcome.state is RecoveryState.COMMITTED
        assert outcome.destination_topic == "orders"
        assert outcome.destination_partition == 2
        assert outcome.destination_offset == 99
        assert outcome.committed == plan.position
        assert coordinator.history == [
            RecoveryState.PLANNED,
            RecoveryState.PUBLISHING,
            RecoveryState.PUBLISHED,
            RecoveryState.COMMITTING,
            RecoveryState.COMMITTED,
        ]

    async def test_publish_arguments(self, kafka_config, publisher, committer):
        plan = _plan(kafka_config)
        coordinator = PublishCommitCoordinator(plan, publisher, committer, publish_timeout=2.5)

        await coordinator.execute()

        publisher.send.assert_awaited_once()
        args, kwargs = publisher.send.call_args
        assert args == ("orders",)
        assert kwargs["key"] == "msg-1"
        assert kwargs["headers"] == plan.headers
        assert kwargs["timeout"] == 2.5
        assert json.loads(kwargs["value"])["id"] == "msg-1"

    async def test_commit_arguments(self, kafka_config, publisher, committer):
        plan = _plan(kafka_config)
        coordinator = PublishCommitCoordinator(plan, publisher, committer, commit_timeout=1.5)

        await coordinator.execute()

        committer.commit.assert_awaited_once_with(plan.position, timeout=1.5)

    async def test_archive_publishes_archived_envelope(self, kafka_config, publisher, committer):
        plan = _plan(kafka_config, action=RecoveryAction.ARCHIVE)

        await PublishCommitCoordinator(plan, publisher, committer).execute()

        args, kwargs = publisher.send.call_args
        assert args == ("orders-dlq.archive",)
        assert json.loads(kwargs["value"])["metadata"]["archivedAt"] == plan.timestamp


@pytest.mark.asyncio
class TestPublishFailure:
    async def test_rejected_publish_never_commits(self, kafka_config, publisher, committer):
        publisher.send.side_effect = KafkaTimeoutError()
        coordinator = PublishCommitCoordinator(_plan(kafka_config), publisher, committer)

        with pytest.raises(PublishFailedError, match="rejected") as exc_info:
            await coordinator.execute()

        committer.commit.assert_not_awaited()
        assert coordinator.state is RecoveryState.PUBLISH_FAILED
        assert exc_info.value.category is ErrorCategory.LOSS_PREVENTED
        assert not exc_info.value.delivery_unknown

    async def test_publish_timeout_never_commits(self, kafka_config, publisher, committer):
        publisher.send.side_effect = asyncio.TimeoutError()
        coordinator = PublishCommitCoordinator(
            _plan(kafka_config), publisher, committer, publish_timeout=2.0
        )

        with pytest.raises(PublishFailedError, match=r"not acknowledged within 2\.0s") as exc_info:
            await coordinator.execute()

        committer.commit.assert_not_awaited()
        assert coordinator.history[-1] is RecoveryState.PUBLISH_FAILED
        # the unacknowledged send can still be flushed when the producer stops
        assert exc_info.value.delivery_unknown
        assert "may still be delivered" in str(exc_info.value)
        assert "Check orders" in exc_info.value.warning

    async def test_failed_coordinator_cannot_retry(self, kafka_config, publisher, committer):
        publisher.send.side_effect = KafkaTimeoutError()
        coordinator = PublishCommitCoordinator(_plan(kafka_config), publisher, committer)

        with pytest.raises(PublishFailedError):
            await coordinator.execute()
        with pytest.raises(RuntimeError, match="already executed"):
            await coordinator.execute()

        assert publisher.send.await_count == 1


@pytest.mark.asyncio
class TestCommitFailure:
    async def test_commit_failure_is_distinct(self, kafka_config, publisher, committer):
        committer.commit.side_effect = BrokerError("Offset commit failed")
        coordinator = PublishCommitCoordinator(_plan(kafka_config), publisher, committer)

        with pytest.raises(CommitFailedError) as exc_info:
            await coordinator.execute()

        publisher.send.assert_awaited_once()
        assert coordinator.state is RecoveryState.COMMIT_FAILED
        error = exc_info.value
        assert error.category is ErrorCategory.DUPLICATE_RISK
        assert error.context["destination_topic"] == "orders"
        assert error.context["dlq_topic"] == "orders-dlq"
        assert "WAS delivered to orders" in error.warning
        assert "orders-dlq" in error.warning


@pytest.mark.asyncio
class TestPreconditions:
    async def test_dry_run_plan_rejected(self, kafka_config, publisher, committer):
        plan = _plan(kafka_config, dry_run=True)

        with pytest.raises(RuntimeError, match="Dry-run"):
            await PublishCommitCoordinator(plan, publisher, committer).execute()

        publisher.send.assert_not_awaited()
        committer.commit.assert_not_awaited()

    async def test_unconfirmed_plan_rejected(self, kafka_config, publisher, committer):
        plan = _plan(kafka_config, confirm=False)

        with pytest.raises(RuntimeError, match="not been confirmed"):
            await PublishCommitCoordinator(plan, publisher, committer).execute()

        publisher.send.assert_not_awaited()

    async def test_completed_plan_cannot_execute_twice(self, kafka_config, publisher, committer):
        coordinator = PublishCommitCoordinator(_plan(kafka_config), publisher, committer)
        await coordinator.execute()

        with pytest.raises(RuntimeError, match="already executed"):
            await coordinator.execute()

        assert committer.commit.await_count == 1
