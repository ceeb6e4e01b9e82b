"""
Publish-then-commit execution of a confirmed recovery plan.

The outgoing message must be acknowledged by the broker before the DLQ offset
is committed. Committing first and failing to publish would lose the message;
publishing first and failing to commit only risks a duplicate.

State machine per plan:

    PLANNED -> PUBLISHING -> PUBLISHED -> COMMITTING -> COMMITTED
                   |                          |
                   v                          v
             PUBLISH_FAILED             COMMIT_FAILED
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Protocol

from aiokafka.structs import RecordMetadata

from dlq_recovery import codec
from dlq_recovery.common.exceptions import CommitFailedError, PublishFailedError
from dlq_recovery.common.logging import log_exception, log_with_context
from dlq_recovery.metrics import record_recovery
from dlq_recovery.planner import RecoveryPlan
from dlq_recovery.schemas.envelope import BrokerPosition

logger = logging.getLogger(__name__)


class RecoveryState(Enum):
    PLANNED = "planned"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    COMMITTING = "committing"
    COMMITTED = "committed"
    PUBLISH_FAILED = "publish_failed"
    COMMIT_FAILED = "commit_failed"


_TRANSITIONS: Dict[RecoveryState, FrozenSet[RecoveryState]] = {
    RecoveryState.PLANNED: frozenset({RecoveryState.PUBLISHING}),
    RecoveryState.PUBLISHING: frozenset(
        {RecoveryState.PUBLISHED, RecoveryState.PUBLISH_FAILED}
    ),
    RecoveryState.PUBLISHED: frozenset({RecoveryState.COMMITTING}),
    RecoveryState.COMMITTING: frozenset(
        {RecoveryState.COMMITTED, RecoveryState.COMMIT_FAILED}
    ),
    RecoveryState.COMMITTED: frozenset(),
    RecoveryState.PUBLISH_FAILED: frozenset(),
    RecoveryState.COMMIT_FAILED: frozenset(),
}


class Publisher(Protocol):
    async def send(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> RecordMetadata: ...


class Committer(Protocol):
    async def commit(self, position: BrokerPosition, timeout: Optional[float] = None) -> None: ...


@dataclass(frozen=True)
class RecoveryOutcome:
    """Result of a successfully executed plan."""

    state: RecoveryState
    destination_topic: str
    destination_partition: int
    destination_offset: int
    committed: BrokerPosition


class PublishCommitCoordinator:
    """
    Executes one confirmed RecoveryPlan.

    A coordinator is single-use: the plan's broker position is consumed by
    the commit, so a second execute() call is rejected.

    Usage:
        >>> coordinator = PublishCommitCoordinator(plan, producer, scanner)
        >>> outcome = await coordinator.execute()
    """

    def __init__(
        self,
        plan: RecoveryPlan,
        publisher: Publisher,
        committer: Committer,
        publish_timeout: float = 6.0,
        commit_timeout: float = 6.0,
    ):
        self.plan = plan
        self._publisher = publisher
        self._committer = committer
        self.publish_timeout = publish_timeout
        self.commit_timeout = commit_timeout
        self.state = RecoveryState.PLANNED
        self.history: List[RecoveryState] = [RecoveryState.PLANNED]

    def _transition(self, new_state: RecoveryState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal recovery transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)
        log_with_context(
            logger,
            logging.DEBUG,
            "Recovery state changed",
            state=new_state.value,
            action=self.plan.action.value,
            message_id=self.plan.envelope.id,
        )

    def _context(self) -> dict:
        return {
            "message_id": self.plan.envelope.id,
            "dlq_topic": self.plan.dlq_topic,
            "destination_topic": self.plan.destination_topic,
            "position": str(self.plan.position),
        }

    async def execute(self) -> RecoveryOutcome:
        """
        Publish the outgoing envelope, then commit the DLQ offset.

        Returns:
            RecoveryOutcome in state COMMITTED

        Raises:
            RuntimeError: If the plan is a dry run, unconfirmed, or already executed
            PublishFailedError: Publish rejected or not acknowledged in time;
                nothing was committed
            CommitFailedError: Publish acknowledged but the commit failed;
                the message may be delivered again on a later recovery
        """
        if self.plan.dry_run:
            raise RuntimeError("Dry-run plans cannot be executed")
        if not self.plan.confirmed:
            raise RuntimeError("Recovery plan has not been confirmed")
        if self.state is not RecoveryState.PLANNED:
            raise RuntimeError(f"Recovery already executed (state={self.state.value})")

        action = self.plan.action.value
        metadata = await self._publish()
        record_recovery(action, RecoveryState.PUBLISHED.value)

        await self._commit()
        record_recovery(action, RecoveryState.COMMITTED.value)

        return RecoveryOutcome(
            state=self.state,
            destination_topic=metadata.topic,
            destination_partition=metadata.partition,
            destination_offset=metadata.offset,
            committed=self.plan.position,
        )

    async def _publish(self) -> RecordMetadata:
        plan = self.plan
        self._transition(RecoveryState.PUBLISHING)
        value = codec.encode(plan.outgoing)
        try:
            metadata = await self._publisher.send(
                plan.destination_topic,
                key=plan.outgoing.id,
                value=value,
                headers=dict(plan.headers),
                timeout=self.publish_timeout,
            )
        except Exception as e:
            self._transition(RecoveryState.PUBLISH_FAILED)
            record_recovery(plan.action.value, RecoveryState.PUBLISH_FAILED.value)
            context = self._context()
            if isinstance(e, asyncio.TimeoutError):
                # The record stays in the producer buffer and is flushed on stop()
                reason = (
                    f"not acknowledged within {self.publish_timeout:.1f}s "
                    f"(it may still be delivered)"
                )
                context["delivery_unknown"] = True
            else:
                reason = "rejected by the broker"
            error = PublishFailedError(
                f"Publish to '{plan.destination_topic}' {reason}; "
                f"DLQ message left in place at {plan.position}",
                cause=e,
                context=context,
            )
            log_exception(logger, error, "Publish failed", **self._context())
            raise error from e

        self._transition(RecoveryState.PUBLISHED)
        log_with_context(
            logger,
            logging.INFO,
            "Recovered message published",
            destination_topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            message_id=plan.outgoing.id,
        )
        return metadata

    async def _commit(self) -> None:
        plan = self.plan
        self._transition(RecoveryState.COMMITTING)
        try:
            await self._committer.commit(plan.position, timeout=self.commit_timeout)
        except Exception as e:
            self._transition(RecoveryState.COMMIT_FAILED)
            record_recovery(plan.action.value, RecoveryState.COMMIT_FAILED.value)
            error = CommitFailedError(
                f"Published to '{plan.destination_topic}' but failed to commit DLQ "
                f"offset at {plan.position}",
                cause=e,
                context=self._context(),
            )
            log_exception(logger, error, "Commit failed after publish", **self._context())
            raise error from e

        self._transition(RecoveryState.COMMITTED)


__all__ = [
    "Committer",
    "PublishCommitCoordinator",
    "Publisher",
    "RecoveryOutcome",
    "RecoveryState",
]
