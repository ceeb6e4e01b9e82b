"""
DLQ topic scanner.

Reads a topic from the earliest retained offset up to the end offsets
captured when partitions were assigned, yielding decoded envelopes with their
broker positions.

- Manual offset commit only: nothing is committed until commit() is called
  with a position this scanner produced
- A Kafka commit covers every earlier offset of the partition, so a position
  is only committable when no earlier decodable message of its partition is
  still pending (check_commit_order)
- End-of-partition is a normal termination, bounded to the messages present
  when the scan started
- Entries that cannot be decoded are skipped with a warning
- Broker errors abort the scan with BrokerError
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional, Set

from aiokafka import AIOKafkaConsumer, ConsumerRebalanceListener
from aiokafka.errors import KafkaError
from aiokafka.structs import ConsumerRecord, TopicPartition

from dlq_recovery import codec
from dlq_recovery.common.exceptions import (
    BrokerError,
    CommitOrderError,
    EnvelopeDecodeError,
)
from dlq_recovery.common.logging import log_with_context
from dlq_recovery.config import KafkaConfig
from dlq_recovery.metrics import (
    commit_duration_seconds,
    record_message_scanned,
    record_scan_finished,
)
from dlq_recovery.schemas.envelope import BrokerPosition, DlqEnvelope

logger = logging.getLogger(__name__)

Predicate = Callable[[DlqEnvelope], bool]


class ScanOutcome(Enum):
    """Why a scan stopped."""

    MATCHED = "matched"
    END_OF_PARTITION = "end_of_partition"
    ERROR = "error"


@dataclass(frozen=True)
class ScanRecord:
    """A decoded envelope and where it lives in the DLQ."""

    envelope: DlqEnvelope
    position: BrokerPosition


@dataclass(frozen=True)
class ScanResult:
    """Summary of a finished scan."""

    outcome: ScanOutcome
    record: Optional[ScanRecord]
    scanned: int
    skipped: int

    @property
    def matched(self) -> bool:
        return self.outcome is ScanOutcome.MATCHED


def match_id(target: str) -> Predicate:
    """Predicate matching an envelope's id or correlation id against target."""

    def _predicate(envelope: DlqEnvelope) -> bool:
        return envelope.matches(target)

    return _predicate


class _AssignmentListener(ConsumerRebalanceListener):
    """Rewinds to the earliest offset and captures end offsets at assignment time."""

    def __init__(self, scanner: "TopicScanner"):
        self._scanner = scanner

    async def on_partitions_revoked(self, revoked):
        for tp in revoked:
            self._scanner._end_offsets.pop(tp, None)

    async def on_partitions_assigned(self, assigned):
        assigned = list(assigned)
        consumer = self._scanner._consumer
        if assigned:
            # Ignore the group's committed offsets: every retained message is scanned
            beginning_offsets = await consumer.beginning_offsets(assigned)
            for tp, offset in beginning_offsets.items():
                consumer.seek(tp, offset)
            end_offsets = await consumer.end_offsets(assigned)
            self._scanner._end_offsets.update(end_offsets)
        logger.debug(
            "Partitions assigned",
            extra={
                "topic": self._scanner.topic,
                "partitions": sorted(tp.partition for tp in assigned),
            },
        )
        self._scanner._assigned.set()


class TopicScanner:
    """
    Single-use scan session over one DLQ topic.

    The scanner owns the consumer and therefore the right to commit offsets
    for the positions it yields. Each position can be committed once.

    Usage:
        >>> config = KafkaConfig.from_env()
        >>> async with TopicScanner(config, "orders-dlq") as scanner:
        ...     result = await scanner.find(match_id("msg-123"))
        ...     if result.matched:
        ...         await scanner.commit(result.record.position)
    """

    def __init__(
        self,
        config: KafkaConfig,
        topic: str,
        consumer: Optional[AIOKafkaConsumer] = None,
    ):
        """
        Initialize scanner.

        Args:
            config: Kafka configuration
            topic: DLQ topic to scan
            consumer: Optional pre-built consumer (tests inject a fake broker)
        """
        if not topic:
            raise ValueError("A topic must be specified")

        self.config = config
        self.topic = topic
        self._consumer = consumer
        self._started = False
        self._scan_started = False
        self._assigned = asyncio.Event()
        self._end_offsets: Dict[TopicPartition, int] = {}
        self._issued: Set[BrokerPosition] = set()
        self._skipped: Dict[TopicPartition, List[int]] = {}
        self._committed: Set[BrokerPosition] = set()

        self.outcome: Optional[ScanOutcome] = None
        self.scanned = 0
        self.skipped = 0

    async def start(self) -> None:
        """
        Connect and subscribe to the topic.

        Raises:
            BrokerError: If the consumer cannot connect or subscribe
        """
        if self._started:
            logger.warning("Scanner already started, ignoring duplicate start call")
            return

        if self._consumer is None:
            self._consumer = AIOKafkaConsumer(
                group_id=self.config.group_id,
                enable_auto_commit=False,  # commit() is the only way an offset moves
                auto_offset_reset=self.config.auto_offset_reset,
                session_timeout_ms=self.config.session_timeout_ms,
                max_poll_interval_ms=self.config.max_poll_interval_ms,
                **self.config.connection_kwargs(),
            )

        try:
            await self._consumer.start()
            self._consumer.subscribe(topics=[self.topic], listener=_AssignmentListener(self))
        except KafkaError as e:
            raise BrokerError(
                f"Failed to connect consumer to topic '{self.topic}'",
                cause=e,
                context={"topic": self.topic, "group_id": self.config.group_id},
            ) from e

        self._started = True
        logger.info(
            "Scanner started",
            extra={
                "topic": self.topic,
                "group_id": self.config.group_id,
                "bootstrap_servers": self.config.bootstrap_servers,
            },
        )

    async def stop(self) -> None:
        """
        Close the consumer without committing anything.

        Safe to call multiple times.
        """
        if not self._started or self._consumer is None:
            return

        try:
            await self._consumer.stop()
            logger.debug("Scanner stopped", extra={"topic": self.topic})
        finally:
            self._started = False

    async def __aenter__(self) -> "TopicScanner":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def records(self, predicate: Optional[Predicate] = None) -> AsyncIterator[ScanRecord]:
        """
        Lazy sequence of decoded records.

        With a predicate, the sequence ends right after the first matching
        record (outcome MATCHED). Otherwise it runs to end-of-partition.
        A scanner can only be iterated once.

        Raises:
            RuntimeError: If the scanner was not started or already scanned
        """
        if not self._started:
            raise RuntimeError("Scanner not started. Call start() first.")
        if self._scan_started:
            raise RuntimeError("Scanner has already been iterated; create a new scan session")
        self._scan_started = True
        return self._iterate(predicate)

    async def find(self, predicate: Predicate) -> ScanResult:
        """Scan until predicate matches or every partition reaches its end."""
        match: Optional[ScanRecord] = None
        async for record in self.records(predicate):
            if predicate(record.envelope):
                match = record
        return ScanResult(
            outcome=self.outcome,
            record=match,
            scanned=self.scanned,
            skipped=self.skipped,
        )

    async def collect(self) -> List[ScanRecord]:
        """Every decodable record present at scan start."""
        return [record async for record in self.records()]

    async def check_commit_order(self, position: BrokerPosition) -> None:
        """
        Verify that committing position would not hide other DLQ messages.

        Committing offset N+1 marks every earlier offset of the partition as
        consumed. The position is committable only when it is the group's
        next uncommitted offset, apart from undecodable entries in between
        (those can never be recovered and are passed over with a warning).

        Raises:
            RuntimeError: If position was not produced by this scan session
            CommitOrderError: If earlier decodable messages of the partition
                are still pending, or the group already committed past position
            BrokerError: If the committed offset cannot be fetched
        """
        if position not in self._issued:
            raise RuntimeError(f"Position {position} was not produced by this scan session")

        tp = TopicPartition(position.topic, position.partition)
        try:
            committed = await self._consumer.committed(tp)
        except KafkaError as e:
            raise BrokerError(
                "Failed to fetch committed offset",
                cause=e,
                context={"position": str(position), "group_id": self.config.group_id},
            ) from e

        context = {
            "position": str(position),
            "group_id": self.config.group_id,
            "committed_offset": committed,
        }
        if committed is not None and position.offset < committed:
            raise CommitOrderError(
                f"Message at {position} is behind the committed offset {committed} of "
                f"group '{self.config.group_id}'; it was already consumed",
                context=context,
            )

        floor = committed or 0
        pending = sorted(
            p.offset
            for p in self._issued
            if p.topic == position.topic
            and p.partition == position.partition
            and floor <= p.offset < position.offset
            and p not in self._committed
        )
        if pending:
            context["pending_offsets"] = pending
            raise CommitOrderError(
                f"{len(pending)} earlier message(s) in {tp.topic}[{tp.partition}] "
                f"(offsets {', '.join(str(o) for o in pending)}) are still in the DLQ; "
                f"recover or archive them first",
                context=context,
            )

        passed_over = [o for o in self._skipped.get(tp, []) if floor <= o < position.offset]
        if passed_over:
            log_with_context(
                logger,
                logging.WARNING,
                f"Committing past {len(passed_over)} undecodable DLQ entry(ies)",
                topic=tp.topic,
                partition=tp.partition,
                offset=position.offset,
                skipped=len(passed_over),
            )

    async def commit(self, position: BrokerPosition, timeout: Optional[float] = None) -> None:
        """
        Synchronously commit the DLQ offset past position.

        Args:
            position: Position yielded by this scanner
            timeout: Seconds to wait (default: config commit timeout)

        Raises:
            RuntimeError: If position was not produced by this scan session
                or was already committed
            CommitOrderError: If the commit would hide other pending messages
            BrokerError: If the commit fails or times out
        """
        if position not in self._issued:
            raise RuntimeError(f"Position {position} was not produced by this scan session")
        if position in self._committed:
            raise RuntimeError(f"Position {position} was already committed")
        await self.check_commit_order(position)

        timeout = self.config.commit_timeout_seconds if timeout is None else timeout
        tp = TopicPartition(position.topic, position.partition)
        start = time.perf_counter()
        try:
            await asyncio.wait_for(
                self._consumer.commit({tp: position.next_offset}),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise BrokerError(
                f"Offset commit timed out after {timeout:.1f}s",
                cause=e,
                context={"position": str(position)},
            ) from e
        except KafkaError as e:
            raise BrokerError(
                "Offset commit failed",
                cause=e,
                context={"position": str(position)},
            ) from e
        finally:
            commit_duration_seconds.labels(topic=position.topic).observe(
                time.perf_counter() - start
            )

        self._committed.add(position)
        log_with_context(
            logger,
            logging.INFO,
            "Committed DLQ offset",
            topic=position.topic,
            partition=position.partition,
            offset=position.offset,
        )

    async def _iterate(self, predicate: Optional[Predicate]) -> AsyncIterator[ScanRecord]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.assignment_timeout_seconds

        while True:
            try:
                if await self._at_end_of_partitions():
                    self._finish(ScanOutcome.END_OF_PARTITION)
                    return

                batch = await self._consumer.getmany(timeout_ms=self.config.poll_timeout_ms)
            except KafkaError as e:
                self._finish(ScanOutcome.ERROR)
                raise BrokerError(
                    f"Kafka error while scanning topic '{self.topic}'",
                    cause=e,
                    context={"topic": self.topic, "scanned": self.scanned},
                ) from e

            if not self._assigned.is_set() and loop.time() > deadline:
                self._finish(ScanOutcome.ERROR)
                raise BrokerError(
                    f"No partitions of topic '{self.topic}' were assigned within "
                    f"{self.config.assignment_timeout_seconds:.1f}s",
                    context={"topic": self.topic, "group_id": self.config.group_id},
                )

            for tp in sorted(batch, key=lambda p: p.partition):
                for message in batch[tp]:
                    record = self._decode(tp, message)
                    if record is None:
                        continue
                    yield record
                    if predicate is not None and predicate(record.envelope):
                        log_with_context(
                            logger,
                            logging.INFO,
                            "Match found",
                            topic=tp.topic,
                            partition=tp.partition,
                            offset=message.offset,
                            message_id=record.envelope.id,
                            scanned=self.scanned,
                        )
                        self._finish(ScanOutcome.MATCHED)
                        return

    def _decode(self, tp: TopicPartition, message: ConsumerRecord) -> Optional[ScanRecord]:
        end = self._end_offsets.get(tp)
        if end is not None and message.offset >= end:
            # Arrived after the scan started
            return None

        self.scanned += 1
        try:
            envelope = codec.decode(message.value)
        except EnvelopeDecodeError as e:
            self.skipped += 1
            self._skipped.setdefault(tp, []).append(message.offset)
            record_message_scanned(self.topic, skipped=True)
            log_with_context(
                logger,
                logging.WARNING,
                "Skipping undecodable DLQ message",
                topic=tp.topic,
                partition=tp.partition,
                offset=message.offset,
                error_message=str(e),
            )
            return None

        record_message_scanned(self.topic)
        position = BrokerPosition(topic=tp.topic, partition=tp.partition, offset=message.offset)
        self._issued.add(position)
        return ScanRecord(envelope=envelope, position=position)

    async def _at_end_of_partitions(self) -> bool:
        if not self._assigned.is_set():
            return False

        assignment = self._consumer.assignment()
        if not assignment:
            self._finish(ScanOutcome.ERROR)
            raise BrokerError(
                f"Consumer group '{self.config.group_id}' assigned no partitions of "
                f"'{self.topic}'; another recovery may be running",
                context={"topic": self.topic, "group_id": self.config.group_id},
            )

        for tp in assignment:
            end = self._end_offsets.get(tp)
            if end is None or await self._consumer.position(tp) < end:
                return False
        return True

    def _finish(self, outcome: ScanOutcome) -> None:
        self.outcome = outcome
        record_scan_finished(self.topic, outcome.value)
        log_with_context(
            logger,
            logging.INFO,
            "Scan finished",
            topic=self.topic,
            outcome=outcome.value,
            scanned=self.scanned,
            skipped=self.skipped,
        )


__all__ = [
    "ScanOutcome",
    "ScanRecord",
    "ScanResult",
    "TopicScanner",
    "match_id",
]
