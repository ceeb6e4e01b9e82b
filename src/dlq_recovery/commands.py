"""
Command workflows behind the CLI.

Each command builds its broker clients from the shared KafkaConfig. Clients
can be injected so tests run the full workflow against an in-memory broker.

Recovery workflow (archive-message / republish-message):
    1. Validate the replacement payload file (before touching the broker)
    2. Scan the DLQ for the id or correlation id
    3. Refuse if committing its offset would hide earlier pending messages
    4. Build the plan and print the preview
    5. Stop here for --dry-run; otherwise ask for confirmation
    6. Publish, wait for the acknowledgment, then commit the DLQ offset
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient

from dlq_recovery.common.exceptions import MessageNotFoundError
from dlq_recovery.config import KafkaConfig
from dlq_recovery.coordinator import PublishCommitCoordinator, RecoveryOutcome
from dlq_recovery.display import (
    render_message_detail,
    render_message_table,
    render_topics,
)
from dlq_recovery.planner import (
    NO_REPLACEMENT,
    ConfirmationProvider,
    RecoveryAction,
    RecoveryPlanner,
    load_replacement_payload,
)
from dlq_recovery.producer import RecoveryProducer
from dlq_recovery.scanner import ScanRecord, TopicScanner, match_id
from dlq_recovery.topics import fetch_topics

logger = logging.getLogger(__name__)

Output = Callable[[str], Any]


class RecoveryStatus(Enum):
    COMPLETED = "completed"
    DRY_RUN = "dry_run"
    CANCELLED = "cancelled"


async def list_topics(
    config: KafkaConfig,
    out: Output = print,
    admin: Optional[AIOKafkaAdminClient] = None,
) -> None:
    topics = await fetch_topics(config, admin=admin)
    out(render_topics(topics, config.bootstrap_servers))


async def list_messages(
    config: KafkaConfig,
    topic: str,
    out: Output = print,
    consumer: Optional[AIOKafkaConsumer] = None,
) -> None:
    async with TopicScanner(config, topic, consumer=consumer) as scanner:
        records = await scanner.collect()

    out(render_message_table(records))
    summary = f"{len(records)} message(s) in {topic}"
    if scanner.skipped:
        summary += f" ({scanner.skipped} undecodable entry(ies) skipped)"
    out(summary)


async def find_message(scanner: TopicScanner, message_id: str) -> ScanRecord:
    """
    Scan for a message by id or correlation id.

    Raises:
        MessageNotFoundError: If end-of-partition is reached without a match
    """
    result = await scanner.find(match_id(message_id))
    if not result.matched:
        raise MessageNotFoundError(
            scanner.topic, message_id, scanned=result.scanned, skipped=result.skipped
        )
    return result.record


async def view_message(
    config: KafkaConfig,
    topic: str,
    message_id: str,
    out: Output = print,
    consumer: Optional[AIOKafkaConsumer] = None,
) -> ScanRecord:
    async with TopicScanner(config, topic, consumer=consumer) as scanner:
        record = await find_message(scanner, message_id)

    out(render_message_detail(record))
    return record


async def archive_message(
    config: KafkaConfig,
    topic: str,
    message_id: str,
    archive_topic: Optional[str] = None,
    dry_run: bool = False,
    confirmation: Optional[ConfirmationProvider] = None,
    out: Output = print,
    consumer: Optional[AIOKafkaConsumer] = None,
    producer: Optional[AIOKafkaProducer] = None,
) -> RecoveryStatus:
    """Move a DLQ message to the archive topic with metadata.archivedAt set."""
    return await _recover(
        config,
        topic,
        message_id,
        RecoveryAction.ARCHIVE,
        archive_topic=archive_topic,
        dry_run=dry_run,
        confirmation=confirmation,
        out=out,
        consumer=consumer,
        producer=producer,
    )


async def republish_message(
    config: KafkaConfig,
    topic: str,
    message_id: str,
    payload_file: Optional[Path] = None,
    dry_run: bool = False,
    confirmation: Optional[ConfirmationProvider] = None,
    out: Output = print,
    consumer: Optional[AIOKafkaConsumer] = None,
    producer: Optional[AIOKafkaProducer] = None,
) -> RecoveryStatus:
    """Republish a DLQ message to its original topic, optionally with a fixed payload."""
    replacement = NO_REPLACEMENT
    if payload_file is not None:
        replacement = load_replacement_payload(payload_file)

    return await _recover(
        config,
        topic,
        message_id,
        RecoveryAction.REPUBLISH,
        replacement=replacement,
        replacement_source=payload_file,
        dry_run=dry_run,
        confirmation=confirmation,
        out=out,
        consumer=consumer,
        producer=producer,
    )


async def _recover(
    config: KafkaConfig,
    topic: str,
    message_id: str,
    action: RecoveryAction,
    replacement: Any = NO_REPLACEMENT,
    replacement_source: Optional[Path] = None,
    archive_topic: Optional[str] = None,
    dry_run: bool = False,
    confirmation: Optional[ConfirmationProvider] = None,
    out: Output = print,
    consumer: Optional[AIOKafkaConsumer] = None,
    producer: Optional[AIOKafkaProducer] = None,
) -> RecoveryStatus:
    planner = RecoveryPlanner(config, confirmation=confirmation)

    async with TopicScanner(config, topic, consumer=consumer) as scanner:
        record = await find_message(scanner, message_id)
        await scanner.check_commit_order(record.position)
        plan = planner.plan(
            record,
            action,
            replacement=replacement,
            replacement_source=replacement_source,
            archive_topic=archive_topic,
            dry_run=dry_run,
        )
        out(planner.render_preview(plan))

        if dry_run:
            return RecoveryStatus.DRY_RUN

        try:
            confirmed = await planner.confirm_async(plan)
        except asyncio.CancelledError:
            # Ctrl-C at the prompt
            logger.info("Confirmation interrupted", extra={"message_id": record.envelope.id})
            confirmed = False
        if not confirmed:
            out("Operation cancelled.")
            return RecoveryStatus.CANCELLED

        out(f"\nPublishing to {plan.destination_topic}...")
        async with RecoveryProducer(config, producer=producer) as recovery_producer:
            coordinator = PublishCommitCoordinator(
                plan,
                publisher=recovery_producer,
                committer=scanner,
                publish_timeout=config.publish_timeout_seconds,
                commit_timeout=config.commit_timeout_seconds,
            )
            outcome: RecoveryOutcome = await coordinator.execute()

    out(
        f"✅ Message published to {outcome.destination_topic} "
        f"(partition {outcome.destination_partition}, offset {outcome.destination_offset})"
    )
    out(f"✅ DLQ message committed (removed from {topic})")
    out("\nDone!")
    return RecoveryStatus.COMPLETED


__all__ = [
    "RecoveryStatus",
    "archive_message",
    "find_message",
    "list_messages",
    "list_topics",
    "republish_message",
    "view_message",
]
