"""
Recovery planning for matched DLQ messages.

Builds the outgoing envelope and headers for a republish or archive, renders
the operator preview (metadata, headers, payload before/after, diff, planned
action) and gates execution behind an explicit confirmation.
"""

import asyncio
import difflib
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from dlq_recovery.common.exceptions import (
    ConfigurationError,
    InvalidPayloadFileError,
    MissingOriginalTopicError,
)
from dlq_recovery.common.logging import log_with_context
from dlq_recovery.config import KafkaConfig
from dlq_recovery.scanner import ScanRecord
from dlq_recovery.schemas.envelope import (
    BrokerPosition,
    DlqEnvelope,
    is_present,
    pretty_json,
)

logger = logging.getLogger(__name__)

# Outgoing message headers
HEADER_ID = "id"
HEADER_CORRELATION_ID = "correlation_id"
HEADER_REPUBLISHED_AT = "republished_at"
HEADER_ARCHIVED_AT = "archived_at"

RULE = "=" * 65
CONFIRM_PROMPT = "Proceed with this change? [y/N]: "


class _NoReplacement:
    def __repr__(self) -> str:
        return "NO_REPLACEMENT"


# JSON null is a valid replacement payload, so "no replacement" needs its own marker
NO_REPLACEMENT: Any = _NoReplacement()


class RecoveryAction(Enum):
    """How a DLQ message leaves the DLQ."""

    REPUBLISH = "republish"
    ARCHIVE = "archive"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def load_replacement_payload(path: Path) -> Any:
    """
    Read and validate a replacement payload file.

    Runs before any broker interaction so a bad file never leaves a scan
    session holding a position.

    Args:
        path: File containing a single JSON value

    Returns:
        Parsed JSON value

    Raises:
        InvalidPayloadFileError: If the file cannot be read or is not valid JSON
    """
    try:
        content = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise InvalidPayloadFileError(
            f"Failed to read file: {path}", cause=e, context={"path": str(path)}
        ) from e

    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise InvalidPayloadFileError(
            f"Invalid JSON in file: {path}", cause=e, context={"path": str(path)}
        ) from e


def payload_diff(old: str, new: str) -> List[str]:
    """Line diff with every line prefixed by '  ', '- ' or '+ '."""
    old_lines = old.splitlines()
    new_lines = new.splitlines()
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)

    lines: List[str] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            lines.extend(f"  {line}" for line in old_lines[i1:i2])
            continue
        lines.extend(f"- {line}" for line in old_lines[i1:i2])
        lines.extend(f"+ {line}" for line in new_lines[j1:j2])
    return lines


@dataclass
class RecoveryPlan:
    """
    One recovery attempt for one matched message.

    Attributes:
        action: Republish or archive
        record: Matched envelope and its DLQ position
        outgoing: Envelope that will be published
        headers: Outgoing message headers
        destination_topic: Where the outgoing envelope goes
        timestamp: ISO-8601 time the plan was built
        dry_run: Preview only, never executed
        replacement_source: File the replacement payload came from
        confirmed: Set by the planner after an affirmative answer
    """

    action: RecoveryAction
    record: ScanRecord
    outgoing: DlqEnvelope
    headers: Dict[str, str]
    destination_topic: str
    timestamp: str
    dry_run: bool = False
    has_replacement: bool = False
    replacement_source: Optional[Path] = None
    confirmed: bool = field(default=False, init=False)

    @property
    def envelope(self) -> DlqEnvelope:
        return self.record.envelope

    @property
    def position(self) -> BrokerPosition:
        return self.record.position

    @property
    def dlq_topic(self) -> str:
        return self.record.position.topic

    def diff(self) -> List[str]:
        if not self.has_replacement:
            return []
        return payload_diff(self.envelope.payload_pretty(), self.outgoing.payload_pretty())


ConfirmationProvider = Callable[[str], bool]


def is_affirmative(answer: Optional[str]) -> bool:
    return answer is not None and answer.strip().lower() in ("y", "yes")


class TerminalConfirmation:
    """Asks the operator on the terminal. EOF or Ctrl-C counts as "no"."""

    def __init__(self, input_fn: Callable[[str], str] = input):
        self._input = input_fn

    def __call__(self, prompt: str) -> bool:
        try:
            answer = self._input(prompt)
        except (EOFError, KeyboardInterrupt):
            return False
        return is_affirmative(answer)


class StaticConfirmation:
    """Fixed answer, for --yes and tests. Records every prompt it was shown."""

    def __init__(self, answer: bool):
        self.answer = answer
        self.prompts: List[str] = []

    def __call__(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return self.answer


class RecoveryPlanner:
    """
    Builds recovery plans and obtains operator confirmation.

    Outgoing envelopes are new objects: the matched envelope is never
    modified. Republish refuses envelopes without an original topic rather
    than publishing to the "-" sentinel.
    """

    def __init__(
        self,
        config: KafkaConfig,
        confirmation: Optional[ConfirmationProvider] = None,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self.config = config
        self._confirmation = confirmation or TerminalConfirmation()
        self._clock = clock

    def plan(
        self,
        record: ScanRecord,
        action: RecoveryAction,
        replacement: Any = NO_REPLACEMENT,
        replacement_source: Optional[Path] = None,
        archive_topic: Optional[str] = None,
        dry_run: bool = False,
    ) -> RecoveryPlan:
        """
        Build the plan for recovering a matched record.

        Args:
            record: Matched scan record
            action: Republish to the original topic or archive
            replacement: Replacement payload (republish only); full substitution.
                Published as the JSON value itself, so consumers of the original
                topic see the same payload shape as before. It is deliberately
                not wrapped in a pretty-printed JSON string.
            replacement_source: File the replacement was read from, for the preview
            archive_topic: Archive destination (default: derived from the DLQ topic)
            dry_run: Preview only

        Raises:
            MissingOriginalTopicError: Republish of an envelope without originalTopic
            ConfigurationError: Archive topic is blank or the DLQ topic itself
            ValueError: Replacement payload supplied for an archive
        """
        envelope = record.envelope
        timestamp = self._clock()
        has_replacement = replacement is not NO_REPLACEMENT

        headers = {HEADER_ID: envelope.id}
        if envelope.has_correlation_id:
            headers[HEADER_CORRELATION_ID] = envelope.correlation_id

        if action is RecoveryAction.REPUBLISH:
            if not envelope.metadata.has_original_topic:
                raise MissingOriginalTopicError(
                    f"Message '{envelope.id}' has no originalTopic; refusing to republish",
                    context={"message_id": envelope.id, "position": str(record.position)},
                )
            destination = envelope.metadata.original_topic
            headers[HEADER_REPUBLISHED_AT] = timestamp
            outgoing = envelope
            if has_replacement:
                outgoing = envelope.model_copy(update={"payload": replacement})
        else:
            if has_replacement:
                raise ValueError("A replacement payload can only be used when republishing")
            destination = archive_topic or self.config.get_archive_topic(record.position.topic)
            if not is_present(destination) or destination == record.position.topic:
                raise ConfigurationError(
                    f"Invalid archive topic: {destination!r}",
                    context={"dlq_topic": record.position.topic},
                )
            headers[HEADER_ARCHIVED_AT] = timestamp
            outgoing = envelope.model_copy(
                update={
                    "metadata": envelope.metadata.model_copy(update={"archived_at": timestamp})
                }
            )

        plan = RecoveryPlan(
            action=action,
            record=record,
            outgoing=outgoing,
            headers=headers,
            destination_topic=destination,
            timestamp=timestamp,
            dry_run=dry_run,
            has_replacement=has_replacement,
            replacement_source=replacement_source,
        )
        log_with_context(
            logger,
            logging.INFO,
            "Recovery planned",
            action=action.value,
            message_id=envelope.id,
            topic=record.position.topic,
            partition=record.position.partition,
            offset=record.position.offset,
            destination_topic=destination,
        )
        return plan

    def confirm(self, plan: RecoveryPlan) -> bool:
        """
        Ask for confirmation. Dry-run plans are never confirmed.

        Returns:
            True only on an affirmative answer
        """
        if plan.dry_run:
            return False

        plan.confirmed = bool(self._confirmation(CONFIRM_PROMPT))
        log_with_context(
            logger,
            logging.INFO,
            "Operator confirmed recovery" if plan.confirmed else "Operator cancelled recovery",
            action=plan.action.value,
            message_id=plan.envelope.id,
        )
        return plan.confirmed

    async def confirm_async(self, plan: RecoveryPlan) -> bool:
        """
        Run confirm() on a daemon thread while the event loop keeps the
        consumer's heartbeats going.

        The prompt thread is never joined: if the awaiting task is cancelled
        (Ctrl-C under asyncio.run) it is abandoned at input() and the
        CancelledError reaches the caller.
        """
        loop = asyncio.get_running_loop()
        answer: "asyncio.Future[bool]" = loop.create_future()

        def _settle(result: Optional[bool], error: Optional[BaseException]) -> None:
            if answer.done():
                return
            if error is not None:
                answer.set_exception(error)
            else:
                answer.set_result(result)

        def _prompt() -> None:
            try:
                result = self.confirm(plan)
            except Exception as e:
                outcome = (None, e)
            else:
                outcome = (result, None)
            if not loop.is_closed():
                loop.call_soon_threadsafe(_settle, *outcome)

        threading.Thread(target=_prompt, name="dlq-confirmation", daemon=True).start()
        return await answer

    def render_preview(self, plan: RecoveryPlan) -> str:
        """Metadata, headers, payload (with diff when replaced) and planned action."""
        envelope = plan.envelope
        metadata = envelope.metadata
        verb = "republished" if plan.action is RecoveryAction.REPUBLISH else "archived"

        lines = ["", RULE, f"Found message in DLQ: {plan.dlq_topic}"]
        if plan.dry_run:
            lines.append("[DRY RUN MODE]")
        lines += [
            RULE,
            "",
            "MESSAGE METADATA:",
            f"  ID:             {envelope.id}",
            f"  Correlation ID: {envelope.correlation_id}",
            f"  Failure Reason: {metadata.failure_reason}",
            f"  Retry Count:    {metadata.retry_count}",
            f"  Original Topic: {metadata.original_topic}",
            f"  Moved to DLQ:   {metadata.moved_to_dlq_at}",
            f"  DLQ Position:   {plan.position}",
        ]
        if plan.action is RecoveryAction.ARCHIVE:
            lines.append(f"  Archived At:    {plan.outgoing.metadata.archived_at}")

        lines += ["", f"MESSAGE HEADERS (will be {verb} with):"]
        lines += [f"  {key}: {value}" for key, value in plan.headers.items()]

        if plan.has_replacement:
            source = plan.replacement_source or "replacement"
            lines += [
                "",
                RULE,
                "PAYLOAD COMPARISON",
                RULE,
                "",
                "BEFORE (Current in DLQ):",
                envelope.payload_pretty(),
                "",
                f"AFTER (From file: {source}):",
                plan.outgoing.payload_pretty(),
                "",
                "DIFF:",
            ]
            lines += plan.diff()
        else:
            lines += ["", f"PAYLOAD (will be {verb} as-is):", envelope.payload_pretty()]

        lines += ["", self.render_plan_of_action(plan)]
        return "\n".join(lines)

    def render_plan_of_action(self, plan: RecoveryPlan) -> str:
        prefix = "  [DRY RUN] → " if plan.dry_run else "  → "
        if plan.action is RecoveryAction.REPUBLISH:
            what = "Publish fixed message to" if plan.has_replacement else "Republish message to"
        else:
            what = "Archive message to"

        lines = [
            RULE,
            "PLANNED ACTION:",
            f"{prefix}{what}: {plan.destination_topic}",
            f"{prefix}Remove from DLQ: {plan.dlq_topic} (commit offset {plan.position.next_offset} "
            f"on partition {plan.position.partition})",
            RULE,
        ]
        if plan.dry_run:
            lines += [
                "",
                "DRY RUN MODE - No changes will be made",
                "What would happen:",
                f"  → Message would be published to: {plan.destination_topic}",
                f"  → DLQ offset would be committed (message removed from {plan.dlq_topic})",
                "",
                "To actually perform this operation, run without --dry-run",
            ]
        return "\n".join(lines)


__all__ = [
    "CONFIRM_PROMPT",
    "ConfirmationProvider",
    "HEADER_ARCHIVED_AT",
    "HEADER_CORRELATION_ID",
    "HEADER_ID",
    "HEADER_REPUBLISHED_AT",
    "NO_REPLACEMENT",
    "RecoveryAction",
    "RecoveryPlan",
    "RecoveryPlanner",
    "StaticConfirmation",
    "TerminalConfirmation",
    "is_affirmative",
    "load_replacement_payload",
    "payload_diff",
]
