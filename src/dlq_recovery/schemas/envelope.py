"""
DLQ envelope schemas.

Contains the Pydantic models for the unit of recovery and its broker position.
Wire names are camelCase; Python attributes are snake_case.
"""

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# Sentinel used for any string field missing from the wire envelope
MISSING = "-"


def is_present(value: Optional[str]) -> bool:
    """True when a string field carries a real value (not blank, not the sentinel)."""
    return bool(value) and value.strip() != "" and value != MISSING


class EnvelopeMetadata(BaseModel):
    """Failure metadata attached by the producer that dead-lettered the message.

    Attributes:
        failure_reason: Why normal processing failed
        retry_count: Processing attempts before dead-lettering
        original_topic: Topic the message was originally published to
        moved_to_dlq_at: When the message was moved to the DLQ
        archived_at: Set only when the message is archived
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    failure_reason: str = Field(default=MISSING, alias="failureReason")
    retry_count: int = Field(default=0, alias="retryCount", ge=0)
    original_topic: str = Field(default=MISSING, alias="originalTopic")
    moved_to_dlq_at: str = Field(default=MISSING, alias="movedToDlqAt")
    archived_at: Optional[str] = Field(default=None, alias="archivedAt")

    @property
    def has_original_topic(self) -> bool:
        return is_present(self.original_topic)


class DlqEnvelope(BaseModel):
    """Schema for a message stranded in a dead-letter queue.

    Envelopes are immutable: recovery builds a new envelope with
    ``model_copy(update=...)`` and never edits the one read from the broker.

    Example:
        >>> envelope = DlqEnvelope(
        ...     id="msg-1",
        ...     correlation_id="order-42",
        ...     payload={"orderId": 42},
        ...     metadata=EnvelopeMetadata(original_topic="orders"),
        ... )
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(default=MISSING)
    correlation_id: str = Field(default=MISSING, alias="correlationId")
    payload: Any = None
    metadata: EnvelopeMetadata = Field(default_factory=EnvelopeMetadata)

    @property
    def has_correlation_id(self) -> bool:
        return is_present(self.correlation_id)

    def matches(self, target: str) -> bool:
        """Equality of target against the primary id or the correlation id.

        Sentinel values never match, so searching for "-" cannot pick up an
        envelope that merely lacks an id.
        """
        if not is_present(target):
            return False
        return target == self.id or (
            self.has_correlation_id and target == self.correlation_id
        )

    def payload_pretty(self) -> str:
        """Payload rendered as indented JSON for previews and diffs."""
        return pretty_json(self.payload)

    def metadata_pretty(self) -> str:
        return pretty_json(self.metadata.model_dump(by_alias=True, exclude_none=True))


class BrokerPosition(BaseModel):
    """Exact location of a message in the DLQ.

    Owned by the scan session that produced it and consumed once by the
    commit step. Committing a position commits ``offset + 1``, the next
    offset the consumer group should read.
    """

    model_config = ConfigDict(frozen=True)

    topic: str
    partition: int = Field(..., ge=0)
    offset: int = Field(..., ge=0)

    @property
    def next_offset(self) -> int:
        return self.offset + 1

    def __str__(self) -> str:
        return f"{self.topic}[{self.partition}]@{self.offset}"


def pretty_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


__all__ = [
    "BrokerPosition",
    "DlqEnvelope",
    "EnvelopeMetadata",
    "MISSING",
    "is_present",
    "pretty_json",
]
