"""
Envelope codec: raw Kafka values to DlqEnvelope and back.

Decoding is tolerant of missing or ill-typed fields, which fall back to the
MISSING sentinel (retry count falls back to 0). It fails only when the value
is absent, not UTF-8, not valid JSON, or not a JSON object.

Encoding writes only the fields the recovery workflow controls: id,
correlationId, payload and metadata. Unknown top-level fields of the source
message are not carried over.
"""

import json
from typing import Any, Mapping, Optional

from dlq_recovery.common.exceptions import EnvelopeDecodeError
from dlq_recovery.schemas.envelope import MISSING, DlqEnvelope, EnvelopeMetadata

# Top-level field paths
FIELD_ID = "id"
FIELD_CORRELATION_ID = "correlationId"
FIELD_PAYLOAD = "payload"
FIELD_METADATA = "metadata"

# Metadata field paths
METADATA_FAILURE_REASON = "failureReason"
METADATA_RETRY_COUNT = "retryCount"
METADATA_ORIGINAL_TOPIC = "originalTopic"
METADATA_MOVED_TO_DLQ_AT = "movedToDlqAt"
METADATA_ARCHIVED_AT = "archivedAt"


def get_str(obj: Mapping[str, Any], key: str) -> str:
    """String field or MISSING when absent or not a string."""
    value = obj.get(key)
    return value if isinstance(value, str) else MISSING


def get_optional_str(obj: Mapping[str, Any], key: str) -> Optional[str]:
    value = obj.get(key)
    return value if isinstance(value, str) else None


def get_count(obj: Mapping[str, Any], key: str) -> int:
    """Non-negative integer field or 0."""
    value = obj.get(key)
    # bool is an int subclass; JSON true is not a count
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return 0
    return value


def from_json(document: Mapping[str, Any]) -> DlqEnvelope:
    """Build an envelope from an already-parsed JSON object."""
    raw_metadata = document.get(FIELD_METADATA)
    if not isinstance(raw_metadata, Mapping):
        raw_metadata = {}

    metadata = EnvelopeMetadata(
        failure_reason=get_str(raw_metadata, METADATA_FAILURE_REASON),
        retry_count=get_count(raw_metadata, METADATA_RETRY_COUNT),
        original_topic=get_str(raw_metadata, METADATA_ORIGINAL_TOPIC),
        moved_to_dlq_at=get_str(raw_metadata, METADATA_MOVED_TO_DLQ_AT),
        archived_at=get_optional_str(raw_metadata, METADATA_ARCHIVED_AT),
    )
    return DlqEnvelope(
        id=get_str(document, FIELD_ID),
        correlation_id=get_str(document, FIELD_CORRELATION_ID),
        payload=document.get(FIELD_PAYLOAD),
        metadata=metadata,
    )


def decode(value: Optional[bytes]) -> DlqEnvelope:
    """
    Decode a raw Kafka message value into a DlqEnvelope.

    Args:
        value: Raw message value (None for tombstones / absent payloads)

    Returns:
        Decoded envelope with sentinels for missing fields

    Raises:
        EnvelopeDecodeError: If the value is absent or not a JSON object
    """
    if value is None:
        raise EnvelopeDecodeError("Message has no payload")

    try:
        text = value.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EnvelopeDecodeError("Message payload is not valid UTF-8", cause=e) from e

    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise EnvelopeDecodeError("Message payload is not valid JSON", cause=e) from e

    if not isinstance(document, dict):
        raise EnvelopeDecodeError(
            f"Message payload is a JSON {type(document).__name__}, expected an object"
        )

    return from_json(document)


def to_json(envelope: DlqEnvelope) -> dict:
    """Wire-shaped dict for an envelope. archivedAt is written only when set."""
    metadata = {
        METADATA_FAILURE_REASON: envelope.metadata.failure_reason,
        METADATA_RETRY_COUNT: envelope.metadata.retry_count,
        METADATA_ORIGINAL_TOPIC: envelope.metadata.original_topic,
        METADATA_MOVED_TO_DLQ_AT: envelope.metadata.moved_to_dlq_at,
    }
    if envelope.metadata.archived_at is not None:
        metadata[METADATA_ARCHIVED_AT] = envelope.metadata.archived_at

    return {
        FIELD_ID: envelope.id,
        FIELD_CORRELATION_ID: envelope.correlation_id,
        FIELD_PAYLOAD: envelope.payload,
        FIELD_METADATA: metadata,
    }


def encode(envelope: DlqEnvelope) -> bytes:
    """Serialize an envelope to UTF-8 JSON bytes."""
    return json.dumps(to_json(envelope), ensure_ascii=False).encode("utf-8")


__all__ = [
    "decode",
    "encode",
    "from_json",
    "to_json",
]
