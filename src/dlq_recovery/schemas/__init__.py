"""Pydantic schemas for DLQ envelopes and broker positions."""

from dlq_recovery.schemas.envelope import (
    MISSING,
    BrokerPosition,
    DlqEnvelope,
    EnvelopeMetadata,
)

__all__ = [
    "BrokerPosition",
    "DlqEnvelope",
    "EnvelopeMetadata",
    "MISSING",
]
