"""
Exception types and error classification for dlq_recovery.

Provides:
- ErrorCategory enum describing the operator-facing consequence of a failure
- Typed exception hierarchy for the recovery workflow
- Wrapping of broker client errors into BrokerError
"""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of recovery failures.

    Categories:
        NOT_FOUND: Scan reached end-of-partition without a match
        DECODE: A single DLQ entry could not be decoded (skipped locally)
        BROKER: Connectivity or protocol failure talking to Kafka
        LOSS_PREVENTED: Publish failed, the DLQ message was left untouched
        DUPLICATE_RISK: Publish succeeded but the DLQ offset was not committed
        INPUT: Operator supplied invalid input (payload file, topic, config)
    """

    NOT_FOUND = "not_found"
    DECODE = "decode"
    BROKER = "broker"
    LOSS_PREVENTED = "loss_prevented"
    DUPLICATE_RISK = "duplicate_risk"
    INPUT = "input"


class RecoveryError(Exception):
    """
    Base exception for all recovery workflow errors.

    Attributes:
        message: Human-readable error description
        category: Error classification
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.BROKER

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


class MessageNotFoundError(RecoveryError):
    """No envelope matched the requested id before end-of-partition."""

    category = ErrorCategory.NOT_FOUND

    def __init__(self, topic: str, message_id: str, scanned: int = 0, skipped: int = 0):
        super().__init__(
            f"Message '{message_id}' not found in topic '{topic}'",
            context={
                "topic": topic,
                "message_id": message_id,
                "scanned": scanned,
                "skipped": skipped,
            },
        )
        self.topic = topic
        self.message_id = message_id


class EnvelopeDecodeError(RecoveryError):
    """A raw DLQ value is absent or not a JSON object."""

    category = ErrorCategory.DECODE


class BrokerError(RecoveryError):
    """Kafka connectivity or protocol failure."""

    category = ErrorCategory.BROKER


class PublishFailedError(RecoveryError):
    """
    Outgoing message was not acknowledged. The DLQ message is untouched.

    After a timeout the send may still complete in the background, so the
    destination topic can already hold a copy.
    """

    category = ErrorCategory.LOSS_PREVENTED

    @property
    def delivery_unknown(self) -> bool:
        return bool(self.context.get("delivery_unknown"))

    @property
    def warning(self) -> str:
        if self.delivery_unknown:
            destination = self.context.get("destination_topic", "the destination topic")
            return (
                f"The DLQ message was NOT removed, but the timed-out publish may still "
                f"reach {destination}. Check {destination} before recovering it again "
                f"to avoid a duplicate."
            )
        return "The DLQ message was NOT removed and can be recovered again."


class CommitFailedError(RecoveryError):
    """
    DLQ offset commit failed after the outgoing message was acknowledged.

    The message now exists on the destination topic and will still be found
    in the DLQ on a later scan.
    """

    category = ErrorCategory.DUPLICATE_RISK

    @property
    def warning(self) -> str:
        destination = self.context.get("destination_topic", "the destination topic")
        dlq_topic = self.context.get("dlq_topic", "the DLQ")
        return (
            f"The message WAS delivered to {destination} but is still present in "
            f"{dlq_topic}. Recovering it again will deliver a duplicate."
        )


class CommitOrderError(RecoveryError):
    """
    Committing the DLQ position would mark other messages as consumed.

    Raised before anything is published. Kafka commits are per partition, so
    the earlier pending messages of the partition have to be recovered first.
    """

    category = ErrorCategory.INPUT


class InvalidPayloadFileError(RecoveryError):
    """Replacement payload file is unreadable or not valid JSON."""

    category = ErrorCategory.INPUT


class MissingOriginalTopicError(RecoveryError):
    """Envelope has no original topic, so there is nowhere to republish it."""

    category = ErrorCategory.INPUT


class ConfigurationError(RecoveryError):
    """Invalid configuration."""

    category = ErrorCategory.INPUT


def wrap_broker_error(
    exc: Exception,
    message: str,
    context: Optional[dict] = None,
) -> RecoveryError:
    """
    Wrap a broker client exception in BrokerError.

    Already-classified RecoveryErrors pass through with the context merged in.

    Args:
        exc: Exception to wrap
        message: Description of the step that failed
        context: Additional context to include

    Returns:
        RecoveryError instance
    """
    if isinstance(exc, RecoveryError):
        if context:
            exc.context.update(context)
        return exc
    return BrokerError(message, cause=exc, context=context)


__all__ = [
    "BrokerError",
    "CommitFailedError",
    "CommitOrderError",
    "ConfigurationError",
    "EnvelopeDecodeError",
    "ErrorCategory",
    "InvalidPayloadFileError",
    "MessageNotFoundError",
    "MissingOriginalTopicError",
    "PublishFailedError",
    "RecoveryError",
    "wrap_broker_error",
]
