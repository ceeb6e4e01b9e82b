"""
Topic metadata for the list-topics command.

Fetches cluster metadata through the aiokafka admin client and classifies
topics as internal, dead-letter or regular.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Mapping, Optional

from aiokafka.admin import AIOKafkaAdminClient
from aiokafka.errors import KafkaError

from dlq_recovery.common.exceptions import wrap_broker_error
from dlq_recovery.config import KafkaConfig

logger = logging.getLogger(__name__)


class TopicKind(Enum):
    REGULAR = "Regular"
    DLQ = "DLQ"
    INTERNAL = "Internal"


def classify_topic(name: str, is_internal: bool = False) -> TopicKind:
    """Internal by flag or "__" prefix; DLQ by "dlq-" prefix or "-dlq"/".dlq" in the name."""
    if is_internal or name.startswith("__"):
        return TopicKind.INTERNAL
    if name.startswith("dlq-") or "-dlq" in name or ".dlq" in name:
        return TopicKind.DLQ
    return TopicKind.REGULAR


@dataclass(frozen=True)
class TopicInfo:
    name: str
    partitions: int
    replication_factor: int
    kind: TopicKind


def topic_info_from_metadata(entry: Mapping[str, Any]) -> TopicInfo:
    """Build TopicInfo from one describe_topics() entry."""
    partitions = entry.get("partitions") or []
    replication = len(partitions[0].get("replicas") or []) if partitions else 0
    name = entry.get("topic", "")
    return TopicInfo(
        name=name,
        partitions=len(partitions),
        replication_factor=replication,
        kind=classify_topic(name, bool(entry.get("is_internal", False))),
    )


async def fetch_topics(
    config: KafkaConfig,
    admin: Optional[AIOKafkaAdminClient] = None,
) -> List[TopicInfo]:
    """
    Fetch every topic in the cluster, sorted by name.

    Raises:
        BrokerError: If cluster metadata cannot be fetched
    """
    admin = admin or AIOKafkaAdminClient(**config.connection_kwargs())
    try:
        await admin.start()
        try:
            names = await admin.list_topics()
            described = await admin.describe_topics(list(names)) if names else []
        finally:
            await admin.close()
    except KafkaError as e:
        raise wrap_broker_error(
            e,
            "Failed to fetch topic metadata",
            context={"bootstrap_servers": config.bootstrap_servers},
        ) from e

    topics = sorted(
        (topic_info_from_metadata(entry) for entry in described),
        key=lambda t: t.name,
    )
    logger.debug("Fetched topic metadata", extra={"topic_count": len(topics)})
    return topics


__all__ = [
    "TopicInfo",
    "TopicKind",
    "classify_topic",
    "fetch_topics",
]
