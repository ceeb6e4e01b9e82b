"""Plain-text rendering of topics and DLQ messages for the terminal."""

from typing import List, Sequence

from dlq_recovery.scanner import ScanRecord
from dlq_recovery.topics import TopicInfo, TopicKind

WIDE_RULE = "═" * 70
THIN_RULE = "─" * 70

MESSAGE_COLUMNS = ["id", "correlation_id", "reason", "retries", "original_topic", "moved_at"]


def _table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> List[str]:
    widths = [len(h) for h in headers]
    for row in rows:
        widths = [max(w, len(cell)) for w, cell in zip(widths, row)]

    def _line(cells: Sequence[str]) -> str:
        return " | ".join(cell.ljust(w) for cell, w in zip(cells, widths)).rstrip()

    out = [_line(headers), "-+-".join("-" * w for w in widths)]
    out.extend(_line(row) for row in rows)
    return out


def render_topics(topics: Sequence[TopicInfo], bootstrap_servers: str) -> str:
    if not topics:
        return "No topics found in Kafka cluster"

    sections = [
        (TopicKind.REGULAR, "Regular Topics"),
        (TopicKind.DLQ, "Dead Letter Queue Topics"),
        (TopicKind.INTERNAL, "Internal Topics"),
    ]
    counts = {kind: sum(1 for t in topics if t.kind is kind) for kind, _ in sections}

    lines = [
        "Kafka Topics Overview",
        WIDE_RULE,
        f"Broker: {bootstrap_servers}",
        f"Total Topics: {len(topics)}",
        "",
    ]
    for kind, title in sections:
        members = [t for t in topics if t.kind is kind]
        if not members:
            continue
        lines += [f"{title} ({len(members)})", THIN_RULE]
        lines.append(f"{'TOPIC NAME':<35} {'TYPE':<12} {'PARTS':<8} {'REPLICATION':<10}")
        lines.append(THIN_RULE)
        for topic in members:
            lines.append(
                f"{topic.name:<35} {topic.kind.value:<12} "
                f"{topic.partitions:<8} {topic.replication_factor:<10}"
            )
        lines.append("")

    lines += [
        WIDE_RULE,
        "Summary:",
        f"   • Regular Topics: {counts[TopicKind.REGULAR]}",
        f"   • DLQ Topics: {counts[TopicKind.DLQ]}",
        f"   • Internal Topics: {counts[TopicKind.INTERNAL]}",
        f"   • Total: {len(topics)}",
    ]
    return "\n".join(lines)


def render_message_table(records: Sequence[ScanRecord]) -> str:
    rows = []
    for record in records:
        envelope = record.envelope
        metadata = envelope.metadata
        rows.append([
            envelope.id,
            envelope.correlation_id,
            metadata.failure_reason,
            str(metadata.retry_count),
            metadata.original_topic,
            metadata.moved_to_dlq_at,
        ])
    return "\n".join(_table(MESSAGE_COLUMNS, rows))


def render_message_detail(record: ScanRecord) -> str:
    """One message as a rotated key/value table."""
    envelope = record.envelope
    metadata = envelope.metadata
    fields = [
        ("id", envelope.id),
        ("correlation_id", envelope.correlation_id),
        ("reason", metadata.failure_reason),
        ("retries", str(metadata.retry_count)),
        ("original_topic", metadata.original_topic),
        ("moved_at", metadata.moved_to_dlq_at),
        ("position", str(record.position)),
        ("metadata", envelope.metadata_pretty()),
        ("payload", envelope.payload_pretty()),
    ]
    width = max(len(name) for name, _ in fields)

    lines = []
    for name, value in fields:
        value_lines = value.splitlines() or [""]
        lines.append(f"{name.ljust(width)} | {value_lines[0]}")
        lines.extend(f"{' ' * width} | {line}" for line in value_lines[1:])
    return "\n".join(lines)


__all__ = [
    "render_message_detail",
    "render_message_table",
    "render_topics",
]
