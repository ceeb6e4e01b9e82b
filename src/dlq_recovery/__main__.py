"""
Command line entry point for DLQ inspection and recovery.

Usage:
    python -m dlq_recovery list-topics
    python -m dlq_recovery list-messages orders-dlq
    python -m dlq_recovery view-message orders-dlq msg-123
    python -m dlq_recovery archive-message orders-dlq msg-123 [--archive-topic T] [--dry-run]
    python -m dlq_recovery republish-message orders-dlq msg-123 [--payload-file fixed.json] [--dry-run]

Configuration comes from environment variables (optionally a .env file);
see KafkaConfig.from_env().

Exit codes:
    0  success, dry run, or operator cancelled
    1  configuration, input or broker error
    2  message not found
    3  publish failed (DLQ message untouched)
    4  commit failed after publish (duplicate delivery risk)
    130 interrupted
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from dlq_recovery import commands
from dlq_recovery.common.exceptions import (
    CommitFailedError,
    MessageNotFoundError,
    PublishFailedError,
    RecoveryError,
)
from dlq_recovery.common.logging import log_exception, set_log_context, setup_logging
from dlq_recovery.config import KafkaConfig
from dlq_recovery.metrics import push_metrics
from dlq_recovery.planner import StaticConfirmation, TerminalConfirmation

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NOT_FOUND = 2
EXIT_PUBLISH_FAILED = 3
EXIT_COMMIT_FAILED = 4
EXIT_INTERRUPTED = 130


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="dlq-recovery",
        description="Inspect and recover messages stranded in Kafka dead-letter queues",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Preview republishing a message with a fixed payload
    dlq-recovery republish-message orders-dlq msg-123 --payload-file fixed.json --dry-run

    # Archive a message that should never be retried
    dlq-recovery archive-message orders-dlq msg-123
        """,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Console logging level (default: WARNING)",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help="Directory for the JSON audit log (default: ./logs)",
    )
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Do not write the JSON audit log file",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    subparsers.add_parser("list-topics", help="List topics in the cluster")

    list_messages = subparsers.add_parser("list-messages", help="List messages in a topic")
    list_messages.add_argument("topic", help="Topic to list")

    view = subparsers.add_parser("view-message", help="Show one message")
    view.add_argument("topic", help="DLQ topic to read from")
    view.add_argument("message_id", help="Message ID or correlation ID to find")

    archive = subparsers.add_parser(
        "archive-message",
        help="Move a message from the DLQ to the archive topic",
    )
    archive.add_argument("topic", help="DLQ topic to read from")
    archive.add_argument("message_id", help="Message ID or correlation ID to find")
    archive.add_argument(
        "--archive-topic",
        default=None,
        help="Archive topic (default: <topic> + DLQ_ARCHIVE_TOPIC_SUFFIX)",
    )
    _add_recovery_flags(archive)

    republish = subparsers.add_parser(
        "republish-message",
        help="Republish a DLQ message to its original topic",
        description=(
            "Finds a message in the DLQ by ID, optionally replaces its payload with a "
            "fixed version from a JSON file, shows a diff preview, then publishes to the "
            "original topic and removes the message from the DLQ."
        ),
    )
    republish.add_argument("topic", help="DLQ topic to read from")
    republish.add_argument("message_id", help="Message ID or correlation ID to find")
    republish.add_argument(
        "--payload-file",
        type=Path,
        default=None,
        metavar="FILE",
        help="JSON file with the fixed payload (default: republish the payload as-is)",
    )
    _add_recovery_flags(republish)

    return parser.parse_args(argv)


def _add_recovery_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview changes without publishing or committing",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Skip the confirmation prompt",
    )


async def run_command(args: argparse.Namespace, config: KafkaConfig) -> int:
    confirmation = StaticConfirmation(True) if getattr(args, "yes", False) else TerminalConfirmation()

    if args.command == "list-topics":
        await commands.list_topics(config)
    elif args.command == "list-messages":
        await commands.list_messages(config, args.topic)
    elif args.command == "view-message":
        await commands.view_message(config, args.topic, args.message_id)
    elif args.command == "archive-message":
        await commands.archive_message(
            config,
            args.topic,
            args.message_id,
            archive_topic=args.archive_topic,
            dry_run=args.dry_run,
            confirmation=confirmation,
        )
    elif args.command == "republish-message":
        await commands.republish_message(
            config,
            args.topic,
            args.message_id,
            payload_file=args.payload_file,
            dry_run=args.dry_run,
            confirmation=confirmation,
        )
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)

    if not args.command:
        print("Run with --help to see instructions")
        return EXIT_OK

    setup_logging(
        command=args.command,
        log_dir=args.log_dir,
        console_level=getattr(logging, args.log_level),
        log_to_file=not args.no_log_file,
    )
    topic = getattr(args, "topic", None)
    if topic:
        set_log_context(topic=topic)

    try:
        config = KafkaConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_ERROR

    try:
        return asyncio.run(run_command(args, config))
    except MessageNotFoundError as e:
        logger.warning("Message not found", extra=e.context)
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_NOT_FOUND
    except PublishFailedError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(e.warning, file=sys.stderr)
        return EXIT_PUBLISH_FAILED
    except CommitFailedError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(f"WARNING: {e.warning}", file=sys.stderr)
        return EXIT_COMMIT_FAILED
    except RecoveryError as e:
        log_exception(logger, e, f"{args.command} failed", include_traceback=False)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    finally:
        push_metrics()


if __name__ == "__main__":
    sys.exit(main())
