"""Tests for the command line entry point and its exit codes."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from dlq_recovery import __main__ as cli
from dlq_recovery.common.exceptions import (
    BrokerError,
    CommitFailedError,
    InvalidPayloadFileError,
    MessageNotFoundError,
    PublishFailedError,
)
from dlq_recovery.planner import StaticConfirmation, TerminalConfirmation


@pytest.fixture(autouse=True)
def quiet_cli(monkeypatch):
    """Keep main() from touching .env files, log files or a Pushgateway."""
    monkeypatch.setenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    with patch.object(cli, "load_dotenv"), \
            patch.object(cli, "setup_logging"), \
            patch.object(cli, "push_metrics") as push:
        yield push


class TestParseArgs:
    def test_republish_arguments(self):
        args = cli.parse_args([
            "republish-message", "orders-dlq", "msg-1",
            "--payload-file", "fixed.json", "--dry-run",
        ])

        assert args.command == "republish-message"
        assert args.topic == "orders-dlq"
        assert args.message_id == "msg-1"
        assert args.payload_file == Path("fixed.json")
        assert args.dry_run is True
        assert args.yes is False

    def test_archive_arguments(self):
        args = cli.parse_args(["archive-message", "orders-dlq", "msg-1", "--archive-topic", "t", "--yes"])

        assert args.archive_topic == "t"
        assert args.yes is True
        assert args.dry_run is False

    def test_global_options(self):
        args = cli.parse_args(["--log-level", "DEBUG", "--no-log-file", "list-topics"])

        assert args.log_level == "DEBUG"
        assert args.no_log_file is True

    def test_missing_message_id_exits(self):
        with pytest.raises(SystemExit):
            cli.parse_args(["republish-message", "orders-dlq"])


class TestMain:
    def test_no_command_prints_hint(self, capsys):
        assert cli.main([]) == cli.EXIT_OK
        assert "--help" in capsys.readouterr().out

    def test_missing_bootstrap_servers(self, monkeypatch, capsys):
        monkeypatch.delenv("KAFKA_BOOTSTRAP_SERVERS")

        assert cli.main(["list-topics"]) == cli.EXIT_ERROR
        assert "KAFKA_BOOTSTRAP_SERVERS" in capsys.readouterr().err

    def test_success(self, quiet_cli):
        with patch.object(cli.commands, "list_topics", new=AsyncMock()) as list_topics:
            assert cli.main(["list-topics"]) == cli.EXIT_OK

        list_topics.assert_awaited_once()
        quiet_cli.assert_called_once()

    def test_yes_uses_static_confirmation(self):
        with patch.object(cli.commands, "archive_message", new=AsyncMock()) as archive:
            cli.main(["archive-message", "orders-dlq", "msg-1", "--yes"])

        confirmation = archive.call_args.kwargs["confirmation"]
        assert isinstance(confirmation, StaticConfirmation)
        assert confirmation.answer is True

    def test_default_prompts_on_terminal(self):
        with patch.object(cli.commands, "republish_message", new=AsyncMock()) as republish:
            cli.main(["republish-message", "orders-dlq", "msg-1", "--payload-file", "f.json"])

        kwargs = republish.call_args.kwargs
        assert isinstance(kwargs["confirmation"], TerminalConfirmation)
        assert kwargs["payload_file"] == Path("f.json")
        assert kwargs["dry_run"] is False

    @pytest.mark.parametrize(
        "error,code",
        [
            (MessageNotFoundError("orders-dlq", "msg-1", scanned=3), cli.EXIT_NOT_FOUND),
            (PublishFailedError("Publish to 'orders' rejected by the broker"), cli.EXIT_PUBLISH_FAILED),
            (
                CommitFailedError(
                    "Published but failed to commit",
                    context={"destination_topic": "orders", "dlq_topic": "orders-dlq"},
                ),
                cli.EXIT_COMMIT_FAILED,
            ),
            (InvalidPayloadFileError("Invalid JSON in file: f.json"), cli.EXIT_ERROR),
            (BrokerError("Failed to connect"), cli.EXIT_ERROR),
            (ValueError("Invalid archive topic"), cli.EXIT_ERROR),
            (KeyboardInterrupt(), cli.EXIT_INTERRUPTED),
        ],
    )
    def test_error_exit_codes(self, error, code, quiet_cli):
        with patch.object(cli.commands, "republish_message", new=AsyncMock(side_effect=error)):
            assert cli.main(["republish-message", "orders-dlq", "msg-1"]) == code

        quiet_cli.assert_called_once()

    def test_commit_failure_prints_duplicate_warning(self, capsys):
        error = CommitFailedError(
            "Published but failed to commit",
            context={"destination_topic": "orders", "dlq_topic": "orders-dlq"},
        )
        with patch.object(cli.commands, "archive_message", new=AsyncMock(side_effect=error)):
            cli.main(["archive-message", "orders-dlq", "msg-1"])

        err = capsys.readouterr().err
        assert "WARNING: The message WAS delivered to orders" in err
        assert "duplicate" in err

    def test_publish_failure_reports_dlq_untouched(self, capsys):
        with patch.object(
            cli.commands, "archive_message",
            new=AsyncMock(side_effect=PublishFailedError("Publish rejected")),
        ):
            cli.main(["archive-message", "orders-dlq", "msg-1"])

        assert "NOT removed" in capsys.readouterr().err

    def test_publish_timeout_warns_about_late_delivery(self, capsys):
        error = PublishFailedError(
            "Publish to 'orders' not acknowledged within 6.0s (it may still be delivered)",
            context={"destination_topic": "orders", "delivery_unknown": True},
        )
        with patch.object(cli.commands, "republish_message", new=AsyncMock(side_effect=error)):
            exit_code = cli.main(["republish-message", "orders-dlq", "msg-1"])

        err = capsys.readouterr().err
        assert exit_code == cli.EXIT_PUBLISH_FAILED
        assert "may still reach orders" in err
        assert "Check orders before recovering it again" in err
