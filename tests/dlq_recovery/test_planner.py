"""Tests for recovery planning, previews and confirmation."""

import json
import threading

import pytest

from dlq_recovery.common.exceptions import (
    ConfigurationError,
    InvalidPayloadFileError,
    MissingOriginalTopicError,
)
from dlq_recovery.planner import (
    CONFIRM_PROMPT,
    HEADER_ARCHIVED_AT,
    HEADER_CORRELATION_ID,
    HEADER_ID,
    HEADER_REPUBLISHED_AT,
    RecoveryAction,
    RecoveryPlanner,
    StaticConfirmation,
    TerminalConfirmation,
    is_affirmative,
    load_replacement_payload,
    payload_diff,
)
from dlq_recovery.scanner import ScanRecord
from dlq_recovery.schemas.envelope import BrokerPosition, DlqEnvelope, EnvelopeMetadata

NOW = "2025-01-15T12:00:00+00:00"


def _record(**overrides) -> ScanRecord:
    fields = {
        "id": "msg-1",
        "correlation_id": "corr-1",
        "payload": {"orderId": 42, "amount": 10},
        "metadata": EnvelopeMetadata(
            failure_reason="Schema validation failed",
            retry_count=3,
            original_topic="orders",
            moved_to_dlq_at="2024-12-25T10:30:00Z",
        ),
    }
    fields.update(overrides)
    return ScanRecord(
        envelope=DlqEnvelope(**fields),
        position=BrokerPosition(topic="orders-dlq", partition=1, offset=7),
    )


@pytest.fixture
def planner(kafka_config):
    return RecoveryPlanner(kafka_config, confirmation=StaticConfirmation(True), clock=lambda: NOW)


class TestRepublishPlan:
    def test_headers_and_destination(self, planner):
        plan = planner.plan(_record(), RecoveryAction.REPUBLISH)

        assert plan.destination_topic == "orders"
        assert plan.headers == {
            HEADER_ID: "msg-1",
            HEADER_CORRELATION_ID: "corr-1",
            HEADER_REPUBLISHED_AT: NOW,
        }
        assert plan.outgoing == plan.envelope
        assert not plan.has_replacement
        assert plan.diff() == []

    def test_correlation_header_omitted_when_missing(self, planner):
        plan = planner.plan(_record(correlation_id="-"), RecoveryAction.REPUBLISH)

        assert HEADER_CORRELATION_ID not in plan.headers

    def test_replacement_payload_substituted(self, planner):
        record = _record()
        replacement = {"orderId": 42, "amount": 12, "currency": "EUR"}

        plan = planner.plan(record, RecoveryAction.REPUBLISH, replacement=replacement)

        assert plan.outgoing.payload == replacement
        assert plan.outgoing.id == "msg-1"
        assert plan.outgoing.metadata == record.envelope.metadata
        # source envelope untouched
        assert record.envelope.payload == {"orderId": 42, "amount": 10}

    @pytest.mark.parametrize("replacement", [None, [], "plain", 0])
    def test_any_json_value_is_a_replacement(self, planner, replacement):
        plan = planner.plan(_record(), RecoveryAction.REPUBLISH, replacement=replacement)

        assert plan.has_replacement
        assert plan.outgoing.payload == replacement

    @pytest.mark.parametrize("original_topic", ["-", "", "   "])
    def test_missing_original_topic_refused(self, planner, original_topic):
        record = _record(metadata=EnvelopeMetadata(original_topic=original_topic))

        with pytest.raises(MissingOriginalTopicError):
            planner.plan(record, RecoveryAction.REPUBLISH)

    def test_diff_marks_changed_lines(self, planner):
        plan = planner.plan(
            _record(), RecoveryAction.REPUBLISH, replacement={"orderId": 42, "amount": 12}
        )

        diff = plan.diff()

        assert '-   "amount": 10' in diff
        assert '+   "amount": 12' in diff
        assert '    "orderId": 42,' in diff


class TestArchivePlan:
    def test_default_archive_topic(self, planner):
        plan = planner.plan(_record(), RecoveryAction.ARCHIVE)

        assert plan.destination_topic == "orders-dlq.archive"
        assert plan.outgoing.metadata.archived_at == NOW
        assert plan.outgoing.payload == plan.envelope.payload
        assert plan.envelope.metadata.archived_at is None
        assert plan.headers[HEADER_ARCHIVED_AT] == NOW
        assert HEADER_REPUBLISHED_AT not in plan.headers

    def test_explicit_archive_topic(self, planner):
        plan = planner.plan(_record(), RecoveryAction.ARCHIVE, archive_topic="dlq-archive")

        assert plan.destination_topic == "dlq-archive"

    def test_archive_does_not_need_original_topic(self, planner):
        record = _record(metadata=EnvelopeMetadata())

        plan = planner.plan(record, RecoveryAction.ARCHIVE)

        assert plan.destination_topic == "orders-dlq.archive"

    def test_archive_to_dlq_topic_rejected(self, planner):
        with pytest.raises(ConfigurationError, match="archive topic"):
            planner.plan(_record(), RecoveryAction.ARCHIVE, archive_topic="orders-dlq")

    def test_archive_with_replacement_rejected(self, planner):
        with pytest.raises(ValueError, match="replacement"):
            planner.plan(_record(), RecoveryAction.ARCHIVE, replacement={"x": 1})


class TestConfirmation:
    def test_affirmative_answer_confirms(self, kafka_config):
        confirmation = StaticConfirmation(True)
        planner = RecoveryPlanner(kafka_config, confirmation=confirmation)
        plan = planner.plan(_record(), RecoveryAction.REPUBLISH)

        assert planner.confirm(plan) is True
        assert plan.confirmed
        assert confirmation.prompts == [CONFIRM_PROMPT]

    def test_negative_answer_does_not_confirm(self, kafka_config):
        planner = RecoveryPlanner(kafka_config, confirmation=StaticConfirmation(False))
        plan = planner.plan(_record(), RecoveryAction.REPUBLISH)

        assert planner.confirm(plan) is False
        assert not plan.confirmed

    def test_dry_run_never_prompts(self, kafka_config):
        confirmation = StaticConfirmation(True)
        planner = RecoveryPlanner(kafka_config, confirmation=confirmation)
        plan = planner.plan(_record(), RecoveryAction.REPUBLISH, dry_run=True)

        assert planner.confirm(plan) is False
        assert not plan.confirmed
        assert confirmation.prompts == []

    @pytest.mark.parametrize(
        "answer,expected",
        [("y", True), ("Y", True), ("yes", True), (" YES ", True), ("n", False), ("", False), ("yep", False)],
    )
    def test_is_affirmative(self, answer, expected):
        assert is_affirmative(answer) is expected

    def test_terminal_confirmation_reads_input(self):
        prompts = []

        def fake_input(prompt):
            prompts.append(prompt)
            return "y"

        assert TerminalConfirmation(fake_input)(CONFIRM_PROMPT) is True
        assert prompts == [CONFIRM_PROMPT]

    @pytest.mark.parametrize("error", [EOFError, KeyboardInterrupt])
    def test_terminal_confirmation_eof_is_no(self, error):
        def fake_input(prompt):
            raise error

        assert TerminalConfirmation(fake_input)(CONFIRM_PROMPT) is False

    @pytest.mark.asyncio
    async def test_confirm_async_prompts_on_another_thread(self, kafka_config):
        threads = []

        def provider(prompt):
            threads.append(threading.current_thread())
            return True

        planner = RecoveryPlanner(kafka_config, confirmation=provider)
        plan = planner.plan(_record(), RecoveryAction.REPUBLISH)

        assert await planner.confirm_async(plan) is True
        assert plan.confirmed
        assert threads and threads[0] is not threading.main_thread()

    @pytest.mark.asyncio
    async def test_confirm_async_propagates_provider_errors(self, kafka_config):
        def provider(prompt):
            raise OSError("stdin closed")

        planner = RecoveryPlanner(kafka_config, confirmation=provider)
        plan = planner.plan(_record(), RecoveryAction.REPUBLISH)

        with pytest.raises(OSError, match="stdin closed"):
            await planner.confirm_async(plan)
        assert not plan.confirmed


class TestPreview:
    def test_republish_preview_as_is(self, planner):
        plan = planner.plan(_record(), RecoveryAction.REPUBLISH)

        preview = planner.render_preview(plan)

        assert "Found message in DLQ: orders-dlq" in preview
        assert "ID:             msg-1" in preview
        assert "Original Topic: orders" in preview
        assert "DLQ Position:   orders-dlq[1]@7" in preview
        assert f"republished_at: {NOW}" in preview
        assert "PAYLOAD (will be republished as-is):" in preview
        assert "  → Republish message to: orders" in preview
        assert "commit offset 8 on partition 1" in preview
        assert "DRY RUN" not in preview

    def test_replacement_preview_shows_comparison(self, planner, tmp_path):
        source = tmp_path / "fixed.json"
        plan = planner.plan(
            _record(),
            RecoveryAction.REPUBLISH,
            replacement={"orderId": 42, "amount": 12},
            replacement_source=source,
        )

        preview = planner.render_preview(plan)

        assert "PAYLOAD COMPARISON" in preview
        assert "BEFORE (Current in DLQ):" in preview
        assert f"AFTER (From file: {source}):" in preview
        assert "DIFF:" in preview
        assert '+   "amount": 12' in preview
        assert "Publish fixed message to: orders" in preview

    def test_dry_run_preview(self, planner):
        plan = planner.plan(_record(), RecoveryAction.ARCHIVE, dry_run=True)

        preview = planner.render_preview(plan)

        assert "[DRY RUN MODE]" in preview
        assert "[DRY RUN] → Archive message to: orders-dlq.archive" in preview
        assert "DRY RUN MODE - No changes will be made" in preview
        assert "To actually perform this operation, run without --dry-run" in preview
        assert f"Archived At:    {NOW}" in preview


class TestPayloadDiff:
    def test_identical_text_has_no_changes(self):
        lines = payload_diff("a\nb", "a\nb")

        assert lines == ["  a", "  b"]

    def test_changed_line(self):
        lines = payload_diff("a\nb\nc", "a\nB\nc")

        assert lines == ["  a", "- b", "+ B", "  c"]

    def test_added_and_removed_lines(self):
        assert payload_diff("a", "a\nb") == ["  a", "+ b"]
        assert payload_diff("a\nb", "b") == ["- a", "  b"]


class TestLoadReplacementPayload:
    def test_loads_json_value(self, tmp_path):
        path = tmp_path / "fixed.json"
        path.write_text(json.dumps({"orderId": 42}), encoding="utf-8")

        assert load_replacement_payload(path) == {"orderId": 42}

    def test_missing_file(self, tmp_path):
        with pytest.raises(InvalidPayloadFileError, match="Failed to read"):
            load_replacement_payload(tmp_path / "absent.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(InvalidPayloadFileError, match="Invalid JSON"):
            load_replacement_payload(path)
