"""Tests for document-level models and the status state machine."""

from datetime import UTC, datetime

import pytest

from orchestrator.models.document import (
    TERMINAL_STATUSES,
    VALID_STATUS_TRANSITIONS,
    DocumentStatusRecord,
    FileRecord,
    FileStatus,
    OverallStatus,
    ProcessingMode,
    is_valid_transition,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


def _status(**overrides) -> DocumentStatusRecord:
    fields = {
        "document_id": "doc-1",
        "tenant_id": "tenant-1",
        "created_at": NOW,
        "updated_at": NOW,
    }
    fields.update(overrides)
    return DocumentStatusRecord(**fields)


class TestStatusTransitions:
    """Tests for VALID_STATUS_TRANSITIONS."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (OverallStatus.PENDING, OverallStatus.PROCESSING),
            (OverallStatus.PENDING, OverallStatus.FAILED),
            (OverallStatus.PROCESSING, OverallStatus.AGGREGATING),
            (OverallStatus.PROCESSING, OverallStatus.FAILED),
            (OverallStatus.AGGREGATING, OverallStatus.COMPLETED),
            (OverallStatus.AGGREGATING, OverallStatus.FAILED),
            (OverallStatus.AGGREGATING, OverallStatus.PROCESSING),
        ],
    )
    def test_allowed_transitions(self, current: OverallStatus, target: OverallStatus) -> None:
        """Every edge of the lifecycle is allowed."""
        assert is_valid_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (OverallStatus.PENDING, OverallStatus.AGGREGATING),
            (OverallStatus.PENDING, OverallStatus.COMPLETED),
            (OverallStatus.PROCESSING, OverallStatus.COMPLETED),
            (OverallStatus.COMPLETED, OverallStatus.PROCESSING),
            (OverallStatus.FAILED, OverallStatus.PROCESSING),
            (OverallStatus.FAILED, OverallStatus.PENDING),
        ],
    )
    def test_rejected_transitions(self, current: OverallStatus, target: OverallStatus) -> None:
        """Skipping a step or leaving a terminal state is rejected."""
        assert not is_valid_transition(current, target)

    def test_terminal_states_have_no_exits(self) -> None:
        """Completed and failed are absorbing."""
        for status in TERMINAL_STATUSES:
            assert VALID_STATUS_TRANSITIONS[status] == set()


class TestDocumentStatusRecord:
    """Tests for DocumentStatusRecord."""

    def test_defaults_are_pending_with_zero_counters(self) -> None:
        """A new record is pending with unknown total."""
        record = _status()

        assert record.overall_status == OverallStatus.PENDING
        assert record.total_pages == 0
        assert record.processed_pages == 0
        assert record.failed_pages == 0

    def test_ready_when_counter_reaches_total(self) -> None:
        """processed == total > 0 while processing is ready."""
        record = _status(
            total_pages=3,
            processed_pages=3,
            overall_status=OverallStatus.PROCESSING,
        )
        assert record.is_ready_for_aggregation

    def test_zero_total_is_never_ready(self) -> None:
        """A zero total never satisfies the completion check."""
        record = _status(
            total_pages=0,
            processed_pages=0,
            overall_status=OverallStatus.PROCESSING,
        )
        assert not record.is_ready_for_aggregation

    def test_not_ready_while_aggregating(self) -> None:
        """A document already held by an aggregator is not ready again."""
        record = _status(
            total_pages=2,
            processed_pages=2,
            overall_status=OverallStatus.AGGREGATING,
        )
        assert not record.is_ready_for_aggregation

    def test_not_ready_with_pages_outstanding(self) -> None:
        """Counter below total is not ready."""
        record = _status(
            total_pages=5,
            processed_pages=4,
            overall_status=OverallStatus.PROCESSING,
        )
        assert not record.is_ready_for_aggregation

    def test_is_terminal(self) -> None:
        """Completed and failed records are terminal."""
        assert _status(overall_status=OverallStatus.COMPLETED).is_terminal
        assert _status(overall_status=OverallStatus.FAILED).is_terminal
        assert not _status(overall_status=OverallStatus.PROCESSING).is_terminal

    def test_accepts_camel_case_aliases(self) -> None:
        """Records parse from camelCase payloads."""
        record = DocumentStatusRecord.model_validate(
            {
                "documentId": "doc-1",
                "tenantId": "tenant-1",
                "totalPages": 2,
                "processedPages": 1,
                "overallStatus": "processing",
                "createdAt": NOW.isoformat(),
                "updatedAt": NOW.isoformat(),
            }
        )

        assert record.total_pages == 2
        assert record.overall_status == OverallStatus.PROCESSING

    def test_negative_counter_rejected(self) -> None:
        """Counters cannot be negative."""
        with pytest.raises(ValueError):
            _status(processed_pages=-1)


class TestFileRecord:
    """Tests for FileRecord."""

    def test_defaults(self) -> None:
        """A file record starts uploaded in async mode."""
        record = FileRecord(
            document_id="doc-1",
            tenant_id="tenant-1",
            file_name="report.pdf",
            file_size=1024,
            storage_bucket="documents",
            storage_key="tenant-1/doc-1/report.pdf",
            uploaded_at=NOW,
            updated_at=NOW,
        )

        assert record.status == FileStatus.UPLOADED
        assert record.processing_mode == ProcessingMode.ASYNC
        assert record.mime_type == "application/pdf"
