"""Manifest assembly from stored page records."""

from datetime import UTC, datetime

import structlog

from orchestrator.models.manifest import Manifest, ManifestEntry
from orchestrator.models.page import PageFailure, PageRecord, PageSuccess
from orchestrator.services.exceptions import ManifestValidationError

logger = structlog.get_logger(__name__)


def _entry(page: PageRecord) -> ManifestEntry:
    outcome = page.outcome
    if isinstance(outcome, PageSuccess):
        return ManifestEntry(
            page_number=page.page_number,
            status="success",
            analysis=outcome.analysis,
        )
    if isinstance(outcome, PageFailure):
        return ManifestEntry(
            page_number=page.page_number,
            status="failed",
            error=outcome.reason,
            failed_at=outcome.failed_at,
        )
    raise ManifestValidationError(f"Unknown outcome for page {page.page_number}")


class ManifestBuilder:
    """Build the aggregated result for a document."""

    def build(
        self,
        document_id: str,
        tenant_id: str,
        total_pages: int,
        pages: list[PageRecord],
        processed_at: datetime | None = None,
    ) -> Manifest:
        """Build a manifest with entries in page-number order.

        Args:
            document_id: Document identifier.
            tenant_id: Owning tenant.
            total_pages: Expected page count.
            pages: Page records, in any order.
            processed_at: Completion timestamp (defaults to now).

        Returns:
            Validated Manifest.

        Raises:
            ManifestValidationError: If the pages do not cover exactly
                ``total_pages`` distinct page numbers.
        """
        entries = [_entry(page) for page in sorted(pages, key=lambda p: p.page_number)]
        success_count = sum(1 for entry in entries if entry.status == "success")
        failed_count = len(entries) - success_count

        self._validate(total_pages, entries, success_count, failed_count)

        manifest = Manifest(
            document_id=document_id,
            tenant_id=tenant_id,
            processed_at=processed_at or datetime.now(UTC),
            total_pages=total_pages,
            success_count=success_count,
            failed_count=failed_count,
            chunks=entries,
        )
        logger.debug(
            "manifest_built",
            document_id=document_id,
            total_pages=total_pages,
            success_count=success_count,
            failed_count=failed_count,
        )
        return manifest

    def _validate(
        self,
        total_pages: int,
        entries: list[ManifestEntry],
        success_count: int,
        failed_count: int,
    ) -> None:
        if total_pages < 1:
            raise ManifestValidationError("Manifest requires at least one page")

        if success_count + failed_count != total_pages:
            raise ManifestValidationError(
                f"Page counts ({success_count} success + {failed_count} failed) "
                f"do not match total pages {total_pages}"
            )

        previous = 0
        for entry in entries:
            if entry.page_number <= previous:
                raise ManifestValidationError(
                    f"Duplicate or out-of-order page number {entry.page_number}"
                )
            if entry.page_number > total_pages:
                raise ManifestValidationError(
                    f"Page number {entry.page_number} exceeds total pages {total_pages}"
                )
            previous = entry.page_number
