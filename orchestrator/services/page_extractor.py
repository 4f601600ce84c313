"""PDF page text extraction using pypdf.

Page numbering:
- Extracted pages are 1-indexed (page_number=1 is the first page)
- pypdf internally uses 0-based indices
"""

from dataclasses import dataclass
from functools import lru_cache
from io import BytesIO

import pypdf
import structlog

from orchestrator.services.exceptions import PageExtractionError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ExtractedPage:
    """Text of one page, or the error that prevented extracting it."""

    page_number: int
    text: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PageExtractor:
    """Split a PDF into per-page text."""

    def extract_pages(self, content: bytes) -> list[ExtractedPage]:
        """Extract the text of every page.

        Args:
            content: PDF file content.

        Returns:
            One ExtractedPage per page, in page order.

        Raises:
            PageExtractionError: If the document cannot be opened at all.
        """
        if not content:
            raise PageExtractionError("Document is empty")

        try:
            reader = pypdf.PdfReader(BytesIO(content))
            pdf_pages = list(reader.pages)
        except pypdf.errors.PdfReadError as e:
            raise PageExtractionError(f"Invalid PDF: {e}") from e
        except Exception as e:
            raise PageExtractionError(f"Failed to read PDF: {e}") from e

        pages: list[ExtractedPage] = []
        for index, pdf_page in enumerate(pdf_pages):
            page_number = index + 1
            try:
                pages.append(ExtractedPage(page_number, pdf_page.extract_text() or ""))
            except Exception as e:
                logger.warning(
                    "page_text_extraction_failed",
                    page_number=page_number,
                    error=str(e),
                )
                pages.append(ExtractedPage(page_number, error=f"Text extraction failed: {e}"))

        logger.info(
            "pages_extracted",
            page_count=len(pages),
            failed_pages=sum(1 for page in pages if not page.ok),
        )
        return pages


@lru_cache(maxsize=1)
def get_page_extractor() -> PageExtractor:
    """Get or create the PageExtractor singleton."""
    return PageExtractor()
