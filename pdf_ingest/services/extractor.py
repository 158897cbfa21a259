# =============================================================================
# Text Extractor — PDF Bytes → Ordered Page Strings (Docling)
# =============================================================================
#
# Contract: given raw document bytes, return the non-empty page texts in
# original page order.
#
# Two steps:
#   1. Docling converts the PDF and we render its items page by page,
#      joining pages with form-feed (\f), the same page-break marker plain
#      pdf-to-text tools emit.
#   2. split_pages() splits on \f and drops pages whose trimmed content is
#      empty. Producers that pre-extract text with another tool can feed
#      their raw output through split_pages() directly.
#
# Extraction is a pure function of the input bytes. Bytes that are not a
# PDF, or that Docling cannot convert, raise ExtractionError (not
# retryable: the same bytes will fail the same way next time).
# =============================================================================

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from io import BytesIO

from docling.datamodel.base_models import DocumentStream, InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from docling_core.types.doc.labels import DocItemLabel

from pdf_ingest.exceptions import ExtractionError

logger = logging.getLogger(__name__)

PAGE_BREAK = "\f"

# A PDF header may be preceded by up to 1 KB of junk
_PDF_MAGIC = b"%PDF-"
_HEADER_WINDOW = 1024

_SKIPPED_LABELS = {DocItemLabel.PAGE_HEADER, DocItemLabel.PAGE_FOOTER}


def split_pages(raw_text: str) -> list[str]:
    """
    Split raw extracted text on page breaks, dropping blank pages.

    Order is preserved and each kept page is stripped of surrounding
    whitespace.

    >>> split_pages("Hello\\fWorld")
    ['Hello', 'World']
    >>> split_pages("Hello\\f  \\n\\fWorld")
    ['Hello', 'World']
    """
    return [page.strip() for page in raw_text.split(PAGE_BREAK) if page.strip()]


def _default_converter() -> DocumentConverter:
    # Born-digital PDFs only: no OCR
    pipeline_options = PdfPipelineOptions()
    pipeline_options.do_ocr = False
    pipeline_options.do_table_structure = True
    return DocumentConverter(
        format_options={
            InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
        }
    )


class TextExtractor:
    """
    Docling-backed PDF text extraction.

    The converter loads layout models on first use (a few seconds), so one
    instance is created lazily and shared by all worker threads.
    """

    def __init__(self, converter: DocumentConverter | None = None) -> None:
        self._converter = converter
        self._lock = threading.Lock()

    def extract(self, data: bytes, filename: str = "document.pdf") -> list[str]:
        """
        Extract ordered, non-empty page texts from PDF bytes.

        Raises:
            ExtractionError: the bytes are not a parseable PDF.
        """
        if not data:
            raise ExtractionError(f"Document '{filename}' is empty (0 bytes)")
        if _PDF_MAGIC not in data[:_HEADER_WINDOW]:
            raise ExtractionError(f"Document '{filename}' is not a PDF (missing %PDF header)")

        raw_text = self.extract_raw_text(data, filename)
        pages = split_pages(raw_text)
        logger.info(
            "Extracted '%s': %d non-empty pages, %d characters",
            filename, len(pages), sum(len(p) for p in pages),
        )
        return pages

    def extract_raw_text(self, data: bytes, filename: str = "document.pdf") -> str:
        """Render the whole document as text with \\f between pages."""
        converter = self._get_converter()
        try:
            result = converter.convert(
                DocumentStream(name=filename, stream=BytesIO(data)),
            )
        except Exception as exc:
            raise ExtractionError(f"Docling failed to parse '{filename}': {exc}") from exc

        document = result.document
        pages: dict[int, list[str]] = defaultdict(list)
        current_page = 1

        for item, _level in document.iterate_items():
            if getattr(item, "prov", None):
                current_page = item.prov[0].page_no or current_page

            label = getattr(item, "label", None)
            if label in _SKIPPED_LABELS:
                continue
            if label == DocItemLabel.TABLE:
                text = _table_text(item, document)
            else:
                text = (getattr(item, "text", "") or "").strip()
            if text:
                pages[current_page].append(text)

        if not pages:
            return ""
        last_page = max(pages)
        return PAGE_BREAK.join(
            "\n".join(pages.get(page_no, [])) for page_no in range(1, last_page + 1)
        )

    def _get_converter(self) -> DocumentConverter:
        if self._converter is None:
            with self._lock:
                if self._converter is None:
                    logger.info("Initializing Docling DocumentConverter (first use)...")
                    self._converter = _default_converter()
        return self._converter


def _table_text(table_item: object, document: object) -> str:
    """Markdown rendering of a table, falling back to its plain text."""
    try:
        if hasattr(table_item, "export_to_markdown"):
            return table_item.export_to_markdown(doc=document).strip()
    except Exception as exc:
        logger.warning("Table export to markdown failed: %s", exc)
    return (getattr(table_item, "text", "") or "").strip()
