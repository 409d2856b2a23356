"""
ProductSheetPro - PDF Text Extraction Tools
Turns uploaded quote/order PDF bytes into per-page plain text.
Uses PyMuPDF as the primary extractor, pypdf as a fallback, and pdfplumber
to rescue pages the primary extractor returned empty.
"""

import io
import logging
import os
import re
from typing import Optional

import fitz  # PyMuPDF
import pdfplumber
from dotenv import load_dotenv
from pypdf import PdfReader

from models import PageLink, PageText

load_dotenv(override=True)

logger = logging.getLogger(__name__)

MAX_PDF_SIZE_MB = int(os.getenv("MAX_PDF_SIZE_MB", "25"))
MAX_PDF_SIZE_BYTES = MAX_PDF_SIZE_MB * 1024 * 1024
MAX_PDF_PAGES = int(os.getenv("MAX_PDF_PAGES", "200"))
PDF_MAGIC = b"%PDF"
# The header may be preceded by junk bytes; readers accept it within the first 1KB
_MAGIC_SEARCH_BYTES = 1024


class ExtractionError(Exception):
    """The upload is not a readable PDF, or is outside the accepted limits."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def validate_pdf_bytes(pdf_bytes: bytes) -> None:
    """Raise ExtractionError unless the bytes look like an acceptable PDF."""
    if not pdf_bytes:
        raise ExtractionError("The uploaded file is empty")
    if len(pdf_bytes) > MAX_PDF_SIZE_BYTES:
        raise ExtractionError(
            f"The uploaded file is too large ({len(pdf_bytes) / 1024 / 1024:.1f}MB, "
            f"max {MAX_PDF_SIZE_MB}MB)"
        )
    if PDF_MAGIC not in pdf_bytes[:_MAGIC_SEARCH_BYTES]:
        raise ExtractionError("The uploaded file is not a valid PDF")


def extract_text_from_pdf(pdf_bytes: bytes) -> list[PageText]:
    """Extract the text of every page, in page order.

    Pages without text are kept (with empty text) so that the length of the
    result is the document's page count. Encrypted documents give an empty
    list rather than an error.

    Raises:
        ExtractionError: the bytes are not a readable PDF, or exceed the
            size/page limits.
    """
    validate_pdf_bytes(pdf_bytes)

    try:
        pages = _extract_pages_pymupdf(pdf_bytes)
    except ExtractionError:
        raise
    except Exception as e:
        logger.warning("PyMuPDF extraction failed, falling back to pypdf: %s", e)
        pages = _extract_pages_pypdf(pdf_bytes)

    if any(not p.has_text for p in pages):
        _rescue_empty_pages(pdf_bytes, pages)

    with_text = sum(1 for p in pages if p.has_text)
    logger.info("Text extraction: %d/%d pages with text", with_text, len(pages))
    return pages


def _check_page_limit(page_count: int) -> None:
    if page_count > MAX_PDF_PAGES:
        raise ExtractionError(
            f"The PDF has {page_count} pages (max {MAX_PDF_PAGES})"
        )


def _extract_pages_pymupdf(pdf_bytes: bytes) -> list[PageText]:
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        if doc.needs_pass:
            logger.warning("PDF is encrypted; no text can be extracted")
            return []
        _check_page_limit(doc.page_count)

        pages = []
        for i, page in enumerate(doc):
            links = []
            for link in page.get_links():
                uri = link.get("uri")
                if not uri:
                    continue
                rect = link.get("from")
                anchor = page.get_textbox(rect) if rect is not None else ""
                links.append(PageLink(anchor_text=collapse_whitespace(anchor), uri=uri))
            pages.append(PageText(
                page_number=i + 1,
                text=_clean_page_text(page.get_text("text") or ""),
                links=links,
            ))
    return pages


def _extract_pages_pypdf(pdf_bytes: bytes) -> list[PageText]:
    """Fallback text extraction using pypdf. Link annotations are not read."""
    try:
        reader = PdfReader(io.BytesIO(pdf_bytes))
        if reader.is_encrypted:
            logger.warning("PDF is encrypted; no text can be extracted")
            return []
        _check_page_limit(len(reader.pages))
        pages = []
        for i, page in enumerate(reader.pages):
            pages.append(PageText(
                page_number=i + 1,
                text=_clean_page_text(page.extract_text() or ""),
            ))
        return pages
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError("The uploaded file could not be read as a PDF") from e


def _rescue_empty_pages(pdf_bytes: bytes, pages: list[PageText]) -> None:
    """Fill pages the primary extractor left empty with pdfplumber's text."""
    try:
        with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
            for page in pages:
                if page.has_text or page.page_number > len(pdf.pages):
                    continue
                text = pdf.pages[page.page_number - 1].extract_text() or ""
                if text.strip():
                    page.text = _clean_page_text(text)
                    logger.info("pdfplumber rescued page %d", page.page_number)
    except Exception as e:
        logger.warning("Supplementary pdfplumber text extraction failed: %s", e)


def _clean_page_text(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\xa0", " ")
    return "\n".join(line.rstrip() for line in text.split("\n")).strip("\n")


# ── Field normalisation ───────────────────────────────────────────────


def collapse_whitespace(text: Optional[str]) -> str:
    if not text:
        return ""
    return " ".join(text.split())


def normalize_code(raw: str) -> str:
    """Product codes compare case-insensitively; the canonical form is upper case."""
    return (raw or "").strip().upper()


def normalize_price(raw: Optional[str]) -> Optional[str]:
    """Reduce a price token to digits and one decimal point.

    "$1,234.50" -> "1234.50". Anything that leaves no digits, or more than
    one decimal point ("99.99.9"), is not a price and gives None.
    """
    if raw is None:
        return None
    cleaned = re.sub(r"[^\d.]", "", str(raw))
    if cleaned.count(".") > 1:
        return None
    if not any(ch.isdigit() for ch in cleaned):
        return None
    if cleaned.startswith("."):
        cleaned = "0" + cleaned
    if cleaned.endswith("."):
        cleaned = cleaned[:-1]
    return cleaned
