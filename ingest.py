"""
ProductSheetPro - PDF Ingestion Pipeline
Orchestrates: PDF bytes -> page text -> product records, then either
  * import: allocate new catalog codes and store the confirmed rows, or
  * selection: match the extracted codes against the existing catalog.
"""

import logging
from typing import Optional

from models import (
    CATCH_ALL_CATEGORY, ExtractionResult, ImportRow, ParserProfile,
    RawExtractedRecord, SelectionHeader, SelectionItem, SelectionMatch, CatalogProduct,
)
from profiles import detect_profile
from storage.product_db import ProductDB
from tools.code_allocator import CodeAllocator
from tools.lookup_tools import CatalogMatcher
from tools.parse_tools import extract_text_from_pdf
from tools.record_parser import parse_pages

logger = logging.getLogger(__name__)


class IngestionPipeline:

    def __init__(self, db: ProductDB, allocator: Optional[CodeAllocator] = None,
                 matcher: Optional[CatalogMatcher] = None):
        self.db = db
        self.allocator = allocator or CodeAllocator(db)
        self.matcher = matcher or CatalogMatcher(db)

    def extract(
        self, pdf_bytes: bytes, profile: Optional[ParserProfile] = None,
    ) -> ExtractionResult:
        """Extract candidate product records from a PDF.

        Does NOT store anything. Without an explicit profile one is picked
        from vendor markers on the first page with text. A PDF without any
        extractable text (scanned or encrypted) gives page_count 0 and no
        records.

        Raises:
            ExtractionError: the upload is not a readable PDF.
        """
        pages = extract_text_from_pdf(pdf_bytes)
        if profile is None:
            first_text = next((p.text for p in pages if p.has_text), "")
            profile = detect_profile(first_text)

        result = parse_pages(pages, profile)
        if pages and result.page_count == 0:
            logger.warning("No extractable text in %d-page PDF", len(pages))
        logger.info(
            "Extracted %d records and %d codes from %d pages (profile %s)",
            len(result.records), len(result.all_codes), result.page_count, profile.name,
        )
        return result

    # ── Import path ───────────────────────────────────────────────────

    @staticmethod
    def build_import_rows(
        records: list[RawExtractedRecord], category: str = CATCH_ALL_CATEGORY,
    ) -> list[ImportRow]:
        """Turn reviewed records into import rows; the vendor description
        doubles as the catalog description, the notes as product details."""
        rows = []
        for record in records:
            code = record.code.strip()
            if not code:
                continue
            description = record.manufacturer_description.strip()
            rows.append(ImportRow(
                vendor_code=code,
                category=category,
                description=description or code,
                manufacturer_description=description,
                product_details=(record.notes or "").strip(),
                price=record.price or "",
                image_url=record.image_url or "",
            ))
        return rows

    def confirm_and_store(self, rows: list[ImportRow]) -> list[CatalogProduct]:
        """Allocate codes for confirmed rows and store them in the catalog.
        Called after the operator reviews and approves the extraction.

        Raises:
            AllocationConflict: retries ran out; `saved_count` rows were stored.
            ImportInterrupted: any other failure; `saved_count` rows were stored.
        """
        saved = self.allocator.import_rows(rows)
        logger.info("Imported %d products", len(saved))
        return saved

    # ── Selection path ────────────────────────────────────────────────

    def match_pdf(
        self, pdf_bytes: bytes, profile: Optional[ParserProfile] = None,
    ) -> tuple[ExtractionResult, SelectionMatch]:
        """Extract codes from a PDF and match them against the catalog.

        Raises:
            ExtractionError: the upload is not a readable PDF.
            CatalogLookupFailure: the catalog could not be queried.
        """
        extraction = self.extract(pdf_bytes, profile)
        match = self.matcher.match_codes(extraction.all_codes)
        return extraction, match

    @staticmethod
    def build_selection_payload(
        header: SelectionHeader, items: list[SelectionItem],
    ) -> dict:
        """Plain data for the document-merge step."""
        products = []
        for item in items:
            p = item.product
            products.append({
                "category": item.area_name,
                "code": p.code,
                "description": p.description,
                "manufacturer_description": p.manufacturer_description or "",
                "product_details": p.product_details or "",
                "area_description": item.area_name,
                "quantity": item.quantity,
                "price": "" if p.price is None else f"{p.price:.2f}",
                "notes": item.notes,
                "image_url": p.image_url,
            })
        return {
            "address": header.address,
            "date": header.date,
            "contact_name": header.contact_name,
            "company": header.company,
            "phone_number": header.phone_number,
            "email": header.email,
            "products": products,
        }
