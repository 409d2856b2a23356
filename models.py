"""
ProductSheetPro - Data Models
Pydantic models for extracted vendor records, parser profiles, catalog products,
and the selection payload handed to the document-merge step.
"""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# Human category label -> code namespace. "Other" is the catch-all.
CATEGORY_PREFIX = {
    "Kitchen": "A",
    "Bedroom": "B",
    "Living Room": "C",
    "Patio": "D",
    "Bathroom": "E",
    "Laundry": "F",
    "Balcony": "G",
    "Other": "Z",
}

CATCH_ALL_CATEGORY = "Other"

# Numeric suffix width for allocated codes (A001). Widens past 999.
CODE_NUMBER_WIDTH = 3

PLACEHOLDER_IMAGE_URL = "https://placehold.co/600x600?text=No+Image"


class ParserState(str, Enum):
    SEEKING_CODE = "seeking_code"
    ACCUMULATING_DESCRIPTION = "accumulating_description"
    SEEKING_PRICE = "seeking_price"
    SEEKING_NOTES = "seeking_notes"


# ── Extraction ────────────────────────────────────────────────────────


class PageLink(BaseModel):
    """A URI link annotation on a page and the text it covers."""

    anchor_text: str = ""
    uri: str


class PageText(BaseModel):
    """Plain text of one PDF page, line breaks preserved."""

    page_number: int
    text: str = ""
    links: list[PageLink] = Field(default_factory=list)

    @property
    def has_text(self) -> bool:
        return bool(self.text.strip())


class RawExtractedRecord(BaseModel):
    """One candidate product found on a page."""

    code: str = Field(min_length=1)
    manufacturer_description: str = ""
    price: Optional[str] = None
    image_url: Optional[str] = None
    notes: Optional[str] = None
    page_number: int = 0
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ParseAmbiguityWarning(BaseModel):
    """A code seen with enough evidence for reconciliation but not for a full record."""

    code: str
    page_number: int
    score: float
    reason: str


class ExtractionResult(BaseModel):
    """Output of text extraction + record parsing for one PDF.

    all_codes keeps first-appearance order and holds each code once.
    """

    page_count: int = Field(default=0, ge=0)
    records: list[RawExtractedRecord] = Field(default_factory=list)
    all_codes: list[str] = Field(default_factory=list)
    ambiguities: list[ParseAmbiguityWarning] = Field(default_factory=list)
    profile_name: str = ""

    @property
    def unresolved_codes(self) -> list[str]:
        """Codes seen in the document that did not resolve to a full record."""
        found = {r.code for r in self.records}
        return [c for c in self.all_codes if c not in found]


class ParserProfile(BaseModel):
    """Tunable layout rules for one vendor's document format.

    Every heuristic the record parser applies is read from here so that
    format drift can be fixed by editing a profile, not the parser.
    """

    name: str
    # Matched case-insensitively at the start of a line
    code_pattern: str = r"[A-Z]{1,4}-?\d{3,6}[A-Z]?"
    price_pattern: str = r"(?:AUD\s*|A?\$\s*)\d[\d,.]*"
    url_pattern: str = r"https?://\S+"
    image_extensions: tuple[str, ...] = (".jpg", ".jpeg", ".png", ".webp", ".gif")

    # Non-blank lines after the code line in which a price may still be found.
    # Wrapped description lines count, so long descriptions need a wider window.
    field_window: int = Field(default=8, ge=1)

    weights: dict[str, float] = Field(
        default_factory=lambda: {"line_start": 0.2, "description": 0.4, "price": 0.4}
    )
    inline_code_weight: float = Field(default=0.0, ge=0.0, le=1.0)
    code_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    record_threshold: float = Field(default=0.9, ge=0.0, le=1.0)

    stop_patterns: list[str] = Field(default_factory=list)
    ignore_patterns: list[str] = Field(default_factory=list)
    notes_prefixes: list[str] = Field(default_factory=lambda: ["note:", "notes:"])

    carry_description_across_pages: bool = True

    @field_validator("code_pattern", "price_pattern", "url_pattern")
    @classmethod
    def _check_regex(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"Invalid pattern {value!r}: {e}") from e
        return value

    @field_validator("stop_patterns", "ignore_patterns")
    @classmethod
    def _check_regex_list(cls, values: list[str]) -> list[str]:
        for value in values:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"Invalid pattern {value!r}: {e}") from e
        return values

    @field_validator("weights")
    @classmethod
    def _check_weights(cls, weights: dict[str, float]) -> dict[str, float]:
        missing = {"line_start", "description", "price"} - set(weights)
        if missing:
            raise ValueError(f"weights missing keys: {sorted(missing)}")
        return weights


# ── Catalog ───────────────────────────────────────────────────────────


class CatalogProduct(BaseModel):
    """A catalog row. The code is globally unique and never reassigned."""

    id: str
    code: str
    name: str = ""
    category: str = CATCH_ALL_CATEGORY
    description: str = "N/A"
    manufacturer_description: Optional[str] = None
    product_details: Optional[str] = None
    price: Optional[float] = None
    image_url: str = PLACEHOLDER_IMAGE_URL


class ImportRow(BaseModel):
    """A row the operator confirmed for import. The catalog code is assigned later."""

    vendor_code: str = ""
    category: str = CATCH_ALL_CATEGORY
    description: str = ""
    manufacturer_description: str = ""
    product_details: str = ""
    area_description: str = ""
    quantity: str = ""
    price: str = ""
    image_url: str = ""
    notes: str = ""


class CodeAnomaly(BaseModel):
    """More than one catalog row answers to the same code."""

    code: str
    product_ids: list[str]


class SelectionMatch(BaseModel):
    """Partition of extracted codes into catalog hits and misses."""

    matched: list[CatalogProduct] = Field(default_factory=list)
    not_found: list[str] = Field(default_factory=list)
    anomalies: list[CodeAnomaly] = Field(default_factory=list)
    suggestions: dict[str, list[str]] = Field(default_factory=dict)


# ── Selection document ────────────────────────────────────────────────


class SelectionHeader(BaseModel):
    address: str
    date: str
    contact_name: str = ""
    company: str = ""
    phone_number: str = ""
    email: str = ""

    @field_validator("address")
    @classmethod
    def _address_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Address is required")
        return value


class SelectionItem(BaseModel):
    product: CatalogProduct
    area_name: str = CATCH_ALL_CATEGORY
    quantity: str = ""
    notes: str = ""
