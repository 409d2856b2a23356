"""
ProductSheetPro - Catalog Code Allocation
Assigns new catalog codes from a per-category sequence (Kitchen -> A001, A002, ...).

The "next number" is never kept in memory: it is derived from the catalog on
every allocation. Allocation and insert run under a per-prefix lock, and the
catalog's UNIQUE index on `code` catches writers outside this process; a
collision is retried with a freshly computed number.
"""

import logging
import math
import os
import threading
import uuid
from typing import Optional

from dotenv import load_dotenv

from models import (
    CATCH_ALL_CATEGORY, CATEGORY_PREFIX, CODE_NUMBER_WIDTH,
    PLACEHOLDER_IMAGE_URL, CatalogProduct, ImportRow,
)
from storage.product_db import DuplicateCodeError, ProductDB

load_dotenv(override=True)

logger = logging.getLogger(__name__)

MAX_ALLOCATION_RETRIES = int(os.getenv("MAX_ALLOCATION_RETRIES", "5"))

_CATEGORY_LOOKUP = {name.lower(): name for name in CATEGORY_PREFIX}


class AllocationConflict(Exception):
    """Every allocation attempt for a prefix collided with an existing code."""

    def __init__(self, prefix: str, attempts: int, saved_count: int = 0):
        super().__init__(
            f"Could not allocate a unique code under prefix {prefix!r} "
            f"after {attempts} attempts"
        )
        self.prefix = prefix
        self.attempts = attempts
        self.saved_count = saved_count


class ImportInterrupted(Exception):
    """A row failed for a reason other than a code conflict.

    The original error is chained as __cause__.
    """

    def __init__(self, saved_count: int, error: Exception):
        super().__init__(f"Import stopped after {saved_count} rows: {error}")
        self.saved_count = saved_count


def canonical_category(category: Optional[str]) -> str:
    """Map a free-text category label onto a known category (case-insensitive)."""
    label = (category or "").strip()
    return _CATEGORY_LOOKUP.get(label.lower(), CATCH_ALL_CATEGORY)


def prefix_for_category(category: Optional[str]) -> str:
    return CATEGORY_PREFIX[canonical_category(category)]


def format_code(prefix: str, number: int, width: int = CODE_NUMBER_WIDTH) -> str:
    """prefix + zero-padded number. Numbers wider than `width` are not truncated."""
    if number < 0:
        raise ValueError(f"Cannot format negative code number: {number}")
    return f"{prefix}{number:0{width}d}"


def parse_code_number(code: str, prefix: str) -> Optional[int]:
    """Numeric suffix of code under prefix (any case), or None if the suffix is not all digits."""
    if not code.upper().startswith(prefix.upper()):
        return None
    suffix = code[len(prefix):]
    if not (suffix.isascii() and suffix.isdigit()):
        return None
    return int(suffix)


class CodeAllocator:

    def __init__(self, db: ProductDB, max_retries: int = MAX_ALLOCATION_RETRIES):
        self.db = db
        self.max_retries = max_retries
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _prefix_lock(self, prefix: str) -> threading.Lock:
        with self._locks_guard:
            if prefix not in self._locks:
                self._locks[prefix] = threading.Lock()
            return self._locks[prefix]

    def next_code(self, prefix: str) -> str:
        """The code the next import under prefix would receive.

        Read-only; callers that persist must go through import_row so the
        read and the insert are serialised.
        """
        current = 0
        for code in self.db.get_codes_with_prefix(prefix):
            number = parse_code_number(code, prefix)
            if number is not None:
                current = number
                break
        return format_code(prefix, current + 1)

    def allocate_code(self, category: Optional[str]) -> str:
        return self.next_code(prefix_for_category(category))

    def import_row(self, row: ImportRow) -> CatalogProduct:
        """Allocate a code for the row's category and insert it into the catalog."""
        category = canonical_category(row.category)
        prefix = CATEGORY_PREFIX[category]

        with self._prefix_lock(prefix):
            for attempt in range(1, self.max_retries + 1):
                code = self.next_code(prefix)
                product = self.build_product(row, code, category)
                try:
                    self.db.insert_product(product)
                except DuplicateCodeError:
                    logger.warning(
                        "Code %s taken before insert (attempt %d/%d), retrying",
                        code, attempt, self.max_retries,
                    )
                    continue
                logger.info("Allocated %s for %s", code, row.vendor_code or category)
                return product

        raise AllocationConflict(prefix, self.max_retries)

    def import_rows(self, rows: list[ImportRow]) -> list[CatalogProduct]:
        """Import rows in order. On failure the error carries how many were saved.

        Raises:
            AllocationConflict: a row's prefix stayed contended through every retry.
            ImportInterrupted: any other failure, chained to the original error.
        """
        saved = []
        for row in rows:
            try:
                saved.append(self.import_row(row))
            except AllocationConflict as e:
                e.saved_count = len(saved)
                raise
            except Exception as e:
                logger.error("Import stopped after %d of %d rows: %s", len(saved), len(rows), e)
                raise ImportInterrupted(len(saved), e) from e
        return saved

    # ── Row building ──────────────────────────────────────────────────

    @staticmethod
    def build_product(row: ImportRow, code: str, category: str) -> CatalogProduct:
        description = row.description.strip()
        name = description or row.vendor_code.strip() or f"Product {code}"
        return CatalogProduct(
            id=str(uuid.uuid4()),
            code=code,
            name=name,
            category=category,
            description=description or "N/A",
            manufacturer_description=row.manufacturer_description.strip() or None,
            product_details=CodeAllocator.build_product_details(row),
            price=CodeAllocator._safe_float(row.price),
            image_url=row.image_url.strip() or PLACEHOLDER_IMAGE_URL,
        )

    @staticmethod
    def build_product_details(row: ImportRow) -> Optional[str]:
        parts = []
        if row.product_details.strip():
            parts.append(row.product_details.strip())
        if row.area_description.strip():
            parts.append(f"Area: {row.area_description.strip()}")
        if row.quantity.strip():
            parts.append(f"Qty: {row.quantity.strip()}")
        if row.notes.strip():
            parts.append(f"Notes: {row.notes.strip()}")
        return " | ".join(parts) if parts else None

    @staticmethod
    def _safe_float(val) -> Optional[float]:
        if val is None or val == "":
            return None
        try:
            number = float(val)
        except (ValueError, TypeError):
            return None
        return number if math.isfinite(number) else None
