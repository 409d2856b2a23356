"""
Tests for tools/code_allocator.py - CodeAllocator
Covers: category prefixes, sequential allocation, widening past 999,
concurrent imports, collision retries, and catalog row building.
"""

import os
import sqlite3
import uuid
import pytest
import tempfile
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

from models import CatalogProduct, ImportRow, PLACEHOLDER_IMAGE_URL
from storage.product_db import DuplicateCodeError, ProductDB
from tools.code_allocator import (
    AllocationConflict, CodeAllocator, ImportInterrupted, canonical_category,
    format_code, parse_code_number, prefix_for_category,
)
from tools.lookup_tools import CatalogMatcher


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def db():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    database = ProductDB(db_path=path)
    yield database
    database.close()
    os.unlink(path)


@pytest.fixture
def allocator(db):
    return CodeAllocator(db)


def _seed(db, code: str, category: str = "Kitchen"):
    db.insert_product(CatalogProduct(id=str(uuid.uuid4()), code=code, category=category))


def _row(**overrides) -> ImportRow:
    defaults = dict(
        vendor_code="BW-001",
        category="Kitchen",
        description="Porcelain tile",
        manufacturer_description="Porcelain tile 600x600",
        price="45.00",
    )
    defaults.update(overrides)
    return ImportRow(**defaults)


# ── Categories and formatting ─────────────────────────────────────────


class TestCategories:
    @pytest.mark.parametrize("category,prefix", [
        ("Kitchen", "A"), ("Bedroom", "B"), ("Living Room", "C"), ("Patio", "D"),
        ("Bathroom", "E"), ("Laundry", "F"), ("Balcony", "G"), ("Other", "Z"),
    ])
    def test_prefixes(self, category, prefix):
        assert prefix_for_category(category) == prefix

    def test_case_insensitive(self):
        assert canonical_category("  living room ") == "Living Room"

    def test_unknown_falls_back_to_other(self):
        assert canonical_category("Garage") == "Other"
        assert canonical_category(None) == "Other"
        assert prefix_for_category("") == "Z"


class TestCodeFormat:
    def test_zero_padded(self):
        assert format_code("A", 7) == "A007"

    def test_widens_past_width(self):
        assert format_code("A", 1000) == "A1000"

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            format_code("A", -1)

    def test_parse_number(self):
        assert parse_code_number("A012", "A") == 12
        assert parse_code_number("A1000", "A") == 1000

    def test_parse_rejects_other_shapes(self):
        assert parse_code_number("ABC", "A") is None
        assert parse_code_number("B001", "A") is None
        assert parse_code_number("A", "A") is None

    def test_parse_ignores_case(self):
        assert parse_code_number("a012", "A") == 12
        assert parse_code_number("A012", "a") == 12

    def test_parse_rejects_non_ascii_digits(self):
        assert parse_code_number("A\u00b2", "A") is None


# ── Sequential allocation ─────────────────────────────────────────────


class TestNextCode:
    def test_first_code(self, allocator):
        assert allocator.allocate_code("Kitchen") == "A001"

    def test_follows_highest_existing(self, allocator, db):
        _seed(db, "A001")
        _seed(db, "A005")
        assert allocator.allocate_code("Kitchen") == "A006"

    def test_prefixes_independent(self, allocator, db):
        _seed(db, "A003")
        assert allocator.allocate_code("Bedroom") == "B001"

    def test_widens_after_999(self, allocator, db):
        _seed(db, "A999")
        assert allocator.next_code("A") == "A1000"
        _seed(db, "A1000")
        assert allocator.next_code("A") == "A1001"

    def test_non_numeric_suffix_ignored(self, allocator, db):
        _seed(db, "ABC")
        _seed(db, "A00X")
        _seed(db, "A004")
        assert allocator.next_code("A") == "A005"

    def test_lowercase_codes_count_toward_sequence(self, allocator, db):
        _seed(db, "a005")
        _seed(db, "A004")
        assert allocator.next_code("A") == "A006"

        product = allocator.import_row(_row())
        assert product.code == "A006"

        result = CatalogMatcher(db).match_codes(["A005", "A006"])
        assert [p.code for p in result.matched] == ["a005", "A006"]
        assert result.anomalies == []

    def test_allocate_does_not_reserve(self, allocator):
        assert allocator.allocate_code("Kitchen") == "A001"
        assert allocator.allocate_code("Kitchen") == "A001"


class TestImportRows:
    def test_sequential_codes(self, allocator, db):
        saved = allocator.import_rows([_row(), _row(vendor_code="BW-002"), _row(vendor_code="BW-003")])
        assert [p.code for p in saved] == ["A001", "A002", "A003"]
        assert db.get_all_codes() == ["A001", "A002", "A003"]

    def test_mixed_categories(self, allocator):
        saved = allocator.import_rows([
            _row(category="Kitchen"),
            _row(category="Bathroom"),
            _row(category="kitchen"),
            _row(category="Shed"),
        ])
        assert [p.code for p in saved] == ["A001", "E001", "A002", "Z001"]
        assert [p.category for p in saved] == ["Kitchen", "Bathroom", "Kitchen", "Other"]

    def test_empty(self, allocator):
        assert allocator.import_rows([]) == []

    def test_concurrent_imports_get_distinct_codes(self, allocator, db):
        rows = [_row(vendor_code=f"BW-{i:03d}") for i in range(25)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            saved = list(pool.map(allocator.import_row, rows))
        codes = sorted(p.code for p in saved)
        assert codes == [f"A{i:03d}" for i in range(1, 26)]
        assert len(db.get_all_codes()) == 25

    def test_two_allocators_one_catalog(self, db):
        first, second = CodeAllocator(db), CodeAllocator(db)
        a = first.import_row(_row())
        b = second.import_row(_row())
        assert {a.code, b.code} == {"A001", "A002"}


class TestCollisionRetry:
    def test_retries_with_fresh_number(self):
        db = MagicMock()
        db.get_codes_with_prefix.side_effect = [[], ["A001"]]
        db.insert_product.side_effect = [DuplicateCodeError("A001"), "id"]
        allocator = CodeAllocator(db, max_retries=5)

        product = allocator.import_row(_row())
        assert product.code == "A002"
        assert db.insert_product.call_count == 2

    def test_gives_up_after_max_retries(self):
        db = MagicMock()
        db.get_codes_with_prefix.return_value = []
        db.insert_product.side_effect = DuplicateCodeError("A001")
        allocator = CodeAllocator(db, max_retries=3)

        with pytest.raises(AllocationConflict) as exc_info:
            allocator.import_row(_row())
        assert exc_info.value.prefix == "A"
        assert exc_info.value.attempts == 3
        assert db.insert_product.call_count == 3

    def test_conflict_reports_saved_count(self):
        db = MagicMock()
        db.get_codes_with_prefix.return_value = []
        db.insert_product.side_effect = [
            "id", DuplicateCodeError("A001"), DuplicateCodeError("A001"),
        ]
        allocator = CodeAllocator(db, max_retries=2)

        with pytest.raises(AllocationConflict) as exc_info:
            allocator.import_rows([_row(), _row(vendor_code="BW-002"), _row(vendor_code="BW-003")])
        assert exc_info.value.saved_count == 1

    def test_other_errors_report_saved_count(self):
        db = MagicMock()
        db.get_codes_with_prefix.return_value = []
        failure = sqlite3.OperationalError("disk I/O error")
        db.insert_product.side_effect = ["id", failure]
        allocator = CodeAllocator(db)

        with pytest.raises(ImportInterrupted) as exc_info:
            allocator.import_rows([_row(), _row(vendor_code="BW-002"), _row(vendor_code="BW-003")])
        assert exc_info.value.saved_count == 1
        assert exc_info.value.__cause__ is failure
        assert db.insert_product.call_count == 2

    def test_other_errors_propagate(self):
        db = MagicMock()
        db.get_codes_with_prefix.return_value = []
        db.insert_product.side_effect = RuntimeError("disk full")
        allocator = CodeAllocator(db)

        with pytest.raises(RuntimeError):
            allocator.import_row(_row())
        assert db.insert_product.call_count == 1


# ── Row building ──────────────────────────────────────────────────────


class TestBuildProduct:
    def test_full_row(self):
        product = CodeAllocator.build_product(_row(), "A001", "Kitchen")
        assert product.code == "A001"
        assert product.name == "Porcelain tile"
        assert product.description == "Porcelain tile"
        assert product.manufacturer_description == "Porcelain tile 600x600"
        assert product.price == 45.0
        assert product.image_url == PLACEHOLDER_IMAGE_URL
        assert product.product_details is None

    def test_name_falls_back_to_vendor_code(self):
        product = CodeAllocator.build_product(_row(description=""), "A001", "Kitchen")
        assert product.name == "BW-001"
        assert product.description == "N/A"

    def test_name_falls_back_to_catalog_code(self):
        product = CodeAllocator.build_product(
            _row(description="", vendor_code=""), "A001", "Kitchen",
        )
        assert product.name == "Product A001"

    def test_empty_manufacturer_description_is_none(self):
        product = CodeAllocator.build_product(
            _row(manufacturer_description="  "), "A001", "Kitchen",
        )
        assert product.manufacturer_description is None

    def test_image_kept(self):
        product = CodeAllocator.build_product(
            _row(image_url="https://cdn.example.com/a.png"), "A001", "Kitchen",
        )
        assert product.image_url == "https://cdn.example.com/a.png"

    def test_product_details_joined(self):
        row = _row(
            product_details="Pallet lots only", area_description="Splashback",
            quantity="12", notes="Matt finish",
        )
        assert CodeAllocator.build_product_details(row) == (
            "Pallet lots only | Area: Splashback | Qty: 12 | Notes: Matt finish"
        )

    @pytest.mark.parametrize("value,expected", [
        ("45.00", 45.0), ("120", 120.0), ("", None), (None, None),
        ("abc", None), ("inf", None), ("nan", None),
    ])
    def test_safe_float(self, value, expected):
        assert CodeAllocator._safe_float(value) == expected
