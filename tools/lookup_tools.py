"""
ProductSheetPro - Catalog Matching Tools
Reconciles codes extracted from a PDF against the existing product catalog.
Read-only: nothing here writes to the catalog.
"""

import logging
import sqlite3
from typing import Iterable

from fuzzywuzzy import fuzz, process

from models import CodeAnomaly, SelectionMatch
from storage.product_db import ProductDB
from tools.parse_tools import normalize_code

logger = logging.getLogger(__name__)

SUGGESTION_LIMIT = 3
SUGGESTION_THRESHOLD = 80


class CatalogLookupFailure(Exception):
    """The catalog could not be queried; no partial result is returned."""

    def __init__(self, codes: list[str], message: str = "Catalog lookup failed"):
        super().__init__(f"{message} ({len(codes)} codes)")
        self.codes = codes


class CatalogMatcher:
    """Partitions extracted codes into catalog hits and misses."""

    def __init__(self, db: ProductDB):
        self.db = db

    def match_codes(self, codes: Iterable[str], suggest: bool = True) -> SelectionMatch:
        """Match codes exactly (case-insensitive) against the catalog.

        matched follows first-appearance order of the input. When the catalog
        holds several rows for one code the earliest inserted row is used and
        the code is reported in `anomalies`.

        Raises:
            CatalogLookupFailure: the catalog could not be queried.
        """
        distinct = list(dict.fromkeys(
            normalize_code(c) for c in codes if c and c.strip()
        ))
        if not distinct:
            return SelectionMatch()

        try:
            found = self.db.lookup_by_codes(distinct)
        except sqlite3.Error as e:
            logger.error("Catalog lookup failed for %d codes: %s", len(distinct), e)
            raise CatalogLookupFailure(distinct) from e

        result = SelectionMatch()
        for code in distinct:
            rows = found.get(code)
            if not rows:
                result.not_found.append(code)
                continue
            result.matched.append(rows[0])
            if len(rows) > 1:
                ids = [p.id for p in rows]
                logger.warning(
                    "Catalog holds %d rows for code %s (ids %s); using the earliest",
                    len(rows), code, ids,
                )
                result.anomalies.append(CodeAnomaly(code=code, product_ids=ids))

        if suggest and result.not_found:
            result.suggestions = self.suggest_codes(result.not_found)

        logger.info(
            "Matched %d/%d codes (%d not found)",
            len(result.matched), len(distinct), len(result.not_found),
        )
        return result

    def suggest_codes(self, codes: list[str]) -> dict[str, list[str]]:
        """Close catalog codes for codes that had no exact match."""
        try:
            catalog_codes = list(dict.fromkeys(c.upper() for c in self.db.get_all_codes()))
        except sqlite3.Error as e:
            raise CatalogLookupFailure(codes, "Catalog lookup for suggestions failed") from e
        if not catalog_codes:
            return {}

        suggestions = {}
        for code in codes:
            matches = process.extract(
                code, catalog_codes, scorer=fuzz.ratio, limit=SUGGESTION_LIMIT,
            )
            close = [m[0] for m in matches if m[1] >= SUGGESTION_THRESHOLD]
            if close:
                suggestions[code] = close
        return suggestions
