"""
ProductSheetPro - SQLite Product Catalog
Stores catalog product rows keyed by a globally unique product code.
Thread-safety: All write operations are serialised through a threading.Lock.
Uniqueness of `code`, ignoring case, is enforced by a UNIQUE index, so
concurrent writers in other processes are caught at insert time as well.
"""

import os
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Iterable, Optional

from dotenv import load_dotenv

from models import CatalogProduct

load_dotenv(override=True)

DB_PATH = Path(os.getenv(
    "PRODUCT_DB_PATH", str(Path(__file__).parent.parent / "data" / "products.db")
))

# SQLite's default limit on bound variables is 999
_LOOKUP_BATCH_SIZE = 500


class DuplicateCodeError(Exception):
    """An insert collided with an existing product code."""

    def __init__(self, code: str):
        super().__init__(f"Product code already exists: {code}")
        self.code = code


class ProductDB:

    def __init__(self, db_path: str = str(DB_PATH)):
        self.db_path = db_path
        self._lock = threading.Lock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()
        self._migrate_schema()

    def _create_tables(self):
        cursor = self.conn.cursor()
        cursor.executescript("""
            CREATE TABLE IF NOT EXISTS products (
                id TEXT PRIMARY KEY,
                code TEXT NOT NULL,
                name TEXT DEFAULT '',
                category TEXT DEFAULT 'Other',
                description TEXT DEFAULT 'N/A',
                manufacturer_description TEXT,
                product_details TEXT,
                price REAL,
                image_url TEXT DEFAULT '',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_category ON products(category);
        """)
        self.conn.commit()

    def _migrate_schema(self):
        """Add the unique code index to databases created before it existed.

        Codes are unique ignoring case, matching how they are looked up.
        Databases that already hold duplicate codes keep working with a plain
        index instead; the matcher reports such codes as anomalies.
        """
        try:
            self.conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_code_unique_upper "
                "ON products(UPPER(code))"
            )
            self.conn.execute("DROP INDEX IF EXISTS idx_code_unique")
            self.conn.execute("DROP INDEX IF EXISTS idx_code_upper")
            self.conn.commit()
        except sqlite3.IntegrityError:
            self.conn.rollback()
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_code_upper ON products(UPPER(code))"
            )
            self.conn.commit()

    # ── Product CRUD ──────────────────────────────────────────────────

    def insert_product(self, product: CatalogProduct) -> str:
        """Insert a new row. Never replaces an existing code.

        Raises:
            DuplicateCodeError: a row with the same code already exists.
        """
        if not product.id:
            product.id = str(uuid.uuid4())
        with self._lock:
            try:
                self.conn.execute("""
                    INSERT INTO products (
                        id, code, name, category, description,
                        manufacturer_description, product_details, price, image_url
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    product.id, product.code, product.name, product.category,
                    product.description, product.manufacturer_description,
                    product.product_details, product.price, product.image_url,
                ))
                self.conn.commit()
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                if "code" in str(e):
                    raise DuplicateCodeError(product.code) from e
                raise
        return product.id

    def get_product(self, product_id: str) -> Optional[CatalogProduct]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM products WHERE id = ?", (product_id,))
        row = cursor.fetchone()
        if row:
            return self._row_to_product(row)
        return None

    def get_product_by_code(self, code: str) -> Optional[CatalogProduct]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM products WHERE UPPER(code) = ? ORDER BY rowid LIMIT 1",
            (code.strip().upper(),),
        )
        row = cursor.fetchone()
        return self._row_to_product(row) if row else None

    def delete_product(self, product_id: str):
        with self._lock:
            self.conn.execute("DELETE FROM products WHERE id = ?", (product_id,))
            self.conn.commit()

    def get_all_products(self, category: Optional[str] = None) -> list[CatalogProduct]:
        cursor = self.conn.cursor()
        if category:
            cursor.execute(
                "SELECT * FROM products WHERE category = ? ORDER BY rowid", (category,)
            )
        else:
            cursor.execute("SELECT * FROM products ORDER BY rowid")
        return [self._row_to_product(row) for row in cursor.fetchall()]

    def search_products(self, term: str, limit: int = 100) -> list[CatalogProduct]:
        """Case-insensitive substring search over code, name and descriptions."""
        pattern = f"%{_escape_like(term.strip().upper())}%"
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT * FROM products
            WHERE UPPER(code) LIKE ? ESCAPE '\\'
               OR UPPER(name) LIKE ? ESCAPE '\\'
               OR UPPER(description) LIKE ? ESCAPE '\\'
               OR UPPER(COALESCE(manufacturer_description, '')) LIKE ? ESCAPE '\\'
            ORDER BY code
            LIMIT ?
        """, (pattern, pattern, pattern, pattern, limit))
        return [self._row_to_product(row) for row in cursor.fetchall()]

    def get_product_counts(self) -> list[dict]:
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT category, COUNT(*) as count
            FROM products GROUP BY category ORDER BY category
        """)
        return [dict(row) for row in cursor.fetchall()]

    def get_categories(self) -> list[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT DISTINCT category FROM products ORDER BY category")
        return [row["category"] for row in cursor.fetchall()]

    def get_all_codes(self) -> list[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT code FROM products ORDER BY rowid")
        return [row["code"] for row in cursor.fetchall()]

    # ── Code allocation support ───────────────────────────────────────

    def get_codes_with_prefix(self, prefix: str) -> list[str]:
        """Codes starting with prefix in any case, highest first.

        Ordered by length then upper-cased text so that "A1000" sorts above
        "A999" and "a005" above "A004".
        """
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT code FROM products
            WHERE code LIKE ? ESCAPE '\\' AND LENGTH(code) > ?
            ORDER BY LENGTH(code) DESC, UPPER(code) DESC
        """, (f"{_escape_like(prefix)}%", len(prefix)))
        return [row["code"] for row in cursor.fetchall()]

    # ── Code lookup ───────────────────────────────────────────────────

    def lookup_by_codes(self, codes: Iterable[str]) -> dict[str, list[CatalogProduct]]:
        """Batched case-insensitive lookup.

        Returns upper-cased code -> matching rows in insertion order. More
        than one row per code means the catalog holds duplicates.
        """
        wanted = list(dict.fromkeys(c.strip().upper() for c in codes if c and c.strip()))
        found: dict[str, list[CatalogProduct]] = {}
        cursor = self.conn.cursor()
        for start in range(0, len(wanted), _LOOKUP_BATCH_SIZE):
            batch = wanted[start:start + _LOOKUP_BATCH_SIZE]
            placeholders = ", ".join("?" for _ in batch)
            cursor.execute(
                f"SELECT * FROM products WHERE UPPER(code) IN ({placeholders}) ORDER BY rowid",
                batch,
            )
            for row in cursor.fetchall():
                found.setdefault(row["code"].upper(), []).append(self._row_to_product(row))
        return found

    # ── Helpers ────────────────────────────────────────────────────────

    def _row_to_product(self, row: sqlite3.Row) -> CatalogProduct:
        d = dict(row)
        d.pop("created_at", None)
        for key in ("name", "category", "description", "image_url"):
            if d.get(key) is None:
                d.pop(key, None)
        return CatalogProduct(**d)

    def close(self):
        self.conn.close()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
