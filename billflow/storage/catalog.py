"""
Product Catalog.

The narrow catalog interface the matching engine and the review case
use: lookup by SKU, barcode, MPN or description, and product creation
from a bill line. Product CRUD beyond that belongs to the host system.
"""

import re
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from billflow.utils.exceptions import StorageError
from billflow.utils.helpers import generate_id, normalize_sku, utc_now, to_iso, from_iso
from billflow.utils.logger import get_logger
from .database import Database

logger = get_logger(__name__)


@dataclass
class Product:
    product_id: str
    sku: str
    name: str
    description: str = ""
    barcode: Optional[str] = None
    mpn: Optional[str] = None
    cost: float = 0.0
    quantity_on_hand: float = 0.0
    created_at: datetime = field(default_factory=utc_now)

    @property
    def normalized_sku(self) -> str:
        return normalize_sku(self.sku)

    @property
    def search_text(self) -> str:
        """Name and description used for fuzzy matching."""
        if self.description and self.description.lower() != self.name.lower():
            return f"{self.name} {self.description}"
        return self.name

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'Product':
        return cls(
            product_id=row['product_id'],
            sku=row['sku'],
            name=row['name'],
            description=row['description'] or "",
            barcode=row['barcode'],
            mpn=row['mpn'],
            cost=row['cost'] or 0.0,
            quantity_on_hand=row['quantity_on_hand'] or 0.0,
            created_at=from_iso(row['created_at']) or utc_now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'product_id': self.product_id,
            'sku': self.sku,
            'name': self.name,
            'description': self.description,
            'barcode': self.barcode,
            'mpn': self.mpn,
            'cost': self.cost,
            'quantity_on_hand': self.quantity_on_hand,
        }


class SqliteCatalog:
    """
    Catalog lookups on the products table.

    Example:
        >>> catalog = SqliteCatalog(database)
        >>> catalog.create_product({"sku": "W-100", "name": "Widget Large", "barcode": "ABC123000001"})
        >>> [p.sku for p in catalog.find_product(barcode="ABC123")]
        ['W-100']
    """

    def __init__(self, database: Database) -> None:
        self.db = database

    def find_product(
        self,
        sku: Optional[str] = None,
        barcode: Optional[str] = None,
        mpn: Optional[str] = None,
        description: Optional[str] = None
    ) -> List[Product]:
        """
        Look up products by exactly one criterion.

        sku matches the normalized internal SKU exactly. barcode and mpn
        match normalized values by prefix; callers decide how much of a
        suffix they accept. description returns products sharing at
        least one word of three or more characters with name or
        description.
        """
        if sku is not None:
            key = normalize_sku(sku)
            return self._query("normalized_sku = ?", (key,)) if key else []
        if barcode is not None:
            key = normalize_sku(barcode)
            return self._query("normalized_barcode LIKE ?", (key + '%',)) if key else []
        if mpn is not None:
            key = normalize_sku(mpn)
            return self._query("normalized_mpn LIKE ?", (key + '%',)) if key else []
        if description is not None:
            words = sorted({w for w in re.findall(r'[a-z0-9]+', description.lower()) if len(w) >= 3})
            if not words:
                return []
            clauses = " OR ".join("LOWER(name) LIKE ? OR LOWER(description) LIKE ?" for _ in words)
            params = tuple(p for w in words for p in (f"%{w}%", f"%{w}%"))
            return self._query(f"({clauses})", params)
        return []

    def _query(self, where: str, params: tuple) -> List[Product]:
        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM products WHERE {where} ORDER BY sku", params
            ).fetchall()
        return [Product.from_row(r) for r in rows]

    def get(self, product_id: str) -> Optional[Product]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM products WHERE product_id = ?", (product_id,)).fetchone()
        return Product.from_row(row) if row else None

    def all_products(self) -> List[Product]:
        return self._query("1 = 1", ())

    def create_product(self, fields: Dict[str, Any]) -> Product:
        """
        Create a product from user supplied fields.

        Args:
            fields: ``sku`` and ``name`` are required; ``description``,
                ``barcode``, ``mpn``, ``cost`` are optional.

        Raises:
            StorageError: Missing required fields or SKU already taken.
        """
        return self.add_product(self.new_product(fields))

    def new_product(self, fields: Dict[str, Any]) -> Product:
        """Validate fields and build a product without storing it."""
        sku = (fields.get('sku') or '').strip()
        name = (fields.get('name') or '').strip()
        if not sku or not name:
            raise StorageError("create product", "sku and name are required")

        product = Product(
            product_id=fields.get('product_id') or generate_id("prod"),
            sku=sku,
            name=name,
            description=fields.get('description') or "",
            barcode=fields.get('barcode'),
            mpn=fields.get('mpn'),
            cost=float(fields.get('cost') or 0.0),
            quantity_on_hand=float(fields.get('quantity_on_hand') or 0.0),
        )
        if self.find_product(sku=sku):
            raise StorageError("create product", f"SKU {sku} already exists")
        return product

    def add_product(self, product: Product) -> Product:
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO products (product_id, sku, normalized_sku, name, description, barcode,
                                          normalized_barcode, mpn, normalized_mpn, cost, quantity_on_hand,
                                          created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (product.product_id, product.sku, normalize_sku(product.sku), product.name,
                     product.description, product.barcode, normalize_sku(product.barcode) or None,
                     product.mpn, normalize_sku(product.mpn) or None, product.cost,
                     product.quantity_on_hand, to_iso(product.created_at)),
                )
        except sqlite3.IntegrityError as e:
            raise StorageError("create product", f"SKU {product.sku} already exists ({e})")

        logger.info(f"Created product {product.product_id} ({product.sku})")
        return product
