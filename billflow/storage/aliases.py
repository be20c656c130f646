"""
SKU Alias and Match History Stores.

An alias maps a vendor's SKU to an internal product and is the first
thing the matching engine consults. Match history records human
confirmations that have not (yet) been promoted to an alias.
"""

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from billflow.utils.helpers import generate_id, utc_now, to_iso, from_iso
from billflow.utils.logger import get_logger
from .database import Database

logger = get_logger(__name__)


@dataclass
class SkuAlias:
    """
    (vendor_id, normalized_vendor_sku) -> internal product.

    Attributes:
        alias_id: Unique identifier
        vendor_id: Vendor the SKU belongs to
        normalized_vendor_sku: Canonical vendor SKU
        product_id: Internal product
        internal_sku: Internal SKU of the product
        unit_conversion: Internal units per vendor unit
        priority: Higher wins when several aliases share a vendor SKU
        usage_count: Times the alias was received against
        source: "create_product", "promotion" or "manual"
    """
    alias_id: str
    vendor_id: str
    normalized_vendor_sku: str
    product_id: str
    internal_sku: str
    unit_conversion: float = 1.0
    priority: int = 0
    usage_count: int = 0
    source: str = "manual"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(cls, vendor_id: str, normalized_vendor_sku: str, product_id: str, internal_sku: str,
               unit_conversion: float = 1.0, priority: int = 0, source: str = "manual") -> 'SkuAlias':
        return cls(
            alias_id=generate_id("alias"),
            vendor_id=vendor_id,
            normalized_vendor_sku=normalized_vendor_sku,
            product_id=product_id,
            internal_sku=internal_sku,
            unit_conversion=unit_conversion,
            priority=priority,
            source=source,
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'SkuAlias':
        return cls(
            alias_id=row['alias_id'],
            vendor_id=row['vendor_id'],
            normalized_vendor_sku=row['normalized_vendor_sku'],
            product_id=row['product_id'],
            internal_sku=row['internal_sku'],
            unit_conversion=row['unit_conversion'],
            priority=row['priority'],
            usage_count=row['usage_count'],
            source=row['source'] or 'manual',
            created_at=from_iso(row['created_at']) or utc_now(),
            updated_at=from_iso(row['updated_at']) or utc_now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'alias_id': self.alias_id,
            'vendor_id': self.vendor_id,
            'normalized_vendor_sku': self.normalized_vendor_sku,
            'product_id': self.product_id,
            'internal_sku': self.internal_sku,
            'unit_conversion': self.unit_conversion,
            'priority': self.priority,
            'usage_count': self.usage_count,
            'source': self.source,
        }


class AliasStore:
    """
    Alias table access.

    Example:
        >>> store = AliasStore(database)
        >>> store.upsert(SkuAlias.create("acme", "ABC123", "prod_1", "W-100"))
        >>> store.find("acme", "ABC123")[0].internal_sku
        'W-100'
    """

    def __init__(self, database: Database) -> None:
        self.db = database

    def find(self, vendor_id: Optional[str], normalized_vendor_sku: str) -> List[SkuAlias]:
        """Aliases for a vendor SKU, best first (priority, usage, internal SKU)."""
        if not vendor_id or not normalized_vendor_sku:
            return []
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sku_aliases
                WHERE vendor_id = ? AND normalized_vendor_sku = ?
                ORDER BY priority DESC, usage_count DESC, internal_sku ASC, alias_id ASC
                """,
                (vendor_id, normalized_vendor_sku),
            ).fetchall()
        return [SkuAlias.from_row(r) for r in rows]

    def get(self, alias_id: str) -> Optional[SkuAlias]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM sku_aliases WHERE alias_id = ?", (alias_id,)).fetchone()
        return SkuAlias.from_row(row) if row else None

    def upsert(self, alias: SkuAlias) -> SkuAlias:
        """
        Insert an alias, or refresh the existing one for the same
        (vendor, SKU, product). Returns the stored alias.
        """
        now = to_iso(utc_now())
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO sku_aliases (alias_id, vendor_id, normalized_vendor_sku, product_id, internal_sku,
                                         unit_conversion, priority, usage_count, source, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(vendor_id, normalized_vendor_sku, product_id) DO UPDATE SET
                    internal_sku = excluded.internal_sku,
                    unit_conversion = excluded.unit_conversion,
                    priority = MAX(sku_aliases.priority, excluded.priority),
                    updated_at = excluded.updated_at
                """,
                (alias.alias_id, alias.vendor_id, alias.normalized_vendor_sku, alias.product_id,
                 alias.internal_sku, alias.unit_conversion, alias.priority, alias.usage_count,
                 alias.source, now, now),
            )
            row = conn.execute(
                "SELECT * FROM sku_aliases WHERE vendor_id = ? AND normalized_vendor_sku = ? AND product_id = ?",
                (alias.vendor_id, alias.normalized_vendor_sku, alias.product_id),
            ).fetchone()
        stored = SkuAlias.from_row(row)
        logger.info(
            f"Alias {stored.vendor_id}/{stored.normalized_vendor_sku} -> {stored.internal_sku} "
            f"({stored.source})"
        )
        return stored

    def increment_usage(self, alias_id: str, by: int = 1) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE sku_aliases SET usage_count = usage_count + ?, updated_at = ? WHERE alias_id = ?",
                (by, to_iso(utc_now()), alias_id),
            )


@dataclass
class MatchHistory:
    """A human-confirmed vendor SKU mapping."""
    vendor_id: str
    normalized_vendor_sku: str
    product_id: str
    internal_sku: str
    confirmations: int = 1
    promoted: bool = False
    last_confirmed_at: Optional[datetime] = None


class MatchHistoryStore:
    """Confirmation counts per (vendor, vendor SKU, product)."""

    def __init__(self, database: Database) -> None:
        self.db = database

    @staticmethod
    def _from_row(row: sqlite3.Row) -> MatchHistory:
        return MatchHistory(
            vendor_id=row['vendor_id'],
            normalized_vendor_sku=row['normalized_vendor_sku'],
            product_id=row['product_id'],
            internal_sku=row['internal_sku'],
            confirmations=row['confirmations'],
            promoted=bool(row['promoted']),
            last_confirmed_at=from_iso(row['last_confirmed_at']),
        )

    def record_confirmation(self, vendor_id: str, normalized_vendor_sku: str,
                            product_id: str, internal_sku: str) -> MatchHistory:
        """Count one more human confirmation and return the updated record."""
        now = to_iso(utc_now())
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO match_history (vendor_id, normalized_vendor_sku, product_id, internal_sku,
                                           confirmations, promoted, last_confirmed_at)
                VALUES (?, ?, ?, ?, 1, 0, ?)
                ON CONFLICT(vendor_id, normalized_vendor_sku, product_id) DO UPDATE SET
                    confirmations = match_history.confirmations + 1,
                    last_confirmed_at = excluded.last_confirmed_at
                """,
                (vendor_id, normalized_vendor_sku, product_id, internal_sku, now),
            )
            row = conn.execute(
                "SELECT * FROM match_history WHERE vendor_id = ? AND normalized_vendor_sku = ? AND product_id = ?",
                (vendor_id, normalized_vendor_sku, product_id),
            ).fetchone()
        return self._from_row(row)

    def find(self, vendor_id: Optional[str], normalized_vendor_sku: str) -> List[MatchHistory]:
        """Unpromoted confirmations for a vendor SKU, most confirmed first."""
        if not vendor_id or not normalized_vendor_sku:
            return []
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM match_history
                WHERE vendor_id = ? AND normalized_vendor_sku = ? AND promoted = 0
                ORDER BY confirmations DESC, last_confirmed_at DESC, product_id ASC
                """,
                (vendor_id, normalized_vendor_sku),
            ).fetchall()
        return [self._from_row(r) for r in rows]

    def mark_promoted(self, vendor_id: str, normalized_vendor_sku: str, product_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                UPDATE match_history SET promoted = 1
                WHERE vendor_id = ? AND normalized_vendor_sku = ? AND product_id = ?
                """,
                (vendor_id, normalized_vendor_sku, product_id),
            )
