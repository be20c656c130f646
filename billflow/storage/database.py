"""
SQLite Database Module.

Schema creation and connection handling shared by the repository, the
alias stores and the catalog. Every operation opens its own connection
so worker threads never share one.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from config import get_config
from billflow.utils.exceptions import StorageError
from billflow.utils.helpers import ensure_directory
from billflow.utils.logger import get_logger

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    document_id TEXT PRIMARY KEY,
    store_id TEXT NOT NULL,
    status TEXT NOT NULL,
    payload TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS pages (
    document_id TEXT NOT NULL,
    page_index INTEGER NOT NULL,
    image_path TEXT,
    width INTEGER,
    height INTEGER,
    rotation INTEGER DEFAULT 0,
    text_layer TEXT,
    PRIMARY KEY (document_id, page_index)
);

CREATE TABLE IF NOT EXISTS zones (
    zone_id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL,
    page_index INTEGER NOT NULL,
    payload TEXT NOT NULL,
    seq INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS ocr_passes (
    pass_id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id TEXT NOT NULL,
    zone_id TEXT,
    generation_id TEXT,
    profile TEXT,
    payload TEXT NOT NULL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS bills (
    bill_id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL UNIQUE,
    store_id TEXT NOT NULL,
    vendor_id TEXT,
    invoice_number TEXT,
    state TEXT NOT NULL,
    confidence REAL,
    version INTEGER NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE (store_id, vendor_id, invoice_number)
);

CREATE TABLE IF NOT EXISTS audit_log (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    bill_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS masks (
    mask_id TEXT PRIMARY KEY,
    document_id TEXT,
    vendor_id TEXT,
    payload TEXT NOT NULL,
    revoked_at TEXT
);

CREATE TABLE IF NOT EXISTS calibration (
    scope TEXT NOT NULL,
    signature INTEGER NOT NULL,
    bucket INTEGER NOT NULL,
    correct INTEGER NOT NULL,
    total INTEGER NOT NULL,
    PRIMARY KEY (scope, signature, bucket)
);

CREATE TABLE IF NOT EXISTS retry_queue (
    document_id TEXT PRIMARY KEY,
    attempts INTEGER NOT NULL,
    next_attempt_at TEXT NOT NULL,
    last_error TEXT,
    exhausted INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS sku_aliases (
    alias_id TEXT PRIMARY KEY,
    vendor_id TEXT NOT NULL,
    normalized_vendor_sku TEXT NOT NULL,
    product_id TEXT NOT NULL,
    internal_sku TEXT NOT NULL,
    unit_conversion REAL DEFAULT 1.0,
    priority INTEGER DEFAULT 0,
    usage_count INTEGER DEFAULT 0,
    source TEXT,
    created_at TEXT,
    updated_at TEXT,
    UNIQUE (vendor_id, normalized_vendor_sku, product_id)
);

CREATE TABLE IF NOT EXISTS match_history (
    vendor_id TEXT NOT NULL,
    normalized_vendor_sku TEXT NOT NULL,
    product_id TEXT NOT NULL,
    internal_sku TEXT NOT NULL,
    confirmations INTEGER NOT NULL,
    promoted INTEGER DEFAULT 0,
    last_confirmed_at TEXT,
    PRIMARY KEY (vendor_id, normalized_vendor_sku, product_id)
);

CREATE TABLE IF NOT EXISTS products (
    product_id TEXT PRIMARY KEY,
    sku TEXT NOT NULL UNIQUE,
    normalized_sku TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    barcode TEXT,
    normalized_barcode TEXT,
    mpn TEXT,
    normalized_mpn TEXT,
    cost REAL DEFAULT 0,
    quantity_on_hand REAL DEFAULT 0,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_zones_document ON zones (document_id);
CREATE INDEX IF NOT EXISTS idx_passes_document ON ocr_passes (document_id, zone_id);
CREATE INDEX IF NOT EXISTS idx_bills_state ON bills (state);
CREATE INDEX IF NOT EXISTS idx_audit_bill ON audit_log (bill_id);
CREATE INDEX IF NOT EXISTS idx_masks_vendor ON masks (vendor_id);
CREATE INDEX IF NOT EXISTS idx_aliases_lookup ON sku_aliases (vendor_id, normalized_vendor_sku);
CREATE INDEX IF NOT EXISTS idx_products_sku ON products (normalized_sku);
CREATE INDEX IF NOT EXISTS idx_products_barcode ON products (normalized_barcode);
CREATE INDEX IF NOT EXISTS idx_products_mpn ON products (normalized_mpn);
"""


class Database:
    """
    SQLite database with per-operation connections.

    Attributes:
        db_path: Path to the database file
        timeout: Seconds to wait on a locked database

    Example:
        >>> db = Database("data/billflow.db")
        >>> with db.connect() as conn:
        ...     conn.execute("SELECT COUNT(*) FROM bills").fetchone()
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None, timeout: Optional[float] = None) -> None:
        self.db_path = Path(db_path or get_config("paths.database", "data/billflow.db"))
        self.timeout = timeout or get_config("storage.busy_timeout", 10.0)
        ensure_directory(self.db_path.parent)
        self._create_tables()
        logger.debug(f"Database ready: {self.db_path}")

    def _create_tables(self) -> None:
        try:
            with self.connect() as conn:
                conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StorageError("create tables", str(e))

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """
        Open a connection, commit on success and roll back on error.

        sqlite3.IntegrityError is re-raised unchanged so callers can map
        constraint violations; other sqlite errors become StorageError.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError("sqlite", str(e))
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
