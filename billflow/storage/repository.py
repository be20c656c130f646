"""
Repository Module.

Persistence for documents, pages, zones, OCR passes, bills, audit
entries, masks, calibration buckets and the document retry queue.

Bills are stored as a JSON payload next to a few indexed columns. Writes
carry the version the caller read; a mismatch raises
StaleBillVersionError so concurrent reviewers cannot overwrite each
other. The (store, vendor, invoice number) key is UNIQUE, which is how
duplicate uploads are detected.
"""

import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from PIL import Image

from billflow.bill import Bill
from billflow.input_handler.document import Document, DocumentStatus, NormalizedPage, TextLayerWord
from billflow.layout.masks import Mask
from billflow.layout.zones import Zone, ZoneHistory
from billflow.ocr_engine.consensus import ConsensusResult
from billflow.ocr_engine.ocr_result import OCRResult
from billflow.utils.exceptions import DuplicateInvoiceError, StaleBillVersionError, StorageError
from billflow.utils.helpers import utc_now, to_iso
from billflow.utils.logger import get_logger
from .database import Database

logger = get_logger(__name__)


def _dumps(data: Any) -> str:
    return json.dumps(data, default=str)


class Repository:
    """
    SQLite backed store for the pipeline and the review case.

    Example:
        >>> repo = Repository(Database("data/billflow.db"))
        >>> repo.save_document(document)
        >>> repo.get_document(document.document_id).status
        <DocumentStatus.UPLOADED: 'Uploaded'>
    """

    def __init__(self, database: Database) -> None:
        self.db = database

    # ------------------------------------------------------------------
    # Documents and pages
    # ------------------------------------------------------------------

    def save_document(self, document: Document) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO documents (document_id, store_id, status, payload, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(document_id) DO UPDATE SET
                    status = excluded.status,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (document.document_id, document.store_id, document.status.value,
                 _dumps(document.to_dict()), to_iso(utc_now())),
            )

    def get_document(self, document_id: str) -> Optional[Document]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT payload FROM documents WHERE document_id = ?", (document_id,)
            ).fetchone()
        return Document.from_dict(json.loads(row['payload'])) if row else None

    def list_documents(self, status: Optional[DocumentStatus] = None) -> List[Document]:
        query = "SELECT payload FROM documents"
        params: Tuple = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        with self.db.connect() as conn:
            rows = conn.execute(query + " ORDER BY rowid", params).fetchall()
        return [Document.from_dict(json.loads(r['payload'])) for r in rows]

    def save_page(self, document_id: str, page: NormalizedPage) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO pages
                    (document_id, page_index, image_path, width, height, rotation, text_layer)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (document_id, page.page_index, page.image_path, page.width, page.height,
                 page.rotation, _dumps([w.to_dict() for w in page.text_layer])),
            )

    def load_pages(self, document_id: str) -> List[NormalizedPage]:
        """Reload persisted pages, images included."""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pages WHERE document_id = ? ORDER BY page_index", (document_id,)
            ).fetchall()

        pages = []
        for row in rows:
            path = Path(row['image_path'])
            try:
                with Image.open(path) as img:
                    image = img.convert('RGB')
            except (OSError, ValueError) as e:
                raise StorageError(f"load page {path}", str(e))
            pages.append(NormalizedPage(
                page_index=row['page_index'],
                image=image,
                rotation=row['rotation'] or 0,
                text_layer=[TextLayerWord.from_dict(w) for w in json.loads(row['text_layer'] or '[]')],
                image_path=str(path),
            ))
        return pages

    # ------------------------------------------------------------------
    # Zones and OCR passes (append only)
    # ------------------------------------------------------------------

    def append_zones(self, zones: Iterable[Zone]) -> None:
        with self.db.connect() as conn:
            for zone in zones:
                seq = conn.execute(
                    "SELECT COUNT(*) FROM zones WHERE document_id = ?", (zone.document_id,)
                ).fetchone()[0]
                conn.execute(
                    "INSERT INTO zones (zone_id, document_id, page_index, payload, seq) VALUES (?, ?, ?, ?, ?)",
                    (zone.zone_id, zone.document_id, zone.page_index, _dumps(zone.to_dict()), seq),
                )

    def load_zones(self, document_id: str) -> ZoneHistory:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT payload FROM zones WHERE document_id = ? ORDER BY seq", (document_id,)
            ).fetchall()
        return ZoneHistory(Zone.from_dict(json.loads(r['payload'])) for r in rows)

    def save_reading(self, document_id: str, reading: ConsensusResult) -> None:
        """Persist the raw passes behind a consensus reading."""
        created = to_iso(utc_now())
        with self.db.connect() as conn:
            for result in reading.passes:
                conn.execute(
                    """
                    INSERT INTO ocr_passes (document_id, zone_id, generation_id, profile, payload, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (document_id, reading.zone_id, reading.generation_id, result.profile,
                     _dumps(result.to_dict()), created),
                )

    def load_passes(self, document_id: str, zone_id: Optional[str] = None) -> List[OCRResult]:
        query = "SELECT payload FROM ocr_passes WHERE document_id = ?"
        params: Tuple = (document_id,)
        if zone_id is not None:
            query += " AND zone_id = ?"
            params += (zone_id,)
        with self.db.connect() as conn:
            rows = conn.execute(query + " ORDER BY pass_id", params).fetchall()
        return [OCRResult.from_dict(json.loads(r['payload'])) for r in rows]

    # ------------------------------------------------------------------
    # Bills
    # ------------------------------------------------------------------

    def _bill_row(self, bill: Bill) -> Tuple:
        return (
            bill.document_id, bill.store_id, bill.vendor_id, bill.invoice_number,
            bill.state.value, bill.overall_confidence, bill.version,
            _dumps(bill.to_dict()), to_iso(bill.created_at), to_iso(bill.updated_at),
        )

    def _raise_duplicate(self, conn: sqlite3.Connection, bill: Bill) -> None:
        row = conn.execute(
            "SELECT bill_id FROM bills WHERE store_id = ? AND vendor_id = ? AND invoice_number = ?",
            (bill.store_id, bill.vendor_id, bill.invoice_number),
        ).fetchone()
        raise DuplicateInvoiceError(bill.vendor_id, bill.invoice_number, row['bill_id'] if row else None)

    def find_duplicate(self, store_id: str, vendor_id: Optional[str], invoice_number: Optional[str],
                       exclude_bill_id: Optional[str] = None) -> Optional[str]:
        """bill_id already holding (vendor, invoice number) in a store, if any."""
        if not vendor_id or not invoice_number:
            return None
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT bill_id FROM bills
                WHERE store_id = ? AND vendor_id = ? AND invoice_number = ? AND bill_id != ?
                """,
                (store_id, vendor_id, invoice_number, exclude_bill_id or ""),
            ).fetchone()
        return row['bill_id'] if row else None

    def insert_bill(self, bill: Bill, audit: Iterable[Dict[str, Any]] = ()) -> None:
        """
        Insert a new bill with its first audit entries in one transaction.

        Raises:
            DuplicateInvoiceError: (store, vendor, invoice number) already taken.
        """
        bill.version = 1
        try:
            with self.db.connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO bills (document_id, store_id, vendor_id, invoice_number, state,
                                           confidence, version, payload, created_at, updated_at, bill_id)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        self._bill_row(bill) + (bill.bill_id,),
                    )
                except sqlite3.IntegrityError:
                    self._raise_duplicate(conn, bill)
                self._insert_audit(conn, bill.bill_id, audit)
        except DuplicateInvoiceError:
            bill.version = 0
            raise
        logger.debug(f"Inserted bill {bill.bill_id} for document {bill.document_id}")

    def update_bill(self, bill: Bill, expected_version: int, audit: Iterable[Dict[str, Any]] = ()) -> None:
        """
        Write a bill if nobody else wrote it since ``expected_version``.

        The version is bumped on the passed bill only when the write lands.

        Raises:
            StaleBillVersionError: The stored version moved on.
            DuplicateInvoiceError: An edit collided with another bill's key.
        """
        bill.updated_at = utc_now()
        new_version = expected_version + 1
        bill.version = new_version
        try:
            with self.db.connect() as conn:
                try:
                    cursor = conn.execute(
                        """
                        UPDATE bills SET document_id = ?, store_id = ?, vendor_id = ?, invoice_number = ?,
                               state = ?, confidence = ?, version = ?, payload = ?, created_at = ?, updated_at = ?
                        WHERE bill_id = ? AND version = ?
                        """,
                        self._bill_row(bill) + (bill.bill_id, expected_version),
                    )
                except sqlite3.IntegrityError:
                    self._raise_duplicate(conn, bill)
                if cursor.rowcount == 0:
                    row = conn.execute("SELECT version FROM bills WHERE bill_id = ?", (bill.bill_id,)).fetchone()
                    raise StaleBillVersionError(bill.bill_id, expected_version, row['version'] if row else -1)
                self._insert_audit(conn, bill.bill_id, audit)
        except (StaleBillVersionError, DuplicateInvoiceError):
            bill.version = expected_version
            raise

    def get_bill(self, bill_id: str) -> Optional[Bill]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT payload, version FROM bills WHERE bill_id = ?", (bill_id,)).fetchone()
        if row is None:
            return None
        bill = Bill.from_dict(json.loads(row['payload']))
        bill.version = row['version']
        return bill

    def get_bill_for_document(self, document_id: str) -> Optional[Bill]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT bill_id FROM bills WHERE document_id = ?", (document_id,)).fetchone()
        return self.get_bill(row['bill_id']) if row else None

    def list_bills(self, store_id: Optional[str] = None) -> List[Bill]:
        query = "SELECT payload, version FROM bills"
        params: Tuple = ()
        if store_id is not None:
            query += " WHERE store_id = ?"
            params = (store_id,)
        with self.db.connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", params).fetchall()
        bills = []
        for row in rows:
            bill = Bill.from_dict(json.loads(row['payload']))
            bill.version = row['version']
            bills.append(bill)
        return bills

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_audit(conn: sqlite3.Connection, bill_id: str, entries: Iterable[Dict[str, Any]]) -> None:
        for entry in entries:
            conn.execute(
                "INSERT INTO audit_log (bill_id, payload, created_at) VALUES (?, ?, ?)",
                (bill_id, _dumps(entry), entry.get('timestamp') or to_iso(utc_now())),
            )

    def append_audit(self, bill_id: str, entries: Iterable[Dict[str, Any]]) -> None:
        """Audit entries for actions that do not change the bill."""
        with self.db.connect() as conn:
            self._insert_audit(conn, bill_id, entries)

    def list_audit(self, bill_id: str) -> List[Dict[str, Any]]:
        """Audit entries of a bill in append order, with their sequence number."""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT seq, payload FROM audit_log WHERE bill_id = ? ORDER BY seq", (bill_id,)
            ).fetchall()
        entries = []
        for row in rows:
            entry = json.loads(row['payload'])
            entry['seq'] = row['seq']
            entries.append(entry)
        return entries

    # ------------------------------------------------------------------
    # Masks
    # ------------------------------------------------------------------

    def save_mask(self, mask: Mask) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "INSERT INTO masks (mask_id, document_id, vendor_id, payload) VALUES (?, ?, ?, ?)",
                (mask.mask_id, mask.document_id, mask.vendor_id, _dumps(mask.to_dict())),
            )

    def revoke_mask(self, mask_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE masks SET revoked_at = ? WHERE mask_id = ? AND revoked_at IS NULL",
                (to_iso(utc_now()), mask_id),
            )

    def masks_for(self, document_id: str, vendor_id: Optional[str] = None) -> List[Mask]:
        """Active masks drawn on a document plus those remembered for its vendor."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT payload FROM masks
                WHERE revoked_at IS NULL AND (document_id = ? OR (vendor_id IS NOT NULL AND vendor_id = ?))
                ORDER BY rowid
                """,
                (document_id, vendor_id or ""),
            ).fetchall()
        return [Mask.from_dict(json.loads(r['payload'])) for r in rows]

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def load_calibration(self) -> List[Tuple[str, int, int, int, int]]:
        with self.db.connect() as conn:
            rows = conn.execute("SELECT scope, signature, bucket, correct, total FROM calibration").fetchall()
        return [tuple(r) for r in rows]

    def save_calibration_bucket(self, scope: str, signature: int, bucket: int, correct: int, total: int) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO calibration (scope, signature, bucket, correct, total) VALUES (?, ?, ?, ?, ?)",
                (scope, signature, bucket, correct, total),
            )

    # ------------------------------------------------------------------
    # Retry queue
    # ------------------------------------------------------------------

    def enqueue_retry(self, document_id: str, attempts: int, next_attempt_at: str,
                      last_error: Optional[Dict[str, Any]] = None, exhausted: bool = False) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO retry_queue (document_id, attempts, next_attempt_at, last_error, exhausted)
                VALUES (?, ?, ?, ?, ?)
                """,
                (document_id, attempts, next_attempt_at, _dumps(last_error), int(exhausted)),
            )

    def due_retries(self, now: Optional[str] = None) -> List[Dict[str, Any]]:
        now = now or to_iso(utc_now())
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT document_id, attempts, next_attempt_at FROM retry_queue
                WHERE exhausted = 0 AND next_attempt_at <= ? ORDER BY next_attempt_at
                """,
                (now,),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_retry(self, document_id: str) -> Optional[Dict[str, Any]]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM retry_queue WHERE document_id = ?", (document_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data['last_error'] = json.loads(data['last_error']) if data['last_error'] else None
        data['exhausted'] = bool(data['exhausted'])
        return data

    def clear_retry(self, document_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM retry_queue WHERE document_id = ?", (document_id,))
