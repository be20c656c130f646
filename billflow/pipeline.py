"""
Extraction Pipeline.

Runs one document from raw bytes to a stored Bill:

    normalize -> detect zones -> OCR (masks applied) -> candidates
              -> Bill -> match line items -> validate -> insert

Failures:
    DocumentError            document Failed, not retried
    OcrBackendUnavailable    document Failed, retry enqueued with
                             exponential backoff until max attempts
    DuplicateInvoice         document Failed, not retried

Usage:
    pipeline = ExtractionPipeline(repository, normalizer, detector, orchestrator,
                                  generator, matching, validation)
    bill = pipeline.process(document, content)
"""

from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from config import get_config
from billflow.bill import Bill
from billflow.extraction.candidates import CandidateSet
from billflow.extraction.generator import CandidateGenerator
from billflow.input_handler.document import Document, DocumentStatus, NormalizedPage
from billflow.input_handler.handler import DocumentNormalizer
from billflow.layout.masks import Mask
from billflow.layout.zone_detector import ZoneDetector
from billflow.layout.zones import Zone
from billflow.matching.engine import MatchingEngine
from billflow.ocr_engine.consensus import ConsensusResult
from billflow.ocr_engine.orchestrator import MultiPassOrchestrator
from billflow.review.audit import ActionKind, AuditEntry
from billflow.review.locks import LockRegistry
from billflow.storage.repository import Repository
from billflow.utils.exceptions import (
    BillFlowError, DocumentError, DocumentNotFoundError, DuplicateInvoiceError, OcrBackendUnavailableError,
)
from billflow.utils.helpers import ensure_directory, utc_now, to_iso, vendor_slug
from billflow.utils.logger import get_logger
from billflow.validation.engine import ValidationEngine

logger = get_logger(__name__)

_EXTENSIONS = {
    "application/pdf": ".pdf",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/tiff": ".tiff",
}


class ExtractionPipeline:
    """
    Drives documents through extraction.

    Attributes:
        max_attempts: Processing attempts before a document is given up
        retry_base_delay: First document retry delay in seconds
        retry_max_delay: Upper bound of a retry delay in seconds
    """

    def __init__(
        self,
        repository: Repository,
        normalizer: DocumentNormalizer,
        detector: ZoneDetector,
        orchestrator: MultiPassOrchestrator,
        generator: CandidateGenerator,
        matching: MatchingEngine,
        validation: ValidationEngine,
        originals_dir: Optional[str] = None,
        max_attempts: Optional[int] = None
    ) -> None:
        self.repository = repository
        self.normalizer = normalizer
        self.detector = detector
        self.orchestrator = orchestrator
        self.generator = generator
        self.matching = matching
        self.validation = validation
        self.originals_dir = Path(originals_dir or get_config("paths.originals_dir", "data/originals"))
        self.max_attempts = max_attempts or get_config("ocr.retry.max_document_attempts", 5)
        self.retry_base_delay = get_config("pipeline.retry.base_delay", 60)
        self.retry_max_delay = get_config("pipeline.retry.max_delay", 3600)
        self._documents = LockRegistry()

    # ------------------------------------------------------------------
    # Originals
    # ------------------------------------------------------------------

    def store_original(self, document: Document, content: bytes) -> str:
        """Keep the uploaded bytes so the document can be reprocessed."""
        directory = ensure_directory(self.originals_dir)
        path = directory / f"{document.document_id}{_EXTENSIONS.get(document.mime_type, '.bin')}"
        path.write_bytes(content)
        document.original_path = str(path)
        return document.original_path

    def load_original(self, document: Document) -> bytes:
        if not document.original_path:
            raise DocumentNotFoundError(document.document_id)
        path = Path(document.original_path)
        if not path.exists():
            raise DocumentNotFoundError(document.document_id)
        return path.read_bytes()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def retry_delay(self, attempts: int) -> float:
        """Delay before the next attempt after ``attempts`` failed ones."""
        return min(self.retry_max_delay, self.retry_base_delay * (2 ** max(0, attempts - 1)))

    def process(self, document: Document, content: bytes) -> Bill:
        """
        Extract a document into a new Bill.

        Raises:
            DocumentError: Unsupported, corrupt or empty document.
            OcrBackendUnavailableError: OCR retries exhausted; a document
                retry has been enqueued.
            DuplicateInvoiceError: Another bill holds the same vendor and
                invoice number.
        """
        with self._documents.hold(document.document_id):
            document.attempts += 1
            try:
                normalized = self.normalizer.normalize(document, content)
            except DocumentError as e:
                self.repository.clear_retry(document.document_id)
                logger.error(f"Document {document.document_id} rejected: {e}")
                raise

            pages = normalized.pages
            zones = self._zones(document, pages)
            masks = self.repository.masks_for(document.document_id, document.vendor_hint)

            try:
                readings = self._read(document, pages, zones, masks)
                candidate_set = self._generate(readings, zones, pages, document.vendor_hint)

                # Masks remembered for a vendor apply once the vendor is known
                if not document.vendor_hint:
                    vendor_id = vendor_slug(_best_value(candidate_set, 'vendor_name'))
                    vendor_masks = self.repository.masks_for(document.document_id, vendor_id)
                    if len(vendor_masks) > len(masks):
                        logger.info(
                            f"Document {document.document_id}: re-reading with "
                            f"{len(vendor_masks) - len(masks)} mask(s) remembered for {vendor_id}"
                        )
                        readings = self._read(document, pages, zones, vendor_masks)
                        candidate_set = self._generate(readings, zones, pages, vendor_id)
            except OcrBackendUnavailableError as e:
                self._fail(document, e, retry=True)
                raise

            bill = self.build_bill(document, candidate_set)
            self.matching.match_bill(bill)
            bill.validation = self.validation.validate(bill, version=1)

            created = AuditEntry(
                action=ActionKind.CREATE,
                entity_type="bill",
                entity_id=bill.bill_id,
                actor="system",
                after={
                    'document_id': document.document_id,
                    'generation_id': candidate_set.generation_id,
                    'fields': len(candidate_set.candidates),
                    'line_items': len(bill.line_items),
                    'findings': bill.validation.codes,
                },
            )
            try:
                self.repository.insert_bill(bill, audit=[created.to_dict()])
            except DuplicateInvoiceError as e:
                self._fail(document, e, retry=False)
                raise

            document.status = DocumentStatus.EXTRACTED
            document.last_error = None
            self.repository.save_document(document)
            self.repository.clear_retry(document.document_id)

            logger.info(
                f"Document {document.document_id} -> bill {bill.bill_id} "
                f"({len(bill.line_items)} lines, confidence {bill.overall_confidence:.2f}, "
                f"findings {bill.validation.codes})"
            )
            return bill

    def build_bill(self, document: Document, candidate_set: CandidateSet) -> Bill:
        """New Bill from a candidate set; vendor from the hint or the printed name."""
        if document.vendor_hint:
            vendor_id, source = document.vendor_hint, "hint"
        else:
            vendor_id, source = vendor_slug(_best_value(candidate_set, 'vendor_name')), "derived"
        bill = Bill.create(document.document_id, document.store_id, vendor_id=vendor_id, vendor_source=source)
        bill.apply_candidates(candidate_set)
        return bill

    def _zones(self, document: Document, pages: Sequence[NormalizedPage]) -> List[Zone]:
        """Active zones; detected on first processing, reused on retries."""
        history = self.repository.load_zones(document.document_id)
        zones = history.active()
        if zones:
            logger.debug(f"Document {document.document_id}: reusing {len(zones)} zones")
            return zones

        zones = []
        for page in pages:
            zones.extend(self.detector.detect(page.image, document.document_id, page.page_index))
        self.repository.append_zones(zones)
        return zones

    def _read(self, document: Document, pages: Sequence[NormalizedPage], zones: Sequence[Zone],
              masks: Sequence[Mask]) -> Dict[str, ConsensusResult]:
        readings = self.orchestrator.run_document(pages, zones, masks)
        for reading in readings.values():
            self.repository.save_reading(document.document_id, reading)
        return readings

    def _generate(self, readings: Dict[str, ConsensusResult], zones: Sequence[Zone],
                  pages: Sequence[NormalizedPage], vendor_id: Optional[str]) -> CandidateSet:
        generation_id = next(iter(readings.values())).generation_id if readings else None
        sizes = {page.page_index: (page.width, page.height) for page in pages}
        return self.generator.generate(readings, zones, sizes, vendor_id, generation_id=generation_id)

    def _fail(self, document: Document, error: BillFlowError, retry: bool) -> None:
        document.status = DocumentStatus.FAILED
        document.last_error = error.to_dict()
        self.repository.save_document(document)

        if not retry:
            self.repository.clear_retry(document.document_id)
            logger.error(f"Document {document.document_id} failed: {error}")
            return

        exhausted = document.attempts >= self.max_attempts
        next_attempt = utc_now() + timedelta(seconds=self.retry_delay(document.attempts))
        self.repository.enqueue_retry(
            document.document_id, document.attempts, to_iso(next_attempt),
            last_error=error.to_dict(), exhausted=exhausted,
        )
        if exhausted:
            logger.error(
                f"Document {document.document_id} failed permanently after {document.attempts} attempts: {error}"
            )
        else:
            logger.warning(
                f"Document {document.document_id} failed (attempt {document.attempts}/{self.max_attempts}), "
                f"retry at {to_iso(next_attempt)}: {error}"
            )

    def retry_due(self, now: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Reprocess documents whose retry is due.

        Returns:
            One result per document: status, bill id or error code.
        """
        results = []
        for due in self.repository.due_retries(now):
            document = self.repository.get_document(due['document_id'])
            if document is None:
                self.repository.clear_retry(due['document_id'])
                continue
            try:
                bill = self.process(document, self.load_original(document))
            except BillFlowError as e:
                results.append({'document_id': document.document_id, 'status': document.status.value,
                                'error': e.code})
                continue
            results.append({'document_id': document.document_id, 'status': document.status.value,
                            'bill_id': bill.bill_id})
        if results:
            logger.info(f"Retried {len(results)} document(s)")
        return results


def _best_value(candidate_set: CandidateSet, field_name: str) -> Optional[str]:
    best = candidate_set.best(field_name)
    return best.value if best is not None else None
