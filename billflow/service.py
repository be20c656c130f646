"""
Bill Service.

The contract surface offered to the host system (web handlers, the CLI,
inventory and accounting integrations). Wires the components together
and serializes review actions per bill.

Every review action reloads the bill under its lock, runs it through a
ReviewCase and writes it back with an optimistic version check, so two
reviewers never overwrite each other silently.

Usage:
    service = BillService.from_config()
    document_id = service.upload_document(pdf_bytes, "application/pdf", vendor_hint="acme")
    bill = service.get_bill_for_document(document_id)
    service.accept_field(bill.bill_id, "invoice_number", actor="alice")
    service.approve(bill.bill_id, actor="alice")
    summary = service.post_receiving(bill.bill_id, "AverageCost", actor="alice")
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from config import get_config
from billflow.bill import Bill, ReviewMode
from billflow.extraction.calibrator import ConfidenceCalibrator
from billflow.extraction.candidates import FieldCandidate
from billflow.extraction.generator import CandidateGenerator
from billflow.input_handler.document import Document
from billflow.input_handler.handler import DocumentNormalizer
from billflow.layout.geometry import BoundingBox
from billflow.layout.masks import Mask
from billflow.layout.zone_detector import ZoneDetector
from billflow.layout.zones import Zone, ZoneLabel
from billflow.matching.engine import MatchingEngine
from billflow.matching.result import MatchCandidate
from billflow.ocr_engine.orchestrator import MultiPassOrchestrator
from billflow.ocr_engine.tesseract_backend import TesseractBackend
from billflow.pipeline import ExtractionPipeline
from billflow.receiving.summary import CostPolicy, ReceivingSummary
from billflow.review.audit import AuditEntry
from billflow.review.case import ReocrOutcome, ReviewCase, ReviewContext
from billflow.review.locks import LockRegistry
from billflow.review.queue import QueueFilter, QueuePage, QueueStats, ReviewQueue, SortField
from billflow.storage.aliases import AliasStore, MatchHistoryStore
from billflow.storage.catalog import SqliteCatalog
from billflow.storage.database import Database
from billflow.storage.repository import Repository
from billflow.utils.exceptions import BillNotFoundError, DocumentNotFoundError, OcrBackendUnavailableError
from billflow.utils.logger import get_logger
from billflow.validation.engine import ValidationEngine

logger = get_logger(__name__)


class BillService:
    """
    Facade over extraction, matching, validation, review and receiving.

    Attributes:
        repository: Persistence for documents, bills and audit
        pipeline: Document to Bill extraction
        context: Collaborators handed to review cases
        locks: Per-bill action locks
    """

    def __init__(
        self,
        repository: Repository,
        pipeline: ExtractionPipeline,
        context: ReviewContext,
        default_store: Optional[str] = None
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.context = context
        self.default_store = default_store or get_config("pipeline.default_store", "main")
        self.locks = LockRegistry()

    @classmethod
    def from_config(cls, database: Optional[Database] = None, backend=None) -> 'BillService':
        """
        Build a service from settings.yaml.

        Args:
            database: Database to use; paths.database when None.
            backend: OCR backend; Tesseract when None.
        """
        database = database or Database()
        repository = Repository(database)
        catalog = SqliteCatalog(database)
        calibrator = ConfidenceCalibrator(repository)
        matching = MatchingEngine(catalog, AliasStore(database), MatchHistoryStore(database))
        validation = ValidationEngine()
        orchestrator = MultiPassOrchestrator(backend or TesseractBackend())
        generator = CandidateGenerator(calibrator)

        pipeline = ExtractionPipeline(
            repository,
            DocumentNormalizer(repository),
            ZoneDetector(),
            orchestrator,
            generator,
            matching,
            validation,
        )
        context = ReviewContext(
            repository=repository,
            validation=validation,
            matching=matching,
            catalog=catalog,
            calibrator=calibrator,
            orchestrator=orchestrator,
            generator=generator,
            reocr_profile=get_config("review.reocr_profile", "high_accuracy"),
        )
        return cls(repository, pipeline, context)

    @property
    def catalog(self) -> SqliteCatalog:
        return self.context.catalog

    @property
    def matching(self) -> MatchingEngine:
        return self.context.matching

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def upload_document(self, content: bytes, mime_type: str, vendor_hint: Optional[str] = None,
                        store_id: Optional[str] = None, actor: str = "system") -> str:
        """
        Store and extract an uploaded document.

        An OCR outage does not fail the upload: the document is queued
        for retry and its id is returned.

        Returns:
            The new document id.

        Raises:
            UnsupportedFormatError, CorruptDocumentError, EmptyDocumentError
            DuplicateInvoiceError: The invoice was already uploaded.
        """
        document = Document.create(store_id or self.default_store, mime_type, vendor_hint=vendor_hint)
        self.pipeline.store_original(document, content)
        self.repository.save_document(document)
        logger.info(f"Upload {document.document_id} by {actor} ({mime_type}, {len(content)} bytes)")

        try:
            self.pipeline.process(document, content)
        except OcrBackendUnavailableError:
            logger.warning(f"Document {document.document_id} queued for retry")
        return document.document_id

    def get_document(self, document_id: str) -> Document:
        document = self.repository.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    def retry_failed_documents(self, now: Optional[str] = None) -> List[Dict[str, Any]]:
        """Reprocess documents whose OCR retry is due."""
        return self.pipeline.retry_due(now)

    # ------------------------------------------------------------------
    # Bills and queue
    # ------------------------------------------------------------------

    def get_bill(self, bill_id: str) -> Bill:
        bill = self.repository.get_bill(bill_id)
        if bill is None:
            raise BillNotFoundError(bill_id)
        return bill

    def get_bill_for_document(self, document_id: str) -> Optional[Bill]:
        return self.repository.get_bill_for_document(document_id)

    def audit_trail(self, bill_id: str) -> List[AuditEntry]:
        self.get_bill(bill_id)
        return [AuditEntry.from_dict(entry) for entry in self.repository.list_audit(bill_id)]

    def review_queue(self, store_id: Optional[str] = None) -> ReviewQueue:
        return ReviewQueue(self.repository, store_id)

    def query_queue(self, filters: Optional[QueueFilter] = None, sort: SortField = SortField.PRIORITY,
                    descending: bool = False, page: int = 1, per_page: Optional[int] = None,
                    store_id: Optional[str] = None) -> QueuePage:
        return self.review_queue(store_id).query(filters, sort, descending, page, per_page)

    def queue_stats(self, store_id: Optional[str] = None) -> QueueStats:
        return self.review_queue(store_id).stats()

    def list_match_candidates(self, vendor_sku: str, description: str = "", vendor_id: Optional[str] = None,
                              limit: Optional[int] = None) -> List[MatchCandidate]:
        return self.matching.list_match_candidates(vendor_sku, description, vendor_id=vendor_id, limit=limit)

    def calibration_stats(self, vendor_id: Optional[str] = None) -> Dict[str, float]:
        self.context.calibrator.flush()
        return self.context.calibrator.stats(vendor_id)

    # ------------------------------------------------------------------
    # Review actions
    # ------------------------------------------------------------------

    def _act(self, bill_id: str, actor: str, action: Callable[[ReviewCase], Any], return_bill: bool = False) -> Any:
        with self.locks.hold(bill_id):
            case = ReviewCase(self.get_bill(bill_id), self.context, actor=actor)
            result = action(case)
            return case.bill if return_bill else result

    def open_case(self, bill_id: str, actor: str = "reviewer") -> ReviewCase:
        """A case for read-only inspection; actions should go through the service."""
        return ReviewCase(self.get_bill(bill_id), self.context, actor=actor)

    def start_review(self, bill_id: str, actor: str = "reviewer") -> None:
        self._act(bill_id, actor, lambda case: case.start_review())

    def set_mode(self, bill_id: str, mode: Union[ReviewMode, str], actor: str = "reviewer") -> None:
        self._act(bill_id, actor, lambda case: case.set_mode(mode))

    def review_items(self, bill_id: str, actor: str = "reviewer") -> List[Dict[str, Any]]:
        return self.open_case(bill_id, actor).review_items()

    def accept_field(self, bill_id: str, field_name: str, candidate_id: Optional[str] = None,
                     actor: str = "reviewer") -> None:
        self._act(bill_id, actor, lambda case: case.accept_field(field_name, candidate_id))

    def edit_field(self, bill_id: str, field_name: str, value: Any, actor: str = "reviewer") -> FieldCandidate:
        return self._act(bill_id, actor, lambda case: case.edit_field(field_name, value))

    def locate_on_page(self, bill_id: str, field_name: str, actor: str = "reviewer") -> Dict[str, Any]:
        return self._act(bill_id, actor, lambda case: case.locate_on_page(field_name))

    def targeted_reocr(self, bill_id: str, page_index: int, bbox: BoundingBox, profile: Optional[str] = None,
                       fields: Optional[Sequence[str]] = None, timeout: Optional[float] = None,
                       actor: str = "reviewer") -> ReocrOutcome:
        return self._act(bill_id, actor,
                         lambda case: case.targeted_reocr(page_index, bbox, profile, fields, timeout))

    def add_mask(self, bill_id: str, bbox: BoundingBox, page_index: Optional[int] = None,
                 remember_for_vendor: bool = False, reason: str = "", actor: str = "reviewer") -> Mask:
        return self._act(bill_id, actor,
                         lambda case: case.add_mask(bbox, page_index, remember_for_vendor, reason))

    def edit_zone(self, bill_id: str, zone_id: str, bbox: Optional[BoundingBox] = None,
                  label: Optional[Union[ZoneLabel, str]] = None, actor: str = "reviewer") -> Zone:
        return self._act(bill_id, actor, lambda case: case.edit_zone(zone_id, bbox, label))

    def accept_match(self, bill_id: str, line_id: str, product_id: Optional[str] = None,
                     actor: str = "reviewer") -> None:
        self._act(bill_id, actor, lambda case: case.accept_match(line_id, product_id))

    def match_line(self, bill_id: str, line_id: str, product_id: str, actor: str = "reviewer") -> None:
        self._act(bill_id, actor, lambda case: case.match_line(line_id, product_id))

    def create_product_from_line(self, bill_id: str, line_id: str,
                                 product_fields: Optional[Dict[str, Any]] = None,
                                 create_alias: bool = False, actor: str = "reviewer") -> str:
        return self._act(bill_id, actor,
                         lambda case: case.create_product_from_line(line_id, product_fields, create_alias))

    def undo(self, bill_id: str, actor: str = "reviewer") -> AuditEntry:
        return self._act(bill_id, actor, lambda case: case.undo())

    def approve(self, bill_id: str, actor: str = "reviewer") -> Bill:
        return self._act(bill_id, actor, lambda case: case.approve(), return_bill=True)

    def reject(self, bill_id: str, reason: str, actor: str = "reviewer") -> Bill:
        return self._act(bill_id, actor, lambda case: case.reject(reason), return_bill=True)

    def reopen_bill(self, bill_id: str, reason: str, actor: str = "reviewer") -> Bill:
        return self._act(bill_id, actor, lambda case: case.reopen(reason), return_bill=True)

    def post_receiving(self, bill_id: str, cost_policy: Union[CostPolicy, str, None] = None,
                       actor: str = "reviewer") -> ReceivingSummary:
        policy = cost_policy or get_config("receiving.default_cost_policy", "AverageCost")
        return self._act(bill_id, actor, lambda case: case.post_receiving(policy))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        """Finish queued calibration updates and stop worker pools."""
        self.context.calibrator.shutdown()
        if self.context.orchestrator is not None:
            self.context.orchestrator.shutdown()
        logger.debug("Bill service stopped")
