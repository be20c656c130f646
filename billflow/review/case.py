"""
Review Case.

Wraps one Bill for one reviewer. Every action follows the same path:

    1. check the state machine (edits implicitly start the review)
    2. change the bill in memory, keeping a snapshot for undo
    3. revalidate; the previous ValidationResult is replaced
    4. write the bill and its audit entries in one transaction, against
       the version the case was loaded with
    5. run the side effects that only make sense once the write landed
       (calibration feedback, match confirmations, persisted masks and
       zone versions)

A write that fails (stale version, duplicate key) leaves the in-memory
bill ahead of storage; reload the bill before trying again. The service
layer does this for every action.

Usage:
    case = ReviewCase(bill, context, actor="alice")
    case.edit_field("invoice_number", "INV-1001")
    case.approve()
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from config import get_config
from billflow.bill import Bill, BillState, LineStatus, ReviewMode, parse_line_path
from billflow.extraction.calibrator import ConfidenceCalibrator
from billflow.extraction.candidates import CandidateSet, Evidence, EvidenceKind, FieldCandidate, FieldType
from billflow.extraction.generator import CandidateGenerator
from billflow.extraction.normalizers import AmountNormalizer, DateNormalizer, parse_quantity
from billflow.layout.geometry import BoundingBox
from billflow.layout.masks import Mask
from billflow.layout.zones import Zone, ZoneLabel
from billflow.matching.engine import MatchingEngine
from billflow.matching.result import MANUAL, MatchCandidate
from billflow.ocr_engine.orchestrator import MultiPassOrchestrator
from billflow.ocr_engine.profiles import OcrProfile
from billflow.receiving.summary import CostPolicy, ReceivingSummary, build_summary
from billflow.storage.catalog import Product, SqliteCatalog
from billflow.storage.repository import Repository
from billflow.utils.exceptions import (
    AmbiguousCandidateError, CandidateNotFoundError, ConfigurationError, InvalidFieldValueError,
    InvalidTransitionError, NothingToUndoError, OcrTimeoutError,
    PageNotFoundError, ProductNotFoundError, ReviewModeError, UnknownFieldError,
    ValidationBlockedError, ZoneNotFoundError,
)
from billflow.utils.helpers import round_money, vendor_slug
from billflow.utils.logger import get_logger
from billflow.validation.engine import ValidationEngine
from .audit import ActionKind, AuditEntry, find_undo_target
from .state import transition

logger = get_logger(__name__)

# How far down the suggestion list accept_match looks for a product
_ACCEPT_SEARCH_LIMIT = 50


@dataclass
class ReviewContext:
    """Collaborators shared by every review case."""
    repository: Repository
    validation: ValidationEngine
    matching: MatchingEngine
    catalog: SqliteCatalog
    calibrator: ConfidenceCalibrator
    orchestrator: Optional[MultiPassOrchestrator] = None
    generator: Optional[CandidateGenerator] = None
    reocr_profile: str = "high_accuracy"


@dataclass
class ReocrOutcome:
    """
    Result of a targeted re-OCR.

    Attributes:
        status: "completed" or "timeout"
        generation_id: Id stamped on the new candidates
        fields: Fields that received new candidates
        candidates: Number of new candidates
        message: Operator facing note (timeout details)
    """
    status: str
    generation_id: Optional[str] = None
    fields: List[str] = field(default_factory=list)
    candidates: int = 0
    message: str = ""

    @property
    def timed_out(self) -> bool:
        return self.status == "timeout"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'generation_id': self.generation_id,
            'fields': list(self.fields),
            'candidates': self.candidates,
            'message': self.message,
        }


def _describe(candidate: Optional[FieldCandidate]) -> Optional[Dict[str, Any]]:
    """Audit view of a candidate."""
    if candidate is None:
        return None
    data = candidate.to_dict()
    return {
        'candidate_id': data['candidate_id'],
        'value': data['value'],
        'raw_text': data['raw_text'],
        'confidence': data['confidence'],
    }


def _match_view(line) -> Dict[str, Any]:
    return {
        'status': line.status.value,
        'matched_product_id': line.matched_product_id,
        'match_confidence': line.match_confidence,
        'suggested_match': line.suggested_match,
    }


class ReviewCase:
    """
    The review workflow of one bill.

    Attributes:
        bill: Bill under review (mutated in place)
        context: Shared collaborators
        actor: Reviewer recorded on every audit entry
        expected_version: Version the next write is checked against
    """

    def __init__(self, bill: Bill, context: ReviewContext, actor: str = "reviewer") -> None:
        self.bill = bill
        self.context = context
        self.actor = actor
        self.expected_version = bill.version
        self._after_commit: List[Callable[[], None]] = []

    @property
    def repository(self) -> Repository:
        return self.context.repository

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _entry(self, action: ActionKind, entity_type: str, entity_id: str, **kwargs) -> AuditEntry:
        return AuditEntry(action=action, entity_type=entity_type, entity_id=entity_id, actor=self.actor, **kwargs)

    def _begin(self, action: str) -> List[AuditEntry]:
        """
        Make sure the bill accepts edits, starting the review if needed.

        Returns:
            The start_review entry when the review was started implicitly.
        """
        state = self.bill.state
        if state == BillState.IN_REVIEW:
            return []
        if state in (BillState.PENDING, BillState.REOPENED):
            self.bill.state = transition(self.bill.bill_id, state, "start_review")
            return [self._entry(ActionKind.START_REVIEW, "bill", self.bill.bill_id,
                                before=state.value, after=self.bill.state.value)]
        raise InvalidTransitionError(self.bill.bill_id, state.value, action)

    def _require_power(self, action: str) -> None:
        if self.bill.review_mode != ReviewMode.POWER:
            raise ReviewModeError(action, self.bill.review_mode.value)

    def _require_reocr(self) -> None:
        if self.context.orchestrator is None or self.context.generator is None:
            raise ConfigurationError("review.reocr", "no OCR orchestrator configured for review")

    def _commit(self, entries: Sequence[AuditEntry], dirty: bool = True) -> None:
        """
        Persist the bill (when it changed) together with the audit entries.

        Queued side effects run only after the write succeeded; a failed
        write drops them.
        """
        callbacks, self._after_commit = self._after_commit, []
        payload = [entry.to_dict() for entry in entries]
        if dirty:
            self.bill.validation = self.context.validation.validate(self.bill, version=self.expected_version + 1)
            self.repository.update_bill(self.bill, self.expected_version, payload)
            self.expected_version = self.bill.version
        else:
            self.repository.append_audit(self.bill.bill_id, payload)

        for callback in callbacks:
            callback()

    def _slot_name(self, field_name: str) -> str:
        try:
            self.bill.slot(field_name)
        except KeyError:
            raise UnknownFieldError(field_name)
        return field_name

    def _sync_vendor(self, field_name: str) -> None:
        """A vendor derived from the printed name follows edits of that name."""
        if field_name != 'vendor_name' or self.bill.vendor_source != 'derived':
            return
        self.bill.vendor_id = vendor_slug(self.bill.value('vendor_name'))

    def _rematch_if_needed(self, field_name: str) -> None:
        """Re-run matching for a line whose SKU or description changed."""
        parsed = parse_line_path(field_name)
        if parsed is None or parsed[1] not in ('sku', 'description'):
            return
        line = self.bill.line(parsed[0])
        if line.status != LineStatus.UNMATCHED and (line.match_reason or {}).get('accepted_by'):
            return
        matching = self.context.matching
        matching.apply_thresholds(line, matching.match_line_item(line, self.bill.vendor_id))

    def _queue_outcome(self, candidate: Optional[FieldCandidate], was_correct: bool) -> None:
        if candidate is None or candidate.is_human or not candidate.signals:
            return
        vendor_id, signals = self.bill.vendor_id, candidate.signals
        self._after_commit.append(
            lambda: self.context.calibrator.record_outcome(vendor_id, signals, was_correct)
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_review(self) -> None:
        before = self.bill.state
        self.bill.state = transition(self.bill.bill_id, before, "start_review")
        self._commit([self._entry(ActionKind.START_REVIEW, "bill", self.bill.bill_id,
                                  before=before.value, after=self.bill.state.value)])

    def set_mode(self, mode: Union[ReviewMode, str]) -> None:
        mode = ReviewMode(mode)
        before = self.bill.review_mode
        if mode == before:
            return
        self.bill.review_mode = mode
        self._commit([self._entry(ActionKind.SET_MODE, "bill", self.bill.bill_id,
                                  before=before.value, after=mode.value)])

    def approve(self) -> None:
        """
        Raises:
            InvalidTransitionError: The bill is not in review.
            AmbiguousCandidateError: Fields still need a decision.
            ValidationBlockedError: Hard findings are present.
        """
        state = self.bill.state
        target = transition(self.bill.bill_id, state, "approve")

        ambiguous = self.bill.ambiguous_fields()
        if ambiguous:
            raise AmbiguousCandidateError(ambiguous)

        result = self.context.validation.validate(self.bill, version=self.expected_version + 1)
        if result.has_hard:
            self.bill.validation = result
            raise ValidationBlockedError(self.bill.bill_id, [f.code for f in result.hard])

        # Selections nobody touched were right
        for name, slot in self.bill.fields.items():
            if not slot.accepted and parse_line_path(name) is None:
                self._queue_outcome(self.bill.selected(name), True)

        self.bill.state = target
        self._commit([self._entry(ActionKind.APPROVE, "bill", self.bill.bill_id,
                                  before=state.value, after=target.value)])
        logger.info(f"Bill {self.bill.bill_id} approved by {self.actor}")

    def reject(self, reason: str) -> None:
        self._terminal_move("reject", ActionKind.REJECT, reason)
        logger.info(f"Bill {self.bill.bill_id} rejected by {self.actor}: {reason}")

    def reopen(self, reason: str) -> None:
        self._terminal_move("reopen", ActionKind.REOPEN, reason)
        logger.info(f"Bill {self.bill.bill_id} reopened by {self.actor}: {reason}")

    def _terminal_move(self, action: str, kind: ActionKind, reason: str) -> None:
        state = self.bill.state
        if not reason or not reason.strip():
            raise InvalidTransitionError(self.bill.bill_id, state.value, f"{action} without a reason")
        target = transition(self.bill.bill_id, state, action)
        self.bill.state = target
        self._commit([self._entry(kind, "bill", self.bill.bill_id,
                                  before=state.value, after=target.value, reason=reason.strip())])

    # ------------------------------------------------------------------
    # Guided / power views
    # ------------------------------------------------------------------

    def review_items(self) -> List[Dict[str, Any]]:
        """
        Fields to show in the current mode.

        Guided mode lists only what needs attention: ambiguous fields,
        fields with findings and selections below the guided confidence
        threshold. Power mode lists every field with its full evidence.
        """
        threshold = get_config("review.guided_confidence_threshold", 0.8)
        findings: Dict[str, List[str]] = {}
        if self.bill.validation is not None:
            for finding in self.bill.validation.findings:
                for path in finding.field_paths:
                    findings.setdefault(path, []).append(finding.code)

        power = self.bill.review_mode == ReviewMode.POWER
        items = []
        for name in sorted(self.bill.fields):
            slot = self.bill.fields[name]
            selected = self.bill.selected(name)
            confidence = selected.confidence if selected is not None else 0.0
            needs_attention = (
                slot.ambiguous or name in findings
                or (not slot.accepted and confidence < threshold)
            )
            if not power and not needs_attention:
                continue
            item = {
                'field': name,
                'value': _describe(selected),
                'confidence': confidence,
                'ambiguous': slot.ambiguous,
                'accepted': slot.accepted,
                'findings': findings.get(name, []),
            }
            if power:
                item['candidates'] = [c.to_dict() for c in self.bill.slot_candidates(name)]
            items.append(item)
        return items

    # ------------------------------------------------------------------
    # Field actions
    # ------------------------------------------------------------------

    def accept_field(self, field_name: str, candidate_id: Optional[str] = None) -> None:
        """
        Confirm the selected candidate, or select and confirm another one.

        Raises:
            UnknownFieldError, CandidateNotFoundError
        """
        name = self._slot_name(field_name)
        slot = self.bill.slot(name)
        candidate_id = candidate_id or slot.selected_id
        if candidate_id is None or candidate_id not in slot.candidate_ids:
            raise CandidateNotFoundError(name, candidate_id)

        entries = self._begin("accept_field")
        snapshot = self.bill.snapshot()
        previous = self.bill.selected(name)
        chosen = self.bill.candidates[candidate_id]

        self.bill.select(name, candidate_id)
        slot.accepted = True
        slot.ambiguous = False
        self._sync_vendor(name)
        self._rematch_if_needed(name)

        self._queue_outcome(chosen, True)
        if previous is not None and previous.candidate_id != candidate_id:
            self._queue_outcome(previous, False)

        entries.append(self._entry(ActionKind.ACCEPT_FIELD, "field", name,
                                   before=_describe(previous), after=_describe(chosen),
                                   undo={'snapshot': snapshot}))
        self._commit(entries)

    def edit_field(self, field_name: str, value: Any) -> FieldCandidate:
        """
        Replace a field value with a reviewer supplied one.

        The value becomes a new human candidate that is selected; the
        previous candidates stay in the arena.

        Raises:
            UnknownFieldError, InvalidFieldValueError
        """
        name = self._slot_name(field_name)
        slot = self.bill.slot(name)
        parsed = self._parse_value(name, slot.field_type, value)

        entries = self._begin("edit_field")
        snapshot = self.bill.snapshot()
        previous = self.bill.selected(name)
        line = parse_line_path(name)

        candidate = FieldCandidate.create(
            field_name=f"line.{line[1]}" if line else name,
            field_type=slot.field_type,
            raw_text=str(value),
            value=parsed,
            confidence=1.0,
            evidence=[Evidence(EvidenceKind.HUMAN, 1.0, previous.zone_id if previous else None,
                               f"entered by {self.actor}")],
            zone_id=previous.zone_id if previous else None,
            page_index=previous.page_index if previous else None,
            bbox=previous.bbox if previous else None,
        )
        self.bill.add_candidate(name, candidate)
        self.bill.select(name, candidate.candidate_id)
        slot.accepted = True
        slot.ambiguous = False
        self._sync_vendor(name)
        self._rematch_if_needed(name)

        if previous is not None:
            self._queue_outcome(previous, str(previous.value) == str(parsed))

        entries.append(self._entry(ActionKind.EDIT_FIELD, "field", name,
                                   before=_describe(previous), after=_describe(candidate),
                                   undo={'snapshot': snapshot}))
        self._commit(entries)
        return candidate

    @staticmethod
    def _parse_value(name: str, field_type: FieldType, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise InvalidFieldValueError(name, value, field_type.value)

        parsed: Any = None
        if field_type == FieldType.DATE:
            parsed = value if isinstance(value, date) else DateNormalizer().parse(str(value))
        elif field_type == FieldType.CURRENCY:
            if isinstance(value, (int, float)):
                parsed = round_money(float(value))
            else:
                parsed = round_money(AmountNormalizer().parse(str(value)))
        elif field_type == FieldType.NUMBER:
            parsed = float(value) if isinstance(value, (int, float)) else parse_quantity(str(value))
        else:
            parsed = str(value).strip()
            if name == 'currency':
                parsed = parsed.upper()

        if parsed is None:
            raise InvalidFieldValueError(name, value, field_type.value)
        return parsed

    def locate_on_page(self, field_name: str) -> Dict[str, Any]:
        """
        Where the selected value of a field was read. Read-only; the
        lookup is still written to the audit log.
        """
        name = self._slot_name(field_name)
        candidate = self.bill.selected(name)
        location: Dict[str, Any] = {'field': name, 'candidate_id': None, 'page_index': None,
                                    'bbox': None, 'zone_id': None, 'zone_label': None}
        if candidate is not None:
            location.update(candidate_id=candidate.candidate_id, page_index=candidate.page_index,
                            bbox=list(candidate.bbox) if candidate.bbox else None, zone_id=candidate.zone_id)
            if candidate.zone_id:
                zone = self.repository.load_zones(self.bill.document_id).get(candidate.zone_id)
                location['zone_label'] = zone.label.value if zone else None

        line = parse_line_path(name)
        if location['bbox'] is None and line is not None:
            item = self.bill.line(line[0])
            location.update(page_index=item.page_index,
                            bbox=list(item.row_bbox) if item.row_bbox else None)

        self._commit([self._entry(ActionKind.LOCATE_ON_PAGE, "field", name, after=location)], dirty=False)
        return location

    # ------------------------------------------------------------------
    # Re-reading the page
    # ------------------------------------------------------------------

    def _pages(self) -> Dict[int, Any]:
        return {p.page_index: p for p in self.repository.load_pages(self.bill.document_id)}

    def _generate(self, readings, zones, pages) -> CandidateSet:
        generation_id = next(iter(readings.values())).generation_id if readings else None
        sizes = {index: (page.width, page.height) for index, page in pages.items()}
        return self.context.generator.generate(readings, zones, sizes, self.bill.vendor_id,
                                               generation_id=generation_id)

    def _save_readings_after_commit(self, readings) -> None:
        document_id = self.bill.document_id
        values = list(readings.values())
        self._after_commit.append(
            lambda: [self.repository.save_reading(document_id, reading) for reading in values]
        )

    def _reread_zones(self, zones: List[Zone], masks: Sequence[Mask], pages) -> CandidateSet:
        """OCR a set of zones again; the new passes are saved after commit."""
        readings = self.context.orchestrator.run_document(
            [pages[i] for i in sorted({z.page_index for z in zones})], zones, masks
        )
        self._save_readings_after_commit(readings)
        return self._generate(readings, zones, pages)

    def targeted_reocr(self, page_index: int, bbox: BoundingBox, profile: Optional[str] = None,
                       fields: Optional[Sequence[str]] = None, timeout: Optional[float] = None) -> ReocrOutcome:
        """
        Re-read a region with a (usually more accurate) profile.

        The new candidates compete with the existing ones: an unset field
        takes the best new reading, a field that already has a selection
        keeps it and is flagged ambiguous when the new reading differs.
        Line items are not re-segmented.

        On timeout nothing changes and the outcome says so.
        """
        self._require_reocr()
        pages = self._pages()
        page = pages.get(page_index)
        if page is None:
            raise PageNotFoundError(self.bill.document_id, page_index)

        entries = self._begin("targeted_reocr")
        profile = OcrProfile(profile or self.context.reocr_profile)
        history = self.repository.load_zones(self.bill.document_id)
        zone = history.best_for_region(page_index, bbox)
        prior = []
        if zone is not None:
            prior = self.repository.load_passes(self.bill.document_id, zone.zone_id)
        else:
            # Region outside every zone: read it as an unsaved header region
            zone = Zone.create(self.bill.document_id, page_index, ZoneLabel.HEADER, bbox, source="reocr")
        masks = self.repository.masks_for(self.bill.document_id, self.bill.vendor_id)

        try:
            reading = self.context.orchestrator.targeted_reocr(
                page, bbox, masks, profile, zone_id=zone.zone_id, prior_passes=prior, timeout=timeout,
            )
        except OcrTimeoutError as e:
            entries.append(self._entry(ActionKind.TARGETED_REOCR, "zone", zone.zone_id,
                                       after={'status': 'timeout', 'profile': profile.value,
                                              'page_index': page_index, 'bbox': bbox.to_dict()},
                                       reason=e.message))
            self._commit(entries, dirty=len(entries) > 1)
            return ReocrOutcome(status="timeout", message=e.message)

        readings = {zone.zone_id: reading}
        self._save_readings_after_commit(readings)
        candidate_set = self._generate(readings, [zone], pages)

        snapshot = self.bill.snapshot()
        touched = self.bill.apply_candidates(candidate_set, fields=fields, include_lines=False)
        count = sum(len(candidate_set.candidates[name]) for name in touched)

        entries.append(self._entry(
            ActionKind.TARGETED_REOCR, "zone", zone.zone_id,
            after={'status': 'completed', 'profile': profile.value, 'page_index': page_index,
                   'bbox': bbox.to_dict(), 'generation_id': reading.generation_id,
                   'fields': touched, 'candidates': count},
            undo={'snapshot': snapshot},
        ))
        self._commit(entries)
        return ReocrOutcome(status="completed", generation_id=reading.generation_id,
                            fields=touched, candidates=count)

    def add_mask(self, bbox: BoundingBox, page_index: Optional[int] = None,
                 remember_for_vendor: bool = False, reason: str = "") -> Mask:
        """
        Blank a region (logo, watermark, stamp) and re-read the zones it
        touches.

        Selections read from inside the mask are replaced by the best new
        reading; others compete as in targeted re-OCR. With
        ``remember_for_vendor`` the mask also applies to this vendor's
        future uploads.
        """
        self._require_power("add_mask")
        self._require_reocr()
        entries = self._begin("add_mask")

        vendor_id = None
        if remember_for_vendor:
            if self.bill.vendor_id:
                vendor_id = self.bill.vendor_id
            else:
                logger.warning(f"Bill {self.bill.bill_id} has no vendor; mask kept for this document only")
        mask = Mask.create(bbox, page_index=page_index, document_id=self.bill.document_id,
                           vendor_id=vendor_id, reason=reason, created_by=self.actor)

        pages = self._pages()
        masks = self.repository.masks_for(self.bill.document_id, self.bill.vendor_id) + [mask]
        history = self.repository.load_zones(self.bill.document_id)
        affected = [
            z for z in history.active()
            if z.label != ZoneLabel.NOISE and z.page_index in pages
            and mask.applies_to(z.page_index) and z.bbox.intersects(mask.bbox)
        ]

        snapshot = self.bill.snapshot()
        touched: List[str] = []
        if affected:
            candidate_set = self._reread_zones(affected, masks, pages)
            touched = self.bill.apply_candidates(candidate_set, include_lines=False)
            for name in touched:
                self._reselect_if_masked(name, candidate_set, mask, pages)

        self._after_commit.insert(0, lambda: self.repository.save_mask(mask))
        entries.append(self._entry(ActionKind.ADD_MASK, "mask", mask.mask_id,
                                   after=mask.to_dict(), reason=reason or None,
                                   undo={'snapshot': snapshot, 'mask_id': mask.mask_id}))
        self._commit(entries)
        logger.info(
            f"Mask {mask.mask_id} on bill {self.bill.bill_id}: {len(affected)} zones re-read, "
            f"fields {touched}"
        )
        return mask

    def _reselect_if_masked(self, name: str, candidate_set: CandidateSet, mask: Mask, pages) -> None:
        slot = self.bill.slot(name)
        current = self.bill.selected(name)
        if current is None or slot.accepted or current.is_human or current.bbox is None:
            return
        page = pages.get(current.page_index)
        if page is None or not mask.applies_to(current.page_index):
            return
        x1, y1, x2, y2 = current.bbox
        if not mask.bbox.contains_point((x1 + x2) / 2.0 / page.width, (y1 + y2) / 2.0 / page.height):
            return
        best = candidate_set.best(name)
        if best is not None:
            slot.selected_id = best.candidate_id
            slot.ambiguous = candidate_set.ambiguous.get(name, False)

    def edit_zone(self, zone_id: str, bbox: Optional[BoundingBox] = None,
                  label: Optional[Union[ZoneLabel, str]] = None) -> Zone:
        """
        Move or relabel a zone. A new zone version is appended and read;
        the old version is kept.
        """
        self._require_power("edit_zone")
        self._require_reocr()
        history = self.repository.load_zones(self.bill.document_id)
        current = history.latest(zone_id)
        if current is None:
            raise ZoneNotFoundError(zone_id)

        entries = self._begin("edit_zone")
        label = ZoneLabel(label) if label is not None else None
        revised = history.supersede(current.zone_id, bbox=bbox, label=label)

        snapshot = self.bill.snapshot()
        touched: List[str] = []
        pages = self._pages()
        if revised.label != ZoneLabel.NOISE and revised.page_index in pages:
            masks = self.repository.masks_for(self.bill.document_id, self.bill.vendor_id)
            candidate_set = self._reread_zones([revised], masks, pages)
            touched = self.bill.apply_candidates(candidate_set, include_lines=False)

        self._after_commit.insert(0, lambda: self.repository.append_zones([revised]))
        entries.append(self._entry(
            ActionKind.EDIT_ZONE, "zone", revised.zone_id,
            before=current.to_dict(), after=dict(revised.to_dict(), fields=touched),
            undo={'snapshot': snapshot, 'zone_id': revised.zone_id,
                  'restore': {'bbox': current.bbox.to_dict(), 'label': current.label.value}},
        ))
        self._commit(entries)
        return revised

    # ------------------------------------------------------------------
    # Line item matching
    # ------------------------------------------------------------------

    def _product(self, product_id: str) -> Product:
        product = self.context.catalog.get(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def _confirm_after_commit(self, line, candidate: MatchCandidate) -> None:
        if candidate.alias_id:
            return
        vendor_id, sku = self.bill.vendor_id, line.normalized_sku
        self._after_commit.append(lambda: self.context.matching.record_confirmation(
            vendor_id, sku, candidate.product_id, candidate.internal_sku
        ))

    def _human_match(self, line, candidate: MatchCandidate, status: LineStatus) -> None:
        MatchingEngine.set_match(line, candidate, status)
        line.match_reason = dict(candidate.reason(), accepted_by=self.actor)

    def accept_match(self, line_id: str, product_id: Optional[str] = None) -> None:
        """
        Accept a match suggestion for a line.

        Without ``product_id`` the stored suggestion (or the current
        automatic match) is confirmed.

        Raises:
            LineItemNotFoundError, ProductNotFoundError
        """
        line = self.bill.line(line_id)
        suggestion = line.suggested_match or {}
        product_id = product_id or suggestion.get('product_id') or line.matched_product_id
        if not product_id:
            raise ProductNotFoundError(line.raw_sku or line_id)

        candidates = self.context.matching.list_match_candidates(
            line.raw_sku, line.description, self.bill.vendor_id, limit=_ACCEPT_SEARCH_LIMIT
        )
        candidate = next((c for c in candidates if c.product_id == product_id), None)
        if candidate is None:
            raise ProductNotFoundError(product_id)

        entries = self._begin("accept_match")
        snapshot = self.bill.snapshot()
        before = _match_view(line)
        self._human_match(line, candidate, LineStatus.MATCHED)
        self._confirm_after_commit(line, candidate)

        entries.append(self._entry(ActionKind.ACCEPT_MATCH, "line_item", line_id,
                                   before=before, after=dict(_match_view(line), strategy=candidate.strategy),
                                   undo={'snapshot': snapshot}))
        self._commit(entries)

    def match_line(self, line_id: str, product_id: str) -> None:
        """Match a line to a product the reviewer picked from the catalog."""
        line = self.bill.line(line_id)
        product = self._product(product_id)

        entries = self._begin("match_line")
        snapshot = self.bill.snapshot()
        before = _match_view(line)
        candidate = MatchCandidate(
            product_id=product.product_id,
            internal_sku=product.sku,
            product_name=product.name,
            strategy=MANUAL,
            confidence=1.0,
            evidence={'vendor_sku': line.normalized_sku},
        )
        self._human_match(line, candidate, LineStatus.MATCHED)
        self._confirm_after_commit(line, candidate)

        entries.append(self._entry(ActionKind.MATCH_LINE, "line_item", line_id,
                                   before=before, after=_match_view(line), undo={'snapshot': snapshot}))
        self._commit(entries)

    def create_product_from_line(self, line_id: str, product_fields: Optional[Dict[str, Any]] = None,
                                 create_alias: bool = False) -> str:
        """
        Create a catalog product from a line and match the line to it.

        Missing product fields default to the line's SKU, description and
        unit price. The product is stored once the bill write succeeded,
        so a stale write leaves the catalog untouched. Undo reverts the
        line; the product stays in the catalog.

        Returns:
            The new product id.
        """
        line = self.bill.line(line_id)
        entries = self._begin("create_product")

        fields = {
            'sku': line.raw_sku,
            'name': line.description or line.raw_sku,
            'description': line.description,
            'cost': line.unit_price or 0.0,
        }
        fields.update({k: v for k, v in (product_fields or {}).items() if v is not None})
        catalog = self.context.catalog
        product = catalog.new_product(fields)
        self._after_commit.append(lambda: catalog.add_product(product))

        snapshot = self.bill.snapshot()
        before = _match_view(line)
        candidate = MatchCandidate(
            product_id=product.product_id,
            internal_sku=product.sku,
            product_name=product.name,
            strategy=MANUAL,
            confidence=1.0,
            evidence={'created_from_line': line_id},
        )
        self._human_match(line, candidate, LineStatus.MANUALLY_CREATED)

        if create_alias:
            vendor_id, sku = self.bill.vendor_id, line.normalized_sku
            if vendor_id and sku:
                self._after_commit.append(lambda: self.context.matching.create_alias(
                    vendor_id, sku, product.product_id, product.sku, source="create_product"
                ))
            else:
                logger.warning(f"Line {line_id}: no vendor or SKU, alias not created")

        entries.append(self._entry(ActionKind.CREATE_PRODUCT, "product", product.product_id,
                                   before=before, after=dict(product.to_dict(), line_id=line_id),
                                   undo={'snapshot': snapshot}))
        self._commit(entries)
        return product.product_id

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo(self) -> AuditEntry:
        """
        Revert the most recent state-affecting action.

        Reverting never removes history: the bill goes back to the
        snapshot taken before the action, candidates stay in the arena,
        a mask is revoked and a zone edit is answered by a new version
        with the old geometry.

        Returns:
            The audit entry that was reverted.

        Raises:
            NothingToUndoError: No undoable action since the last barrier.
        """
        log = [AuditEntry.from_dict(data) for data in self.repository.list_audit(self.bill.bill_id)]
        target = find_undo_target(log)
        if target is None:
            raise NothingToUndoError(self.bill.bill_id)

        entries = self._begin("undo")
        self.bill.restore_snapshot(target.undo['snapshot'])

        if target.action == ActionKind.ADD_MASK:
            mask_id = target.undo['mask_id']
            self._after_commit.append(lambda: self.repository.revoke_mask(mask_id))
        elif target.action == ActionKind.EDIT_ZONE:
            self._after_commit.append(lambda: self._restore_zone(target.undo))

        entries.append(self._entry(ActionKind.UNDO, target.entity_type, target.entity_id,
                                   before=target.after, after=target.before, undoes=target.seq))
        self._commit(entries)
        logger.info(f"Bill {self.bill.bill_id}: undid {target.action.value} (seq {target.seq})")
        return target

    def _restore_zone(self, undo: Dict[str, Any]) -> None:
        history = self.repository.load_zones(self.bill.document_id)
        current = history.latest(undo['zone_id'])
        if current is None:
            raise ZoneNotFoundError(undo['zone_id'])
        restore = undo['restore']
        reverted = history.supersede(current.zone_id, bbox=BoundingBox.from_dict(restore['bbox']),
                                     label=ZoneLabel(restore['label']))
        self.repository.append_zones([reverted])

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def post_receiving(self, cost_policy: Union[CostPolicy, str]) -> ReceivingSummary:
        """
        Produce the receiving summary of an approved bill. Posts once.

        Raises:
            InvalidTransitionError: Not approved, or already posted.
            ValidationBlockedError: Unmatched lines or missing quantities.
        """
        if self.bill.state != BillState.APPROVED:
            raise InvalidTransitionError(self.bill.bill_id, self.bill.state.value, "post_receiving")
        if self.bill.receiving:
            raise InvalidTransitionError(self.bill.bill_id, "posted", "post_receiving")

        summary = build_summary(self.bill, self.context.catalog, cost_policy, posted_by=self.actor)
        self.bill.receiving = summary.to_dict()

        aliases = self.context.matching.aliases
        alias_ids = []
        for line in self.bill.line_items:
            alias_id = line.alias_id
            if alias_id is None and self.bill.vendor_id and line.normalized_sku:
                alias_id = next((a.alias_id for a in aliases.find(self.bill.vendor_id, line.normalized_sku)
                                 if a.product_id == line.matched_product_id), None)
            if alias_id is not None:
                alias_ids.append(alias_id)
        self._after_commit.append(lambda: [aliases.increment_usage(alias_id) for alias_id in alias_ids])

        self._commit([self._entry(ActionKind.POST_RECEIVING, "bill", self.bill.bill_id,
                                  after={k: v for k, v in summary.to_dict().items() if k != 'lines'})])
        return summary
