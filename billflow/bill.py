"""
Bill Aggregate.

A Bill is created when a document finishes extraction and is mutated
only through the review case. It owns:

    - a candidate arena (every FieldCandidate ever generated for it)
    - one FieldSlot per field, holding the current selection
    - ordered line items mirroring the selected line candidates
    - the latest ValidationResult

Slot names are header field names (``invoice_number``) or line paths
(``lines.<line_id>.<attr>``).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from billflow.extraction.candidates import CandidateSet, ExtractedLine, FieldCandidate, FieldSlot
from billflow.extraction.lexicon import FIELD_SPECS, HEADER_FIELDS
from billflow.extraction.line_items import LINE_FIELD_TYPES
from billflow.utils.exceptions import LineItemNotFoundError
from billflow.utils.helpers import generate_id, normalize_sku, round_money, utc_now, to_iso, from_iso
from billflow.validation.result import ValidationResult

LINE_ATTRIBUTES = ('sku', 'description', 'quantity', 'unit_price', 'line_total')


class BillState(str, Enum):
    PENDING = "Pending"
    IN_REVIEW = "InReview"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    REOPENED = "Reopened"


class LineStatus(str, Enum):
    UNMATCHED = "Unmatched"
    MATCHED = "Matched"
    MANUALLY_CREATED = "ManuallyCreated"


class ReviewMode(str, Enum):
    GUIDED = "guided"
    POWER = "power"


def line_path(line_id: str, attr: str) -> str:
    return f"lines.{line_id}.{attr}"


def parse_line_path(path: str) -> Optional[Tuple[str, str]]:
    """(line_id, attr) for a line slot path, None for header fields."""
    parts = path.split('.')
    if len(parts) == 3 and parts[0] == 'lines':
        return parts[1], parts[2]
    return None


@dataclass
class LineItem:
    """
    One row of a vendor bill.

    Attributes:
        line_id: Unique identifier
        position: Row order on the bill
        raw_sku: Vendor SKU as printed
        normalized_sku: Canonical vendor SKU used for matching
        description: Item description
        quantity: Quantity billed
        unit_price: Vendor unit price
        line_total: Extended amount
        matched_product_id: Internal product (set when Matched or ManuallyCreated)
        match_confidence: Confidence of the accepted match
        match_reason: Strategy name and evidence of the accepted match
        suggested_match: Best match below the auto-accept threshold
        status: Review status
        unit_conversion: Vendor units to internal units
        alias_id: Alias that produced the match, if any
    """
    line_id: str
    position: int
    raw_sku: str = ""
    normalized_sku: str = ""
    description: str = ""
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    line_total: Optional[float] = None
    row_bbox: Optional[Tuple[int, int, int, int]] = None
    page_index: int = 0
    matched_product_id: Optional[str] = None
    match_confidence: Optional[float] = None
    match_reason: Optional[Dict[str, Any]] = None
    suggested_match: Optional[Dict[str, Any]] = None
    status: LineStatus = LineStatus.UNMATCHED
    unit_conversion: float = 1.0
    alias_id: Optional[str] = None

    @classmethod
    def from_extracted(cls, extracted: ExtractedLine) -> 'LineItem':
        raw_sku = extracted.value('sku', '') or ''
        return cls(
            line_id=generate_id("line"),
            position=extracted.position,
            raw_sku=raw_sku,
            normalized_sku=normalize_sku(raw_sku),
            description=extracted.value('description', '') or '',
            quantity=extracted.value('quantity'),
            unit_price=round_money(extracted.value('unit_price')),
            line_total=round_money(extracted.value('line_total')),
            row_bbox=extracted.row_bbox,
            page_index=extracted.page_index,
        )

    def set_attribute(self, attr: str, value: Any) -> None:
        if attr == 'sku':
            self.raw_sku = value or ''
            self.normalized_sku = normalize_sku(self.raw_sku)
        elif attr == 'description':
            self.description = value or ''
        elif attr == 'quantity':
            self.quantity = float(value) if value is not None else None
        elif attr in ('unit_price', 'line_total'):
            setattr(self, attr, round_money(value))
        else:
            raise KeyError(attr)

    def clear_match(self) -> None:
        self.matched_product_id = None
        self.match_confidence = None
        self.match_reason = None
        self.alias_id = None
        self.unit_conversion = 1.0
        self.status = LineStatus.UNMATCHED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'line_id': self.line_id,
            'position': self.position,
            'raw_sku': self.raw_sku,
            'normalized_sku': self.normalized_sku,
            'description': self.description,
            'quantity': self.quantity,
            'unit_price': self.unit_price,
            'line_total': self.line_total,
            'row_bbox': list(self.row_bbox) if self.row_bbox else None,
            'page_index': self.page_index,
            'matched_product_id': self.matched_product_id,
            'match_confidence': self.match_confidence,
            'match_reason': self.match_reason,
            'suggested_match': self.suggested_match,
            'status': self.status.value,
            'unit_conversion': self.unit_conversion,
            'alias_id': self.alias_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LineItem':
        return cls(
            line_id=data['line_id'],
            position=int(data.get('position', 0)),
            raw_sku=data.get('raw_sku', ''),
            normalized_sku=data.get('normalized_sku', ''),
            description=data.get('description', ''),
            quantity=data.get('quantity'),
            unit_price=data.get('unit_price'),
            line_total=data.get('line_total'),
            row_bbox=tuple(data['row_bbox']) if data.get('row_bbox') else None,
            page_index=int(data.get('page_index', 0)),
            matched_product_id=data.get('matched_product_id'),
            match_confidence=data.get('match_confidence'),
            match_reason=data.get('match_reason'),
            suggested_match=data.get('suggested_match'),
            status=LineStatus(data.get('status', LineStatus.UNMATCHED.value)),
            unit_conversion=float(data.get('unit_conversion', 1.0)),
            alias_id=data.get('alias_id'),
        )


@dataclass
class Bill:
    """
    Aggregate root for one vendor invoice.

    Attributes:
        bill_id: Unique identifier
        document_id: Source document
        store_id: Store scope
        vendor_id: Vendor reference (upload hint or derived from vendor name)
        vendor_source: "hint" or "derived"
        fields: Slot per field name / line path
        candidates: Candidate arena, append only
        line_items: Ordered line items
        state: Review state
        validation: Latest validation result
        version: Optimistic concurrency token, bumped on every save
        review_mode: Interaction mode of the review case
        receiving: Receiving summary once posted
    """
    bill_id: str
    document_id: str
    store_id: str
    vendor_id: Optional[str] = None
    vendor_source: str = "derived"
    fields: Dict[str, FieldSlot] = field(default_factory=dict)
    candidates: Dict[str, FieldCandidate] = field(default_factory=dict)
    line_items: List[LineItem] = field(default_factory=list)
    state: BillState = BillState.PENDING
    validation: Optional[ValidationResult] = None
    version: int = 0
    review_mode: ReviewMode = ReviewMode.GUIDED
    receiving: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(cls, document_id: str, store_id: str, vendor_id: Optional[str] = None,
               vendor_source: str = "derived") -> 'Bill':
        return cls(
            bill_id=generate_id("bill"),
            document_id=document_id,
            store_id=store_id,
            vendor_id=vendor_id,
            vendor_source=vendor_source,
        )

    # ------------------------------------------------------------------
    # Candidates and slots
    # ------------------------------------------------------------------

    def slot(self, name: str) -> FieldSlot:
        if name not in self.fields:
            if name in FIELD_SPECS:
                field_type = FIELD_SPECS[name].field_type
            else:
                parsed = parse_line_path(name)
                if parsed is None:
                    raise KeyError(name)
                self.line(parsed[0])
                field_type = LINE_FIELD_TYPES[parsed[1]]
            self.fields[name] = FieldSlot(name=name, field_type=field_type)
        return self.fields[name]

    def add_candidate(self, slot_name: str, candidate: FieldCandidate) -> None:
        """Append a candidate to the arena and to a slot. Never replaces."""
        if candidate.candidate_id in self.candidates:
            raise ValueError(f"Candidate already recorded: {candidate.candidate_id}")
        self.candidates[candidate.candidate_id] = candidate
        self.slot(slot_name).candidate_ids.append(candidate.candidate_id)

    def select(self, slot_name: str, candidate_id: Optional[str]) -> None:
        self.slot(slot_name).selected_id = candidate_id
        parsed = parse_line_path(slot_name)
        if parsed is not None:
            candidate = self.candidates.get(candidate_id) if candidate_id else None
            self.line(parsed[0]).set_attribute(parsed[1], candidate.value if candidate else None)

    def selected(self, slot_name: str) -> Optional[FieldCandidate]:
        slot = self.fields.get(slot_name)
        if slot is None or slot.selected_id is None:
            return None
        return self.candidates.get(slot.selected_id)

    def value(self, slot_name: str, default: Any = None) -> Any:
        candidate = self.selected(slot_name)
        return candidate.value if candidate is not None else default

    def slot_candidates(self, slot_name: str) -> List[FieldCandidate]:
        slot = self.fields.get(slot_name)
        if slot is None:
            return []
        return [self.candidates[cid] for cid in slot.candidate_ids if cid in self.candidates]

    def apply_candidates(self, candidate_set: CandidateSet, fields: Optional[Iterable[str]] = None,
                         include_lines: bool = True) -> List[str]:
        """
        Add one generator run to the bill.

        A field without a selection takes the run's best candidate. A field
        that already has one keeps it; when the new best reads differently
        and scores at least as high, the field is flagged ambiguous so a
        reviewer decides.

        Returns:
            Names of the header fields that received candidates.
        """
        wanted = set(fields) if fields is not None else None
        touched = []
        for name, ranked in candidate_set.candidates.items():
            if not ranked or (wanted is not None and name not in wanted):
                continue
            slot = self.slot(name)
            current = self.selected(name)
            for candidate in ranked:
                self.add_candidate(name, candidate)
            best = ranked[0]
            if current is None:
                slot.selected_id = best.candidate_id
                slot.ambiguous = candidate_set.ambiguous.get(name, False)
            elif (not slot.accepted and not current.is_human
                  and str(best.value) != str(current.value)
                  and best.confidence >= current.confidence):
                slot.ambiguous = True
            touched.append(name)

        if include_lines:
            for extracted in candidate_set.lines:
                self.add_extracted_line(extracted)
        return touched

    def ambiguous_fields(self) -> List[str]:
        return sorted(name for name, slot in self.fields.items() if slot.ambiguous)

    def header_values(self) -> Dict[str, Any]:
        return {name: self.value(name) for name in HEADER_FIELDS}

    @property
    def invoice_number(self) -> Optional[str]:
        return self.value('invoice_number')

    @property
    def total(self) -> Optional[float]:
        return self.value('total')

    @property
    def overall_confidence(self) -> float:
        """Lowest selected header confidence, 0 when nothing is selected."""
        confidences = [c.confidence for c in (self.selected(n) for n in HEADER_FIELDS) if c is not None]
        return min(confidences) if confidences else 0.0

    # ------------------------------------------------------------------
    # Line items
    # ------------------------------------------------------------------

    def line(self, line_id: str) -> LineItem:
        for item in self.line_items:
            if item.line_id == line_id:
                return item
        raise LineItemNotFoundError(self.bill_id, line_id)

    def add_extracted_line(self, extracted: ExtractedLine) -> LineItem:
        item = LineItem.from_extracted(extracted)
        self.line_items.append(item)
        for attr, candidate in extracted.cells.items():
            path = line_path(item.line_id, attr)
            self.add_candidate(path, candidate)
            self.slot(path).selected_id = candidate.candidate_id
        return item

    # ------------------------------------------------------------------
    # Snapshots for audit and undo
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Mutable review state: selections, flags, line items and vendor."""
        return {
            'vendor_id': self.vendor_id,
            'vendor_source': self.vendor_source,
            'fields': {name: slot.to_dict() for name, slot in self.fields.items()},
            'line_items': [item.to_dict() for item in self.line_items],
        }

    def restore_snapshot(self, snapshot: Dict[str, Any]) -> None:
        """
        Restore a snapshot taken by :meth:`snapshot`.

        Candidate ids appended after the snapshot stay in their slots; the
        arena is never shrunk.
        Slots created after the snapshot keep their candidates but lose
        their selection.
        """
        self.vendor_id = snapshot.get('vendor_id', self.vendor_id)
        self.vendor_source = snapshot.get('vendor_source', self.vendor_source)
        for name, data in snapshot.get('fields', {}).items():
            restored = FieldSlot.from_dict(data)
            current = self.fields.get(name)
            if current is not None:
                extra = [cid for cid in current.candidate_ids if cid not in restored.candidate_ids]
                restored.candidate_ids.extend(extra)
            self.fields[name] = restored
        for name, slot in self.fields.items():
            if name not in snapshot.get('fields', {}):
                slot.selected_id = None
                slot.accepted = False
                slot.ambiguous = False
        if 'line_items' in snapshot:
            self.line_items = [LineItem.from_dict(d) for d in snapshot['line_items']]

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            'bill_id': self.bill_id,
            'document_id': self.document_id,
            'store_id': self.store_id,
            'vendor_id': self.vendor_id,
            'vendor_source': self.vendor_source,
            'fields': {name: slot.to_dict() for name, slot in self.fields.items()},
            'candidates': {cid: c.to_dict() for cid, c in self.candidates.items()},
            'line_items': [item.to_dict() for item in self.line_items],
            'state': self.state.value,
            'validation': self.validation.to_dict() if self.validation else None,
            'version': self.version,
            'review_mode': self.review_mode.value,
            'receiving': self.receiving,
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Bill':
        return cls(
            bill_id=data['bill_id'],
            document_id=data['document_id'],
            store_id=data['store_id'],
            vendor_id=data.get('vendor_id'),
            vendor_source=data.get('vendor_source', 'derived'),
            fields={name: FieldSlot.from_dict(s) for name, s in data.get('fields', {}).items()},
            candidates={cid: FieldCandidate.from_dict(c) for cid, c in data.get('candidates', {}).items()},
            line_items=[LineItem.from_dict(d) for d in data.get('line_items', [])],
            state=BillState(data.get('state', BillState.PENDING.value)),
            validation=ValidationResult.from_dict(data['validation']) if data.get('validation') else None,
            version=int(data.get('version', 0)),
            review_mode=ReviewMode(data.get('review_mode', ReviewMode.GUIDED.value)),
            receiving=data.get('receiving'),
            created_at=from_iso(data.get('created_at')) or utc_now(),
            updated_at=from_iso(data.get('updated_at')) or utc_now(),
        )

    def summary(self) -> Dict[str, Any]:
        """Header values, line items and findings for display."""
        header = {k: (v.isoformat() if hasattr(v, 'isoformat') else v) for k, v in self.header_values().items()}
        return {
            'bill_id': self.bill_id,
            'document_id': self.document_id,
            'vendor_id': self.vendor_id,
            'state': self.state.value,
            'version': self.version,
            'header': header,
            'ambiguous_fields': self.ambiguous_fields(),
            'line_items': [item.to_dict() for item in self.line_items],
            'findings': [f.to_dict() for f in self.validation.findings] if self.validation else [],
        }
