"""
Field Candidate Data Classes.

Candidates are immutable once generated. A re-OCR or a mask edit adds a
new candidate set with its own generation id; only the selection held by
a FieldSlot changes over time.

Classes:
    EvidenceKind: Kind of signal behind a candidate
    Evidence: One signal with its weight and source zone
    FieldType: Declared value type of a field
    FieldCandidate: Typed, scored value for one field
    FieldSlot: Candidates and current selection for one field
    CandidateSet: Output of one generator run
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from billflow.utils.helpers import generate_id, utc_now, to_iso, from_iso

# Signal names, in the order used for calibration bucketing
SIGNAL_NAMES = ('lexicon', 'proximity', 'zone_prior', 'format', 'consensus')


class EvidenceKind(str, Enum):
    LEXICON_MATCH = "LexiconMatch"
    PROXIMITY = "Proximity"
    ZONE_PRIOR = "ZonePrior"
    FORMAT_PARSE = "FormatParse"
    CONSENSUS = "Consensus"
    HUMAN = "Human"


class FieldType(str, Enum):
    STRING = "string"
    DATE = "date"
    CURRENCY = "currency"
    NUMBER = "number"


@dataclass(frozen=True)
class Evidence:
    """
    One signal contributing to a candidate.

    Attributes:
        kind: Signal kind
        weight: Sub-score of the signal (0-1)
        zone_id: Zone the signal was observed in
        note: Short human readable detail (matched label, distance...)
    """
    kind: EvidenceKind
    weight: float
    zone_id: Optional[str] = None
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind.value, 'weight': self.weight, 'zone_id': self.zone_id, 'note': self.note}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Evidence':
        return cls(
            kind=EvidenceKind(data['kind']),
            weight=float(data['weight']),
            zone_id=data.get('zone_id'),
            note=data.get('note', ''),
        )


def _value_to_json(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    return value


def _value_from_json(value: Any, field_type: FieldType) -> Any:
    if value is None:
        return None
    if field_type == FieldType.DATE and isinstance(value, str):
        return date.fromisoformat(value)
    if field_type in (FieldType.CURRENCY, FieldType.NUMBER) and not isinstance(value, str):
        return float(value)
    return value


@dataclass(frozen=True)
class FieldCandidate:
    """
    A typed value proposed for one field.

    Attributes:
        candidate_id: Unique identifier
        field_name: Target field (``invoice_number``, ``line.unit_price``...)
        field_type: Declared type
        raw_text: Text as read from the page
        value: Parsed value (str, date or float)
        confidence: Calibrated probability (0-1)
        evidence: Ordered signals, strongest first (never empty)
        alternatives: Competing readings of the raw text
        generation_id: OCR run that produced the candidate
        zone_id: Zone the value was read from
        page_index: Page of the value
        bbox: Pixel box of the value on the page
        signals: Signal vector used for calibration
    """
    candidate_id: str
    field_name: str
    field_type: FieldType
    raw_text: str
    value: Any
    confidence: float
    evidence: Tuple[Evidence, ...]
    alternatives: Tuple[str, ...] = ()
    generation_id: Optional[str] = None
    zone_id: Optional[str] = None
    page_index: Optional[int] = None
    bbox: Optional[Tuple[int, int, int, int]] = None
    signals: Tuple[float, ...] = ()
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Candidate confidence out of range: {self.confidence}")
        if not self.evidence:
            raise ValueError(f"Candidate for {self.field_name} has no evidence")

    @classmethod
    def create(cls, field_name: str, field_type: FieldType, raw_text: str, value: Any,
               confidence: float, evidence, **kwargs) -> 'FieldCandidate':
        return cls(
            candidate_id=generate_id("cand"),
            field_name=field_name,
            field_type=field_type,
            raw_text=raw_text,
            value=value,
            confidence=max(0.0, min(1.0, confidence)),
            evidence=tuple(evidence),
            **kwargs
        )

    @property
    def evidence_kinds(self) -> frozenset:
        return frozenset(e.kind for e in self.evidence)

    @property
    def is_human(self) -> bool:
        return EvidenceKind.HUMAN in self.evidence_kinds

    def to_dict(self) -> Dict[str, Any]:
        return {
            'candidate_id': self.candidate_id,
            'field_name': self.field_name,
            'field_type': self.field_type.value,
            'raw_text': self.raw_text,
            'value': _value_to_json(self.value),
            'confidence': self.confidence,
            'evidence': [e.to_dict() for e in self.evidence],
            'alternatives': list(self.alternatives),
            'generation_id': self.generation_id,
            'zone_id': self.zone_id,
            'page_index': self.page_index,
            'bbox': list(self.bbox) if self.bbox else None,
            'signals': list(self.signals),
            'created_at': to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FieldCandidate':
        field_type = FieldType(data['field_type'])
        return cls(
            candidate_id=data['candidate_id'],
            field_name=data['field_name'],
            field_type=field_type,
            raw_text=data.get('raw_text', ''),
            value=_value_from_json(data.get('value'), field_type),
            confidence=float(data['confidence']),
            evidence=tuple(Evidence.from_dict(e) for e in data['evidence']),
            alternatives=tuple(data.get('alternatives', [])),
            generation_id=data.get('generation_id'),
            zone_id=data.get('zone_id'),
            page_index=data.get('page_index'),
            bbox=tuple(data['bbox']) if data.get('bbox') else None,
            signals=tuple(data.get('signals', [])),
            created_at=from_iso(data.get('created_at')) or utc_now(),
        )


@dataclass
class FieldSlot:
    """
    Selection state of one field on a bill.

    ``candidate_ids`` only grows. ``selected_id`` is the single selected
    candidate; ``ambiguous`` is set when ranking could not separate the
    top candidates and cleared once a human decides.
    """
    name: str
    field_type: FieldType
    candidate_ids: List[str] = field(default_factory=list)
    selected_id: Optional[str] = None
    ambiguous: bool = False
    accepted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'field_type': self.field_type.value,
            'candidate_ids': list(self.candidate_ids),
            'selected_id': self.selected_id,
            'ambiguous': self.ambiguous,
            'accepted': self.accepted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FieldSlot':
        return cls(
            name=data['name'],
            field_type=FieldType(data['field_type']),
            candidate_ids=list(data.get('candidate_ids', [])),
            selected_id=data.get('selected_id'),
            ambiguous=bool(data.get('ambiguous', False)),
            accepted=bool(data.get('accepted', False)),
        )


@dataclass
class ExtractedLine:
    """A line-item row with one candidate per column."""
    position: int
    row_bbox: Tuple[int, int, int, int]
    page_index: int
    zone_id: Optional[str]
    cells: Dict[str, FieldCandidate] = field(default_factory=dict)

    def value(self, attr: str, default: Any = None) -> Any:
        candidate = self.cells.get(attr)
        return candidate.value if candidate is not None else default


@dataclass
class CandidateSet:
    """
    Result of one candidate generator run.

    Attributes:
        generation_id: OCR run the candidates come from
        candidates: Header candidates per field, best first
        ambiguous: Fields whose top candidates could not be separated
        lines: Line-item rows in page order
    """
    generation_id: Optional[str] = None
    candidates: Dict[str, List[FieldCandidate]] = field(default_factory=dict)
    ambiguous: Dict[str, bool] = field(default_factory=dict)
    lines: List[ExtractedLine] = field(default_factory=list)

    def best(self, field_name: str) -> Optional[FieldCandidate]:
        ranked = self.candidates.get(field_name) or []
        return ranked[0] if ranked else None


_SIGNAL_KINDS = {
    'lexicon': EvidenceKind.LEXICON_MATCH,
    'proximity': EvidenceKind.PROXIMITY,
    'zone_prior': EvidenceKind.ZONE_PRIOR,
    'format': EvidenceKind.FORMAT_PARSE,
    'consensus': EvidenceKind.CONSENSUS,
}


def signal_vector(signals: Dict[str, float]) -> Tuple[float, ...]:
    return tuple(round(float(signals.get(name, 0.0)), 4) for name in SIGNAL_NAMES)


def build_evidence(signals: Dict[str, float], weights: Dict[str, float],
                   zone_id: Optional[str], notes: Dict[str, str]) -> List[Evidence]:
    """Evidence entries for the signals that fired, strongest contribution first."""
    evidence = [
        Evidence(kind=_SIGNAL_KINDS[name], weight=round(value, 4), zone_id=zone_id, note=notes.get(name, ""))
        for name, value in signals.items()
        if value > 0
    ]
    evidence.sort(key=lambda e: -e.weight * weights.get(_signal_name(e.kind), 1.0))
    return evidence


def _signal_name(kind: EvidenceKind) -> str:
    for name, signal_kind in _SIGNAL_KINDS.items():
        if signal_kind == kind:
            return name
    return ""


def consensus_signal(tokens) -> float:
    """
    Cross-pass support for a group of consensus tokens.

    Mean token confidence scaled by the share of passes that agreed; a
    single pass counts as half support.
    """
    tokens = list(tokens)
    if not tokens:
        return 0.0
    confidence = sum(t.confidence for t in tokens) / len(tokens)
    pass_count = min(t.pass_count for t in tokens)
    if pass_count < 2:
        return round(0.5 * confidence, 4)
    agreement = min(t.agreement for t in tokens)
    return round(confidence * agreement, 4)


def token_alternatives(tokens, limit: int = 4) -> Tuple[str, ...]:
    """Alternative readings of a token group, one token swapped at a time."""
    tokens = list(tokens)
    texts = [t.text for t in tokens]
    result = []
    for index, token in enumerate(tokens):
        for variant in token.alternatives:
            swapped = texts[:index] + [variant.text] + texts[index + 1:]
            result.append(' '.join(swapped))
    return tuple(result[:limit])
