"""
Candidate Generator.

Turns per-zone consensus readings into typed, evidence-backed field
candidates and selects one per field.

Signals per candidate:
    lexicon     strength of the label that introduced the value
    proximity   closeness of the value to its label (right or below)
    zone_prior  value lies in a zone where the field is expected
    format      value parses as the field's declared type
    consensus   cross-pass agreement on the value tokens

The signals are combined by the ConfidenceCalibrator. Ranking ties
(within ``tie_epsilon``) are broken by expected zone, then by fewer
OCR-ambiguous characters; a tie that survives marks the field ambiguous.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import get_config
from billflow.layout.geometry import union_box
from billflow.layout.zones import Zone, ZoneLabel
from billflow.ocr_engine.consensus import ConsensusResult
from billflow.utils.helpers import count_ambiguous_chars
from billflow.utils.logger import get_logger
from .calibrator import ConfidenceCalibrator
from .candidates import (
    CandidateSet, FieldCandidate,
    build_evidence, consensus_signal, signal_vector, token_alternatives,
)
from .lexicon import FIELD_SPECS, FieldSpec, LabelHit, find_labels
from .line_items import LineItemExtractor
from .normalizers import AmountNormalizer, DateNormalizer, detect_currency, looks_like_identifier

logger = get_logger(__name__)

# Page coordinates are compared in normalized units
PAGE_UNITS = 1000.0

_PUNCTUATION = set(':#-.')


@dataclass
class _Draft:
    """Candidate before calibration."""
    field_name: str
    raw_text: str
    value: Any
    tokens: List[Any]
    zone: Zone
    signals: Dict[str, float]
    notes: Dict[str, str] = field(default_factory=dict)
    alternatives: Tuple[str, ...] = ()
    order: int = 0
    generation_id: Optional[str] = None


class CandidateGenerator:
    """
    Generates header and line-item candidates for one document.

    Example:
        >>> generator = CandidateGenerator(calibrator)
        >>> candidate_set = generator.generate(readings, zones, page_sizes, vendor_id="acme")
        >>> candidate_set.best("invoice_number").value
        'INV-1001'
    """

    def __init__(self, calibrator: ConfidenceCalibrator, tie_epsilon: Optional[float] = None) -> None:
        self.calibrator = calibrator
        self.tie_epsilon = tie_epsilon if tie_epsilon is not None else get_config("extraction.tie_epsilon", 0.01)
        self.max_horizontal = get_config("extraction.proximity.max_horizontal", 350)
        self.max_vertical = get_config("extraction.proximity.max_vertical", 40)
        self.max_alternatives = get_config("extraction.max_alternatives", 4)
        self.dates = DateNormalizer()
        self.amounts = AmountNormalizer()
        self.line_extractor = LineItemExtractor(calibrator, self.amounts)
        self._order = 0

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def generate(
        self,
        readings: Dict[str, ConsensusResult],
        zones: Sequence[Zone],
        page_sizes: Dict[int, Tuple[int, int]],
        vendor_id: Optional[str] = None,
        generation_id: Optional[str] = None
    ) -> CandidateSet:
        """
        Generate candidates from the consensus readings of a document.

        Args:
            readings: zone_id -> consensus reading (all zones joined).
            zones: Zones the readings belong to.
            page_sizes: page_index -> (width, height) in pixels.
            vendor_id: Vendor scope for calibration.
            generation_id: Id stamped on every candidate.

        Returns:
            CandidateSet with header candidates ranked per field and
            line-item rows in page order.
        """
        zones_by_id = {z.zone_id: z for z in zones}
        ordered = sorted(
            ((zones_by_id[zone_id], reading) for zone_id, reading in readings.items() if zone_id in zones_by_id),
            key=lambda item: (item[0].page_index, item[0].bbox.y, item[0].bbox.x),
        )

        self._order = 0
        drafts: Dict[str, List[_Draft]] = {name: [] for name in FIELD_SPECS}
        result = CandidateSet(generation_id=generation_id)

        for zone, reading in ordered:
            size = page_sizes.get(zone.page_index, (1, 1))
            gen = generation_id or reading.generation_id
            if zone.label == ZoneLabel.LINE_ITEM_TABLE:
                result.lines.extend(self.line_extractor.extract(
                    reading, zone, vendor_id, start_position=len(result.lines), generation_id=gen
                ))
            zone_drafts: Dict[str, List[_Draft]] = {name: [] for name in FIELD_SPECS}
            for draft in self._scan_zone(reading, zone, size):
                zone_drafts[draft.field_name].append(draft)
            self._zone_prior_drafts(reading, zone, zone_drafts)
            for name, items in zone_drafts.items():
                for draft in items:
                    draft.generation_id = gen
                drafts[name].extend(items)

        for name, field_drafts in drafts.items():
            candidates = [self._finalize(d, vendor_id) for d in field_drafts]
            candidates = _dedupe(candidates)
            ranked, ambiguous = self.rank(candidates)
            if ranked:
                result.candidates[name] = ranked
                result.ambiguous[name] = ambiguous

        logger.info(
            f"Generated candidates for {len(result.candidates)} fields and "
            f"{len(result.lines)} line items"
        )
        return result

    # ------------------------------------------------------------------
    # Label driven candidates
    # ------------------------------------------------------------------

    def _scan_zone(self, reading: ConsensusResult, zone: Zone, size: Tuple[int, int]) -> List[_Draft]:
        lines = reading.lines
        width, height = size
        drafts = []
        for line_no, line in enumerate(lines):
            tokens = line.tokens
            hits = find_labels(tokens)
            for hit_no, hit in enumerate(hits):
                if hit.field_name is None:
                    continue
                spec = FIELD_SPECS[hit.field_name]

                # Same line, up to the next label
                stop = hits[hit_no + 1].first_token if hit_no + 1 < len(hits) else len(tokens)
                right = tokens[hit.last_token + 1:stop]
                if hit.remainder or right:
                    gap = (right[0].x1 - hit.bbox[2]) if right else 0
                    distance = max(gap, 0) * PAGE_UNITS / width
                    if distance <= self.max_horizontal:
                        draft = self._value_draft(spec, hit, right, zone, distance / self.max_horizontal,
                                                  "right of label")
                        if draft is not None:
                            drafts.append(draft)
                            continue

                # Line below, tokens starting under the label
                if line_no + 1 < len(lines):
                    below_line = lines[line_no + 1]
                    gap = (below_line.bbox[1] - line.bbox[3]) * PAGE_UNITS / height
                    if 0 <= gap <= self.max_vertical:
                        below = [
                            t for t in below_line.tokens
                            if hit.bbox[0] - 5 <= t.center[0] and (t.x1 - hit.bbox[0]) * PAGE_UNITS / width <= self.max_horizontal
                        ]
                        if find_labels(below):
                            continue
                        hit_below = LabelHit(hit.field_name, hit.strength, hit.text,
                                             hit.first_token, hit.last_token, hit.bbox)
                        draft = self._value_draft(spec, hit_below, below, zone,
                                                  min(1.0, 0.25 + gap / self.max_vertical), "below label")
                        if draft is not None:
                            drafts.append(draft)
        return drafts

    def _value_draft(self, spec: FieldSpec, hit: LabelHit, tokens: List, zone: Zone,
                     relative_distance: float, where: str) -> Optional[_Draft]:
        """Cut the value for ``spec`` from the tokens following a label."""
        tokens = [t for t in tokens if t.text.strip() and not set(t.text) <= _PUNCTUATION]
        raw_text, value, used = None, None, []

        if spec.value_kind == 'identifier':
            candidates = ([hit.remainder] if hit.remainder else []) + [t.text for t in tokens[:2]]
            for index, text in enumerate(candidates):
                text = text.strip(':#')
                if text.lower() in ('no', 'no.', 'number'):
                    continue
                if looks_like_identifier(text):
                    raw_text, value = text, text.upper()
                    offset = index - (1 if hit.remainder else 0)
                    used = [tokens[offset]] if offset >= 0 else []
                    break
        elif spec.value_kind == 'date':
            phrase_tokens = tokens[:4]
            phrase = ' '.join(([hit.remainder] if hit.remainder else []) + [t.text for t in phrase_tokens])
            value = self.dates.parse(phrase)
            if value is not None:
                raw_text, used = phrase, phrase_tokens
        elif spec.value_kind == 'amount':
            phrase_tokens = tokens[:3]
            phrase = ' '.join(([hit.remainder] if hit.remainder else []) + [t.text for t in phrase_tokens])
            amounts = self.amounts.find_amounts(phrase)
            if amounts:
                raw_text = amounts[0]
                value = self.amounts.parse(raw_text)
                used = [t for t in phrase_tokens if t.text in raw_text or raw_text in t.text] or phrase_tokens[:1]
        elif spec.value_kind == 'currency':
            phrase = ' '.join(([hit.remainder] if hit.remainder else []) + [t.text for t in tokens[:2]])
            value = detect_currency(phrase)
            if value is not None:
                raw_text, used = phrase, tokens[:2]
        else:
            words = ([hit.remainder] if hit.remainder else []) + [t.text for t in tokens]
            text = ' '.join(words).strip()
            if len(text) >= 2 and any(ch.isalpha() for ch in text):
                raw_text, value, used = text, text, tokens

        if value is None:
            return None

        proximity = round(max(0.1, 1.0 - relative_distance), 4)
        signals = {
            'lexicon': hit.strength,
            'proximity': proximity,
            'zone_prior': 1.0 if zone.label in spec.expected_zones else 0.0,
            'format': 1.0 if spec.value_kind != 'text' else 0.6,
            'consensus': consensus_signal(used),
        }
        notes = {
            'lexicon': f"label '{hit.text}'",
            'proximity': where,
            'zone_prior': f"{zone.label.value} zone",
            'format': f"parsed as {spec.field_type.value}",
            'consensus': f"{len(used)} token(s)",
        }
        return self._draft(spec.name, raw_text, value, used, zone, signals, notes)

    # ------------------------------------------------------------------
    # Zone prior candidates (no label)
    # ------------------------------------------------------------------

    def _zone_prior_drafts(self, reading: ConsensusResult, zone: Zone, drafts: Dict[str, List[_Draft]]) -> None:
        if zone.label != ZoneLabel.HEADER:
            if zone.label == ZoneLabel.TOTALS:
                self._currency_from_amounts(reading, zone, drafts)
            return

        lines = reading.lines
        if not lines:
            return

        # Vendor name: first line of the header that is not a label line
        for line in lines[:2]:
            text = line.text.strip()
            if find_labels(line.tokens) or sum(ch.isalpha() for ch in text) < 3:
                continue
            if any(ch.isdigit() for ch in text):
                continue
            signals = {
                'lexicon': 0.0,
                'proximity': 0.0,
                'zone_prior': 1.0,
                'format': 0.6,
                'consensus': consensus_signal(line.tokens),
            }
            notes = {'zone_prior': "top line of Header zone", 'format': "alphabetic name"}
            drafts['vendor_name'].append(
                self._draft('vendor_name', text, text, list(line.tokens), zone, signals, notes)
            )
            break

        # Unlabeled dates in the header compete with labeled ones
        for line in lines:
            for token in line.tokens:
                value = self.dates.parse(token.text)
                if value is None:
                    continue
                signals = {
                    'lexicon': 0.0,
                    'proximity': 0.0,
                    'zone_prior': 1.0,
                    'format': 1.0,
                    'consensus': consensus_signal([token]),
                }
                notes = {'zone_prior': "date in Header zone", 'format': "parsed as date"}
                drafts['invoice_date'].append(
                    self._draft('invoice_date', token.text, value, [token], zone, signals, notes)
                )

    def _currency_from_amounts(self, reading: ConsensusResult, zone: Zone,
                               drafts: Dict[str, List[_Draft]]) -> None:
        for token in reading.tokens:
            code = detect_currency(token.text)
            if code is None or self.amounts.parse(token.text) is None:
                continue
            signals = {
                'lexicon': 0.0,
                'proximity': 0.0,
                'zone_prior': 1.0,
                'format': 1.0,
                'consensus': consensus_signal([token]),
            }
            notes = {'format': f"currency symbol in '{token.text}'", 'zone_prior': "Totals zone"}
            drafts['currency'].append(self._draft('currency', token.text, code, [token], zone, signals, notes))
            return

    # ------------------------------------------------------------------
    # Calibration and ranking
    # ------------------------------------------------------------------

    def _draft(self, field_name: str, raw_text: str, value: Any, tokens: List, zone: Zone,
               signals: Dict[str, float], notes: Dict[str, str]) -> _Draft:
        self._order += 1
        return _Draft(
            field_name=field_name,
            raw_text=raw_text,
            value=value,
            tokens=tokens,
            zone=zone,
            signals=signals,
            notes=notes,
            alternatives=token_alternatives(tokens, self.max_alternatives),
            order=self._order,
        )

    def _finalize(self, draft: _Draft, vendor_id: Optional[str]) -> FieldCandidate:
        vector = signal_vector(draft.signals)
        bbox = union_box(t.bbox for t in draft.tokens) if draft.tokens else None
        return FieldCandidate.create(
            field_name=draft.field_name,
            field_type=FIELD_SPECS[draft.field_name].field_type,
            raw_text=draft.raw_text,
            value=draft.value,
            confidence=self.calibrator.calibrate(vendor_id, vector),
            evidence=build_evidence(draft.signals, self.calibrator.weights, draft.zone.zone_id, draft.notes),
            alternatives=draft.alternatives,
            generation_id=draft.generation_id,
            zone_id=draft.zone.zone_id,
            page_index=draft.zone.page_index,
            bbox=bbox,
            signals=vector,
        )

    def rank(self, candidates: List[FieldCandidate]) -> Tuple[List[FieldCandidate], bool]:
        """
        Order candidates best first and apply the tie-break policy.

        Returns:
            (ranked candidates, ambiguous flag)
        """
        if not candidates:
            return [], False

        ranked = sorted(candidates, key=lambda c: -c.confidence)
        top = ranked[0]
        tied = [c for c in ranked if top.confidence - c.confidence <= self.tie_epsilon]
        if len({_value_key(c.value) for c in tied}) <= 1:
            return ranked, False

        # 1. prefer the candidate found in its expected zone
        in_zone = [c for c in tied if _in_expected_zone(c)]
        if in_zone and len(in_zone) < len(tied):
            tied = in_zone

        # 2. prefer fewer ambiguous characters among evidence-equivalent candidates
        if len({_value_key(c.value) for c in tied}) > 1 and len({c.evidence_kinds for c in tied}) == 1:
            fewest = min(count_ambiguous_chars(c.raw_text) for c in tied)
            tied = [c for c in tied if count_ambiguous_chars(c.raw_text) == fewest]

        winner = tied[0]
        ambiguous = len({_value_key(c.value) for c in tied}) > 1
        ordered = [winner] + [c for c in ranked if c is not winner]
        if ambiguous:
            logger.debug(f"Ambiguous {winner.field_name}: {[c.raw_text for c in tied]}")
        return ordered, ambiguous


def _in_expected_zone(candidate: FieldCandidate) -> bool:
    # zone_prior is the third signal
    return len(candidate.signals) > 2 and candidate.signals[2] > 0


def _value_key(value: Any) -> str:
    return str(value).strip().upper()


def _dedupe(candidates: List[FieldCandidate]) -> List[FieldCandidate]:
    """Keep the strongest candidate per (value, position)."""
    best: Dict[Tuple, FieldCandidate] = {}
    order: List[Tuple] = []
    for candidate in candidates:
        key = (_value_key(candidate.value), candidate.page_index, candidate.bbox)
        if key not in best:
            order.append(key)
            best[key] = candidate
        elif candidate.confidence > best[key].confidence:
            best[key] = candidate
    return [best[key] for key in order]

