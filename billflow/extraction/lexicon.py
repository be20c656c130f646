"""
Field Lexicon.

Label patterns for every header field, the zones each field is expected
in, and label detection over one OCR line. Overlapping label matches are
resolved longest first, so "Sub Total" never also counts as "Total" and
"Invoice Date" never also counts as a bare "Date".
"""

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from billflow.layout.geometry import PixelBox, union_box
from billflow.layout.zones import ZoneLabel
from .candidates import FieldType


@dataclass(frozen=True)
class LabelPattern:
    pattern: str
    strength: float


@dataclass(frozen=True)
class FieldSpec:
    """
    Attributes:
        name: Field name on the bill
        field_type: Declared value type
        value_kind: How the value is cut from the text after the label
            ("identifier", "date", "amount", "text" or "currency")
        labels: Label patterns with their lexicon strength
        expected_zones: Zones where the field is normally printed
    """
    name: str
    field_type: FieldType
    value_kind: str
    labels: Tuple[LabelPattern, ...]
    expected_zones: FrozenSet[ZoneLabel]


def _labels(*pairs) -> Tuple[LabelPattern, ...]:
    return tuple(LabelPattern(p, s) for p, s in pairs)


FIELD_SPECS: Dict[str, FieldSpec] = {
    'vendor_name': FieldSpec(
        'vendor_name', FieldType.STRING, 'text',
        _labels((r'vendor(?:\s+name)?', 0.9), (r'sold\s+by', 0.9), (r'supplier', 0.9),
                (r'remit\s+to', 0.8), (r'from', 0.6)),
        frozenset({ZoneLabel.HEADER}),
    ),
    'invoice_number': FieldSpec(
        'invoice_number', FieldType.STRING, 'identifier',
        _labels((r'invoice\s*(?:#|no\.?|num(?:ber)?\.?)', 1.0), (r'inv\.?\s*(?:#|no\.?)', 0.85),
                (r'bill\s*(?:#|no\.?|number)', 0.8)),
        frozenset({ZoneLabel.HEADER}),
    ),
    'invoice_date': FieldSpec(
        'invoice_date', FieldType.DATE, 'date',
        _labels((r'invoice\s+date', 1.0), (r'date\s+of\s+invoice', 1.0), (r'inv\.?\s+date', 0.9),
                (r'bill\s+date', 0.85), (r'dated', 0.6), (r'date', 0.6)),
        frozenset({ZoneLabel.HEADER}),
    ),
    'po_number': FieldSpec(
        'po_number', FieldType.STRING, 'identifier',
        _labels((r'p\.?\s?o\.?\s*(?:#|no\.?|number)', 1.0),
                (r'purchase\s+order(?:\s*(?:#|no\.?|number))?', 1.0), (r'po', 0.7)),
        frozenset({ZoneLabel.HEADER}),
    ),
    'currency': FieldSpec(
        'currency', FieldType.STRING, 'currency',
        _labels((r'currency', 1.0),),
        frozenset({ZoneLabel.HEADER, ZoneLabel.TOTALS}),
    ),
    'subtotal': FieldSpec(
        'subtotal', FieldType.CURRENCY, 'amount',
        _labels((r'sub\s*-?\s*total', 1.0), (r'net\s+amount', 0.8), (r'merchandise\s+total', 0.8)),
        frozenset({ZoneLabel.TOTALS}),
    ),
    'tax': FieldSpec(
        'tax', FieldType.CURRENCY, 'amount',
        _labels((r'sales\s+tax', 1.0), (r'tax', 0.9), (r'vat', 0.9), (r'gst', 0.9), (r'hst', 0.9)),
        frozenset({ZoneLabel.TOTALS}),
    ),
    'total': FieldSpec(
        'total', FieldType.CURRENCY, 'amount',
        _labels((r'grand\s+total', 1.0), (r'invoice\s+total', 1.0), (r'total\s+due', 1.0),
                (r'amount\s+due', 1.0), (r'balance\s+due', 0.95), (r'total', 0.85)),
        frozenset({ZoneLabel.TOTALS}),
    ),
}

HEADER_FIELDS = list(FIELD_SPECS)

# Phrases that look like labels of other fields but belong to nothing we extract
BLOCKING_LABELS = (
    r'due\s+date', r'ship\s+date', r'order\s+date', r'tax\s+id', r'vat\s+(?:no\.?|number|reg\.?)',
    r'bill\s+to', r'ship\s+to', r'sold\s+to', r'po\s+box', r'page',
)

# Column header keywords for the line-item table
COLUMN_KEYWORDS = {
    'sku': ('sku', 'item', 'item #', 'part', 'part #', 'code', 'product code', 'item no'),
    'description': ('description', 'desc', 'product', 'details'),
    'quantity': ('qty', 'quantity', 'units', 'qty.'),
    'unit_price': ('price', 'unit price', 'rate', 'unit cost', 'each'),
    'line_total': ('amount', 'total', 'ext', 'extended', 'line total', 'ext. price'),
}


def _compile(pattern: str) -> re.Pattern:
    return re.compile(rf'(?<![a-z0-9]){pattern}(?![a-z])')


_COMPILED: List[Tuple[Optional[str], float, re.Pattern]] = [
    (spec.name, label.strength, _compile(label.pattern))
    for spec in FIELD_SPECS.values()
    for label in spec.labels
] + [(None, 0.0, _compile(p)) for p in BLOCKING_LABELS]


@dataclass
class LabelHit:
    """
    A label found on a line.

    Attributes:
        field_name: Field the label introduces, None for a blocking label
        strength: Lexicon strength of the matched pattern
        text: Matched label text
        first_token: Index of the first label token on the line
        last_token: Index of the last label token on the line
        bbox: Pixel box of the label tokens
        remainder: Text glued to the last label token after the label
            (``"Date:2026-01-15"`` leaves ``"2026-01-15"``)
    """
    field_name: Optional[str]
    strength: float
    text: str
    first_token: int
    last_token: int
    bbox: PixelBox
    remainder: str = ""


def find_labels(tokens: Sequence) -> List[LabelHit]:
    """
    Detect field labels on one line of tokens.

    Args:
        tokens: Tokens of one line, left to right (anything with ``text``
            and ``bbox``).

    Returns:
        Non-overlapping hits ordered left to right.
    """
    if not tokens:
        return []

    starts, ends, parts = [], [], []
    position = 0
    for token in tokens:
        text = token.text.lower()
        starts.append(position)
        ends.append(position + len(text))
        parts.append(text)
        position += len(text) + 1
    line_text = ' '.join(parts)

    matches = []
    for field_name, strength, regex in _COMPILED:
        for match in regex.finditer(line_text):
            matches.append((match.start(), match.end(), field_name, strength))

    # Longest first, then leftmost; keep only non-overlapping spans
    matches.sort(key=lambda m: (-(m[1] - m[0]), m[0]))
    taken: List[Tuple[int, int]] = []
    hits: List[LabelHit] = []
    for start, end, field_name, strength in matches:
        if any(start < t_end and t_start < end for t_start, t_end in taken):
            continue

        first = next(i for i in range(len(tokens)) if ends[i] > start)
        if starts[first] != start:
            continue
        last = max(i for i in range(len(tokens)) if starts[i] < end)
        remainder = tokens[last].text[end - starts[last]:]
        stripped = remainder.strip(' :#.')
        if stripped and remainder[:1] not in (':', '#'):
            # Label text glued to something else, e.g. "PO-778"
            continue

        taken.append((start, end))
        hits.append(LabelHit(
            field_name=field_name,
            strength=strength,
            text=line_text[start:end],
            first_token=first,
            last_token=last,
            bbox=union_box(t.bbox for t in tokens[first:last + 1]),
            remainder=stripped,
        ))

    hits.sort(key=lambda h: h.first_token)
    return hits


def column_for_header(text: str) -> Optional[str]:
    """Line-item attribute a table column header names, if any."""
    cleaned = text.lower().strip(' :#')
    for attr, keywords in COLUMN_KEYWORDS.items():
        if cleaned in keywords:
            return attr
    return None
