"""
Line Item Segmentation.

Rows of the LineItemTable zone are found by grouping consensus tokens on
their vertical centers. Inside a row the trailing numeric tokens are read
right to left as line total, unit price and quantity; a leading token
with a digit is the vendor SKU and the rest is the description. A row
without numbers directly below an item continues its description.
"""

import re
from typing import Dict, List, Optional, Sequence, Tuple

from billflow.layout.geometry import union_box
from billflow.layout.zones import Zone, ZoneLabel
from billflow.ocr_engine.consensus import ConsensusResult
from billflow.utils.logger import get_logger
from .calibrator import ConfidenceCalibrator
from .candidates import (
    ExtractedLine, FieldCandidate, FieldType,
    build_evidence, consensus_signal, signal_vector, token_alternatives,
)
from .lexicon import column_for_header
from .normalizers import AmountNormalizer, parse_quantity

logger = get_logger(__name__)

LINE_FIELD_TYPES = {
    'sku': FieldType.STRING,
    'description': FieldType.STRING,
    'quantity': FieldType.NUMBER,
    'unit_price': FieldType.CURRENCY,
    'line_total': FieldType.CURRENCY,
}

# Header tokens that may be split over two words ("Unit Price", "Line Total")
_TWO_WORD_HEADERS = {'unit price', 'line total', 'item #', 'part #', 'item no', 'unit cost', 'ext. price',
                     'product code'}


class LineItemExtractor:
    """
    Extracts line-item rows from a table zone reading.

    Example:
        >>> extractor = LineItemExtractor(calibrator)
        >>> rows = extractor.extract(reading, zone, vendor_id="acme")
        >>> rows[0].value('quantity')
        2.0
    """

    def __init__(self, calibrator: ConfidenceCalibrator, amount_normalizer: Optional[AmountNormalizer] = None) -> None:
        self.calibrator = calibrator
        self.amounts = amount_normalizer or AmountNormalizer()

    def extract(self, reading: ConsensusResult, zone: Zone, vendor_id: Optional[str] = None,
                start_position: int = 0, generation_id: Optional[str] = None) -> List[ExtractedLine]:
        generation_id = generation_id or reading.generation_id
        lines = reading.lines
        header_index, columns = self._find_header(lines)
        body = lines[header_index + 1:] if header_index is not None else lines

        rows: List[Tuple[List, Dict[str, List]]] = []
        last_bottom = None
        for line in body:
            tokens = line.tokens
            numerics = self._trailing_numerics(tokens)
            if len(numerics) >= 2:
                rows.append((list(tokens), self._assign(tokens, numerics)))
                last_bottom = line.bbox[3]
                continue

            # Continuation of the previous description
            if rows and not numerics and last_bottom is not None and line.bbox[1] - last_bottom < line.bbox[3] - line.bbox[1]:
                rows[-1][1].setdefault('description', []).extend(tokens)
                rows[-1][0].extend(tokens)
                last_bottom = line.bbox[3]

        extracted = []
        for offset, (tokens, cells) in enumerate(rows):
            line = ExtractedLine(
                position=start_position + offset,
                row_bbox=union_box(t.bbox for t in tokens),
                page_index=zone.page_index,
                zone_id=zone.zone_id,
            )
            for attr, cell_tokens in cells.items():
                candidate = self._candidate(attr, cell_tokens, columns, zone, vendor_id, generation_id)
                if candidate is not None:
                    line.cells[attr] = candidate
            extracted.append(line)

        logger.debug(f"Zone {zone.zone_id}: {len(extracted)} line item rows")
        return extracted

    def _find_header(self, lines) -> Tuple[Optional[int], Dict[str, Tuple[int, int]]]:
        """Index of the column header row and the x-span of each named column."""
        for index, line in enumerate(lines):
            columns: Dict[str, Tuple[int, int]] = {}
            tokens = line.tokens
            i = 0
            while i < len(tokens):
                if i + 1 < len(tokens):
                    pair = f"{tokens[i].text} {tokens[i + 1].text}".lower().strip(' :')
                    if pair in _TWO_WORD_HEADERS and column_for_header(pair):
                        columns.setdefault(column_for_header(pair), (tokens[i].x1, tokens[i + 1].x2))
                        i += 2
                        continue
                attr = column_for_header(tokens[i].text)
                if attr:
                    columns.setdefault(attr, (tokens[i].x1, tokens[i].x2))
                i += 1
            if len(columns) >= 2:
                return index, columns
        return None, {}

    def _trailing_numerics(self, tokens) -> List:
        numerics = []
        for token in reversed(tokens):
            if len(numerics) == 3:
                break
            if self.amounts.is_amount_shaped(token.text) or parse_quantity(token.text) is not None:
                numerics.append(token)
            else:
                break
        numerics.reverse()
        return numerics

    def _assign(self, tokens, numerics) -> Dict[str, List]:
        cells: Dict[str, List] = {}
        if len(numerics) == 3:
            cells['quantity'], cells['unit_price'], cells['line_total'] = [numerics[0]], [numerics[1]], [numerics[2]]
        elif self.amounts.is_amount_shaped(numerics[0].text):
            cells['unit_price'], cells['line_total'] = [numerics[0]], [numerics[1]]
        else:
            cells['quantity'], cells['line_total'] = [numerics[0]], [numerics[1]]

        leading = list(tokens[:len(tokens) - len(numerics)])
        if leading and re.search(r'\d', leading[0].text) and len(leading[0].text) >= 3:
            cells['sku'] = [leading.pop(0)]
        if leading:
            cells['description'] = leading
        return cells

    def _parse(self, attr: str, text: str):
        if attr == 'quantity':
            return parse_quantity(text)
        if attr in ('unit_price', 'line_total'):
            return self.amounts.parse(text)
        return text.strip() or None

    def _candidate(self, attr: str, tokens: Sequence, columns: Dict[str, Tuple[int, int]],
                   zone: Zone, vendor_id: Optional[str], generation_id: Optional[str]) -> Optional[FieldCandidate]:
        raw_text = ' '.join(t.text for t in tokens)
        value = self._parse(attr, raw_text)
        if value is None:
            return None

        bbox = union_box(t.bbox for t in tokens)
        center_x = (bbox[0] + bbox[2]) / 2.0
        notes = {'zone_prior': f"row in {zone.label.value}"}
        signals = {
            'lexicon': 0.0,
            'proximity': 0.0,
            'zone_prior': 1.0 if zone.label == ZoneLabel.LINE_ITEM_TABLE else 0.0,
            'format': 1.0 if attr != 'description' else 0.6,
            'consensus': consensus_signal(tokens),
        }
        if attr in columns:
            x1, x2 = columns[attr]
            signals['lexicon'] = 1.0
            notes['lexicon'] = f"column header for {attr}"
            overlap = min(bbox[2], x2) - max(bbox[0], x1)
            signals['proximity'] = 1.0 if overlap > 0 or x1 <= center_x <= x2 else 0.5
            notes['proximity'] = "aligned with column" if signals['proximity'] == 1.0 else "off column"
        notes['format'] = f"parsed {attr}"

        vector = signal_vector(signals)
        weights = self.calibrator.weights
        return FieldCandidate.create(
            field_name=f"line.{attr}",
            field_type=LINE_FIELD_TYPES[attr],
            raw_text=raw_text,
            value=value,
            confidence=self.calibrator.calibrate(vendor_id, vector),
            evidence=build_evidence(signals, weights, zone.zone_id, notes),
            alternatives=token_alternatives(tokens),
            generation_id=generation_id,
            zone_id=zone.zone_id,
            page_index=zone.page_index,
            bbox=bbox,
            signals=vector,
        )
