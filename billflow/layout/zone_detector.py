"""
Region/Zone Detector.

Segments a normalized page image into Header, LineItemTable, Totals and
Footer zones with geometric heuristics instead of vendor templates:

    1. Ink projection per row gives text bands separated by whitespace gaps
    2. Rows that are mostly ink are ruled lines; two or more rules delimit
       the line-item table
    3. Relative position labels the remaining bands (top band is the
       header, bottom band the footer, right-aligned blocks below the table
       are the totals box)

A page without detectable structure yields a single full-page
LineItemTable zone, so every page produces at least one zone.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image

from config import get_config
from billflow.utils.logger import get_logger
from .geometry import BoundingBox
from .zones import Zone, ZoneLabel

logger = get_logger(__name__)


@dataclass
class TextBlock:
    """A horizontal band of ink between two whitespace gaps (pixels)."""
    y1: int
    y2: int
    x1: int
    x2: int
    centroid_x: float

    @property
    def center_y(self) -> float:
        return (self.y1 + self.y2) / 2.0


class ZoneDetector:
    """
    Heuristic zone detector.

    Example:
        >>> detector = ZoneDetector()
        >>> zones = detector.detect(page_image, "doc_1", page_index=0)
        >>> [z.label.value for z in zones]
        ['Header', 'LineItemTable', 'Totals', 'Footer']
    """

    def __init__(
        self,
        ink_threshold: Optional[int] = None,
        min_gap_fraction: Optional[float] = None,
        ruled_line_fraction: Optional[float] = None,
        header_band: Optional[float] = None,
        footer_band: Optional[float] = None,
        min_band_density: Optional[float] = None
    ) -> None:
        self.ink_threshold = ink_threshold or get_config("layout.ink_threshold", 160)
        self.min_gap_fraction = min_gap_fraction or get_config("layout.min_gap_fraction", 0.015)
        self.ruled_line_fraction = ruled_line_fraction or get_config("layout.ruled_line_fraction", 0.6)
        self.header_band = header_band or get_config("layout.header_band", 0.22)
        self.footer_band = footer_band or get_config("layout.footer_band", 0.12)
        self.min_band_density = min_band_density or get_config("layout.min_band_density", 0.002)

    def detect(self, image: Image.Image, document_id: str, page_index: int) -> List[Zone]:
        """
        Detect zones on one page.

        Args:
            image: Normalized page image.
            document_id: Owning document id.
            page_index: Zero-based page number.

        Returns:
            Zones ordered top to bottom. Never empty.
        """
        gray = np.asarray(image.convert('L'), dtype=np.uint8)
        height, width = gray.shape
        ink = gray < self.ink_threshold

        row_fraction = ink.mean(axis=1)
        rule_rows = row_fraction >= self.ruled_line_fraction
        content_rows = (row_fraction > self.min_band_density) & ~rule_rows

        min_gap = max(1, int(height * self.min_gap_fraction))
        blocks = self._find_blocks(ink, content_rows, min_gap)
        rules = self._runs(rule_rows)

        if len(blocks) < 2:
            logger.debug(f"Page {page_index}: no layout structure, using full-page zone")
            return [self._fallback(document_id, page_index)]

        bands = self._classify(blocks, rules, width, height)
        zones = self._build_zones(bands, document_id, page_index, width, height)

        if not zones:
            return [self._fallback(document_id, page_index)]

        logger.debug(
            f"Page {page_index}: {len(blocks)} text blocks, {len(rules)} ruled lines -> "
            f"{', '.join(z.label.value for z in zones)}"
        )
        return zones

    # ------------------------------------------------------------------
    # Projection analysis
    # ------------------------------------------------------------------

    @staticmethod
    def _runs(mask: np.ndarray) -> List[Tuple[int, int]]:
        """Half-open (start, end) index ranges where mask is True."""
        padded = np.concatenate(([False], mask, [False])).astype(np.int8)
        diff = np.diff(padded)
        starts = np.flatnonzero(diff == 1)
        ends = np.flatnonzero(diff == -1)
        return list(zip(starts.tolist(), ends.tolist()))

    def _find_blocks(self, ink: np.ndarray, content_rows: np.ndarray,
                     min_gap: int) -> List[TextBlock]:
        runs = self._runs(content_rows)
        if not runs:
            return []

        # Merge runs separated by gaps narrower than a paragraph break
        merged = [list(runs[0])]
        for start, end in runs[1:]:
            if start - merged[-1][1] < min_gap:
                merged[-1][1] = end
            else:
                merged.append([start, end])

        blocks = []
        for y1, y2 in merged:
            column_ink = ink[y1:y2].sum(axis=0)
            xs = np.flatnonzero(column_ink)
            if xs.size == 0:
                continue
            centroid = float((column_ink * np.arange(column_ink.size)).sum() / column_ink.sum())
            blocks.append(TextBlock(y1=y1, y2=y2, x1=int(xs[0]), x2=int(xs[-1]) + 1,
                                    centroid_x=centroid))
        return blocks

    # ------------------------------------------------------------------
    # Labeling
    # ------------------------------------------------------------------

    def _classify(self, blocks: List[TextBlock], rules: List[Tuple[int, int]],
                  width: int, height: int) -> List[Tuple[ZoneLabel, List[TextBlock]]]:
        header_limit = self.header_band * height
        footer_limit = (1.0 - self.footer_band) * height

        table_range = None
        if len(rules) >= 2:
            table_range = (rules[0][0], rules[-1][1])

        labels = {}
        for i, block in enumerate(blocks):
            if table_range and table_range[0] <= block.center_y <= table_range[1]:
                labels[i] = ZoneLabel.LINE_ITEM_TABLE
            elif block.y2 <= header_limit:
                labels[i] = ZoneLabel.HEADER
            elif block.y1 >= footer_limit:
                labels[i] = ZoneLabel.FOOTER
            elif table_range and block.center_y < table_range[0]:
                labels[i] = ZoneLabel.HEADER
            else:
                labels[i] = None

        middle = [i for i, label in labels.items() if label is None]

        # Right-aligned blocks at the bottom of the body form the totals box
        for i in reversed(middle):
            right_aligned = blocks[i].centroid_x > width * 0.5
            below_table = table_range is not None and blocks[i].y1 >= table_range[1]
            if right_aligned and (below_table or i != middle[0]):
                labels[i] = ZoneLabel.TOTALS
            else:
                break

        for i in middle:
            if labels[i] is None:
                below_table = table_range is not None and blocks[i].y1 >= table_range[1]
                labels[i] = ZoneLabel.FOOTER if below_table else ZoneLabel.LINE_ITEM_TABLE

        # Header printed below the top band: promote the first body block
        in_table = table_range is not None and table_range[0] <= blocks[0].center_y <= table_range[1]
        if (ZoneLabel.HEADER not in labels.values() and len(blocks) > 2
                and not in_table and labels[0] != ZoneLabel.TOTALS
                and blocks[0].y1 < height * 0.5):
            labels[0] = ZoneLabel.HEADER

        groups = {}
        for i, label in labels.items():
            groups.setdefault(label, []).append(blocks[i])
        if table_range:
            groups.setdefault(ZoneLabel.LINE_ITEM_TABLE, []).append(TextBlock(
                y1=table_range[0], y2=table_range[1], x1=0, x2=width, centroid_x=width / 2.0
            ))

        order = (ZoneLabel.HEADER, ZoneLabel.LINE_ITEM_TABLE, ZoneLabel.TOTALS, ZoneLabel.FOOTER)
        return [(label, groups[label]) for label in order if groups.get(label)]

    def _build_zones(self, bands, document_id: str, page_index: int,
                     width: int, height: int) -> List[Zone]:
        pad = max(1, int(height * 0.005))
        boxes = []
        for label, members in bands:
            y1 = max(0, min(b.y1 for b in members) - pad)
            y2 = min(height, max(b.y2 for b in members) + pad)
            if label == ZoneLabel.TOTALS:
                x1 = max(0, min(b.x1 for b in members) - pad)
            else:
                x1 = 0
            boxes.append([label, x1, y1, width, y2])

        # Content zones must not overlap; clip later bands below earlier ones
        boxes.sort(key=lambda b: b[2])
        for prev, cur in zip(boxes, boxes[1:]):
            if cur[2] < prev[4]:
                cur[2] = prev[4]

        confidence = {
            ZoneLabel.HEADER: 0.85,
            ZoneLabel.LINE_ITEM_TABLE: 0.8,
            ZoneLabel.TOTALS: 0.75,
            ZoneLabel.FOOTER: 0.65,
        }
        zones = []
        for label, x1, y1, x2, y2 in boxes:
            if y2 - y1 <= 0:
                continue
            bbox = BoundingBox.from_pixels((x1, y1, x2, y2), width, height)
            zones.append(Zone.create(document_id, page_index, label, bbox,
                                     confidence=confidence[label]))
        return zones

    @staticmethod
    def _fallback(document_id: str, page_index: int) -> Zone:
        return Zone.create(
            document_id, page_index, ZoneLabel.LINE_ITEM_TABLE, BoundingBox.full_page(),
            source="fallback", confidence=0.3
        )
