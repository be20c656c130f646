"""
Layout Module for BillFlow.

Page geometry, zone detection and mask regions:
    - BoundingBox: normalized page rectangle
    - Zone / ZoneHistory: versioned, append-only page regions
    - ZoneDetector: heuristic header/table/totals/footer segmentation
    - Mask: blanked regions applied before OCR
"""

from .geometry import BoundingBox
from .zones import Zone, ZoneLabel, ZoneHistory
from .zone_detector import ZoneDetector
from .masks import Mask, apply_masks

__all__ = ['BoundingBox', 'Zone', 'ZoneLabel', 'ZoneHistory', 'ZoneDetector', 'Mask', 'apply_masks']
