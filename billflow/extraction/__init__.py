"""
Extraction Module for BillFlow.

Field candidates from zone text:
    - Label lexicon and proximity search
    - Typed value parsing (dates, amounts, identifiers)
    - Calibrated confidence per candidate
    - Line-item row segmentation
"""

from .candidates import (
    CandidateSet, Evidence, EvidenceKind, ExtractedLine, FieldCandidate, FieldSlot, FieldType, SIGNAL_NAMES,
)
from .calibrator import ConfidenceCalibrator
from .generator import CandidateGenerator
from .line_items import LineItemExtractor
from .normalizers import AmountNormalizer, DateNormalizer

__all__ = [
    'CandidateSet',
    'Evidence',
    'EvidenceKind',
    'ExtractedLine',
    'FieldCandidate',
    'FieldSlot',
    'FieldType',
    'SIGNAL_NAMES',
    'ConfidenceCalibrator',
    'CandidateGenerator',
    'LineItemExtractor',
    'AmountNormalizer',
    'DateNormalizer',
]
