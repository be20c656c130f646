"""
OCR Engine Module for BillFlow.

Multi-pass OCR over page zones:
    - Tesseract backend behind a small ``recognize(region, profile)`` contract
    - Fast / Balanced / HighAccuracy profiles with accuracy weights
    - Token-level consensus across passes
    - Thread pool fan-out, retry with backoff and timed re-OCR
"""

from .ocr_result import ImageRegion, OCRToken, OCRLine, OCRResult, group_into_lines
from .profiles import OcrProfile, ProfileSettings, profile_settings, default_profiles
from .consensus import ConsensusToken, ConsensusResult, TokenVariant, reconcile
from .tesseract_backend import TesseractBackend
from .orchestrator import MultiPassOrchestrator

__all__ = [
    'ImageRegion',
    'OCRToken',
    'OCRLine',
    'OCRResult',
    'group_into_lines',
    'OcrProfile',
    'ProfileSettings',
    'profile_settings',
    'default_profiles',
    'ConsensusToken',
    'ConsensusResult',
    'TokenVariant',
    'reconcile',
    'TesseractBackend',
    'MultiPassOrchestrator',
]
