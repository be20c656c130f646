"""
Input Handler Module for BillFlow.

Document intake and normalization:
    - MIME type checks (PDF, PNG, JPEG, TIFF)
    - PDF rasterization and text layer extraction
    - Image decoding, orientation correction and clean-up
    - Page persistence keyed to the document id
"""

from .document import Document, DocumentStatus, NormalizedDocument, NormalizedPage, TextLayerWord
from .handler import DocumentNormalizer
from .pdf_processor import PDFProcessor
from .image_processor import ImageProcessor

__all__ = [
    'Document',
    'DocumentStatus',
    'NormalizedDocument',
    'NormalizedPage',
    'TextLayerWord',
    'DocumentNormalizer',
    'PDFProcessor',
    'ImageProcessor',
]
