"""
Document Data Classes.

Classes:
    DocumentStatus: Processing status of an upload
    Document: One uploaded artifact
    TextLayerWord: Word from an embedded PDF text layer
    NormalizedPage: One rasterized, orientation-corrected page
    NormalizedDocument: Output of the Document Normalizer
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image

from billflow.utils.helpers import generate_id, utc_now, to_iso, from_iso


class DocumentStatus(str, Enum):
    UPLOADED = "Uploaded"
    NORMALIZING = "Normalizing"
    OCR_IN_PROGRESS = "OcrInProgress"
    EXTRACTED = "Extracted"
    FAILED = "Failed"


# Allowed status changes. Failed documents re-enter Normalizing on retry.
STATUS_TRANSITIONS = {
    DocumentStatus.UPLOADED: {DocumentStatus.NORMALIZING, DocumentStatus.FAILED},
    DocumentStatus.NORMALIZING: {DocumentStatus.OCR_IN_PROGRESS, DocumentStatus.FAILED},
    DocumentStatus.OCR_IN_PROGRESS: {DocumentStatus.EXTRACTED, DocumentStatus.FAILED},
    DocumentStatus.FAILED: {DocumentStatus.NORMALIZING},
    DocumentStatus.EXTRACTED: set(),
}


@dataclass
class Document:
    """
    One uploaded artifact.

    Attributes:
        document_id: Unique identifier
        store_id: Tenant/store scope supplied by the host
        mime_type: Declared MIME type
        original_path: Where the original bytes are stored
        vendor_hint: Vendor id supplied at upload, if any
        status: Processing status
        page_count: Number of normalized pages
        attempts: Processing attempts so far
        last_error: Code and message of the last failure
    """
    document_id: str
    store_id: str
    mime_type: str
    original_path: str = ""
    vendor_hint: Optional[str] = None
    status: DocumentStatus = DocumentStatus.UPLOADED
    page_count: int = 0
    attempts: int = 0
    last_error: Optional[Dict[str, Any]] = None
    uploaded_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(cls, store_id: str, mime_type: str, vendor_hint: Optional[str] = None) -> 'Document':
        return cls(
            document_id=generate_id("doc"),
            store_id=store_id,
            mime_type=mime_type,
            vendor_hint=vendor_hint,
        )

    def can_transition(self, target: DocumentStatus) -> bool:
        return target in STATUS_TRANSITIONS[self.status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_id': self.document_id,
            'store_id': self.store_id,
            'mime_type': self.mime_type,
            'original_path': self.original_path,
            'vendor_hint': self.vendor_hint,
            'status': self.status.value,
            'page_count': self.page_count,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'uploaded_at': to_iso(self.uploaded_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Document':
        return cls(
            document_id=data['document_id'],
            store_id=data['store_id'],
            mime_type=data['mime_type'],
            original_path=data.get('original_path', ''),
            vendor_hint=data.get('vendor_hint'),
            status=DocumentStatus(data.get('status', DocumentStatus.UPLOADED.value)),
            page_count=int(data.get('page_count', 0)),
            attempts=int(data.get('attempts', 0)),
            last_error=data.get('last_error'),
            uploaded_at=from_iso(data.get('uploaded_at')) or utc_now(),
        )


@dataclass(frozen=True)
class TextLayerWord:
    """A word from an embedded PDF text layer, in page pixel coordinates."""
    text: str
    bbox: Tuple[int, int, int, int]

    def to_dict(self) -> Dict[str, Any]:
        return {'text': self.text, 'bbox': list(self.bbox)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TextLayerWord':
        return cls(text=data['text'], bbox=tuple(int(v) for v in data['bbox']))


@dataclass
class NormalizedPage:
    """
    One page ready for zone detection and OCR.

    Attributes:
        page_index: Zero-based page number
        image: Orientation-corrected RGB image
        rotation: Degrees the source was rotated by (0/90/180/270)
        text_layer: Embedded text words, empty for scans
        image_path: Where the page image was persisted
    """
    page_index: int
    image: Image.Image
    rotation: int = 0
    text_layer: List[TextLayerWord] = field(default_factory=list)
    image_path: Optional[str] = None

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def has_text_layer(self) -> bool:
        return bool(self.text_layer)


@dataclass
class NormalizedDocument:
    document_id: str
    pages: List[NormalizedPage]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def page_count(self) -> int:
        return len(self.pages)

    def page(self, page_index: int) -> NormalizedPage:
        for page in self.pages:
            if page.page_index == page_index:
                return page
        raise IndexError(f"Page {page_index} not found in {self.document_id}")
