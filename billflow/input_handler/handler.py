"""
Document Normalizer.

Entry point of the pipeline. Takes raw bytes and a declared MIME type,
produces orientation-corrected page images (plus the PDF text layer when
one exists) and persists the pages keyed to the document id.

This is the only component that moves a document through
Uploaded -> Normalizing -> (OcrInProgress | Failed).
"""

from pathlib import Path
from typing import List, Optional

from config import get_config
from billflow.utils.logger import get_logger
from billflow.utils.helpers import ensure_directory
from billflow.utils.exceptions import (
    DocumentError,
    EmptyDocumentError,
    UnsupportedFormatError,
)
from .document import Document, DocumentStatus, NormalizedDocument, NormalizedPage
from .image_processor import ImageProcessor
from .pdf_processor import PDFProcessor

logger = get_logger(__name__)

PDF_MIME = "application/pdf"
IMAGE_MIMES = {"image/png", "image/jpeg", "image/jpg", "image/tiff", "image/tif"}


class DocumentNormalizer:
    """
    Normalizes uploaded documents into page images.

    Example:
        >>> normalizer = DocumentNormalizer(repository)
        >>> normalized = normalizer.normalize(document, content)
        >>> normalized.page_count
        2
    """

    def __init__(
        self,
        repository,
        pdf_processor: Optional[PDFProcessor] = None,
        image_processor: Optional[ImageProcessor] = None,
        pages_dir: Optional[str] = None
    ) -> None:
        self.repository = repository
        self.pdf_processor = pdf_processor or PDFProcessor()
        self.image_processor = image_processor or ImageProcessor()
        self.pages_dir = Path(pages_dir or get_config("paths.pages_dir", "data/pages"))
        self.supported_types = get_config(
            "input.supported_mime_types",
            [PDF_MIME, "image/png", "image/jpeg", "image/tiff"]
        )

    def check_format(self, mime_type: str) -> str:
        """
        Validate and canonicalize a declared MIME type.

        Raises:
            UnsupportedFormatError: If the type is not PDF/PNG/JPEG/TIFF.
        """
        mime = (mime_type or "").split(';')[0].strip().lower()
        if mime == "image/jpg":
            mime = "image/jpeg"
        elif mime == "image/tif":
            mime = "image/tiff"

        if mime not in self.supported_types:
            raise UnsupportedFormatError(mime_type, self.supported_types)
        return mime

    def normalize(self, document: Document, content: bytes) -> NormalizedDocument:
        """
        Normalize a document and persist its pages.

        Args:
            document: Document record (status Uploaded or Failed).
            content: Original bytes.

        Returns:
            NormalizedDocument with one entry per page.

        Raises:
            UnsupportedFormatError, CorruptDocumentError, EmptyDocumentError
        """
        self._set_status(document, DocumentStatus.NORMALIZING)

        try:
            mime = self.check_format(document.mime_type)
            pages = self._build_pages(document, mime, content)
            if not pages:
                raise EmptyDocumentError(document.document_id)
            self._persist_pages(document, pages)
        except DocumentError as e:
            document.last_error = e.to_dict()
            self._set_status(document, DocumentStatus.FAILED)
            raise

        document.page_count = len(pages)
        document.last_error = None
        self._set_status(document, DocumentStatus.OCR_IN_PROGRESS)

        logger.info(f"Normalized {document.document_id}: {len(pages)} page(s)")
        return NormalizedDocument(
            document_id=document.document_id,
            pages=pages,
            metadata={'mime_type': mime},
        )

    def _build_pages(self, document: Document, mime: str, content: bytes) -> List[NormalizedPage]:
        if not content:
            return []

        if mime == PDF_MIME:
            images, text_layers, _ = self.pdf_processor.process(content, document.document_id)
        else:
            images, text_layers = self.image_processor.load(content, document.document_id), {}

        pages = []
        for index, image in enumerate(images):
            text_layer = text_layers.get(index, [])
            rotation = 0
            # Digital pages are rendered upright; word boxes must keep matching the raster
            if not text_layer:
                image, rotation = self.image_processor.correct_orientation(image)
            pages.append(NormalizedPage(
                page_index=index,
                image=image,
                rotation=rotation,
                text_layer=text_layer,
            ))
        return pages

    def _persist_pages(self, document: Document, pages: List[NormalizedPage]) -> None:
        page_dir = ensure_directory(self.pages_dir / document.document_id)
        for page in pages:
            path = page_dir / f"page_{page.page_index:03d}.png"
            page.image.save(path, format="PNG")
            page.image_path = str(path)
            self.repository.save_page(document.document_id, page)

    def _set_status(self, document: Document, status: DocumentStatus) -> None:
        if not document.can_transition(status):
            raise ValueError(
                f"Document {document.document_id} cannot move from "
                f"{document.status.value} to {status.value}"
            )
        logger.debug(f"Document {document.document_id}: {document.status.value} -> {status.value}")
        document.status = status
        self.repository.save_document(document)
