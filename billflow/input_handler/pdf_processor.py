"""
PDF Processor Module.

Rasterizes PDF pages at a fixed DPI and, for digital PDFs, extracts the
embedded text layer with word boxes so downstream OCR can treat it as a
high-confidence pass.

PyMuPDF is the primary rasterizer; pdf2image (Poppler) can be selected
with input.pdf.rasterizer. pdfplumber reads the text layer.
"""

import io
from typing import Any, Dict, List, Optional, Tuple

import fitz  # PyMuPDF
import pdfplumber
from pdf2image import convert_from_bytes
from PIL import Image

from config import get_config
from billflow.utils.logger import get_logger
from billflow.utils.exceptions import CorruptDocumentError
from .document import TextLayerWord

logger = get_logger(__name__)

# PDF user space unit is 1/72 inch
PDF_POINTS_PER_INCH = 72.0


class PDFProcessor:
    """
    Processor for PDF documents.

    Attributes:
        dpi: Resolution for rasterization
        max_pages: Maximum number of pages processed
        min_text_chars: Characters a page needs to count as digital
        rasterizer: "pymupdf" or "pdf2image"

    Example:
        >>> processor = PDFProcessor()
        >>> images, text_layers, metadata = processor.process(pdf_bytes, "doc_1")
    """

    def __init__(
        self,
        dpi: Optional[int] = None,
        max_pages: Optional[int] = None,
        min_text_chars: Optional[int] = None,
        rasterizer: Optional[str] = None
    ) -> None:
        self.dpi = dpi or get_config("input.pdf.dpi", 300)
        self.max_pages = max_pages or get_config("input.pdf.max_pages", 20)
        self.min_text_chars = min_text_chars or get_config("input.pdf.min_text_layer_chars", 50)
        self.rasterizer = rasterizer or get_config("input.pdf.rasterizer", "pymupdf")

        logger.debug(f"PDFProcessor initialized (DPI={self.dpi}, rasterizer={self.rasterizer})")

    def process(
        self, content: bytes, document_id: str
    ) -> Tuple[List[Image.Image], Dict[int, List[TextLayerWord]], Dict[str, Any]]:
        """
        Rasterize a PDF and read its text layer.

        Args:
            content: Raw PDF bytes.
            document_id: Used in error details.

        Returns:
            Tuple of (page images, text layer words per page index, metadata).

        Raises:
            CorruptDocumentError: If the PDF cannot be parsed.
        """
        if self.rasterizer == "pdf2image":
            images = self._rasterize_with_pdf2image(content, document_id)
        else:
            images = self._rasterize_with_pymupdf(content, document_id)

        text_layers = self.extract_text_layer(content, document_id)

        metadata = {
            'file_type': 'pdf',
            'dpi': self.dpi,
            'page_count': len(images),
            'digital_pages': sorted(text_layers.keys()),
        }
        logger.info(
            f"Rasterized PDF {document_id}: {len(images)} page(s), "
            f"{len(text_layers)} with text layer"
        )
        return images, text_layers, metadata

    def _rasterize_with_pymupdf(self, content: bytes, document_id: str) -> List[Image.Image]:
        images = []
        zoom = self.dpi / PDF_POINTS_PER_INCH
        matrix = fitz.Matrix(zoom, zoom)

        try:
            doc = fitz.open(stream=content, filetype="pdf")
            try:
                total = len(doc)
                if total > self.max_pages:
                    logger.warning(f"PDF has {total} pages, limiting to {self.max_pages}")
                for page_num in range(min(total, self.max_pages)):
                    pix = doc.load_page(page_num).get_pixmap(matrix=matrix)
                    image = Image.open(io.BytesIO(pix.tobytes("png")))
                    images.append(image.convert('RGB'))
            finally:
                doc.close()
        except Exception as e:
            logger.error(f"PyMuPDF rasterization failed for {document_id}: {e}")
            raise CorruptDocumentError(document_id, str(e))

        return images

    def _rasterize_with_pdf2image(self, content: bytes, document_id: str) -> List[Image.Image]:
        try:
            images = convert_from_bytes(
                content,
                dpi=self.dpi,
                first_page=1,
                last_page=self.max_pages,
                fmt='png'
            )
        except Exception as e:
            logger.error(f"pdf2image rasterization failed for {document_id}: {e}")
            raise CorruptDocumentError(document_id, str(e))

        return [img.convert('RGB') if img.mode != 'RGB' else img for img in images]

    def extract_text_layer(self, content: bytes, document_id: str) -> Dict[int, List[TextLayerWord]]:
        """
        Read embedded words per page, scaled to rasterized pixel coordinates.

        Pages with fewer than min_text_chars characters are treated as
        scanned and omitted.
        """
        scale = self.dpi / PDF_POINTS_PER_INCH
        layers: Dict[int, List[TextLayerWord]] = {}

        try:
            with pdfplumber.open(io.BytesIO(content)) as pdf:
                for page_index, page in enumerate(pdf.pages[:self.max_pages]):
                    words = page.extract_words() or []
                    char_count = sum(len(w['text']) for w in words)
                    if char_count < self.min_text_chars:
                        continue
                    layers[page_index] = [
                        TextLayerWord(
                            text=w['text'],
                            bbox=(
                                int(w['x0'] * scale),
                                int(w['top'] * scale),
                                int(w['x1'] * scale),
                                int(w['bottom'] * scale),
                            )
                        )
                        for w in words if w['text'].strip()
                    ]
        except Exception as e:
            # Rasterization already succeeded, so the page images are usable
            logger.warning(f"Text layer extraction failed for {document_id}: {e}")
            return {}

        return layers
