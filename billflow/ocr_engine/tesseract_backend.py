"""
Tesseract OCR Backend.

Implements the backend contract ``recognize(region, profile) -> OCRResult``
with pytesseract. Profiles choose the page segmentation mode, engine mode
and upscaling; confidences are rescaled from Tesseract's 0-100 to 0-1.

Requirements:
    - Tesseract OCR installed on the system
    - pytesseract Python package
"""

import time
from typing import Any, Dict, List, Optional, Union

import pytesseract
from PIL import Image

from config import get_config
from billflow.utils.logger import get_logger
from billflow.utils.exceptions import OcrBackendUnavailableError, OcrError
from .ocr_result import ImageRegion, OCRResult, OCRToken
from .profiles import OcrProfile, profile_settings

logger = get_logger(__name__)


class TesseractBackend:
    """
    Tesseract OCR backend.

    Attributes:
        language: Tesseract language code (e.g., "eng")
        timeout: Per-call timeout in seconds (0 disables)

    Example:
        >>> backend = TesseractBackend()
        >>> result = backend.recognize(region, OcrProfile.BALANCED)
        >>> result.token_count
        42
    """

    name = "tesseract"

    def __init__(self, language: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.language = language or get_config("ocr.tesseract.lang", "eng")
        self.timeout = timeout if timeout is not None else get_config("ocr.tesseract.timeout", 0)
        self._version = None

    def _ensure_available(self) -> None:
        """
        Check that the Tesseract binary can be executed.

        Raises:
            OcrBackendUnavailableError: If Tesseract is not installed.
        """
        if self._version is not None:
            return
        try:
            self._version = str(pytesseract.get_tesseract_version())
            logger.info(f"Tesseract version: {self._version}")
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            raise OcrBackendUnavailableError(self.name, str(e))

    def _build_config(self, psm: int, oem: int) -> str:
        config_parts = [f"--psm {psm}", f"--oem {oem}"]
        extra = get_config("ocr.tesseract.config", "")
        if extra:
            config_parts.append(extra)
        return ' '.join(config_parts)

    def recognize(self, region: ImageRegion, profile: Union[OcrProfile, str]) -> OCRResult:
        """
        Recognize tokens in an image region.

        Args:
            region: Crop to process; token boxes are returned in crop pixels.
            profile: OCR profile.

        Returns:
            OCRResult for the crop.

        Raises:
            OcrBackendUnavailableError: Tesseract missing or timed out.
            OcrError: Tesseract rejected the image.
        """
        self._ensure_available()
        settings = profile_settings(profile)
        config = self._build_config(settings.psm, settings.oem)

        image = region.image
        if image.mode != 'RGB':
            image = image.convert('RGB')

        start_time = time.time()
        try:
            data = pytesseract.image_to_data(
                image,
                lang=self.language,
                config=config,
                output_type=pytesseract.Output.DICT,
                timeout=self.timeout,
            )
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            raise OcrBackendUnavailableError(self.name, str(e))
        except pytesseract.TesseractError as e:
            raise OcrError(f"Tesseract failed on page {region.page_index}", {"reason": str(e)})
        except RuntimeError as e:
            # pytesseract signals a killed subprocess with a bare RuntimeError
            raise OcrBackendUnavailableError(self.name, f"timeout: {e}")

        tokens = self._parse_output(data)
        processing_time = time.time() - start_time

        logger.debug(
            f"Tesseract {settings.profile.value}: {len(tokens)} tokens "
            f"({processing_time:.2f}s, {config})"
        )
        return OCRResult(
            tokens=tokens,
            profile=settings.profile.value,
            engine=self.name,
            page_index=region.page_index,
            processing_time=processing_time,
            metadata={'psm': settings.psm, 'oem': settings.oem, 'version': self._version},
        )

    def _parse_output(self, data: Dict[str, List]) -> List[OCRToken]:
        """Convert image_to_data output into tokens, skipping empty boxes."""
        tokens = []
        line_numbers: Dict[tuple, int] = {}
        for i, text in enumerate(data['text']):
            if not text or not text.strip():
                continue

            x, y, w, h = data['left'][i], data['top'][i], data['width'][i], data['height'][i]
            if w <= 0 or h <= 0:
                continue

            # Tesseract reports -1 for non-word elements
            confidence = max(float(data['conf'][i]), 0.0) / 100.0
            line_key = (data['block_num'][i], data['par_num'][i], data['line_num'][i])

            tokens.append(OCRToken(
                text=text.strip(),
                bbox=(x, y, x + w, y + h),
                confidence=min(confidence, 1.0),
                line_index=line_numbers.setdefault(line_key, len(line_numbers)),
                word_index=len(tokens),
            ))
        return tokens

    def detect_rotation(self, image: Image.Image) -> int:
        """
        Clockwise rotation needed to make a page upright, from Tesseract OSD.

        Returns:
            0, 90, 180 or 270.
        """
        self._ensure_available()
        try:
            osd: Dict[str, Any] = pytesseract.image_to_osd(image, output_type=pytesseract.Output.DICT)
        except pytesseract.TesseractError as e:
            logger.debug(f"Orientation detection failed: {e}")
            return 0
        return int(osd.get('rotate', 0)) % 360
