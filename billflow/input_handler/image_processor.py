"""
Image Processor Module.

Loads PNG/JPEG/TIFF bytes into page images and normalizes them:
    - EXIF orientation fix
    - RGB conversion and size limits
    - Optional speckle removal
    - 0/90/180/270 orientation correction

Orientation is estimated from ink projection profiles: horizontal text
lines give the row profile a much higher variance than the column
profile. Upside-down pages look identical to that test, so 180 degree
detection is delegated to an optional OSD callable (Tesseract OSD).
"""

import io
from typing import Callable, List, Optional, Tuple

import numpy as np
from PIL import Image, ImageFilter, ImageOps, ImageSequence

from config import get_config
from billflow.utils.logger import get_logger
from billflow.utils.exceptions import CorruptDocumentError

logger = get_logger(__name__)

# Longest side used for projection analysis
ANALYSIS_SIZE = 800


class ImageProcessor:
    """
    Processor for raster page images.

    Attributes:
        max_width: Maximum page width in pixels
        max_height: Maximum page height in pixels
        min_width: Minimum width below which a page is upscaled
        denoise: Apply a median filter before OCR
        orientation_enabled: Run orientation correction
        min_gain: Profile variance ratio required to rotate

    Example:
        >>> processor = ImageProcessor()
        >>> pages = processor.load(png_bytes, "doc_1")
        >>> page, rotation = processor.correct_orientation(pages[0])
    """

    def __init__(self, osd_detector: Optional[Callable[[Image.Image], int]] = None) -> None:
        """
        Args:
            osd_detector: Optional callable returning the clockwise rotation
                         (0/90/180/270) needed to make a page upright.
        """
        self.max_width = get_config("input.image.max_width", 2480)
        self.max_height = get_config("input.image.max_height", 3508)
        self.min_width = get_config("input.image.min_width", 200)
        self.min_height = get_config("input.image.min_height", 200)
        self.denoise = get_config("input.image.denoise", False)
        self.orientation_enabled = get_config("input.orientation.enabled", True)
        self.min_gain = get_config("input.orientation.min_gain", 1.15)
        self.ink_threshold = get_config("layout.ink_threshold", 160)
        self.osd_detector = osd_detector

    def load(self, content: bytes, document_id: str) -> List[Image.Image]:
        """
        Decode image bytes into one image per frame.

        Raises:
            CorruptDocumentError: If the image cannot be decoded.
        """
        try:
            source = Image.open(io.BytesIO(content))
            frames = []
            for frame in ImageSequence.Iterator(source):
                frame = ImageOps.exif_transpose(frame)
                frames.append(self._prepare(frame.convert('RGB')))
        except Exception as e:
            logger.error(f"Failed to decode image {document_id}: {e}")
            raise CorruptDocumentError(document_id, str(e))

        logger.debug(f"Decoded {len(frames)} frame(s) from {document_id}")
        return frames

    def _prepare(self, image: Image.Image) -> Image.Image:
        if image.width > self.max_width or image.height > self.max_height:
            ratio = min(self.max_width / image.width, self.max_height / image.height)
            new_size = (int(image.width * ratio), int(image.height * ratio))
            image = image.resize(new_size, Image.Resampling.LANCZOS)
            logger.debug(f"Resized page to {new_size[0]}x{new_size[1]}")

        if image.width < self.min_width or image.height < self.min_height:
            ratio = max(self.min_width / image.width, self.min_height / image.height)
            new_size = (int(image.width * ratio), int(image.height * ratio))
            image = image.resize(new_size, Image.Resampling.LANCZOS)

        if self.denoise:
            image = image.filter(ImageFilter.MedianFilter(size=3))

        return image

    def detect_rotation(self, image: Image.Image) -> int:
        """
        Estimate the clockwise rotation that makes text lines horizontal.

        Returns:
            0, 90, 180 or 270.
        """
        rotation = 0

        small = image.convert('L')
        small.thumbnail((ANALYSIS_SIZE, ANALYSIS_SIZE))
        ink = np.asarray(small, dtype=np.uint8) < self.ink_threshold

        if ink.any():
            row_variance = float(ink.mean(axis=1).var())
            column_variance = float(ink.mean(axis=0).var())
            if column_variance > row_variance * self.min_gain:
                rotation = 90

        if self.osd_detector is not None:
            try:
                osd_rotation = int(self.osd_detector(image)) % 360
                if osd_rotation in (0, 90, 180, 270):
                    rotation = osd_rotation
            except Exception as e:
                logger.debug(f"OSD orientation check failed, keeping projection estimate: {e}")

        return rotation

    def correct_orientation(self, image: Image.Image) -> Tuple[Image.Image, int]:
        """
        Rotate a page upright.

        Returns:
            Tuple of (corrected image, applied clockwise rotation).
        """
        if not self.orientation_enabled:
            return image, 0

        rotation = self.detect_rotation(image)
        if rotation:
            logger.info(f"Correcting page orientation by {rotation} degrees")
            # PIL rotates counter-clockwise
            image = image.rotate(-rotation, expand=True, fillcolor=(255, 255, 255))
        return image, rotation
