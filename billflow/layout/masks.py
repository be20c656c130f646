"""
Mask Regions.

Masks blank out logos, stamps and watermarks before a page region is
handed to the OCR backend. A mask is either scoped to a single document
or remembered for a vendor, in which case it is applied to every later
upload from that vendor.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from PIL import Image, ImageDraw

from billflow.utils.helpers import generate_id, utc_now, to_iso, from_iso
from .geometry import BoundingBox

# Fill color used for blanked regions (paper white)
MASK_FILL = (255, 255, 255)


@dataclass(frozen=True)
class Mask:
    """
    A blanked region.

    Attributes:
        mask_id: Unique identifier
        bbox: Normalized region
        page_index: Page the mask applies to, None for every page
        document_id: Document the mask was drawn on
        vendor_id: Set when the mask is remembered for the vendor
        reason: Free-text note from the reviewer
        created_by: Actor that created the mask
    """
    mask_id: str
    bbox: BoundingBox
    page_index: Optional[int] = None
    document_id: Optional[str] = None
    vendor_id: Optional[str] = None
    reason: str = ""
    created_by: str = "system"
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(cls, bbox: BoundingBox, page_index: Optional[int] = None,
               document_id: Optional[str] = None, vendor_id: Optional[str] = None,
               reason: str = "", created_by: str = "system") -> 'Mask':
        return cls(
            mask_id=generate_id("mask"),
            bbox=bbox,
            page_index=page_index,
            document_id=document_id,
            vendor_id=vendor_id,
            reason=reason,
            created_by=created_by,
        )

    def applies_to(self, page_index: int) -> bool:
        return self.page_index is None or self.page_index == page_index

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mask_id': self.mask_id,
            'bbox': self.bbox.to_dict(),
            'page_index': self.page_index,
            'document_id': self.document_id,
            'vendor_id': self.vendor_id,
            'reason': self.reason,
            'created_by': self.created_by,
            'created_at': to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Mask':
        return cls(
            mask_id=data['mask_id'],
            bbox=BoundingBox.from_dict(data['bbox']),
            page_index=data.get('page_index'),
            document_id=data.get('document_id'),
            vendor_id=data.get('vendor_id'),
            reason=data.get('reason', ''),
            created_by=data.get('created_by', 'system'),
            created_at=from_iso(data.get('created_at')) or utc_now(),
        )


def masks_for_page(masks: Iterable[Mask], page_index: int) -> List[Mask]:
    return [m for m in masks if m.applies_to(page_index)]


def apply_masks(image: Image.Image, masks: Iterable[Mask], page_index: int) -> Image.Image:
    """
    Return a copy of a full page image with mask regions blanked.

    Args:
        image: Full page image (RGB).
        masks: Candidate masks; those for other pages are ignored.
        page_index: Page the image belongs to.

    Returns:
        New image. The input image is not modified.
    """
    page_masks = masks_for_page(masks, page_index)
    if not page_masks:
        return image

    masked = image.convert('RGB').copy()
    draw = ImageDraw.Draw(masked)
    for mask in page_masks:
        x1, y1, x2, y2 = mask.bbox.to_pixels(masked.width, masked.height)
        draw.rectangle([x1, y1, x2, y2], fill=MASK_FILL)
    return masked
