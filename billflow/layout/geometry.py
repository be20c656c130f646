"""
Page geometry helpers.

Regions are stored normalized to the page (0.0-1.0) so they survive
re-rasterization at a different DPI and can be reused across documents
(vendor masks). Pixel boxes are (x1, y1, x2, y2) tuples.
"""

from dataclasses import dataclass
from typing import Any, Dict, Tuple

PixelBox = Tuple[int, int, int, int]


@dataclass(frozen=True)
class BoundingBox:
    """
    Rectangle in normalized page coordinates.

    Attributes:
        x: Left edge (0-1)
        y: Top edge (0-1)
        width: Width (0-1)
        height: Height (0-1)
    """
    x: float
    y: float
    width: float
    height: float

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Negative box dimensions: {self}")
        if self.x < 0 or self.y < 0 or self.x2 > 1.0 + 1e-9 or self.y2 > 1.0 + 1e-9:
            raise ValueError(f"Box outside the page: {self}")

    @property
    def x2(self) -> float:
        return self.x + self.width

    @property
    def y2(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    @classmethod
    def full_page(cls) -> 'BoundingBox':
        return cls(0.0, 0.0, 1.0, 1.0)

    @classmethod
    def from_pixels(cls, box: PixelBox, page_width: int, page_height: int) -> 'BoundingBox':
        """Build a normalized box from a pixel box, clamped to the page."""
        x1, y1, x2, y2 = box
        x1 = min(max(x1, 0), page_width)
        x2 = min(max(x2, 0), page_width)
        y1 = min(max(y1, 0), page_height)
        y2 = min(max(y2, 0), page_height)
        return cls(
            x=x1 / page_width,
            y=y1 / page_height,
            width=max(x2 - x1, 0) / page_width,
            height=max(y2 - y1, 0) / page_height,
        )

    def to_pixels(self, page_width: int, page_height: int) -> PixelBox:
        return (
            int(round(self.x * page_width)),
            int(round(self.y * page_height)),
            int(round(self.x2 * page_width)),
            int(round(self.y2 * page_height)),
        )

    def intersection(self, other: 'BoundingBox') -> float:
        """Area of overlap with another box."""
        w = min(self.x2, other.x2) - max(self.x, other.x)
        h = min(self.y2, other.y2) - max(self.y, other.y)
        if w <= 0 or h <= 0:
            return 0.0
        return w * h

    def intersects(self, other: 'BoundingBox') -> bool:
        return self.intersection(other) > 0

    def contains_point(self, px: float, py: float) -> bool:
        return self.x <= px <= self.x2 and self.y <= py <= self.y2

    def to_dict(self) -> Dict[str, float]:
        return {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BoundingBox':
        return cls(float(data['x']), float(data['y']), float(data['width']), float(data['height']))


def pixel_iou(a: PixelBox, b: PixelBox) -> float:
    """Intersection over union of two pixel boxes."""
    w = min(a[2], b[2]) - max(a[0], b[0])
    h = min(a[3], b[3]) - max(a[1], b[1])
    if w <= 0 or h <= 0:
        return 0.0
    inter = w * h
    area_a = (a[2] - a[0]) * (a[3] - a[1])
    area_b = (b[2] - b[0]) * (b[3] - b[1])
    union = area_a + area_b - inter
    return inter / union if union > 0 else 0.0


def union_box(boxes) -> PixelBox:
    """Smallest pixel box containing all given boxes."""
    boxes = list(boxes)
    return (
        min(b[0] for b in boxes),
        min(b[1] for b in boxes),
        max(b[2] for b in boxes),
        max(b[3] for b in boxes),
    )
