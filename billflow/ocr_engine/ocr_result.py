"""
OCR Result Data Classes.

Standardized OCR output shared by every backend and by the consensus
step. Token boxes are page pixel coordinates once the orchestrator has
mapped them back from the cropped, rescaled region it sent to the
backend.

Classes:
    ImageRegion: Page crop handed to a backend
    OCRToken: Single recognized token
    OCRLine: Tokens on one text line
    OCRResult: One pass over one region
"""

import statistics
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from PIL import Image

PixelBox = Tuple[int, int, int, int]


@dataclass
class ImageRegion:
    """
    Crop of a page sent to an OCR backend.

    Attributes:
        image: Cropped (and possibly upscaled) image
        page_index: Page the crop was taken from
        box: Crop position in page pixels (x1, y1, x2, y2)
        scale: Upscaling factor applied to the crop
    """
    image: Image.Image
    page_index: int
    box: PixelBox
    scale: float = 1.0

    def to_page(self, bbox: PixelBox) -> PixelBox:
        """Map a box in crop coordinates back to page pixels."""
        ox, oy = self.box[0], self.box[1]
        return (
            int(round(bbox[0] / self.scale)) + ox,
            int(round(bbox[1] / self.scale)) + oy,
            int(round(bbox[2] / self.scale)) + ox,
            int(round(bbox[3] / self.scale)) + oy,
        )


@dataclass(frozen=True)
class OCRToken:
    """
    A recognized token.

    Attributes:
        text: Token text
        bbox: (x1, y1, x2, y2) in pixels
        confidence: Backend confidence (0-1)
        line_index: Line the backend assigned the token to
        word_index: Position of the token in reading order
    """
    text: str
    bbox: PixelBox
    confidence: float = 0.0
    line_index: int = 0
    word_index: int = 0

    @property
    def x1(self) -> int:
        return self.bbox[0]

    @property
    def y1(self) -> int:
        return self.bbox[1]

    @property
    def x2(self) -> int:
        return self.bbox[2]

    @property
    def y2(self) -> int:
        return self.bbox[3]

    @property
    def height(self) -> int:
        return self.y2 - self.y1

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.x1 + self.x2) / 2.0, (self.y1 + self.y2) / 2.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'text': self.text,
            'bbox': list(self.bbox),
            'confidence': self.confidence,
            'line_index': self.line_index,
            'word_index': self.word_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OCRToken':
        return cls(
            text=data['text'],
            bbox=tuple(int(v) for v in data['bbox']),
            confidence=float(data.get('confidence', 0.0)),
            line_index=int(data.get('line_index', 0)),
            word_index=int(data.get('word_index', 0)),
        )

    def __repr__(self) -> str:
        return f"OCRToken('{self.text}', bbox={self.bbox}, conf={self.confidence:.2f})"


@dataclass
class OCRLine:
    """Tokens sharing one text line, left to right."""
    tokens: List[Any] = field(default_factory=list)
    line_index: int = 0

    @property
    def text(self) -> str:
        return ' '.join(t.text for t in self.tokens)

    @property
    def bbox(self) -> PixelBox:
        if not self.tokens:
            return (0, 0, 0, 0)
        return (
            min(t.x1 for t in self.tokens),
            min(t.y1 for t in self.tokens),
            max(t.x2 for t in self.tokens),
            max(t.y2 for t in self.tokens),
        )

    @property
    def average_confidence(self) -> float:
        if not self.tokens:
            return 0.0
        return sum(t.confidence for t in self.tokens) / len(self.tokens)


def group_into_lines(tokens: Iterable[Any]) -> List[OCRLine]:
    """
    Group tokens into lines by vertical center.

    Works for any object exposing ``center`` and ``height``. A token
    joins the current line when its center is within half the median
    token height of the line's running center.
    """
    tokens = sorted(tokens, key=lambda t: (t.center[1], t.center[0]))
    if not tokens:
        return []

    median_height = statistics.median(max(t.height, 1) for t in tokens)
    tolerance = max(median_height * 0.5, 1.0)

    lines: List[OCRLine] = []
    current: List[Any] = [tokens[0]]
    current_center = tokens[0].center[1]

    for token in tokens[1:]:
        if abs(token.center[1] - current_center) <= tolerance:
            current.append(token)
            current_center = sum(t.center[1] for t in current) / len(current)
        else:
            lines.append(OCRLine(tokens=sorted(current, key=lambda t: t.center[0]),
                                 line_index=len(lines)))
            current = [token]
            current_center = token.center[1]

    lines.append(OCRLine(tokens=sorted(current, key=lambda t: t.center[0]), line_index=len(lines)))
    return lines


@dataclass
class OCRResult:
    """
    One OCR pass over one region.

    Attributes:
        tokens: Recognized tokens
        profile: Profile name the pass ran with
        engine: Backend name
        page_index: Page of the region
        zone_id: Zone the region belongs to, if any
        processing_time: Seconds spent in the backend
        metadata: Backend specific details
    """
    tokens: List[OCRToken] = field(default_factory=list)
    profile: str = "balanced"
    engine: str = "unknown"
    page_index: int = 0
    zone_id: Optional[str] = None
    processing_time: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return '\n'.join(line.text for line in self.lines)

    @property
    def lines(self) -> List[OCRLine]:
        return group_into_lines(self.tokens)

    @property
    def token_count(self) -> int:
        return len(self.tokens)

    @property
    def average_confidence(self) -> float:
        if not self.tokens:
            return 0.0
        return sum(t.confidence for t in self.tokens) / len(self.tokens)

    def mapped_to_page(self, region: ImageRegion) -> 'OCRResult':
        """Copy of this result with token boxes in page pixel coordinates."""
        return replace(
            self,
            page_index=region.page_index,
            tokens=[replace(t, bbox=region.to_page(t.bbox)) for t in self.tokens],
        )

    def within(self, box: PixelBox) -> 'OCRResult':
        """Copy restricted to tokens whose center lies inside a page box."""
        def inside(token: OCRToken) -> bool:
            cx, cy = token.center
            return box[0] <= cx <= box[2] and box[1] <= cy <= box[3]
        return replace(self, tokens=[t for t in self.tokens if inside(t)])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tokens': [t.to_dict() for t in self.tokens],
            'profile': self.profile,
            'engine': self.engine,
            'page_index': self.page_index,
            'zone_id': self.zone_id,
            'processing_time': self.processing_time,
            'metadata': self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OCRResult':
        return cls(
            tokens=[OCRToken.from_dict(t) for t in data.get('tokens', [])],
            profile=data.get('profile', 'balanced'),
            engine=data.get('engine', 'unknown'),
            page_index=int(data.get('page_index', 0)),
            zone_id=data.get('zone_id'),
            processing_time=float(data.get('processing_time', 0.0)),
            metadata=data.get('metadata', {}),
        )
