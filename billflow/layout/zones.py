"""
Zone Data Classes.

A Zone is a labeled rectangle on one page. Zones are never edited in
place: a manual boundary change appends a new version that points at
the zone it supersedes, so every extracted value can be traced back to
the exact region that produced it.

Classes:
    ZoneLabel: Semantic label of a region
    Zone: Immutable zone version
    ZoneHistory: Append-only set of zone versions for one document
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from billflow.utils.helpers import generate_id, utc_now, to_iso, from_iso
from .geometry import BoundingBox


class ZoneLabel(str, Enum):
    HEADER = "Header"
    LINE_ITEM_TABLE = "LineItemTable"
    TOTALS = "Totals"
    FOOTER = "Footer"
    NOISE = "Noise"


@dataclass(frozen=True)
class Zone:
    """
    One version of a page region.

    Attributes:
        zone_id: Unique id of this version
        document_id: Owning document
        page_index: Zero-based page number
        label: Semantic label
        bbox: Normalized region
        version: 1 for detector output, incremented on each edit
        supersedes: zone_id of the version this one replaces
        source: "detector", "fallback", "manual" or "mask"
        confidence: Detector confidence for the label (0-1)
    """
    zone_id: str
    document_id: str
    page_index: int
    label: ZoneLabel
    bbox: BoundingBox
    version: int = 1
    supersedes: Optional[str] = None
    source: str = "detector"
    confidence: float = 1.0
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(cls, document_id: str, page_index: int, label: ZoneLabel,
               bbox: BoundingBox, source: str = "detector",
               confidence: float = 1.0) -> 'Zone':
        return cls(
            zone_id=generate_id("zone"),
            document_id=document_id,
            page_index=page_index,
            label=label,
            bbox=bbox,
            source=source,
            confidence=confidence,
        )

    def revise(self, bbox: Optional[BoundingBox] = None,
               label: Optional[ZoneLabel] = None, source: str = "manual") -> 'Zone':
        """Return a new version of this zone. The receiver is left untouched."""
        return replace(
            self,
            zone_id=generate_id("zone"),
            bbox=bbox or self.bbox,
            label=label or self.label,
            version=self.version + 1,
            supersedes=self.zone_id,
            source=source,
            confidence=1.0,
            created_at=utc_now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'zone_id': self.zone_id,
            'document_id': self.document_id,
            'page_index': self.page_index,
            'label': self.label.value,
            'bbox': self.bbox.to_dict(),
            'version': self.version,
            'supersedes': self.supersedes,
            'source': self.source,
            'confidence': self.confidence,
            'created_at': to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Zone':
        return cls(
            zone_id=data['zone_id'],
            document_id=data['document_id'],
            page_index=int(data['page_index']),
            label=ZoneLabel(data['label']),
            bbox=BoundingBox.from_dict(data['bbox']),
            version=int(data.get('version', 1)),
            supersedes=data.get('supersedes'),
            source=data.get('source', 'detector'),
            confidence=float(data.get('confidence', 1.0)),
            created_at=from_iso(data.get('created_at')) or utc_now(),
        )


class ZoneHistory:
    """
    Append-only collection of zone versions.

    A zone is active when no later version supersedes it.

    Example:
        >>> history = ZoneHistory(detected_zones)
        >>> edited = history.supersede(zone_id, new_bbox)
        >>> len(history)  # grows, never shrinks
    """

    def __init__(self, zones: Iterable[Zone] = ()) -> None:
        self._zones: List[Zone] = []
        self._by_id: Dict[str, Zone] = {}
        for zone in zones:
            self.append(zone)

    def __len__(self) -> int:
        return len(self._zones)

    def __iter__(self):
        return iter(self._zones)

    def append(self, zone: Zone) -> Zone:
        if zone.zone_id in self._by_id:
            raise ValueError(f"Zone already recorded: {zone.zone_id}")
        self._zones.append(zone)
        self._by_id[zone.zone_id] = zone
        return zone

    def get(self, zone_id: str) -> Optional[Zone]:
        return self._by_id.get(zone_id)

    def supersede(self, zone_id: str, bbox: Optional[BoundingBox] = None,
                  label: Optional[ZoneLabel] = None) -> Zone:
        """Append a revised version of an active zone."""
        current = self._by_id.get(zone_id)
        if current is None:
            raise KeyError(zone_id)
        if zone_id in self._superseded_ids():
            raise ValueError(f"Zone {zone_id} is not the active version")
        return self.append(current.revise(bbox=bbox, label=label))

    def latest(self, zone_id: str) -> Optional[Zone]:
        """Newest version in the edit chain that starts at ``zone_id``."""
        successors = {z.supersedes: z for z in self._zones if z.supersedes}
        current = self._by_id.get(zone_id)
        while current is not None and current.zone_id in successors:
            current = successors[current.zone_id]
        return current

    def _superseded_ids(self) -> set:
        return {z.supersedes for z in self._zones if z.supersedes}

    def active(self, page_index: Optional[int] = None) -> List[Zone]:
        """Active zones ordered by page, then top edge."""
        superseded = self._superseded_ids()
        zones = [
            z for z in self._zones
            if z.zone_id not in superseded
            and (page_index is None or z.page_index == page_index)
        ]
        return sorted(zones, key=lambda z: (z.page_index, z.bbox.y, z.bbox.x))

    def best_for_region(self, page_index: int, bbox: BoundingBox) -> Optional[Zone]:
        """Active content zone with the largest overlap with a region."""
        best, best_overlap = None, 0.0
        for zone in self.active(page_index):
            if zone.label == ZoneLabel.NOISE:
                continue
            overlap = zone.bbox.intersection(bbox)
            if overlap > best_overlap:
                best, best_overlap = zone, overlap
        return best
