"""
Cross-pass token reconciliation.

Tokens from different passes over the same region are aligned by box
overlap and then voted on:

    * a text read with high confidence by at least two passes is accepted
      and its confidence combined (noisy-OR, capped at 0.99)
    * otherwise the reading of the pass with the highest accuracy weight
      wins, and every other reading is kept as an alternative so the
      candidate generator can still see it
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from billflow.layout.geometry import pixel_iou
from .ocr_result import OCRLine, OCRResult, OCRToken, PixelBox, group_into_lines

# Minimum IoU for two tokens to be considered the same reading
ALIGN_IOU = 0.3
MAX_CONFIDENCE = 0.99


@dataclass(frozen=True)
class TokenVariant:
    """A competing reading of one token position."""
    text: str
    profile: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {'text': self.text, 'profile': self.profile, 'confidence': self.confidence}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TokenVariant':
        return cls(data['text'], data['profile'], float(data['confidence']))


@dataclass(frozen=True)
class ConsensusToken:
    """
    Reconciled token.

    Attributes:
        text: Winning reading
        bbox: Page pixel box of the winning reading
        confidence: Combined confidence (0-1)
        votes: Passes that produced the winning text
        pass_count: Passes reconciled for the region
        agreed: True when the high-confidence agreement rule accepted it
        profile: Profile of the pass that supplied the winning reading
        alternatives: Other readings, best first
    """
    text: str
    bbox: PixelBox
    confidence: float
    votes: int = 1
    pass_count: int = 1
    agreed: bool = False
    profile: str = ""
    alternatives: Tuple[TokenVariant, ...] = ()

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.bbox[0] + self.bbox[2]) / 2.0, (self.bbox[1] + self.bbox[3]) / 2.0)

    @property
    def height(self) -> int:
        return self.bbox[3] - self.bbox[1]

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
    def agreement(self) -> float:
        """Share of passes that produced the winning text."""
        return self.votes / self.pass_count if self.pass_count else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'text': self.text,
            'bbox': list(self.bbox),
            'confidence': self.confidence,
            'votes': self.votes,
            'pass_count': self.pass_count,
            'agreed': self.agreed,
            'profile': self.profile,
            'alternatives': [a.to_dict() for a in self.alternatives],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConsensusToken':
        return cls(
            text=data['text'],
            bbox=tuple(int(v) for v in data['bbox']),
            confidence=float(data['confidence']),
            votes=int(data.get('votes', 1)),
            pass_count=int(data.get('pass_count', 1)),
            agreed=bool(data.get('agreed', False)),
            profile=data.get('profile', ''),
            alternatives=tuple(TokenVariant.from_dict(a) for a in data.get('alternatives', [])),
        )


@dataclass
class ConsensusResult:
    """Consensus text layer for one zone (or re-OCR region)."""
    page_index: int
    zone_id: Optional[str] = None
    tokens: List[ConsensusToken] = field(default_factory=list)
    profiles: List[str] = field(default_factory=list)
    agreement_rate: float = 0.0
    generation_id: Optional[str] = None
    # Raw passes behind the consensus, kept for later re-OCR voting
    passes: List[OCRResult] = field(default_factory=list, repr=False)

    @property
    def pass_count(self) -> int:
        return len(self.profiles)

    @property
    def lines(self) -> List[OCRLine]:
        return group_into_lines(self.tokens)

    @property
    def text(self) -> str:
        return '\n'.join(line.text for line in self.lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'page_index': self.page_index,
            'zone_id': self.zone_id,
            'tokens': [t.to_dict() for t in self.tokens],
            'profiles': list(self.profiles),
            'agreement_rate': self.agreement_rate,
            'generation_id': self.generation_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConsensusResult':
        return cls(
            page_index=int(data['page_index']),
            zone_id=data.get('zone_id'),
            tokens=[ConsensusToken.from_dict(t) for t in data.get('tokens', [])],
            profiles=list(data.get('profiles', [])),
            agreement_rate=float(data.get('agreement_rate', 0.0)),
            generation_id=data.get('generation_id'),
        )


def _aligned(anchor: PixelBox, bbox: PixelBox) -> float:
    """Alignment score of two boxes, 0 when they are different tokens."""
    iou = pixel_iou(anchor, bbox)
    if iou >= ALIGN_IOU:
        return iou
    cx, cy = (bbox[0] + bbox[2]) / 2.0, (bbox[1] + bbox[3]) / 2.0
    if anchor[0] <= cx <= anchor[2] and anchor[1] <= cy <= anchor[3]:
        return max(iou, ALIGN_IOU)
    return 0.0


def reconcile(
    passes: Sequence[OCRResult],
    weights: Dict[str, float],
    high_confidence: float = 0.8,
    min_agreeing: int = 2,
    zone_id: Optional[str] = None,
    page_index: Optional[int] = None
) -> ConsensusResult:
    """
    Reconcile OCR passes over the same region into one token layer.

    Args:
        passes: OCR results in page coordinates.
        weights: Accuracy weight per profile name.
        high_confidence: Token confidence that counts as a strong vote.
        min_agreeing: Strong votes needed to accept a reading outright.
        zone_id: Zone the passes belong to.
        page_index: Page of the region (defaults to the first pass).

    Returns:
        ConsensusResult ordered top-to-bottom, left-to-right.
    """
    if page_index is None:
        page_index = passes[0].page_index if passes else 0

    ordered = sorted(passes, key=lambda p: -weights.get(p.profile, 1.0))
    pass_count = len(ordered)

    # Each cluster maps pass position -> token at one location
    clusters: List[Dict[int, OCRToken]] = []
    anchors: List[PixelBox] = []

    for pass_pos, result in enumerate(ordered):
        for token in result.tokens:
            best, best_score = None, 0.0
            for idx, anchor in enumerate(anchors):
                if pass_pos in clusters[idx]:
                    continue
                score = _aligned(anchor, token.bbox)
                if score > best_score:
                    best, best_score = idx, score
            if best is None:
                clusters.append({pass_pos: token})
                anchors.append(token.bbox)
            else:
                clusters[best][pass_pos] = token

    tokens: List[ConsensusToken] = []
    unanimous = 0

    for members in clusters:
        readings: Dict[str, List[Tuple[int, OCRToken]]] = {}
        for pass_pos in sorted(members):
            token = members[pass_pos]
            readings.setdefault(token.text.strip(), []).append((pass_pos, token))

        if len(readings) == 1 and len(members) == pass_count:
            unanimous += 1

        winner_text, agreed = None, False
        strong = {
            text: [tok for _, tok in items if tok.confidence >= high_confidence]
            for text, items in readings.items()
        }
        accepted = [text for text, toks in strong.items() if len(toks) >= min_agreeing]
        if accepted:
            winner_text = max(accepted, key=lambda t: (len(strong[t]), -min(p for p, _ in readings[t])))
            agreed = True
        else:
            # Highest weight pass present at this location decides
            first_pass = min(members)
            winner_text = members[first_pass].text.strip()

        winner_pass, winner_token = readings[winner_text][0]
        if agreed:
            miss = 1.0
            for tok in strong[winner_text]:
                miss *= (1.0 - tok.confidence)
            confidence = min(MAX_CONFIDENCE, 1.0 - miss)
        else:
            confidence = winner_token.confidence

        alternatives = []
        for text, items in readings.items():
            if text == winner_text:
                continue
            pass_pos, tok = max(items, key=lambda item: item[1].confidence)
            alternatives.append(TokenVariant(text, ordered[pass_pos].profile, tok.confidence))
        alternatives.sort(key=lambda a: (-weights.get(a.profile, 1.0), -a.confidence))

        tokens.append(ConsensusToken(
            text=winner_text,
            bbox=winner_token.bbox,
            confidence=max(0.0, min(1.0, confidence)),
            votes=len(readings[winner_text]),
            pass_count=pass_count,
            agreed=agreed,
            profile=ordered[winner_pass].profile,
            alternatives=tuple(alternatives),
        ))

    tokens.sort(key=lambda t: (t.center[1], t.center[0]))
    return ConsensusResult(
        page_index=page_index,
        zone_id=zone_id,
        tokens=tokens,
        profiles=[p.profile for p in ordered],
        agreement_rate=unanimous / len(clusters) if clusters else 0.0,
        passes=list(ordered),
    )
