"""
Match Result Data Classes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from billflow.utils.helpers import normalize_sku


# Strategy names in cascade order
EXACT_ALIAS = "exact_alias"
EXACT_SKU = "exact_sku"
BARCODE_MPN = "barcode_mpn"
FUZZY_DESCRIPTION = "fuzzy_description"
HISTORICAL = "historical"
MANUAL = "manual"

STRATEGY_ORDER = (EXACT_ALIAS, EXACT_SKU, BARCODE_MPN, FUZZY_DESCRIPTION, HISTORICAL)


@dataclass(frozen=True)
class MatchCandidate:
    """
    A proposed catalog product for one line item.

    Attributes:
        product_id: Internal product
        internal_sku: Internal SKU of the product
        product_name: Product name, for display
        strategy: Strategy that produced the candidate
        confidence: Strategy confidence (0-1)
        evidence: What the strategy compared and found
        alias_id: Alias used, for exact alias matches
        unit_conversion: Internal units per vendor unit
    """
    product_id: str
    internal_sku: str
    product_name: str
    strategy: str
    confidence: float
    evidence: Dict[str, Any] = field(default_factory=dict)
    alias_id: Optional[str] = None
    unit_conversion: float = 1.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Match confidence out of range: {self.confidence}")

    @property
    def rank(self) -> int:
        return STRATEGY_ORDER.index(self.strategy) if self.strategy in STRATEGY_ORDER else len(STRATEGY_ORDER)

    def reason(self) -> Dict[str, Any]:
        """Value stored in a line item's match_reason."""
        return {'strategy': self.strategy, 'confidence': self.confidence, 'evidence': dict(self.evidence)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'product_id': self.product_id,
            'internal_sku': self.internal_sku,
            'product_name': self.product_name,
            'strategy': self.strategy,
            'confidence': round(self.confidence, 4),
            'evidence': dict(self.evidence),
            'alias_id': self.alias_id,
            'unit_conversion': self.unit_conversion,
        }


@dataclass(frozen=True)
class MatchQuery:
    """What a strategy needs from a line item; LineItem itself also fits."""
    raw_sku: str = ""
    description: str = ""

    @property
    def normalized_sku(self) -> str:
        return normalize_sku(self.raw_sku)
