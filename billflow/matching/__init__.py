"""
Matching Module for BillFlow.

Line item to catalog resolution:
    - Ordered strategy cascade (alias, SKU, barcode/MPN, fuzzy, history)
    - Auto-accept and suggestion thresholds
    - Ranked suggestions for manual matching
    - Alias promotion from confirmed matches
"""

from .engine import MatchingEngine
from .result import MatchCandidate, MatchQuery, STRATEGY_ORDER
from .similarity import description_similarity, string_similarity
from .strategies import (
    BarcodeMpnStrategy, ExactAliasStrategy, ExactSkuStrategy, FuzzyDescriptionStrategy,
    HistoricalStrategy, MatchContext, default_strategies,
)

__all__ = [
    'MatchingEngine',
    'MatchCandidate',
    'MatchQuery',
    'STRATEGY_ORDER',
    'description_similarity',
    'string_similarity',
    'BarcodeMpnStrategy',
    'ExactAliasStrategy',
    'ExactSkuStrategy',
    'FuzzyDescriptionStrategy',
    'HistoricalStrategy',
    'MatchContext',
    'default_strategies',
]
