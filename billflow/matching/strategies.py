"""
Matching Strategies.

Each strategy is a small object with a ``name``, a ``min_confidence``
and two methods:

    try_match(line, context)   best candidate or None
    candidates(line, context)  every candidate it would accept, best first

``line`` is anything with ``normalized_sku`` and ``description``
attributes (a LineItem or a MatchQuery). Strategies never share state
and never depend on each other; the engine runs them in order.

Every strategy orders its own candidates totally (confidence, then a
stable key such as the internal SKU) so the cascade is deterministic.
"""

from dataclasses import dataclass
from typing import List, Optional

from config import get_config
from billflow.storage.aliases import AliasStore, MatchHistoryStore
from billflow.storage.catalog import Product, SqliteCatalog
from billflow.utils.helpers import normalize_sku
from .result import (
    BARCODE_MPN, EXACT_ALIAS, EXACT_SKU, FUZZY_DESCRIPTION, HISTORICAL, MatchCandidate,
)
from .similarity import description_similarity

# Shortest normalized vendor SKU accepted as a barcode/MPN prefix
MIN_CODE_LENGTH = 3


@dataclass
class MatchContext:
    """Lookups available to strategies for one vendor."""
    vendor_id: Optional[str]
    catalog: SqliteCatalog
    aliases: AliasStore
    history: MatchHistoryStore


def _candidate(product: Product, strategy: str, confidence: float, **evidence) -> MatchCandidate:
    return MatchCandidate(
        product_id=product.product_id,
        internal_sku=product.sku,
        product_name=product.name,
        strategy=strategy,
        confidence=confidence,
        evidence=evidence,
    )


def first_accepted(candidates: List[MatchCandidate], min_confidence: float) -> Optional[MatchCandidate]:
    for candidate in candidates:
        if candidate.confidence >= min_confidence:
            return candidate
    return None


class ExactAliasStrategy:
    """SkuAlias lookup. Ties: priority, then usage count (store order)."""

    name = EXACT_ALIAS

    def __init__(self, confidence: Optional[float] = None) -> None:
        self.confidence = confidence if confidence is not None else get_config("matching.confidence.alias", 1.0)
        self.min_confidence = self.confidence

    def try_match(self, line, context: MatchContext) -> Optional[MatchCandidate]:
        return first_accepted(self.candidates(line, context), self.min_confidence)

    def candidates(self, line, context: MatchContext) -> List[MatchCandidate]:
        results = []
        for alias in context.aliases.find(context.vendor_id, line.normalized_sku):
            product = context.catalog.get(alias.product_id)
            results.append(MatchCandidate(
                product_id=alias.product_id,
                internal_sku=alias.internal_sku,
                product_name=product.name if product else alias.internal_sku,
                strategy=self.name,
                confidence=self.confidence,
                evidence={
                    'vendor_sku': line.normalized_sku,
                    'alias_id': alias.alias_id,
                    'priority': alias.priority,
                    'usage_count': alias.usage_count,
                },
                alias_id=alias.alias_id,
                unit_conversion=alias.unit_conversion,
            ))
        return results


class ExactSkuStrategy:
    """Normalized vendor SKU equals a normalized internal SKU."""

    name = EXACT_SKU

    def __init__(self, confidence: Optional[float] = None) -> None:
        self.confidence = confidence if confidence is not None else get_config("matching.confidence.internal_sku", 0.9)
        self.min_confidence = self.confidence

    def try_match(self, line, context: MatchContext) -> Optional[MatchCandidate]:
        return first_accepted(self.candidates(line, context), self.min_confidence)

    def candidates(self, line, context: MatchContext) -> List[MatchCandidate]:
        if not line.normalized_sku:
            return []
        products = context.catalog.find_product(sku=line.normalized_sku)
        return [
            _candidate(p, self.name, self.confidence, vendor_sku=line.normalized_sku, internal_sku=p.sku)
            for p in sorted(products, key=lambda p: p.sku)
        ]


class BarcodeMpnStrategy:
    """
    Vendor SKU equals a product barcode or MPN, or is its prefix with a
    digits-only remainder (``ABC123`` vs barcode ``ABC123000001``).
    """

    name = BARCODE_MPN

    def __init__(self, confidence: Optional[float] = None) -> None:
        self.confidence = confidence if confidence is not None else get_config("matching.confidence.barcode", 0.85)
        self.min_confidence = self.confidence

    @staticmethod
    def _code_matches(key: str, code: Optional[str]) -> Optional[str]:
        normalized = normalize_sku(code)
        if not normalized:
            return None
        if normalized == key:
            return "exact"
        remainder = normalized[len(key):]
        if normalized.startswith(key) and remainder.isdigit():
            return "prefix"
        return None

    def try_match(self, line, context: MatchContext) -> Optional[MatchCandidate]:
        return first_accepted(self.candidates(line, context), self.min_confidence)

    def candidates(self, line, context: MatchContext) -> List[MatchCandidate]:
        key = line.normalized_sku
        if len(key) < MIN_CODE_LENGTH:
            return []

        found = {}
        for attribute in ('barcode', 'mpn'):
            for product in context.catalog.find_product(**{attribute: key}):
                kind = self._code_matches(key, getattr(product, attribute))
                if kind is None:
                    continue
                rank = (0 if kind == "exact" else 1, 0 if attribute == 'barcode' else 1, product.sku)
                current = found.get(product.product_id)
                if current is None or rank < current[0]:
                    found[product.product_id] = (rank, product, attribute, kind)

        ordered = sorted(found.values(), key=lambda item: item[0])
        return [
            _candidate(product, self.name, self.confidence, vendor_sku=key, attribute=attribute,
                       code=getattr(product, attribute), match=kind)
            for _, product, attribute, kind in ordered
        ]


class FuzzyDescriptionStrategy:
    """
    Edit-distance similarity between the line description and product
    name/description. Similarity below ``floor`` yields nothing; above it
    confidence rises linearly from ``min_confidence`` to ``max_confidence``.
    """

    name = FUZZY_DESCRIPTION

    def __init__(self, floor: Optional[float] = None, min_confidence: Optional[float] = None,
                 max_confidence: Optional[float] = None) -> None:
        self.floor = floor if floor is not None else get_config("matching.fuzzy.floor", 0.6)
        self.min_confidence = min_confidence if min_confidence is not None else get_config(
            "matching.fuzzy.min_confidence", 0.5)
        self.max_confidence = max_confidence if max_confidence is not None else get_config(
            "matching.fuzzy.max_confidence", 0.8)

    def scale(self, similarity: float) -> float:
        if similarity < self.floor:
            return 0.0
        if self.floor >= 1.0:
            return self.max_confidence
        fraction = (similarity - self.floor) / (1.0 - self.floor)
        return self.min_confidence + (self.max_confidence - self.min_confidence) * fraction

    def try_match(self, line, context: MatchContext) -> Optional[MatchCandidate]:
        return first_accepted(self.candidates(line, context), self.min_confidence)

    def candidates(self, line, context: MatchContext) -> List[MatchCandidate]:
        description = (line.description or '').strip()
        if not description:
            return []

        scored = []
        for product in context.catalog.find_product(description=description):
            similarity = max(
                description_similarity(description, product.name),
                description_similarity(description, product.search_text),
            )
            if similarity >= self.floor:
                scored.append((similarity, product))

        scored.sort(key=lambda item: (-item[0], item[1].sku))
        return [
            _candidate(product, self.name, round(self.scale(similarity), 4),
                       description=description, compared_to=product.name,
                       similarity=round(similarity, 4))
            for similarity, product in scored
        ]


class HistoricalStrategy:
    """Human-confirmed vendor SKU mapping not yet promoted to an alias."""

    name = HISTORICAL

    def __init__(self, confidence: Optional[float] = None) -> None:
        self.confidence = confidence if confidence is not None else get_config("matching.confidence.historical", 0.75)
        self.min_confidence = self.confidence

    def try_match(self, line, context: MatchContext) -> Optional[MatchCandidate]:
        return first_accepted(self.candidates(line, context), self.min_confidence)

    def candidates(self, line, context: MatchContext) -> List[MatchCandidate]:
        results = []
        for record in context.history.find(context.vendor_id, line.normalized_sku):
            product = context.catalog.get(record.product_id)
            if product is None:
                continue
            results.append(_candidate(
                product, self.name, self.confidence,
                vendor_sku=line.normalized_sku, confirmations=record.confirmations,
            ))
        return results


def default_strategies() -> list:
    """The cascade in priority order."""
    return [
        ExactAliasStrategy(),
        ExactSkuStrategy(),
        BarcodeMpnStrategy(),
        FuzzyDescriptionStrategy(),
        HistoricalStrategy(),
    ]
