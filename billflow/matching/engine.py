"""
Matching Engine.

Resolves line items to catalog products with an ordered strategy
cascade:

    1. exact alias          (1.0)
    2. exact internal SKU   (0.9)
    3. barcode / MPN        (0.85)
    4. fuzzy description    (0.5 - 0.8)
    5. historical mapping   (0.75)

The first strategy that yields a candidate at or above its own minimum
wins. Thresholds decide what happens to the line:

    confidence >= auto_accept        line becomes Matched
    confidence >= review_threshold   stored as a suggestion, line stays Unmatched
    below                            nothing stored; still offered by
                                     list_match_candidates
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

from config import get_config
from billflow.bill import Bill, LineItem, LineStatus
from billflow.storage.aliases import AliasStore, MatchHistoryStore, SkuAlias
from billflow.storage.catalog import SqliteCatalog
from billflow.utils.logger import get_logger
from .result import MatchCandidate, MatchQuery
from .strategies import MatchContext, default_strategies

logger = get_logger(__name__)


class MatchingEngine:
    """
    Strategy cascade over the catalog, alias table and match history.

    Example:
        >>> engine = MatchingEngine(catalog, aliases, history)
        >>> engine.match_line_item(line, vendor_id="acme").strategy
        'barcode_mpn'
    """

    def __init__(
        self,
        catalog: SqliteCatalog,
        aliases: AliasStore,
        history: MatchHistoryStore,
        strategies: Optional[Sequence] = None,
        workers: Optional[int] = None
    ) -> None:
        self.catalog = catalog
        self.aliases = aliases
        self.history = history
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.workers = workers or get_config("matching.workers", 4)
        self.auto_accept = get_config("matching.auto_accept", 0.95)
        self.review_threshold = get_config("matching.review_threshold", 0.70)
        self.promotion_confirmations = get_config("matching.alias_promotion_confirmations", 2)
        self.suggestion_limit = get_config("matching.suggestion_limit", 5)

    def context(self, vendor_id: Optional[str]) -> MatchContext:
        return MatchContext(vendor_id=vendor_id, catalog=self.catalog, aliases=self.aliases, history=self.history)

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    def match_line_item(self, line, vendor_id: Optional[str]) -> Optional[MatchCandidate]:
        """
        Run the cascade for one line.

        Returns:
            The first accepted candidate, or None (ProductNotFound: the
            line stays Unmatched).
        """
        context = self.context(vendor_id)
        for strategy in self.strategies:
            candidate = strategy.try_match(line, context)
            if candidate is not None:
                logger.debug(
                    f"Line {getattr(line, 'line_id', line.normalized_sku)}: {strategy.name} -> "
                    f"{candidate.internal_sku} ({candidate.confidence:.2f})"
                )
                return candidate
        logger.debug(f"No product for vendor SKU '{line.normalized_sku}'")
        return None

    def apply_thresholds(self, line: LineItem, candidate: Optional[MatchCandidate]) -> None:
        """Set a line's status, product and suggestion from a cascade result."""
        line.suggested_match = None
        if candidate is None:
            line.clear_match()
            return
        if candidate.confidence >= self.auto_accept:
            self.set_match(line, candidate, LineStatus.MATCHED)
            return
        line.clear_match()
        if candidate.confidence >= self.review_threshold:
            line.suggested_match = candidate.to_dict()

    @staticmethod
    def set_match(line: LineItem, candidate: MatchCandidate, status: LineStatus) -> None:
        line.matched_product_id = candidate.product_id
        line.match_confidence = candidate.confidence
        line.match_reason = candidate.reason()
        line.alias_id = candidate.alias_id
        line.unit_conversion = candidate.unit_conversion
        line.suggested_match = None
        line.status = status

    def match_bill(self, bill: Bill, force: bool = False) -> Dict[str, Optional[MatchCandidate]]:
        """
        Match every line of a bill that a human has not settled.

        Lines run in parallel; results are applied in line order so the
        outcome does not depend on scheduling.

        Args:
            bill: Bill to update in place.
            force: Re-match lines that were matched automatically.

        Returns:
            line_id -> cascade result for the lines that were (re)matched.
        """
        pending = [
            line for line in bill.line_items
            if line.status == LineStatus.UNMATCHED
            or (force and line.status == LineStatus.MATCHED and not _human_match(line))
        ]
        if not pending:
            return {}

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="match") as executor:
            results = list(executor.map(lambda l: self.match_line_item(l, bill.vendor_id), pending))

        outcome = {}
        for line, candidate in zip(pending, results):
            self.apply_thresholds(line, candidate)
            outcome[line.line_id] = candidate

        matched = sum(1 for line in pending if line.status == LineStatus.MATCHED)
        logger.info(f"Bill {bill.bill_id}: {matched}/{len(pending)} line items auto-matched")
        return outcome

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def list_match_candidates(
        self,
        vendor_sku: str,
        description: str = "",
        vendor_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[MatchCandidate]:
        """
        Ranked candidates from every strategy, one per product.

        A product found by several strategies keeps its best candidate.
        Order: confidence desc, cascade position, internal SKU, product id.
        """
        query = MatchQuery(raw_sku=vendor_sku or "", description=description or "")
        context = self.context(vendor_id)
        best: Dict[str, MatchCandidate] = {}
        for strategy in self.strategies:
            for candidate in strategy.candidates(query, context):
                current = best.get(candidate.product_id)
                if current is None or (candidate.confidence, -candidate.rank) > (current.confidence, -current.rank):
                    best[candidate.product_id] = candidate

        ranked = sorted(best.values(), key=lambda c: (-c.confidence, c.rank, c.internal_sku, c.product_id))
        return ranked[:limit or self.suggestion_limit]

    # ------------------------------------------------------------------
    # Learning from reviewers
    # ------------------------------------------------------------------

    def create_alias(self, vendor_id: str, normalized_sku: str, product_id: str, internal_sku: str,
                     unit_conversion: float = 1.0, source: str = "manual") -> SkuAlias:
        return self.aliases.upsert(SkuAlias.create(
            vendor_id, normalized_sku, product_id, internal_sku,
            unit_conversion=unit_conversion, source=source,
        ))

    def record_confirmation(self, vendor_id: Optional[str], normalized_sku: str,
                            product_id: str, internal_sku: str) -> Optional[SkuAlias]:
        """
        Count a human-confirmed match; promote it to an alias once it has
        been confirmed enough times.

        Returns:
            The alias when this confirmation promoted the mapping.
        """
        if not vendor_id or not normalized_sku:
            return None
        record = self.history.record_confirmation(vendor_id, normalized_sku, product_id, internal_sku)
        if record.confirmations < self.promotion_confirmations:
            return None
        alias = self.create_alias(vendor_id, normalized_sku, product_id, internal_sku, source="promotion")
        self.history.mark_promoted(vendor_id, normalized_sku, product_id)
        logger.info(f"Promoted {vendor_id}/{normalized_sku} to alias after {record.confirmations} confirmations")
        return alias


def _human_match(line: LineItem) -> bool:
    reason = line.match_reason or {}
    return bool(reason.get('accepted_by'))
