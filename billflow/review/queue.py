"""
Review Queue.

Lists bills waiting for (or past) review with filtering, sorting and
pagination, plus queue statistics. Priority order puts the least
confident bills first.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from config import get_config
from billflow.bill import Bill, BillState
from billflow.storage.repository import Repository


class SortField(str, Enum):
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    CONFIDENCE = "confidence"
    PRIORITY = "priority"


@dataclass
class QueueFilter:
    """
    Attributes:
        state: Only bills in this state
        vendor_id: Only bills of this vendor
        min_confidence: Lower bound of the overall confidence (inclusive)
        max_confidence: Upper bound of the overall confidence (inclusive)
        created_from: Created at or after
        created_to: Created at or before
        has_flags: True for bills with findings or ambiguous fields,
            False for clean bills
    """
    state: Optional[BillState] = None
    vendor_id: Optional[str] = None
    min_confidence: Optional[float] = None
    max_confidence: Optional[float] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    has_flags: Optional[bool] = None

    def matches(self, bill: Bill) -> bool:
        confidence = bill.overall_confidence
        if self.state is not None and bill.state != BillState(self.state):
            return False
        if self.vendor_id is not None and bill.vendor_id != self.vendor_id:
            return False
        if self.min_confidence is not None and confidence < self.min_confidence:
            return False
        if self.max_confidence is not None and confidence > self.max_confidence:
            return False
        if self.created_from is not None and bill.created_at < self.created_from:
            return False
        if self.created_to is not None and bill.created_at > self.created_to:
            return False
        if self.has_flags is not None and has_flags(bill) != self.has_flags:
            return False
        return True


def has_flags(bill: Bill) -> bool:
    findings = bill.validation.findings if bill.validation is not None else ()
    return bool(findings) or bool(bill.ambiguous_fields())


@dataclass
class QueuePage:
    bills: List[Bill]
    total: int
    page: int
    per_page: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.per_page - 1) // self.per_page if self.per_page else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'page': self.page,
            'per_page': self.per_page,
            'total_pages': self.total_pages,
            'bills': [queue_row(b) for b in self.bills],
        }


@dataclass
class QueueStats:
    total: int = 0
    by_state: Dict[str, int] = field(default_factory=dict)
    average_confidence: float = 0.0
    flagged: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'by_state': dict(self.by_state),
            'average_confidence': round(self.average_confidence, 4),
            'flagged': self.flagged,
        }


def queue_row(bill: Bill) -> Dict[str, Any]:
    """Compact listing of a bill."""
    findings = bill.validation.findings if bill.validation is not None else ()
    return {
        'bill_id': bill.bill_id,
        'vendor_id': bill.vendor_id,
        'invoice_number': bill.invoice_number,
        'state': bill.state.value,
        'confidence': round(bill.overall_confidence, 4),
        'hard_findings': sum(1 for f in findings if f.severity.value == "Hard"),
        'soft_findings': sum(1 for f in findings if f.severity.value == "Soft"),
        'ambiguous_fields': bill.ambiguous_fields(),
        'created_at': bill.created_at.isoformat(),
    }


class ReviewQueue:
    """
    Example:
        >>> queue = ReviewQueue(repository)
        >>> page = queue.query(QueueFilter(state=BillState.PENDING), sort=SortField.PRIORITY)
        >>> [row['bill_id'] for row in page.to_dict()['bills']]
    """

    def __init__(self, repository: Repository, store_id: Optional[str] = None) -> None:
        self.repository = repository
        self.store_id = store_id
        self.per_page = get_config("review.queue.per_page", 25)

    def _bills(self) -> List[Bill]:
        return self.repository.list_bills(self.store_id)

    def query(self, filters: Optional[QueueFilter] = None, sort: SortField = SortField.PRIORITY,
              descending: bool = False, page: int = 1, per_page: Optional[int] = None) -> QueuePage:
        """
        One page of the queue.

        Args:
            filters: Filter to apply; everything when None.
            sort: Sort key. PRIORITY is ascending confidence, then age.
            descending: Reverse the order.
            page: 1-based page number.
            per_page: Page size; configured default when None.
        """
        filters = filters or QueueFilter()
        per_page = max(1, per_page or self.per_page)
        page = max(1, page)

        bills = [b for b in self._bills() if filters.matches(b)]
        bills.sort(key=_sort_key(SortField(sort)), reverse=descending)

        start = (page - 1) * per_page
        return QueuePage(bills=bills[start:start + per_page], total=len(bills), page=page, per_page=per_page)

    def next_bill(self, vendor_id: Optional[str] = None) -> Optional[Bill]:
        """Pending bill with the lowest confidence."""
        result = self.query(QueueFilter(state=BillState.PENDING, vendor_id=vendor_id),
                            sort=SortField.PRIORITY, per_page=1)
        return result.bills[0] if result.bills else None

    def stats(self) -> QueueStats:
        bills = self._bills()
        stats = QueueStats(total=len(bills))
        for state in BillState:
            stats.by_state[state.value] = 0
        for bill in bills:
            stats.by_state[bill.state.value] += 1
            if has_flags(bill):
                stats.flagged += 1
        if bills:
            stats.average_confidence = sum(b.overall_confidence for b in bills) / len(bills)
        return stats


def _sort_key(sort: SortField):
    if sort == SortField.CREATED_AT:
        return lambda b: (b.created_at, b.bill_id)
    if sort == SortField.UPDATED_AT:
        return lambda b: (b.updated_at, b.bill_id)
    # CONFIDENCE and PRIORITY both put the least confident bill first
    return lambda b: (b.overall_confidence, b.created_at, b.bill_id)
