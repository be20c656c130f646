"""
Tests for the review queue.
"""
from datetime import timedelta

import pytest

from billflow.bill import Bill, BillState
from billflow.extraction.candidates import Evidence, EvidenceKind, FieldCandidate, FieldType
from billflow.review.queue import QueueFilter, ReviewQueue, SortField
from billflow.utils.helpers import utc_now
from billflow.validation.result import Finding, Severity, ValidationResult

START = utc_now() - timedelta(days=1)


def queued_bill(repository, number, confidence, minutes, vendor_id="acme", state=BillState.PENDING,
                store_id="main", flagged=False):
    bill = Bill.create(f"doc_{number}", store_id, vendor_id=vendor_id)
    candidate = FieldCandidate.create("invoice_number", FieldType.STRING, number, number, confidence,
                                      [Evidence(EvidenceKind.FORMAT_PARSE, 1.0)])
    bill.add_candidate("invoice_number", candidate)
    bill.select("invoice_number", candidate.candidate_id)
    bill.state = state
    bill.created_at = START + timedelta(minutes=minutes)
    bill.updated_at = bill.created_at
    findings = (Finding(Severity.SOFT, "LowConfidenceField", "low", ("invoice_number",)),) if flagged else ()
    bill.validation = ValidationResult(findings=findings)
    repository.insert_bill(bill)
    return bill


@pytest.fixture
def bills(repository):
    return {
        'a': queued_bill(repository, "INV-A", 0.9, 0),
        'b': queued_bill(repository, "INV-B", 0.4, 1, flagged=True),
        'c': queued_bill(repository, "INV-C", 0.7, 2, vendor_id="globex"),
        'd': queued_bill(repository, "INV-D", 0.4, 3, state=BillState.APPROVED),
        'e': queued_bill(repository, "INV-E", 0.1, 4, store_id="other"),
    }


def ids(page):
    return [b.bill_id for b in page.bills]


def test_priority_order(repository, bills):
    """Least confident first, oldest first among equals"""
    page = ReviewQueue(repository, "main").query()

    assert ids(page) == [bills[k].bill_id for k in ('b', 'd', 'c', 'a')]


def test_created_at_order_descending(repository, bills):
    """Newest first when reversed"""
    page = ReviewQueue(repository, "main").query(sort=SortField.CREATED_AT, descending=True)

    assert ids(page) == [bills[k].bill_id for k in ('d', 'c', 'b', 'a')]


def test_store_scope(repository, bills):
    """A queue only sees its own store; no store means every store"""
    assert ReviewQueue(repository, "other").query().total == 1
    assert ReviewQueue(repository).query().total == 5


def test_filters(repository, bills):
    """State, vendor, confidence and flag filters combine"""
    queue = ReviewQueue(repository, "main")

    pending = queue.query(QueueFilter(state=BillState.PENDING))
    assert bills['d'].bill_id not in ids(pending)

    assert ids(queue.query(QueueFilter(vendor_id="globex"))) == [bills['c'].bill_id]
    assert ids(queue.query(QueueFilter(min_confidence=0.5, max_confidence=0.8))) == [bills['c'].bill_id]
    assert ids(queue.query(QueueFilter(has_flags=True))) == [bills['b'].bill_id]
    assert bills['b'].bill_id not in ids(queue.query(QueueFilter(has_flags=False)))


def test_created_range_filter(repository, bills):
    """Creation window bounds are inclusive"""
    queue = ReviewQueue(repository, "main")
    window = QueueFilter(created_from=START + timedelta(minutes=1), created_to=START + timedelta(minutes=2))

    assert sorted(ids(queue.query(window, sort=SortField.CREATED_AT))) == sorted(
        [bills['b'].bill_id, bills['c'].bill_id])


def test_pagination(repository, bills):
    """Pages are 1-based and report the total"""
    queue = ReviewQueue(repository, "main")

    first = queue.query(per_page=3)
    second = queue.query(per_page=3, page=2)

    assert first.total == 4
    assert first.total_pages == 2
    assert len(first.bills) == 3
    assert ids(second) == [bills['a'].bill_id]
    assert queue.query(per_page=3, page=5).bills == []


def test_next_bill(repository, bills):
    """The next bill to review is the least confident pending one"""
    queue = ReviewQueue(repository, "main")

    assert queue.next_bill().bill_id == bills['b'].bill_id
    assert queue.next_bill(vendor_id="globex").bill_id == bills['c'].bill_id
    assert queue.next_bill(vendor_id="nobody") is None


def test_stats(repository, bills):
    """Counts per state, flagged bills and mean confidence"""
    stats = ReviewQueue(repository, "main").stats()

    assert stats.total == 4
    assert stats.by_state["Pending"] == 3
    assert stats.by_state["Approved"] == 1
    assert stats.by_state["Rejected"] == 0
    assert stats.flagged == 1
    assert stats.average_confidence == pytest.approx((0.9 + 0.4 + 0.7 + 0.4) / 4)


def test_queue_rows(repository, bills):
    """Serialized pages carry the listing columns"""
    row = ReviewQueue(repository, "main").query(per_page=1).to_dict()['bills'][0]

    assert row['invoice_number'] == "INV-B"
    assert row['soft_findings'] == 1
    assert row['hard_findings'] == 0
