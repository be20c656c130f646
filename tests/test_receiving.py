"""
Tests for receiving summaries and cost policies.
"""
import pytest

from billflow.bill import Bill, BillState, LineItem, LineStatus
from billflow.receiving.summary import CostPolicy, build_summary, posting_blockers, propose_cost
from billflow.utils.exceptions import ProductNotFoundError, ValidationBlockedError


def approved_bill(*lines):
    bill = Bill.create("doc_1", "main", vendor_id="acme")
    bill.state = BillState.APPROVED
    bill.line_items = list(lines)
    return bill


def line(line_id, product_id, quantity, unit_price, unit_conversion=1.0, status=LineStatus.MATCHED):
    return LineItem(line_id=line_id, position=0, raw_sku="V-1", normalized_sku="V1", quantity=quantity,
                    unit_price=unit_price, line_total=round(quantity * unit_price, 2) if quantity else None,
                    matched_product_id=product_id, status=status, unit_conversion=unit_conversion)


@pytest.mark.parametrize("value,expected", [
    ("AverageCost", CostPolicy.AVERAGE_COST),
    ("average_cost", CostPolicy.AVERAGE_COST),
    ("last-cost", CostPolicy.LAST_COST),
    ("VENDORCOST", CostPolicy.VENDOR_COST),
    (CostPolicy.NO_UPDATE, CostPolicy.NO_UPDATE),
])
def test_cost_policy_parse(value, expected):
    """Policies parse from enum values and snake case"""
    assert CostPolicy.parse(value) == expected


def test_cost_policy_parse_rejects_unknown():
    with pytest.raises(ValueError):
        CostPolicy.parse("FifoCost")


def test_propose_cost():
    """Each policy's proposal for 10 on hand at 20 receiving 2 at 25"""
    assert propose_cost(CostPolicy.AVERAGE_COST, 20.0, 25.0, 10, 2) == pytest.approx(20.8333, abs=1e-4)
    assert propose_cost(CostPolicy.LAST_COST, 20.0, 25.0, 10, 2) == 25.0
    assert propose_cost(CostPolicy.VENDOR_COST, 20.0, 25.0, 10, 2) == 25.0
    assert propose_cost(CostPolicy.NO_UPDATE, 20.0, 25.0, 10, 2) == 20.0


def test_average_cost_with_nothing_on_hand():
    """Without stock the vendor cost is taken as is"""
    assert propose_cost(CostPolicy.AVERAGE_COST, 10.0, 12.0, 0, 0) == 12.0


def test_build_summary(catalog):
    """Quantities and costs per line, with totals"""
    bill = approved_bill(line("line_a", "prod_widget", 2, 25.0), line("line_b", "prod_gadget", 5, 10.0))

    summary = build_summary(bill, catalog, "AverageCost", posted_by="alice")

    widget, gadget = summary.lines
    assert widget.old_quantity == 10
    assert widget.new_quantity == 12
    assert widget.new_cost == pytest.approx(20.8333, abs=1e-4)
    assert gadget.new_cost == pytest.approx(10.0)
    assert summary.lines_posted == 2
    assert summary.total_items == 7
    assert summary.total_cost == 100.0
    assert summary.to_dict()['posted_by'] == "alice"


def test_unit_conversion(catalog):
    """Vendor units are converted to internal units and cost per internal unit"""
    bill = approved_bill(line("line_a", "prod_bolt", 1, 24.0, unit_conversion=12.0))

    received = build_summary(bill, catalog, CostPolicy.VENDOR_COST).lines[0]

    assert received.received_qty == 12.0
    assert received.new_cost == pytest.approx(2.0)


@pytest.mark.parametrize("lines,code", [
    ((), "NoLineItems"),
    ((line("line_a", None, 2, 25.0, status=LineStatus.UNMATCHED),), "UnmatchedLineItem"),
    ((line("line_a", "prod_widget", 0, 25.0),), "InvalidLineQuantity"),
])
def test_posting_blockers(catalog, lines, code):
    """Bills that cannot be received are refused with the blocking code"""
    bill = approved_bill(*lines)
    assert code in posting_blockers(bill)

    with pytest.raises(ValidationBlockedError) as excinfo:
        build_summary(bill, catalog, "AverageCost")
    assert code in excinfo.value.details['findings']


def test_missing_product(catalog):
    """A matched product deleted from the catalog cannot be received"""
    bill = approved_bill(line("line_a", "prod_gone", 1, 5.0))

    with pytest.raises(ProductNotFoundError):
        build_summary(bill, catalog, "AverageCost")
