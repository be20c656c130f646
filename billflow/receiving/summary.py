"""
Receiving Summary.

Turns an approved, fully matched bill into per-line cost and quantity
proposals. Nothing here touches inventory: the summary is handed to the
inventory/accounting collaborators, which decide whether to apply it.

Cost policies:
    AverageCost   weighted average of the current cost and the vendor cost
    LastCost      the vendor cost of this bill
    VendorCost    the vendor cost of this bill
    NoUpdate      keep the current cost
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from billflow.bill import Bill, LineStatus
from billflow.storage.catalog import SqliteCatalog
from billflow.utils.exceptions import ProductNotFoundError, ValidationBlockedError
from billflow.utils.helpers import round_money, utc_now, to_iso
from billflow.utils.logger import get_logger

logger = get_logger(__name__)


class CostPolicy(str, Enum):
    AVERAGE_COST = "AverageCost"
    LAST_COST = "LastCost"
    VENDOR_COST = "VendorCost"
    NO_UPDATE = "NoUpdate"

    @classmethod
    def parse(cls, value: Union['CostPolicy', str]) -> 'CostPolicy':
        """Accepts enum values ("AverageCost") and snake case ("average_cost")."""
        if isinstance(value, cls):
            return value
        key = str(value).replace('_', '').replace('-', '').lower()
        for policy in cls:
            if policy.value.lower() == key:
                return policy
        raise ValueError(f"Invalid cost policy: {value}")


def propose_cost(policy: CostPolicy, current_cost: float, vendor_cost: float,
                 current_qty: float, received_qty: float) -> float:
    """New unit cost for a product under a cost policy."""
    if policy == CostPolicy.AVERAGE_COST:
        total_qty = current_qty + received_qty
        if total_qty <= 0:
            return vendor_cost
        return (current_cost * current_qty + vendor_cost * received_qty) / total_qty
    if policy == CostPolicy.NO_UPDATE:
        return current_cost
    return vendor_cost


@dataclass
class ReceivingLine:
    line_id: str
    product_id: str
    internal_sku: str
    vendor_sku: str
    received_qty: float
    unit_price: float
    line_total: float
    old_quantity: float
    new_quantity: float
    old_cost: float
    new_cost: float
    alias_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'line_id': self.line_id,
            'product_id': self.product_id,
            'internal_sku': self.internal_sku,
            'vendor_sku': self.vendor_sku,
            'received_qty': self.received_qty,
            'unit_price': self.unit_price,
            'line_total': self.line_total,
            'old_quantity': self.old_quantity,
            'new_quantity': self.new_quantity,
            'old_cost': self.old_cost,
            'new_cost': self.new_cost,
            'alias_id': self.alias_id,
        }


@dataclass
class ReceivingSummary:
    """
    Attributes:
        bill_id: Posted bill
        cost_policy: Policy the cost proposals follow
        lines: One proposal per line item
        lines_posted: Number of lines
        total_items: Received quantity in internal units
        total_cost: Sum of the line totals
        posted_at: When the summary was produced
        posted_by: Actor that posted
    """
    bill_id: str
    cost_policy: CostPolicy
    lines: List[ReceivingLine] = field(default_factory=list)
    posted_by: str = "system"
    posted_at: datetime = field(default_factory=utc_now)

    @property
    def lines_posted(self) -> int:
        return len(self.lines)

    @property
    def total_items(self) -> float:
        return sum(line.received_qty for line in self.lines)

    @property
    def total_cost(self) -> float:
        return round_money(sum(line.line_total for line in self.lines)) or 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'bill_id': self.bill_id,
            'cost_policy': self.cost_policy.value,
            'lines_posted': self.lines_posted,
            'total_items': self.total_items,
            'total_cost': self.total_cost,
            'posted_at': to_iso(self.posted_at),
            'posted_by': self.posted_by,
            'lines': [line.to_dict() for line in self.lines],
        }


def posting_blockers(bill: Bill) -> List[str]:
    """Finding codes that keep a bill from being received."""
    codes = []
    if not bill.line_items:
        codes.append("NoLineItems")
    if any(line.status == LineStatus.UNMATCHED or not line.matched_product_id for line in bill.line_items):
        codes.append("UnmatchedLineItem")
    if any(line.quantity is None or line.quantity <= 0 for line in bill.line_items):
        codes.append("InvalidLineQuantity")
    return codes


def build_summary(bill: Bill, catalog: SqliteCatalog, policy: Union[CostPolicy, str],
                  posted_by: str = "system") -> ReceivingSummary:
    """
    Build the receiving summary of an approved bill.

    Raises:
        ValidationBlockedError: Lines are missing, unmatched or have no quantity.
        ProductNotFoundError: A matched product no longer exists.
    """
    policy = CostPolicy.parse(policy)
    blockers = posting_blockers(bill)
    if blockers:
        raise ValidationBlockedError(bill.bill_id, blockers)

    summary = ReceivingSummary(bill_id=bill.bill_id, cost_policy=policy, posted_by=posted_by)
    for line in bill.line_items:
        product = catalog.get(line.matched_product_id)
        if product is None:
            raise ProductNotFoundError(line.matched_product_id)

        received = line.quantity * line.unit_conversion
        # Vendor price is per vendor unit
        vendor_cost = (line.unit_price or 0.0) / line.unit_conversion if line.unit_conversion else 0.0
        new_cost = propose_cost(policy, product.cost, vendor_cost, product.quantity_on_hand, received)
        line_total = line.line_total if line.line_total is not None else (line.unit_price or 0.0) * line.quantity

        summary.lines.append(ReceivingLine(
            line_id=line.line_id,
            product_id=product.product_id,
            internal_sku=product.sku,
            vendor_sku=line.raw_sku,
            received_qty=received,
            unit_price=line.unit_price or 0.0,
            line_total=round_money(line_total),
            old_quantity=product.quantity_on_hand,
            new_quantity=product.quantity_on_hand + received,
            old_cost=product.cost,
            new_cost=round(new_cost, 4),
            alias_id=line.alias_id,
        ))

    logger.info(
        f"Receiving summary for bill {bill.bill_id}: {summary.lines_posted} lines, "
        f"{summary.total_items:g} items, {summary.total_cost:.2f} ({policy.value})"
    )
    return summary
