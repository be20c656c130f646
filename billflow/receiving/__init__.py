"""
Receiving Module for BillFlow.

Cost and quantity proposals for approved bills. No inventory side
effects.
"""

from .summary import (
    CostPolicy, ReceivingLine, ReceivingSummary, build_summary, posting_blockers, propose_cost,
)

__all__ = [
    'CostPolicy',
    'ReceivingLine',
    'ReceivingSummary',
    'build_summary',
    'posting_blockers',
    'propose_cost',
]
