"""
Review State Machine.

    Pending  --start_review-->  InReview
    InReview --approve-->       Approved
    InReview --reject-->        Rejected
    Approved --reopen-->        Reopened
    Reopened --start_review-->  InReview

Approved and Rejected are terminal except for reopening an approved
bill. Anything not in the table raises InvalidTransitionError.
"""

from typing import Dict, Tuple

from billflow.bill import BillState
from billflow.utils.exceptions import InvalidTransitionError

TRANSITIONS: Dict[Tuple[BillState, str], BillState] = {
    (BillState.PENDING, "start_review"): BillState.IN_REVIEW,
    (BillState.REOPENED, "start_review"): BillState.IN_REVIEW,
    (BillState.IN_REVIEW, "approve"): BillState.APPROVED,
    (BillState.IN_REVIEW, "reject"): BillState.REJECTED,
    (BillState.APPROVED, "reopen"): BillState.REOPENED,
}

# States in which review edits are allowed (after an implicit start_review)
EDITABLE_STATES = frozenset({BillState.PENDING, BillState.IN_REVIEW, BillState.REOPENED})


def transition(bill_id: str, state: BillState, action: str) -> BillState:
    """
    Next state for an action.

    Raises:
        InvalidTransitionError: The action is not allowed from ``state``.
    """
    target = TRANSITIONS.get((state, action))
    if target is None:
        raise InvalidTransitionError(bill_id, state.value, action)
    return target


def can_transition(state: BillState, action: str) -> bool:
    return (state, action) in TRANSITIONS
