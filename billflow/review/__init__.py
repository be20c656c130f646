"""
Review Module for BillFlow.

Human review of extracted bills:
    - State machine (Pending, InReview, Approved, Rejected, Reopened)
    - Guided and power interaction modes
    - Field, zone, mask and match actions with undo
    - Append-only audit trail
    - Review queue with filters and statistics
"""

from .audit import ActionKind, AuditEntry, find_undo_target
from .case import ReocrOutcome, ReviewCase, ReviewContext
from .locks import LockRegistry
from .queue import QueueFilter, QueuePage, QueueStats, ReviewQueue, SortField
from .state import TRANSITIONS, can_transition, transition

__all__ = [
    'ActionKind',
    'AuditEntry',
    'find_undo_target',
    'ReocrOutcome',
    'ReviewCase',
    'ReviewContext',
    'LockRegistry',
    'QueueFilter',
    'QueuePage',
    'QueueStats',
    'ReviewQueue',
    'SortField',
    'TRANSITIONS',
    'can_transition',
    'transition',
]
