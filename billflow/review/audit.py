"""
Audit Trail.

Every review action appends one immutable AuditEntry. Entries that
change the bill carry an ``undo`` payload (the bill snapshot taken
before the action plus any side effects to revert), which is what
``undo`` replays.

Action classes:
    undoable   field, match, mask, zone and re-OCR edits
    barrier    lifecycle moves (approve, reject, reopen); undo never
               reaches past them
    neutral    read-only or bookkeeping (locate_on_page, set_mode,
               start_review, undo itself); skipped when looking for the
               action to undo
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from billflow.utils.helpers import utc_now, to_iso, from_iso


class ActionKind(str, Enum):
    CREATE = "create"
    START_REVIEW = "start_review"
    SET_MODE = "set_mode"
    ACCEPT_FIELD = "accept_field"
    EDIT_FIELD = "edit_field"
    LOCATE_ON_PAGE = "locate_on_page"
    TARGETED_REOCR = "targeted_reocr"
    ADD_MASK = "add_mask"
    EDIT_ZONE = "edit_zone"
    ACCEPT_MATCH = "accept_match"
    MATCH_LINE = "match_line"
    CREATE_PRODUCT = "create_product"
    UNDO = "undo"
    APPROVE = "approve"
    REJECT = "reject"
    REOPEN = "reopen"
    POST_RECEIVING = "post_receiving"


UNDOABLE_ACTIONS = frozenset({
    ActionKind.ACCEPT_FIELD,
    ActionKind.EDIT_FIELD,
    ActionKind.TARGETED_REOCR,
    ActionKind.ADD_MASK,
    ActionKind.EDIT_ZONE,
    ActionKind.ACCEPT_MATCH,
    ActionKind.MATCH_LINE,
    ActionKind.CREATE_PRODUCT,
})

BARRIER_ACTIONS = frozenset({
    ActionKind.CREATE,
    ActionKind.APPROVE,
    ActionKind.REJECT,
    ActionKind.REOPEN,
    ActionKind.POST_RECEIVING,
})


@dataclass(frozen=True)
class AuditEntry:
    """
    One immutable audit record.

    Attributes:
        action: What happened
        entity_type: "bill", "field", "line_item", "mask", "zone" or "product"
        entity_id: Id of the entity (field path for fields)
        actor: Who did it
        before: Value before the action
        after: Value after the action
        reason: Mandatory for reject/reopen, optional otherwise
        undo: Snapshot and side effects needed to revert the action
        undoes: Sequence number of the entry an undo reverted
        seq: Position in the bill's log, assigned by storage
    """
    action: ActionKind
    entity_type: str
    entity_id: str
    actor: str
    before: Any = None
    after: Any = None
    reason: Optional[str] = None
    undo: Optional[Dict[str, Any]] = None
    undoes: Optional[int] = None
    timestamp: datetime = field(default_factory=utc_now)
    seq: Optional[int] = None

    @property
    def undoable(self) -> bool:
        return self.action in UNDOABLE_ACTIONS and self.undo is not None

    @property
    def barrier(self) -> bool:
        return self.action in BARRIER_ACTIONS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'actor': self.actor,
            'before': self.before,
            'after': self.after,
            'reason': self.reason,
            'undo': self.undo,
            'undoes': self.undoes,
            'timestamp': to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEntry':
        return cls(
            action=ActionKind(data['action']),
            entity_type=data.get('entity_type', 'bill'),
            entity_id=data.get('entity_id', ''),
            actor=data.get('actor', 'system'),
            before=data.get('before'),
            after=data.get('after'),
            reason=data.get('reason'),
            undo=data.get('undo'),
            undoes=data.get('undoes'),
            timestamp=from_iso(data.get('timestamp')) or utc_now(),
            seq=data.get('seq'),
        )

    def summary(self) -> Dict[str, Any]:
        """Entry without the undo payload, for display."""
        data = self.to_dict()
        data.pop('undo')
        data['seq'] = self.seq
        return data


def find_undo_target(entries: List[AuditEntry]) -> Optional[AuditEntry]:
    """
    Most recent undoable entry that has not been undone yet.

    Walks back from the end of the log; stops at the first barrier.
    Entries without an undo payload (a timed out re-OCR) changed nothing
    and are skipped.
    """
    undone = {e.undoes for e in entries if e.action == ActionKind.UNDO and e.undoes is not None}
    for entry in reversed(entries):
        if entry.barrier:
            return None
        if entry.seq in undone or not entry.undoable:
            continue
        return entry
    return None
