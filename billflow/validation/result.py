"""
Validation Result Data Classes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Tuple

from billflow.utils.helpers import utc_now, to_iso, from_iso


class Severity(str, Enum):
    HARD = "Hard"
    SOFT = "Soft"


@dataclass(frozen=True)
class Finding:
    """
    One validation finding.

    Attributes:
        severity: Hard findings block approval, Soft ones only warn
        code: Stable finding code (e.g. ``TotalMathError``)
        message: Human readable explanation
        field_paths: Affected fields (``total``, ``lines.<id>.quantity``)
    """
    severity: Severity
    code: str
    message: str
    field_paths: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'severity': self.severity.value,
            'code': self.code,
            'message': self.message,
            'field_paths': list(self.field_paths),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Finding':
        return cls(
            severity=Severity(data['severity']),
            code=data['code'],
            message=data.get('message', ''),
            field_paths=tuple(data.get('field_paths', [])),
        )


@dataclass(frozen=True)
class ValidationResult:
    """Complete set of findings for one bill version. Replaced, never merged."""
    findings: Tuple[Finding, ...] = ()
    bill_version: int = 0
    computed_at: datetime = field(default_factory=utc_now)

    @property
    def hard(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.HARD]

    @property
    def soft(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.SOFT]

    @property
    def has_hard(self) -> bool:
        return bool(self.hard)

    @property
    def codes(self) -> List[str]:
        return [f.code for f in self.findings]

    def for_field(self, path: str) -> List[Finding]:
        return [f for f in self.findings if path in f.field_paths]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'findings': [f.to_dict() for f in self.findings],
            'bill_version': self.bill_version,
            'computed_at': to_iso(self.computed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ValidationResult':
        return cls(
            findings=tuple(Finding.from_dict(f) for f in data.get('findings', [])),
            bill_version=int(data.get('bill_version', 0)),
            computed_at=from_iso(data.get('computed_at')) or utc_now(),
        )
