"""
Validation Rule Engine.

Runs every rule over a bill and returns a fresh ValidationResult. The
result always replaces the previous one as a whole.
"""

from typing import Callable, Iterable, List, Optional, Sequence

from billflow.bill import Bill
from billflow.utils.logger import get_logger
from .result import Finding, ValidationResult
from .rules import DEFAULT_RULES, ValidationSettings

logger = get_logger(__name__)

Rule = Callable[[Bill, ValidationSettings], Iterable[Finding]]


class ValidationEngine:
    """
    Example:
        >>> engine = ValidationEngine()
        >>> result = engine.validate(bill)
        >>> result.has_hard
        True
        >>> result.codes
        ['TotalMathError']
    """

    def __init__(
        self,
        settings: Optional[ValidationSettings] = None,
        rules: Optional[Sequence[Rule]] = None,
        extra_rules: Sequence[Rule] = ()
    ) -> None:
        self.settings = settings or ValidationSettings.from_config()
        self.rules: List[Rule] = list(rules if rules is not None else DEFAULT_RULES) + list(extra_rules)

    def validate(self, bill: Bill, version: Optional[int] = None) -> ValidationResult:
        """
        Validate a bill.

        Args:
            bill: Bill to check.
            version: Bill version the result belongs to; current version
                when omitted.
        """
        findings: List[Finding] = []
        for rule in self.rules:
            findings.extend(rule(bill, self.settings))

        result = ValidationResult(
            findings=tuple(findings),
            bill_version=bill.version if version is None else version,
        )
        if result.has_hard:
            logger.debug(f"Bill {bill.bill_id}: hard findings {[f.code for f in result.hard]}")
        return result
