"""
Validation Module for BillFlow.

Hard (blocking) and soft (advisory) checks across header fields, line
items and cross-field relationships.

The bill aggregate stores a ValidationResult, so this package only
exports the result types; the rules and the engine are imported from
``billflow.validation.rules`` and ``billflow.validation.engine``.
"""

from .result import Finding, Severity, ValidationResult

__all__ = ['Finding', 'Severity', 'ValidationResult']
