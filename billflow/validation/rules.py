"""
Validation Rules.

Each rule is a plain function ``rule(bill, settings) -> Iterable[Finding]``.
Hard findings block approval; soft findings are warnings.

Hard:
    TotalMathError        subtotal + tax != total beyond tolerance
    MissingRequiredField  vendor name, invoice number, date or total empty
    FutureInvoiceDate     invoice date after today
    ContradictoryField    selection that cannot be true at the same time

Soft:
    InvoiceNumberFormat   invoice number does not look like one
    LowConfidenceField    selected header value below the confidence threshold
    MissingVendorName     invoice number present but vendor name empty
    AmbiguousCandidate    tie that needs a reviewer decision
    LineTotalMismatch     quantity x unit price != line total
    LineItemsSumMismatch  line totals do not add up to the subtotal
    UnmatchedLineItem     line without a catalog product
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable, List, Pattern

from config import get_config
from billflow.bill import Bill, LineStatus, line_path, parse_line_path
from billflow.extraction.lexicon import HEADER_FIELDS
from billflow.extraction.normalizers import detect_currency
from .result import Finding, Severity


@dataclass
class ValidationSettings:
    total_tolerance: float = 0.005
    line_tolerance: float = 0.02
    required_fields: List[str] = field(default_factory=lambda: ['vendor_name', 'invoice_number',
                                                                'invoice_date', 'total'])
    confidence_threshold: float = 0.6
    invoice_number_pattern: Pattern = re.compile(r'^[A-Z0-9][A-Z0-9\-/#.]{2,24}$')
    today: Callable[[], date] = date.today

    @classmethod
    def from_config(cls) -> 'ValidationSettings':
        defaults = cls()
        return cls(
            total_tolerance=get_config("validation.total_tolerance", defaults.total_tolerance),
            line_tolerance=get_config("validation.line_tolerance", defaults.line_tolerance),
            required_fields=list(get_config("validation.required_fields", defaults.required_fields)),
            confidence_threshold=get_config("validation.confidence_threshold", defaults.confidence_threshold),
            invoice_number_pattern=re.compile(
                get_config("validation.invoice_number_pattern", defaults.invoice_number_pattern.pattern)
            ),
        )


def _hard(code: str, message: str, *paths: str) -> Finding:
    return Finding(Severity.HARD, code, message, tuple(paths))


def _soft(code: str, message: str, *paths: str) -> Finding:
    return Finding(Severity.SOFT, code, message, tuple(paths))


def _empty(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


# =============================================================================
# HARD RULES
# =============================================================================

def total_math(bill: Bill, settings: ValidationSettings) -> Iterable[Finding]:
    subtotal, tax, total = bill.value('subtotal'), bill.value('tax'), bill.value('total')
    if subtotal is None or total is None:
        return []
    tax = tax or 0.0
    difference = round(subtotal + tax - total, 6)
    if abs(difference) > settings.total_tolerance:
        return [_hard(
            "TotalMathError",
            f"Subtotal {subtotal:.2f} + tax {tax:.2f} = {subtotal + tax:.2f}, "
            f"but total is {total:.2f} (off by {abs(difference):.2f})",
            'subtotal', 'tax', 'total',
        )]
    return []


def required_fields(bill: Bill, settings: ValidationSettings) -> Iterable[Finding]:
    return [
        _hard("MissingRequiredField", f"Required field '{name}' is empty", name)
        for name in settings.required_fields
        if _empty(bill.value(name))
    ]


def future_invoice_date(bill: Bill, settings: ValidationSettings) -> Iterable[Finding]:
    invoice_date = bill.value('invoice_date')
    if isinstance(invoice_date, date) and invoice_date > settings.today():
        return [_hard("FutureInvoiceDate", f"Invoice date {invoice_date.isoformat()} is in the future",
                      'invoice_date')]
    return []


def contradictory_fields(bill: Bill, settings: ValidationSettings) -> Iterable[Finding]:
    """
    Selections that cannot all hold: a selected candidate that is not on
    the bill, that was generated for another field, or that is selected
    for two fields at once; a currency that conflicts with the symbol
    printed on the total.
    """
    findings = []
    owners = {}
    for name, slot in sorted(bill.fields.items()):
        if slot.selected_id is None:
            continue
        candidate = bill.candidates.get(slot.selected_id)
        parsed = parse_line_path(name)
        expected = f"line.{parsed[1]}" if parsed else name
        if candidate is None:
            findings.append(_hard("ContradictoryField", f"Selected candidate for '{name}' does not exist", name))
        elif candidate.field_name != expected:
            findings.append(_hard(
                "ContradictoryField",
                f"'{name}' selects a candidate generated for '{candidate.field_name}'",
                name,
            ))
        if slot.selected_id in owners:
            findings.append(_hard(
                "ContradictoryField",
                f"The same candidate is selected for '{owners[slot.selected_id]}' and '{name}'",
                owners[slot.selected_id], name,
            ))
        else:
            owners[slot.selected_id] = name

    currency = bill.value('currency')
    total = bill.selected('total')
    if currency and total is not None:
        printed = detect_currency(total.raw_text)
        if printed and printed != currency:
            findings.append(_hard(
                "ContradictoryField",
                f"Currency is {currency} but the total is printed in {printed}",
                'currency', 'total',
            ))
    return findings


# =============================================================================
# SOFT RULES
# =============================================================================

def invoice_number_format(bill: Bill, settings: ValidationSettings) -> Iterable[Finding]:
    number = bill.value('invoice_number')
    if _empty(number):
        return []
    if not settings.invoice_number_pattern.match(str(number).strip().upper()):
        return [_soft("InvoiceNumberFormat", f"Invoice number '{number}' has an unusual format",
                      'invoice_number')]
    return []


def low_confidence(bill: Bill, settings: ValidationSettings) -> Iterable[Finding]:
    findings = []
    for name in HEADER_FIELDS:
        candidate = bill.selected(name)
        if candidate is None or candidate.is_human:
            continue
        if candidate.confidence < settings.confidence_threshold:
            findings.append(_soft(
                "LowConfidenceField",
                f"'{name}' confidence {candidate.confidence:.2f} is below {settings.confidence_threshold:.2f}",
                name,
            ))
    return findings


def missing_vendor_name(bill: Bill, settings: ValidationSettings) -> Iterable[Finding]:
    if not _empty(bill.value('invoice_number')) and _empty(bill.value('vendor_name')):
        return [_soft("MissingVendorName", "Invoice number is present but the vendor name is empty",
                      'vendor_name', 'invoice_number')]
    return []


def ambiguous_candidates(bill: Bill, settings: ValidationSettings) -> Iterable[Finding]:
    return [
        _soft("AmbiguousCandidate", f"'{name}' has tied candidates and needs a decision", name)
        for name in bill.ambiguous_fields()
    ]


def line_totals(bill: Bill, settings: ValidationSettings) -> Iterable[Finding]:
    findings = []
    for line in bill.line_items:
        if line.quantity is None or line.unit_price is None or line.line_total is None:
            continue
        expected = round(line.quantity * line.unit_price, 2)
        if abs(expected - line.line_total) > settings.line_tolerance:
            findings.append(_soft(
                "LineTotalMismatch",
                f"Line {line.position + 1}: {line.quantity:g} x {line.unit_price:.2f} = {expected:.2f}, "
                f"printed {line.line_total:.2f}",
                line_path(line.line_id, 'line_total'),
            ))
    return findings


def line_items_sum(bill: Bill, settings: ValidationSettings) -> Iterable[Finding]:
    subtotal = bill.value('subtotal')
    totals = [line.line_total for line in bill.line_items]
    if subtotal is None or not totals or any(t is None for t in totals):
        return []
    line_sum = round(sum(totals), 2)
    if abs(line_sum - subtotal) > settings.line_tolerance:
        return [_soft("LineItemsSumMismatch",
                      f"Line totals add up to {line_sum:.2f}, subtotal is {subtotal:.2f}", 'subtotal')]
    return []


def unmatched_lines(bill: Bill, settings: ValidationSettings) -> Iterable[Finding]:
    return [
        _soft("UnmatchedLineItem",
              f"Line {line.position + 1} ('{line.raw_sku or line.description}') has no catalog product",
              line_path(line.line_id, 'sku'))
        for line in bill.line_items
        if line.status == LineStatus.UNMATCHED
    ]


DEFAULT_RULES = (
    total_math,
    required_fields,
    future_invoice_date,
    contradictory_fields,
    invoice_number_format,
    low_confidence,
    missing_vendor_name,
    ambiguous_candidates,
    line_totals,
    line_items_sum,
    unmatched_lines,
)
