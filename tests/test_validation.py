"""
Tests for the validation rules.
"""
import random
from datetime import date, timedelta

import pytest

from billflow.bill import Bill, BillState, LineItem, LineStatus, line_path
from billflow.extraction.candidates import Evidence, EvidenceKind, FieldCandidate
from billflow.extraction.lexicon import FIELD_SPECS
from billflow.review.case import ReviewCase
from billflow.utils.exceptions import ValidationBlockedError
from billflow.validation.engine import ValidationEngine
from billflow.validation.result import Finding, Severity
from billflow.validation.rules import ValidationSettings, total_math

GOOD_VALUES = {
    'vendor_name': "ACME Supply Co",
    'invoice_number': "INV-1001",
    'invoice_date': date(2024, 1, 15),
    'subtotal': 100.0,
    'tax': 8.0,
    'total': 108.0,
}


def make_candidate(name, value, raw_text=None, confidence=0.9, human=False):
    kind = EvidenceKind.HUMAN if human else EvidenceKind.FORMAT_PARSE
    return FieldCandidate.create(
        field_name=name,
        field_type=FIELD_SPECS[name].field_type,
        raw_text=raw_text or str(value),
        value=value,
        confidence=confidence,
        evidence=[Evidence(kind, 1.0)],
    )


def make_bill(lines=(), **overrides):
    """Bill with one selected candidate per header value; None leaves a field empty"""
    bill = Bill.create("doc_1", "main", vendor_id="acme")
    values = dict(GOOD_VALUES, **overrides)
    for name, value in values.items():
        if value is None:
            continue
        candidate = value if isinstance(value, FieldCandidate) else make_candidate(name, value)
        bill.add_candidate(name, candidate)
        bill.select(name, candidate.candidate_id)
    bill.line_items = list(lines)
    return bill


def matched_line(line_id, quantity, unit_price, line_total, position=0):
    return LineItem(line_id=line_id, position=position, raw_sku="WID-100", normalized_sku="WID100",
                    quantity=quantity, unit_price=unit_price, line_total=line_total,
                    matched_product_id="prod_widget", status=LineStatus.MATCHED)


def test_clean_bill_has_no_findings(validation):
    """A consistent bill passes every rule"""
    bill = make_bill(lines=[matched_line("line_a", 2, 25.0, 50.0),
                            matched_line("line_b", 5, 10.0, 50.0, position=1)])

    result = validation.validate(bill)

    assert result.findings == ()
    assert not result.has_hard


def test_total_math_error(validation):
    """Subtotal plus tax must equal the total"""
    result = validation.validate(make_bill(total=118.0))

    assert result.has_hard
    assert result.codes == ["TotalMathError"]
    assert result.hard[0].field_paths == ('subtotal', 'tax', 'total')


def test_total_math_off_by_a_cent(validation):
    result = validation.validate(make_bill(subtotal=100.0, tax=8.25, total=108.26))

    assert result.codes == ["TotalMathError"]


def test_total_math_tolerance():
    """Differences within half a cent are accepted"""
    settings = ValidationSettings()
    assert list(total_math(make_bill(total=108.004), settings)) == []
    assert len(list(total_math(make_bill(total=108.01), settings))) == 1


def test_total_math_without_tax(validation):
    """A missing tax counts as zero"""
    result = validation.validate(make_bill(tax=None, total=100.0))
    assert "TotalMathError" not in result.codes


def test_missing_required_field(validation):
    """Each empty required field is a hard finding"""
    result = validation.validate(make_bill(total=None, invoice_date=None))

    missing = [f for f in result.hard if f.code == "MissingRequiredField"]
    assert sorted(f.field_paths[0] for f in missing) == ['invoice_date', 'total']


def test_future_invoice_date(validation):
    """Invoice dates after today block approval"""
    result = validation.validate(make_bill(invoice_date=date(2024, 7, 1)))

    assert result.codes == ["FutureInvoiceDate"]
    assert result.for_field('invoice_date')[0].severity == Severity.HARD


def test_selection_for_wrong_field_is_contradictory(validation):
    """A slot may only select candidates generated for it"""
    bill = make_bill(total=make_candidate('subtotal', 108.0))

    result = validation.validate(bill)

    assert "ContradictoryField" in [f.code for f in result.hard]


def test_same_candidate_in_two_slots_is_contradictory(validation):
    """One reading cannot be two fields"""
    bill = make_bill()
    bill.slot('tax').selected_id = bill.fields['subtotal'].selected_id

    result = validation.validate(bill)

    paths = [f.field_paths for f in result.hard if f.code == "ContradictoryField"]
    assert ('subtotal', 'tax') in paths


def test_currency_conflicting_with_printed_total(validation):
    """Currency must agree with the symbol printed on the total"""
    bill = make_bill(currency="EUR", total=make_candidate('total', 108.0, raw_text="$108.00"))

    result = validation.validate(bill)

    contradictory = [f for f in result.hard if f.code == "ContradictoryField"]
    assert contradictory[0].field_paths == ('currency', 'total')


def test_invoice_number_format(validation):
    """Odd invoice numbers only warn"""
    result = validation.validate(make_bill(invoice_number="??"))

    assert result.codes == ["InvoiceNumberFormat"]
    assert not result.has_hard


def test_low_confidence_field(validation):
    """Machine readings below the threshold are flagged; human values are not"""
    bill = make_bill(vendor_name=make_candidate('vendor_name', "ACME", confidence=0.3),
                     invoice_number=make_candidate('invoice_number', "INV-1", confidence=0.3, human=True))

    result = validation.validate(bill)

    assert result.codes == ["LowConfidenceField"]
    assert result.soft[0].field_paths == ('vendor_name',)


def test_missing_vendor_name(validation):
    """Invoice number without a vendor name warns in addition to the hard finding"""
    result = validation.validate(make_bill(vendor_name=None))

    assert "MissingVendorName" in [f.code for f in result.soft]
    assert "MissingRequiredField" in [f.code for f in result.hard]


def test_ambiguous_fields_are_flagged(validation):
    """Fields awaiting a decision produce a soft finding"""
    bill = make_bill()
    bill.fields['invoice_number'].ambiguous = True

    result = validation.validate(bill)

    assert result.codes == ["AmbiguousCandidate"]


def test_line_total_mismatch(validation):
    """Quantity times unit price must match the printed line total"""
    bill = make_bill(lines=[matched_line("line_a", 2, 25.0, 60.0), matched_line("line_b", 4, 10.0, 40.0, 1)])

    result = validation.validate(bill)

    finding = next(f for f in result.findings if f.code == "LineTotalMismatch")
    assert finding.field_paths == (line_path("line_a", 'line_total'),)
    assert finding.severity == Severity.SOFT


def test_line_items_sum_mismatch(validation):
    """Line totals should add up to the subtotal"""
    bill = make_bill(lines=[matched_line("line_a", 2, 25.0, 50.0), matched_line("line_b", 4, 10.0, 40.0, 1)])

    result = validation.validate(bill)

    assert result.codes == ["LineItemsSumMismatch"]


def test_unmatched_line_item(validation):
    """Lines without a product warn on their SKU"""
    line = LineItem(line_id="line_a", position=0, raw_sku="NOPE-1", normalized_sku="NOPE1",
                    quantity=10, unit_price=10.0, line_total=100.0)

    result = validation.validate(make_bill(lines=[line]))

    assert result.codes == ["UnmatchedLineItem"]
    assert result.for_field(line_path("line_a", 'sku'))


def test_result_is_stamped_with_version(validation):
    """The result records the bill version it was computed for"""
    bill = make_bill()
    bill.version = 3

    assert validation.validate(bill).bill_version == 3
    assert validation.validate(bill, version=4).bill_version == 4


def test_custom_rules():
    """Extra rules run after the defaults"""
    def always_warn(bill, settings):
        return [Finding(Severity.SOFT, "Custom", "custom rule", ())]

    engine = ValidationEngine(settings=ValidationSettings(today=lambda: date(2024, 6, 1)),
                              extra_rules=[always_warn])

    assert engine.validate(make_bill()).codes == ["Custom"]


@pytest.mark.parametrize("number", ["INV-1001", "2024/0042", "A1B"])
def test_valid_invoice_numbers(validation, number):
    """Common invoice number shapes pass the format check"""
    assert "InvoiceNumberFormat" not in validation.validate(make_bill(invoice_number=number)).codes


REQUIRED_FIELDS = ['vendor_name', 'invoice_number', 'invoice_date', 'total']


def random_bill_with_hard_finding(rng):
    """Consistent random bill with one hard rule broken"""
    subtotal = round(rng.uniform(1.0, 5000.0), 2)
    tax = round(subtotal * rng.choice([0.0, 0.05, 0.08, 0.2]), 2)
    values = {
        'subtotal': subtotal,
        'tax': tax,
        'total': round(subtotal + tax, 2),
        'invoice_number': f"INV-{rng.randint(1, 99999)}",
        'invoice_date': date(2024, 1, 1) + timedelta(days=rng.randint(0, 300)),
    }

    broken = rng.choice(["TotalMathError", "MissingRequiredField", "FutureInvoiceDate", "ContradictoryField"])
    if broken == "TotalMathError":
        values['total'] = round(values['total'] + rng.choice([-1, 1]) * rng.uniform(0.01, 50.0), 2)
    elif broken == "MissingRequiredField":
        values[rng.choice(REQUIRED_FIELDS)] = None
    elif broken == "FutureInvoiceDate":
        values['invoice_date'] = date.today() + timedelta(days=rng.randint(1, 365))
    else:
        values['total'] = make_candidate('subtotal', values['total'])

    bill = make_bill(**values)
    bill.state = BillState.IN_REVIEW
    return bill, broken


def test_hard_findings_always_block_approval(service):
    """No generated bill with a hard finding can be approved"""
    rng = random.Random(20240115)

    for _ in range(60):
        bill, broken = random_bill_with_hard_finding(rng)
        case = ReviewCase(bill, service.context, actor="alice")

        with pytest.raises(ValidationBlockedError) as excinfo:
            case.approve()

        assert broken in excinfo.value.details['findings']
        assert bill.state == BillState.IN_REVIEW
