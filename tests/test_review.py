"""
Tests for the review workflow driven through the bill service.
"""
import threading
from datetime import date

import pytest

from billflow.bill import BillState, LineStatus, ReviewMode
from billflow.layout.geometry import BoundingBox
from billflow.layout.zones import ZoneLabel
from billflow.review.locks import LockRegistry
from billflow.utils.exceptions import (
    AmbiguousCandidateError, CandidateNotFoundError, InvalidFieldValueError, InvalidTransitionError,
    NothingToUndoError, PageNotFoundError, ProductNotFoundError, ReviewModeError, StaleBillVersionError,
    UnknownFieldError, ValidationBlockedError, ZoneNotFoundError,
)
from conftest import PAGE_HEIGHT, PAGE_WIDTH, SlowOcrBackend, png_bytes

# Region around the "Invoice # INV-1001" line
INVOICE_NUMBER_ROW = BoundingBox.from_pixels((40, 100, 600, 140), PAGE_WIDTH, PAGE_HEIGHT)
PO_ROW = BoundingBox.from_pixels((40, 185, 600, 215), PAGE_WIDTH, PAGE_HEIGHT)


def actions(service, bill_id):
    return [entry.action.value for entry in service.audit_trail(bill_id)]


def header_zone(service, bill):
    zones = service.repository.load_zones(bill.document_id).active()
    return next(z for z in zones if z.label == ZoneLabel.HEADER)


def test_uploaded_bill_is_pending(uploaded):
    """A fresh bill waits in the queue with its machine readings"""
    assert uploaded.state == BillState.PENDING
    assert uploaded.version == 1
    assert uploaded.invoice_number == "INV-1001"
    assert uploaded.review_mode == ReviewMode.GUIDED


def test_edit_starts_review(service, uploaded):
    """The first edit moves the bill into review"""
    candidate = service.edit_field(uploaded.bill_id, "vendor_name", "ACME Supply Company")

    bill = service.get_bill(uploaded.bill_id)
    assert bill.state == BillState.IN_REVIEW
    assert bill.value("vendor_name") == "ACME Supply Company"
    assert bill.fields["vendor_name"].selected_id == candidate.candidate_id
    assert bill.fields["vendor_name"].accepted
    assert bill.version == 2
    assert "LowConfidenceField" not in bill.validation.codes
    assert actions(service, uploaded.bill_id) == ["create", "start_review", "edit_field"]


def test_edit_keeps_earlier_candidates(service, uploaded):
    """Edits add a human candidate; machine readings stay available"""
    service.edit_field(uploaded.bill_id, "invoice_number", "INV-1002")

    bill = service.get_bill(uploaded.bill_id)
    values = [c.value for c in bill.slot_candidates("invoice_number")]
    assert values[0] == "INV-1001"
    assert values[-1] == "INV-1002"
    assert bill.selected("invoice_number").is_human


def test_edit_parses_typed_values(service, uploaded):
    service.edit_field(uploaded.bill_id, "invoice_date", "2024-02-01")
    service.edit_field(uploaded.bill_id, "total", "$108.00")

    bill = service.get_bill(uploaded.bill_id)
    assert bill.value("invoice_date") == date(2024, 2, 1)
    assert bill.value("total") == 108.0


@pytest.mark.parametrize("field_name,value", [
    ("invoice_date", "not a date"),
    ("total", "twelve"),
    ("invoice_number", "   "),
])
def test_edit_rejects_unparseable_values(service, uploaded, field_name, value):
    with pytest.raises(InvalidFieldValueError):
        service.edit_field(uploaded.bill_id, field_name, value)

    assert service.get_bill(uploaded.bill_id).version == 1


def test_accept_field(service, uploaded):
    """Accepting confirms the current selection"""
    service.accept_field(uploaded.bill_id, "invoice_number")

    bill = service.get_bill(uploaded.bill_id)
    assert bill.fields["invoice_number"].accepted
    assert bill.invoice_number == "INV-1001"

    with pytest.raises(CandidateNotFoundError):
        service.accept_field(uploaded.bill_id, "invoice_number", "cand_missing")
    with pytest.raises(UnknownFieldError):
        service.accept_field(uploaded.bill_id, "shipping_method")


def test_undo_reverts_last_edit(service, uploaded):
    """Undo restores the previous selection and keeps the history"""
    service.edit_field(uploaded.bill_id, "total", "120.00")
    assert "TotalMathError" in service.get_bill(uploaded.bill_id).validation.codes

    reverted = service.undo(uploaded.bill_id)

    bill = service.get_bill(uploaded.bill_id)
    assert reverted.action.value == "edit_field"
    assert bill.total == 108.0
    assert "TotalMathError" not in bill.validation.codes
    assert [c.value for c in bill.slot_candidates("total")][-1] == 120.0
    assert service.audit_trail(uploaded.bill_id)[-1].undoes == reverted.seq

    with pytest.raises(NothingToUndoError):
        service.undo(uploaded.bill_id)


def test_undo_walks_back_one_action_at_a_time(service, uploaded):
    service.edit_field(uploaded.bill_id, "po_number", "PO-1")
    service.edit_field(uploaded.bill_id, "po_number", "PO-2")

    service.undo(uploaded.bill_id)
    assert service.get_bill(uploaded.bill_id).value("po_number") == "PO-1"
    service.undo(uploaded.bill_id)
    assert service.get_bill(uploaded.bill_id).value("po_number") == "PO-778"


def test_approve_requires_review(service, uploaded):
    with pytest.raises(InvalidTransitionError):
        service.approve(uploaded.bill_id)


def test_approve(service, uploaded):
    """Soft findings do not block approval"""
    service.start_review(uploaded.bill_id)

    bill = service.approve(uploaded.bill_id)

    assert bill.state == BillState.APPROVED
    assert service.get_bill(uploaded.bill_id).state == BillState.APPROVED
    assert not bill.validation.has_hard


def test_hard_findings_block_approval(service, uploaded):
    service.edit_field(uploaded.bill_id, "total", "120.00")

    with pytest.raises(ValidationBlockedError) as excinfo:
        service.approve(uploaded.bill_id)

    assert "TotalMathError" in excinfo.value.details['findings']
    assert service.get_bill(uploaded.bill_id).state == BillState.IN_REVIEW


def test_ambiguous_fields_block_approval(service, uploaded):
    """Ambiguous fields must be decided before approval"""
    bill = service.repository.get_bill(uploaded.bill_id)
    bill.fields["invoice_number"].ambiguous = True
    service.repository.update_bill(bill, bill.version)
    service.start_review(uploaded.bill_id)

    with pytest.raises(AmbiguousCandidateError):
        service.approve(uploaded.bill_id)

    service.accept_field(uploaded.bill_id, "invoice_number")
    assert service.approve(uploaded.bill_id).state == BillState.APPROVED


def test_undo_stops_at_approval(service, uploaded):
    service.edit_field(uploaded.bill_id, "po_number", "PO-1")
    service.approve(uploaded.bill_id)

    with pytest.raises(NothingToUndoError):
        service.undo(uploaded.bill_id)


def test_reject_needs_reason(service, uploaded):
    service.start_review(uploaded.bill_id)

    with pytest.raises(InvalidTransitionError):
        service.reject(uploaded.bill_id, "  ")

    bill = service.reject(uploaded.bill_id, "duplicate scan")
    assert bill.state == BillState.REJECTED
    assert service.audit_trail(uploaded.bill_id)[-1].reason == "duplicate scan"

    with pytest.raises(InvalidTransitionError):
        service.reopen_bill(uploaded.bill_id, "changed my mind")
    with pytest.raises(InvalidTransitionError):
        service.edit_field(uploaded.bill_id, "po_number", "PO-1")


def test_reopen_approved_bill(service, uploaded):
    """A reopened bill goes back into review on the next edit"""
    service.start_review(uploaded.bill_id)
    service.approve(uploaded.bill_id)

    with pytest.raises(InvalidTransitionError):
        service.reopen_bill(uploaded.bill_id, "")
    assert service.reopen_bill(uploaded.bill_id, "wrong PO").state == BillState.REOPENED

    service.edit_field(uploaded.bill_id, "po_number", "PO-779")
    assert service.get_bill(uploaded.bill_id).state == BillState.IN_REVIEW
    assert actions(service, uploaded.bill_id)[-2:] == ["start_review", "edit_field"]


def test_stale_version_is_refused(service, uploaded):
    """Two cases on the same version: the second write loses"""
    first = service.open_case(uploaded.bill_id, actor="alice")
    second = service.open_case(uploaded.bill_id, actor="bob")

    first.edit_field("po_number", "PO-1")
    with pytest.raises(StaleBillVersionError):
        second.edit_field("po_number", "PO-2")

    assert service.get_bill(uploaded.bill_id).value("po_number") == "PO-1"


def test_stale_product_creation_leaves_catalog_untouched(service, uploaded):
    """A product created on a stale version is not stored, so a retry can take the SKU"""
    gadget = uploaded.line_items[1]
    first = service.open_case(uploaded.bill_id, actor="alice")
    second = service.open_case(uploaded.bill_id, actor="bob")

    first.edit_field("po_number", "PO-1")
    with pytest.raises(StaleBillVersionError):
        second.create_product_from_line(gadget.line_id)
    assert service.catalog.find_product(sku="GAD-200") == []

    product_id = service.create_product_from_line(uploaded.bill_id, gadget.line_id)

    assert service.catalog.find_product(sku="GAD-200")[0].product_id == product_id
    assert service.get_bill(uploaded.bill_id).line(gadget.line_id).matched_product_id == product_id


def test_locate_on_page(service, uploaded):
    """Locating a value is logged but does not change the bill"""
    location = service.locate_on_page(uploaded.bill_id, "invoice_number")

    assert location['page_index'] == 0
    assert location['zone_label'] == "Header"
    x1, y1, x2, y2 = location['bbox']
    assert y1 >= 100 and y2 <= 140
    bill = service.get_bill(uploaded.bill_id)
    assert bill.version == 1
    assert bill.state == BillState.PENDING
    assert actions(service, uploaded.bill_id)[-1] == "locate_on_page"


def test_review_items_by_mode(service, uploaded):
    """Guided mode lists what needs attention; power mode lists everything"""
    guided = {item['field'] for item in service.review_items(uploaded.bill_id)}
    assert "vendor_name" in guided
    assert "invoice_number" not in guided

    service.set_mode(uploaded.bill_id, "power")
    power = service.review_items(uploaded.bill_id)
    assert {"vendor_name", "invoice_number", "total"} <= {item['field'] for item in power}
    assert all('candidates' in item for item in power)


def test_targeted_reocr_adds_competing_candidates(service, uploaded, ocr_backend):
    """A new reading competes with the existing selection"""
    ocr_backend.overrides[("high_accuracy", "INV-1001")] = "INV-1007"

    outcome = service.targeted_reocr(uploaded.bill_id, 0, INVOICE_NUMBER_ROW)

    assert outcome.status == "completed"
    assert "invoice_number" in outcome.fields
    assert outcome.candidates >= 1
    bill = service.get_bill(uploaded.bill_id)
    assert bill.invoice_number == "INV-1001"
    values = {c.value for c in bill.slot_candidates("invoice_number")}
    assert {"INV-1001", "INV-1007"} <= values
    assert "high_accuracy" in {call[2] for call in ocr_backend.calls}


def test_targeted_reocr_timeout(service, uploaded, invoice_page):
    """A timed out re-OCR changes nothing but is logged"""
    service.context.orchestrator.backend = SlowOcrBackend(invoice_page[0], delay=0.5)

    outcome = service.targeted_reocr(uploaded.bill_id, 0, INVOICE_NUMBER_ROW, timeout=0.05)

    assert outcome.timed_out
    bill = service.get_bill(uploaded.bill_id)
    assert len(bill.slot_candidates("invoice_number")) == len(uploaded.slot_candidates("invoice_number"))
    last = service.audit_trail(uploaded.bill_id)[-1]
    assert last.action.value == "targeted_reocr"
    assert last.after['status'] == "timeout"
    with pytest.raises(NothingToUndoError):
        service.undo(uploaded.bill_id)


def test_undo_clears_field_first_read_by_reocr(service, ocr_backend, invoice_page):
    """A field that only exists since a re-OCR is empty again after undo"""
    words = invoice_page[0]
    ocr_backend.script([w for w in words if w[1][1] != 190])
    document_id = service.upload_document(png_bytes(invoice_page[1]), "image/png", vendor_hint="acme")
    bill = service.get_bill_for_document(document_id)
    assert bill.value("po_number") is None

    ocr_backend.script(words)
    outcome = service.targeted_reocr(bill.bill_id, 0, PO_ROW)
    assert "po_number" in outcome.fields
    assert service.get_bill(bill.bill_id).value("po_number") == "PO-778"

    service.undo(bill.bill_id)

    reverted = service.get_bill(bill.bill_id)
    assert reverted.value("po_number") is None
    assert not reverted.fields["po_number"].accepted
    assert "PO-778" in [c.value for c in reverted.slot_candidates("po_number")]


def test_targeted_reocr_unknown_page(service, uploaded):
    with pytest.raises(PageNotFoundError):
        service.targeted_reocr(uploaded.bill_id, 3, INVOICE_NUMBER_ROW)


def test_power_actions_need_power_mode(service, uploaded):
    zone = header_zone(service, uploaded)

    with pytest.raises(ReviewModeError):
        service.add_mask(uploaded.bill_id, PO_ROW, page_index=0)
    with pytest.raises(ReviewModeError):
        service.edit_zone(uploaded.bill_id, zone.zone_id, label="Totals")


def test_add_mask_remembered_for_vendor(service, uploaded):
    """Vendor masks apply to later documents of the same vendor; undo revokes them"""
    service.set_mode(uploaded.bill_id, ReviewMode.POWER)

    mask = service.add_mask(uploaded.bill_id, PO_ROW, page_index=0, remember_for_vendor=True, reason="stamp")

    assert mask.vendor_id == "acme"
    assert [m.mask_id for m in service.repository.masks_for("doc_other", "acme")] == [mask.mask_id]
    assert actions(service, uploaded.bill_id)[-1] == "add_mask"

    service.undo(uploaded.bill_id)
    assert service.repository.masks_for("doc_other", "acme") == []


def test_edit_zone_appends_versions(service, uploaded):
    """Zone edits never overwrite; undo appends the old geometry again"""
    service.set_mode(uploaded.bill_id, "power")
    original = header_zone(service, uploaded)
    smaller = BoundingBox(original.bbox.x, original.bbox.y, original.bbox.width, original.bbox.height / 2)

    revised = service.edit_zone(uploaded.bill_id, original.zone_id, bbox=smaller)

    assert revised.version == original.version + 1
    assert revised.supersedes == original.zone_id
    history = service.repository.load_zones(uploaded.document_id)
    assert history.get(original.zone_id) is not None
    assert header_zone(service, uploaded).zone_id == revised.zone_id

    service.undo(uploaded.bill_id)
    restored = header_zone(service, uploaded)
    assert restored.bbox == original.bbox
    assert restored.version == revised.version + 1

    with pytest.raises(ZoneNotFoundError):
        service.edit_zone(uploaded.bill_id, "zone_missing", label="Footer")


def test_accept_match_suggestions(service, uploaded):
    """Accepting a suggestion matches the line and records who did it"""
    widget, gadget = uploaded.line_items
    assert widget.status == LineStatus.UNMATCHED
    assert widget.suggested_match['product_id'] == "prod_widget"

    service.accept_match(uploaded.bill_id, widget.line_id)
    service.accept_match(uploaded.bill_id, gadget.line_id)

    bill = service.get_bill(uploaded.bill_id)
    widget, gadget = bill.line_items
    assert (widget.status, widget.matched_product_id) == (LineStatus.MATCHED, "prod_widget")
    assert (gadget.status, gadget.matched_product_id) == (LineStatus.MATCHED, "prod_gadget")
    assert widget.match_reason['accepted_by'] == "reviewer"
    assert "UnmatchedLineItem" not in bill.validation.codes


def test_match_line_manually(service, uploaded):
    line_id = uploaded.line_items[0].line_id

    service.match_line(uploaded.bill_id, line_id, "prod_bolt")

    line = service.get_bill(uploaded.bill_id).line(line_id)
    assert line.matched_product_id == "prod_bolt"
    assert line.status == LineStatus.MATCHED
    with pytest.raises(ProductNotFoundError):
        service.match_line(uploaded.bill_id, line_id, "prod_missing")


def test_receiving_needs_matched_lines(service, uploaded):
    service.start_review(uploaded.bill_id)
    service.approve(uploaded.bill_id)

    with pytest.raises(ValidationBlockedError) as excinfo:
        service.post_receiving(uploaded.bill_id, "AverageCost")
    assert "UnmatchedLineItem" in excinfo.value.details['findings']


def test_post_receiving(service, uploaded):
    """An approved, fully matched bill posts once"""
    for line in uploaded.line_items:
        service.accept_match(uploaded.bill_id, line.line_id)
    with pytest.raises(InvalidTransitionError):
        service.post_receiving(uploaded.bill_id)
    service.approve(uploaded.bill_id)

    summary = service.post_receiving(uploaded.bill_id, "AverageCost")

    widget = summary.lines[0]
    assert widget.product_id == "prod_widget"
    assert widget.new_cost == pytest.approx(20.8333, abs=1e-4)
    assert summary.total_cost == 100.0
    assert service.get_bill(uploaded.bill_id).receiving is not None

    with pytest.raises(InvalidTransitionError):
        service.post_receiving(uploaded.bill_id, "AverageCost")
    with pytest.raises(NothingToUndoError):
        service.undo(uploaded.bill_id)


def test_lock_registry_forgets_released_keys():
    """Keys are dropped once nobody holds them, also after errors and nesting"""
    locks = LockRegistry()

    with locks.hold("bill_1"):
        with locks.hold("bill_1"):
            assert len(locks) == 1
        assert len(locks) == 1
    assert len(locks) == 0

    with pytest.raises(RuntimeError):
        with locks.hold("bill_2"):
            raise RuntimeError("boom")
    assert len(locks) == 0


def test_lock_registry_serializes_one_key():
    """A waiter keeps the key alive and runs after the holder"""
    locks = LockRegistry()
    order = []
    entered = threading.Event()

    def waiter():
        entered.set()
        with locks.hold("bill_1"):
            order.append("waiter")

    with locks.hold("bill_1"):
        thread = threading.Thread(target=waiter)
        thread.start()
        entered.wait(timeout=5)
        order.append("holder")
    thread.join(timeout=5)

    assert order == ["holder", "waiter"]
    assert len(locks) == 0


def test_service_actions_release_bill_locks(service, uploaded):
    service.edit_field(uploaded.bill_id, "po_number", "PO-1")
    service.accept_field(uploaded.bill_id, "total")

    assert len(service.locks) == 0
