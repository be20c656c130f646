"""
End-to-end tests: upload through extraction, matching, validation and retry.
"""
from datetime import date, timedelta

import pytest

from billflow.bill import BillState, LineStatus
from billflow.input_handler.document import Document, DocumentStatus
from billflow.utils.exceptions import (
    CorruptDocumentError, DocumentNotFoundError, DuplicateInvoiceError, EmptyDocumentError,
    UnsupportedFormatError,
)
from billflow.utils.helpers import to_iso, utc_now
from conftest import invoice_words, png_bytes, render_page


def upload_invoice(service, ocr_backend, vendor_hint="acme", **overrides):
    """Render an invoice, script the OCR backend with it and upload it"""
    words = invoice_words(**overrides)
    ocr_backend.script(words)
    return service.upload_document(png_bytes(render_page(words)), "image/png", vendor_hint=vendor_hint)


def test_upload_extracts_bill(service, uploaded):
    """Header values, lines and findings of the sample invoice"""
    assert uploaded.vendor_id == "acme"
    assert uploaded.vendor_source == "hint"
    assert uploaded.header_values()['invoice_date'] == date(2024, 1, 15)
    assert uploaded.value('po_number') == "PO-778"
    assert (uploaded.value('subtotal'), uploaded.value('tax'), uploaded.total) == (100.0, 8.0, 108.0)
    assert [line.raw_sku for line in uploaded.line_items] == ["WID-100", "GAD-200"]
    assert [line.quantity for line in uploaded.line_items] == [2.0, 5.0]
    assert not uploaded.validation.has_hard
    assert uploaded.validation.codes.count("UnmatchedLineItem") == 2

    document = service.get_document(uploaded.document_id)
    assert document.status == DocumentStatus.EXTRACTED
    assert document.page_count == 1
    assert document.attempts == 1


def test_match_suggestions_below_auto_accept(uploaded):
    """Exact SKU and barcode matches are suggested, not applied"""
    widget, gadget = uploaded.line_items

    assert widget.suggested_match['strategy'] == "exact_sku"
    assert widget.suggested_match['confidence'] == pytest.approx(0.9)
    assert gadget.suggested_match['product_id'] == "prod_gadget"
    assert gadget.suggested_match['strategy'] == "barcode_mpn"
    assert all(line.matched_product_id is None for line in uploaded.line_items)


def test_bill_is_queued(service, uploaded):
    page = service.query_queue()

    assert [b.bill_id for b in page.bills] == [uploaded.bill_id]
    assert service.queue_stats().by_state["Pending"] == 1


def test_vendor_derived_from_printed_name(service, ocr_backend):
    """Without a hint the vendor id comes from the vendor name"""
    document_id = upload_invoice(service, ocr_backend, vendor_hint=None)

    bill = service.get_bill_for_document(document_id)
    assert bill.vendor_id == "acme-supply-co"
    assert bill.vendor_source == "derived"


def test_duplicate_invoice_is_refused(service, ocr_backend, uploaded, invoice_page):
    """The same vendor and invoice number cannot be uploaded twice"""
    with pytest.raises(DuplicateInvoiceError) as excinfo:
        service.upload_document(png_bytes(invoice_page[1]), "image/png", vendor_hint="acme")
    assert excinfo.value.details['existing_bill_id'] == uploaded.bill_id

    failed = service.repository.list_documents(DocumentStatus.FAILED)
    assert len(failed) == 1
    assert failed[0].last_error['code'] == "DuplicateInvoice"
    assert service.repository.get_retry(failed[0].document_id) is None


def test_same_number_from_other_store(service, ocr_backend, uploaded, invoice_page):
    document_id = service.upload_document(png_bytes(invoice_page[1]), "image/png", vendor_hint="acme",
                                          store_id="downtown")

    assert service.get_bill_for_document(document_id).store_id == "downtown"


def test_created_product_alias_is_learned(service, ocr_backend, uploaded):
    """A product created from a line matches the next bill through its alias"""
    gadget = uploaded.line_items[1]
    product_id = service.create_product_from_line(uploaded.bill_id, gadget.line_id, create_alias=True)

    line = service.get_bill(uploaded.bill_id).line(gadget.line_id)
    assert line.status == LineStatus.MANUALLY_CREATED
    assert line.matched_product_id == product_id
    product = service.catalog.get(product_id)
    assert (product.sku, product.name, product.cost) == ("GAD-200", "Small Gadget", 10.0)

    document_id = upload_invoice(service, ocr_backend, invoice_number="INV-1002")

    matched = service.get_bill_for_document(document_id).line_items[1]
    assert matched.status == LineStatus.MATCHED
    assert matched.matched_product_id == product_id
    assert matched.match_reason['strategy'] == "exact_alias"
    assert matched.match_confidence == pytest.approx(1.0)


def test_ocr_outage_queues_retry(service, ocr_backend, invoice_page):
    """An OCR outage fails the document and schedules it again"""
    ocr_backend.available = False

    document_id = service.upload_document(png_bytes(invoice_page[1]), "image/png", vendor_hint="acme")

    assert service.get_document(document_id).status == DocumentStatus.FAILED
    assert service.get_bill_for_document(document_id) is None
    retry = service.repository.get_retry(document_id)
    assert retry['attempts'] == 1
    assert retry['last_error']['code'] == "OcrBackendUnavailable"
    assert service.retry_failed_documents() == []

    ocr_backend.available = True
    later = to_iso(utc_now() + timedelta(hours=2))
    results = service.retry_failed_documents(now=later)

    assert len(results) == 1
    assert results[0]['status'] == "Extracted"
    bill = service.get_bill(results[0]['bill_id'])
    assert bill.invoice_number == "INV-1001"
    assert bill.state == BillState.PENDING
    assert service.get_document(document_id).attempts == 2
    assert service.repository.get_retry(document_id) is None


@pytest.mark.parametrize("content,mime,error", [
    (b"plain text", "text/plain", UnsupportedFormatError),
    (b"not really a png", "image/png", CorruptDocumentError),
    (b"", "image/png", EmptyDocumentError),
])
def test_rejected_uploads(service, content, mime, error):
    """Documents that cannot be normalized fail without a retry"""
    with pytest.raises(error):
        service.upload_document(content, mime)

    failed = service.repository.list_documents(DocumentStatus.FAILED)
    assert len(failed) == 1
    assert service.repository.get_retry(failed[0].document_id) is None


def test_approval_feeds_calibration(service, uploaded):
    """Untouched selections count as correct once the bill is approved"""
    assert service.calibration_stats("acme")['samples'] == 0

    service.start_review(uploaded.bill_id)
    service.approve(uploaded.bill_id)

    stats = service.calibration_stats("acme")
    assert stats['samples'] > 0
    assert stats['accuracy'] == 1.0


def test_list_match_candidates(service):
    candidates = service.list_match_candidates("WID-100", "Large Widget", vendor_id="acme")

    assert candidates[0].product_id == "prod_widget"
    assert candidates[0].strategy == "exact_sku"


@pytest.mark.parametrize("original_path", [None, "", "/nonexistent/billflow/doc.png"])
def test_missing_original_is_document_not_found(service, original_path):
    document = Document.create("main", "image/png")
    document.original_path = original_path

    with pytest.raises(DocumentNotFoundError):
        service.pipeline.load_original(document)
