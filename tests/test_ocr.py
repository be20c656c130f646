"""
Tests for multi-pass OCR: consensus, retries, masks and targeted re-OCR.
"""
import pytest
from PIL import Image

from billflow.input_handler.document import NormalizedPage, TextLayerWord
from billflow.layout.geometry import BoundingBox
from billflow.layout.masks import Mask
from billflow.layout.zone_detector import ZoneDetector
from billflow.layout.zones import Zone, ZoneLabel
from billflow.ocr_engine.consensus import reconcile
from billflow.ocr_engine.ocr_result import OCRResult, OCRToken
from billflow.ocr_engine.orchestrator import MultiPassOrchestrator
from billflow.ocr_engine.profiles import OcrProfile, parse_profiles, profile_settings, weights_by_name
from billflow.utils.exceptions import OcrBackendUnavailableError, OcrTimeoutError
from conftest import PAGE_HEIGHT, PAGE_WIDTH, FakeOcrBackend, SlowOcrBackend


def single(text, confidence, profile, bbox=(10, 10, 90, 30)):
    return OCRResult(tokens=[OCRToken(text, bbox, confidence)], profile=profile)


class FlakyBackend(FakeOcrBackend):
    """Unavailable for the first ``failures`` calls."""

    def __init__(self, words, failures):
        super().__init__(words)
        self.failures = failures

    def recognize(self, region, profile):
        if self.failures > 0:
            self.failures -= 1
            raise OcrBackendUnavailableError(self.name, "warming up")
        return super().recognize(region, profile)


@pytest.fixture
def page(invoice_page):
    return NormalizedPage(page_index=0, image=invoice_page[1])


@pytest.fixture
def zones(page):
    return ZoneDetector().detect(page.image, "doc_1", 0)


def header_of(zones):
    return next(z for z in zones if z.label == ZoneLabel.HEADER)


def test_profiles():
    """Higher accuracy profiles upscale more and weigh more"""
    fast, balanced, accurate = parse_profiles(["fast", "balanced", OcrProfile.HIGH_ACCURACY])

    assert profile_settings(fast).scale < profile_settings(balanced).scale < profile_settings(accurate).scale
    weights = weights_by_name()
    assert weights['text_layer'] > weights['high_accuracy'] > weights['balanced'] > weights['fast']

    with pytest.raises(ValueError):
        parse_profiles(["turbo"])


def test_agreeing_passes_combine_confidence():
    """Two strong passes with the same text raise the confidence"""
    result = reconcile([single("INV-1001", 0.9, "fast"), single("INV-1001", 0.85, "balanced")],
                       weights_by_name())

    token = result.tokens[0]
    assert token.text == "INV-1001"
    assert token.agreed
    assert token.votes == 2
    assert token.confidence == pytest.approx(1 - 0.1 * 0.15)
    assert result.agreement_rate == 1.0


def test_agreement_is_capped():
    result = reconcile([single("Total", 0.99, "fast"), single("Total", 0.99, "balanced")], weights_by_name())
    assert result.tokens[0].confidence == pytest.approx(0.99)


def test_disagreement_keeps_alternatives():
    """The heavier profile wins and the other reading is kept"""
    result = reconcile([single("INV-1O01", 0.6, "fast"), single("INV-1001", 0.7, "balanced")],
                       weights_by_name())

    token = result.tokens[0]
    assert token.text == "INV-1001"
    assert token.profile == "balanced"
    assert not token.agreed
    assert token.confidence == 0.7
    assert [(a.text, a.profile) for a in token.alternatives] == [("INV-1O01", "fast")]
    assert result.agreement_rate == 0.0


def test_unaligned_tokens_stay_separate():
    """Tokens at different places are different tokens"""
    passes = [
        OCRResult(tokens=[OCRToken("Subtotal", (10, 10, 100, 30), 0.9)], profile="fast"),
        OCRResult(tokens=[OCRToken("100.00", (300, 10, 380, 30), 0.9)], profile="balanced"),
    ]

    result = reconcile(passes, weights_by_name())

    assert [t.text for t in result.tokens] == ["Subtotal", "100.00"]
    assert all(t.pass_count == 2 and t.votes == 1 for t in result.tokens)


def test_retry_with_backoff(invoice_page, page, zones):
    """Unavailability is retried with doubling delays"""
    delays = []
    orchestrator = MultiPassOrchestrator(FlakyBackend(invoice_page[0], failures=2), retry_attempts=3,
                                         base_delay=0.5, max_delay=8.0, sleep=delays.append)

    reading = orchestrator.read_region(page, header_of(zones).bbox, [], ["balanced"])

    assert delays == [0.5, 1.0]
    assert "INV-1001" in reading.text
    orchestrator.shutdown()


def test_retry_exhausted(invoice_page, page, zones):
    delays = []
    backend = FakeOcrBackend(invoice_page[0], available=False)
    orchestrator = MultiPassOrchestrator(backend, retry_attempts=2, base_delay=0.5, sleep=delays.append)

    with pytest.raises(OcrBackendUnavailableError):
        orchestrator.read_region(page, header_of(zones).bbox, [], ["fast"])

    assert delays == [0.5]
    assert len(backend.calls) == 2
    orchestrator.shutdown()


def test_backoff_is_bounded():
    orchestrator = MultiPassOrchestrator(FakeOcrBackend(), base_delay=1.0, max_delay=3.0)
    assert [orchestrator.backoff_delay(n) for n in range(4)] == [1.0, 2.0, 3.0, 3.0]
    orchestrator.shutdown()


def test_run_document(ocr_backend, page, zones):
    """Every content zone is read; noise zones are skipped"""
    noise = Zone.create("doc_1", 0, ZoneLabel.NOISE, BoundingBox(0, 0.9, 1, 0.1))
    orchestrator = MultiPassOrchestrator(ocr_backend, workers=2)

    readings = orchestrator.run_document([page], zones + [noise])

    assert set(readings) == {z.zone_id for z in zones}
    assert len({r.generation_id for r in readings.values()}) == 1
    header = readings[header_of(zones).zone_id]
    assert header.profiles == ["balanced"]
    assert "Invoice # INV-1001" in header.text
    assert header.zone_id == header_of(zones).zone_id
    orchestrator.shutdown()


def test_masked_text_is_not_read(ocr_backend, page, zones):
    """Masks are burned in before the backend sees the page"""
    mask = Mask.create(BoundingBox.from_pixels((50, 185, 400, 215), PAGE_WIDTH, PAGE_HEIGHT), page_index=0)
    orchestrator = MultiPassOrchestrator(ocr_backend)

    readings = orchestrator.run_document([page], zones, masks=[mask])

    header = readings[header_of(zones).zone_id]
    assert "PO-778" not in header.text
    assert "INV-1001" in header.text
    orchestrator.shutdown()


def test_text_layer_skips_ocr(zones):
    """Pages with embedded text are read without calling the backend"""
    blank = NormalizedPage(page_index=0, image=Image.new('RGB', (PAGE_WIDTH, PAGE_HEIGHT), (255, 255, 255)),
                           text_layer=[TextLayerWord("INV-1001", (100, 110, 196, 130))])
    backend = FakeOcrBackend(available=False)
    orchestrator = MultiPassOrchestrator(backend)

    readings = orchestrator.run_document([blank], zones)

    header = readings[header_of(zones).zone_id]
    assert header.text == "INV-1001"
    assert header.tokens[0].profile == "text_layer"
    assert header.tokens[0].confidence == 0.99
    assert backend.calls == []
    orchestrator.shutdown()


def test_targeted_reocr_competes_with_earlier_passes(ocr_backend, page, zones):
    """A new profile's reading competes with the stored passes"""
    orchestrator = MultiPassOrchestrator(ocr_backend)
    header = header_of(zones)
    first = orchestrator.run_document([page], zones)[header.zone_id]
    ocr_backend.overrides[("high_accuracy", "PO-778")] = "P0-778"

    reading = orchestrator.targeted_reocr(page, header.bbox, [], "high_accuracy",
                                          zone_id=header.zone_id, prior_passes=first.passes)

    assert reading.profiles == ["high_accuracy", "balanced"]
    assert reading.generation_id != first.generation_id
    po = next(t for t in reading.tokens if t.text == "P0-778")
    assert [a.text for a in po.alternatives] == ["PO-778"]
    number = next(t for t in reading.tokens if t.text == "INV-1001")
    assert number.agreed
    assert number.confidence == pytest.approx(0.99)
    orchestrator.shutdown()


def test_targeted_reocr_timeout(invoice_page, page, zones):
    """A re-OCR that overruns its timeout is abandoned"""
    orchestrator = MultiPassOrchestrator(SlowOcrBackend(invoice_page[0]))

    with pytest.raises(OcrTimeoutError) as excinfo:
        orchestrator.targeted_reocr(page, header_of(zones).bbox, [], "fast", timeout=0.05)

    assert excinfo.value.details['timeout'] == 0.05
    orchestrator.shutdown()
