"""Pytest configuration and fixtures"""
import io
import time
from datetime import date

import pytest
from PIL import Image, ImageDraw

from config import ConfigurationManager
from billflow.extraction.calibrator import ConfidenceCalibrator
from billflow.ocr_engine.ocr_result import OCRResult, OCRToken
from billflow.ocr_engine.profiles import OcrProfile
from billflow.service import BillService
from billflow.storage.aliases import AliasStore, MatchHistoryStore
from billflow.storage.catalog import SqliteCatalog
from billflow.storage.database import Database
from billflow.storage.repository import Repository
from billflow.utils.exceptions import OcrBackendUnavailableError
from billflow.validation.engine import ValidationEngine
from billflow.validation.rules import ValidationSettings

PAGE_WIDTH = 1000
PAGE_HEIGHT = 1400
WORD_HEIGHT = 20
CHAR_WIDTH = 12
WORD_GAP = 14

# Ruled lines above and below the line-item table
TABLE_RULES = (340, 500)

# Column x positions of the line-item table
COLUMNS = {'sku': 60, 'description': 200, 'quantity': 560, 'unit_price': 680, 'line_total': 820}


def _row(x, y, text, confidence=0.95):
    """Words of one printed line as (text, box, confidence), left to right."""
    words = []
    for word in text.split():
        width = CHAR_WIDTH * len(word)
        words.append((word, (x, y, x + width, y + WORD_HEIGHT), confidence))
        x += width + WORD_GAP
    return words


def invoice_words(invoice_number="INV-1001", invoice_date="01/15/2024", vendor="ACME Supply Co",
                  lines=(("WID-100", "Large Widget", "2", "25.00", "50.00"),
                         ("GAD-200", "Small Gadget", "5", "10.00", "50.00")),
                  subtotal="100.00", tax="8.00", total="108.00"):
    """Word layout of a one page vendor invoice."""
    words = []
    words += _row(60, 60, vendor)
    words += _row(60, 110, f"Invoice # {invoice_number}")
    words += _row(60, 150, f"Invoice Date {invoice_date}")
    words += _row(60, 190, "PO # PO-778")

    y = 370
    words += _row(COLUMNS['sku'], y, "SKU")
    words += _row(COLUMNS['description'], y, "Description")
    words += _row(COLUMNS['quantity'], y, "Qty")
    words += _row(COLUMNS['unit_price'], y, "Price")
    words += _row(COLUMNS['line_total'], y, "Amount")
    for sku, description, qty, price, amount in lines:
        y += 40
        words += _row(COLUMNS['sku'], y, sku)
        words += _row(COLUMNS['description'], y, description)
        words += _row(COLUMNS['quantity'], y, qty)
        words += _row(COLUMNS['unit_price'], y, price)
        words += _row(COLUMNS['line_total'], y, amount)

    words += _row(620, 560, f"Subtotal {subtotal}")
    words += _row(620, 600, f"Tax {tax}")
    words += _row(620, 640, f"Total {total}")
    words += _row(60, 1320, "Thank you for your business")
    return words


def render_page(words):
    """White page with a black block per word and the two table rules."""
    image = Image.new('RGB', (PAGE_WIDTH, PAGE_HEIGHT), (255, 255, 255))
    draw = ImageDraw.Draw(image)
    for _, (x1, y1, x2, y2), _ in words:
        draw.rectangle([x1, y1, x2 - 1, y2 - 1], fill=(0, 0, 0))
    for y in TABLE_RULES:
        draw.rectangle([0, y, PAGE_WIDTH - 1, y + 3], fill=(0, 0, 0))
    return image


def png_bytes(image):
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class FakeOcrBackend:
    """
    Scripted OCR backend.

    Returns the scripted words whose center lies inside the requested
    region and still has ink in the crop, so blanked (masked) words are
    not read. Boxes are returned in crop coordinates like a real engine.
    """

    name = "fake"

    def __init__(self, words=(), available=True):
        self.words = list(words)
        self.available = available
        self.overrides = {}
        self.calls = []

    def script(self, words):
        self.words = list(words)

    def recognize(self, region, profile):
        profile = OcrProfile(profile)
        self.calls.append((region.page_index, region.box, profile.value))
        if not self.available:
            raise OcrBackendUnavailableError(self.name, "service down")

        ox, oy, bx2, by2 = region.box
        scale = region.scale
        gray = region.image.convert('L')
        tokens = []
        for text, (x1, y1, x2, y2), confidence in self.words:
            cx, cy = (x1 + x2) / 2.0, (y1 + y2) / 2.0
            if not (ox <= cx <= bx2 and oy <= cy <= by2):
                continue
            px = min(gray.width - 1, int((cx - ox) * scale))
            py = min(gray.height - 1, int((cy - oy) * scale))
            if gray.getpixel((px, py)) > 128:
                continue
            text = self.overrides.get((profile.value, text), text)
            tokens.append(OCRToken(
                text=text,
                bbox=(int((x1 - ox) * scale), int((y1 - oy) * scale),
                      int((x2 - ox) * scale), int((y2 - oy) * scale)),
                confidence=confidence,
                word_index=len(tokens),
            ))
        return OCRResult(tokens=tokens, profile=profile.value, engine=self.name, page_index=region.page_index)


class SlowOcrBackend(FakeOcrBackend):
    """Scripted backend that takes ``delay`` seconds per call."""

    def __init__(self, words=(), delay=0.5):
        super().__init__(words)
        self.delay = delay

    def recognize(self, region, profile):
        time.sleep(self.delay)
        return super().recognize(region, profile)


@pytest.fixture(autouse=True)
def test_config(tmp_path):
    """Fresh configuration with every path inside the test directory"""
    ConfigurationManager.reset()
    config = ConfigurationManager()
    config.set("paths.database", str(tmp_path / "billflow.db"))
    config.set("paths.originals_dir", str(tmp_path / "originals"))
    config.set("paths.pages_dir", str(tmp_path / "pages"))
    config.set("input.orientation.enabled", False)
    config.set("ocr.retry.base_delay", 0.0)
    config.set("calibration.async_updates", False)
    yield config
    ConfigurationManager.reset()


@pytest.fixture
def database(tmp_path):
    return Database(tmp_path / "billflow.db")


@pytest.fixture
def repository(database):
    return Repository(database)


@pytest.fixture
def catalog(database):
    """Catalog with a widget (matched by SKU) and a gadget (matched by barcode)"""
    catalog = SqliteCatalog(database)
    catalog.create_product({
        'product_id': "prod_widget", 'sku': "WID-100", 'name': "Large Widget",
        'cost': 20.0, 'quantity_on_hand': 10,
    })
    catalog.create_product({
        'product_id': "prod_gadget", 'sku': "GZ-9", 'name': "Small Gadget",
        'barcode': "GAD200000001", 'cost': 10.0, 'quantity_on_hand': 0,
    })
    catalog.create_product({
        'product_id': "prod_bolt", 'sku': "BLT-7", 'name': "Hex Bolt", 'mpn': "HX7-ZINC", 'cost': 0.5,
    })
    return catalog


@pytest.fixture
def aliases(database):
    return AliasStore(database)


@pytest.fixture
def history(database):
    return MatchHistoryStore(database)


@pytest.fixture
def calibrator():
    return ConfidenceCalibrator(async_updates=False)


@pytest.fixture
def validation():
    return ValidationEngine(settings=ValidationSettings(today=lambda: date(2024, 6, 1)))


@pytest.fixture
def invoice_page():
    """Word layout and rendered image of the sample invoice"""
    words = invoice_words()
    return words, render_page(words)


@pytest.fixture
def ocr_backend(invoice_page):
    return FakeOcrBackend(invoice_page[0])


@pytest.fixture
def service(database, catalog, ocr_backend):
    """Bill service over the temp database with the scripted OCR backend"""
    service = BillService.from_config(database=database, backend=ocr_backend)
    yield service
    service.shutdown()


@pytest.fixture
def uploaded(service, invoice_page):
    """Bill extracted from the sample invoice uploaded with vendor hint 'acme'"""
    document_id = service.upload_document(png_bytes(invoice_page[1]), "image/png", vendor_hint="acme")
    return service.get_bill_for_document(document_id)
