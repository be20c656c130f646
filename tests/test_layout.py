"""
Tests for zone detection, zone history and masks.
"""
import pytest
from PIL import Image

from billflow.layout.geometry import BoundingBox, pixel_iou, union_box
from billflow.layout.masks import Mask, apply_masks
from billflow.layout.zone_detector import ZoneDetector
from billflow.layout.zones import Zone, ZoneHistory, ZoneLabel
from conftest import PAGE_HEIGHT, PAGE_WIDTH


def pixels(zone):
    return zone.bbox.to_pixels(PAGE_WIDTH, PAGE_HEIGHT)


def test_detects_invoice_layout(invoice_page):
    """Header, table, totals and footer on the sample invoice"""
    _, image = invoice_page

    zones = ZoneDetector().detect(image, "doc_1", 0)

    assert [z.label for z in zones] == [
        ZoneLabel.HEADER, ZoneLabel.LINE_ITEM_TABLE, ZoneLabel.TOTALS, ZoneLabel.FOOTER,
    ]
    header, table, totals, footer = zones
    assert pixels(header)[1] <= 60 and pixels(header)[3] >= 210
    assert pixels(table)[1] <= 340 and pixels(table)[3] >= 504
    assert pixels(totals)[0] > PAGE_WIDTH // 2
    assert pixels(footer)[1] >= 1232
    assert all(z.document_id == "doc_1" and z.page_index == 0 for z in zones)


def test_zones_do_not_overlap(invoice_page):
    """Detected zones are stacked without overlap"""
    zones = ZoneDetector().detect(invoice_page[1], "doc_1", 0)

    for upper, lower in zip(zones, zones[1:]):
        assert upper.bbox.y2 <= lower.bbox.y + 1e-9


def test_blank_page_falls_back_to_full_page():
    """Pages without structure yield one full-page table zone"""
    blank = Image.new('RGB', (PAGE_WIDTH, PAGE_HEIGHT), (255, 255, 255))

    zones = ZoneDetector().detect(blank, "doc_1", 2)

    assert len(zones) == 1
    assert zones[0].label == ZoneLabel.LINE_ITEM_TABLE
    assert zones[0].bbox == BoundingBox.full_page()
    assert zones[0].source == "fallback"
    assert zones[0].page_index == 2


def test_zone_history_supersede():
    """Edits append a version; the old one stays but is no longer active"""
    original = Zone.create("doc_1", 0, ZoneLabel.HEADER, BoundingBox(0, 0, 1, 0.2))
    history = ZoneHistory([original])

    revised = history.supersede(original.zone_id, bbox=BoundingBox(0, 0, 1, 0.3))

    assert len(history) == 2
    assert revised.version == 2
    assert revised.supersedes == original.zone_id
    assert revised.label == ZoneLabel.HEADER
    assert history.active() == [revised]
    assert history.latest(original.zone_id) is revised
    assert history.get(original.zone_id) is original


def test_superseded_zone_cannot_be_edited_again():
    original = Zone.create("doc_1", 0, ZoneLabel.HEADER, BoundingBox(0, 0, 1, 0.2))
    history = ZoneHistory([original])
    history.supersede(original.zone_id, label=ZoneLabel.TOTALS)

    with pytest.raises(ValueError):
        history.supersede(original.zone_id, label=ZoneLabel.FOOTER)
    with pytest.raises(KeyError):
        history.supersede("zone_missing")


def test_best_for_region_skips_noise():
    """The content zone with the largest overlap wins"""
    header = Zone.create("doc_1", 0, ZoneLabel.HEADER, BoundingBox(0, 0, 1, 0.2))
    noise = Zone.create("doc_1", 0, ZoneLabel.NOISE, BoundingBox(0, 0, 1, 0.5))
    table = Zone.create("doc_1", 0, ZoneLabel.LINE_ITEM_TABLE, BoundingBox(0, 0.2, 1, 0.4))
    history = ZoneHistory([header, noise, table])

    assert history.best_for_region(0, BoundingBox(0.1, 0.15, 0.2, 0.2)) is table
    assert history.best_for_region(1, BoundingBox(0.1, 0.15, 0.2, 0.2)) is None


def test_bounding_box_pixels():
    """Pixel boxes are clamped to the page and round-trip"""
    box = BoundingBox.from_pixels((-10, 100, 600, 1500), PAGE_WIDTH, PAGE_HEIGHT)

    assert box.x == 0.0
    assert box.y2 == pytest.approx(1.0)
    assert box.to_pixels(PAGE_WIDTH, PAGE_HEIGHT) == (0, 100, 600, 1400)

    with pytest.raises(ValueError):
        BoundingBox(0.5, 0.5, 0.6, 0.1)


def test_pixel_helpers():
    assert pixel_iou((0, 0, 10, 10), (5, 0, 15, 10)) == pytest.approx(1 / 3)
    assert pixel_iou((0, 0, 10, 10), (20, 20, 30, 30)) == 0.0
    assert union_box([(5, 5, 10, 10), (0, 8, 6, 20)]) == (0, 5, 10, 20)


def test_apply_masks_blanks_region_on_a_copy(invoice_page):
    """Masked pixels turn white; the source image is untouched"""
    _, image = invoice_page
    mask = Mask.create(BoundingBox.from_pixels((50, 50, 400, 90), PAGE_WIDTH, PAGE_HEIGHT), page_index=0)

    masked = apply_masks(image, [mask], 0)

    assert masked.getpixel((70, 70)) == (255, 255, 255)
    assert image.getpixel((70, 70)) == (0, 0, 0)
    assert apply_masks(image, [mask], 1) is image


def test_mask_page_scope():
    everywhere = Mask.create(BoundingBox(0, 0, 0.1, 0.1))
    first_page = Mask.create(BoundingBox(0, 0, 0.1, 0.1), page_index=0)

    assert everywhere.applies_to(3)
    assert first_page.applies_to(0)
    assert not first_page.applies_to(1)
