"""
Tests for the line item matching cascade.
"""
import pytest

from billflow.bill import Bill, LineItem, LineStatus
from billflow.matching.engine import MatchingEngine
from billflow.matching.result import MatchQuery
from billflow.matching.similarity import description_similarity
from billflow.matching.strategies import BarcodeMpnStrategy, FuzzyDescriptionStrategy
from billflow.storage.aliases import SkuAlias
from billflow.utils.helpers import normalize_sku


@pytest.fixture
def engine(catalog, aliases, history):
    return MatchingEngine(catalog, aliases, history, workers=2)


def make_line(raw_sku, description="", line_id="line_1"):
    return LineItem(line_id=line_id, position=0, raw_sku=raw_sku,
                    normalized_sku=normalize_sku(raw_sku), description=description)


def test_exact_internal_sku(engine):
    """Normalized vendor SKU equal to an internal SKU matches at 0.9"""
    candidate = engine.match_line_item(make_line("wid 100"), "acme")

    assert candidate.product_id == "prod_widget"
    assert candidate.strategy == "exact_sku"
    assert candidate.confidence == pytest.approx(0.9)


def test_alias_wins_over_internal_sku(engine):
    """An alias for the vendor SKU outranks every other strategy"""
    engine.create_alias("acme", "WID100", "prod_bolt", "BLT-7")

    candidate = engine.match_line_item(make_line("WID-100"), "acme")

    assert candidate.strategy == "exact_alias"
    assert candidate.product_id == "prod_bolt"
    assert candidate.confidence == 1.0
    assert candidate.alias_id is not None


def test_alias_is_vendor_scoped(engine):
    """Another vendor's alias is ignored"""
    engine.create_alias("globex", "WID100", "prod_bolt", "BLT-7")

    candidate = engine.match_line_item(make_line("WID-100"), "acme")

    assert candidate.strategy == "exact_sku"


def test_alias_priority_breaks_ties(engine, aliases):
    """Higher priority alias is returned first for the same vendor SKU"""
    aliases.upsert(SkuAlias.create("acme", "MULTI1", "prod_widget", "WID-100", priority=0))
    aliases.upsert(SkuAlias.create("acme", "MULTI1", "prod_gadget", "GZ-9", priority=5))

    candidate = engine.match_line_item(make_line("MULTI-1"), "acme")

    assert candidate.product_id == "prod_gadget"


def test_barcode_prefix_with_digit_remainder(engine):
    """Vendor SKU that prefixes a barcode with only digits left over"""
    candidate = engine.match_line_item(make_line("GAD-200", "Small Gadget"), "acme")

    assert candidate.strategy == "barcode_mpn"
    assert candidate.product_id == "prod_gadget"
    assert candidate.confidence == pytest.approx(0.85)
    assert candidate.evidence['match'] == "prefix"


def test_punctuated_sku_prefixes_barcode(engine, catalog):
    """ABC-123 normalizes to ABC123, which prefixes barcode ABC123000001"""
    catalog.create_product({'product_id': "prod_abc", 'sku': "ABC-X", 'name': "Alpha Bracket",
                            'barcode': "ABC123000001"})

    candidate = engine.match_line_item(make_line("ABC-123"), "acme")

    assert candidate.strategy == "barcode_mpn"
    assert candidate.product_id == "prod_abc"
    assert candidate.evidence['match'] == "prefix"
    assert candidate.evidence['code'] == "ABC123000001"


def test_mpn_exact_but_not_alpha_remainder(engine):
    """MPN must match exactly when the remainder is not numeric"""
    exact = engine.match_line_item(make_line("HX7-ZINC"), "acme")
    assert exact.strategy == "barcode_mpn"
    assert exact.evidence['attribute'] == "mpn"

    assert engine.match_line_item(make_line("HX7"), "acme") is None


def test_short_codes_are_not_prefix_matched(engine, catalog):
    """Keys shorter than the minimum code length never match barcodes"""
    strategy = BarcodeMpnStrategy()
    assert strategy.candidates(MatchQuery(raw_sku="GA"), engine.context("acme")) == []


def test_fuzzy_description_confidence_scaling(engine):
    """Fuzzy confidence rises linearly from the similarity floor"""
    candidate = engine.match_line_item(make_line("ZZZ-1", "Hex Bolts"), "acme")

    assert candidate.strategy == "fuzzy_description"
    assert candidate.product_id == "prod_bolt"
    assert candidate.confidence == pytest.approx(0.7167, abs=1e-4)


def test_fuzzy_scale_bounds():
    """Similarity below the floor yields nothing; a perfect match hits the cap"""
    strategy = FuzzyDescriptionStrategy(floor=0.6, min_confidence=0.5, max_confidence=0.8)

    assert strategy.scale(0.59) == 0.0
    assert strategy.scale(0.6) == pytest.approx(0.5)
    assert strategy.scale(1.0) == pytest.approx(0.8)


def test_description_similarity_ignores_word_order():
    """Reordered words score as identical"""
    assert description_similarity("Large Widget", "Widget, Large") == 1.0
    assert description_similarity("", "Widget") == 0.0


def test_historical_then_promotion(engine, history, aliases):
    """Confirmations are offered historically, then promoted to an alias"""
    line = make_line("XYZ-1")

    assert engine.record_confirmation("acme", "XYZ1", "prod_bolt", "BLT-7") is None
    candidate = engine.match_line_item(line, "acme")
    assert candidate.strategy == "historical"
    assert candidate.confidence == pytest.approx(0.75)

    alias = engine.record_confirmation("acme", "XYZ1", "prod_bolt", "BLT-7")
    assert alias is not None
    assert alias.source == "promotion"
    assert history.find("acme", "XYZ1") == []

    candidate = engine.match_line_item(line, "acme")
    assert candidate.strategy == "exact_alias"
    assert candidate.alias_id == alias.alias_id


def test_confirmation_without_vendor_is_ignored(engine, history):
    """No vendor means nothing to learn"""
    assert engine.record_confirmation(None, "XYZ1", "prod_bolt", "BLT-7") is None
    assert history.find("acme", "XYZ1") == []


def test_unknown_line_has_no_match(engine):
    """Nothing in the cascade accepts the line"""
    assert engine.match_line_item(make_line("NOPE-404", "Quantum Flux"), "acme") is None


def test_apply_thresholds(engine):
    """Auto-accept, suggestion and nothing, by confidence band"""
    line = make_line("WID-100")
    alias_line = make_line("WID-100", line_id="line_2")
    engine.create_alias("acme", "WID100", "prod_widget", "WID-100")

    engine.apply_thresholds(alias_line, engine.match_line_item(alias_line, "acme"))
    assert alias_line.status == LineStatus.MATCHED
    assert alias_line.matched_product_id == "prod_widget"
    assert alias_line.match_reason['strategy'] == "exact_alias"

    engine.apply_thresholds(line, engine.match_line_item(make_line("WID-100"), None))
    assert line.status == LineStatus.UNMATCHED
    assert line.matched_product_id is None
    assert line.suggested_match['product_id'] == "prod_widget"

    engine.apply_thresholds(line, None)
    assert line.suggested_match is None
    assert line.status == LineStatus.UNMATCHED


def test_match_bill_keeps_line_order_and_skips_human_matches(engine):
    """Results are applied per line; lines settled by a reviewer are left alone"""
    bill = Bill.create("doc_1", "main", vendor_id="acme")
    bill.line_items = [
        make_line("WID-100", line_id="line_a"),
        make_line("GAD-200", line_id="line_b"),
        make_line("NOPE-404", line_id="line_c"),
    ]
    bill.line_items[2].status = LineStatus.MATCHED
    bill.line_items[2].matched_product_id = "prod_bolt"
    bill.line_items[2].match_reason = {'strategy': 'manual', 'accepted_by': 'alice'}

    outcome = engine.match_bill(bill, force=True)

    assert set(outcome) == {"line_a", "line_b"}
    assert outcome["line_a"].strategy == "exact_sku"
    assert outcome["line_b"].strategy == "barcode_mpn"
    assert bill.line_items[2].matched_product_id == "prod_bolt"


def test_list_match_candidates_ranks_one_per_product(engine):
    """A product found by several strategies appears once, with its best candidate"""
    candidates = engine.list_match_candidates("GAD-200", "Small Gadget", vendor_id="acme")

    assert [c.product_id for c in candidates].count("prod_gadget") == 1
    assert candidates[0].product_id == "prod_gadget"
    assert candidates[0].strategy == "barcode_mpn"
    assert all(a.confidence >= b.confidence for a, b in zip(candidates, candidates[1:]))


def test_list_match_candidates_limit(engine):
    """Limit caps the number of suggestions"""
    candidates = engine.list_match_candidates("", "Large Widget Small Gadget Hex Bolt", limit=1)
    assert len(candidates) <= 1


def test_tied_aliases_resolve_the_same_way_every_time(engine, aliases):
    """Equal priority and usage fall back to internal SKU, regardless of insertion order"""
    aliases.upsert(SkuAlias.create("acme", "TIE1", "prod_widget", "WID-100"))
    aliases.upsert(SkuAlias.create("acme", "TIE1", "prod_bolt", "BLT-7"))
    line = make_line("TIE-1")

    first = engine.match_line_item(line, "acme")
    listed = engine.list_match_candidates("TIE-1", vendor_id="acme")

    assert first.product_id == "prod_bolt"
    assert [c.product_id for c in listed[:2]] == ["prod_bolt", "prod_widget"]
    for _ in range(20):
        assert engine.match_line_item(line, "acme") == first
        assert engine.list_match_candidates("TIE-1", vendor_id="acme") == listed


def test_tied_fuzzy_products_resolve_the_same_way_every_time(engine, catalog):
    """Products with identical names rank by internal SKU"""
    catalog.create_product({'product_id': "prod_washer_b", 'sku': "WSH-2", 'name': "Steel Washer"})
    catalog.create_product({'product_id': "prod_washer_a", 'sku': "WSH-1", 'name': "Steel Washer"})
    line = make_line("ZZZ-9", "Steel Washer")

    first = engine.match_line_item(line, "acme")
    listed = engine.list_match_candidates("ZZZ-9", "Steel Washer", vendor_id="acme")

    assert first.strategy == "fuzzy_description"
    assert first.product_id == "prod_washer_a"
    assert [c.product_id for c in listed[:2]] == ["prod_washer_a", "prod_washer_b"]
    assert listed[0].confidence == listed[1].confidence
    for _ in range(20):
        assert engine.match_line_item(line, "acme") == first
        assert engine.list_match_candidates("ZZZ-9", "Steel Washer", vendor_id="acme") == listed
