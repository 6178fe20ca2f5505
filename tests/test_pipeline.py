"""
test_pipeline.py -- End-to-end tests for TenderBidEngine.

These run the whole document-to-decision path with fake inference
backends (no API keys, no internet), plus the discovery path and the
CLI against the files in sample_data/. They validate:
  - stage wiring: extraction -> normalization -> ATC -> matching -> pricing
  - risk aggregation across matching, pricing and the ATC pass
  - degraded runs (no summarizer, failed summarizer)
  - fatal runs (empty document, exhausted credentials)
  - the sample catalog and listings still validate

Run with:
    python tests/test_pipeline.py
    python -m pytest tests/test_pipeline.py -v
"""

from __future__ import annotations

import json
import logging
import sys
import tempfile
from datetime import date
from pathlib import Path

# Make sure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from fakes import FakeBackend, make_sku
from tender_bid.config import config
from tender_bid.credentials import CredentialPool
from tender_bid.exceptions import ExtractionExhausted
from tender_bid.extraction import StructuredExtractor, TermsSummarizer
from tender_bid.main import (
    TenderBidPipeline,
    discover,
    load_candidates,
    load_catalog,
    main,
)
from tender_bid.schemas import BidDecision, MatchStatus

logging.basicConfig(level=logging.INFO, format="%(levelname)s | %(message)s")
logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SAMPLE_DIR = PROJECT_ROOT / "sample_data"

DOCUMENT = """Bid Document
Bid Number: GEM/2026/B/6712345
Organisation Name: Indian Railways
Item Category: XLPE Cable (Q3)
Total Quantity: 100

Buyer Added Bid Specific Terms and Conditions
1. Inspection will be carried out at the consignee site.
2. Technical specification: https://gem.gov.in/resources/spec-6712345.pdf
Disclaimer
The buyer is solely responsible for the terms above.
"""

EXTRACTION_OUTPUT = """```json
{
  "bid_details": {
    "bid_number": "GEM/2026/B/6712345",
    "organisation_name": "Indian Railways",
    "type_of_bid": "Two Packet Bid",
    "bid_end_date_time": "31-12-2099 15:00:00",
    "emd_required": "Yes",
    "epbg_detail_required": "No",
    "document_required_from_seller": ["OEM Authorization"]
  },
  "item_details": [
    {"item_category_code": "XLPE Cable",
     "consignees": [{"quantity": 100, "delivery_days": 30, "address": "Pune"}]}
  ],
  "consignees": [{"address": "Central Stores, Pune", "total_quantity": 100, "delivery_days": 30}],
  "buyer_added_terms": ["Inspection at consignee site"]
}
```"""

ATC_OUTPUT = """{
  "atc_summary": ["Inspection will be carried out at the consignee site before the goods are accepted by the buyer."],
  "required_documents": ["OEM Authorization"],
  "documents": [{"name": "Technical Specifications", "url": "https://gem.gov.in/resources/spec-6712345.pdf"}],
  "risk_entries": [{"category": "Logistics", "statement": "Consignee inspection can delay acceptance.", "riskLevel": "Medium"}]
}"""


def _pipeline(extraction_script, atc_script=None):
    extractor = StructuredExtractor(
        FakeBackend(extraction_script), CredentialPool(["gemini-1"]), backoff_seconds=0,
    )
    summarizer = None
    if atc_script is not None:
        summarizer = TermsSummarizer(FakeBackend(atc_script), CredentialPool(["groq-1"]))
    return TenderBidPipeline(extractor, summarizer)


def _catalog():
    return load_catalog(str(SAMPLE_DIR / "catalog.json"))



def test_end_to_end_decision():
    """Full run: one XLPE line item, EMD required, one ATC risk."""
    pipeline = _pipeline([EXTRACTION_OUTPUT], [ATC_OUTPUT])
    decision = pipeline.run(DOCUMENT, _catalog())

    assert isinstance(decision, BidDecision)
    assert decision.rfp.metadata.bid_number == "GEM/2026/B/6712345"
    assert decision.rfp.metadata.is_bid_closed is False
    assert decision.rfp.consignee == "Central Stores, Pune"

    result = decision.match_results[0]
    assert result.selected_sku.id == "CAB-XLPE-4C-25"
    assert [s.id for s in result.top3_recommendations] == ["CAB-XLPE-4C-25", "CAB-PVC-2C-4"]
    assert result.match_percentage == 30
    assert result.status is MatchStatus.PARTIAL

    fin = decision.financials
    assert fin.base_cost == 100000.0
    assert fin.emd_amount == 2000.0
    assert fin.epbg_amount == 0.0
    assert fin.final_bid_value == 132000.0

    assert decision.atc_summary.required_documents == ["OEM Authorization"]
    categories = sorted(r.category for r in decision.risk_entries)
    assert categories == ["Logistics", "Technical"]
    print(f"  ✓ test_end_to_end_decision (final={fin.final_bid_value})")


def test_atc_prompt_gets_slice_and_links():
    pipeline = _pipeline([EXTRACTION_OUTPUT], [ATC_OUTPUT])
    pipeline.run(DOCUMENT, _catalog())

    prompt = pipeline.summarizer.backend.calls[0][0]
    assert "Inspection will be carried out at the consignee site." in prompt
    assert "https://gem.gov.in/resources/spec-6712345.pdf" in prompt
    assert "solely responsible" not in prompt
    print("  ✓ test_atc_prompt_gets_slice_and_links")


def test_run_without_summarizer():
    decision = _pipeline([EXTRACTION_OUTPUT]).run(DOCUMENT, _catalog())
    assert decision.atc_summary.atc_summary == []
    assert [r.category for r in decision.risk_entries] == ["Technical"]
    print("  ✓ test_run_without_summarizer")


def test_failed_summarizer_does_not_fail_the_bid():
    pipeline = _pipeline([EXTRACTION_OUTPUT], [RuntimeError("groq 503")])
    decision = pipeline.run(DOCUMENT, _catalog())
    assert decision.atc_summary.documents == []
    assert decision.financials.final_bid_value == 132000.0
    print("  ✓ test_failed_summarizer_does_not_fail_the_bid")


SHORTFALL_OUTPUT = (
    '{"bid_details": {"bid_number": "GEM/2026/B/77"}, '
    '"item_details": [{"item_category_code": "Cables", "consignees": [{"quantity": 100}]}]}'
)


def test_stock_shortfall_reported_once():
    # make_sku() has 50 in stock against 100 requested.
    decision = _pipeline([SHORTFALL_OUTPUT]).run(DOCUMENT, [make_sku()])

    logistics = [r for r in decision.risk_entries if r.category == "Logistics"]
    assert len(logistics) == 1
    assert logistics[0].statement == "Inventory gap for Item Cables (SKU-1): 50/100 available."
    assert len(decision.risk_entries) == len(set(decision.risk_entries))
    print("  ✓ test_stock_shortfall_reported_once")


def test_price_overrides_flow_through():
    decision = _pipeline([EXTRACTION_OUTPUT]).run(
        DOCUMENT, _catalog(), price_overrides={"Item XLPE Cable": 900},
    )
    assert decision.financials.base_cost == 90000.0
    assert "Low" in [r.risk_level for r in decision.risk_entries]
    print("  ✓ test_price_overrides_flow_through")


def test_decision_written_to_output_path():
    with tempfile.TemporaryDirectory() as tmp:
        out = Path(tmp) / "out" / "decision.json"
        _pipeline([EXTRACTION_OUTPUT]).run(DOCUMENT, _catalog(), output_path=str(out))
        data = json.loads(out.read_text(encoding="utf-8"))

    assert data["financials"]["final_bid_value"] == 132000.0
    assert data["rfp"]["metadata"]["is_bid_closed"] is False
    assert data["match_results"][0]["status"] == "PARTIAL"
    print("  ✓ test_decision_written_to_output_path")



def test_empty_document_rejected():
    pipeline = _pipeline([EXTRACTION_OUTPUT])
    with pytest.raises(ValueError):
        pipeline.run("   \n ", _catalog())
    assert pipeline.extractor.backend.calls == []
    print("  ✓ test_empty_document_rejected")


def test_exhausted_extraction_is_fatal():
    pipeline = _pipeline([RuntimeError("429"), RuntimeError("429")])
    with pytest.raises(ExtractionExhausted):
        pipeline.run(DOCUMENT, _catalog())
    assert len(pipeline.extractor.backend.calls) == config.llm.attempts_per_credential
    print("  ✓ test_exhausted_extraction_is_fatal")


def test_from_env_requires_gemini_keys():
    saved = config.llm.gemini_api_keys
    config.llm.gemini_api_keys = []
    try:
        with pytest.raises(ValueError):
            TenderBidPipeline.from_env()
    finally:
        config.llm.gemini_api_keys = saved
    print("  ✓ test_from_env_requires_gemini_keys")



def test_sample_data_validates():
    catalog = _catalog()
    listings = load_candidates(str(SAMPLE_DIR / "listings.json"))
    assert len(catalog) == 4
    assert catalog[0].specification["Cores"] == "4"
    assert len(listings) == 3
    print(f"  ✓ test_sample_data_validates ({len(catalog)} SKUs, {len(listings)} listings)")


def test_discover_defaults_filters():
    listings = load_candidates(str(SAMPLE_DIR / "listings.json"))
    tenders = discover(listings, _catalog(), today=date(2026, 10, 19))
    # Flood-light bid needs EMD and is 1400 km out; almirah date is malformed.
    assert [t.id for t in tenders] == ["GEM/2026/B/6712345"]
    assert tenders[0].match_score == 50
    print("  ✓ test_discover_defaults_filters")


def test_cli_discover_writes_output():
    with tempfile.TemporaryDirectory() as tmp:
        out = Path(tmp) / "tenders.json"
        main([
            "discover", str(SAMPLE_DIR / "listings.json"),
            "--catalog", str(SAMPLE_DIR / "catalog.json"),
            "--output", str(out),
        ])
        data = json.loads(out.read_text(encoding="utf-8"))
    assert isinstance(data, list)
    assert all(t["is_qualified"] for t in data)
    print(f"  ✓ test_cli_discover_writes_output ({len(data)} qualified)")


def test_cli_missing_file_exits_1():
    with pytest.raises(SystemExit) as excinfo:
        main(["discover", "no_such_listings.json", "--catalog", "no_such_catalog.json"])
    assert excinfo.value.code == 1
    print("  ✓ test_cli_missing_file_exits_1")



def run_all_tests():
    """Run all tests and report results."""
    print("\n" + "=" * 60)
    print("  TenderBidEngine Test Suite")
    print("=" * 60 + "\n")

    tests = [
        # Document-to-decision
        test_end_to_end_decision,
        test_atc_prompt_gets_slice_and_links,
        test_run_without_summarizer,
        test_failed_summarizer_does_not_fail_the_bid,
        test_stock_shortfall_reported_once,
        test_price_overrides_flow_through,
        test_decision_written_to_output_path,
        # Fatal paths
        test_empty_document_rejected,
        test_exhausted_extraction_is_fatal,
        test_from_env_requires_gemini_keys,
        # Discovery & CLI
        test_sample_data_validates,
        test_discover_defaults_filters,
        test_cli_discover_writes_output,
        test_cli_missing_file_exits_1,
    ]

    passed = 0
    failed = 0

    for test_fn in tests:
        try:
            test_fn()
            passed += 1
        except Exception as exc:
            failed += 1
            print(f"  ✗ {test_fn.__name__} FAILED: {exc}")

    print(f"\n{'=' * 60}")
    print(f"  Results: {passed} passed, {failed} failed, {len(tests)} total")
    print(f"{'=' * 60}\n")

    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
