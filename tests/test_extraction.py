"""
test_extraction.py -- Credential failover, prompt building, ATC slicing
and the terms summary pass. No network: every backend is a FakeBackend.
"""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from fakes import FakeBackend
from tender_bid.config import config
from tender_bid.credentials import CredentialPool
from tender_bid.exceptions import ExtractionExhausted, NoJsonFound
from tender_bid.extraction import (
    GeminiBackend,
    StructuredExtractor,
    TermsSummarizer,
    build_rfp_prompt,
    extract_atc_slice,
    find_document_links,
)
from tender_bid.schemas import ATCSummary


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr("tender_bid.extraction.time.sleep", recorded.append)
    return recorded


# ── Credential pool ──────────────────────────────────────────────────────

def test_pool_rotates_and_wraps():
    pool = CredentialPool(["k1", "k2"])
    assert pool.next() == "k1"
    assert pool.next() == "k1"  # next() alone doesn't advance
    pool.mark_failed()
    assert pool.next() == "k2"
    pool.mark_failed()
    assert pool.next() == "k1"
    assert pool.cursor == 0
    print("  ✓ test_pool_rotates_and_wraps")


def test_pool_rejects_empty():
    with pytest.raises(ValueError):
        CredentialPool([])
    with pytest.raises(ValueError):
        CredentialPool(["", ""])
    print("  ✓ test_pool_rejects_empty")


def test_pool_from_env(monkeypatch):
    monkeypatch.setenv("TEST_TENDER_KEYS", "a, b,,c")
    assert len(CredentialPool.from_env("TEST_TENDER_KEYS")) == 3

    monkeypatch.delenv("TEST_TENDER_KEYS")
    monkeypatch.setenv("TEST_TENDER_KEY", "single")
    pool = CredentialPool.from_env("TEST_TENDER_KEYS", "TEST_TENDER_KEY")
    assert pool.next() == "single"

    monkeypatch.delenv("TEST_TENDER_KEY")
    with pytest.raises(ValueError):
        CredentialPool.from_env("TEST_TENDER_KEYS", "TEST_TENDER_KEY")
    print("  ✓ test_pool_from_env")


# ── Structured extraction ────────────────────────────────────────────────

def test_extract_first_attempt(sleeps):
    backend = FakeBackend(['{"bid_details": {"bid_number": "GEM/2026/B/1"}}'])
    extractor = StructuredExtractor(backend, CredentialPool(["k1", "k2"]))

    record = extractor.extract("Bid document text")

    assert record == {"bid_details": {"bid_number": "GEM/2026/B/1"}}
    prompt, credential, temperature, max_tokens = backend.calls[0]
    assert credential == "k1"
    assert "Bid document text" in prompt
    assert temperature == config.llm.temperature
    assert max_tokens == config.llm.max_output_tokens
    assert sleeps == []
    print("  ✓ test_extract_first_attempt")


def test_extract_fails_over_to_next_key(sleeps):
    backend = FakeBackend([RuntimeError("429 quota exceeded"), '{"ok": true}'])
    pool = CredentialPool(["k1", "k2"])
    extractor = StructuredExtractor(backend, pool)

    assert extractor.extract("text") == {"ok": True}
    assert backend.credentials_used == ["k1", "k2"]
    assert pool.cursor == 1
    assert sleeps == [config.llm.retry_backoff_seconds]
    print("  ✓ test_extract_fails_over_to_next_key")


def test_extract_exhausts_every_key_twice(sleeps):
    errors = [RuntimeError(f"503 #{i}") for i in range(4)]
    backend = FakeBackend(errors)
    extractor = StructuredExtractor(backend, CredentialPool(["k1", "k2"]))

    assert extractor.max_attempts == 4
    with pytest.raises(ExtractionExhausted) as excinfo:
        extractor.extract("text")

    assert excinfo.value.attempts == 4
    assert excinfo.value.last_error is errors[-1]
    assert isinstance(excinfo.value, RuntimeError)
    assert backend.credentials_used == ["k1", "k2", "k1", "k2"]
    # No pause after the final attempt.
    assert sleeps == [1.0, 1.0, 1.0]
    print("  ✓ test_extract_exhausts_every_key_twice")


def test_extract_zero_backoff_never_sleeps(sleeps):
    backend = FakeBackend([RuntimeError("boom"), RuntimeError("boom")])
    extractor = StructuredExtractor(backend, CredentialPool(["only"]), backoff_seconds=0)
    with pytest.raises(ExtractionExhausted):
        extractor.extract("text")
    assert sleeps == []
    print("  ✓ test_extract_zero_backoff_never_sleeps")


def test_unrecoverable_output_is_not_retried(sleeps):
    backend = FakeBackend(["I cannot help with that.", '{"never": "reached"}'])
    extractor = StructuredExtractor(backend, CredentialPool(["k1", "k2"]))
    with pytest.raises(NoJsonFound):
        extractor.extract("text")
    assert len(backend.calls) == 1
    print("  ✓ test_unrecoverable_output_is_not_retried")


def test_prompt_truncates_long_documents(monkeypatch):
    monkeypatch.setattr(config.llm, "max_document_chars", 50)
    prompt = build_rfp_prompt("x" * 80 + "TAIL")
    assert "x" * 50 in prompt
    assert "x" * 51 not in prompt
    assert "TAIL" not in prompt
    assert '"bid_details": {' in prompt
    print("  ✓ test_prompt_truncates_long_documents")


# ── ATC slice ────────────────────────────────────────────────────────────

def test_atc_slice_between_markers():
    text = (
        "Item details table ...\n"
        "Buyer Added Bid Specific Terms and Conditions\n\n"
        "1. Inspection   at site.\n"
        "Disclaimer: portal boilerplate"
    )
    assert extract_atc_slice(text) == (
        "Buyer Added Bid Specific Terms and Conditions 1. Inspection at site."
    )
    print("  ✓ test_atc_slice_between_markers")


def test_atc_slice_uses_last_start_marker():
    text = (
        "Buyer Added Bid Specific ATC mentioned in the index. "
        "Pages of item tables. "
        "Buyer Added Bid Specific ATC 1. Warranty 24 months. "
        "This Bid is also governed by the GTC."
    )
    sliced = extract_atc_slice(text)
    assert sliced == "Buyer Added Bid Specific ATC 1. Warranty 24 months."
    print("  ✓ test_atc_slice_uses_last_start_marker")


def test_atc_slice_window_without_end_marker():
    text = "Buyer Added text based ATC clauses " + "y" * 6000
    sliced = extract_atc_slice(text)
    assert sliced.startswith("Buyer Added text based ATC clauses")
    assert len(sliced) == config.atc.window_chars
    print("  ✓ test_atc_slice_window_without_end_marker")


def test_atc_slice_tail_without_start_marker():
    text = "A" * 9000 + " end"
    sliced = extract_atc_slice(text)
    assert len(sliced) == config.atc.tail_chars
    assert sliced.endswith(" end")
    print("  ✓ test_atc_slice_tail_without_start_marker")


def test_find_document_links_dedupes_and_trims():
    text = (
        "Spec at https://gem.gov.in/spec.pdf, again https://gem.gov.in/spec.pdf; "
        "BoQ at http://buyer.example.in/boq."
    )
    assert find_document_links(text) == [
        "https://gem.gov.in/spec.pdf",
        "http://buyer.example.in/boq",
    ]
    print("  ✓ test_find_document_links_dedupes_and_trims")


# ── Terms summary ────────────────────────────────────────────────────────

ATC_RESPONSE = """```json
{
  "atc_summary": ["Inspection will be carried out at the consignee site before acceptance of goods."],
  "required_documents": "OEM Authorization",
  "documents": [
    {"name": "Technical Specifications", "url": "https://gem.gov.in/spec.pdf"},
    {"name": "Missing URL"}
  ],
  "risk_entries": [
    {"category": "Financial", "statement": "Payment terms are Net-90.", "riskLevel": "High"},
    {"category": "Weather", "statement": "Monsoon delays.", "riskLevel": "High"}
  ]
}
```"""


def test_summarizer_keeps_valid_parts():
    backend = FakeBackend([ATC_RESPONSE])
    summarizer = TermsSummarizer(backend, CredentialPool(["g1"]))

    summary = summarizer.summarize(
        "Buyer Added Bid Specific ATC 1. Net-90 payment. Disclaimer",
        links=["https://gem.gov.in/spec.pdf"],
    )

    assert len(summary.atc_summary) == 1
    assert summary.required_documents == ["OEM Authorization"]
    assert [d.url for d in summary.documents] == ["https://gem.gov.in/spec.pdf"]
    assert len(summary.risk_entries) == 1
    assert summary.risk_entries[0].risk_level == "High"
    assert summary.risk_entries[0].category == "Financial"

    prompt, _, _, max_tokens = backend.calls[0]
    assert "https://gem.gov.in/spec.pdf" in prompt
    assert "Net-90 payment" in prompt
    assert max_tokens == config.llm.atc_max_output_tokens
    print("  ✓ test_summarizer_keeps_valid_parts")


def test_summarizer_degrades_on_backend_error():
    pool = CredentialPool(["g1", "g2"])
    summarizer = TermsSummarizer(FakeBackend([RuntimeError("503")]), pool)
    assert summarizer.summarize("some text") == ATCSummary()
    assert pool.cursor == 1
    print("  ✓ test_summarizer_degrades_on_backend_error")


def test_summarizer_degrades_on_unparseable_output():
    summarizer = TermsSummarizer(FakeBackend(["no json here"]), CredentialPool(["g1"]))
    assert summarizer.summarize("some text") == ATCSummary()
    print("  ✓ test_summarizer_degrades_on_unparseable_output")


def test_summarizer_ignores_non_list_fields():
    output = '{"atc_summary": ["Net-90 payment."], "risk_entries": 5, "documents": 3}'
    summarizer = TermsSummarizer(FakeBackend([output]), CredentialPool(["g1"]))

    summary = summarizer.summarize("Buyer Added Bid Specific ATC 1. Net-90 payment.")

    assert summary.atc_summary == ["Net-90 payment."]
    assert summary.documents == []
    assert summary.risk_entries == []
    print("  ✓ test_summarizer_ignores_non_list_fields")


def test_summarizer_accepts_single_object_fields():
    output = (
        '{"documents": {"name": "BoQ", "url": "https://gem.gov.in/boq.pdf"}, '
        '"risk_entries": {"category": "Technical", "statement": "Type test needed.", "riskLevel": "Low"}}'
    )
    summarizer = TermsSummarizer(FakeBackend([output]), CredentialPool(["g1"]))

    summary = summarizer.summarize("some text")

    assert [d.url for d in summary.documents] == ["https://gem.gov.in/boq.pdf"]
    assert [r.category for r in summary.risk_entries] == ["Technical"]
    print("  ✓ test_summarizer_accepts_single_object_fields")


def test_summarizer_degrades_when_slicing_fails(monkeypatch):
    def broken_slice(text):
        raise RuntimeError("bad marker config")

    monkeypatch.setattr("tender_bid.extraction.extract_atc_slice", broken_slice)
    backend = FakeBackend(['{"atc_summary": ["x"]}'])

    assert TermsSummarizer(backend, CredentialPool(["g1"])).summarize("text") == ATCSummary()
    assert backend.calls == []
    print("  ✓ test_summarizer_degrades_when_slicing_fails")


# ── Gemini backend ───────────────────────────────────────────────────────

class _SharedKeySdk:
    """Mimics genai: configure() stores one key for every model."""

    def __init__(self):
        self.api_key = None

    def configure(self, api_key):
        self.api_key = api_key

    def GenerativeModel(self, model_name, generation_config=None):
        sdk = self

        class _Model:
            def generate_content(self, prompt):
                time.sleep(0.05)

                class _Response:
                    text = sdk.api_key

                return _Response()

        return _Model()


def test_gemini_concurrent_calls_keep_their_own_key(monkeypatch):
    backend = GeminiBackend(model_name="gemini-test")
    sdk = _SharedKeySdk()
    monkeypatch.setattr(backend, "_sdk", lambda: sdk)

    start = threading.Barrier(2)
    sent = {}

    def call(key):
        start.wait()
        sent[key] = backend.generate("prompt", key, temperature=0.1, max_output_tokens=64)

    threads = [threading.Thread(target=call, args=(key,)) for key in ("k1", "k2")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sent == {"k1": "k1", "k2": "k2"}
    print("  ✓ test_gemini_concurrent_calls_keep_their_own_key")
