"""
main.py -- Pipeline orchestration and CLI for TenderBidEngine.

Primary path, five timed stages:

  [1/5] structured extraction (Gemini, with key failover + JSON repair)
  [2/5] normalization into canonical line items + metadata
  [3/5] terms & conditions summary (Groq, optional, never fatal)
  [4/5] technical matching against the catalog
  [5/5] financial rollup

The discovery path (qualify scanned listings against the catalog) is a
separate entry point and shares nothing with the above except the catalog.

The pipeline is a class so the extractor, its credential pool and the
optional summarizer are built once and reused across documents in a
batch, and so tests can hand it fake backends.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from tender_bid.config import config
from tender_bid.credentials import CredentialPool
from tender_bid.extraction import (
    GeminiBackend,
    GroqBackend,
    StructuredExtractor,
    TermsSummarizer,
    find_document_links,
)
from tender_bid.matching import match
from tender_bid.normalizer import normalize
from tender_bid.pricing import price
from tender_bid.qualification import qualify
from tender_bid.schemas import (
    ATCSummary,
    BidDecision,
    CandidateBid,
    DiscoveryFilters,
    InventorySKU,
    Tender,
)

logger = logging.getLogger("tender_bid")


class TenderBidPipeline:
    """
    End-to-end document-to-decision pipeline.

    Usage:
        pipeline = TenderBidPipeline.from_env()
        decision = pipeline.run(text, load_catalog("catalog.json"))
        print(decision.financials.final_bid_value)
    """

    def __init__(
        self,
        extractor: StructuredExtractor,
        summarizer: Optional[TermsSummarizer] = None,
    ):
        self.extractor = extractor
        self.summarizer = summarizer

    @classmethod
    def from_env(cls) -> "TenderBidPipeline":
        """Gemini extractor from GEMINI_API_KEYS; Groq summarizer only if
        GROQ_API_KEYS is set."""
        if not config.llm.gemini_api_keys:
            raise ValueError("Set GEMINI_API_KEYS (or GEMINI_API_KEY) to run extraction.")
        extractor = StructuredExtractor(GeminiBackend(), CredentialPool(config.llm.gemini_api_keys))

        summarizer = None
        if config.llm.groq_api_keys:
            summarizer = TermsSummarizer(GroqBackend(), CredentialPool(config.llm.groq_api_keys))
        else:
            logger.info("GROQ_API_KEYS not set; terms summary disabled.")
        return cls(extractor, summarizer)

    def run(
        self,
        document_text: str,
        catalog: Sequence[InventorySKU],
        price_overrides: Optional[Mapping[str, float]] = None,
        output_path: Optional[str] = None,
    ) -> BidDecision:
        if not document_text or not document_text.strip():
            raise ValueError("Document text is empty")

        overall_start = time.time()
        logger.info("=" * 60)
        logger.info("TenderBidEngine: processing document (%d chars)", len(document_text))
        logger.info("=" * 60)

        # ── Stage 1: Extraction ───────────────────────────────────
        t0 = time.time()
        logger.info("[1/5] Extracting structured record ...")
        record = self.extractor.extract(document_text)
        logger.info("  ✓ %d top-level keys in %.1fs", len(record), time.time() - t0)

        # ── Stage 2: Normalization ────────────────────────────────
        t0 = time.time()
        logger.info("[2/5] Normalizing ...")
        rfp = normalize(record)
        logger.info(
            "  ✓ %s | %d line items | shape %s in %.1fs",
            rfp.metadata.bid_number, len(rfp.line_items), rfp.shape, time.time() - t0,
        )
        if rfp.metadata.is_bid_closed:
            logger.warning("  ! Bid %s closed on %s", rfp.metadata.bid_number, rfp.metadata.bid_end_date)

        # ── Stage 3: Terms summary ────────────────────────────────
        t0 = time.time()
        atc = ATCSummary()
        if self.summarizer is not None:
            logger.info("[3/5] Summarizing buyer terms ...")
            atc = self.summarizer.summarize(document_text, find_document_links(document_text))
            logger.info("  ✓ %d summary points in %.1fs", len(atc.atc_summary), time.time() - t0)
        else:
            logger.info("[3/5] Terms summary skipped (no summarizer)")

        # ── Stage 4: Technical matching ───────────────────────────
        t0 = time.time()
        logger.info("[4/5] Matching against %d catalog SKUs ...", len(catalog))
        results = match(rfp.line_items, catalog)
        logger.info("  ✓ %d results in %.1fs", len(results), time.time() - t0)

        # ── Stage 5: Pricing ─────────────────────────────────────
        t0 = time.time()
        logger.info("[5/5] Pricing ...")
        financials = price(results, rfp.metadata, price_overrides)
        logger.info(
            "  ✓ Final bid value %.2f (%s) in %.1fs",
            financials.final_bid_value, financials.match_status.value, time.time() - t0,
        )

        # Matching and pricing both flag stock gaps; keep one of each.
        risk_entries = [risk for r in results for risk in r.risk_entries]
        risk_entries += financials.risk_entries
        risk_entries += atc.risk_entries
        risk_entries = list(dict.fromkeys(risk_entries))

        decision = BidDecision(
            rfp=rfp,
            match_results=results,
            financials=financials,
            risk_entries=risk_entries,
            atc_summary=atc,
        )

        logger.info("=" * 60)
        logger.info(
            "DONE in %.1fs | %s | %d risks",
            time.time() - overall_start, financials.recommendation, len(risk_entries),
        )
        logger.info("=" * 60)

        if output_path:
            _write_json(decision.model_dump(mode="json"), output_path)
        return decision


def discover(
    candidates: Sequence[CandidateBid],
    catalog: Sequence[InventorySKU],
    filters: Optional[DiscoveryFilters] = None,
    today: Optional[date] = None,
) -> List[Tender]:
    """Qualify listings from a portal scan."""
    return qualify(candidates, catalog, filters or DiscoveryFilters(), today=today)


# ── File helpers ──────────────────────────────────────────────────────────

def _read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(data: Any, output_path: str) -> None:
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    logger.info("Output written to: %s", output_path)


def load_catalog(path: str) -> List[InventorySKU]:
    """Catalog file is a JSON list of SKU objects."""
    data = _read_json(path)
    if not isinstance(data, list):
        raise ValueError(f"Catalog {path} must be a JSON list of SKUs")
    return [InventorySKU.model_validate(entry) for entry in data]


def load_candidates(path: str) -> List[CandidateBid]:
    data = _read_json(path)
    if not isinstance(data, list):
        raise ValueError(f"Listings file {path} must be a JSON list")
    return [CandidateBid.model_validate(entry) for entry in data]


# ── CLI ───────────────────────────────────────────────────────────────────

def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tender-bid",
        description="TenderBidEngine: turn tender text into a priced bid decision",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze", help="Extract, match and price a tender document")
    analyze.add_argument("file", help="Plain-text tender document")
    analyze.add_argument("--catalog", "-c", required=True, help="Catalog JSON (list of SKUs)")
    analyze.add_argument("--overrides", default=None, help="JSON object of line-item name -> unit price")
    analyze.add_argument("--output", "-o", default=None, help="JSON output path (default: stdout)")

    disc = sub.add_parser("discover", help="Qualify scanned bid listings")
    disc.add_argument("file", help="Listings JSON (list of candidate bids)")
    disc.add_argument("--catalog", "-c", required=True, help="Catalog JSON (list of SKUs)")
    disc.add_argument("--filters", default=None, help="Discovery filters JSON")
    disc.add_argument("--output", "-o", default=None, help="JSON output path (default: stdout)")
    return parser


def main(argv: Optional[List[str]] = None):
    """CLI entry point."""
    args = _build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        catalog = load_catalog(args.catalog)
        if args.command == "analyze":
            text = Path(args.file).read_text(encoding="utf-8")
            overrides: Dict[str, float] = _read_json(args.overrides) if args.overrides else {}
            decision = TenderBidPipeline.from_env().run(text, catalog, overrides, args.output)
            result: Any = decision.model_dump(mode="json")
        else:
            filters = DiscoveryFilters.model_validate(_read_json(args.filters)) if args.filters else None
            tenders = discover(load_candidates(args.file), catalog, filters)
            result = [t.model_dump(mode="json") for t in tenders]
            if args.output:
                _write_json(result, args.output)

        if args.output is None:
            print(json.dumps(result, indent=2, ensure_ascii=False))
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        sys.exit(1)
    except ValueError as exc:
        logger.error("Invalid input: %s", exc)
        sys.exit(1)
    except RuntimeError as exc:
        logger.error("Runtime error: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
