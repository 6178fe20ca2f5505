"""
matching.py -- Score canonical line items against the product catalog.

For each line item:

  1. Category gate. Tokenise the item name; a SKU is a candidate if its
     category + sub-category + name contains any token. No candidates
     means NONE straight away.
  2. Spec score per candidate (30-100). Items without specs get a flat
     60. Otherwise 60 points for a standards hit (a SKU value containing
     "is", as in "IS 694", that appears in some spec string) plus up to 40
     points for the share of spec strings that mention any SKU value.
  3. Availability weight: full stock 1.0, partial 0.8, none 0.4. Zero
     stock still ranks so the buyer can see what to source.
  4. match % = round(spec score * weight). Stable sort, top 3 kept,
     rank 1 selected.

The "is" heuristic is crude on purpose: catalogue exports put the BIS
standard in free text ("IS 694:2010", "as per IS 1554") and anything
smarter kept missing them. It will also fire on words like "insulation";
the 30 point floor and the 40 point attribute share keep that from
swinging a result on its own.
"""

from __future__ import annotations

import logging
import math
import re
from typing import List, Sequence, Tuple

from tender_bid.config import config
from tender_bid.schemas import (
    CanonicalLineItem,
    ComplianceCheck,
    InventorySKU,
    MatchResult,
    MatchStatus,
    RiskEntry,
)

logger = logging.getLogger(__name__)

_TOKEN_SPLIT = re.compile(r"[\W_]+")


def round_half_up(value: float) -> int:
    """Percentages round .5 up, not to even."""
    return int(math.floor(value + 0.5))


def tokenize(name: str) -> List[str]:
    min_len = config.matching.min_token_length
    return [t for t in _TOKEN_SPLIT.split(name.lower()) if len(t) >= min_len]


def find_candidates(item: CanonicalLineItem, catalog: Sequence[InventorySKU]) -> List[InventorySKU]:
    tokens = tokenize(item.name)
    if not tokens:
        return []
    candidates = []
    for sku in catalog:
        haystack = f"{sku.category} {sku.sub_category} {sku.name}".lower()
        if any(token in haystack for token in tokens):
            candidates.append(sku)
    return candidates


def spec_score(technical_specs: Sequence[str], sku: InventorySKU) -> float:
    """0-100 fit of a SKU's attributes against the line item's spec strings,
    clamped to the configured [min, max] band."""
    m = config.matching
    if not technical_specs:
        return m.no_spec_score

    specs = [s.lower() for s in technical_specs]
    values = [str(v).lower() for v in sku.specification.values()]

    score = 0.0
    standard_values = [v for v in values if "is" in v]
    if any(v in spec for spec in specs for v in standard_values):
        score += m.standard_points

    attribute_values = [v for v in values if len(v) > 2]
    matched = sum(1 for spec in specs if any(v in spec for v in attribute_values))
    score += m.attribute_points * matched / len(specs)

    return max(m.min_spec_score, min(m.max_spec_score, score))


def availability_weight(required: int, available: int) -> float:
    m = config.matching
    if available >= required:
        return m.full_stock_weight
    if available > 0:
        return m.partial_stock_weight
    return m.zero_stock_weight


def classify(match_percentage: int) -> MatchStatus:
    m = config.matching
    if match_percentage < m.none_threshold:
        return MatchStatus.NONE
    if match_percentage >= m.complete_threshold:
        return MatchStatus.COMPLETE
    return MatchStatus.PARTIAL


def stock_risk(item: CanonicalLineItem, sku: InventorySKU) -> List[RiskEntry]:
    """Medium for a partial shortfall, High for nothing in stock."""
    if sku.available_quantity >= item.quantity:
        return []
    level = "High" if sku.available_quantity <= 0 else "Medium"
    return [RiskEntry(
        category="Logistics",
        risk_level=level,
        statement=(
            f"Inventory gap for {item.name} ({sku.id}): "
            f"{sku.available_quantity}/{item.quantity} available."
        ),
    )]


def match_line_item(item: CanonicalLineItem, catalog: Sequence[InventorySKU]) -> MatchResult:
    candidates = find_candidates(item, catalog)
    if not candidates:
        logger.info("No catalog candidates for '%s'.", item.name)
        return MatchResult(
            line_item=item,
            status=MatchStatus.NONE,
            selected_sku=None,
            match_percentage=0,
            top3_recommendations=[],
            compliance_checks=[ComplianceCheck(spec=s) for s in item.technical_specs],
            risk_entries=[RiskEntry(
                category="Technical",
                risk_level="High",
                statement=f"No category match in store for {item.name}. "
                          f"Requires manual sourcing/pricing.",
            )],
        )

    scored: List[Tuple[InventorySKU, float, int]] = []
    for sku in candidates:
        score = spec_score(item.technical_specs, sku)
        weight = availability_weight(item.quantity, sku.available_quantity)
        scored.append((sku, score, round_half_up(score * weight)))

    # sorted() is stable, so equal scores keep catalog order.
    scored = sorted(scored, key=lambda entry: entry[2], reverse=True)
    best_sku, best_spec_score, percentage = scored[0]
    status = classify(percentage)

    risks = stock_risk(item, best_sku)
    if status is MatchStatus.PARTIAL:
        risks.append(RiskEntry(
            category="Technical",
            risk_level="Medium",
            statement=f"Partial spec match ({percentage}%) for {item.name}. "
                      f"Verify IS Standard compliance manually.",
        ))

    logger.debug(
        "'%s' -> %s (%d%%, spec=%.1f, %d candidates)",
        item.name, best_sku.id, percentage, best_spec_score, len(candidates),
    )

    return MatchResult(
        line_item=item,
        status=status,
        selected_sku=best_sku,
        match_percentage=percentage,
        top3_recommendations=[sku for sku, _, _ in scored[:config.matching.top_n]],
        compliance_checks=[
            ComplianceCheck(spec=s, verified=best_spec_score > 50 and "IS" in s)
            for s in item.technical_specs
        ],
        risk_entries=risks,
    )


def match(line_items: Sequence[CanonicalLineItem], catalog: Sequence[InventorySKU]) -> List[MatchResult]:
    """Match every line item against the catalog. Pure; the catalog is
    never modified."""
    results = [match_line_item(item, catalog) for item in line_items]
    counts = {s: sum(1 for r in results if r.status is s) for s in MatchStatus}
    logger.info(
        "Technical matching: %d items -> %d complete, %d partial, %d none",
        len(results), counts[MatchStatus.COMPLETE],
        counts[MatchStatus.PARTIAL], counts[MatchStatus.NONE],
    )
    return results
