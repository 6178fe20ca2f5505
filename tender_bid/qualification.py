"""
qualification.py -- Decide which scanned listings are worth a deep look.

Input is whatever the portal scan harvested (CandidateBid records); the
scan itself lives elsewhere. Output is the qualified subset as Tender
records, best inventory overlap first.

Steps:
  1. Date window: keep bids closing between today and today + 3 months.
     Unparseable or missing dates are dropped and logged per bid, so a
     scraper change that breaks the date column shows up in the logs
     instead of as a quiet empty result.
  2. Metrics: catalog overlap score, stock, distance, logistics cost, risk.
  3. Gate: distance cap, EMD appetite, minimum match score. The bypass
     flag skips the gate (used when a buyer wants to see everything).
"""

from __future__ import annotations

import calendar
import logging
import random
from datetime import date, datetime
from typing import List, Optional, Sequence

from tender_bid.config import config
from tender_bid.matching import round_half_up
from tender_bid.schemas import CandidateBid, DiscoveryFilters, InventorySKU, Tender

logger = logging.getLogger(__name__)


def parse_listing_date(value: Optional[str]) -> Optional[date]:
    """dd-mm-yyyy, as the portal prints it. Anything else is None."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip()[:10], "%d-%m-%Y").date()
    except ValueError:
        return None


def add_months(start: date, months: int) -> date:
    """Calendar month arithmetic, clamping to the end of shorter months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def within_window(
    candidates: Sequence[CandidateBid],
    today: Optional[date] = None,
) -> List[CandidateBid]:
    today = today or date.today()
    horizon = add_months(today, config.discovery.window_months)

    kept: List[CandidateBid] = []
    malformed = 0
    for bid in candidates:
        end = parse_listing_date(bid.end_date)
        if end is None:
            malformed += 1
            logger.warning("Dropping bid %s: unreadable end date %r", bid.id, bid.end_date)
            continue
        if today <= end <= horizon:
            kept.append(bid)
        else:
            logger.debug("Bid %s outside window (ends %s)", bid.id, end)

    logger.info(
        "Date window %s..%s: kept %d of %d bids (%d with malformed dates)",
        today, horizon, len(kept), len(candidates), malformed,
    )
    return kept


def matching_skus(bid: CandidateBid, catalog: Sequence[InventorySKU]) -> List[InventorySKU]:
    text = f"{bid.title} {bid.category}".lower()
    matches = []
    for sku in catalog:
        category = sku.category.strip().lower()
        sub_category = sku.sub_category.strip().lower()
        if (category and category in text) or (sub_category and sub_category in text):
            matches.append(sku)
    return matches


def match_score(bid: CandidateBid, matches: Sequence[InventorySKU], catalog_size: int) -> int:
    score = round_half_up(100 * len(matches) / max(catalog_size, 1))
    if score > 0:
        return score

    d = config.discovery
    if d.zero_match_policy == "optimistic":
        # Seeded by bid id so the same listing always gets the same score.
        return random.Random(bid.id).randrange(d.optimistic_floor, d.optimistic_ceiling)
    return 0


def risk_level(score: int, in_stock: bool) -> str:
    if score > 75 and in_stock:
        return "Low"
    if score > 40:
        return "Medium"
    return "High"


def truck_multiplier(matches: Sequence[InventorySKU]) -> float:
    """Multiplier of the first matching SKU's truck; full-size if none."""
    multipliers = config.discovery.truck_multipliers
    if not matches:
        return multipliers["HEAVY_TRUCK"]
    return multipliers.get(matches[0].truck_type.value, multipliers["HEAVY_TRUCK"])


def resolve_distance(bid: CandidateBid, filters: DiscoveryFilters) -> float:
    if filters.manual_avg_kms is not None:
        return float(filters.manual_avg_kms)
    if bid.distance is not None:
        return float(bid.distance)
    return config.discovery.default_avg_kms


def is_qualified(tender: Tender, filters: DiscoveryFilters) -> bool:
    if filters.bypass_filters:
        return True
    max_kms = filters.max_avg_kms if filters.max_avg_kms is not None else config.discovery.default_max_avg_kms
    return (
        tender.distance <= max_kms
        and (filters.allow_emd or not tender.emd_required)
        and tender.match_score >= filters.min_match_threshold
    )


def recommendation_reason(tender: Tender) -> str:
    d = config.discovery
    reasons = []
    if tender.match_score >= d.high_match_score:
        reasons.append("High inventory overlap")
    if tender.in_stock:
        reasons.append("Immediate fulfillment available")
    if tender.distance <= d.local_distance_kms:
        reasons.append("Low logistics cost (Local)")
    if not tender.emd_required:
        reasons.append("No financial lock-in (Zero EMD)")
    if not reasons:
        return "Standard match based on category."
    return f"Recommended: {', '.join(reasons)}."


def evaluate(bid: CandidateBid, catalog: Sequence[InventorySKU], filters: DiscoveryFilters) -> Tender:
    """Metrics and qualification for one candidate, regardless of outcome."""
    matches = matching_skus(bid, catalog)
    score = match_score(bid, matches, len(catalog))
    in_stock = any(sku.available_quantity > 0 for sku in matches)
    distance = resolve_distance(bid, filters)
    rate = filters.rate_per_km if filters.rate_per_km is not None else config.discovery.default_rate_per_km

    tender = Tender(
        **bid.model_dump(exclude={"distance"}),
        distance=distance,
        match_score=score,
        in_stock=in_stock,
        risk=risk_level(score, in_stock),
        logistics_cost=round(distance * rate * truck_multiplier(matches), 2),
    )
    return tender.model_copy(update={
        "is_qualified": is_qualified(tender, filters),
        "recommendation_reason": recommendation_reason(tender),
    })


def qualify(
    candidates: Sequence[CandidateBid],
    catalog: Sequence[InventorySKU],
    filters: DiscoveryFilters,
    today: Optional[date] = None,
) -> List[Tender]:
    """Qualified candidates only, ranked by match score (ties keep input order)."""
    in_window = within_window(candidates, today=today)
    evaluated = [evaluate(bid, catalog, filters) for bid in in_window]
    qualified = [t for t in evaluated if t.is_qualified]
    qualified.sort(key=lambda t: t.match_score, reverse=True)

    high = sum(1 for t in qualified if t.match_score >= config.discovery.high_match_score)
    logger.info(
        "Qualification: %d candidates, %d in window, %d qualified (%d high overlap)",
        len(candidates), len(in_window), len(qualified), high,
    )
    return qualified
