"""
pricing.py -- Financial rollup of matched line items into a bid value.

Per item, in order:
  - a manual price override (keyed by line-item name) wins outright
  - otherwise the selected SKU's unit price and GST rate
  - otherwise the item can't be priced: High risk, and it contributes
    nothing to the totals

Then, on the item subtotal (unit price x requested quantity):
GST at the item rate, brokerage 2%, transport buffer 10%. EMD (2%) and
EPBG (3%, or whatever the bid specifies) are charged on the summed base
cost unless the bid says they are not required.

Accumulators stay unrounded; every money field is rounded to paise only
when the breakdown is built. The final value is the rounded sum of the
unrounded components, so it can differ from adding up the displayed
fields by a paisa.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from tender_bid.config import config
from tender_bid.matching import stock_risk
from tender_bid.schemas import (
    BidMetadata,
    FinancialBreakdown,
    MatchResult,
    MatchStatus,
    RiskEntry,
)

logger = logging.getLogger(__name__)

PROCEED = "Proceed with bid."
MANUAL_SOURCING = "Manual sourcing required."

_NOT_REQUIRED = {"not required", "no"}


def round_money(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def deposit_required(condition: str) -> bool:
    return (condition or "").strip().lower() not in _NOT_REQUIRED


def overall_status(results: Sequence[MatchResult]) -> MatchStatus:
    if not results:
        return MatchStatus.NONE
    if all(r.status is MatchStatus.COMPLETE for r in results):
        return MatchStatus.COMPLETE
    if any(r.status in (MatchStatus.COMPLETE, MatchStatus.PARTIAL) for r in results):
        return MatchStatus.PARTIAL
    return MatchStatus.NONE


def price(
    match_results: Sequence[MatchResult],
    metadata: BidMetadata,
    price_overrides: Optional[Mapping[str, float]] = None,
) -> FinancialBreakdown:
    """Price a bid from its match results. Deterministic; nothing cached."""
    p = config.pricing
    overrides: Dict[str, float] = dict(price_overrides or {})
    risks: List[RiskEntry] = []

    base_cost = 0.0
    transport_cost = 0.0
    gst_amount = 0.0
    brokerage_cost = 0.0

    for index, result in enumerate(match_results, start=1):
        item = result.line_item
        sku = result.selected_sku

        if item.name in overrides:
            unit_price = float(overrides[item.name])
            gst_rate = p.gst_default_rate
            risks.append(RiskEntry(
                category="Financial",
                risk_level="Low",
                statement=f"Manual price override used for {item.name}: {unit_price:.2f}/unit.",
            ))
        elif sku is not None:
            unit_price = sku.unit_price
            gst_rate = sku.gst_rate
            risks.extend(stock_risk(item, sku))
            if sku.min_margin_percent > p.default_margin_percent:
                risks.append(RiskEntry(
                    category="Financial",
                    risk_level="Medium",
                    statement=f"SKU {sku.id} requires higher minimum margin "
                              f"({sku.min_margin_percent:g}%).",
                ))
        else:
            risks.append(RiskEntry(
                category="Financial",
                risk_level="High",
                statement=f"Line item {index} ({item.name}) has no SKU or price; "
                          f"excluded from the bid value.",
            ))
            continue

        item_cost = unit_price * item.quantity
        base_cost += item_cost
        gst_amount += item_cost * gst_rate / 100
        brokerage_cost += item_cost * p.brokerage_percent / 100
        transport_cost += item_cost * p.transport_buffer_percent / 100

    conditions = metadata.financial_conditions
    epbg_amount = 0.0
    if deposit_required(conditions.epbg):
        epbg_amount = base_cost * (metadata.epbg_percent or p.epbg_percent) / 100
    emd_amount = 0.0
    if deposit_required(conditions.emd):
        emd_amount = base_cost * p.emd_percent / 100

    final_bid_value = (
        base_cost + transport_cost + gst_amount + brokerage_cost + epbg_amount + emd_amount
    )

    confidence = (
        sum(r.match_percentage for r in match_results) / len(match_results)
        if match_results else 0.0
    )
    rounded_final = round_money(final_bid_value)

    breakdown = FinancialBreakdown(
        base_cost=round_money(base_cost),
        transport_cost=round_money(transport_cost),
        gst_amount=round_money(gst_amount),
        brokerage_cost=round_money(brokerage_cost),
        epbg_amount=round_money(epbg_amount),
        emd_amount=round_money(emd_amount),
        final_bid_value=rounded_final,
        confidence_score=round_money(confidence),
        match_status=overall_status(match_results),
        requires_manual_input=base_cost == 0 and len(match_results) > 0,
        recommendation=PROCEED if rounded_final > 0 else MANUAL_SOURCING,
        risk_entries=risks,
    )
    logger.info(
        "Priced bid %s: base=%.2f final=%.2f status=%s (%d risks)",
        metadata.bid_number, breakdown.base_cost, breakdown.final_bid_value,
        breakdown.match_status.value, len(risks),
    )
    return breakdown
