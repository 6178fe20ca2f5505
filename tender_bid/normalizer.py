"""
normalizer.py -- Raw extraction record -> ParsedRfp.

The model doesn't return line items in one shape. Depending on how the
bid PDF was laid out we've seen three, in decreasing order of how much
they tell us:

  ITEM_DETAILS  "item_details": [{"item_category_code": ..., "consignees": [...]}]
                The standard GeM bid layout. Carries per-consignee
                quantity and delivery days, so it wins whenever present.
  SPEC_LIST     "technical_specifications": [{"item_name": ..., "generic_...": ...,
                "additional_specification_parameters": [...]}]
                Catalogue-style bids with one spec block per item.
  SPEC_OBJECT   "technical_specifications": {"key": "value", ...}
                One implicit item described by flat key/value pairs.

detect_shape() checks them in that order. Anything else is UNSTRUCTURED,
and so is a recognised shape that yields nothing: both end with a single
placeholder item, so downstream code never has to handle an empty bid.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from tender_bid.exceptions import InvalidRecord
from tender_bid.schemas import (
    BidMetadata,
    CanonicalLineItem,
    Certification,
    FinancialConditions,
    ParsedRfp,
)

logger = logging.getLogger(__name__)

# Substring match, case-insensitive. Short codes like "CE" will also hit
# words that contain them; verification is a manual step anyway.
CERT_KEYWORDS = (
    "ISO 9001", "ISO 14001", "ISO 45001", "BIS", "CE", "IEC", "ROHS", "ISI", "NABL",
)

PLACEHOLDER_ITEM_NAME = "Unstructured RFP Item"


class RecordShape(str, Enum):
    ITEM_DETAILS = "ITEM_DETAILS"
    SPEC_LIST = "SPEC_LIST"
    SPEC_OBJECT = "SPEC_OBJECT"
    UNSTRUCTURED = "UNSTRUCTURED"


_SHAPE_PREDICATES: Sequence[Tuple[RecordShape, Callable[[Dict[str, Any]], bool]]] = (
    (RecordShape.ITEM_DETAILS, lambda r: isinstance(r.get("item_details"), list)),
    (RecordShape.SPEC_LIST, lambda r: isinstance(r.get("technical_specifications"), list)),
    (RecordShape.SPEC_OBJECT, lambda r: isinstance(r.get("technical_specifications"), dict)),
)


def detect_shape(record: Dict[str, Any]) -> RecordShape:
    for shape, predicate in _SHAPE_PREDICATES:
        if predicate(record):
            return shape
    return RecordShape.UNSTRUCTURED


def normalize(record: Any) -> ParsedRfp:
    """
    Turn whatever the extractor returned into canonical line items and
    bid metadata.

    Raises InvalidRecord only when ``record`` isn't a dict at all.
    """
    if not isinstance(record, dict):
        raise InvalidRecord(
            f"Normalizer received {type(record).__name__}, expected a JSON object"
        )

    shape = detect_shape(record)
    items = _SHAPE_HANDLERS[shape](record)
    if not items:
        logger.warning(
            "Record shape %s produced no line items; using placeholder.", shape.value
        )
        items = [_placeholder_item()]

    metadata = extract_metadata(record)
    logger.info(
        "Normalized bid %s: shape=%s, %d line items",
        metadata.bid_number, shape.value, len(items),
    )

    bid = _as_dict(record.get("bid_details"))
    consignees = _as_list(record.get("consignees"))
    first_consignee = _as_dict(consignees[0]) if consignees else {}

    return ParsedRfp(
        metadata=metadata,
        line_items=items,
        mandatory_documents=_string_list(_first_present(
            bid, "document_required_from_seller", "documents_required_from_seller",
        )),
        option_clause=extract_option_clause(record.get("buyer_added_terms")),
        consignee=str(first_consignee.get("address") or "Consignee not specified"),
        shape=shape.value,
    )


# ── Shape handlers ────────────────────────────────────────────────────────

def _items_from_item_details(record: Dict[str, Any]) -> List[CanonicalLineItem]:
    items: List[CanonicalLineItem] = []
    for idx, raw in enumerate(record["item_details"]):
        entry = _as_dict(raw)
        consignees = _as_list(entry.get("consignees"))
        first = _as_dict(consignees[0]) if consignees else {}
        code = entry.get("item_category_code")

        specs = [
            f"Category Code: {code}" if code else "",
            f"Delivery Days: {first['delivery_days']}" if first.get("delivery_days") else "",
        ]
        specs = [s for s in specs if s]

        items.append(CanonicalLineItem(
            name=f"Item {code}" if code else f"Line Item {idx + 1}",
            quantity=_to_int(first.get("quantity") or entry.get("quantity")),
            technical_specs=specs,
            certifications=detect_certifications(specs),
        ))
    return items


def _items_from_spec_list(record: Dict[str, Any]) -> List[CanonicalLineItem]:
    items: List[CanonicalLineItem] = []
    for idx, raw in enumerate(record["technical_specifications"]):
        entry = _as_dict(raw)
        specs: List[str] = []
        generic = entry.get("generic_technical_specifications_and_requirement_of_products")
        if generic:
            specs.append(str(generic))
        for param in _as_list(entry.get("additional_specification_parameters")):
            param = _as_dict(param)
            if param.get("name"):
                specs.append(f"{param['name']}: {param.get('bid_requirement_allowed_values') or ''}")

        items.append(CanonicalLineItem(
            name=str(entry.get("item_name") or f"Line Item {idx + 1}"),
            quantity=_to_int(entry.get("quantity")),
            technical_specs=specs,
            certifications=detect_certifications(specs),
        ))
    return items


def _items_from_spec_object(record: Dict[str, Any]) -> List[CanonicalLineItem]:
    specs = [f"{k}: {v}" for k, v in record["technical_specifications"].items()]
    details = _as_dict(record.get("item_details"))
    consignees = _as_list(record.get("consignees"))
    first = _as_dict(consignees[0]) if consignees else {}

    name = _first_present(details, "boq_title", "searched_strings_used_in_gemarpts")
    return [CanonicalLineItem(
        name=str(name or "Unspecified Item"),
        quantity=_to_int(details.get("total_quantity") or first.get("quantity")),
        technical_specs=specs,
        certifications=detect_certifications(specs),
    )]


def _items_unstructured(record: Dict[str, Any]) -> List[CanonicalLineItem]:
    return []


_SHAPE_HANDLERS: Dict[RecordShape, Callable[[Dict[str, Any]], List[CanonicalLineItem]]] = {
    RecordShape.ITEM_DETAILS: _items_from_item_details,
    RecordShape.SPEC_LIST: _items_from_spec_list,
    RecordShape.SPEC_OBJECT: _items_from_spec_object,
    RecordShape.UNSTRUCTURED: _items_unstructured,
}


def _placeholder_item() -> CanonicalLineItem:
    return CanonicalLineItem(name=PLACEHOLDER_ITEM_NAME, quantity=0)


# ── Certifications & terms ────────────────────────────────────────────────

def detect_certifications(
    texts: Sequence[str],
    source: str = "Technical Specs",
) -> List[Certification]:
    """Certification keywords mentioned anywhere in the spec strings,
    one entry per keyword, in vocabulary order."""
    found: List[Certification] = []
    upper_texts = [str(t).upper() for t in texts if t]
    for cert in CERT_KEYWORDS:
        if any(cert in text for text in upper_texts):
            found.append(Certification(name=cert, source=source, verified=False))
    return found


def extract_option_clause(terms: Any) -> Optional[str]:
    """First buyer-added term that mentions OPTION. Terms may be plain
    strings or {"details"/"description": ...} objects."""
    if not isinstance(terms, list):
        return None
    for term in terms:
        if isinstance(term, dict):
            text = term.get("details") or term.get("description") or ""
            if "OPTION" in str(text).upper() or "OPTION" in str(term.get("title", "")).upper():
                return str(text) or str(term.get("title"))
        elif term is not None and "OPTION" in str(term).upper():
            return str(term)
    return None


# ── Metadata ──────────────────────────────────────────────────────────────

def extract_metadata(record: Dict[str, Any]) -> BidMetadata:
    bid = _as_dict(record.get("bid_details"))
    consignees = _as_list(record.get("consignees"))
    first_consignee = _as_dict(consignees[0]) if consignees else {}
    details = record.get("item_details")

    emd_amount = _to_int(_first_present(bid, "emdAmount", "emd_amount"))
    epbg_amount = _to_int(_first_present(bid, "epbgAmount", "epbg_amount"))

    emd_required = (
        _is_yes(_first_present(bid, "emd_required", "emd_detail_required"))
        or emd_amount > 0
    )
    epbg_required = (
        _is_yes(_first_present(bid, "epbg_required", "epbg_detail_required"))
        or epbg_amount > 0
    )

    category = bid.get("item_category")
    if isinstance(category, list):
        category = category[0] if category else None

    total_quantity = bid.get("total_quantity")
    if _is_empty(total_quantity) and isinstance(details, dict):
        total_quantity = details.get("total_quantity")

    delivery_days = first_consignee.get("delivery_days")
    if _is_empty(delivery_days) and isinstance(details, list) and details:
        nested = _as_list(_as_dict(details[0]).get("consignees"))
        if nested:
            delivery_days = _as_dict(nested[0]).get("delivery_days")

    epbg_percent = _to_float(_first_present(bid, "epbg_percentage", "epbgPercent", "epbg_percent"))

    return BidMetadata(
        bid_number=str(_first_present(bid, "bid_number", "bid_no", "bidNumber") or "N/A"),
        issuing_organization=str(_first_present(
            bid, "organisation_name", "organization_name", "department_name", "ministry_name",
        ) or "N/A"),
        bid_type=str(_first_present(bid, "type_of_bid", "bid_type") or "N/A"),
        bid_end_date=str(_first_present(
            bid, "bid_end_date_time", "bid_end_date", "end_date",
        ) or "N/A"),
        offer_validity_days=_to_int(_first_present(
            bid, "bid_offer_validity_days", "offer_validity_days",
        )),
        delivery_days=_to_int(delivery_days),
        item_category=str(category) if category else None,
        total_quantity=_to_int(total_quantity),
        office_name=str(bid["office_name"]) if bid.get("office_name") else None,
        emd_amount=emd_amount,
        epbg_amount=epbg_amount,
        epbg_percent=epbg_percent if epbg_percent > 0 else None,
        emd_required=emd_required,
        epbg_required=epbg_required,
        financial_conditions=FinancialConditions(
            emd="Required" if emd_required else "No",
            epbg="Required" if epbg_required else "Not Required",
        ),
    )


# ── Coercion helpers ──────────────────────────────────────────────────────

def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _first_present(source: Dict[str, Any], *keys: str) -> Any:
    """First non-empty value among the alternate spellings of a field."""
    for key in keys:
        value = source.get(key)
        if not _is_empty(value):
            return value
    return None


def _is_yes(value: Any) -> bool:
    if value is True:
        return True
    return isinstance(value, str) and value.strip().lower() in ("yes", "true")


def _to_float(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "").strip())
    except ValueError:
        return 0.0


def _to_int(value: Any) -> int:
    """Non-numeric and negative values become 0."""
    number = _to_float(value)
    if not math.isfinite(number):
        return 0
    return max(0, int(number))


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    return [str(v) for v in _as_list(value) if not _is_empty(v)]
