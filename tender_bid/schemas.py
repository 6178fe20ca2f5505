"""
schemas.py -- Pydantic v2 models for every stage of the bid pipeline.

These models are the stable contract between stages and whatever sits
in front of us (dashboard, API client). Each stage produces a fresh
instance and never mutates its input. MatchResult is frozen all the
way down (line item, SKUs, certifications) because the financial
rollup and the UI both read the same objects.

Field names are snake_case here; the LLM-facing JSON keys (bid_details,
item_details, ...) are handled in normalizer.py and never leak past it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


RiskLevel = Literal["Low", "Medium", "High"]
RiskCategory = Literal["Technical", "Logistics", "Financial", "Compliance"]

# GeM prints end dates a handful of ways depending on which page the
# text came from. Order matters: the most specific format goes first.
_END_DATE_FORMATS = (
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y %H:%M",
    "%d-%m-%Y",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
)


def parse_bid_date(value: Optional[str]) -> Optional[datetime]:
    """Best-effort parse of a bid end date. Returns None if unparseable."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    for fmt in _END_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Compare everything as naive local time.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


class MatchStatus(str, Enum):
    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"
    NONE = "NONE"


class TruckType(str, Enum):
    MINI_TRUCK = "MINI_TRUCK"
    LCV = "LCV"
    MEDIUM_TRUCK = "MEDIUM_TRUCK"
    HEAVY_TRUCK = "HEAVY_TRUCK"


class RiskEntry(BaseModel):
    """One line in the risk register shown next to the bid decision."""
    model_config = ConfigDict(frozen=True)

    category: RiskCategory
    statement: str
    risk_level: RiskLevel


# ── Parsed RFP ────────────────────────────────────────────────────────────

class Certification(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    source: Literal["Technical Specs", "Buyer ATC", "Seller Docs", "Unknown"] = "Technical Specs"
    # Verification is a human step outside this package.
    verified: bool = False


class CanonicalLineItem(BaseModel):
    """A single quantified line item, whatever shape the LLM returned it in."""
    model_config = ConfigDict(frozen=True)

    name: str
    quantity: int = Field(default=0, ge=0)
    technical_specs: List[str] = Field(default_factory=list)
    required_standards: List[str] = Field(default_factory=list)
    certifications: List[Certification] = Field(default_factory=list)


class FinancialConditions(BaseModel):
    emd: str = "No"
    epbg: str = "Not Required"
    payment_terms: str = "As per GeM GTC"


class BidMetadata(BaseModel):
    bid_number: str = "N/A"
    issuing_organization: str = "N/A"
    bid_type: str = "N/A"
    bid_end_date: str = "N/A"
    offer_validity_days: int = 0
    delivery_days: int = 0
    item_category: Optional[str] = None
    total_quantity: int = 0
    office_name: Optional[str] = None
    emd_amount: int = 0
    epbg_amount: int = 0
    epbg_percent: Optional[float] = None
    emd_required: bool = False
    epbg_required: bool = False
    financial_conditions: FinancialConditions = Field(default_factory=FinancialConditions)

    @computed_field
    @property
    def is_bid_closed(self) -> bool:
        """Evaluated on every read so a cached object never goes stale."""
        end = parse_bid_date(self.bid_end_date)
        if end is None:
            return False
        return datetime.now() > end


class ParsedRfp(BaseModel):
    """Normalizer output: metadata plus at least one canonical line item."""
    metadata: BidMetadata
    line_items: List[CanonicalLineItem]
    mandatory_documents: List[str] = Field(default_factory=list)
    option_clause: Optional[str] = None
    consignee: str = "Consignee not specified"
    shape: str = "UNSTRUCTURED"

    @field_validator("line_items")
    @classmethod
    def line_items_must_not_be_empty(cls, v: List[CanonicalLineItem]) -> List[CanonicalLineItem]:
        if not v:
            raise ValueError("a parsed RFP always carries at least one line item")
        return v


# ── Catalog & matching ───────────────────────────────────────────────────

class InventorySKU(BaseModel):
    """Catalog product. Read-only to this package."""
    model_config = ConfigDict(frozen=True)

    id: str
    category: str
    sub_category: str = ""
    name: str
    specification: Dict[str, str] = Field(default_factory=dict)
    available_quantity: int = 0
    unit_price: float = 0.0
    gst_rate: float = 18.0
    min_margin_percent: float = 0.0
    truck_type: TruckType = TruckType.HEAVY_TRUCK

    @field_validator("specification", mode="before")
    @classmethod
    def stringify_spec_values(cls, v):
        # Catalog exports mix numbers and strings ({"Cores": 4}).
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v


class ComplianceCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    spec: str
    verified: bool = False


class MatchResult(BaseModel):
    """Technical match for one line item. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    line_item: CanonicalLineItem
    status: MatchStatus
    selected_sku: Optional[InventorySKU] = None
    match_percentage: int = Field(default=0, ge=0, le=100)
    top3_recommendations: List[InventorySKU] = Field(default_factory=list, max_length=3)
    compliance_checks: List[ComplianceCheck] = Field(default_factory=list)
    risk_entries: List[RiskEntry] = Field(default_factory=list)


class FinancialBreakdown(BaseModel):
    base_cost: float = 0.0
    transport_cost: float = 0.0
    gst_amount: float = 0.0
    brokerage_cost: float = 0.0
    epbg_amount: float = 0.0
    emd_amount: float = 0.0
    final_bid_value: float = 0.0
    confidence_score: float = 0.0
    match_status: MatchStatus = MatchStatus.NONE
    requires_manual_input: bool = False
    recommendation: str = ""
    risk_entries: List[RiskEntry] = Field(default_factory=list)


# ── Discovery ────────────────────────────────────────────────────────────

class CandidateBid(BaseModel):
    """Raw listing as harvested from the portal scan."""
    id: str
    title: str
    org: str = ""
    end_date: Optional[str] = None  # dd-mm-yyyy
    category: str = ""
    url: str = ""
    emd_required: bool = False
    consignee_location: str = ""
    distance: Optional[float] = None


class Tender(CandidateBid):
    distance: float = 0.0
    match_score: int = 0
    in_stock: bool = False
    risk: RiskLevel = "High"
    logistics_cost: float = 0.0
    is_qualified: bool = False
    recommendation_reason: str = ""


class DiscoveryFilters(BaseModel):
    max_avg_kms: Optional[float] = None
    manual_avg_kms: Optional[float] = None
    rate_per_km: Optional[float] = None
    allow_emd: bool = False
    min_match_threshold: float = 0.0
    bypass_filters: bool = False


# ── Terms & conditions summary ───────────────────────────────────────────

class DocumentLink(BaseModel):
    name: str
    url: str


class ATCSummary(BaseModel):
    """Secondary pass output. Empty is a valid (degraded) result."""
    atc_summary: List[str] = Field(default_factory=list)
    required_documents: List[str] = Field(default_factory=list)
    documents: List[DocumentLink] = Field(default_factory=list)
    risk_entries: List[RiskEntry] = Field(default_factory=list)


class BidDecision(BaseModel):
    """Top-level output of the document-to-decision pipeline."""
    rfp: ParsedRfp
    match_results: List[MatchResult]
    financials: FinancialBreakdown
    risk_entries: List[RiskEntry] = Field(default_factory=list)
    atc_summary: ATCSummary = Field(default_factory=ATCSummary)
