from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
import logging

from tender_bid.exceptions import ExtractionExhausted, MalformedOutput, NoJsonFound
from tender_bid.main import TenderBidPipeline, discover
from tender_bid.pricing import price
from tender_bid.schemas import (
    BidDecision, BidMetadata, CandidateBid, DiscoveryFilters,
    FinancialBreakdown, InventorySKU, MatchResult, Tender,
)

logger = logging.getLogger("tender_bid.api")

app = FastAPI(title="TenderBidEngine")
app.add_middleware(CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"], allow_headers=["*"])

_pipeline: Optional[TenderBidPipeline] = None


def get_pipeline() -> TenderBidPipeline:
    global _pipeline
    if _pipeline is None:
        try:
            _pipeline = TenderBidPipeline.from_env()
        except ValueError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
    return _pipeline


class ParseRequest(BaseModel):
    content: str
    inventory: List[InventorySKU] = Field(default_factory=list)
    price_overrides: Dict[str, float] = Field(default_factory=dict)


class DiscoverRequest(BaseModel):
    candidates: List[CandidateBid]
    inventory: List[InventorySKU]
    filters: DiscoveryFilters = Field(default_factory=DiscoveryFilters)


class PriceRequest(BaseModel):
    match_results: List[MatchResult]
    metadata: BidMetadata
    price_overrides: Dict[str, float] = Field(default_factory=dict)


@app.post("/parse-rfp", response_model=BidDecision)
def parse_rfp(req: ParseRequest, pipeline: TenderBidPipeline = Depends(get_pipeline)):
    if not req.content.strip():
        raise HTTPException(status_code=400, detail="RFP content is missing or invalid")
    try:
        return pipeline.run(req.content, req.inventory, req.price_overrides)
    except (ExtractionExhausted, NoJsonFound, MalformedOutput) as exc:
        logger.error("Extraction failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc))


@app.post("/discover", response_model=List[Tender])
def discover_bids(req: DiscoverRequest):
    return discover(req.candidates, req.inventory, req.filters)


@app.post("/price", response_model=FinancialBreakdown)
def price_bid(req: PriceRequest):
    return price(req.match_results, req.metadata, req.price_overrides)
