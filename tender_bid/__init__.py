"""
TenderBidEngine -- Tender document to priced bid decision.

Extracts a structured record from GeM tender text with an external LLM,
normalizes it into canonical line items, matches them against a product
catalog, prices the bid and flags risk. A separate qualification engine
ranks scanned bid listings for discovery.
"""

__version__ = "1.0.0"
__author__ = "TenderBidEngine"
