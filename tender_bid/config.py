"""
config.py -- Central configuration for TenderBidEngine.

All tunable params live here so the matching thresholds, pricing buffers
and discovery caps don't drift apart across modules. Most values can be
overridden by environment variables; the API keys must be.

The thresholds below are business policy, not tuning knobs. If you
change the COMPLETE/NONE cut-offs, the status boundaries in
tests/test_matching.py change with them.
"""

from dataclasses import dataclass, field
from typing import Dict, List
import os
import logging

logger = logging.getLogger(__name__)


def env_list(name: str, fallback: str = "") -> List[str]:
    """Comma-separated env var -> list, falling back to a single-value var."""
    raw = os.getenv(name) or (os.getenv(fallback) if fallback else None) or ""
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class LLMConfig:
    """
    External inference settings.

    Gemini does the heavy structured extraction; Groq (Llama 3.3) does the
    smaller terms-and-conditions pass. Keys are lists because the extractor
    rotates through them when one gets rate-limited.

    GeM bid documents are usually 10-40 pages of text. 120k characters
    covers all but the largest BoQ annexures and keeps the prompt well
    inside the model's context window.
    """
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    groq_model: str = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")
    gemini_api_keys: List[str] = field(
        default_factory=lambda: env_list("GEMINI_API_KEYS", "GEMINI_API_KEY")
    )
    groq_api_keys: List[str] = field(
        default_factory=lambda: env_list("GROQ_API_KEYS", "GROQ_API_KEY")
    )
    temperature: float = 0.1
    max_output_tokens: int = 20480
    atc_max_output_tokens: int = 4096
    max_document_chars: int = int(os.getenv("MAX_DOCUMENT_CHARS", "120000"))
    # Each key gets two shots before we give up.
    attempts_per_credential: int = 2
    retry_backoff_seconds: float = 1.0
    # Raw model output is only logged at DEBUG and capped here.
    log_preview_chars: int = 3000


@dataclass
class ATCConfig:
    """
    Where to cut the Buyer Added Terms & Conditions section out of a bid.

    The ATC block sits near the end of GeM documents, after the item
    tables, so start markers are searched from the end of the text.
    """
    start_markers: tuple = (
        "Buyer Added Bid Specific Terms and Conditions",
        "Buyer Added Bid Specific ATC",
        "Buyer Added text based ATC clauses",
        "क्रेता द्वारा जोड़ी गई बिड की विशेष शर्तें",
    )
    end_markers: tuple = (
        "अवीकरण/Disclaimer",
        "Disclaimer",
        "This Bid is also governed by",
    )
    window_chars: int = 5000
    tail_chars: int = 8000


@dataclass
class MatchingConfig:
    """Technical matching weights and status cut-offs."""
    complete_threshold: int = 75
    none_threshold: int = 15
    no_spec_score: float = 60.0
    standard_points: float = 60.0
    attribute_points: float = 40.0
    min_spec_score: float = 30.0
    max_spec_score: float = 100.0
    full_stock_weight: float = 1.0
    partial_stock_weight: float = 0.8
    # Zero stock is penalised but kept visible for manual sourcing.
    zero_stock_weight: float = 0.4
    min_token_length: int = 2
    top_n: int = 3


@dataclass
class PricingConfig:
    """Fixed buffer rates applied on top of the item subtotal (percent)."""
    gst_default_rate: float = 18.0
    brokerage_percent: float = 2.0
    transport_buffer_percent: float = 10.0
    emd_percent: float = 2.0
    epbg_percent: float = 3.0
    default_margin_percent: float = 12.0


@dataclass
class DiscoveryConfig:
    """
    Candidate-bid qualification defaults.

    zero_match_policy decides what a candidate with no catalog overlap
    scores: "zero" keeps it at 0, "optimistic" gives it a reproducible
    score in [10, 40) seeded by the bid id so weak-but-unknown bids can
    still clear a low threshold.
    """
    default_max_avg_kms: float = 1000.0
    default_avg_kms: float = 250.0
    default_rate_per_km: float = 45.0
    window_months: int = 3
    local_distance_kms: float = 100.0
    high_match_score: int = 80
    truck_multipliers: Dict[str, float] = field(default_factory=lambda: {
        "HEAVY_TRUCK": 1.0,
        "MEDIUM_TRUCK": 0.7,
        "LCV": 0.4,
        "MINI_TRUCK": 0.4,
    })
    zero_match_policy: str = os.getenv("ZERO_MATCH_POLICY", "zero")
    optimistic_floor: int = 10
    optimistic_ceiling: int = 40


@dataclass
class Config:
    """Master config, instantiated once, used everywhere."""
    llm: LLMConfig = field(default_factory=LLMConfig)
    atc: ATCConfig = field(default_factory=ATCConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def __post_init__(self):
        """Validate on startup so a bad env var fails fast instead of
        silently mispricing every bid."""
        m = self.matching
        if not 0 <= m.none_threshold < m.complete_threshold <= 100:
            raise ValueError(
                f"Match thresholds must satisfy 0 <= none < complete <= 100, "
                f"got none={m.none_threshold} complete={m.complete_threshold}"
            )
        if not 0 < m.min_spec_score <= m.max_spec_score:
            raise ValueError(
                f"Spec score clamp must be a non-empty range, "
                f"got [{m.min_spec_score}, {m.max_spec_score}]"
            )
        if self.llm.attempts_per_credential < 1:
            raise ValueError("attempts_per_credential must be >= 1")

        d = self.discovery
        if d.zero_match_policy not in ("zero", "optimistic"):
            raise ValueError(
                f"zero_match_policy must be 'zero' or 'optimistic', "
                f"got {d.zero_match_policy!r}"
            )
        if d.optimistic_floor >= d.optimistic_ceiling:
            raise ValueError(
                f"Optimistic score range [{d.optimistic_floor}, "
                f"{d.optimistic_ceiling}) is empty"
            )
        if d.default_max_avg_kms > 5000:
            logger.warning(
                "default_max_avg_kms=%.0f is wider than any domestic haul; "
                "distance filtering is effectively off.", d.default_max_avg_kms
            )


# Singleton: every module imports this same instance
config = Config()
