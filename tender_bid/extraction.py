"""
extraction.py -- LLM-backed structured extraction from tender text.

Two passes run against external inference services:

  1. The primary pass (Gemini) reads the whole bid document and returns
     the GeM-shaped JSON record that normalizer.py turns into line items
     and metadata. It is the only thing standing between raw text and a
     bid decision, so it is allowed to fail loudly.

  2. The terms pass (Groq / Llama 3.3) reads only the Buyer Added Terms &
     Conditions slice and returns a short summary, demanded certificates,
     annexure links and a few risk entries. It is nice to have. Any
     failure here degrades to an empty ATCSummary and the bid carries on.

Why keys rotate: free-tier keys get 429s within a couple of bids. The
extractor walks the CredentialPool, giving every key two tries with a
1s pause between attempts, before giving up with ExtractionExhausted.
Retries are strictly one after another; we never fan out across keys.

Model output goes through json_repair.recover_json() once a call
succeeds. A recovery failure is not retried: the same document with the
same prompt produces the same broken shape, and burning the remaining
keys on it just hides the real problem.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError

from tender_bid.config import config
from tender_bid.credentials import CredentialPool
from tender_bid.exceptions import ExtractionExhausted
from tender_bid.json_repair import recover_json
from tender_bid.schemas import ATCSummary, DocumentLink, RiskEntry

logger = logging.getLogger(__name__)


# ── Prompt Templates ──────────────────────────────────────────────────────
# Both prompts show the expected object literally. Anything the model
# still gets wrong is left to json_repair.py.
# The double-brace {{}} is str.format escaping, not a typo.

RFP_EXTRACTION_PROMPT = """
You are an expert Indian Government GeM (Government e-Marketplace) tender analyst.
Your task is to extract highly specific data from the provided tender document content.

STRICT JSON STRUCTURE:
{{
  "bid_details": {{
    "bid_number": "String",
    "organisation_name": "String",
    "type_of_bid": "String",
    "bid_end_date_time": "String",
    "bid_offer_validity_days": Number,
    "total_quantity": Number,
    "item_category": ["String"],
    "office_name": "String",
    "emd_amount": Number,
    "emd_required": "Yes/No",
    "epbg_percentage": Number,
    "epbg_detail_required": "Yes/No",
    "document_required_from_seller": ["String"]
  }},
  "item_details": [
    {{
      "item_category_code": "String",
      "consignees": [
        {{
          "quantity": Number,
          "delivery_days": Number,
          "address": "String"
        }}
      ]
    }}
  ],
  "technical_specifications": {{
    "specification_document": "String",
    "boq_detail_document": "String"
  }},
  "consignees": [
    {{
      "address": "String",
      "total_quantity": Number,
      "delivery_days": Number
    }}
  ],
  "buyer_added_terms": ["String"]
}}

STRICT RULES:
1. Extract ALL item categories and their specific quantities from the item_details/consignee sections.
2. If specifications are mentioned as "View File" or in an annexure, list them in technical_specifications.
3. Buyer added terms must include mentions of inspection, guarantee, and option clauses.
4. Output ONLY the JSON object. No preamble, no markdown.
5. IMPORTANT: If any text contains double quotes, replace them with single quotes inside the JSON string to prevent parsing errors.
6. Buyer added terms: Provide ONLY the first 10 most critical terms. Summarize each to under 100 characters. DO NOT include full legal text.

DOCUMENT CONTENT:
{content}
"""

ATC_SUMMARY_PROMPT = """You are a Senior Legal and Technical Compliance Officer analyzing an Indian GeM (Government e-Marketplace) tender.

TASK 1 (DEEP SUMMARY): Write a detailed executive summary of the ATCs as 3 to 4 bullet points. Each point MUST be a full sentence of 15-25 words.

TASK 2 (REQUIRED DOCS): Extract an array of specific certificates the buyer is demanding.

TASK 3 (LINKS): Below is every URL found in the document. Select the ones that point to vital tender documents (Technical Specifications, ATC, BoQ, Corrigendum) and give each a human-readable name. Ignore generic portal or contact links.

TASK 4 (RISK ANALYSIS): Generate 1 to 3 risk entries based on the ATC text. Category must be "Financial", "Technical" or "Logistics". riskLevel must be "Low", "Medium" or "High".

RAW URLs EXTRACTED FROM DOCUMENT:
{links}

RETURN ONLY RAW JSON. NO MARKDOWN.
{{
  "atc_summary": ["Point 1...", "Point 2..."],
  "required_documents": ["OEM Authorization"],
  "documents": [
    {{"name": "Technical Specifications", "url": "https://..."}}
  ],
  "risk_entries": [
    {{"category": "Financial", "statement": "Payment terms are Net-90.", "riskLevel": "High"}}
  ]
}}

ATC TEXT TO ANALYZE:
{atc_text}
"""

_URL_PATTERN = re.compile(r"https?://[^\s\"'<>)\]]+")
_WHITESPACE = re.compile(r"\s+")

# genai.configure() sets the key for the whole process.
_GENAI_LOCK = threading.Lock()


# ── Inference backends ────────────────────────────────────────────────────

class InferenceBackend(Protocol):
    """Anything that turns (prompt, credential) into text or raises."""

    def generate(
        self,
        prompt: str,
        credential: str,
        temperature: float,
        max_output_tokens: int,
    ) -> str:
        ...


class GeminiBackend:
    """
    google-generativeai client, configured per attempt because the key
    changes between attempts.

    The SDK keeps its API key in process-wide state, so configure and
    generate_content run together under _GENAI_LOCK. Concurrent Gemini
    calls (FastAPI runs sync handlers in a threadpool) are serialized;
    each one is sent with the key it was handed.
    """

    def __init__(self, model_name: Optional[str] = None):
        self.model_name = model_name or config.llm.gemini_model

    def _sdk(self):
        import google.generativeai as genai
        return genai

    def generate(self, prompt, credential, temperature, max_output_tokens) -> str:
        genai = self._sdk()

        with _GENAI_LOCK:
            genai.configure(api_key=credential)
            model = genai.GenerativeModel(
                self.model_name,
                generation_config={
                    "temperature": temperature,
                    "max_output_tokens": max_output_tokens,
                },
            )
            response = model.generate_content(prompt)
        try:
            return response.text
        except ValueError:
            # .text raises when the candidate has several parts or was
            # blocked; stitch the parts together if there are any.
            parts = []
            for candidate in response.candidates or []:
                for part in candidate.content.parts:
                    parts.append(getattr(part, "text", "") or "")
            if not parts:
                raise RuntimeError("Gemini returned no text")
            return "\n".join(parts)


class GroqBackend:
    """groq SDK chat-completions client. SDK-level retries are off; the
    CredentialPool decides when to retry."""

    def __init__(self, model_name: Optional[str] = None):
        self.model_name = model_name or config.llm.groq_model

    def generate(self, prompt, credential, temperature, max_output_tokens) -> str:
        from groq import Groq

        client = Groq(api_key=credential, max_retries=0)
        response = client.chat.completions.create(
            model=self.model_name,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_output_tokens,
        )
        return response.choices[0].message.content or ""


# ── Primary extraction ────────────────────────────────────────────────────

def build_rfp_prompt(document_text: str) -> str:
    cap = config.llm.max_document_chars
    if len(document_text) > cap:
        logger.info(
            "Document is %d chars; truncating to %d for extraction.",
            len(document_text), cap,
        )
        document_text = document_text[:cap]
    return RFP_EXTRACTION_PROMPT.format(content=document_text)


class StructuredExtractor:
    """
    Document text -> raw extraction record (a loosely-shaped dict).

    Usage:
        extractor = StructuredExtractor(
            GeminiBackend(), CredentialPool.from_env("GEMINI_API_KEYS", "GEMINI_API_KEY")
        )
        record = extractor.extract(text)
    """

    def __init__(
        self,
        backend: InferenceBackend,
        pool: CredentialPool,
        backoff_seconds: Optional[float] = None,
    ):
        self.backend = backend
        self.pool = pool
        self.backoff_seconds = (
            config.llm.retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        )

    @property
    def max_attempts(self) -> int:
        return len(self.pool) * config.llm.attempts_per_credential

    def extract(self, document_text: str) -> Dict[str, Any]:
        prompt = build_rfp_prompt(document_text)
        raw_output = self._generate_with_failover(prompt)
        logger.debug(
            "Raw extraction output (first %d chars): %s",
            config.llm.log_preview_chars, raw_output[:config.llm.log_preview_chars],
        )
        return recover_json(raw_output)

    def _generate_with_failover(self, prompt: str) -> str:
        max_attempts = self.max_attempts
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            credential = self.pool.next()
            try:
                text = self.backend.generate(
                    prompt,
                    credential,
                    temperature=config.llm.temperature,
                    max_output_tokens=config.llm.max_output_tokens,
                )
                logger.info(
                    "Extraction generated %d chars on attempt %d/%d",
                    len(text), attempt, max_attempts,
                )
                return text
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Extraction attempt %d/%d failed: %s",
                    attempt, max_attempts, exc,
                )
                self.pool.mark_failed()
                if attempt < max_attempts and self.backoff_seconds > 0:
                    time.sleep(self.backoff_seconds)

        logger.error("All %d extraction attempts failed.", max_attempts)
        raise ExtractionExhausted(max_attempts, last_error)


# ── Terms & conditions pass ───────────────────────────────────────────────

def extract_atc_slice(full_text: str) -> str:
    """
    Cut the Buyer Added Terms section out of the document.

    Plan A: last start marker up to the first end marker after it.
    Plan B: start marker but no end marker, take a fixed window.
    Plan C: no start marker at all, take the tail of the document.
    """
    atc = config.atc
    normalized = _WHITESPACE.sub(" ", full_text)

    # Latest start marker of any kind, then the earliest end marker after it.
    start = max(normalized.rfind(marker) for marker in atc.start_markers)

    end = -1
    if start != -1:
        ends = [normalized.find(marker, start) for marker in atc.end_markers]
        ends = [pos for pos in ends if pos != -1]
        if ends:
            end = min(ends)

    if start != -1 and end > start:
        logger.info("ATC slice: start and end markers found (%d chars).", end - start)
        return normalized[start:end].strip()
    if start != -1:
        logger.info("ATC slice: no end marker, taking %d chars.", atc.window_chars)
        return normalized[start:start + atc.window_chars].strip()

    logger.info("ATC slice: no start marker, taking last %d chars.", atc.tail_chars)
    return full_text[-atc.tail_chars:].strip()


def find_document_links(text: str) -> List[str]:
    """All http(s) URLs in the text, in order, without duplicates."""
    seen = set()
    links: List[str] = []
    for url in _URL_PATTERN.findall(text):
        url = url.rstrip(".,;")
        if url not in seen:
            seen.add(url)
            links.append(url)
    return links


class TermsSummarizer:
    """Secondary pass. Never raises; a failure is an empty summary."""

    def __init__(self, backend: InferenceBackend, pool: CredentialPool):
        self.backend = backend
        self.pool = pool

    def summarize(self, document_text: str, links: Optional[List[str]] = None) -> ATCSummary:
        try:
            atc_text = extract_atc_slice(document_text)
            if links is None:
                links = find_document_links(document_text)
            logger.info(
                "Summarizing ATC slice: %d chars, %d links.", len(atc_text), len(links)
            )
            prompt = ATC_SUMMARY_PROMPT.format(links=json.dumps(links), atc_text=atc_text)
        except Exception as exc:
            logger.warning("ATC slice failed, continuing without a summary: %s", exc)
            return ATCSummary()

        try:
            raw_output = self.backend.generate(
                prompt,
                self.pool.next(),
                temperature=config.llm.temperature,
                max_output_tokens=config.llm.atc_max_output_tokens,
            )
        except Exception as exc:
            self.pool.mark_failed()
            logger.warning("ATC summary failed, continuing without it: %s", exc)
            return ATCSummary()

        try:
            summary = _to_atc_summary(recover_json(raw_output))
        except Exception as exc:
            logger.warning("ATC summary unusable, continuing without it: %s", exc)
            return ATCSummary()

        logger.info(
            "ATC summary: %d points, %d links, %d risks.",
            len(summary.atc_summary), len(summary.documents), len(summary.risk_entries),
        )
        return summary


def _to_atc_summary(parsed: Dict[str, Any]) -> ATCSummary:
    """Keep whatever parts of the model's answer validate, drop the rest."""
    documents: List[DocumentLink] = []
    for doc in _as_list(parsed.get("documents")):
        if isinstance(doc, dict) and doc.get("url"):
            documents.append(DocumentLink(name=str(doc.get("name") or doc["url"]), url=str(doc["url"])))

    risks: List[RiskEntry] = []
    for entry in _as_list(parsed.get("risk_entries")):
        if not isinstance(entry, dict):
            continue
        try:
            risks.append(RiskEntry(
                category=entry.get("category"),
                statement=str(entry.get("statement", "")),
                risk_level=entry.get("riskLevel") or entry.get("risk_level"),
            ))
        except ValidationError:
            logger.debug("Dropping malformed ATC risk entry: %s", entry)

    return ATCSummary(
        atc_summary=_str_list(parsed.get("atc_summary")),
        required_documents=_str_list(parsed.get("required_documents")),
        documents=documents,
        risk_entries=risks,
    )


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]
    return []


def _str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v) for v in value if v]
    return []
