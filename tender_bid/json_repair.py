"""
json_repair.py -- Best-effort recovery of JSON from chatty model output.

Gemini is good at JSON until the document gets long. Then, roughly in
order of how often we see them:
  - the whole thing comes back inside ```json fences, with a "Sure,
    here is the extraction:" preamble
  - max_output_tokens cuts the object off mid-array, so the closers are
    missing
  - the model quotes bid text verbatim inside a string value
    ("Make in India" clauses are the usual suspect) and the inner double
    quotes end the string early
  - trailing commas, smart quotes pasted from the PDF, stray control
    characters from the text layer

recover_json() runs one small step per failure mode, in a fixed order.
Each step is a plain function so tests/fixtures/model_outputs can pin
them down one at a time.

This is a heuristic, not a JSON grammar. The bracket scan and the quote
escaping are regex/stack based and do not understand string literals;
a '{' inside a value will make repair_brackets append a closer that
wasn't needed. It's good enough for the shapes our prompts produce.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List

from tender_bid.exceptions import MalformedOutput, NoJsonFound

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```(?:json)?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"```$")

# Everything in C0/C1 except \t \n \r.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")

# "key": "value" followed by , or }. Non-greedy, so the value ends at the
# first quote that is actually followed by a separator.
_STRING_FIELD = re.compile(r'":\s*"(.*?)"\s*([,}])')
_UNESCAPED_QUOTE = re.compile(r'(?<!\\)"')

_TRAILING_COMMA = re.compile(r",\s*([}\]])")

_CLOSERS = {"{": "}", "[": "]"}

# How much text either side of a parse error goes into the exception.
CONTEXT_RADIUS = 50


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE_CLOSE.sub("", cleaned.strip())
    return cleaned.strip()


def slice_json_object(text: str) -> str:
    """Keep only the span from the first '{' to the last '}'."""
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last == -1:
        raise NoJsonFound("No JSON object found in model output")
    return text[first:last + 1]


def strip_control_chars(text: str) -> str:
    return _CONTROL_CHARS.sub("", text)


def normalize_quotes(text: str) -> str:
    return (
        text.replace("“", '"').replace("”", '"')
        .replace("‘", "'").replace("’", "'")
    )


def repair_brackets(text: str) -> str:
    """
    Close any '{' / '[' that were left open.

    A closer only pops the stack when it matches the innermost open
    bracket; a stray or premature closer is left alone rather than
    "fixed", because guessing which opener it belonged to made things
    worse more often than not. Whatever is still open at the end gets
    closed, innermost first.
    """
    stack: List[str] = []
    for char in text:
        if char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in ("}", "]"):
            if stack and stack[-1] == char:
                stack.pop()
    if not stack:
        return text
    return text + "".join(reversed(stack))


def escape_embedded_quotes(text: str) -> str:
    """Turn double quotes inside string values into single quotes."""

    def _clean(match: re.Match) -> str:
        content = _UNESCAPED_QUOTE.sub("'", match.group(1))
        return f'": "{content}"{match.group(2)}'

    return _STRING_FIELD.sub(_clean, text)


def remove_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", text)


def parse_json(text: str) -> Dict[str, Any]:
    """json.loads with the error window attached on failure.

    strict=False because newlines and tabs are kept inside string values.
    """
    try:
        parsed = json.loads(text, strict=False)
    except json.JSONDecodeError as exc:
        start = max(0, exc.pos - CONTEXT_RADIUS)
        context = text[start:exc.pos + CONTEXT_RADIUS]
        logger.error("JSON error context: %s", context)
        raise MalformedOutput(
            f"AI generated invalid JSON: {exc.msg} (char {exc.pos})",
            context=context,
            position=exc.pos,
        ) from exc
    if not isinstance(parsed, dict):
        raise MalformedOutput(
            f"Expected a JSON object, got {type(parsed).__name__}",
            context=text[:2 * CONTEXT_RADIUS],
        )
    return parsed


def recover_json(raw_text: str) -> Dict[str, Any]:
    """
    Full recovery pipeline: raw model text in, parsed dict out.

    Raises NoJsonFound if there is no object to recover and
    MalformedOutput if the repaired text still won't parse.
    """
    if not isinstance(raw_text, str):
        raise TypeError("recover_json expects raw model text")

    text = strip_code_fences(raw_text)
    text = slice_json_object(text)
    text = strip_control_chars(text)
    text = normalize_quotes(text)

    repaired = repair_brackets(text)
    if repaired != text:
        logger.warning(
            "Model output was truncated; appended closers %r",
            repaired[len(text):],
        )
    text = escape_embedded_quotes(repaired)
    text = remove_trailing_commas(text)
    return parse_json(text)
