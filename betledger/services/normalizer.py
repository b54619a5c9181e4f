"""Response normalizer for semi-structured upstream text.

The generation service and the settlement oracle are language models that
are asked for raw JSON but regularly return something else: apologies,
markdown fences, preambles, citation markers or slightly broken JSON.
``normalize`` turns any of that into a parsed value or ``None``.

``None`` deliberately covers both "explicitly no data" and "unparseable":
downstream consumers treat the two identically (nothing to show yet).
"""

import json
import re
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

# Phrases that mark a conversational reply rather than a JSON payload.
REFUSAL_PHRASES: tuple[str, ...] = (
    # Failure/inability to find information
    "i am sorry",
    "i cannot",
    "unable to find",
    "could not find",
    "no verifiable matches",
    "no football matches",
    "data is not available",
    "not possible to fulfill",
    "no odds were provided",
    "challenging",
    "absence of readily available",
    "due to the nature",
    "unable to provide",
    "not possible to provide",
    "as an ai",
    "appropriate response is `null`",
    "the response will be `null`",
    # Verbose success messages (not in JSON format)
    "based on the available information",
    "ai prediction:",
    "ai rationale:",
)

# Conversational text longer than this that ends in "null" is a refusal.
NULL_SUFFIX_MIN_LENGTH = 50

_ENDS_WITH_NULL = re.compile(r"`?null`?\.?\s*$")
_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

# Ordered sanitizers for known upstream artifacts.
SANITIZERS: tuple[tuple[str, re.Pattern[str], str], ...] = (
    (
        "search_citation",
        re.compile(r"\s*tapped from search result \[\d+(?:,\s*\d+)*\]"),
        "",
    ),
    (
        "bare_citation",
        re.compile(r'(?<=")\s*\[\d+(?:,\s*\d+)*\]\s*(?=[,}\]])'),
        "",
    ),
    (
        "stray_token",
        re.compile(r'(?<=")\s+\w+\s*(?=[,}\]])'),
        "",
    ),
    (
        "subsecond_time",
        re.compile(r"(\d{2}:\d{2}:\d{2}):\d{2}(Z)"),
        r"\1\2",
    ),
    (
        "merged_objects",
        re.compile(r'(Z")\s*\w+\s*(\w+)(?=:)'),
        r'\1}, {"\2"',
    ),
)


def is_refusal(text: str) -> bool:
    """
    Classify trimmed text as a conversational/refusal reply.

    Only text that does not open a JSON value can be a refusal.
    """
    lowered = text.lower()
    if lowered.startswith("{") or lowered.startswith("["):
        return False
    if any(phrase in lowered for phrase in REFUSAL_PHRASES):
        return True
    return len(text) > NULL_SUFFIX_MIN_LENGTH and bool(_ENDS_WITH_NULL.search(lowered))


def extract_json_text(text: str) -> str | None:
    """Unwrap a code fence or drop any preamble before the first ``{``/``[``.

    Text that already opens a JSON value is never unwrapped; fences inside
    its string values are content.
    """
    if not text.startswith(("{", "[")):
        match = _CODE_FENCE.search(text)
        if match and match.group(1):
            return match.group(1).strip()

    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None
    return text[min(starts):]


def sanitize(text: str) -> str:
    """Apply the ordered sanitizing rewrites."""
    for _name, pattern, replacement in SANITIZERS:
        text = pattern.sub(replacement, text)
    return text


def _loads(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (ValueError, RecursionError):
        return False, None


def normalize(raw: Any) -> Any | None:
    """
    Turn a raw upstream reply into structured data or ``None``.

    Never raises. Structured input (dict/list) is passed through unchanged,
    so normalizing an already-normalized value is a no-op.
    """
    if isinstance(raw, (dict, list)):
        return raw

    if not isinstance(raw, str):
        logger.error("normalize_unsupported_type", type=type(raw).__name__)
        return None

    text = raw.strip()
    if text.lower() == "null":
        return None

    if text.startswith(("{", "[")):
        ok, value = _loads(text)
        if ok:
            return value

    if is_refusal(text):
        logger.warning("conversational_response_as_null", response=raw[:500])
        return None

    candidate = extract_json_text(text)
    if candidate is None:
        logger.error("json_start_not_found", response=raw[:500])
        return None

    if candidate.strip().lower() == "null":
        return None

    ok, value = _loads(candidate)
    if ok:
        return value

    sanitized = sanitize(candidate)
    if sanitized.strip().lower() == "null":
        return None

    ok, value = _loads(sanitized)
    if ok:
        return value

    # Trailing chatter after an otherwise complete value
    try:
        value, _end = json.JSONDecoder().raw_decode(sanitized)
        return value
    except (ValueError, RecursionError):
        pass

    logger.error(
        "json_parse_failed",
        original=raw[:2000],
        sanitized=sanitized[:2000],
    )
    return None
