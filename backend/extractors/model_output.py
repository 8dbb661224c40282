"""Helpers for turning free-form model output into structured records.

Model responses are plain text that usually, but not always, embed a JSON
object.  ``extract_json_block`` pulls out the first ``{...}`` span and parses
it; the keyword and regex helpers below are the deterministic fallbacks used
by the agents when that fails.  The fallbacks are deliberately shallow: they
recover what is clearly labelled in the text and leave everything else empty
so that the Quality and Policy checks can flag it.
"""

from __future__ import annotations

import json
import re
from typing import Any

from backend.core.schema import InvoiceData, IntakeResult


DUPLICATE_CUES = ["duplicate", "seen before"]
BLURRY_CUES = ["blurry", "unclear"]
UNCERTAINTY_CUES = ["uncertain", "ambiguous"]

FIELD_PATTERNS: dict[str, list[str]] = {
    "vendor": [r"vendor(?:\s+name)?\s*[:\-]\s*(?P<value>[^\n,;]+)", r"(?:from|supplier)\s*[:\-]\s*(?P<value>[^\n,;]+)"],
    "invoice_number": [r"invoice\s*(?:number|no\.?|#)\s*[:\-]?\s*(?P<value>[A-Za-z0-9][\w\-/]*)"],
    "date": [r"(?<!due )(?:invoice\s+)?date\s*[:\-]\s*(?P<value>\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{4})"],
    "due_date": [r"due\s*date\s*[:\-]\s*(?P<value>\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{4})"],
    "subtotal": [r"sub\s*-?\s*total\s*[:\-]?\s*(?P<value>[$€£]?\s*[\d,]+(?:\.\d+)?)"],
    "tax_rate": [r"tax\s*rate\s*[:\-]?\s*(?P<value>\d+(?:\.\d+)?\s*%?)"],
    "tax": [r"(?<!sub)tax(?:\s+amount)?\s*(?:\(\s*\d+(?:\.\d+)?\s*%\s*\))?\s*[:\-]\s*(?P<value>[$€£]?\s*[\d,]+(?:\.\d+)?)"],
    "total": [r"(?<!sub)(?<!sub )(?<!sub-)(?:grand\s+|invoice\s+)?total(?:\s+due|\s+amount)?\s*[:\-]?\s*(?P<value>[$€£]?\s*[\d,]+(?:\.\d+)?)"],
    "currency": [r"(?i:currency)\s*[:\-]\s*(?P<value>[A-Z]{3})", r"\b(?P<value>USD|EUR|GBP|CAD|AUD|INR|JPY)\b"],
}

CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP"}


def extract_json_block(text: str) -> dict[str, Any] | None:
    """Return the first JSON object embedded in ``text`` or ``None``."""

    if not text:
        return None
    cleaned = re.sub(r"```(?:json)?", "", text)
    match = re.search(r"\{[\s\S]*\}", cleaned)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _contains_any(text: str, cues: list[str]) -> bool:
    lowered = text.lower()
    return any(cue in lowered for cue in cues)


def infer_intake_result(text: str) -> IntakeResult:
    """Map textual cues in an unparseable intake response onto flags."""

    result = IntakeResult()
    if _contains_any(text, DUPLICATE_CUES):
        result.is_duplicate = True
        result.warnings.append("Possible duplicate invoice detected")
    if _contains_any(text, BLURRY_CUES):
        result.is_blurry = True
        result.warnings.append("Image quality may affect extraction accuracy")
    if result.warnings:
        result.status = "warning"
    return result


def infer_invoice_fields(*texts: str) -> InvoiceData:
    """Recover labelled invoice fields from free text.

    Texts are searched in order; the first match for each field wins.
    """

    values: dict[str, Any] = {}
    for field_name, patterns in FIELD_PATTERNS.items():
        for text in texts:
            if not text or field_name in values:
                continue
            for pattern in patterns:
                match = re.search(pattern, text, flags=re.IGNORECASE if field_name != "currency" else 0)
                if match:
                    values[field_name] = match.group("value").strip().strip("*").strip()
                    break

    if "currency" not in values:
        for text in texts:
            symbol = next((sym for sym in CURRENCY_SYMBOLS if text and sym in text), None)
            if symbol:
                values["currency"] = CURRENCY_SYMBOLS[symbol]
                break

    return InvoiceData(**values)


def find_ambiguous_fields(reflection: str, field_names: list[str]) -> list[str]:
    """Fields named in a reflection that admits uncertainty or ambiguity."""

    if not _contains_any(reflection, UNCERTAINTY_CUES):
        return []
    lowered = reflection.lower()
    ambiguous: list[str] = []
    for name in field_names:
        spaced = re.sub(r"(?<!^)(?=[A-Z])", " ", name).lower()
        if name.lower() in lowered or spaced in lowered:
            ambiguous.append(name)
    return ambiguous
