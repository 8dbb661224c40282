"""General Ledger code table and the keyword fallback used by the GL Mapper."""
from __future__ import annotations

import re
from pathlib import Path

import yaml

from backend.core.schema import InvoiceData, LedgerMapping

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"

HISTORY_PATTERN = re.compile(r"\b(histor\w*|previous\w*|prior|past|pattern\w*|usually|typically)\b", re.IGNORECASE)


def _load_table() -> dict:
    path = CONFIG_DIR / "ledger_codes.yaml"
    with path.open("r", encoding="utf-8") as fp:
        return yaml.safe_load(fp) or {}


LEDGER_TABLE = _load_table()
GL_CODES: dict[str, str] = {str(name): str(code) for name, code in LEDGER_TABLE.get("codes", {}).items()}
DEFAULT_CATEGORY: str = str(LEDGER_TABLE.get("default", "OTHER"))
DEFAULT_CONFIDENCE: int = int(LEDGER_TABLE.get("default_confidence", 50))
INFERRED_CONFIDENCE: int = int(LEDGER_TABLE.get("inferred_confidence", 70))


def describe_codes() -> str:
    return "\n".join(f"- {name}: {code}" for name, code in GL_CODES.items())


def default_mapping(reason: str = "Default mapping") -> LedgerMapping:
    return LedgerMapping(
        gl_code=GL_CODES[DEFAULT_CATEGORY],
        gl_category=DEFAULT_CATEGORY,
        confidence=DEFAULT_CONFIDENCE,
        reasoning=reason,
    )


def _category_key(value: str) -> str:
    return re.sub(r"[^A-Z]+", "_", value.upper()).strip("_")


def normalise_mapping(mapping: LedgerMapping) -> tuple[LedgerMapping, list[str]]:
    """Force a parsed mapping onto the known code table.

    Codes outside the table are resolved through the category name; when
    neither matches the default code is used and a warning is returned.
    """

    warnings: list[str] = []
    code_to_category = {code: name for name, code in GL_CODES.items()}
    code = mapping.gl_code.strip()
    category = _category_key(mapping.gl_category)

    if code in code_to_category:
        category = code_to_category[code]
    elif category in GL_CODES:
        warnings.append(f"GL code {code or 'missing'} not recognised; resolved via category {category}")
        code = GL_CODES[category]
    else:
        warnings.append(f"GL code {code or 'missing'} not recognised; using {DEFAULT_CATEGORY}")
        category = DEFAULT_CATEGORY
        code = GL_CODES[DEFAULT_CATEGORY]

    updated = mapping.model_copy(update={"gl_code": code, "gl_category": category})
    return updated, warnings


def infer_mapping(data: InvoiceData) -> LedgerMapping:
    """Substring heuristic over the vendor and first line-item description."""

    vendor = (data.vendor or "").lower()
    description = (data.line_items[0].description if data.line_items else "").lower()

    for entry in LEDGER_TABLE.get("fallback", []):
        vendor_terms = [str(term).lower() for term in entry.get("vendor", [])]
        description_terms = [str(term).lower() for term in entry.get("description", [])]
        if any(term in vendor for term in vendor_terms) or any(term in description for term in description_terms):
            category = str(entry["category"])
            return LedgerMapping(
                gl_code=GL_CODES[category],
                gl_category=category,
                confidence=INFERRED_CONFIDENCE,
                reasoning="Inferred from vendor/description",
            )
    return default_mapping()


def mentions_history(text: str) -> bool:
    return bool(HISTORY_PATTERN.search(text or ""))
