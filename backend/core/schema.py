from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


_NUMBER_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")


def coerce_number(value: Any) -> float | None:
    """Turn loosely formatted model output ("$1,200.00", "8%") into a float."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    is_percent = text.endswith("%")
    match = _NUMBER_PATTERN.search(text.replace(",", ""))
    if not match:
        return None
    number = float(match.group(0))
    if text.startswith("(") and text.endswith(")"):
        number = -number
    return number / 100 if is_percent else number


def coerce_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    return None


class WireModel(BaseModel):
    """Base for models that travel over the event stream in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class LineItem(WireModel):
    description: str = ""
    quantity: float | None = None
    unit_price: float | None = None
    amount: float | None = None

    @field_validator("description", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return coerce_text(value) or ""

    @field_validator("quantity", "unit_price", "amount", mode="before")
    @classmethod
    def _number(cls, value: Any) -> float | None:
        return coerce_number(value)


class InvoiceData(WireModel):
    vendor: str | None = None
    invoice_number: str | None = None
    date: str | None = None
    due_date: str | None = None
    subtotal: float | None = None
    tax: float | None = None
    tax_rate: float | None = None
    total: float | None = None
    currency: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)

    @field_validator("vendor", "invoice_number", "date", "due_date", "currency", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return coerce_text(value)

    @field_validator("subtotal", "tax", "tax_rate", "total", mode="before")
    @classmethod
    def _number(cls, value: Any) -> float | None:
        return coerce_number(value)

    @field_validator("line_items", mode="before")
    @classmethod
    def _items(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, (dict, LineItem))]

    def display_snapshot(self) -> dict[str, Any]:
        """Primitive-only projection shown to the reviewer of an intervention."""

        return {
            "vendor": self.vendor or "N/A",
            "invoiceNumber": self.invoice_number or "N/A",
            "date": self.date or "N/A",
            "subtotal": self.subtotal,
            "tax": self.tax,
            "total": self.total,
            "lineItems": [item.to_wire() for item in self.line_items],
        }


class IntakeResult(WireModel):
    status: Literal["valid", "warning", "error"] = "valid"
    file_integrity: bool = True
    is_duplicate: bool = False
    is_blurry: bool = False
    warnings: list[str] = Field(default_factory=list)
    sanitized: bool = True

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in {"valid", "warning", "error"} else "warning"

    @field_validator("warnings", mode="before")
    @classmethod
    def _warnings(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [value] if value.strip() else []
        if not isinstance(value, list):
            return []
        return [str(item) for item in value if item]


class PolicyCheck(WireModel):
    rule: str
    passed: bool


class CorrectiveAction(WireModel):
    violation: str
    action: str


class PolicyCheckResult(WireModel):
    checks: list[PolicyCheck] = Field(default_factory=list)
    violations: list[str] = Field(default_factory=list)
    corrective_actions: list[CorrectiveAction] = Field(default_factory=list)
    approved: bool = True
    requires_intervention: bool = False


class LedgerMapping(WireModel):
    gl_code: str = "6999"
    gl_category: str = "OTHER"
    confidence: int = 50
    reasoning: str = "Default mapping"
    used_historical_context: bool = False
    warnings: list[str] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> int:
        number = coerce_number(value)
        if number is None:
            return 50
        if 0 < number <= 1 and isinstance(value, float):
            number *= 100
        return max(0, min(100, int(round(number))))

    @field_validator("gl_code", "gl_category", "reasoning", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Any:
        return coerce_text(value) or ""


class QualityResult(WireModel):
    verified: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    requires_intervention: bool = False
    calculated: dict[str, float | None] = Field(default_factory=dict)


class AgenticDecision(WireModel):
    agent: str
    decision: str
    details: str = ""
    impact: str | None = None
    confidence: int | None = None


class SheetsLineItem(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    row: int
    description: str
    quantity: float | None = None
    unit_price: float | None = None
    amount: float | None = None


class SheetsPayload(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    vendor: str | None = None
    invoice_number: str | None = None
    date: str | None = None
    due_date: str | None = None
    subtotal: float | None = None
    tax: float | None = None
    tax_rate: float | None = None
    total: float | None = None
    currency: str = "USD"
    gl_code: str
    gl_category: str
    policy_approved: bool
    policy_violations: int
    corrective_actions: str = ""
    line_items_count: int = 0
    line_items: tuple[SheetsLineItem, ...] = ()


class PublishReceipt(WireModel):
    success: bool
    row_number: int
    destination: str
    payload: SheetsPayload
