"""Arithmetic verification of extracted invoice figures."""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from backend.core.schema import InvoiceData, QualityResult

TOLERANCE = Decimal("0.01")


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError):
        return None
    return result if result.is_finite() else None


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _found(value: float | None) -> str:
    return "missing" if value is None else f"{value:.2f}"


def verify_invoice(data: InvoiceData) -> QualityResult:
    """Recompute subtotal, tax and total and compare them with the stated values.

    Tax is checked against the stated subtotal and the total against the
    stated subtotal plus stated tax, so each error names the figure that is
    actually inconsistent.
    """

    errors: list[str] = []
    warnings: list[str] = []
    calculated: dict[str, float | None] = {"subtotal": None, "tax": None, "total": None}

    subtotal = _to_decimal(data.subtotal)
    tax = _to_decimal(data.tax)
    tax_rate = _to_decimal(data.tax_rate)
    total = _to_decimal(data.total)

    if not data.line_items:
        warnings.append("No line items extracted; subtotal checked against an empty list")

    # An empty item list sums to zero and is compared like any other.
    computed_subtotal = Decimal("0")
    for index, item in enumerate(data.line_items, start=1):
        quantity = _to_decimal(item.quantity)
        unit_price = _to_decimal(item.unit_price)
        if quantity is None or unit_price is None:
            warnings.append(f"Line item {index} is missing quantity or unit price")
            continue
        line_total = quantity * unit_price
        computed_subtotal += line_total
        amount = _to_decimal(item.amount)
        if amount is not None and abs(line_total - amount) > TOLERANCE:
            warnings.append(
                f"Line item {index} amount mismatch: Calculated {_quantize(line_total)}, Found {_found(item.amount)}"
            )
    calculated["subtotal"] = float(_quantize(computed_subtotal))
    if subtotal is None or abs(computed_subtotal - subtotal) > TOLERANCE:
        errors.append(
            f"Subtotal mismatch: Calculated {_quantize(computed_subtotal)}, Found {_found(data.subtotal)}"
        )

    if subtotal is not None and tax_rate is not None:
        computed_tax = subtotal * tax_rate
        calculated["tax"] = float(_quantize(computed_tax))
        if tax is None or abs(computed_tax - tax) > TOLERANCE:
            errors.append(f"Tax calculation error: Calculated {_quantize(computed_tax)}, Found {_found(data.tax)}")

    if subtotal is not None and tax is not None:
        computed_total = subtotal + tax
        calculated["total"] = float(_quantize(computed_total))
        if total is None or abs(computed_total - total) > TOLERANCE:
            errors.append(f"Total mismatch: Calculated {_quantize(computed_total)}, Found {_found(data.total)}")

    return QualityResult(
        verified=not errors,
        errors=errors,
        warnings=warnings,
        requires_intervention=bool(errors),
        calculated=calculated,
    )
