from __future__ import annotations

from backend.core.schema import (
    InvoiceData,
    LedgerMapping,
    PolicyCheckResult,
    SheetsLineItem,
    SheetsPayload,
)


def build_sheets_payload(
    data: InvoiceData,
    mapping: LedgerMapping,
    policy: PolicyCheckResult,
) -> SheetsPayload:
    """Flatten the run's results into a single spreadsheet row."""

    line_items = tuple(
        SheetsLineItem(
            row=index,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            amount=item.amount,
        )
        for index, item in enumerate(data.line_items, start=1)
    )
    return SheetsPayload(
        vendor=data.vendor,
        invoice_number=data.invoice_number,
        date=data.date,
        due_date=data.due_date,
        subtotal=data.subtotal,
        tax=data.tax,
        tax_rate=data.tax_rate,
        total=data.total,
        currency=data.currency or "USD",
        gl_code=mapping.gl_code,
        gl_category=mapping.gl_category,
        policy_approved=policy.approved,
        policy_violations=len(policy.violations),
        corrective_actions="; ".join(action.action for action in policy.corrective_actions),
        line_items_count=len(line_items),
        line_items=line_items,
    )
