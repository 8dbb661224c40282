"""Prompt templates for the six workflow agents."""
from __future__ import annotations

import json
from typing import Any


def framed(agent: str, phase: str, prompt: str) -> str:
    """Wrap a streaming prompt so the model thinks out loud."""

    return (
        f"You are the {agent}. {phase} phase: {prompt}\n\n"
        "Think out loud about this step. Show your reasoning process step by step."
    )


def data_block(title: str, data: Any) -> str:
    return f"\n\n{title}:\n{json.dumps(data, indent=2, ensure_ascii=False, default=str)}"


INTAKE_REASONING = """Analyze this invoice image file. Check:
1. File integrity - is the image valid and readable?
2. Duplicate detection - does this look like a file we've seen before? (Check for similar layouts, dates, vendor names)
3. Image quality - is the image blurry, too dark, or have poor resolution that might affect extraction?

Think through each of these checks systematically."""

INTAKE_ACTION = """Based on your reasoning, provide a JSON response with:
{
  "status": "valid" | "warning" | "error",
  "fileIntegrity": boolean,
  "isDuplicate": boolean,
  "isBlurry": boolean,
  "warnings": [array of warning messages],
  "sanitized": true
}"""

INTAKE_REFLECTION = (
    "Reflect on the intake process. Did you identify any issues? If warnings were raised, "
    "explain why you're proceeding despite them, or if you should stop."
)

EXTRACTION_REASONING = """You need to extract structured data from this invoice image. Think about:
1. What fields are clearly visible and easy to extract?
2. What fields are ambiguous or unclear?
3. What extraction strategy will you use for different field types?
4. How will you handle missing or unclear information?"""

EXTRACTION_ACTION = """Extract all invoice data and return as JSON with this exact structure:
{
  "vendor": string,
  "invoiceNumber": string,
  "date": string (YYYY-MM-DD),
  "dueDate": string (YYYY-MM-DD),
  "subtotal": number,
  "tax": number,
  "total": number,
  "lineItems": [
    {
      "description": string,
      "quantity": number,
      "unitPrice": number,
      "amount": number
    }
  ],
  "taxRate": number (as decimal, e.g., 0.08 for 8%),
  "currency": string
}

Be precise with numbers. Extract exactly what you see. Do not recompute any figure."""

EXTRACTION_REFLECTION = """Reflect on your extraction. List any fields you're not 100% confident about. For each ambiguous field, explain:
1. Why you're uncertain
2. What alternative interpretations exist
3. Your confidence level (0-100%)"""


def policy_reasoning(rules: str, invoice: dict[str, Any]) -> str:
    return (
        f"Review this invoice data against company policies:\n{rules}\n\n"
        "Think about which policies apply to this invoice and what the consequences would be "
        "if any are violated." + data_block("Invoice Data", invoice)
    )


def policy_corrective_actions(violations: list[str], total: float | None) -> str:
    amount = "unknown" if total is None else f"${total:,.2f}"
    return (
        f"For each policy violation, suggest a corrective action. Violations: {', '.join(violations)}. "
        f"Invoice total: {amount}."
    )


def ledger_reasoning(codes: str, invoice: dict[str, Any]) -> str:
    return (
        f"You need to predict the General Ledger (GL) code for this invoice. Available codes:\n{codes}\n\n"
        "Think about:\n"
        "1. What type of expense does this invoice represent?\n"
        "2. Which GL code best matches the vendor and line items?\n"
        "3. What contextual clues in the invoice help you decide?" + data_block("Invoice Data", invoice)
    )


def ledger_action(codes: str, invoice: dict[str, Any], reasoning: str) -> str:
    return (
        "Based on the invoice data and your analysis, predict the GL code. Only use one of these codes:\n"
        f"{codes}\n\nReturn JSON:\n"
        "{\n"
        '  "glCode": "code",\n'
        '  "glCategory": "category name",\n'
        '  "confidence": number (0-100),\n'
        '  "reasoning": "explanation of why this code was chosen"\n'
        "}" + data_block("Invoice Data", invoice) + f"\n\nYour analysis:\n{reasoning.strip()}"
    )


def quality_reasoning(invoice: dict[str, Any]) -> str:
    return (
        "You are the Quality Agent - the self-corrector. Your job is to:\n"
        "1. Mathematically verify tax and totals\n"
        "2. Check for calculation errors\n"
        "3. Verify data consistency\n"
        "4. If errors are found, flag the invoice for human review\n\n"
        "Think about what calculations you need to verify." + data_block("Current Extracted Data", invoice)
    )


def publisher_reasoning(payload: dict[str, Any]) -> str:
    return (
        "You need to format the final invoice data for Google Sheets. Think about:\n"
        "1. What format will be most useful in a spreadsheet?\n"
        "2. How should nested data (like line items) be structured?\n"
        "3. What metadata should be included (GL code, policy status, etc.)?" + data_block("Data to format", payload)
    )


PUBLISHER_REFLECTION = "Reflect on the final payload. Is it complete? Will it be easy to import into Google Sheets?"
