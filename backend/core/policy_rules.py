"""Deterministic approval policy evaluated by the Policy Agent."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from backend.core.schema import CorrectiveAction, InvoiceData, PolicyCheck, PolicyCheckResult

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%d.%m.%Y", "%B %d, %Y", "%b %d, %Y", "%d %B %Y", "%d %b %Y")


@dataclass(frozen=True)
class PolicyRule:
    rule_id: str
    description: str
    kind: str
    params: dict[str, Any]

    @property
    def routing(self) -> str | None:
        routing = self.params.get("routing")
        return str(routing) if routing else None


def _load_rules() -> list[PolicyRule]:
    path = CONFIG_DIR / "policy_rules.yaml"
    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    rules: list[PolicyRule] = []
    for entry in data.get("rules", []):
        params = {key: value for key, value in entry.items() if key not in {"id", "description", "kind"}}
        rules.append(
            PolicyRule(
                rule_id=str(entry["id"]),
                description=str(entry["description"]),
                kind=str(entry["kind"]),
                params=params,
            )
        )
    return rules


POLICY_RULES = _load_rules()


def parse_invoice_date(value: str | None) -> date | None:
    if not value:
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text[:10]).date()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _rule_passes(rule: PolicyRule, data: InvoiceData, today: date) -> bool:
    if rule.kind == "amount_limit":
        if data.total is None:
            return True
        return data.total <= float(rule.params["limit"])
    if rule.kind == "tax_rate_range":
        if data.tax_rate is None:
            return False
        return float(rule.params.get("min", 0)) <= data.tax_rate <= float(rule.params["max"])
    if rule.kind == "max_age_days":
        invoice_date = parse_invoice_date(data.date)
        if invoice_date is None:
            return False
        return (today - invoice_date).days <= int(rule.params["days"])
    raise ValueError(f"unknown policy rule kind: {rule.kind}")


def evaluate_policies(
    data: InvoiceData,
    *,
    now: datetime | None = None,
    rules: list[PolicyRule] | None = None,
) -> PolicyCheckResult:
    """Check ``data`` against every rule; the wall clock is read once per call."""

    today = (now or datetime.now(timezone.utc)).date()
    checks: list[PolicyCheck] = []
    violations: list[str] = []
    for rule in rules if rules is not None else POLICY_RULES:
        passed = _rule_passes(rule, data, today)
        checks.append(PolicyCheck(rule=rule.description, passed=passed))
        if not passed:
            violations.append(rule.description)

    return PolicyCheckResult(
        checks=checks,
        violations=violations,
        approved=not violations,
        requires_intervention=bool(violations),
    )


def approval_routing(data: InvoiceData, rules: list[PolicyRule] | None = None) -> str | None:
    """Routing text of the highest amount limit exceeded by the invoice total."""

    if data.total is None:
        return None
    exceeded = [
        rule
        for rule in (rules if rules is not None else POLICY_RULES)
        if rule.kind == "amount_limit" and rule.routing and data.total > float(rule.params["limit"])
    ]
    if not exceeded:
        return None
    return max(exceeded, key=lambda rule: float(rule.params["limit"])).routing


def build_corrective_actions(
    result: PolicyCheckResult,
    data: InvoiceData,
    suggestion_text: str,
    rules: list[PolicyRule] | None = None,
) -> list[CorrectiveAction]:
    """Pair every violation with an action.

    Amount-threshold violations always get the deterministic approval routing;
    the model's suggestion only decides between the generic actions.
    """

    active_rules = rules if rules is not None else POLICY_RULES
    by_description = {rule.description: rule for rule in active_rules}
    routing = approval_routing(data, active_rules)
    generic = "Escalate to CFO" if "CFO" in (suggestion_text or "") else "Review required"

    actions: list[CorrectiveAction] = []
    for violation in result.violations:
        rule = by_description.get(violation)
        if rule is not None and rule.kind == "amount_limit" and routing:
            actions.append(CorrectiveAction(violation=violation, action=routing))
        else:
            actions.append(CorrectiveAction(violation=violation, action=generic))
    return actions


def describe_rules(rules: list[PolicyRule] | None = None) -> str:
    return "\n".join(f"- {rule.description}" for rule in (rules if rules is not None else POLICY_RULES))
