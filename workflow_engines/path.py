"""
workflow_engines.path -- Pure approval-path rule matching and ordering.

Responsibility:
    Decide whether a single approval rule applies to a document, and turn a
    set of applicable rules into an ordered, de-duplicated approval path.
    Shared by the in-memory rule catalog (as its matching predicate) and by
    the path resolver (to re-filter provider results).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import workflow_kernel/domain/ types.

Invariants enforced:
    - Amount window: ``floor < amount <= ceiling``; a zero floor admits a
      zero amount; a missing ceiling is unlimited.  When the document is
      budgeted, ``budget_ceiling_limit`` (if set) replaces the ceiling;
      when it is not, ``non_budget_ceiling_limit`` does.
    - Deterministic ordering: ``floor_limit`` ascending, ties broken by
      ``rule_id``.  Identical inputs always yield the identical path.
    - Purity: no clock access.  ``as_of`` is passed in.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date
from decimal import Decimal
from typing import Any

from workflow_engines.tracer import traced_engine
from workflow_kernel.domain.approval import ApprovalRule

DEFAULT_ROUTING_ATTRIBUTES: Mapping[str, Any] = {
    "budget_type": "Operating",
    "is_budgeted": True,
    "urgency": "normal",
}

ALL_BUDGET_TYPES = "All"


def routing_attributes(attributes: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge caller-supplied attributes over the routing defaults."""
    merged = dict(DEFAULT_ROUTING_ATTRIBUTES)
    if attributes:
        merged.update({k: v for k, v in attributes.items() if v is not None})
    return merged


def as_flag(value: Any) -> bool:
    """Interpret a routing flag that may arrive as a string from a host form."""
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no", "n")
    return bool(value)


def effective_ceiling(rule: ApprovalRule, is_budgeted: bool) -> Decimal | None:
    """Ceiling that applies to a document with the given budget status."""
    if is_budgeted and rule.budget_ceiling_limit is not None:
        return rule.budget_ceiling_limit
    if not is_budgeted and rule.non_budget_ceiling_limit is not None:
        return rule.non_budget_ceiling_limit
    return rule.ceiling_limit


def amount_in_window(rule: ApprovalRule, amount: Decimal, is_budgeted: bool = True) -> bool:
    """Check ``floor < amount <= ceiling`` with the zero-floor band inclusive."""
    floor = rule.floor_limit
    if floor == 0:
        if amount < 0:
            return False
    elif amount <= floor:
        return False

    ceiling = effective_ceiling(rule, is_budgeted)
    return ceiling is None or amount <= ceiling


def _in_effect(rule: ApprovalRule, as_of: date) -> bool:
    if rule.effective_from is not None and as_of < rule.effective_from:
        return False
    if rule.effective_to is not None and as_of > rule.effective_to:
        return False
    return True


def _attribute_matches(expected: str | None, actual: Any) -> bool:
    if expected is None:
        return True
    return actual is not None and str(actual) == str(expected)


def rule_applies(
    rule: ApprovalRule,
    *,
    document_type: str,
    amount: Decimal,
    site_id: str | None,
    attributes: Mapping[str, Any],
    as_of: date,
) -> bool:
    """Check whether one rule applies to a document.

    A rule applies when all of these hold:
    1. Same document type, active, and in effect on ``as_of``
    2. Global (no site) or the document's site
    3. Amount inside the rule's window (budget-aware ceiling)
    4. Budget type is "All" or equal; category, urgency and creator
       predicates are unset or equal

    ``attributes`` should already be merged over the routing defaults.
    """
    if rule.document_type != document_type or not rule.is_active:
        return False
    if not _in_effect(rule, as_of):
        return False
    if rule.site_id is not None and rule.site_id != site_id:
        return False

    is_budgeted = as_flag(attributes.get("is_budgeted", True))
    if not amount_in_window(rule, amount, is_budgeted):
        return False

    if rule.budget_type and rule.budget_type != ALL_BUDGET_TYPES:
        if not _attribute_matches(rule.budget_type, attributes.get("budget_type")):
            return False
    if not _attribute_matches(rule.transaction_category, attributes.get("transaction_category")):
        return False
    if not _attribute_matches(rule.urgency, attributes.get("urgency")):
        return False
    if not _attribute_matches(rule.created_by, attributes.get("created_by")):
        return False
    return True


def order_rules(rules: Iterable[ApprovalRule]) -> list[ApprovalRule]:
    """Sort by floor ascending (then rule_id) and drop repeated rule ids."""
    ordered = sorted(rules, key=lambda r: (r.floor_limit, r.rule_id))
    seen: set[str] = set()
    unique: list[ApprovalRule] = []
    for rule in ordered:
        if rule.rule_id in seen:
            continue
        seen.add(rule.rule_id)
        unique.append(rule)
    return unique


@traced_engine(
    "approval_path", "1.0",
    fingerprint_fields=("document_type", "amount", "site_id", "attributes", "as_of"),
)
def select_path(
    rules: Iterable[ApprovalRule],
    *,
    document_type: str,
    amount: Decimal,
    site_id: str | None,
    attributes: Mapping[str, Any],
    as_of: date,
) -> list[ApprovalRule]:
    """Filter rules with ``rule_applies`` and return them in path order."""
    applicable = [
        rule for rule in rules
        if rule_applies(
            rule,
            document_type=document_type,
            amount=amount,
            site_id=site_id,
            attributes=attributes,
            as_of=as_of,
        )
    ]
    return order_rules(applicable)
