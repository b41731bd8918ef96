"""
RuleCatalog -- in-memory RuleProvider.

Holds a fixed set of ``ApprovalRule`` objects (usually parsed from a
catalog YAML) and answers ``find_applicable_rules`` with the same pure
predicate the path resolver uses.  Hosts that keep rules in their own
database implement ``RuleProvider`` themselves; tests and small
deployments use this class.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date
from decimal import Decimal
from typing import Any

from workflow_engines.path import routing_attributes, rule_applies
from workflow_kernel.domain.approval import ApprovalRule


class RuleCatalog:
    """Read-only rule provider over an in-memory rule list."""

    def __init__(self, rules: Iterable[ApprovalRule], checksum: str | None = None):
        self._rules: tuple[ApprovalRule, ...] = tuple(rules)
        self._by_id: dict[str, ApprovalRule] = {}
        for rule in self._rules:
            if rule.rule_id in self._by_id:
                raise ValueError(f"Duplicate rule_id in catalog: {rule.rule_id}")
            self._by_id[rule.rule_id] = rule
        self.checksum = checksum

    @property
    def rules(self) -> tuple[ApprovalRule, ...]:
        return self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._by_id

    def get_rule(self, rule_id: str) -> ApprovalRule | None:
        return self._by_id.get(rule_id)

    def find_applicable_rules(
        self,
        document_type: str,
        amount: Decimal,
        site_id: str | None,
        attributes: Mapping[str, Any],
        as_of: date,
    ) -> list[ApprovalRule]:
        merged = routing_attributes(attributes)
        return [
            rule for rule in self._rules
            if rule_applies(
                rule,
                document_type=document_type,
                amount=amount,
                site_id=site_id,
                attributes=merged,
                as_of=as_of,
            )
        ]

    def missing_escalation_targets(self) -> list[tuple[str, str]]:
        """(rule_id, target) pairs whose escalation target is not in the catalog."""
        return [
            (rule.rule_id, rule.escalation_rule_id)
            for rule in self._rules
            if rule.escalation_enabled
            and rule.escalation_rule_id is not None
            and rule.escalation_rule_id not in self._by_id
        ]
