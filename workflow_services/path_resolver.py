"""
workflow_services.path_resolver -- Approval path resolution and preview.

Responsibility:
    Ask the host's ``RuleProvider`` for applicable rules, re-filter them
    with the pure matching predicate, and order them into an approval
    path.  Also builds side-effect-free previews of a path.

Architecture position:
    Services layer.  May import from workflow_engines/ and
    workflow_kernel/ (domain, logging).

Invariants enforced:
    - Deterministic: the same rule set and inputs always yield the same
      ordered path (``floor_limit`` ascending, then ``rule_id``).
    - An empty path is returned as an empty list; ``start`` turns it into
      NoApprovalPathFoundError.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date
from decimal import Decimal
from typing import Any

from workflow_engines.approval import DEFAULT_TIMEOUT_DAYS, required_approvals
from workflow_engines.naming import describe_rule, estimated_days
from workflow_engines.path import routing_attributes, select_path
from workflow_kernel.domain.approval import ApprovalRule, RuleProvider, StepDescriptor
from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.logging_config import get_logger

logger = get_logger("services.path_resolver")


class ApprovalPathResolver:
    """Resolves ordered approval paths from a RuleProvider."""

    def __init__(
        self,
        rule_provider: RuleProvider,
        clock: Clock | None = None,
        default_timeout_days: int = DEFAULT_TIMEOUT_DAYS,
    ):
        self._rules = rule_provider
        self._clock = clock or SystemClock()
        self._default_timeout_days = default_timeout_days

    def resolve_rules(
        self,
        document_type: str,
        amount: Decimal,
        site_id: str | None = None,
        attributes: Mapping[str, Any] | None = None,
        as_of: date | None = None,
    ) -> list[ApprovalRule]:
        """Return the applicable rules in path order."""
        merged = routing_attributes(attributes)
        as_of = as_of or self._clock.now().date()
        candidates = self._rules.find_applicable_rules(
            document_type, amount, site_id, merged, as_of,
        )
        path = select_path(
            candidates,
            document_type=document_type,
            amount=amount,
            site_id=site_id,
            attributes=merged,
            as_of=as_of,
        )
        if len(path) != len(candidates):
            logger.debug(
                "approval_path_candidates_filtered",
                extra={
                    "document_type": document_type,
                    "provided": len(candidates),
                    "kept": len(path),
                },
            )
        logger.debug(
            "approval_path_resolved",
            extra={
                "document_type": document_type,
                "amount": amount,
                "site_id": site_id,
                "path": [rule.rule_id for rule in path],
            },
        )
        return path

    def resolve(
        self,
        document_type: str,
        amount: Decimal,
        site_id: str | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Return the ordered rule ids of the approval path (possibly empty)."""
        return [
            rule.rule_id
            for rule in self.resolve_rules(document_type, amount, site_id, attributes)
        ]

    def preview(
        self,
        document_type: str,
        amount: Decimal,
        site_id: str | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> list[StepDescriptor]:
        """Describe each step of the path without creating anything."""
        rules = self.resolve_rules(document_type, amount, site_id, attributes)
        return [
            StepDescriptor(
                step=index,
                rule_id=rule.rule_id,
                rule_code=rule.code,
                approval_type=rule.approval_type,
                required_approvers=required_approvals(rule),
                eligible_approvers=rule.pool_size,
                description=describe_rule(rule),
                estimated_days=estimated_days(rule, self._default_timeout_days),
            )
            for index, rule in enumerate(rules, start=1)
        ]
