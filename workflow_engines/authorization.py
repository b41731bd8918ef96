"""
workflow_engines.authorization -- Default actor eligibility check.

``RuleMembershipAuthorizer`` answers eligibility from the rule alone:
a single-approver rule with a designated approver admits that approver
only; every other rule admits the explicit eligible set.
A rule that names nobody admits nobody.  Hosts with an organisational
directory supply their own ``ActorAuthorizer`` instead.
"""

from __future__ import annotations

from workflow_kernel.domain.approval import ApprovalRule, ApprovalType, StepContext


class RuleMembershipAuthorizer:
    """ActorAuthorizer backed by ``approver_id`` / ``eligible_actor_ids``."""

    def is_eligible(
        self,
        actor_id: str,
        rule: ApprovalRule,
        step_context: StepContext,
    ) -> bool:
        if rule.approval_type == ApprovalType.SINGLE and rule.approver_id is not None:
            return actor_id == rule.approver_id
        return actor_id in rule.eligible_actor_ids
