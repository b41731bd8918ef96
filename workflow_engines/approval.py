"""
workflow_engines.approval -- Pure vote-threshold and timing calculations.

Responsibility:
    Compute how many approvals a step needs, whether a step is satisfied,
    whether a rejection ends the workflow, due dates, overdue status and
    progress figures.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import workflow_kernel/domain/ types.

Invariants enforced:
    - Thresholds: single -> 1; quorum -> required_approvers;
      majority -> pool // 2 + 1; unanimous -> pool.  A threshold is never
      below 1.
    - Satisfaction is ``approvals_received >= threshold``.
    - Purity: ``now`` is always passed in.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from workflow_kernel.domain.approval import (
    ApprovalRule,
    ApprovalType,
    RejectionPolicy,
    WorkflowInstance,
    WorkflowStatus,
)

DEFAULT_TIMEOUT_DAYS = 3


def required_approvals(rule: ApprovalRule) -> int:
    """Number of approvals the rule's step needs before it is satisfied."""
    pool = rule.pool_size
    if rule.approval_type == ApprovalType.SINGLE:
        required = 1
    elif rule.approval_type == ApprovalType.QUORUM:
        required = rule.required_approvers
    elif rule.approval_type == ApprovalType.MAJORITY:
        required = pool // 2 + 1
    elif rule.approval_type == ApprovalType.UNANIMOUS:
        required = pool
    else:
        raise ValueError(f"Unknown approval type: {rule.approval_type!r}")
    return max(required, 1)


def is_step_satisfied(approvals_received: int, approvals_required: int) -> bool:
    return approvals_received >= approvals_required


def rejection_is_terminal(
    policy: RejectionPolicy,
    *,
    pool_size: int,
    approvals_required: int,
    rejections_received: int,
) -> bool:
    """Decide whether the rejections cast so far end the workflow.

    ``VETO``: any rejection is terminal.
    ``THRESHOLD``: terminal once the voters who have not rejected can no
    longer reach the threshold.  For single and unanimous steps the two
    policies agree.
    """
    if policy == RejectionPolicy.VETO:
        return rejections_received > 0
    return pool_size - rejections_received < approvals_required


def timeout_for(rule: ApprovalRule, default_timeout_days: int = DEFAULT_TIMEOUT_DAYS) -> int:
    if rule.timeout_days is None:
        return default_timeout_days
    return rule.timeout_days


def compute_due_at(
    now: datetime,
    rule: ApprovalRule,
    default_timeout_days: int = DEFAULT_TIMEOUT_DAYS,
) -> datetime:
    """Due date of a step that becomes current at ``now``."""
    return now + timedelta(days=timeout_for(rule, default_timeout_days))


def is_overdue(instance: WorkflowInstance, now: datetime) -> bool:
    """Pending, has a due date, and that due date has passed."""
    if instance.status != WorkflowStatus.PENDING or instance.due_at is None:
        return False
    return now > instance.due_at


def progress_percentage(steps_completed: int, total_steps: int) -> Decimal:
    if total_steps <= 0:
        return Decimal("0.00")
    pct = Decimal(steps_completed) / Decimal(total_steps) * 100
    return pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def progress_status(instance: WorkflowInstance) -> str:
    """Human label: Completed, Overdue, Escalated, or the capitalised status."""
    if instance.status == WorkflowStatus.COMPLETED:
        return "Completed"
    if instance.is_overdue:
        return "Overdue"
    if instance.is_escalated:
        return "Escalated"
    return instance.status.value.capitalize()
