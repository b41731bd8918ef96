"""
Module: workflow_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines used by the
    workflow services: rule matching and path ordering, vote thresholds and
    timing, naming, and the default authorizer.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import workflow_kernel/domain/ (and sibling engine modules).
    MUST NOT import workflow_services or workflow_config.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or ``date.today()``.
      Callers pass the current time in.
    - Determinism: identical inputs always produce identical outputs.
"""

from workflow_engines.approval import (
    DEFAULT_TIMEOUT_DAYS,
    compute_due_at,
    is_overdue,
    is_step_satisfied,
    progress_percentage,
    progress_status,
    rejection_is_terminal,
    required_approvals,
    timeout_for,
)
from workflow_engines.authorization import RuleMembershipAuthorizer
from workflow_engines.naming import (
    code_sequence_name,
    describe_rule,
    format_workflow_code,
    step_name,
    type_tag,
)
from workflow_engines.path import (
    DEFAULT_ROUTING_ATTRIBUTES,
    amount_in_window,
    order_rules,
    routing_attributes,
    rule_applies,
    select_path,
)
from workflow_engines.tracer import traced_engine

__all__ = [
    "DEFAULT_ROUTING_ATTRIBUTES",
    "DEFAULT_TIMEOUT_DAYS",
    "RuleMembershipAuthorizer",
    "amount_in_window",
    "code_sequence_name",
    "compute_due_at",
    "describe_rule",
    "format_workflow_code",
    "is_overdue",
    "is_step_satisfied",
    "order_rules",
    "progress_percentage",
    "progress_status",
    "rejection_is_terminal",
    "required_approvals",
    "routing_attributes",
    "rule_applies",
    "select_path",
    "step_name",
    "timeout_for",
    "traced_engine",
    "type_tag",
]
