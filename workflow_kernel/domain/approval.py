"""
Approval workflow domain types (``workflow_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the approval workflow engine.  Defines the workflow
lifecycle state machine, approval rules as handed over by the rule catalog,
the typed document reference, instance/action snapshots, action results,
and the protocols the host system implements.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* ``WORKFLOW_TRANSITIONS`` defines the only valid status transitions.
  Terminal states have no outgoing edges.
* A document is referenced by ``DocumentRef`` only; the engine never holds
  the document object itself.
* ``ApprovalRule`` is read-only to the engine (frozen).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID


# =========================================================================
# Workflow Status Lifecycle
# =========================================================================


class WorkflowStatus(str, Enum):
    """Workflow instance lifecycle states."""

    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"


WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.PENDING: frozenset({
        WorkflowStatus.COMPLETED,
        WorkflowStatus.REJECTED,
        WorkflowStatus.CANCELLED,
        WorkflowStatus.FAILED,
    }),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.REJECTED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
    WorkflowStatus.FAILED: frozenset(),
}

TERMINAL_WORKFLOW_STATUSES: frozenset[WorkflowStatus] = frozenset({
    WorkflowStatus.COMPLETED,
    WorkflowStatus.REJECTED,
    WorkflowStatus.CANCELLED,
    WorkflowStatus.FAILED,
})


class ApprovalType(str, Enum):
    """How many votes a step needs."""

    SINGLE = "single"
    QUORUM = "quorum"
    MAJORITY = "majority"
    UNANIMOUS = "unanimous"


class ActionType(str, Enum):
    """Entries in the action ledger."""

    APPROVE = "approve"
    REJECT = "reject"
    DELEGATE = "delegate"
    ESCALATE = "escalate"
    COMMENT = "comment"


VOTING_ACTIONS: frozenset[ActionType] = frozenset({
    ActionType.APPROVE,
    ActionType.REJECT,
})


class RejectionPolicy(str, Enum):
    """How rejections end a step.

    ``VETO``: any single authorized rejection terminates the workflow.
    ``THRESHOLD``: the workflow is rejected once the votes still outstanding
    can no longer reach the approval threshold.
    """

    VETO = "veto"
    THRESHOLD = "threshold"


class ActionOutcome(str, Enum):
    """Result of an approve/reject call."""

    CONTINUED = "continued"
    COMPLETED = "completed"
    REJECTED = "rejected"
    ERROR = "error"


# =========================================================================
# Document Reference
# =========================================================================


@dataclass(frozen=True)
class DocumentRef:
    """Typed reference to the document under approval.

    The engine does not own the document; it only reports lifecycle changes
    for it through ``DocumentStatusSink``.
    """

    document_type: str
    document_id: int

    @property
    def key(self) -> str:
        """Serialization token used to enforce one active workflow per document."""
        return f"{self.document_type}:{self.document_id}"

    def __str__(self) -> str:
        return self.key


# =========================================================================
# Rule Types
# =========================================================================


@dataclass(frozen=True)
class ApprovalRule:
    """A single approval rule from the rule catalog.

    Rules are matched by document type, amount window, site, effective
    window and attribute predicates.  A path orders matching rules by
    ``floor_limit`` ascending.
    """

    rule_id: str
    code: str
    document_type: str
    approval_type: ApprovalType = ApprovalType.SINGLE
    floor_limit: Decimal = Decimal("0")
    ceiling_limit: Decimal | None = None
    budget_ceiling_limit: Decimal | None = None
    non_budget_ceiling_limit: Decimal | None = None
    required_approvers: int = 1
    eligible_approvers: int = 1
    approver_id: str | None = None
    approver_name: str | None = None
    eligible_actor_ids: frozenset[str] = frozenset()
    timeout_days: int | None = None
    escalation_enabled: bool = False
    escalation_rule_id: str | None = None
    auto_reject_on_timeout: bool = False
    site_id: str | None = None
    is_active: bool = True
    effective_from: date | None = None
    effective_to: date | None = None
    budget_type: str = "All"
    transaction_category: str | None = None
    urgency: str | None = None
    created_by: str | None = None

    @property
    def pool_size(self) -> int:
        """Size of the eligible pool: the explicit set when given."""
        if self.eligible_actor_ids:
            return len(self.eligible_actor_ids)
        return self.eligible_approvers


@dataclass(frozen=True)
class StepDescriptor:
    """One step of a previewed approval path.  Never persisted."""

    step: int
    rule_id: str
    rule_code: str
    approval_type: ApprovalType
    required_approvers: int
    eligible_approvers: int
    description: str
    estimated_days: int


@dataclass(frozen=True)
class StepContext:
    """What an authorizer may know about the step being voted on."""

    workflow_id: UUID
    workflow_code: str
    document: DocumentRef
    step_sequence: int
    amount: Decimal
    site_id: str | None = None
    routing_attributes: Mapping[str, Any] = field(default_factory=dict)


# =========================================================================
# Instance and Action Records
# =========================================================================


@dataclass(frozen=True)
class WorkflowActionRecord:
    """Record of a single ledger entry. Immutable."""

    action_id: UUID
    workflow_id: UUID
    rule_id: str
    action_type: ActionType
    step_name: str
    step_sequence: int
    ledger_sequence: int
    action_taken_at: datetime
    actor_id: str | None = None
    original_actor_id: str | None = None
    delegated_to_id: str | None = None
    comments: str | None = None
    is_automatic: bool = False
    is_overdue_action: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)
    actor_name: str | None = None


@dataclass(frozen=True)
class WorkflowInstance:
    """Immutable snapshot of a workflow instance."""

    workflow_id: UUID
    workflow_code: str
    status: WorkflowStatus
    document: DocumentRef
    amount: Decimal
    approval_path: tuple[str, ...]
    total_steps: int
    steps_completed: int
    current_rule_id: str
    current_approval_type: ApprovalType
    current_step_name: str
    approvals_required: int
    approvals_received: int
    rejections_received: int
    started_at: datetime
    due_at: datetime | None = None
    completed_at: datetime | None = None
    is_overdue: bool = False
    is_escalated: bool = False
    escalated_at: datetime | None = None
    escalation_reason: str | None = None
    rejected_at: datetime | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None
    failure_reason: str | None = None
    site_id: str | None = None
    created_by: str | None = None
    notes: str | None = None
    routing_attributes: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES

    @property
    def current_step_sequence(self) -> int:
        """1-based sequence of the step currently awaiting votes."""
        return min(self.steps_completed + 1, self.total_steps)


@dataclass(frozen=True)
class ActionResult:
    """Result of an approve/reject call.

    ``advanced`` is True when the call satisfied a step and moved the
    workflow to the next one.  Errors carry the exception ``code``.
    """

    outcome: ActionOutcome
    workflow_id: UUID
    status: WorkflowStatus | None = None
    step_sequence: int | None = None
    steps_completed: int | None = None
    approvals_received: int | None = None
    approvals_required: int | None = None
    advanced: bool = False
    action_id: UUID | None = None
    error_code: str | None = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome != ActionOutcome.ERROR


# =========================================================================
# Collaborator Protocols (implemented by the host)
# =========================================================================


@runtime_checkable
class RuleProvider(Protocol):
    """Read-only access to the approval rule catalog."""

    def find_applicable_rules(
        self,
        document_type: str,
        amount: Decimal,
        site_id: str | None,
        attributes: Mapping[str, Any],
        as_of: date,
    ) -> Sequence[ApprovalRule]:
        """Return every rule that applies to the document."""
        ...

    def get_rule(self, rule_id: str) -> ApprovalRule | None:
        """Return a rule by id, or None if it no longer exists."""
        ...


@runtime_checkable
class DocumentStatusSink(Protocol):
    """One-way notifications the engine fires; the host mutates the document."""

    def on_workflow_started(self, document: DocumentRef, workflow_code: str) -> None:
        ...

    def on_workflow_completed(self, document: DocumentRef, workflow_code: str) -> None:
        ...

    def on_workflow_rejected(self, document: DocumentRef, workflow_code: str) -> None:
        ...

    def on_workflow_cancelled(self, document: DocumentRef, workflow_code: str) -> None:
        ...

    def on_workflow_failed(self, document: DocumentRef, workflow_code: str) -> None:
        ...


@runtime_checkable
class ActorAuthorizer(Protocol):
    """Decides whether an identity may vote on the current step."""

    def is_eligible(
        self,
        actor_id: str,
        rule: ApprovalRule,
        step_context: StepContext,
    ) -> bool:
        ...


@runtime_checkable
class ActorDirectory(Protocol):
    """Resolves display names for history listings."""

    def display_name(self, actor_id: str) -> str | None:
        ...
