"""
Module: workflow_kernel.models.workflow
Responsibility: ORM persistence for workflow instances, the action ledger,
    and per-document lock rows.

Architecture position: Kernel > Models.  May import from db/base.py and
    exceptions only.

Invariants enforced:
    - Status values limited by a DB check constraint; the service layer
      enforces transitions.
    - At most one non-terminal instance per document: ``active_document_key``
      is UNIQUE and is cleared when the instance reaches a terminal status.
    - Lost updates on an instance are detected by the ``version`` column
      (SQLAlchemy version_id_col) in addition to row locking.
    - Actions are append-only: ORM listeners reject UPDATE and DELETE.

Failure modes:
    - IntegrityError on a second active instance for the same document.
    - StaleDataError on a concurrent update of the same instance version.
    - ImmutabilityViolationError on action UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from workflow_kernel.db.base import Base, UUIDString
from workflow_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from workflow_kernel.domain.approval import (
        WorkflowActionRecord,
        WorkflowInstance,
    )


class WorkflowInstanceModel(Base):
    """Persistent workflow instance -- the aggregate root.

    Contract:
        Mutated only by the action processor and the overdue handler, always
        under a row lock.  Never deleted.

    Guarantees:
        - approval_path and amount are write-once.
        - active_document_key is set while pending and NULL once terminal.
    """

    __tablename__ = "workflow_instances"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed', 'rejected', "
            "'cancelled', 'failed')",
            name="ck_workflow_instances_valid_status",
        ),
        CheckConstraint(
            "approvals_received >= 0 AND approvals_received <= approvals_required",
            name="ck_workflow_instances_approval_counters",
        ),
        CheckConstraint(
            "steps_completed >= 0 AND steps_completed <= total_steps",
            name="ck_workflow_instances_step_counters",
        ),
        UniqueConstraint(
            "active_document_key",
            name="uq_workflow_instances_active_document",
        ),
        Index(
            "ix_workflow_instances_document",
            "document_type", "document_id", "started_at",
        ),
        # Overdue sweep
        Index(
            "ix_workflow_instances_overdue",
            "status", "is_overdue", "due_at",
        ),
    )

    workflow_code: Mapped[str] = mapped_column(
        String(50), nullable=False, unique=True,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    document_type: Mapped[str] = mapped_column(String(100), nullable=False)
    document_id: Mapped[int] = mapped_column(nullable=False)
    active_document_key: Mapped[str | None] = mapped_column(
        String(150), nullable=True,
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    site_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    approval_path: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    total_steps: Mapped[int] = mapped_column(nullable=False)
    steps_completed: Mapped[int] = mapped_column(nullable=False, default=0)
    current_rule_id: Mapped[str] = mapped_column(String(100), nullable=False)
    current_approval_type: Mapped[str] = mapped_column(String(20), nullable=False)
    current_step_name: Mapped[str] = mapped_column(String(255), nullable=False)

    approvals_required: Mapped[int] = mapped_column(nullable=False)
    approvals_received: Mapped[int] = mapped_column(nullable=False, default=0)
    rejections_received: Mapped[int] = mapped_column(nullable=False, default=0)

    started_at: Mapped[datetime] = mapped_column(nullable=False)
    due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    is_overdue: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    escalation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    routing_attributes: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict,
    )
    extra_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict,
    )

    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    actions: Mapped[list["WorkflowActionModel"]] = relationship(
        "WorkflowActionModel",
        back_populates="workflow",
        order_by="WorkflowActionModel.ledger_sequence",
        lazy="select",
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowInstance {self.workflow_code} "
            f"{self.document_type}:{self.document_id} "
            f"status={self.status} step={self.steps_completed + 1}/{self.total_steps}>"
        )

    def to_dto(self) -> WorkflowInstance:
        """Convert ORM model to frozen domain DTO."""
        from workflow_kernel.domain.approval import (
            ApprovalType,
            DocumentRef,
            WorkflowInstance as WorkflowInstanceDTO,
            WorkflowStatus,
        )

        return WorkflowInstanceDTO(
            workflow_id=self.id,
            workflow_code=self.workflow_code,
            status=WorkflowStatus(self.status),
            document=DocumentRef(self.document_type, self.document_id),
            amount=self.amount,
            approval_path=tuple(self.approval_path),
            total_steps=self.total_steps,
            steps_completed=self.steps_completed,
            current_rule_id=self.current_rule_id,
            current_approval_type=ApprovalType(self.current_approval_type),
            current_step_name=self.current_step_name,
            approvals_required=self.approvals_required,
            approvals_received=self.approvals_received,
            rejections_received=self.rejections_received,
            started_at=self.started_at,
            due_at=self.due_at,
            completed_at=self.completed_at,
            is_overdue=self.is_overdue,
            is_escalated=self.is_escalated,
            escalated_at=self.escalated_at,
            escalation_reason=self.escalation_reason,
            rejected_at=self.rejected_at,
            rejected_by=self.rejected_by,
            rejection_reason=self.rejection_reason,
            failure_reason=self.failure_reason,
            site_id=self.site_id,
            created_by=self.created_by,
            notes=self.notes,
            routing_attributes=dict(self.routing_attributes or {}),
            metadata=dict(self.extra_metadata or {}),
        )


class WorkflowActionModel(Base):
    """Persistent action ledger entry. Append-only.

    Contract:
        Actions are immutable once created -- no UPDATE, no DELETE.
        One approve/reject per actor per step is enforced by the action
        processor under the instance row lock, not by this table.
    """

    __tablename__ = "workflow_actions"

    __table_args__ = (
        CheckConstraint(
            "action_type IN ('approve', 'reject', 'delegate', "
            "'escalate', 'comment')",
            name="ck_workflow_actions_valid_type",
        ),
        Index(
            "ix_workflow_actions_step",
            "workflow_id", "step_sequence", "action_type",
        ),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_instances.id"),
        nullable=False,
    )
    rule_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    original_actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    delegated_to_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    action_type: Mapped[str] = mapped_column(String(20), nullable=False)
    step_name: Mapped[str] = mapped_column(String(255), nullable=False)
    step_sequence: Mapped[int] = mapped_column(nullable=False)
    ledger_sequence: Mapped[int] = mapped_column(nullable=False, unique=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_overdue_action: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    action_taken_at: Mapped[datetime] = mapped_column(nullable=False)
    extra_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict,
    )

    workflow: Mapped["WorkflowInstanceModel"] = relationship(
        "WorkflowInstanceModel",
        back_populates="actions",
    )

    def __repr__(self) -> str:
        return (
            f"<WorkflowAction {self.ledger_sequence} "
            f"{self.action_type} step={self.step_sequence} "
            f"actor={self.actor_id}>"
        )

    def to_dto(self, actor_name: str | None = None) -> WorkflowActionRecord:
        """Convert ORM model to frozen domain DTO."""
        from workflow_kernel.domain.approval import (
            ActionType,
            WorkflowActionRecord as WorkflowActionDTO,
        )

        return WorkflowActionDTO(
            action_id=self.id,
            workflow_id=self.workflow_id,
            rule_id=self.rule_id,
            action_type=ActionType(self.action_type),
            step_name=self.step_name,
            step_sequence=self.step_sequence,
            ledger_sequence=self.ledger_sequence,
            action_taken_at=self.action_taken_at,
            actor_id=self.actor_id,
            original_actor_id=self.original_actor_id,
            delegated_to_id=self.delegated_to_id,
            comments=self.comments,
            is_automatic=self.is_automatic,
            is_overdue_action=self.is_overdue_action,
            metadata=dict(self.extra_metadata or {}),
            actor_name=actor_name,
        )


class WorkflowDocumentLock(Base):
    """
    One row per document that has ever entered a workflow.

    Locked ``FOR UPDATE`` for the duration of the duplicate-check-and-insert
    in workflow creation, so concurrent starts for the same document run
    one after the other.
    """

    __tablename__ = "workflow_document_locks"

    __table_args__ = (
        UniqueConstraint(
            "document_type", "document_id",
            name="uq_workflow_document_locks_document",
        ),
    )

    document_type: Mapped[str] = mapped_column(String(100), nullable=False)
    document_id: Mapped[int] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)


# =============================================================================
# ORM-Level Immutability for Actions (Append-Only)
# =============================================================================


@event.listens_for(WorkflowActionModel, "before_update")
def prevent_action_update(mapper, connection, target):
    """Prevent updates to workflow action records."""
    raise ImmutabilityViolationError(
        entity_type="WorkflowAction",
        entity_id=str(target.id),
        reason="Workflow actions are immutable -- cannot modify",
    )


@event.listens_for(WorkflowActionModel, "before_delete")
def prevent_action_delete(mapper, connection, target):
    """Prevent deletion of workflow action records."""
    raise ImmutabilityViolationError(
        entity_type="WorkflowAction",
        entity_id=str(target.id),
        reason="Workflow actions are immutable -- cannot delete",
    )
