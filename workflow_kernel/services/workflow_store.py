"""
workflow_kernel.services.workflow_store -- Persistence for workflow instances.

Responsibility:
    Row locking, creation, state transitions and action-ledger appends for
    workflow instances.  Holds no routing or vote math; the callers in
    ``workflow_services`` decide *what* changes, the store applies it.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - One non-terminal instance per document: creation runs under the
      per-document lock row and the UNIQUE ``active_document_key`` turns a
      lost race into DuplicateWorkflowError.
    - Every mutation of an instance happens on a row loaded with
      ``SELECT ... FOR UPDATE``; the version column turns any remaining lost
      update into OptimisticLockError.
    - Status changes follow WORKFLOW_TRANSITIONS; terminal instances clear
      their ``active_document_key``.
    - The action ledger is append-only and ordered by ``ledger_sequence``.

Failure modes:
    - WorkflowNotFoundError if the instance does not exist.
    - WorkflowNotPendingError on a transition out of a terminal status.
    - DuplicateWorkflowError on a second active instance for a document.
    - OptimisticLockError on a stale instance version.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from workflow_kernel.domain.approval import (
    WORKFLOW_TRANSITIONS,
    ActionType,
    ApprovalType,
    DocumentRef,
    WorkflowStatus,
)
from workflow_kernel.exceptions import (
    DuplicateWorkflowError,
    OptimisticLockError,
    WorkflowNotFoundError,
    WorkflowNotPendingError,
)
from workflow_kernel.logging_config import get_logger
from workflow_kernel.models.workflow import (
    WorkflowActionModel,
    WorkflowDocumentLock,
    WorkflowInstanceModel,
)
from workflow_kernel.services.base import BaseService
from workflow_kernel.services.sequence_service import SequenceService

logger = get_logger("services.workflow_store")


def json_safe(values: Mapping[str, Any] | None) -> dict[str, Any]:
    """Copy a mapping into JSON-column-safe values (Decimal, date, UUID -> str)."""
    if not values:
        return {}
    return {str(k): _json_value(v) for k, v in values.items()}


def _json_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return json_safe(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_value(v) for v in value]
    return str(value)


class WorkflowStore(BaseService[WorkflowInstanceModel]):
    """
    Locked read-modify-write access to workflow instances.

    Contract:
        Returns ORM models to its callers in the services layer; they must
        not leak past the facade (``to_dto()`` them first).

    Non-goals:
        - Does NOT commit.  Callers own the transaction.
        - Does NOT decide thresholds, step order or escalation.
    """

    def __init__(self, session: Session, sequence_service: SequenceService | None = None):
        super().__init__(session)
        self._sequences = sequence_service or SequenceService(session)

    # =========================================================================
    # Locking
    # =========================================================================

    def lock_document(self, document: DocumentRef, now: datetime) -> WorkflowDocumentLock:
        """
        Take the per-document lock row, creating it on first use.

        The row stays locked until the caller's transaction ends, so two
        ``start`` calls for the same document run one after the other.
        """
        lock = self._select_document_lock(document)
        if lock is not None:
            return lock

        savepoint = self.session.begin_nested()
        try:
            lock = WorkflowDocumentLock(
                document_type=document.document_type,
                document_id=document.document_id,
                created_at=now,
            )
            self.session.add(lock)
            self.session.flush()
            savepoint.commit()
            return lock
        except IntegrityError:
            logger.debug(
                "document_lock_race_retry",
                extra={"document": document.key},
            )
            savepoint.rollback()
            lock = self._select_document_lock(document)
            if lock is None:
                raise
            return lock

    def lock_instance(self, workflow_id: UUID) -> WorkflowInstanceModel:
        """Load an instance with a row lock, refreshing any cached copy."""
        instance = self.session.execute(
            select(WorkflowInstanceModel)
            .where(WorkflowInstanceModel.id == workflow_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if instance is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return instance

    def find_active_for_document(
        self, document: DocumentRef,
    ) -> WorkflowInstanceModel | None:
        return self.session.execute(
            select(WorkflowInstanceModel)
            .where(WorkflowInstanceModel.active_document_key == document.key)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    # =========================================================================
    # Creation
    # =========================================================================

    def create_instance(
        self,
        *,
        workflow_code: str,
        document: DocumentRef,
        amount: Decimal,
        site_id: str | None,
        approval_path: list[str],
        first_rule_id: str,
        first_approval_type: ApprovalType,
        first_step_name: str,
        approvals_required: int,
        started_at: datetime,
        due_at: datetime | None,
        created_by: str | None = None,
        notes: str | None = None,
        routing_attributes: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> WorkflowInstanceModel:
        """
        Insert a new pending instance.

        Raises:
            DuplicateWorkflowError: Another active instance holds the
                document's ``active_document_key``.
        """
        instance = WorkflowInstanceModel(
            workflow_code=workflow_code,
            status=WorkflowStatus.PENDING.value,
            document_type=document.document_type,
            document_id=document.document_id,
            active_document_key=document.key,
            amount=amount,
            site_id=site_id,
            approval_path=list(approval_path),
            total_steps=len(approval_path),
            steps_completed=0,
            current_rule_id=first_rule_id,
            current_approval_type=first_approval_type.value,
            current_step_name=first_step_name,
            approvals_required=approvals_required,
            approvals_received=0,
            rejections_received=0,
            started_at=started_at,
            due_at=due_at,
            created_by=created_by,
            notes=notes,
            routing_attributes=json_safe(routing_attributes),
            extra_metadata=json_safe(metadata),
        )

        savepoint = self.session.begin_nested()
        try:
            self.session.add(instance)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            existing = self.find_active_for_document(document)
            if existing is None:
                raise
            logger.warning(
                "workflow_duplicate_start_blocked",
                extra={
                    "document": document.key,
                    "existing_workflow_code": existing.workflow_code,
                },
            )
            raise DuplicateWorkflowError(
                document.document_type,
                document.document_id,
                existing.workflow_code,
            ) from None
        return instance

    # =========================================================================
    # Mutation
    # =========================================================================

    def assign_step(
        self,
        instance: WorkflowInstanceModel,
        *,
        rule_id: str,
        approval_type: ApprovalType,
        step_name: str,
        approvals_required: int,
        due_at: datetime | None,
    ) -> None:
        """Point the instance at a (new) rule and reset the step's counters."""
        self._require_pending(instance)
        instance.current_rule_id = rule_id
        instance.current_approval_type = approval_type.value
        instance.current_step_name = step_name
        instance.approvals_required = approvals_required
        instance.approvals_received = 0
        instance.rejections_received = 0
        instance.due_at = due_at
        instance.is_overdue = False

    def transition(
        self,
        instance: WorkflowInstanceModel,
        new_status: WorkflowStatus,
        now: datetime,
    ) -> None:
        """
        Move an instance to a terminal status.

        Clears ``active_document_key`` so the document may start a new
        workflow after this one.
        """
        current = WorkflowStatus(instance.status)
        if new_status not in WORKFLOW_TRANSITIONS[current]:
            raise WorkflowNotPendingError(str(instance.id), current.value)
        instance.status = new_status.value
        instance.active_document_key = None
        if new_status == WorkflowStatus.COMPLETED:
            instance.completed_at = now
            instance.steps_completed = instance.total_steps

    def append_action(
        self,
        instance: WorkflowInstanceModel,
        action_type: ActionType,
        now: datetime,
        *,
        actor_id: str | None = None,
        original_actor_id: str | None = None,
        delegated_to_id: str | None = None,
        comments: str | None = None,
        is_automatic: bool = False,
        is_overdue_action: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> WorkflowActionModel:
        """Append a ledger entry against the instance's current step."""
        # Counter allocation queries; surface version conflicts typed first.
        self.flush(instance)
        action = WorkflowActionModel(
            id=uuid4(),
            workflow_id=instance.id,
            rule_id=instance.current_rule_id,
            actor_id=actor_id,
            original_actor_id=original_actor_id,
            delegated_to_id=delegated_to_id,
            action_type=action_type.value,
            step_name=instance.current_step_name,
            step_sequence=min(instance.steps_completed + 1, instance.total_steps),
            ledger_sequence=self._sequences.next_value(SequenceService.WORKFLOW_ACTION),
            comments=comments,
            is_automatic=is_automatic,
            is_overdue_action=is_overdue_action,
            action_taken_at=now,
            extra_metadata=json_safe(metadata),
        )
        self.session.add(action)
        return action

    def flush(self, instance: WorkflowInstanceModel) -> None:
        """Flush pending changes, translating a stale version into a typed error."""
        try:
            self.session.flush()
        except StaleDataError as exc:
            logger.warning(
                "workflow_optimistic_lock_conflict",
                extra={"workflow_id": str(instance.id)},
            )
            raise OptimisticLockError("WorkflowInstance", str(instance.id)) from exc

    # =========================================================================
    # Internal
    # =========================================================================

    def _select_document_lock(self, document: DocumentRef) -> WorkflowDocumentLock | None:
        return self.session.execute(
            select(WorkflowDocumentLock)
            .where(
                WorkflowDocumentLock.document_type == document.document_type,
                WorkflowDocumentLock.document_id == document.document_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @staticmethod
    def _require_pending(instance: WorkflowInstanceModel) -> None:
        if instance.status != WorkflowStatus.PENDING.value:
            raise WorkflowNotPendingError(str(instance.id), instance.status)
