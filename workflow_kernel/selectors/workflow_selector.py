"""
Module: workflow_kernel.selectors.workflow_selector
Responsibility: Read-only queries over workflow instances and the action
    ledger: instance lookup, history listings, per-step vote and delegation
    checks, and overdue candidate scans.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - History is ordered newest first by ``ledger_sequence``.
    - Per-step checks are scoped to (workflow, step_sequence, rule) so votes
      cast before an escalation do not count against the escalation rule.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import or_, select

from workflow_kernel.domain.approval import (
    ActionType,
    ActorDirectory,
    DocumentRef,
    WorkflowActionRecord,
    WorkflowInstance,
    WorkflowStatus,
)
from workflow_kernel.models.workflow import WorkflowActionModel, WorkflowInstanceModel
from workflow_kernel.selectors.base import BaseSelector


class WorkflowSelector(BaseSelector[WorkflowInstanceModel]):
    """Read-only access to workflow state."""

    def get_instance(self, workflow_id: UUID) -> WorkflowInstance | None:
        model = self.session.get(WorkflowInstanceModel, workflow_id)
        return model.to_dto() if model is not None else None

    def get_active_for_document(self, document: DocumentRef) -> WorkflowInstance | None:
        model = self.session.execute(
            select(WorkflowInstanceModel)
            .where(WorkflowInstanceModel.active_document_key == document.key)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def list_for_document(self, document: DocumentRef) -> list[WorkflowInstance]:
        """All instances ever started for a document, newest first."""
        models = self.session.execute(
            select(WorkflowInstanceModel)
            .where(
                WorkflowInstanceModel.document_type == document.document_type,
                WorkflowInstanceModel.document_id == document.document_id,
            )
            .order_by(WorkflowInstanceModel.started_at.desc())
        ).scalars().all()
        return [m.to_dto() for m in models]

    def get_history(
        self,
        workflow_id: UUID,
        directory: ActorDirectory | None = None,
    ) -> list[WorkflowActionRecord]:
        """
        Return the action ledger for a workflow, newest first.

        When a directory is given, ``actor_name`` is filled for every action
        with an actor.
        """
        models = self.session.execute(
            select(WorkflowActionModel)
            .where(WorkflowActionModel.workflow_id == workflow_id)
            .order_by(WorkflowActionModel.ledger_sequence.desc())
        ).scalars().all()

        records = []
        for model in models:
            name = None
            if directory is not None and model.actor_id is not None:
                name = directory.display_name(model.actor_id)
            records.append(model.to_dto(actor_name=name))
        return records

    def has_voted_on_step(
        self,
        workflow_id: UUID,
        step_sequence: int,
        identities: Iterable[str],
    ) -> bool:
        """True if any of the identities approved or rejected this step,
        either directly or as the identity acted for.

        Not keyed by rule: a step keeps its sequence across escalation, so
        a vote cast before the escalation still counts against the actor.
        """
        ids = list(identities)
        found = self.session.execute(
            select(WorkflowActionModel.id)
            .where(
                WorkflowActionModel.workflow_id == workflow_id,
                WorkflowActionModel.step_sequence == step_sequence,
                WorkflowActionModel.action_type.in_(
                    [ActionType.APPROVE.value, ActionType.REJECT.value]
                ),
                or_(
                    WorkflowActionModel.actor_id.in_(ids),
                    WorkflowActionModel.original_actor_id.in_(ids),
                ),
            )
            .limit(1)
        ).first()
        return found is not None

    def delegations_on_step(
        self,
        workflow_id: UUID,
        step_sequence: int,
        rule_id: str,
    ) -> dict[str, str]:
        """Map of delegator -> delegate for the step, in ledger order."""
        rows = self.session.execute(
            select(WorkflowActionModel.actor_id, WorkflowActionModel.delegated_to_id)
            .where(
                WorkflowActionModel.workflow_id == workflow_id,
                WorkflowActionModel.step_sequence == step_sequence,
                WorkflowActionModel.rule_id == rule_id,
                WorkflowActionModel.action_type == ActionType.DELEGATE.value,
            )
            .order_by(WorkflowActionModel.ledger_sequence)
        ).all()
        return {delegator: delegate for delegator, delegate in rows}

    def find_overdue_candidate_ids(self, now: datetime, limit: int) -> list[UUID]:
        """Pending instances past due that have not been handled yet."""
        return list(
            self.session.execute(
                select(WorkflowInstanceModel.id)
                .where(
                    WorkflowInstanceModel.status == WorkflowStatus.PENDING.value,
                    WorkflowInstanceModel.is_overdue.is_(False),
                    WorkflowInstanceModel.due_at.is_not(None),
                    WorkflowInstanceModel.due_at < now,
                )
                .order_by(WorkflowInstanceModel.due_at)
                .limit(limit)
            ).scalars().all()
        )
