"""
workflow_services.engine -- Host-facing approval workflow facade.

Responsibility:
    One object a host composes per session: starting workflows, previews,
    votes, delegation, comments, cancellation, overdue handling and
    queries.  Vote-type validation failures come back as typed
    ``ActionResult`` errors instead of exceptions.

Architecture position:
    Services layer -- outermost surface.  Composes ApprovalPathResolver,
    WorkflowOrchestrator, ActionProcessor and WorkflowSelector over one
    SQLAlchemy session.  The host owns the transaction.

Usage:
    with session_scope() as session:
        engine = ApprovalWorkflowEngine(session, catalog, sink=my_sink)
        instance = engine.start_workflow(DocumentRef("purchase_order", 42),
                                         amount=Decimal("30000"))
        result = engine.approve(instance.workflow_id, "u-manager")
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from workflow_config.schema import EngineSettings
from workflow_engines.approval import is_overdue, progress_percentage, progress_status
from workflow_kernel.domain.approval import (
    ActionOutcome,
    ActionResult,
    ActorAuthorizer,
    ActorDirectory,
    DocumentRef,
    DocumentStatusSink,
    RuleProvider,
    StepDescriptor,
    WorkflowActionRecord,
    WorkflowInstance,
)
from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.exceptions import (
    WorkflowActionError,
    WorkflowNotFoundError,
    WorkflowNotPendingError,
)
from workflow_kernel.logging_config import get_logger
from workflow_kernel.selectors.workflow_selector import WorkflowSelector
from workflow_services.action_processor import ActionProcessor
from workflow_services.path_resolver import ApprovalPathResolver
from workflow_services.workflow_orchestrator import WorkflowOrchestrator

logger = get_logger("services.engine")


class ApprovalWorkflowEngine:
    """Facade over the workflow services for one session."""

    def __init__(
        self,
        session: Session,
        rule_provider: RuleProvider,
        *,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
        sink: DocumentStatusSink | None = None,
        authorizer: ActorAuthorizer | None = None,
        directory: ActorDirectory | None = None,
    ):
        self._clock = clock or SystemClock()
        self._settings = settings or EngineSettings()
        self._resolver = ApprovalPathResolver(
            rule_provider,
            clock=self._clock,
            default_timeout_days=self._settings.default_timeout_days,
        )
        self._orchestrator = WorkflowOrchestrator(
            session,
            rule_provider,
            clock=self._clock,
            settings=self._settings,
            sink=sink,
            resolver=self._resolver,
        )
        self._processor = ActionProcessor(
            session,
            rule_provider,
            clock=self._clock,
            settings=self._settings,
            sink=sink,
            authorizer=authorizer,
            directory=directory,
        )
        self._selector = WorkflowSelector(session)

    # -- creation -----------------------------------------------------------

    def start_workflow(
        self,
        document: DocumentRef,
        *,
        amount: Decimal | int | str,
        site_id: str | None = None,
        attributes: Mapping[str, Any] | None = None,
        notes: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        created_by: str | None = None,
    ) -> WorkflowInstance:
        """Start a workflow.  Raises NoApprovalPathFoundError / DuplicateWorkflowError."""
        return self._orchestrator.start(
            document,
            amount=amount,
            site_id=site_id,
            attributes=attributes,
            notes=notes,
            metadata=metadata,
            created_by=created_by,
        )

    def preview_workflow(
        self,
        document_type: str,
        amount: Decimal | int | str,
        site_id: str | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> list[StepDescriptor]:
        return self._orchestrator.preview(document_type, amount, site_id, attributes)

    # -- votes --------------------------------------------------------------

    def approve(
        self,
        workflow_id: UUID,
        actor_id: str,
        *,
        comments: str | None = None,
        on_behalf_of: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ActionResult:
        try:
            return self._processor.approve(
                workflow_id,
                actor_id,
                comments=comments,
                on_behalf_of=on_behalf_of,
                metadata=metadata,
            )
        except (WorkflowActionError, WorkflowNotPendingError) as exc:
            return self._error_result(workflow_id, actor_id, "approve", exc)

    def reject(
        self,
        workflow_id: UUID,
        actor_id: str,
        *,
        comments: str | None,
        on_behalf_of: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ActionResult:
        try:
            return self._processor.reject(
                workflow_id,
                actor_id,
                comments=comments,
                on_behalf_of=on_behalf_of,
                metadata=metadata,
            )
        except (WorkflowActionError, WorkflowNotPendingError) as exc:
            return self._error_result(workflow_id, actor_id, "reject", exc)

    def delegate(
        self,
        workflow_id: UUID,
        actor_id: str,
        *,
        delegate_to: str,
        comments: str | None = None,
    ) -> WorkflowActionRecord:
        return self._processor.delegate(
            workflow_id, actor_id, delegate_to=delegate_to, comments=comments,
        )

    def comment(self, workflow_id: UUID, actor_id: str, *, comments: str) -> WorkflowActionRecord:
        return self._processor.comment(workflow_id, actor_id, comments=comments)

    def cancel(
        self,
        workflow_id: UUID,
        actor_id: str | None,
        *,
        reason: str | None = None,
    ) -> WorkflowInstance:
        return self._processor.cancel(workflow_id, actor_id, reason=reason)

    # -- overdue ------------------------------------------------------------

    def is_overdue(self, workflow_id: UUID) -> bool:
        return is_overdue(self.get_workflow(workflow_id), self._clock.now())

    def handle_overdue(self, workflow_id: UUID) -> bool:
        return self._processor.handle_overdue(workflow_id)

    # -- queries ------------------------------------------------------------

    def get_workflow(self, workflow_id: UUID) -> WorkflowInstance:
        instance = self._selector.get_instance(workflow_id)
        if instance is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return instance

    def get_active_workflow(self, document: DocumentRef) -> WorkflowInstance | None:
        return self._selector.get_active_for_document(document)

    def get_history(self, workflow_id: UUID) -> list[WorkflowActionRecord]:
        return self._processor.get_history(workflow_id)

    def is_awaiting(self, workflow_id: UUID, actor_id: str) -> bool:
        return self._processor.is_awaiting(workflow_id, actor_id)

    def get_progress(self, workflow_id: UUID) -> tuple[Decimal, str]:
        """(percentage of steps completed, progress label)."""
        instance = self.get_workflow(workflow_id)
        return (
            progress_percentage(instance.steps_completed, instance.total_steps),
            progress_status(instance),
        )

    # -- internal -----------------------------------------------------------

    @staticmethod
    def _error_result(
        workflow_id: UUID,
        actor_id: str,
        action: str,
        exc: WorkflowActionError | WorkflowNotPendingError,
    ) -> ActionResult:
        logger.warning(
            "workflow_action_refused",
            extra={
                "workflow_id": str(workflow_id),
                "actor_id": actor_id,
                "action": action,
                "error_code": exc.code,
                "reason": str(exc),
            },
        )
        return ActionResult(
            outcome=ActionOutcome.ERROR,
            workflow_id=workflow_id,
            error_code=exc.code,
            reason=str(exc),
        )
