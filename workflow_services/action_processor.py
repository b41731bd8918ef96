"""
workflow_services.action_processor -- Votes, delegation, cancellation and
overdue handling for running workflows.

Responsibility:
    Validate and record every action on a workflow instance, apply the vote
    arithmetic, advance / complete / reject the workflow, and remedy
    overdue steps (escalate, auto-reject, or fail).

Architecture position:
    Services layer.  Thin coordinator -- thresholds, rejection policy and
    due dates come from workflow_engines; locking and the ledger come from
    WorkflowStore; per-step lookups from WorkflowSelector.

Invariants enforced:
    - Every mutating call loads the instance ``FOR UPDATE``; the
      duplicate-vote check, the ledger append and the counter increment
      happen inside that one critical section.
    - ``0 <= approvals_received <= approvals_required`` and
      ``steps_completed <= total_steps`` at every flush.
    - One approve/reject per identity per step, counting votes cast on
      someone's behalf against both identities.
    - Terminal workflows never change again.
    - Validation failures raise before anything is written.

Failure modes:
    - WorkflowNotFoundError, WorkflowNotPendingError.
    - UnauthorizedApproverError, DuplicateActionError,
      MissingRejectionReasonError, InvalidDelegationError.
    - ApprovalRuleNotFoundError when a rule on the path has been removed.
    - OptimisticLockError on a lost update (caller retries).
    - EscalationTargetMissingError, and a missing current rule found by
      overdue handling, are handled here: the workflow moves to ``failed``.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from workflow_config.schema import EngineSettings
from workflow_engines.approval import (
    compute_due_at,
    is_step_satisfied,
    rejection_is_terminal,
    required_approvals,
)
from workflow_engines.authorization import RuleMembershipAuthorizer
from workflow_engines.naming import step_name
from workflow_kernel.domain.approval import (
    ActionOutcome,
    ActionResult,
    ActionType,
    ActorAuthorizer,
    ActorDirectory,
    ApprovalRule,
    DocumentRef,
    DocumentStatusSink,
    RuleProvider,
    StepContext,
    WorkflowActionRecord,
    WorkflowInstance,
    WorkflowStatus,
)
from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.exceptions import (
    ApprovalRuleNotFoundError,
    DuplicateActionError,
    EscalationTargetMissingError,
    InvalidDelegationError,
    MissingRejectionReasonError,
    UnauthorizedApproverError,
    WorkflowNotFoundError,
    WorkflowNotPendingError,
)
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_kernel.models.workflow import WorkflowInstanceModel
from workflow_kernel.selectors.workflow_selector import WorkflowSelector
from workflow_kernel.services.workflow_store import WorkflowStore

logger = get_logger("services.action_processor")

DEFAULT_CANCEL_NOTE = "Workflow cancelled by user"
AUTO_REJECT_COMMENT = "Auto-rejected due to timeout"
ESCALATION_COMMENT = "Escalated due to timeout"


class ActionProcessor:
    """
    Applies actions to running workflows.

    Contract:
        Each public method runs inside the caller's transaction and only
        flushes.  Approve/reject return an ``ActionResult``; invalid calls
        raise typed ``WorkflowActionError`` / ``WorkflowStateError``
        subclasses without writing anything.
    """

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
        self._session = session
        self._rules = rule_provider
        self._clock = clock or SystemClock()
        self._settings = settings or EngineSettings()
        self._sink = sink
        self._authorizer = authorizer or RuleMembershipAuthorizer()
        self._directory = directory
        self._store = WorkflowStore(session)
        self._selector = WorkflowSelector(session)

    # =========================================================================
    # Votes
    # =========================================================================

    def approve(
        self,
        workflow_id: UUID,
        actor_id: str,
        *,
        comments: str | None = None,
        on_behalf_of: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ActionResult:
        """
        Record an approval on the current step.

        Returns COMPLETED when this vote satisfied the last step, otherwise
        CONTINUED (``advanced`` is True if it satisfied a middle step).
        """
        instance = self._store.lock_instance(workflow_id)
        with self._log_scope(instance, actor_id):
            rule, step = self._prepare_vote(instance, actor_id, on_behalf_of)
            now = self._clock.now()

            action = self._store.append_action(
                instance,
                ActionType.APPROVE,
                now,
                actor_id=actor_id,
                original_actor_id=on_behalf_of,
                comments=comments,
                metadata=metadata,
            )
            instance.approvals_received += 1
            self._log_vote(instance, ActionType.APPROVE, step, actor_id, on_behalf_of)

            if not is_step_satisfied(instance.approvals_received, instance.approvals_required):
                self._store.flush(instance)
                return self._result(instance, ActionOutcome.CONTINUED, action.id, step)

            if instance.steps_completed + 1 < instance.total_steps:
                self._advance(instance, now)
                self._store.flush(instance)
                return self._result(
                    instance, ActionOutcome.CONTINUED, action.id, step, advanced=True,
                )

            self._store.transition(instance, WorkflowStatus.COMPLETED, now)
            self._store.flush(instance)
            logger.info(
                "workflow_completed",
                extra={"total_steps": instance.total_steps, "completed_at": now},
            )
            self._notify("on_workflow_completed", instance)
            return self._result(instance, ActionOutcome.COMPLETED, action.id, step)

    def reject(
        self,
        workflow_id: UUID,
        actor_id: str,
        *,
        comments: str | None,
        on_behalf_of: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ActionResult:
        """
        Record a rejection on the current step.

        Under the veto policy any authorized rejection ends the workflow.
        Under the threshold policy the workflow ends only once the
        threshold can no longer be reached; until then CONTINUED.
        """
        if comments is None or not comments.strip():
            raise MissingRejectionReasonError(str(workflow_id))

        instance = self._store.lock_instance(workflow_id)
        with self._log_scope(instance, actor_id):
            rule, step = self._prepare_vote(instance, actor_id, on_behalf_of)
            now = self._clock.now()

            action = self._store.append_action(
                instance,
                ActionType.REJECT,
                now,
                actor_id=actor_id,
                original_actor_id=on_behalf_of,
                comments=comments,
                metadata=metadata,
            )
            instance.rejections_received += 1
            self._log_vote(instance, ActionType.REJECT, step, actor_id, on_behalf_of)

            terminal = rejection_is_terminal(
                self._settings.rejection_policy,
                pool_size=rule.pool_size,
                approvals_required=instance.approvals_required,
                rejections_received=instance.rejections_received,
            )
            if not terminal:
                self._store.flush(instance)
                return self._result(instance, ActionOutcome.CONTINUED, action.id, step)

            self._mark_rejected(instance, now, rejected_by=actor_id, reason=comments)
            self._store.flush(instance)
            logger.info(
                "workflow_rejected",
                extra={
                    "step_sequence": step,
                    "rule_id": rule.rule_id,
                    "rejection_policy": self._settings.rejection_policy.value,
                },
            )
            self._notify("on_workflow_rejected", instance)
            return self._result(instance, ActionOutcome.REJECTED, action.id, step)

    # =========================================================================
    # Delegation, comments, cancellation
    # =========================================================================

    def delegate(
        self,
        workflow_id: UUID,
        actor_id: str,
        *,
        delegate_to: str,
        comments: str | None = None,
    ) -> WorkflowActionRecord:
        """Hand the actor's vote on the current step to another identity."""
        instance = self._store.lock_instance(workflow_id)
        with self._log_scope(instance, actor_id):
            self._require_pending(instance)
            rule = self._current_rule(instance)
            step = instance.steps_completed + 1

            if delegate_to == actor_id:
                raise InvalidDelegationError(actor_id, delegate_to, "cannot delegate to self")
            if not self._authorizer.is_eligible(actor_id, rule, self._step_context(instance)):
                raise UnauthorizedApproverError(actor_id, rule.rule_id)
            if self._selector.has_voted_on_step(instance.id, step, [actor_id]):
                raise InvalidDelegationError(
                    actor_id, delegate_to, "already acted on this step",
                )
            delegations = self._selector.delegations_on_step(instance.id, step, rule.rule_id)
            if actor_id in delegations:
                raise InvalidDelegationError(
                    actor_id, delegate_to,
                    f"vote already delegated to {delegations[actor_id]}",
                )

            action = self._store.append_action(
                instance,
                ActionType.DELEGATE,
                self._clock.now(),
                actor_id=actor_id,
                delegated_to_id=delegate_to,
                comments=comments,
            )
            self._store.flush(instance)
            logger.info(
                "workflow_delegated",
                extra={"step_sequence": step, "delegated_to": delegate_to},
            )
            return action.to_dto()

    def comment(
        self,
        workflow_id: UUID,
        actor_id: str,
        *,
        comments: str,
    ) -> WorkflowActionRecord:
        """Append a comment to a pending workflow.  Counters are untouched."""
        instance = self._store.lock_instance(workflow_id)
        with self._log_scope(instance, actor_id):
            self._require_pending(instance)
            action = self._store.append_action(
                instance,
                ActionType.COMMENT,
                self._clock.now(),
                actor_id=actor_id,
                comments=comments,
            )
            self._store.flush(instance)
            logger.debug("workflow_comment_added")
            return action.to_dto()

    def cancel(
        self,
        workflow_id: UUID,
        actor_id: str | None,
        *,
        reason: str | None = None,
    ) -> WorkflowInstance:
        """Cancel a pending workflow."""
        instance = self._store.lock_instance(workflow_id)
        with self._log_scope(instance, actor_id):
            self._require_pending(instance)
            now = self._clock.now()
            self._store.transition(instance, WorkflowStatus.CANCELLED, now)
            instance.notes = reason or DEFAULT_CANCEL_NOTE
            self._store.flush(instance)
            logger.info("workflow_cancelled", extra={"reason": instance.notes})
            self._notify("on_workflow_cancelled", instance)
            return instance.to_dto()

    # =========================================================================
    # Overdue handling
    # =========================================================================

    def handle_overdue(self, workflow_id: UUID) -> bool:
        """
        Remedy an overdue workflow.

        Returns True when the workflow was escalated, auto-rejected or
        failed; False when it is not overdue, was already handled, or its
        rule has no timeout remedy.  Calling it twice in a row changes
        nothing the second time.
        """
        instance = self._store.lock_instance(workflow_id)
        with self._log_scope(instance, None):
            now = self._clock.now()
            if (
                instance.status != WorkflowStatus.PENDING.value
                or instance.is_overdue
                or instance.due_at is None
                or not now > instance.due_at
            ):
                return False

            instance.is_overdue = True
            try:
                rule = self._current_rule(instance)
            except ApprovalRuleNotFoundError as exc:
                self._fail(instance, now, exc)
                return True

            if rule.escalation_enabled:
                try:
                    target = self._escalation_target(rule)
                except EscalationTargetMissingError as exc:
                    self._fail(instance, now, exc)
                    return True
                self._escalate(instance, rule, target, now)
                return True

            if rule.auto_reject_on_timeout:
                self._store.append_action(
                    instance,
                    ActionType.REJECT,
                    now,
                    comments=AUTO_REJECT_COMMENT,
                    is_automatic=True,
                    is_overdue_action=True,
                    metadata={"auto_action": True, "reason": "timeout"},
                )
                self._mark_rejected(instance, now, rejected_by=None, reason=AUTO_REJECT_COMMENT)
                self._store.flush(instance)
                logger.info("workflow_auto_rejected", extra={"rule_id": rule.rule_id})
                self._notify("on_workflow_rejected", instance)
                return True

            self._store.flush(instance)
            logger.info(
                "workflow_overdue_unremedied",
                extra={"rule_id": rule.rule_id, "due_at": instance.due_at},
            )
            return False

    # =========================================================================
    # Queries
    # =========================================================================

    def get_history(self, workflow_id: UUID) -> list[WorkflowActionRecord]:
        """Action ledger of a workflow, newest first."""
        if self._selector.get_instance(workflow_id) is None:
            raise WorkflowNotFoundError(str(workflow_id))
        return self._selector.get_history(workflow_id, self._directory)

    def is_awaiting(self, workflow_id: UUID, actor_id: str) -> bool:
        """True if the actor could cast a vote on the current step right now."""
        instance = self._session.get(WorkflowInstanceModel, workflow_id)
        if instance is None or instance.status != WorkflowStatus.PENDING.value:
            return False
        rule = self._rules.get_rule(instance.current_rule_id)
        if rule is None:
            return False
        step = instance.steps_completed + 1
        context = self._step_context(instance)

        if self._authorizer.is_eligible(actor_id, rule, context):
            if not self._selector.has_voted_on_step(instance.id, step, [actor_id]):
                return True

        delegations = self._selector.delegations_on_step(instance.id, step, rule.rule_id)
        for delegator, delegate in delegations.items():
            if delegate != actor_id:
                continue
            if not self._authorizer.is_eligible(delegator, rule, context):
                continue
            if not self._selector.has_voted_on_step(
                instance.id, step, [delegator, actor_id],
            ):
                return True
        return False

    # =========================================================================
    # Internal
    # =========================================================================

    def _prepare_vote(
        self,
        instance: WorkflowInstanceModel,
        actor_id: str,
        on_behalf_of: str | None,
    ) -> tuple[ApprovalRule, int]:
        """Run every pre-write check for approve/reject."""
        self._require_pending(instance)
        rule = self._current_rule(instance)
        step = instance.steps_completed + 1
        context = self._step_context(instance)

        if on_behalf_of is None:
            if not self._authorizer.is_eligible(actor_id, rule, context):
                raise UnauthorizedApproverError(actor_id, rule.rule_id)
            identities = [actor_id]
        else:
            delegations = self._selector.delegations_on_step(instance.id, step, rule.rule_id)
            if delegations.get(on_behalf_of) != actor_id:
                raise UnauthorizedApproverError(
                    actor_id, rule.rule_id, f"no delegation from {on_behalf_of}",
                )
            if not self._authorizer.is_eligible(on_behalf_of, rule, context):
                raise UnauthorizedApproverError(
                    actor_id, rule.rule_id, f"{on_behalf_of} is not eligible",
                )
            identities = [actor_id, on_behalf_of]

        if self._selector.has_voted_on_step(instance.id, step, identities):
            logger.warning(
                "workflow_duplicate_vote_blocked",
                extra={"step_sequence": step, "on_behalf_of": on_behalf_of},
            )
            raise DuplicateActionError(str(instance.id), step, on_behalf_of or actor_id)
        return rule, step

    def _advance(self, instance: WorkflowInstanceModel, now: datetime) -> None:
        previous_rule_id = instance.current_rule_id
        instance.steps_completed += 1
        next_rule = self._rule_by_id(instance.approval_path[instance.steps_completed])
        self._store.assign_step(
            instance,
            rule_id=next_rule.rule_id,
            approval_type=next_rule.approval_type,
            step_name=step_name(next_rule),
            approvals_required=required_approvals(next_rule),
            due_at=compute_due_at(now, next_rule, self._settings.default_timeout_days),
        )
        logger.info(
            "workflow_step_advanced",
            extra={
                "from_rule_id": previous_rule_id,
                "to_rule_id": next_rule.rule_id,
                "steps_completed": instance.steps_completed,
                "total_steps": instance.total_steps,
            },
        )

    def _escalate(
        self,
        instance: WorkflowInstanceModel,
        rule: ApprovalRule,
        target: ApprovalRule,
        now: datetime,
    ) -> None:
        self._store.append_action(
            instance,
            ActionType.ESCALATE,
            now,
            comments=ESCALATION_COMMENT,
            is_automatic=True,
            is_overdue_action=True,
            metadata={"escalated_from": rule.rule_id, "escalated_to": target.rule_id},
        )
        self._store.assign_step(
            instance,
            rule_id=target.rule_id,
            approval_type=target.approval_type,
            step_name=step_name(target),
            approvals_required=required_approvals(target),
            due_at=compute_due_at(now, target, self._settings.default_timeout_days),
        )
        instance.is_escalated = True
        instance.escalated_at = now
        instance.escalation_reason = self._settings.escalation_reason
        self._store.flush(instance)
        logger.info(
            "workflow_escalated",
            extra={
                "from_rule_id": rule.rule_id,
                "to_rule_id": target.rule_id,
                "due_at": instance.due_at,
            },
        )

    def _fail(
        self,
        instance: WorkflowInstanceModel,
        now: datetime,
        exc: EscalationTargetMissingError | ApprovalRuleNotFoundError,
    ) -> None:
        self._store.transition(instance, WorkflowStatus.FAILED, now)
        instance.failure_reason = str(exc)
        self._store.flush(instance)
        logger.error(
            "workflow_failed",
            exc_info=exc,
            extra={
                "rule_id": exc.rule_id,
                "target_rule_id": getattr(exc, "target_rule_id", None),
            },
        )
        self._notify("on_workflow_failed", instance)

    def _mark_rejected(
        self,
        instance: WorkflowInstanceModel,
        now: datetime,
        *,
        rejected_by: str | None,
        reason: str,
    ) -> None:
        self._store.transition(instance, WorkflowStatus.REJECTED, now)
        instance.rejected_at = now
        instance.rejected_by = rejected_by
        instance.rejection_reason = reason

    def _escalation_target(self, rule: ApprovalRule) -> ApprovalRule:
        target = None
        if rule.escalation_rule_id is not None:
            target = self._rules.get_rule(rule.escalation_rule_id)
        if target is None:
            raise EscalationTargetMissingError(rule.rule_id, rule.escalation_rule_id)
        return target

    def _current_rule(self, instance: WorkflowInstanceModel) -> ApprovalRule:
        return self._rule_by_id(instance.current_rule_id)

    def _rule_by_id(self, rule_id: str) -> ApprovalRule:
        rule = self._rules.get_rule(rule_id)
        if rule is None:
            raise ApprovalRuleNotFoundError(rule_id)
        return rule

    @staticmethod
    def _require_pending(instance: WorkflowInstanceModel) -> None:
        if instance.status != WorkflowStatus.PENDING.value:
            raise WorkflowNotPendingError(str(instance.id), instance.status)

    @staticmethod
    def _step_context(instance: WorkflowInstanceModel) -> StepContext:
        return StepContext(
            workflow_id=instance.id,
            workflow_code=instance.workflow_code,
            document=DocumentRef(instance.document_type, instance.document_id),
            step_sequence=instance.steps_completed + 1,
            amount=instance.amount,
            site_id=instance.site_id,
            routing_attributes=dict(instance.routing_attributes or {}),
        )

    def _notify(self, hook: str, instance: WorkflowInstanceModel) -> None:
        if self._sink is None:
            return
        document = DocumentRef(instance.document_type, instance.document_id)
        getattr(self._sink, hook)(document, instance.workflow_code)

    @staticmethod
    def _log_scope(instance: WorkflowInstanceModel, actor_id: str | None):
        return LogContext.bind(
            workflow_id=str(instance.id),
            workflow_code=instance.workflow_code,
            document=f"{instance.document_type}:{instance.document_id}",
            actor_id=actor_id,
        )

    @staticmethod
    def _log_vote(
        instance: WorkflowInstanceModel,
        action_type: ActionType,
        step: int,
        actor_id: str,
        on_behalf_of: str | None,
    ) -> None:
        logger.info(
            "workflow_vote_recorded",
            extra={
                "action_type": action_type.value,
                "step_sequence": step,
                "on_behalf_of": on_behalf_of,
                "approvals_received": instance.approvals_received,
                "approvals_required": instance.approvals_required,
                "rejections_received": instance.rejections_received,
            },
        )

    @staticmethod
    def _result(
        instance: WorkflowInstanceModel,
        outcome: ActionOutcome,
        action_id: UUID,
        step: int,
        *,
        advanced: bool = False,
    ) -> ActionResult:
        return ActionResult(
            outcome=outcome,
            workflow_id=instance.id,
            status=WorkflowStatus(instance.status),
            step_sequence=step,
            steps_completed=instance.steps_completed,
            approvals_received=instance.approvals_received,
            approvals_required=instance.approvals_required,
            advanced=advanced,
            action_id=action_id,
        )
