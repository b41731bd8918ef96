"""
Typed Exception Hierarchy for the Workflow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Approval decisions are business-critical. Callers must be able to react to
"you already voted" differently from "you may not vote here" without parsing
message strings:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - WRONG way to handle errors:
    try:
        processor.approve(workflow_id, actor_id)
    except Exception as e:
        if "already" in str(e):  # FRAGILE - message might change
            ...

Example - RIGHT way:
    try:
        processor.approve(workflow_id, actor_id)
    except DuplicateActionError as e:
        api_response(code=e.code, step=e.step_sequence)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from WorkflowKernelError:

    WorkflowKernelError (base)
    |
    +-- PathError
    |   +-- NoApprovalPathFoundError
    |   +-- ApprovalRuleNotFoundError
    |
    +-- WorkflowStateError
    |   +-- WorkflowNotFoundError
    |   +-- DuplicateWorkflowError
    |   +-- WorkflowNotPendingError
    |
    +-- WorkflowActionError
    |   +-- UnauthorizedApproverError
    |   +-- DuplicateActionError
    |   +-- MissingRejectionReasonError
    |   +-- InvalidDelegationError
    |
    +-- EscalationError
    |   +-- EscalationTargetMissingError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                       | When Raised
-------------|----------------------------|-------------------------------------
Path         | NO_APPROVAL_PATH           | No rule matches the document
             | APPROVAL_RULE_NOT_FOUND    | Rule id in a path no longer exists
-------------|----------------------------|-------------------------------------
State        | WORKFLOW_NOT_FOUND         | Workflow id doesn't exist
             | DUPLICATE_WORKFLOW         | Document already has an active workflow
             | WORKFLOW_NOT_PENDING       | Action on a terminal workflow
-------------|----------------------------|-------------------------------------
Action       | UNAUTHORIZED_APPROVER      | Actor not eligible for current step
             | DUPLICATE_ACTION           | Actor already voted on this step
             | MISSING_REJECTION_REASON   | Reject without comments
             | INVALID_DELEGATION         | Delegating to self / after voting
-------------|----------------------------|-------------------------------------
Escalation   | ESCALATION_TARGET_MISSING  | Escalation rule missing (-> failed)
-------------|----------------------------|-------------------------------------
Concurrency  | OPTIMISTIC_LOCK_CONFLICT   | Concurrent modification detected
-------------|----------------------------|-------------------------------------
Immutability | IMMUTABILITY_VIOLATION     | Modifying an action ledger row

===============================================================================
HANDLING PATTERNS
===============================================================================

1. ACTION ERRORS ARE CALLER ERRORS (no state was touched):

    except WorkflowActionError as e:
        return {"error": e.code, "message": str(e)}

2. CONCURRENCY ERRORS ARE RETRIED AT THE TRANSACTION BOUNDARY:

    except ConcurrencyError:
        session.rollback()
        retry()

3. ESCALATION ERRORS NEED AN OPERATOR:

    EscalationTargetMissingError never reaches callers of handle_overdue;
    the workflow moves to ``failed`` and the error is logged with its code.
"""


class WorkflowKernelError(Exception):
    """
    Base exception for all workflow kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "WORKFLOW_KERNEL_ERROR"


# Path-related exceptions


class PathError(WorkflowKernelError):
    """Base exception for approval-path resolution errors."""

    code: str = "PATH_ERROR"


class NoApprovalPathFoundError(PathError):
    """No approval rule applies to the document -- it can never be approved."""

    code: str = "NO_APPROVAL_PATH"

    def __init__(self, document_type: str, amount: str, site_id: str | None):
        self.document_type = document_type
        self.amount = amount
        self.site_id = site_id
        super().__init__(
            f"No approval path found for {document_type} "
            f"with amount {amount} (site={site_id})"
        )


class ApprovalRuleNotFoundError(PathError):
    """A rule referenced by a workflow is missing from the rule provider."""

    code: str = "APPROVAL_RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Approval rule not found: {rule_id}")


# Workflow state exceptions


class WorkflowStateError(WorkflowKernelError):
    """Base exception for workflow lifecycle errors."""

    code: str = "WORKFLOW_STATE_ERROR"


class WorkflowNotFoundError(WorkflowStateError):
    """Workflow instance with given ID was not found."""

    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class DuplicateWorkflowError(WorkflowStateError):
    """An active workflow already exists for the document."""

    code: str = "DUPLICATE_WORKFLOW"

    def __init__(
        self,
        document_type: str,
        document_id: int,
        existing_code: str | None = None,
    ):
        self.document_type = document_type
        self.document_id = document_id
        self.existing_code = existing_code
        suffix = f" ({existing_code})" if existing_code else ""
        super().__init__(
            f"Active workflow already exists for "
            f"{document_type}:{document_id}{suffix}"
        )


class WorkflowNotPendingError(WorkflowStateError):
    """Action attempted on a workflow in a terminal status."""

    code: str = "WORKFLOW_NOT_PENDING"

    def __init__(self, workflow_id: str, status: str):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(
            f"Workflow {workflow_id} is not pending (status={status})"
        )


# Action exceptions -- validation/authorization, never mutate state


class WorkflowActionError(WorkflowKernelError):
    """Base exception for rejected approve/reject/delegate/comment calls."""

    code: str = "WORKFLOW_ACTION_ERROR"


class UnauthorizedApproverError(WorkflowActionError):
    """Actor is not eligible to act on the current step."""

    code: str = "UNAUTHORIZED_APPROVER"

    def __init__(self, actor_id: str, rule_id: str, reason: str = ""):
        self.actor_id = actor_id
        self.rule_id = rule_id
        self.reason = reason
        message = f"Actor {actor_id} is not authorized for rule {rule_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DuplicateActionError(WorkflowActionError):
    """Actor already approved or rejected the current step."""

    code: str = "DUPLICATE_ACTION"

    def __init__(self, workflow_id: str, step_sequence: int, actor_id: str):
        self.workflow_id = workflow_id
        self.step_sequence = step_sequence
        self.actor_id = actor_id
        super().__init__(
            f"Actor {actor_id} has already acted on step {step_sequence} "
            f"of workflow {workflow_id}"
        )


class MissingRejectionReasonError(WorkflowActionError):
    """Reject called without comments."""

    code: str = "MISSING_REJECTION_REASON"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(
            f"A rejection reason is required to reject workflow {workflow_id}"
        )


class InvalidDelegationError(WorkflowActionError):
    """Delegation request cannot be honoured."""

    code: str = "INVALID_DELEGATION"

    def __init__(self, actor_id: str, delegate_to: str, reason: str):
        self.actor_id = actor_id
        self.delegate_to = delegate_to
        self.reason = reason
        super().__init__(
            f"Actor {actor_id} cannot delegate to {delegate_to}: {reason}"
        )


# Escalation exceptions


class EscalationError(WorkflowKernelError):
    """Base exception for overdue-handling errors."""

    code: str = "ESCALATION_ERROR"


class EscalationTargetMissingError(EscalationError):
    """
    Escalation is enabled on a rule but its target rule does not exist.

    The workflow is moved to ``failed`` and needs administrative correction.
    """

    code: str = "ESCALATION_TARGET_MISSING"

    def __init__(self, rule_id: str, target_rule_id: str | None):
        self.rule_id = rule_id
        self.target_rule_id = target_rule_id
        super().__init__(
            f"Escalation target {target_rule_id!r} for rule {rule_id} "
            "does not exist"
        )


# Concurrency-related exceptions


class ConcurrencyError(WorkflowKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability-related exceptions


class ImmutabilityError(WorkflowKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
