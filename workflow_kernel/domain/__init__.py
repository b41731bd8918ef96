"""
Pure domain layer.

This module contains pure data transfer objects and protocols
with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

All domain objects are immutable and deterministic.
"""

from workflow_kernel.domain.approval import (
    TERMINAL_WORKFLOW_STATUSES,
    VOTING_ACTIONS,
    WORKFLOW_TRANSITIONS,
    ActionOutcome,
    ActionResult,
    ActionType,
    ActorAuthorizer,
    ActorDirectory,
    ApprovalRule,
    ApprovalType,
    DocumentRef,
    DocumentStatusSink,
    RejectionPolicy,
    RuleProvider,
    StepContext,
    StepDescriptor,
    WorkflowActionRecord,
    WorkflowInstance,
    WorkflowStatus,
)
from workflow_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = [
    "ActionOutcome",
    "ActionResult",
    "ActionType",
    "ActorAuthorizer",
    "ActorDirectory",
    "ApprovalRule",
    "ApprovalType",
    "Clock",
    "DeterministicClock",
    "DocumentRef",
    "DocumentStatusSink",
    "RejectionPolicy",
    "RuleProvider",
    "StepContext",
    "StepDescriptor",
    "SystemClock",
    "TERMINAL_WORKFLOW_STATUSES",
    "VOTING_ACTIONS",
    "WORKFLOW_TRANSITIONS",
    "WorkflowActionRecord",
    "WorkflowInstance",
    "WorkflowStatus",
]
