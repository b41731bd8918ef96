"""ORM models for the workflow kernel."""

from workflow_kernel.models.sequence import SequenceCounter
from workflow_kernel.models.workflow import (
    WorkflowActionModel,
    WorkflowDocumentLock,
    WorkflowInstanceModel,
)

__all__ = [
    "SequenceCounter",
    "WorkflowActionModel",
    "WorkflowDocumentLock",
    "WorkflowInstanceModel",
]
