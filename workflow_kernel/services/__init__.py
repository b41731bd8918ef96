"""Kernel services: write-side persistence for workflow instances."""

from workflow_kernel.services.base import BaseService
from workflow_kernel.services.sequence_service import SequenceService
from workflow_kernel.services.workflow_store import WorkflowStore

__all__ = [
    "BaseService",
    "SequenceService",
    "WorkflowStore",
]
