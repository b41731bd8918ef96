"""Read-only selectors for workflow state."""

from workflow_kernel.selectors.base import BaseSelector
from workflow_kernel.selectors.workflow_selector import WorkflowSelector

__all__ = [
    "BaseSelector",
    "WorkflowSelector",
]
