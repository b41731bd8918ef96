"""
workflow_services -- orchestration layer of the approval workflow engine.

Composes the pure engines and the kernel's persistence into the operations
a host calls.  ``ApprovalWorkflowEngine`` is the usual entry point;
``OverdueSweep`` is the scheduled batch.
"""

from workflow_services.action_processor import ActionProcessor
from workflow_services.engine import ApprovalWorkflowEngine
from workflow_services.overdue_sweep import OverdueSweep, SweepReport
from workflow_services.path_resolver import ApprovalPathResolver
from workflow_services.workflow_orchestrator import WorkflowOrchestrator

__all__ = [
    "ActionProcessor",
    "ApprovalPathResolver",
    "ApprovalWorkflowEngine",
    "OverdueSweep",
    "SweepReport",
    "WorkflowOrchestrator",
]
