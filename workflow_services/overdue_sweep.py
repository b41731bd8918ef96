"""
workflow_services.overdue_sweep -- Periodic overdue remediation.

Responsibility:
    Find pending workflows whose step is past due and not yet handled, and
    run ``ActionProcessor.handle_overdue`` on each in its own transaction.

Architecture position:
    Services layer.  Owns its transactions (one per workflow) through a
    session factory, unlike the other services which run inside the
    caller's transaction.

Invariants enforced:
    - Idempotent: the ``is_overdue`` guard is re-checked under the row lock,
      so overlapping or repeated sweeps remedy each workflow once.
    - A conflict or kernel error on one workflow never aborts the rest of
      the batch.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from workflow_config.schema import EngineSettings
from workflow_kernel.db.engine import get_session_factory
from workflow_kernel.domain.approval import (
    ActorAuthorizer,
    DocumentStatusSink,
    RuleProvider,
    WorkflowStatus,
)
from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.exceptions import ConcurrencyError, WorkflowKernelError
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_kernel.selectors.workflow_selector import WorkflowSelector
from workflow_services.action_processor import ActionProcessor

logger = get_logger("services.overdue_sweep")


@dataclass
class SweepReport:
    """Counts of what one sweep run did."""

    started_at: datetime
    checked: int = 0
    escalated: int = 0
    auto_rejected: int = 0
    failed: int = 0
    unremedied: int = 0
    conflicts: int = 0

    @property
    def remedied(self) -> int:
        return self.escalated + self.auto_rejected + self.failed


class OverdueSweep:
    """Applies overdue handling to every overdue workflow, one transaction each."""

    def __init__(
        self,
        rule_provider: RuleProvider,
        *,
        session_factory: Callable[[], Session] | None = None,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
        sink: DocumentStatusSink | None = None,
        authorizer: ActorAuthorizer | None = None,
    ):
        self._rules = rule_provider
        self._session_factory = session_factory or get_session_factory()
        self._clock = clock or SystemClock()
        self._settings = settings or EngineSettings()
        self._sink = sink
        self._authorizer = authorizer

    def run(self) -> SweepReport:
        """Run one batch of at most ``sweep_batch_size`` workflows."""
        now = self._clock.now()
        report = SweepReport(started_at=now)

        session = self._session_factory()
        try:
            candidate_ids = WorkflowSelector(session).find_overdue_candidate_ids(
                now, self._settings.sweep_batch_size,
            )
        finally:
            session.close()

        with LogContext.bind(trace_id=f"overdue-sweep-{now.isoformat()}"):
            for workflow_id in candidate_ids:
                report.checked += 1
                self._handle_one(workflow_id, report)

            logger.info(
                "overdue_sweep_completed",
                extra={
                    "checked": report.checked,
                    "escalated": report.escalated,
                    "auto_rejected": report.auto_rejected,
                    "failed": report.failed,
                    "unremedied": report.unremedied,
                    "conflicts": report.conflicts,
                },
            )
        return report

    def _handle_one(self, workflow_id: UUID, report: SweepReport) -> None:
        session = self._session_factory()
        try:
            processor = ActionProcessor(
                session,
                self._rules,
                clock=self._clock,
                settings=self._settings,
                sink=self._sink,
                authorizer=self._authorizer,
            )
            remedied = processor.handle_overdue(workflow_id)
            instance = WorkflowSelector(session).get_instance(workflow_id)
            session.commit()
        except ConcurrencyError as exc:
            session.rollback()
            report.conflicts += 1
            logger.warning(
                "overdue_sweep_conflict",
                exc_info=exc,
                extra={"workflow_id": str(workflow_id)},
            )
            return
        except WorkflowKernelError as exc:
            session.rollback()
            report.failed += 1
            logger.error(
                "overdue_sweep_item_failed",
                exc_info=exc,
                extra={"workflow_id": str(workflow_id)},
            )
            return
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if not remedied or instance is None:
            report.unremedied += 1
        elif instance.status == WorkflowStatus.FAILED:
            report.failed += 1
        elif instance.status == WorkflowStatus.REJECTED:
            report.auto_rejected += 1
        else:
            report.escalated += 1
