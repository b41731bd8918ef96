"""
workflow_services.workflow_orchestrator -- Workflow creation.

Responsibility:
    Start a workflow for a document: serialize on the document, refuse a
    second active workflow, resolve the approval path, allocate a workflow
    code, materialize the first step, and notify the host.

Architecture position:
    Services layer.  Thin coordinator -- routing lives in the path
    resolver, thresholds and naming in workflow_engines, persistence in
    WorkflowStore.

Invariants enforced:
    - At most one non-terminal workflow per document.  The per-document
      lock row serializes concurrent starts; the UNIQUE active key is the
      backstop.
    - ``approval_path`` and ``amount`` are fixed at creation.
    - A document with no applicable rule never gets a workflow.

Failure modes:
    - DuplicateWorkflowError: an active workflow already exists.
    - NoApprovalPathFoundError: no rule applies.
    - ApprovalRuleNotFoundError: the provider returned a rule it can no
      longer look up by id (never for a well-behaved provider).
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from workflow_config.schema import EngineSettings
from workflow_engines.approval import compute_due_at, required_approvals
from workflow_engines.naming import code_sequence_name, format_workflow_code, step_name
from workflow_engines.path import routing_attributes
from workflow_kernel.domain.approval import (
    DocumentRef,
    DocumentStatusSink,
    RuleProvider,
    StepDescriptor,
    WorkflowInstance,
)
from workflow_kernel.domain.clock import Clock, SystemClock
from workflow_kernel.exceptions import DuplicateWorkflowError, NoApprovalPathFoundError
from workflow_kernel.logging_config import LogContext, get_logger
from workflow_kernel.services.sequence_service import SequenceService
from workflow_kernel.services.workflow_store import WorkflowStore
from workflow_services.path_resolver import ApprovalPathResolver

logger = get_logger("services.workflow_orchestrator")


class WorkflowOrchestrator:
    """Creates workflow instances."""

    def __init__(
        self,
        session: Session,
        rule_provider: RuleProvider,
        *,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
        sink: DocumentStatusSink | None = None,
        resolver: ApprovalPathResolver | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._settings = settings or EngineSettings()
        self._sink = sink
        self._sequences = SequenceService(session)
        self._store = WorkflowStore(session, self._sequences)
        self._resolver = resolver or ApprovalPathResolver(
            rule_provider,
            clock=self._clock,
            default_timeout_days=self._settings.default_timeout_days,
        )

    def start(
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
        """
        Start a workflow for ``document``.

        Preconditions:
            - The caller holds an open transaction; it commits after this
              returns (the document lock is held until then).

        Postconditions:
            - A pending instance exists with ``steps_completed == 0`` and
              the first rule of the path current.
            - ``DocumentStatusSink.on_workflow_started`` was called once.

        Raises:
            DuplicateWorkflowError: The document already has an active workflow.
            NoApprovalPathFoundError: No rule applies to the document.
        """
        amount = Decimal(str(amount))
        now = self._clock.now()
        merged = routing_attributes(attributes)
        if created_by is not None:
            merged.setdefault("created_by", created_by)

        with LogContext.bind(document=document.key, actor_id=created_by):
            self._store.lock_document(document, now)

            existing = self._store.find_active_for_document(document)
            if existing is not None:
                logger.warning(
                    "workflow_duplicate_start_blocked",
                    extra={"existing_workflow_code": existing.workflow_code},
                )
                raise DuplicateWorkflowError(
                    document.document_type,
                    document.document_id,
                    existing.workflow_code,
                )

            rules = self._resolver.resolve_rules(
                document.document_type, amount, site_id, merged,
            )
            if not rules:
                logger.warning(
                    "approval_path_not_found",
                    extra={
                        "document_type": document.document_type,
                        "amount": amount,
                        "site_id": site_id,
                    },
                )
                raise NoApprovalPathFoundError(
                    document.document_type, str(amount), site_id,
                )

            first = rules[0]
            sequence_name = code_sequence_name(
                self._settings.workflow_code_prefix, document.document_type, now,
            )
            workflow_code = format_workflow_code(
                self._settings.workflow_code_prefix,
                document.document_type,
                now,
                self._sequences.next_value(sequence_name),
                self._settings.code_sequence_width,
            )

            instance = self._store.create_instance(
                workflow_code=workflow_code,
                document=document,
                amount=amount,
                site_id=site_id,
                approval_path=[rule.rule_id for rule in rules],
                first_rule_id=first.rule_id,
                first_approval_type=first.approval_type,
                first_step_name=step_name(first),
                approvals_required=required_approvals(first),
                started_at=now,
                due_at=compute_due_at(now, first, self._settings.default_timeout_days),
                created_by=created_by,
                notes=notes,
                routing_attributes=merged,
                metadata=metadata,
            )

            if self._sink is not None:
                self._sink.on_workflow_started(document, workflow_code)

            logger.info(
                "workflow_started",
                extra={
                    "workflow_id": str(instance.id),
                    "workflow_code": workflow_code,
                    "amount": amount,
                    "approval_path": [rule.rule_id for rule in rules],
                    "due_at": instance.due_at,
                },
            )
            return instance.to_dto()

    def preview(
        self,
        document_type: str,
        amount: Decimal | int | str,
        site_id: str | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> list[StepDescriptor]:
        """Describe the path a document would take.  Creates nothing."""
        return self._resolver.preview(
            document_type, Decimal(str(amount)), site_id, attributes,
        )
