"""
Tests for OverdueSweep.

The sweep owns its transactions, so these tests use the committing
``session_factory`` fixture and never the rolled-back ``session``.

Covers:
- One run remedying a mix of overdue workflows
- Repeated runs being no-ops
- Batch size limits
- Conflicts or broken workflows not aborting the batch
"""

import pytest

from workflow_config.schema import EngineSettings
from workflow_kernel.domain.approval import DocumentRef, WorkflowStatus
from workflow_kernel.exceptions import ApprovalRuleNotFoundError, OptimisticLockError
from workflow_services.action_processor import ActionProcessor
from workflow_services.engine import ApprovalWorkflowEngine
from workflow_services.overdue_sweep import OverdueSweep


@pytest.fixture
def start_committed(session_factory, po_catalog, deterministic_clock):
    """Start (and optionally vote on) a workflow in its own committed transaction."""

    def _start(document_id, amount, approvers=(), catalog=None):
        with session_factory() as s:
            engine = ApprovalWorkflowEngine(s, catalog or po_catalog, clock=deterministic_clock)
            instance = engine.start_workflow(
                DocumentRef("purchase_order", document_id), amount=amount,
            )
            for actor in approvers:
                engine.approve(instance.workflow_id, actor)
            s.commit()
        return instance.workflow_id

    return _start


@pytest.fixture
def load(session_factory, po_catalog, deterministic_clock):
    def _load(workflow_id, catalog=None):
        with session_factory() as s:
            engine = ApprovalWorkflowEngine(s, catalog or po_catalog, clock=deterministic_clock)
            return engine.get_workflow(workflow_id)

    return _load


@pytest.fixture
def make_sweep(session_factory, po_catalog, deterministic_clock, sink):
    def _make(catalog=None, **overrides):
        kwargs = {
            "session_factory": session_factory,
            "clock": deterministic_clock,
            "sink": sink,
        }
        kwargs.update(overrides)
        return OverdueSweep(catalog or po_catalog, **kwargs)

    return _make


class TestSweepRun:

    def test_remedies_each_kind(self, start_committed, load, make_sweep, deterministic_clock, sink):
        escalates = start_committed(1, "15000", approvers=["u-manager"])
        auto_rejects = start_committed(2, "30000", approvers=["u-manager", "u-fin-1", "u-fin-2"])
        no_remedy = start_committed(3, "500")
        deterministic_clock.advance(0, days=6)
        not_due = start_committed(4, "500")
        deterministic_clock.advance(0, days=2)

        report = make_sweep().run()

        assert report.started_at == deterministic_clock.now()
        assert report.checked == 3
        assert report.escalated == 1
        assert report.auto_rejected == 1
        assert report.failed == 0
        assert report.unremedied == 1
        assert report.conflicts == 0
        assert report.remedied == 2

        assert load(escalates).current_rule_id == "PO-ESC"
        assert load(auto_rejects).status == WorkflowStatus.REJECTED
        assert load(no_remedy).is_overdue
        assert not load(not_due).is_overdue
        assert ("rejected", DocumentRef("purchase_order", 2)) in [
            (name, document) for name, document, _ in sink.events
        ]

    def test_second_run_is_noop(self, start_committed, make_sweep, deterministic_clock):
        start_committed(1, "15000", approvers=["u-manager"])
        start_committed(2, "500")
        deterministic_clock.advance(0, days=6)

        first = make_sweep().run()
        second = make_sweep().run()

        assert first.checked == 2
        assert second.checked == 0
        assert second.remedied == 0

    def test_missing_target_counted_as_failed(
        self, start_committed, load, make_sweep, make_rule, make_catalog, deterministic_clock,
    ):
        catalog = make_catalog(
            make_rule("A", escalation_enabled=True, escalation_rule_id="GONE", timeout_days=1),
        )
        workflow_id = start_committed(1, "5", catalog=catalog)
        deterministic_clock.advance(0, days=2)

        report = make_sweep(catalog).run()

        assert report.failed == 1
        assert load(workflow_id, catalog).status == WorkflowStatus.FAILED

    def test_nothing_overdue(self, start_committed, make_sweep):
        start_committed(1, "500")
        report = make_sweep().run()
        assert report.checked == 0

    def test_completion_logged(self, start_committed, make_sweep, deterministic_clock, captured_logs):
        start_committed(1, "500")
        deterministic_clock.advance(0, days=4)
        make_sweep().run()

        record = next(r for r in captured_logs() if r["message"] == "overdue_sweep_completed")
        assert record["checked"] == 1
        assert record["unremedied"] == 1
        assert record["trace_id"].startswith("overdue-sweep-")


class TestBatching:

    def test_batch_size_limits_each_run(self, start_committed, make_sweep, deterministic_clock):
        for document_id in (1, 2, 3):
            start_committed(document_id, "500")
        deterministic_clock.advance(0, days=4)
        sweep = make_sweep(settings=EngineSettings(sweep_batch_size=2))

        assert sweep.run().checked == 2
        assert sweep.run().checked == 1
        assert sweep.run().checked == 0


class TestConflicts:

    def test_conflict_does_not_abort_batch(
        self, start_committed, load, make_sweep, deterministic_clock, monkeypatch,
    ):
        contested = start_committed(1, "15000", approvers=["u-manager"])
        other = start_committed(2, "15000", approvers=["u-manager"])
        deterministic_clock.advance(0, days=6)

        original = ActionProcessor.handle_overdue

        def _handle(self, workflow_id):
            if workflow_id == contested:
                raise OptimisticLockError("WorkflowInstance", str(workflow_id))
            return original(self, workflow_id)

        monkeypatch.setattr(ActionProcessor, "handle_overdue", _handle)
        report = make_sweep().run()

        assert report.conflicts == 1
        assert report.escalated == 1
        assert load(contested).current_rule_id == "PO-L2"
        assert load(other).current_rule_id == "PO-ESC"

    def test_contested_workflow_picked_up_next_run(
        self, start_committed, load, make_sweep, deterministic_clock, monkeypatch,
    ):
        contested = start_committed(1, "15000", approvers=["u-manager"])
        deterministic_clock.advance(0, days=6)
        original = ActionProcessor.handle_overdue

        def _conflict(self, workflow_id):
            raise OptimisticLockError("WorkflowInstance", str(workflow_id))

        monkeypatch.setattr(ActionProcessor, "handle_overdue", _conflict)
        assert make_sweep().run().conflicts == 1

        monkeypatch.setattr(ActionProcessor, "handle_overdue", original)
        assert make_sweep().run().escalated == 1
        assert load(contested).is_escalated

    def test_unexpected_error_propagates(self, start_committed, make_sweep, deterministic_clock, monkeypatch):
        start_committed(1, "500")
        deterministic_clock.advance(0, days=4)

        def _boom(self, workflow_id):
            raise RuntimeError("database gone")

        monkeypatch.setattr(ActionProcessor, "handle_overdue", _boom)
        with pytest.raises(RuntimeError, match="database gone"):
            make_sweep().run()


class TestBrokenWorkflows:

    def test_removed_rule_does_not_stall_batch(
        self, start_committed, load, make_sweep, make_rule, make_catalog, deterministic_clock,
    ):
        orphaned = start_committed(1, "5", catalog=make_catalog(make_rule("GONE")))
        escalates = start_committed(2, "15000", approvers=["u-manager"])
        deterministic_clock.advance(0, days=6)

        report = make_sweep().run()

        assert report.checked == 2
        assert report.failed == 1
        assert report.escalated == 1
        assert load(orphaned).status == WorkflowStatus.FAILED
        assert "GONE" in load(orphaned).failure_reason
        assert load(escalates).current_rule_id == "PO-ESC"
        assert make_sweep().run().checked == 0

    def test_kernel_error_counted_and_batch_continues(
        self, start_committed, load, make_sweep, deterministic_clock, monkeypatch, captured_logs,
    ):
        broken = start_committed(1, "15000", approvers=["u-manager"])
        other = start_committed(2, "15000", approvers=["u-manager"])
        deterministic_clock.advance(0, days=6)
        original = ActionProcessor.handle_overdue

        def _handle(self, workflow_id):
            if workflow_id == broken:
                raise ApprovalRuleNotFoundError("PO-L2")
            return original(self, workflow_id)

        monkeypatch.setattr(ActionProcessor, "handle_overdue", _handle)
        report = make_sweep().run()

        assert report.failed == 1
        assert report.escalated == 1
        assert load(broken).status == WorkflowStatus.PENDING
        assert load(other).current_rule_id == "PO-ESC"

        record = next(r for r in captured_logs() if r["message"] == "overdue_sweep_item_failed")
        assert record["level"] == "ERROR"
        assert record["exc_code"] == "APPROVAL_RULE_NOT_FOUND"
        assert record["workflow_id"] == str(broken)
