"""
Tests for votes on running workflows (ActionProcessor).

Covers:
- Single approver completion
- Quorum 3-of-5 and majority-of-5 progressions, with and without a next step
- Multi-step advancement through the sample purchase order path
- Veto and threshold rejection policies
- Authorization, duplicate votes, missing rejection reason
- Terminal workflows refusing further actions
- Counter invariants under arbitrary vote sequences
"""

import itertools
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import HealthCheck, given, settings as hypothesis_settings
from hypothesis import strategies as st

from workflow_config.schema import EngineSettings
from workflow_kernel.domain.approval import (
    ActionOutcome,
    ActionType,
    ApprovalType,
    DocumentRef,
    RejectionPolicy,
    WorkflowStatus,
)
from workflow_kernel.exceptions import (
    ApprovalRuleNotFoundError,
    DuplicateActionError,
    MissingRejectionReasonError,
    UnauthorizedApproverError,
    WorkflowActionError,
    WorkflowNotFoundError,
    WorkflowNotPendingError,
)
from workflow_kernel.selectors.workflow_selector import WorkflowSelector

COMMITTEE = ("a1", "a2", "a3", "a4", "a5")

_document_ids = itertools.count(5000)


@pytest.fixture
def quorum_rule(make_rule):
    return make_rule(
        "Q",
        approval_type=ApprovalType.QUORUM,
        approver_id=None,
        required_approvers=3,
        eligible_actor_ids=frozenset(COMMITTEE),
    )


@pytest.fixture
def majority_rule(make_rule):
    return make_rule(
        "M",
        approval_type=ApprovalType.MAJORITY,
        approver_id=None,
        eligible_actor_ids=frozenset(COMMITTEE),
    )


@pytest.fixture
def start(make_engine):
    """Start a workflow for a fresh document; returns (engine, instance)."""

    def _start(amount="500", catalog=None, **engine_kwargs):
        engine = make_engine(catalog, **engine_kwargs)
        document = DocumentRef("purchase_order", next(_document_ids))
        return engine, engine.start_workflow(document, amount=amount)

    return _start


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


class TestSingleApprover:

    def test_designated_approver_completes(self, start, make_processor, sink):
        _, instance = start("500")
        result = make_processor().approve(instance.workflow_id, "u-manager")

        assert result.outcome == ActionOutcome.COMPLETED
        assert result.status == WorkflowStatus.COMPLETED
        assert result.steps_completed == 1
        assert result.approvals_received == 1
        assert result.action_id is not None
        assert sink.names == ["started", "completed"]

    def test_completed_instance_fields(self, start, make_processor, deterministic_clock):
        engine, instance = start("500")
        deterministic_clock.advance(3600)
        make_processor().approve(instance.workflow_id, "u-manager", comments="ok")

        done = engine.get_workflow(instance.workflow_id)
        assert done.status == WorkflowStatus.COMPLETED
        assert done.completed_at == deterministic_clock.now()
        assert done.steps_completed == done.total_steps == 1
        assert engine.get_active_workflow(instance.document) is None


class TestQuorum:

    def test_three_of_five_completes_on_third(self, start, make_catalog, make_processor, quorum_rule):
        catalog = make_catalog(quorum_rule)
        _, instance = start(catalog=catalog)
        processor = make_processor(catalog)

        first = processor.approve(instance.workflow_id, "a1")
        second = processor.approve(instance.workflow_id, "a4")
        third = processor.approve(instance.workflow_id, "a2")

        assert [first.outcome, second.outcome] == [ActionOutcome.CONTINUED] * 2
        assert [first.approvals_received, second.approvals_received] == [1, 2]
        assert not first.advanced and not second.advanced
        assert third.outcome == ActionOutcome.COMPLETED

    def test_third_vote_advances_when_steps_remain(
        self, start, make_catalog, make_processor, make_rule, quorum_rule, deterministic_clock,
    ):
        final = make_rule("S", approver_id="u-gm", approver_name="General Manager", timeout_days=7)
        catalog = make_catalog(quorum_rule, final)
        engine, instance = start(catalog=catalog)
        processor = make_processor(catalog)

        processor.approve(instance.workflow_id, "a1")
        processor.approve(instance.workflow_id, "a2")
        deterministic_clock.advance(0, days=1)
        third = processor.approve(instance.workflow_id, "a3")

        assert third.outcome == ActionOutcome.CONTINUED
        assert third.advanced
        current = engine.get_workflow(instance.workflow_id)
        assert current.steps_completed == 1
        assert current.current_rule_id == "S"
        assert current.current_step_name == "Approval by General Manager"
        assert current.approvals_required == 1
        assert current.approvals_received == 0
        assert current.rejections_received == 0
        assert current.due_at == deterministic_clock.now() + timedelta(days=7)


class TestMajority:

    def test_majority_of_five_needs_three(self, start, make_catalog, make_processor, majority_rule):
        catalog = make_catalog(majority_rule)
        _, instance = start(catalog=catalog)
        assert instance.approvals_required == 3
        processor = make_processor(catalog)

        outcomes = [processor.approve(instance.workflow_id, a).outcome for a in ("a5", "a3", "a1")]
        assert outcomes == [
            ActionOutcome.CONTINUED,
            ActionOutcome.CONTINUED,
            ActionOutcome.COMPLETED,
        ]


class TestUnanimous:

    def test_every_member_must_approve(self, start, make_catalog, make_processor, make_rule):
        rule = make_rule(
            "U",
            approval_type=ApprovalType.UNANIMOUS,
            approver_id=None,
            eligible_actor_ids=frozenset({"b1", "b2", "b3"}),
        )
        catalog = make_catalog(rule)
        _, instance = start(catalog=catalog)
        processor = make_processor(catalog)

        assert processor.approve(instance.workflow_id, "b1").outcome == ActionOutcome.CONTINUED
        assert processor.approve(instance.workflow_id, "b2").outcome == ActionOutcome.CONTINUED
        assert processor.approve(instance.workflow_id, "b3").outcome == ActionOutcome.COMPLETED


class TestMultiStepPath:

    def test_walks_sample_purchase_order_path(self, start, make_processor, session, sink):
        engine, instance = start("30000")
        processor = make_processor()
        wid = instance.workflow_id

        step1 = processor.approve(wid, "u-manager")
        assert step1.advanced
        current = engine.get_workflow(wid)
        assert current.current_rule_id == "PO-L2"
        assert current.current_step_name == "Quorum Approval (2 of 3)"
        assert current.approvals_required == 2

        assert not processor.approve(wid, "u-fin-1").advanced
        assert processor.approve(wid, "u-fin-3").advanced
        assert engine.get_workflow(wid).current_rule_id == "PO-L3"

        final = processor.approve(wid, "u-gm")
        assert final.outcome == ActionOutcome.COMPLETED
        assert final.step_sequence == 3

        history = WorkflowSelector(session).get_history(wid)
        assert [(r.step_sequence, r.rule_id) for r in reversed(history)] == [
            (1, "PO-L1"), (2, "PO-L2"), (2, "PO-L2"), (3, "PO-L3"),
        ]
        assert sink.names == ["started", "completed"]

    def test_progress_through_path(self, start, make_processor):
        engine, instance = start("30000")
        make_processor().approve(instance.workflow_id, "u-manager")
        assert engine.get_progress(instance.workflow_id) == (Decimal("33.33"), "Pending")

    def test_vote_logs(self, start, make_processor, captured_logs):
        _, instance = start("30000")
        make_processor().approve(instance.workflow_id, "u-manager")

        logs = captured_logs()
        vote = next(r for r in logs if r["message"] == "workflow_vote_recorded")
        assert vote["workflow_id"] == str(instance.workflow_id)
        assert vote["actor_id"] == "u-manager"
        assert vote["action_type"] == "approve"
        advanced = next(r for r in logs if r["message"] == "workflow_step_advanced")
        assert advanced["from_rule_id"] == "PO-L1"
        assert advanced["to_rule_id"] == "PO-L2"


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


class TestVetoRejection:

    def test_single_rejection_ends_single_step(self, start, make_processor, sink, deterministic_clock):
        engine, instance = start("500")
        result = make_processor().reject(instance.workflow_id, "u-manager", comments="over budget")

        assert result.outcome == ActionOutcome.REJECTED
        rejected = engine.get_workflow(instance.workflow_id)
        assert rejected.status == WorkflowStatus.REJECTED
        assert rejected.rejected_by == "u-manager"
        assert rejected.rejection_reason == "over budget"
        assert rejected.rejected_at == deterministic_clock.now()
        assert rejected.rejections_received == 1
        assert sink.names == ["started", "rejected"]

    def test_single_rejection_ends_quorum_step(self, start, make_catalog, make_processor, quorum_rule):
        catalog = make_catalog(quorum_rule)
        _, instance = start(catalog=catalog)
        processor = make_processor(catalog)
        processor.approve(instance.workflow_id, "a1")
        processor.approve(instance.workflow_id, "a2")

        result = processor.reject(instance.workflow_id, "a3", comments="vendor not approved")
        assert result.outcome == ActionOutcome.REJECTED

    def test_rejection_on_middle_step_ends_workflow(self, start, make_processor):
        engine, instance = start("30000")
        processor = make_processor()
        processor.approve(instance.workflow_id, "u-manager")

        result = processor.reject(instance.workflow_id, "u-fin-2", comments="duplicate order")

        assert result.outcome == ActionOutcome.REJECTED
        assert engine.get_workflow(instance.workflow_id).steps_completed == 1


class TestThresholdRejection:

    @pytest.fixture
    def threshold_settings(self):
        return EngineSettings(rejection_policy=RejectionPolicy.THRESHOLD)

    def test_rejections_tolerated_while_threshold_reachable(
        self, start, make_catalog, make_processor, quorum_rule, threshold_settings,
    ):
        catalog = make_catalog(quorum_rule)
        _, instance = start(catalog=catalog, settings=threshold_settings)
        processor = make_processor(catalog, settings=threshold_settings)

        assert processor.reject(instance.workflow_id, "a1", comments="no").outcome == ActionOutcome.CONTINUED
        assert processor.reject(instance.workflow_id, "a2", comments="no").outcome == ActionOutcome.CONTINUED
        assert processor.approve(instance.workflow_id, "a3").outcome == ActionOutcome.CONTINUED
        assert processor.approve(instance.workflow_id, "a4").outcome == ActionOutcome.CONTINUED
        assert processor.approve(instance.workflow_id, "a5").outcome == ActionOutcome.COMPLETED

    def test_rejected_once_threshold_unreachable(
        self, start, make_catalog, make_processor, quorum_rule, threshold_settings, sink,
    ):
        catalog = make_catalog(quorum_rule)
        engine, instance = start(catalog=catalog, settings=threshold_settings)
        processor = make_processor(catalog, settings=threshold_settings)

        for actor in ("a1", "a2"):
            processor.reject(instance.workflow_id, actor, comments="no")
        result = processor.reject(instance.workflow_id, "a3", comments="still no")

        assert result.outcome == ActionOutcome.REJECTED
        assert engine.get_workflow(instance.workflow_id).rejections_received == 3
        assert sink.names == ["started", "rejected"]

    def test_single_step_behaves_like_veto(self, start, make_processor, threshold_settings):
        _, instance = start("500", settings=threshold_settings)
        processor = make_processor(settings=threshold_settings)
        result = processor.reject(instance.workflow_id, "u-manager", comments="no")
        assert result.outcome == ActionOutcome.REJECTED


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:

    def test_unauthorized_actor(self, start, make_processor, session):
        _, instance = start("500")
        with pytest.raises(UnauthorizedApproverError) as exc_info:
            make_processor().approve(instance.workflow_id, "u-intruder")

        assert exc_info.value.code == "UNAUTHORIZED_APPROVER"
        assert exc_info.value.rule_id == "PO-L1"
        assert WorkflowSelector(session).get_history(instance.workflow_id) == []

    def test_unauthorized_rejection(self, start, make_processor):
        _, instance = start("500")
        with pytest.raises(UnauthorizedApproverError):
            make_processor().reject(instance.workflow_id, "u-intruder", comments="no")

    def test_duplicate_approval(self, start, make_catalog, make_processor, quorum_rule):
        catalog = make_catalog(quorum_rule)
        engine, instance = start(catalog=catalog)
        processor = make_processor(catalog)
        processor.approve(instance.workflow_id, "a1")

        with pytest.raises(DuplicateActionError) as exc_info:
            processor.approve(instance.workflow_id, "a1")

        assert exc_info.value.step_sequence == 1
        assert engine.get_workflow(instance.workflow_id).approvals_received == 1

    def test_reject_after_approve_is_duplicate(self, start, make_catalog, make_processor, quorum_rule):
        catalog = make_catalog(quorum_rule)
        _, instance = start(catalog=catalog)
        processor = make_processor(catalog)
        processor.approve(instance.workflow_id, "a1")

        with pytest.raises(DuplicateActionError):
            processor.reject(instance.workflow_id, "a1", comments="changed my mind")

    def test_same_actor_may_vote_on_later_step(self, start, make_catalog, make_processor, make_rule):
        catalog = make_catalog(
            make_rule("S1", approver_id="u-boss"),
            make_rule("S2", approver_id="u-boss"),
        )
        _, instance = start(catalog=catalog)
        processor = make_processor(catalog)

        assert processor.approve(instance.workflow_id, "u-boss").advanced
        assert processor.approve(instance.workflow_id, "u-boss").outcome == ActionOutcome.COMPLETED

    @pytest.mark.parametrize("comments", [None, "", "   "])
    def test_rejection_requires_reason(self, start, make_processor, comments, session):
        engine, instance = start("500")
        with pytest.raises(MissingRejectionReasonError):
            make_processor().reject(instance.workflow_id, "u-manager", comments=comments)
        assert engine.get_workflow(instance.workflow_id).status == WorkflowStatus.PENDING
        assert WorkflowSelector(session).get_history(instance.workflow_id) == []

    def test_terminal_workflow_refuses_votes(self, start, make_processor):
        _, instance = start("500")
        processor = make_processor()
        processor.approve(instance.workflow_id, "u-manager")

        with pytest.raises(WorkflowNotPendingError) as exc_info:
            processor.approve(instance.workflow_id, "u-manager")
        assert exc_info.value.status == "completed"

        with pytest.raises(WorkflowNotPendingError):
            processor.reject(instance.workflow_id, "u-manager", comments="late")

    def test_unknown_workflow(self, make_processor):
        with pytest.raises(WorkflowNotFoundError):
            make_processor().approve(uuid4(), "u-manager")

    def test_rule_removed_from_catalog(self, start, make_catalog, make_processor, make_rule):
        catalog = make_catalog(make_rule("GONE"))
        _, instance = start(catalog=catalog)

        with pytest.raises(ApprovalRuleNotFoundError) as exc_info:
            make_processor(make_catalog()).approve(instance.workflow_id, "u-approver")
        assert exc_info.value.rule_id == "GONE"

    def test_duplicate_vote_logged(self, start, make_catalog, make_processor, quorum_rule, captured_logs):
        catalog = make_catalog(quorum_rule)
        _, instance = start(catalog=catalog)
        processor = make_processor(catalog)
        processor.approve(instance.workflow_id, "a1")
        with pytest.raises(DuplicateActionError):
            processor.approve(instance.workflow_id, "a1")

        assert any(r["message"] == "workflow_duplicate_vote_blocked" for r in captured_logs())


# ---------------------------------------------------------------------------
# Counter invariants
# ---------------------------------------------------------------------------


_VOTERS = st.sampled_from(COMMITTEE + ("outsider",))
_VOTES = st.lists(st.tuples(_VOTERS, st.booleans()), max_size=12)


@hypothesis_settings(
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
@given(votes=_VOTES)
def test_counters_stay_within_bounds(start, make_catalog, make_processor, make_rule, votes):
    """0 <= approvals_received <= approvals_required and one vote per actor per step."""
    catalog = make_catalog(
        make_rule(
            "Q",
            approval_type=ApprovalType.QUORUM,
            approver_id=None,
            required_approvers=3,
            eligible_actor_ids=frozenset(COMMITTEE),
        ),
        make_rule("Z", approver_id="a1"),
    )
    engine, instance = start(
        catalog=catalog,
        settings=EngineSettings(rejection_policy=RejectionPolicy.THRESHOLD),
    )
    processor = make_processor(
        catalog, settings=EngineSettings(rejection_policy=RejectionPolicy.THRESHOLD),
    )

    for actor, approve in votes:
        try:
            if approve:
                processor.approve(instance.workflow_id, actor)
            else:
                processor.reject(instance.workflow_id, actor, comments="no")
        except (WorkflowActionError, WorkflowNotPendingError):
            pass

        current = engine.get_workflow(instance.workflow_id)
        assert 0 <= current.approvals_received <= current.approvals_required
        assert current.steps_completed <= current.total_steps

    history = engine.get_history(instance.workflow_id)
    cast = [
        (r.step_sequence, r.rule_id, r.actor_id)
        for r in history
        if r.action_type in (ActionType.APPROVE, ActionType.REJECT)
    ]
    assert len(cast) == len(set(cast))
