from datetime import datetime, timedelta, timezone

import pytest

from approval_workflow.core.config import ApprovalPolicy
from approval_workflow.core.errors import (
    AuthorizationError,
    BusinessRuleError,
    StateConflictError,
)
from approval_workflow.schemas.hierarchy import EmployeeHierarchyInfo
from approval_workflow.services import state_machine
from approval_workflow.services.chain_builder import generate_approval_chain

LATER = datetime(2026, 3, 3, 10, 0, tzinfo=timezone.utc)


def _assert_consistent(request):
    assert state_machine.check_invariants(request) == []


class TestApproveReject:
    def test_three_level_org_approve_then_reject(self, build_request, caller):
        e = EmployeeHierarchyInfo(employeeId="E", managerId="M1", jobLevel=1)
        m1 = EmployeeHierarchyInfo(employeeId="M1", managerId="M2", jobLevel=2)
        m2 = EmployeeHierarchyInfo(employeeId="M2", jobLevel=3)
        result = generate_approval_chain(e, [e, m1, m2], "leave", ApprovalPolicy(top_job_level=3))
        assert [(s.level, s.approverEmployeeId) for s in result.chain] == [(2, "M1"), (3, "M2")]

        request = build_request(employee_id="E", approvalChain=result.chain)
        request = state_machine.approve(request, caller("M1", "approval.view"), now=LATER)
        assert request.currentStep == 1
        assert request.status == "in_progress"
        _assert_consistent(request)

        request = state_machine.reject(request, caller("M2", "approval.view"), "budget", now=LATER)
        assert request.status == "rejected"
        assert request.approvalChain[1].status == "rejected"
        assert request.approvalChain[1].notes == "budget"
        _assert_consistent(request)

    def test_final_approval(self, build_request, caller):
        request = build_request(approvers=("M1", "M2"))
        request = state_machine.approve(request, caller("M1"))
        request = state_machine.approve(request, caller("M2"))
        assert request.status == "approved"
        assert request.currentStep == 2
        assert [h.action for h in request.history] == ["created", "approved", "approved"]
        _assert_consistent(request)

    def test_input_is_not_mutated(self, build_request, caller):
        request = build_request()
        state_machine.approve(request, caller("M1"))
        assert request.status == "pending"
        assert request.approvalChain[0].status == "pending"
        assert len(request.history) == 1

    def test_reject_leaves_later_steps_pending(self, build_request, caller):
        request = state_machine.reject(build_request(), caller("M1"))
        assert [s.status for s in request.approvalChain] == ["rejected", "pending", "pending"]
        _assert_consistent(request)

    def test_wrong_approver_is_authorization_error(self, build_request, caller):
        with pytest.raises(AuthorizationError):
            state_machine.approve(build_request(), caller("M2", "approval.view"))

    def test_requester_cannot_approve(self, build_request, caller):
        with pytest.raises(AuthorizationError):
            state_machine.approve(build_request(), caller("E1"))

    @pytest.mark.parametrize("status", ["approved", "rejected", "cancelled"])
    def test_terminal_request_is_state_conflict(self, build_request, caller, status):
        request = build_request(status=status)
        with pytest.raises(StateConflictError):
            state_machine.approve(request, caller("M1"))
        with pytest.raises(StateConflictError):
            state_machine.reject(request, caller("ADMIN", "*"))

    def test_decided_step_is_state_conflict(self, build_request, caller):
        request = build_request()
        request.approvalChain[0].status = "approved"
        with pytest.raises(StateConflictError):
            state_machine.approve(request, caller("M1"))

    def test_admin_override_is_recorded(self, build_request, caller):
        request = state_machine.approve(build_request(), caller("ADMIN", "approval.override"))
        assert request.currentStep == 1
        assert request.history[-1].override is True
        assert request.history[-1].performedBy == "ADMIN"

        named = state_machine.approve(request, caller("M2", "*"))
        assert named.history[-1].override is False


class TestEmptyChain:
    def test_non_admin_cannot_decide(self, build_request, caller):
        request = build_request(approvers=(), employee_id="CEO")
        with pytest.raises(AuthorizationError):
            state_machine.approve(request, caller("CEO", "approval.manage"))

    def test_admin_override_approves(self, build_request, caller):
        request = build_request(approvers=(), employee_id="CEO")
        approved = state_machine.approve(request, caller("ADMIN", "*"))
        assert approved.status == "approved"
        assert approved.currentStep == 0
        assert approved.history[-1].override is True
        _assert_consistent(approved)


class TestCancel:
    def test_requester_cancels_pending(self, build_request, caller):
        request = state_machine.cancel(build_request(), caller("E1"))
        assert request.status == "cancelled"
        _assert_consistent(request)

    def test_cancel_after_first_approval_is_business_rule(self, build_request, caller):
        request = state_machine.approve(build_request(), caller("M1"))
        with pytest.raises(BusinessRuleError):
            state_machine.cancel(request, caller("E1"))
        assert request.status == "in_progress"

    def test_other_employee_cannot_cancel(self, build_request, caller):
        with pytest.raises(AuthorizationError):
            state_machine.cancel(build_request(), caller("M1", "approval.view"))

    def test_cancelled_request_cannot_be_cancelled_again(self, build_request, caller):
        request = state_machine.cancel(build_request(), caller("E1"))
        with pytest.raises(StateConflictError):
            state_machine.cancel(request, caller("E1"))

    def test_escalated_request_cannot_be_cancelled(self, build_request, caller):
        request = state_machine.escalate(build_request(), caller("HR", "approval.escalate"))
        with pytest.raises(BusinessRuleError):
            state_machine.cancel(request, caller("E1"))


class TestDelegate:
    def test_delegate_then_delegate_approves(self, build_request, caller):
        request = state_machine.delegate(build_request(), 0, "E2", "Lee", caller("M1"))
        step = request.approvalChain[0]
        assert step.approverEmployeeId == "M1"
        assert step.delegatedTo == "E2"
        assert request.history[-1].action == "delegated"

        request = state_machine.approve(request, caller("E2"))
        assert request.currentStep == 1
        assert request.history[-1].override is False
        _assert_consistent(request)

    def test_only_current_step(self, build_request, caller):
        with pytest.raises(BusinessRuleError):
            state_machine.delegate(build_request(), 1, "E2", "", caller("M2"))

    def test_not_to_requester(self, build_request, caller):
        with pytest.raises(BusinessRuleError):
            state_machine.delegate(build_request(), 0, "E1", "", caller("M1"))

    def test_other_approver_cannot_delegate(self, build_request, caller):
        with pytest.raises(AuthorizationError):
            state_machine.delegate(build_request(), 0, "E2", "", caller("M2"))

    def test_disabled_by_policy(self, build_request, caller):
        with pytest.raises(BusinessRuleError):
            state_machine.delegate(build_request(), 0, "E2", "", caller("M1"), allow_delegation=False)


class TestEscalate:
    def test_requires_permission(self, build_request, caller):
        with pytest.raises(AuthorizationError):
            state_machine.escalate(build_request(), caller("M1", "approval.view"))

    def test_escalated_then_approved_continues(self, build_request, caller):
        request = state_machine.escalate(build_request(), caller("HR", "approval.escalate"), "late")
        assert request.status == "escalated"
        assert request.currentStep == 0

        with pytest.raises(StateConflictError):
            state_machine.escalate(request, caller("HR", "approval.escalate"))

        request = state_machine.approve(request, caller("M1"))
        assert request.status == "in_progress"
        assert request.currentStep == 1
        _assert_consistent(request)

    def test_escalated_request_can_be_rejected(self, build_request, caller):
        request = state_machine.escalate(build_request(), caller("ADMIN", "*"))
        request = state_machine.reject(request, caller("M1"))
        assert request.status == "rejected"


def test_check_invariants_reports_inconsistency(build_request):
    request = build_request(status="approved", currentStep=1)
    violations = state_machine.check_invariants(request)
    assert "approved request has an unfinished chain" in violations
    assert "a step before the current step is not approved" in violations

    assert state_machine.check_invariants(build_request(currentStep=9)) != []


def test_decided_at_is_recorded(build_request, caller):
    request = state_machine.approve(build_request(), caller("M1"), now=LATER)
    assert request.approvalChain[0].decidedAt == LATER
    assert request.updatedAt == LATER
    assert request.updatedAt - request.createdAt == timedelta(days=1, hours=1)
