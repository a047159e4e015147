import pytest

from approval_workflow.services.authorization import (
    can_act_on_step,
    can_cancel,
    can_create_for,
    can_delegate,
    can_escalate,
    can_manage_delegations,
    can_view_all_requests,
    resolve_approval_role,
)


@pytest.mark.parametrize(
    "permissions, role",
    [
        (["*"], "admin"),
        (["approval.override"], "admin"),
        (["approval.manage", "approval.view"], "hr"),
        (["approval.view"], "manager"),
        ([], "employee"),
        (None, "employee"),
    ],
)
def test_resolve_approval_role(permissions, role):
    assert resolve_approval_role(permissions) == role


class TestCanActOnStep:
    def test_named_approver_only(self, build_request):
        request = build_request()
        assert can_act_on_step(request, "M1", "manager")
        assert not can_act_on_step(request, "M2", "manager")
        assert not can_act_on_step(request, "E1", "employee")

    def test_delegate_can_act(self, build_request):
        request = build_request()
        request.approvalChain[0].delegatedTo = "E2"
        assert can_act_on_step(request, "E2", "employee")

    def test_admin_override(self, build_request):
        assert can_act_on_step(build_request(), "ADMIN", "admin")

    def test_terminal_request_is_never_actionable(self, build_request):
        request = build_request(status="cancelled")
        assert not can_act_on_step(request, "M1", "manager")
        assert not can_act_on_step(request, "ADMIN", "admin")


def test_can_cancel(build_request):
    request = build_request()
    assert can_cancel(request, "E1", "employee")
    assert can_cancel(request, "ADMIN", "admin")
    assert not can_cancel(request, "M1", "manager")


def test_can_delegate(build_request):
    request = build_request()
    assert can_delegate(request, 0, "M1", "manager")
    assert not can_delegate(request, 0, "M2", "manager")
    assert not can_delegate(request, 7, "M1", "manager")
    assert can_delegate(request, 1, "ADMIN", "admin")


def test_permission_helpers():
    assert can_escalate(["approval.escalate"])
    assert can_escalate(["*"])
    assert not can_escalate(["approval.view"])

    assert can_manage_delegations(["approval.delegate"])
    assert not can_manage_delegations(["approval.manage"])

    assert can_view_all_requests(["approval.manage"])
    assert not can_view_all_requests(["approval.view"])

    assert can_create_for("E1", "E1", [])
    assert can_create_for("E1", "HR", ["approval.manage"])
    assert not can_create_for("E1", "E2", ["approval.view"])
