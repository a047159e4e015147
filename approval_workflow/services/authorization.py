from typing import Iterable, Literal

from approval_workflow.schemas.approval import ACTIONABLE_STATUSES, ApprovalRequest

ApprovalRole = Literal["admin", "hr", "manager", "employee"]

# 권한 키는 문자열로 유지 (권한 관리 화면에서 자유롭게 조합 가능)
PERM_WILDCARD = "*"
PERM_OVERRIDE = "approval.override"
PERM_MANAGE = "approval.manage"
PERM_VIEW = "approval.view"
PERM_ESCALATE = "approval.escalate"
PERM_DELEGATE = "approval.delegate"


def resolve_approval_role(permissions: Iterable[str]) -> ApprovalRole:
    perms = set(permissions or ())
    if PERM_WILDCARD in perms or PERM_OVERRIDE in perms:
        return "admin"
    if PERM_MANAGE in perms:
        return "hr"
    if PERM_VIEW in perms:
        return "manager"
    return "employee"


def can_view_all_requests(permissions: Iterable[str]) -> bool:
    return resolve_approval_role(permissions) in ("admin", "hr")


def can_act_on_step(
    request: ApprovalRequest,
    caller_employee_id: str,
    role: ApprovalRole,
) -> bool:
    """
    관리자: 진행 중인 요청이면 지정 결재자와 관계없이 처리 가능 (override).
    그 외: 현재 단계의 지정 결재자 또는 위임받은 사람만.
    """
    if request.status not in ACTIONABLE_STATUSES:
        return False
    if role == "admin":
        return True
    step = request.current
    if step is None or step.status != "pending":
        return False
    return caller_employee_id in (step.approverEmployeeId, step.delegatedTo)


def can_cancel(request: ApprovalRequest, caller_employee_id: str, role: ApprovalRole) -> bool:
    return role == "admin" or caller_employee_id == request.employeeId


def can_delegate(
    request: ApprovalRequest,
    step_index: int,
    caller_employee_id: str,
    role: ApprovalRole,
) -> bool:
    if role == "admin":
        return True
    if not (0 <= step_index < len(request.approvalChain)):
        return False
    return request.approvalChain[step_index].approverEmployeeId == caller_employee_id


def can_escalate(permissions: Iterable[str]) -> bool:
    perms = set(permissions or ())
    return resolve_approval_role(perms) == "admin" or PERM_ESCALATE in perms


def can_manage_delegations(permissions: Iterable[str]) -> bool:
    perms = set(permissions or ())
    return resolve_approval_role(perms) == "admin" or PERM_DELEGATE in perms


def can_create_for(employee_id: str, caller_employee_id: str, permissions: Iterable[str]) -> bool:
    """본인 요청이거나 HR/관리자가 대신 등록하는 경우만 허용."""
    return employee_id == caller_employee_id or can_view_all_requests(permissions)
