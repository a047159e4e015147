"""
결재 요청 상태 머신.

pending ──approve──> in_progress ──approve(마지막)──> approved
   │                     │
   ├──reject─────────────┴──> rejected
   ├──cancel (결재 전만) ───> cancelled
   └──escalate ─────────────> escalated ──approve/reject──> ...

모든 함수는 입력 요청을 바꾸지 않고 새 ApprovalRequest를 반환한다.
저장(원자적 조건부 갱신)은 ApprovalEngine이 담당.
"""
from datetime import datetime
from typing import List, Optional

from approval_workflow.core.errors import (
    AuthorizationError,
    BusinessRuleError,
    StateConflictError,
)
from approval_workflow.schemas.approval import (
    ACTIONABLE_STATUSES,
    OPEN_STATUSES,
    ApprovalHistoryEntry,
    ApprovalRequest,
    CallerContext,
    utc_now,
)
from approval_workflow.services.authorization import (
    can_act_on_step,
    can_cancel,
    can_delegate,
    can_escalate,
    resolve_approval_role,
)

DECIDED_STEP_STATUSES = ("approved", "rejected", "skipped")


def _ensure_actionable(request: ApprovalRequest) -> None:
    if request.status not in ACTIONABLE_STATUSES:
        raise StateConflictError(
            f"Request {request.requestId} is already {request.status}"
        )


def _is_named_actor(request: ApprovalRequest, caller_id: str) -> bool:
    step = request.current
    return step is not None and caller_id in (step.approverEmployeeId, step.delegatedTo)


def _history(
    action: str,
    caller: CallerContext,
    now: datetime,
    step_index: Optional[int] = None,
    override: bool = False,
    notes: Optional[str] = None,
) -> ApprovalHistoryEntry:
    return ApprovalHistoryEntry(
        action=action,
        stepIndex=step_index,
        performedBy=caller.employeeId,
        performedByName=caller.employeeName,
        override=override,
        notes=notes or None,
        timestamp=now,
    )


def _decide(
    request: ApprovalRequest,
    caller: CallerContext,
    decision: str,
    notes: str,
    now: Optional[datetime],
) -> ApprovalRequest:
    now = now or utc_now()
    role = resolve_approval_role(caller.permissions)
    _ensure_actionable(request)

    updated = request.model_copy(deep=True)
    updated.updatedAt = now

    if not request.approvalChain:
        # 결재 라인이 없는 요청(최고 직급 요청자)은 관리자 override로만 종결
        if role != "admin":
            raise AuthorizationError(
                f"Request {request.requestId} has no approval chain; "
                "only an administrator can decide it"
            )
        updated.status = decision
        updated.history.append(_history(decision, caller, now, override=True, notes=notes))
        return updated

    step = request.current
    if step is None:
        raise StateConflictError(
            f"Request {request.requestId} has no remaining approval step"
        )
    if step.status != "pending":
        raise StateConflictError(
            f"Step {request.currentStep} of request {request.requestId} "
            f"was already {step.status}"
        )
    if not can_act_on_step(request, caller.employeeId, role):
        raise AuthorizationError(
            f"Step {request.currentStep} of request {request.requestId} is not "
            f"yours to decide (waiting on {step.approverName or step.approverEmployeeId})"
        )

    override = role == "admin" and not _is_named_actor(request, caller.employeeId)
    index = request.currentStep
    current = updated.approvalChain[index]
    current.status = decision
    current.decidedAt = now
    current.notes = notes or None

    if decision == "rejected":
        # 이후 단계는 pending 그대로 둔다 (도달하지 않았다는 사실 보존)
        updated.status = "rejected"
    elif index == len(updated.approvalChain) - 1:
        updated.currentStep = len(updated.approvalChain)
        updated.status = "approved"
    else:
        updated.currentStep = index + 1
        updated.status = "in_progress"

    updated.history.append(
        _history(decision, caller, now, step_index=index, override=override, notes=notes)
    )
    return updated


def approve(
    request: ApprovalRequest,
    caller: CallerContext,
    notes: str = "",
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    return _decide(request, caller, "approved", notes, now)


def reject(
    request: ApprovalRequest,
    caller: CallerContext,
    notes: str = "",
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    return _decide(request, caller, "rejected", notes, now)


def cancel(
    request: ApprovalRequest,
    caller: CallerContext,
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    """요청자 또는 관리자만, 어떤 단계도 결재되기 전에만 취소 가능."""
    now = now or utc_now()
    role = resolve_approval_role(caller.permissions)
    _ensure_actionable(request)

    if not can_cancel(request, caller.employeeId, role):
        raise AuthorizationError(
            f"Only the requester or an administrator can cancel request {request.requestId}"
        )
    if request.status not in OPEN_STATUSES:
        raise BusinessRuleError(
            f"Request {request.requestId} is {request.status} and can no longer be cancelled"
        )
    decided = any(s.status in DECIDED_STEP_STATUSES for s in request.approvalChain)
    if request.currentStep != 0 or decided:
        raise BusinessRuleError(
            f"Request {request.requestId} already has a decision and can no longer be cancelled"
        )

    updated = request.model_copy(deep=True)
    updated.status = "cancelled"
    updated.updatedAt = now
    updated.history.append(_history("cancelled", caller, now, override=role == "admin"))
    return updated


def delegate(
    request: ApprovalRequest,
    step_index: int,
    delegated_to: str,
    delegated_to_name: str,
    caller: CallerContext,
    allow_delegation: bool = True,
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    """
    현재 단계의 결재 권한을 다른 직원에게 넘긴다.
    감사 목적상 approverEmployeeId는 그대로 둔다.
    """
    now = now or utc_now()
    role = resolve_approval_role(caller.permissions)
    _ensure_actionable(request)

    if not allow_delegation:
        raise BusinessRuleError("Delegation is disabled by the approval policy")
    if step_index != request.currentStep or request.current is None:
        raise BusinessRuleError(
            f"Only the current step ({request.currentStep}) of request "
            f"{request.requestId} can be delegated"
        )
    if not can_delegate(request, step_index, caller.employeeId, role):
        raise AuthorizationError(
            f"Only the approver of step {step_index} or an administrator can delegate it"
        )

    step = request.approvalChain[step_index]
    if step.status != "pending":
        raise StateConflictError(f"Step {step_index} was already {step.status}")
    if delegated_to == request.employeeId:
        raise BusinessRuleError("A request cannot be delegated to its own requester")
    if delegated_to == step.approverEmployeeId:
        raise BusinessRuleError("A step cannot be delegated to its own approver")

    updated = request.model_copy(deep=True)
    target = updated.approvalChain[step_index]
    target.delegatedTo = delegated_to
    target.delegatedToName = delegated_to_name or None
    updated.updatedAt = now
    updated.history.append(
        _history(
            "delegated",
            caller,
            now,
            step_index=step_index,
            override=role == "admin" and caller.employeeId != step.approverEmployeeId,
            notes=f"-> {delegated_to_name or delegated_to}",
        )
    )
    return updated


def escalate(
    request: ApprovalRequest,
    caller: CallerContext,
    notes: str = "",
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    """기한 초과 요청을 관리자가 수동으로 escalated 표시. 타이머로는 바뀌지 않는다."""
    now = now or utc_now()
    _ensure_actionable(request)

    if not can_escalate(caller.permissions):
        raise AuthorizationError("Escalating a request requires the approval.escalate permission")
    if request.status == "escalated":
        raise StateConflictError(f"Request {request.requestId} is already escalated")

    updated = request.model_copy(deep=True)
    updated.status = "escalated"
    updated.updatedAt = now
    updated.history.append(
        _history("escalated", caller, now, step_index=request.currentStep, notes=notes)
    )
    return updated


def check_invariants(request: ApprovalRequest) -> List[str]:
    """상태와 단계별 상태가 서로 맞는지 검사. 위반 목록을 반환."""
    violations: List[str] = []
    chain = request.approvalChain
    n = len(chain)

    if not 0 <= request.currentStep <= n:
        violations.append(f"currentStep {request.currentStep} outside 0..{n}")
        return violations

    for i in range(1, n):
        if chain[i].level <= chain[i - 1].level:
            violations.append(f"level of step {i} is not increasing")

    before = chain[: request.currentStep]
    after = chain[request.currentStep + 1:]
    if any(s.status not in ("approved", "skipped") for s in before):
        violations.append("a step before the current step is not approved")
    if any(s.status != "pending" for s in after):
        violations.append("a step after the current step was decided")

    current = request.current
    if request.status == "approved":
        if request.currentStep != n:
            violations.append("approved request has an unfinished chain")
    elif request.status == "rejected":
        if n and (current is None or current.status != "rejected"):
            violations.append("rejected request does not stop at a rejected step")
    elif request.status in ("pending", "cancelled"):
        if request.currentStep != 0 or any(s.status != "pending" for s in chain):
            violations.append(f"{request.status} request has decided steps")
    elif current is not None and current.status != "pending":
        violations.append("current step of an open request is already decided")

    return violations
