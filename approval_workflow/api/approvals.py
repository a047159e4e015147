from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from approval_workflow.api.deps import get_caller, get_engine, get_hierarchy_client
from approval_workflow.api.responses import result_response
from approval_workflow.schemas.approval import (
    ApprovalRequest,
    ApprovalRequestCreate,
    CallerContext,
    ChainPreview,
    ChainPreviewRequest,
    DecisionCommand,
    DelegateCommand,
    EscalateCommand,
    OverdueStatus,
    utc_now,
)
from approval_workflow.services.authorization import can_escalate, can_view_all_requests
from approval_workflow.services.engine import ApprovalEngine
from approval_workflow.services.escalation import is_request_overdue, step_started_at
from approval_workflow.services.hierarchy import HierarchyClient

router = APIRouter(
    prefix="/approvals",
    tags=["approvals"],
)


def _forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def _can_view(request: ApprovalRequest, caller: CallerContext) -> bool:
    if can_view_all_requests(caller.permissions) or request.employeeId == caller.employeeId:
        return True
    return any(
        caller.employeeId in (s.approverEmployeeId, s.delegatedTo)
        for s in request.approvalChain
    )


# region ========== 조회 ==========


@router.get(
    "",
    response_model=List[ApprovalRequest],
)
async def list_approvals(
    request_type: Optional[str] = Query(None, alias="requestType"),
    request_status: Optional[str] = Query(None, alias="status"),
    employee_id: Optional[str] = Query(None, alias="employeeId"),
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    """
    결재 요청 목록 조회
    - HR/관리자: 전체 (필터 적용)
    - 그 외: 본인 요청 + 본인 결재 대기 요청
    """
    if can_view_all_requests(caller.permissions):
        return await engine.get_all_requests(request_type, request_status, employee_id)

    requests = await engine.get_requests_for(caller)
    return [
        r for r in requests
        if (request_type is None or r.requestType == request_type)
        and (request_status is None or r.status == request_status)
        and (employee_id is None or r.employeeId == employee_id)
    ]


@router.get(
    "/pending",
    response_model=List[ApprovalRequest],
)
async def list_pending_approvals(
    approver_employee_id: Optional[str] = Query(None, alias="approverEmployeeId"),
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    """
    결재 대기함: 현재 단계의 결재자(또는 위임받은 사람)가 approver인 요청
    """
    approver_id = approver_employee_id or caller.employeeId
    if approver_id != caller.employeeId and not can_view_all_requests(caller.permissions):
        raise _forbidden("You can only list your own pending approvals")
    return await engine.get_pending_approvals(approver_id)


@router.get(
    "/overdue",
    response_model=List[ApprovalRequest],
)
async def list_overdue_approvals(
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    if not (can_view_all_requests(caller.permissions) or can_escalate(caller.permissions)):
        raise _forbidden("Listing overdue requests requires approval.manage or approval.escalate")
    return await engine.get_overdue_requests()


@router.get(
    "/undispatched",
    response_model=List[ApprovalRequest],
)
async def list_undispatched_approvals(
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    """
    최종 승인됐지만 연차 차감/대출 활성화가 끝나지 않은 요청 (reconciliation 용)
    """
    if not can_view_all_requests(caller.permissions):
        raise _forbidden("Listing undispatched requests requires approval.manage")
    return await engine.get_undispatched()


@router.get(
    "/{request_id}",
    response_model=ApprovalRequest,
)
async def get_approval(
    request_id: int,
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    """
    특정 requestId에 해당하는 결재 요청 상세 조회
    """
    request = await engine.get_request(request_id)
    if not _can_view(request, caller):
        raise _forbidden(f"You are not allowed to view request {request_id}")
    return request


@router.get(
    "/{request_id}/overdue",
    response_model=OverdueStatus,
)
async def get_overdue_status(
    request_id: int,
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    request = await engine.get_request(request_id)
    if not _can_view(request, caller):
        raise _forbidden(f"You are not allowed to view request {request_id}")
    return OverdueStatus(
        requestId=request.requestId,
        overdue=is_request_overdue(request, now=utc_now(), sla=engine.policy.escalation_after),
        stepStartedAt=step_started_at(request),
    )


# endregion

# region ========== 생성 ==========


@router.post(
    "/preview",
    response_model=ChainPreview,
)
async def preview_approval_chain(
    payload: ChainPreviewRequest,
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
    hierarchy_client: HierarchyClient = Depends(get_hierarchy_client),
):
    """
    요청을 저장하지 않고 결재 라인만 미리 계산
    """
    hierarchy = await hierarchy_client.fetch_snapshot()
    return engine.preview_chain(payload.employeeId, payload.requestType, hierarchy)


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
)
async def create_approval(
    payload: ApprovalRequestCreate,
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
    hierarchy_client: HierarchyClient = Depends(get_hierarchy_client),
):
    """
    결재 요청 생성
    흐름:
    1) Employee Service에서 조직도 스냅샷 조회
    2) 직급 기준 결재 라인 생성 + 유효한 위임 반영
    3) requestId 발급 후 MongoDB에 저장
    4) RabbitMQ로 created 이벤트 publish
    """
    hierarchy = await hierarchy_client.fetch_snapshot()
    result = await engine.create_request(payload, hierarchy, caller)
    return result_response(result, status.HTTP_201_CREATED)


# endregion

# region ========== 상태 전이 ==========


@router.post("/{request_id}/approve")
async def approve_approval(
    request_id: int,
    payload: Optional[DecisionCommand] = None,
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    notes = payload.notes if payload else ""
    return result_response(await engine.approve_request(request_id, caller, notes))


@router.post("/{request_id}/reject")
async def reject_approval(
    request_id: int,
    payload: Optional[DecisionCommand] = None,
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    notes = payload.notes if payload else ""
    return result_response(await engine.reject_request(request_id, caller, notes))


@router.post("/{request_id}/cancel")
async def cancel_approval(
    request_id: int,
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    return result_response(await engine.cancel_request(request_id, caller))


@router.post("/{request_id}/delegate")
async def delegate_approval(
    request_id: int,
    payload: DelegateCommand,
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    result = await engine.delegate_step(
        request_id,
        payload.stepIndex,
        payload.delegatedTo,
        payload.delegatedToName,
        caller,
    )
    return result_response(result)


@router.post("/{request_id}/escalate")
async def escalate_approval(
    request_id: int,
    payload: Optional[EscalateCommand] = None,
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    notes = payload.notes if payload else ""
    return result_response(await engine.escalate_request(request_id, caller, notes))


@router.post("/{request_id}/dispatch")
async def dispatch_approval(
    request_id: int,
    caller: CallerContext = Depends(get_caller),
    engine: ApprovalEngine = Depends(get_engine),
):
    """
    승인 후속 처리 재시도. 이미 처리된 요청이면 외부 호출 없이 성공 응답.
    """
    if not can_view_all_requests(caller.permissions):
        raise _forbidden("Re-dispatching requires approval.manage")
    return result_response(await engine.dispatch_request(request_id))


# endregion
