from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from approval_workflow.api.deps import get_caller, get_delegation_service
from approval_workflow.core.errors import AuthorizationError
from approval_workflow.schemas.approval import CallerContext
from approval_workflow.schemas.delegation import ApprovalDelegation, DelegationCreate
from approval_workflow.services.authorization import can_manage_delegations
from approval_workflow.services.delegations import DelegationService

router = APIRouter(
    prefix="/delegations",
    tags=["delegations"],
)


@router.get(
    "",
    response_model=List[ApprovalDelegation],
)
async def list_delegations(
    from_employee_id: Optional[str] = Query(None, alias="fromEmployeeId"),
    caller: CallerContext = Depends(get_caller),
    service: DelegationService = Depends(get_delegation_service),
):
    """
    위임 목록. 위임 관리 권한이 없으면 본인이 건 위임만 보인다.
    """
    if not can_manage_delegations(caller.permissions):
        if from_employee_id not in (None, caller.employeeId):
            raise AuthorizationError("You can only list your own delegations")
        from_employee_id = caller.employeeId
    return await service.get_all(from_employee_id)


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=ApprovalDelegation,
)
async def create_delegation(
    payload: DelegationCreate,
    caller: CallerContext = Depends(get_caller),
    service: DelegationService = Depends(get_delegation_service),
):
    return await service.create(payload, caller)


@router.post(
    "/{delegation_id}/deactivate",
    response_model=ApprovalDelegation,
)
async def deactivate_delegation(
    delegation_id: int,
    caller: CallerContext = Depends(get_caller),
    service: DelegationService = Depends(get_delegation_service),
):
    return await service.deactivate(delegation_id, caller)
