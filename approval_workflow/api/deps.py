from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from motor.motor_asyncio import AsyncIOMotorDatabase

from approval_workflow.core.db import get_approvals_database
from approval_workflow.schemas.approval import CallerContext
from approval_workflow.services.delegations import DelegationService
from approval_workflow.services.dispatcher import SideEffectDispatcher
from approval_workflow.services.engine import ApprovalEngine
from approval_workflow.services.hierarchy import HierarchyClient
from approval_workflow.services.notifications import ApprovalEventPublisher


def get_caller(
    x_employee_id: Optional[str] = Header(None, alias="X-Employee-Id"),
    x_employee_name: str = Header("", alias="X-Employee-Name"),
    x_permissions: str = Header("", alias="X-Permissions"),
) -> CallerContext:
    """
    게이트웨이가 인증 후 넣어주는 헤더에서 호출자 정보를 만든다.
    X-Permissions: 콤마 구분 권한 키 (예: "approval.view,approval.delegate")
    """
    if not x_employee_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Employee-Id header is required",
        )
    permissions = [p.strip() for p in x_permissions.split(",") if p.strip()]
    return CallerContext(
        employeeId=x_employee_id,
        employeeName=x_employee_name,
        permissions=permissions,
    )


def get_hierarchy_client() -> HierarchyClient:
    return HierarchyClient()


def get_publisher(request: Request) -> ApprovalEventPublisher:
    return ApprovalEventPublisher(getattr(request.app.state, "rabbit_exchange", None))


def get_delegation_service(
    db: AsyncIOMotorDatabase = Depends(get_approvals_database),
) -> DelegationService:
    return DelegationService(db)


def get_dispatcher(
    db: AsyncIOMotorDatabase = Depends(get_approvals_database),
) -> SideEffectDispatcher:
    return SideEffectDispatcher(db)


def get_engine(
    db: AsyncIOMotorDatabase = Depends(get_approvals_database),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
    publisher: ApprovalEventPublisher = Depends(get_publisher),
    delegations: DelegationService = Depends(get_delegation_service),
) -> ApprovalEngine:
    return ApprovalEngine(
        db,
        dispatcher=dispatcher,
        publisher=publisher,
        delegations=delegations,
    )
