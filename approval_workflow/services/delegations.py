import logging
from datetime import date
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from approval_workflow.core.config import settings
from approval_workflow.core.errors import (
    AuthorizationError,
    BusinessRuleError,
    RequestNotFoundError,
)
from approval_workflow.schemas.approval import CallerContext, utc_now
from approval_workflow.schemas.delegation import ApprovalDelegation, DelegationCreate
from approval_workflow.services.authorization import can_manage_delegations

logger = logging.getLogger(__name__)


class DelegationService:
    """
    기간 단위 결재 위임 (휴가, 출장 등).
    새 결재 요청을 만들 때 유효한 위임이 있으면 해당 단계의 delegatedTo를 채운다.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db[settings.DELEGATIONS_COLLECTION]
        self.counters = db[settings.COUNTERS_COLLECTION]

    async def _next_id(self) -> int:
        counter = await self.counters.find_one_and_update(
            {"_id": "approval_delegation_id"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    async def create(self, payload: DelegationCreate, caller: CallerContext) -> ApprovalDelegation:
        from_id = payload.fromEmployeeId or caller.employeeId
        if from_id != caller.employeeId and not can_manage_delegations(caller.permissions):
            raise AuthorizationError("Only delegation managers can delegate on behalf of another employee")
        if from_id == payload.toEmployeeId:
            raise BusinessRuleError("An employee cannot delegate approvals to themselves")

        delegation = ApprovalDelegation(
            delegationId=await self._next_id(),
            fromEmployeeId=from_id,
            fromEmployeeName=payload.fromEmployeeName
            or (caller.employeeName if from_id == caller.employeeId else ""),
            toEmployeeId=payload.toEmployeeId,
            toEmployeeName=payload.toEmployeeName,
            startDate=payload.startDate,
            endDate=payload.endDate,
            requestTypes=payload.requestTypes,
            isActive=True,
            createdBy=caller.employeeId,
            createdAt=utc_now(),
        )
        await self.collection.insert_one(delegation.to_document())
        logger.info(
            "Delegation %s created: %s -> %s (%s ~ %s) by %s",
            delegation.delegationId,
            delegation.fromEmployeeId,
            delegation.toEmployeeId,
            delegation.startDate,
            delegation.endDate,
            caller.employeeId,
        )
        return delegation

    async def get_all(self, from_employee_id: Optional[str] = None) -> List[ApprovalDelegation]:
        query = {}
        if from_employee_id is not None:
            query["fromEmployeeId"] = from_employee_id
        cursor = self.collection.find(query, sort=[("delegationId", -1)])
        docs = await cursor.to_list(length=1000)
        return [ApprovalDelegation.from_document(doc) for doc in docs]

    async def get(self, delegation_id: int) -> ApprovalDelegation:
        doc = await self.collection.find_one({"delegationId": delegation_id})
        if not doc:
            raise RequestNotFoundError(f"Delegation {delegation_id} not found")
        return ApprovalDelegation.from_document(doc)

    async def deactivate(self, delegation_id: int, caller: CallerContext) -> ApprovalDelegation:
        current = await self.get(delegation_id)
        if current.fromEmployeeId != caller.employeeId and not can_manage_delegations(caller.permissions):
            raise AuthorizationError(f"Delegation {delegation_id} belongs to another employee")
        doc = await self.collection.find_one_and_update(
            {"delegationId": delegation_id},
            {"$set": {"isActive": False}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise RequestNotFoundError(f"Delegation {delegation_id} not found")
        logger.info("Delegation %s deactivated by %s", delegation_id, caller.employeeId)
        return ApprovalDelegation.from_document(doc)

    async def find_active(
        self,
        employee_ids: List[str],
        request_type: str,
        on_date: date,
    ) -> List[ApprovalDelegation]:
        cursor = self.collection.find(
            {"fromEmployeeId": {"$in": employee_ids}, "isActive": True}
        )
        docs = await cursor.to_list(length=None)
        delegations = [ApprovalDelegation.from_document(doc) for doc in docs]
        return [d for d in delegations if d.covers(request_type, on_date)]
