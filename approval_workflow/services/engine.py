import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, ExecutionTimeout, PyMongoError, WTimeoutError

from approval_workflow.core import errors
from approval_workflow.core.config import ApprovalPolicy, get_policy, settings
from approval_workflow.core.errors import (
    ApprovalError,
    AuthorizationError,
    BusinessRuleError,
    DispatchInProgressError,
    HierarchyError,
    RequestNotFoundError,
    StateConflictError,
    StoreTransactionError,
)
from approval_workflow.schemas.approval import (
    ACTIONABLE_STATUSES,
    OPEN_STATUSES,
    REQUEST_DATA_MODELS,
    ApprovalHistoryEntry,
    ApprovalRequest,
    ApprovalRequestCreate,
    CallerContext,
    ChainPreview,
    OperationResult,
    utc_now,
)
from approval_workflow.schemas.hierarchy import EmployeeHierarchyInfo
from approval_workflow.services import state_machine
from approval_workflow.services.authorization import (
    can_create_for,
    can_view_all_requests,
)
from approval_workflow.services.chain_builder import (
    apply_active_delegations,
    generate_approval_chain,
)
from approval_workflow.services.delegations import DelegationService
from approval_workflow.services.dispatcher import SideEffectDispatcher
from approval_workflow.services.escalation import find_overdue
from approval_workflow.services.hierarchy import index_by_id
from approval_workflow.services.notifications import ApprovalEventPublisher

logger = logging.getLogger(__name__)

TRANSIENT_STORE_ERRORS = (ConnectionFailure, ExecutionTimeout, WTimeoutError)


def _failure(e: ApprovalError) -> OperationResult:
    return OperationResult(
        success=False,
        error=e.message,
        errorCode=e.code,
        retryable=e.retryable,
    )


class ApprovalEngine:
    """
    결재 요청의 생성과 상태 전이를 담당.

    모든 변경 연산은 (1) 문서를 읽고 (2) 상태 머신으로 검증/전이한 뒤
    (3) 읽은 version이 그대로일 때만 find_one_and_update로 반영한다.
    동시에 두 사람이 같은 단계를 처리하면 한 쪽만 반영되고 다른 쪽은
    StateConflictError를 받는다.

    변경 연산은 예외를 던지지 않고 OperationResult를 반환한다.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        dispatcher: Optional[SideEffectDispatcher] = None,
        publisher: Optional[ApprovalEventPublisher] = None,
        delegations: Optional[DelegationService] = None,
        policy: Optional[ApprovalPolicy] = None,
    ):
        self.collection = db[settings.APPROVALS_COLLECTION]
        self.counters = db[settings.COUNTERS_COLLECTION]
        self.dispatcher = dispatcher or SideEffectDispatcher(db)
        self.publisher = publisher or ApprovalEventPublisher()
        self.delegations = delegations or DelegationService(db)
        self.policy = policy or get_policy()

    # region ========== 내부 헬퍼 ==========

    async def _guard(self, operation: str, request_id, coro) -> OperationResult:
        try:
            return await coro
        except ApprovalError as e:
            logger.info(
                "%s on request %s refused (%s): %s",
                operation,
                request_id,
                e.code,
                e.message,
            )
            return _failure(e)
        except TRANSIENT_STORE_ERRORS as e:
            logger.warning("%s on request %s hit a store error: %s", operation, request_id, e)
            return _failure(
                StoreTransactionError("The approval store is temporarily unavailable; try again")
            )
        except (PyMongoError, ValidationError) as e:
            logger.exception("%s on request %s failed unexpectedly", operation, request_id)
            return OperationResult(
                success=False,
                error=f"Unexpected error while processing request {request_id}: {e}",
                errorCode=errors.INTERNAL,
            )

    async def _get_next_request_id(self) -> int:
        """
        counters 컬렉션에 {_id: 'approval_request_id', seq: N} 형태로 저장 후 $inc.
        """
        counter = await self.counters.find_one_and_update(
            {"_id": "approval_request_id"},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(counter["seq"])

    async def _load(self, request_id: int) -> ApprovalRequest:
        try:
            doc = await self.collection.find_one({"requestId": request_id})
        except TRANSIENT_STORE_ERRORS as e:
            raise StoreTransactionError(
                "The approval store is temporarily unavailable; try again"
            ) from e
        if not doc:
            raise RequestNotFoundError(f"Approval request {request_id} not found")
        request = ApprovalRequest.from_document(doc)
        violations = state_machine.check_invariants(request)
        if violations:
            logger.error("Request %s is inconsistent: %s", request_id, "; ".join(violations))
        return request

    async def _commit(self, before: ApprovalRequest, after: ApprovalRequest) -> ApprovalRequest:
        doc = after.to_document()
        doc["version"] = before.version + 1
        raw = await self.collection.find_one_and_update(
            {"requestId": before.requestId, "version": before.version},
            {"$set": doc},
            return_document=ReturnDocument.AFTER,
        )
        if raw is None:
            raise StateConflictError(
                f"Request {before.requestId} was changed by someone else; "
                "reload it and decide again"
            )
        return ApprovalRequest.from_document(raw)

    async def _transition(
        self,
        request_id: int,
        caller: CallerContext,
        event: str,
        mutate: Callable[[ApprovalRequest], ApprovalRequest],
    ) -> OperationResult:
        request = await self._load(request_id)
        updated = mutate(request)
        committed = await self._commit(request, updated)

        last = committed.history[-1] if committed.history else None
        logger.info(
            "Request %s %s by %s (override=%s): %s -> %s, step %s -> %s",
            request_id,
            event,
            caller.employeeId,
            last.override if last else False,
            request.status,
            committed.status,
            request.currentStep,
            committed.currentStep,
        )

        if committed.status == "approved" and request.status != "approved":
            await self._dispatch_after_commit(committed)
        await self.publisher.publish(committed, event, caller.employeeId)
        return OperationResult(success=True, request=committed)

    async def _dispatch_after_commit(self, request: ApprovalRequest) -> None:
        # 전이는 이미 커밋됨. 실패해도 reconciliation(find_undispatched)에서 재시도
        try:
            await self.dispatcher.dispatch(request)
        except ApprovalError as e:
            logger.error(
                "Request %s approved but side effect not applied: %s",
                request.requestId,
                e.message,
            )
        except (PyMongoError, ValidationError):
            logger.exception(
                "Request %s approved but dispatch crashed; left for reconciliation",
                request.requestId,
            )

    # endregion

    # region ========== 생성 ==========

    def preview_chain(
        self,
        employee_id: str,
        request_type: str,
        hierarchy: List[EmployeeHierarchyInfo],
    ) -> ChainPreview:
        subject = index_by_id(hierarchy).get(employee_id)
        if subject is None:
            return ChainPreview(
                chain=[],
                errors=[f"Employee {employee_id} is not in the hierarchy snapshot"],
            )
        result = generate_approval_chain(subject, hierarchy, request_type, self.policy)
        return ChainPreview(chain=result.chain, errors=result.errors)

    async def create_request(
        self,
        payload: ApprovalRequestCreate,
        hierarchy: List[EmployeeHierarchyInfo],
        caller: CallerContext,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return await self._guard(
            "create",
            payload.sourceRequestId,
            self._create_request(payload, hierarchy, caller, now or utc_now()),
        )

    async def _create_request(
        self,
        payload: ApprovalRequestCreate,
        hierarchy: List[EmployeeHierarchyInfo],
        caller: CallerContext,
        now: datetime,
    ) -> OperationResult:
        if not can_create_for(payload.employeeId, caller.employeeId, caller.permissions):
            raise AuthorizationError(
                f"You cannot submit a {payload.requestType} request for employee {payload.employeeId}"
            )

        data_model = REQUEST_DATA_MODELS[payload.requestType]
        try:
            request_data = jsonable_encoder(data_model(**payload.requestData))
        except ValidationError as e:
            raise BusinessRuleError(
                f"Invalid {payload.requestType} request data: {e.errors()[0]['msg']}"
            ) from e

        subject = index_by_id(hierarchy).get(payload.employeeId)
        if subject is None:
            raise HierarchyError(
                HierarchyError.BROKEN,
                payload.employeeId,
                f"Employee {payload.employeeId} is not in the hierarchy snapshot; "
                "register the employee in the organization chart first",
            )

        result = generate_approval_chain(subject, hierarchy, payload.requestType, self.policy)
        if result.errors:
            return OperationResult(
                success=False,
                error="; ".join(result.errors),
                errorCode=errors.HIERARCHY,
            )

        chain = result.chain
        if chain and self.policy.allow_delegation:
            active = await self.delegations.find_active(
                [s.approverEmployeeId for s in chain],
                payload.requestType,
                now.date(),
            )
            chain = apply_active_delegations(
                chain, active, payload.requestType, now.date(), payload.employeeId
            )

        request = ApprovalRequest(
            requestId=await self._get_next_request_id(),
            requestType=payload.requestType,
            employeeId=payload.employeeId,
            employeeName=payload.employeeName or subject.employeeName,
            requestData=request_data,
            approvalChain=chain,
            currentStep=0,
            status="pending",
            sourceRequestId=payload.sourceRequestId,
            history=[
                ApprovalHistoryEntry(
                    action="created",
                    performedBy=caller.employeeId,
                    performedByName=caller.employeeName,
                    timestamp=now,
                )
            ],
            version=0,
            createdAt=now,
            updatedAt=now,
        )
        await self.collection.insert_one(request.to_document())
        logger.info(
            "Request %s created: type=%s, employee=%s, steps=%d",
            request.requestId,
            request.requestType,
            request.employeeId,
            len(chain),
        )
        if not chain:
            logger.info(
                "Request %s has an empty approval chain; waiting for administrator override",
                request.requestId,
            )

        await self.publisher.publish(request, "created", caller.employeeId)
        return OperationResult(success=True, request=request)

    # endregion

    # region ========== 상태 전이 ==========

    async def approve_request(
        self,
        request_id: int,
        caller: CallerContext,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return await self._guard(
            "approve",
            request_id,
            self._transition(
                request_id,
                caller,
                "approved",
                lambda r: state_machine.approve(r, caller, notes, now),
            ),
        )

    async def reject_request(
        self,
        request_id: int,
        caller: CallerContext,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return await self._guard(
            "reject",
            request_id,
            self._transition(
                request_id,
                caller,
                "rejected",
                lambda r: state_machine.reject(r, caller, notes, now),
            ),
        )

    async def cancel_request(
        self,
        request_id: int,
        caller: CallerContext,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return await self._guard(
            "cancel",
            request_id,
            self._transition(
                request_id,
                caller,
                "cancelled",
                lambda r: state_machine.cancel(r, caller, now),
            ),
        )

    async def delegate_step(
        self,
        request_id: int,
        step_index: int,
        delegated_to: str,
        delegated_to_name: str,
        caller: CallerContext,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return await self._guard(
            "delegate",
            request_id,
            self._transition(
                request_id,
                caller,
                "delegated",
                lambda r: state_machine.delegate(
                    r,
                    step_index,
                    delegated_to,
                    delegated_to_name,
                    caller,
                    allow_delegation=self.policy.allow_delegation,
                    now=now,
                ),
            ),
        )

    async def escalate_request(
        self,
        request_id: int,
        caller: CallerContext,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return await self._guard(
            "escalate",
            request_id,
            self._transition(
                request_id,
                caller,
                "escalated",
                lambda r: state_machine.escalate(r, caller, notes, now),
            ),
        )

    async def dispatch_request(self, request_id: int) -> OperationResult:
        """승인 후 후속 처리 재시도 (reconciliation 용)."""
        return await self._guard("dispatch", request_id, self._dispatch(request_id))

    async def _dispatch(self, request_id: int) -> OperationResult:
        request = await self._load(request_id)
        ran = await self.dispatcher.dispatch(request)
        if not ran and not await self.dispatcher.is_dispatched(request_id):
            raise DispatchInProgressError(
                f"Side effect for request {request_id} is being applied by another call; "
                "retry later"
            )
        return OperationResult(success=True, request=request)

    # endregion

    # region ========== 조회 ==========

    async def _find(self, query: Dict) -> List[ApprovalRequest]:
        try:
            cursor = self.collection.find(query, sort=[("requestId", -1)])
            docs = await cursor.to_list(length=None)
        except TRANSIENT_STORE_ERRORS as e:
            raise StoreTransactionError(
                "The approval store is temporarily unavailable; try again"
            ) from e
        return [ApprovalRequest.from_document(doc) for doc in docs]

    async def get_request(self, request_id: int) -> ApprovalRequest:
        return await self._load(request_id)

    async def get_all_requests(
        self,
        request_type: Optional[str] = None,
        status: Optional[str] = None,
        employee_id: Optional[str] = None,
    ) -> List[ApprovalRequest]:
        query: Dict = {}
        if request_type:
            query["requestType"] = request_type
        if status:
            query["status"] = status
        if employee_id:
            query["employeeId"] = employee_id
        return await self._find(query)

    async def get_pending_approvals(self, approver_employee_id: str) -> List[ApprovalRequest]:
        """현재 단계의 결재자(또는 위임받은 사람)가 approver인 요청."""
        candidates = await self._find(
            {
                "status": {"$in": list(ACTIONABLE_STATUSES)},
                "$or": [
                    {"approvalChain.approverEmployeeId": approver_employee_id},
                    {"approvalChain.delegatedTo": approver_employee_id},
                ],
            }
        )
        return [
            r for r in candidates
            if r.current is not None
            and r.current.status == "pending"
            and approver_employee_id in (r.current.approverEmployeeId, r.current.delegatedTo)
        ]

    async def get_requests_for(self, caller: CallerContext) -> List[ApprovalRequest]:
        """
        전체 조회 권한이 있으면 모든 요청,
        없으면 본인 요청 + 본인 결재 대기 요청.
        """
        if can_view_all_requests(caller.permissions):
            return await self.get_all_requests()

        own = await self.get_all_requests(employee_id=caller.employeeId)
        pending = await self.get_pending_approvals(caller.employeeId)
        merged = {r.requestId: r for r in own + pending}
        return sorted(merged.values(), key=lambda r: r.requestId, reverse=True)

    async def get_overdue_requests(self, now: Optional[datetime] = None) -> List[ApprovalRequest]:
        requests = await self._find({"status": {"$in": list(OPEN_STATUSES)}})
        return find_overdue(requests, now=now, sla=self.policy.escalation_after)

    async def get_undispatched(self) -> List[ApprovalRequest]:
        return await self.dispatcher.find_undispatched()

    # endregion
