import logging
from datetime import datetime, timedelta
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from approval_workflow.core.config import settings
from approval_workflow.core.errors import BusinessRuleError, SideEffectError
from approval_workflow.schemas.approval import (
    ApprovalRequest,
    LeaveRequestData,
    LoanRequestData,
    as_utc,
    utc_now,
)
from approval_workflow.services.ledgers import (
    LeaveBalanceClient,
    LoanClient,
    build_installment_schedule,
)

logger = logging.getLogger(__name__)

DISPATCHED_TYPES = ("leave", "loan")


def idempotency_key(request_id: int) -> str:
    return f"approval-{request_id}"


class SideEffectDispatcher:
    """
    최종 승인된 요청의 후속 처리를 요청 ID당 한 번만 실행한다.

    approval_dispatches 컬렉션에 {_id: requestId, status: in_flight|done|failed}
    마커를 두고, 마커를 선점(claim)한 호출만 외부 서비스를 부른다.
    - done: 다시 실행하지 않음
    - failed: 재시도 시 다시 선점 가능
    - in_flight: stale_after가 지나야 다시 선점 (처리 중 프로세스가 죽은 경우)
    외부 호출에는 requestId 기반 Idempotency-Key를 같이 보낸다.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        leave_client: Optional[LeaveBalanceClient] = None,
        loan_client: Optional[LoanClient] = None,
        stale_after: Optional[timedelta] = None,
    ):
        self.approvals = db[settings.APPROVALS_COLLECTION]
        self.dispatches = db[settings.DISPATCHES_COLLECTION]
        self.leave_client = leave_client or LeaveBalanceClient()
        self.loan_client = loan_client or LoanClient()
        self.stale_after = stale_after or timedelta(
            seconds=settings.DISPATCH_STALE_AFTER_SECONDS
        )

    async def dispatch(self, request: ApprovalRequest, now: Optional[datetime] = None) -> bool:
        """
        후속 처리를 실행했으면 True, 이미 처리됐거나 다른 호출이 처리 중이면 False.
        외부 호출이 실패하면 마커를 failed로 남기고 SideEffectError를 다시 던진다.
        그 밖의 예외도 마커를 failed로 남긴 뒤 그대로 전파한다.
        """
        if request.status != "approved":
            raise BusinessRuleError(
                f"Request {request.requestId} is {request.status}; only approved "
                "requests are dispatched"
            )
        now = now or utc_now()

        if not await self._claim(request, now):
            logger.info("Dispatch skipped for request %s (already claimed)", request.requestId)
            return False

        try:
            await self._run(request)
        except SideEffectError as e:
            await self._mark(request.requestId, "failed", error=e.message)
            logger.error("Dispatch failed for request %s: %s", request.requestId, e.message)
            raise
        except Exception as e:
            # 깨진 requestData 등. in_flight로 남기면 stale_after 동안 재시도가 막힘
            await self._mark(request.requestId, "failed", error=str(e))
            logger.exception("Dispatch crashed for request %s", request.requestId)
            raise

        await self._mark(request.requestId, "done")
        logger.info(
            "Dispatch completed for request %s (%s)",
            request.requestId,
            request.requestType,
        )
        return True

    async def _claim(self, request: ApprovalRequest, now: datetime) -> bool:
        marker = {
            "_id": request.requestId,
            "requestType": request.requestType,
            "status": "in_flight",
            "attempts": 1,
            "lastError": None,
            "claimedAt": now,
            "updatedAt": now,
        }
        try:
            await self.dispatches.insert_one(marker)
            return True
        except DuplicateKeyError:
            pass

        existing = await self.dispatches.find_one({"_id": request.requestId})
        if existing is None or existing["status"] == "done":
            return False
        if existing["status"] == "in_flight":
            claimed_at = as_utc(existing.get("claimedAt"))
            if claimed_at is not None and now - claimed_at < self.stale_after:
                return False

        # 읽은 시점의 status/attempts 그대로일 때만 선점 (동시 재시도 중 하나만 성공)
        claimed = await self.dispatches.find_one_and_update(
            {
                "_id": request.requestId,
                "status": existing["status"],
                "attempts": existing["attempts"],
            },
            {
                "$set": {"status": "in_flight", "claimedAt": now, "updatedAt": now},
                "$inc": {"attempts": 1},
            },
        )
        return claimed is not None

    async def _run(self, request: ApprovalRequest) -> None:
        key = idempotency_key(request.requestId)

        if request.requestType == "leave":
            data = LeaveRequestData(**request.requestData)
            await self.leave_client.deduct_balance(
                request.employeeId,
                data.leaveType,
                data.totalDays,
                key,
            )
        elif request.requestType == "loan":
            data = LoanRequestData(**request.requestData)
            schedule = build_installment_schedule(
                data.loanAmount,
                data.totalInstallments,
                data.startMonth,
            )
            await self.loan_client.activate_loan(data.loanId, schedule, key)
        # overtime: 승인 기록 외 후속 처리 없음

    async def _mark(self, request_id: int, status: str, error: Optional[str] = None) -> None:
        await self.dispatches.update_one(
            {"_id": request_id},
            {"$set": {"status": status, "lastError": error, "updatedAt": utc_now()}},
        )

    async def is_dispatched(self, request_id: int) -> bool:
        marker = await self.dispatches.find_one({"_id": request_id})
        return marker is not None and marker["status"] == "done"

    async def find_undispatched(self) -> List[ApprovalRequest]:
        """
        승인됐지만 후속 처리가 끝나지 않은 요청 목록 (외부 reconciliation 용).
        """
        cursor = self.dispatches.find({"status": "done"}, {"_id": 1})
        done_ids = {doc["_id"] for doc in await cursor.to_list(length=None)}

        cursor = self.approvals.find(
            {"status": "approved", "requestType": {"$in": list(DISPATCHED_TYPES)}}
        )
        docs = await cursor.to_list(length=None)
        return [
            ApprovalRequest.from_document(doc)
            for doc in docs
            if doc["requestId"] not in done_ids
        ]
