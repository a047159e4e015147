import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

import httpx

from approval_workflow.core.config import settings
from approval_workflow.core.errors import BusinessRuleError, SideEffectError
from approval_workflow.core.http import ServiceClient

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


def build_installment_schedule(
    amount: float,
    installments: int,
    start_month: str,
) -> List[Dict[str, object]]:
    """
    대출 상환 스케줄. 금액을 센트 단위로 균등 분할하고,
    나누어 떨어지지 않는 센트는 뒤쪽 회차에 1센트씩 얹는다.
    모든 회차 금액은 0보다 크고 합계는 원금과 같다.

    >>> build_installment_schedule(1000, 3, "2026-11")
    [{'month': '2026-11', 'amount': 333.33}, {'month': '2026-12', 'amount': 333.33}, {'month': '2027-01', 'amount': 333.34}]
    """
    cents = int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents < installments:
        raise BusinessRuleError(
            f"Cannot split {amount} into {installments} installments of at least 0.01"
        )
    base, remainder = divmod(cents, installments)
    year, month = (int(part) for part in start_month.split("-"))

    schedule = []
    for i in range(installments):
        index = month - 1 + i
        label = f"{year + index // 12:04d}-{index % 12 + 1:02d}"
        share = base + (1 if i >= installments - remainder else 0)
        schedule.append({"month": label, "amount": float(Decimal(share) / 100)})
    return schedule


class LeaveBalanceClient(ServiceClient):
    """
    Employee Service의 연차 잔액 차감 API.
    requestId를 Idempotency-Key로 넘겨 같은 요청이 두 번 차감되지 않게 한다.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings.EMPLOYEE_SERVICE_BASE_URL, client)

    async def deduct_balance(
        self,
        employee_id: str,
        leave_type: str,
        days: float,
        idempotency_key: str,
    ) -> None:
        payload = {
            "employeeId": employee_id,
            "leaveType": leave_type,
            "days": days,
            "requestId": idempotency_key,
        }
        try:
            await self.request(
                "POST",
                "/leaves/internal/deductions",
                json=payload,
                headers={IDEMPOTENCY_HEADER: idempotency_key},
            )
        except httpx.HTTPError as e:
            raise SideEffectError(
                f"Leave balance deduction failed for employee {employee_id}: {e}"
            ) from e
        logger.info(
            "Leave balance deducted: employeeId=%s, leaveType=%s, days=%s, key=%s",
            employee_id,
            leave_type,
            days,
            idempotency_key,
        )


class LoanClient(ServiceClient):
    """대출 활성화 (status=active + 상환 스케줄 등록)."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings.LOAN_SERVICE_BASE_URL, client)

    async def activate_loan(
        self,
        loan_id: str,
        schedule: List[Dict[str, object]],
        idempotency_key: str,
    ) -> None:
        payload = {
            "status": "active",
            "installments": schedule,
            "requestId": idempotency_key,
        }
        try:
            await self.request(
                "POST",
                f"/loans/{loan_id}/activate",
                json=payload,
                headers={IDEMPOTENCY_HEADER: idempotency_key},
            )
        except httpx.HTTPError as e:
            raise SideEffectError(f"Loan activation failed for loan {loan_id}: {e}") from e
        logger.info(
            "Loan activated: loanId=%s, installments=%d, key=%s",
            loan_id,
            len(schedule),
            idempotency_key,
        )
