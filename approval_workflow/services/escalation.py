from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from approval_workflow.core.config import get_policy
from approval_workflow.schemas.approval import OPEN_STATUSES, ApprovalRequest, utc_now


def step_started_at(request: ApprovalRequest) -> datetime:
    """
    현재 단계가 시작된 시각.
    - 첫 단계: 요청 생성 시각
    - 그 외: 직전 단계의 decidedAt (없으면 생성 시각)
    """
    index = request.currentStep
    if index > 0 and index - 1 < len(request.approvalChain):
        previous = request.approvalChain[index - 1]
        if previous.decidedAt is not None:
            return previous.decidedAt
    return request.createdAt


def is_request_overdue(
    request: ApprovalRequest,
    now: Optional[datetime] = None,
    sla: Optional[timedelta] = None,
) -> bool:
    """
    읽기 시점에 계산하는 순수 함수. 상태를 바꾸지 않는다.
    경과 시간이 SLA와 정확히 같으면 아직 기한 내로 본다.
    """
    if request.status not in OPEN_STATUSES:
        return False
    now = now or utc_now()
    sla = sla if sla is not None else get_policy().escalation_after
    return now - step_started_at(request) > sla


def find_overdue(
    requests: Iterable[ApprovalRequest],
    now: Optional[datetime] = None,
    sla: Optional[timedelta] = None,
) -> List[ApprovalRequest]:
    now = now or utc_now()
    return [r for r in requests if is_request_overdue(r, now=now, sla=sla)]
