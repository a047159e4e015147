from typing import Optional

from pydantic import BaseModel


class ApprovalEventMessage(BaseModel):
    """
    결재 상태가 바뀔 때 RabbitMQ로 publish 되는 메시지.
    알림 서비스가 요청자 / 다음 결재자에게 전달한다.
    """
    requestId: int
    requestType: str
    event: str  # "created" | "approved" | "rejected" | "cancelled" | "delegated" | "escalated"
    status: str
    currentStep: int
    employeeId: str
    actorId: str
    nextApproverId: Optional[str] = None
