import logging
from typing import Optional

from aio_pika.abc import AbstractExchange

from approval_workflow.core.rabbitmq import publish_event
from approval_workflow.schemas.approval import ApprovalRequest
from approval_workflow.schemas.message import ApprovalEventMessage

logger = logging.getLogger(__name__)


def build_event(request: ApprovalRequest, event: str, actor_id: str) -> ApprovalEventMessage:
    step = request.current if request.status in ("pending", "in_progress", "escalated") else None
    next_approver = None
    if step is not None:
        next_approver = step.delegatedTo or step.approverEmployeeId
    return ApprovalEventMessage(
        requestId=request.requestId,
        requestType=request.requestType,
        event=event,
        status=request.status,
        currentStep=request.currentStep,
        employeeId=request.employeeId,
        actorId=actor_id,
        nextApproverId=next_approver,
    )


class ApprovalEventPublisher:
    """
    커밋된 상태 변경을 알림 서비스로 흘려보낸다.
    publish 실패는 로그만 남기고 상태 전이를 되돌리지 않는다.
    """

    def __init__(self, exchange: Optional[AbstractExchange] = None):
        self.exchange = exchange

    async def publish(self, request: ApprovalRequest, event: str, actor_id: str) -> None:
        if self.exchange is None:
            logger.debug("No RabbitMQ exchange; skipping %s event for request %s", event, request.requestId)
            return
        msg = build_event(request, event, actor_id)
        try:
            await publish_event(self.exchange, msg)
        except Exception:
            # 닫힌 채널(RuntimeError), 타임아웃 등 브로커 쪽 실패 전부
            logger.exception(
                "Failed to publish %s event for request %s",
                event,
                request.requestId,
            )
