import logging

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from approval_workflow.core import errors
from approval_workflow.core.errors import ApprovalError
from approval_workflow.schemas.approval import OperationResult

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    errors.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    errors.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    errors.STATE_CONFLICT: status.HTTP_409_CONFLICT,
    errors.BUSINESS_RULE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    errors.HIERARCHY: status.HTTP_422_UNPROCESSABLE_ENTITY,
    errors.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    "dispatch_failed": status.HTTP_502_BAD_GATEWAY,
    errors.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def result_response(result: OperationResult, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    """
    OperationResult -> HTTP 응답.
    실패해도 바디 형태는 같고 상태 코드만 errorCode에 맞춘다.
    """
    if result.success:
        code = success_status
    else:
        code = STATUS_BY_CODE.get(result.errorCode, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=code, content=jsonable_encoder(result))


async def approval_error_handler(request: Request, exc: ApprovalError) -> JSONResponse:
    """조회 API 등에서 올라온 ApprovalError를 OperationResult 형태로 변환."""
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return result_response(
        OperationResult(
            success=False,
            error=exc.message,
            errorCode=exc.code,
            retryable=exc.retryable,
        )
    )
