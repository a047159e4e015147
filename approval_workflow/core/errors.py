"""
결재 엔진 에러 분류.

서비스 계층 내부에서는 예외로 던지고, ApprovalEngine 경계에서
OperationResult(success=False, errorCode=...)로 변환된다.
"""

AUTHORIZATION = "authorization"
STATE_CONFLICT = "state_conflict"
BUSINESS_RULE = "business_rule"
HIERARCHY = "hierarchy"
NOT_FOUND = "not_found"
STORE_UNAVAILABLE = "store_unavailable"
INTERNAL = "internal"


class ApprovalError(Exception):
    code = INTERNAL
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class HierarchyError(ApprovalError):
    """
    조직도 상 결재 라인을 만들 수 없는 경우.
    kind: "cycle" | "broken"
    """
    code = HIERARCHY

    CYCLE = "cycle"
    BROKEN = "broken"

    def __init__(self, kind: str, employee_id: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.employee_id = employee_id


class AuthorizationError(ApprovalError):
    code = AUTHORIZATION


class StateConflictError(ApprovalError):
    """이미 종결되었거나 다른 사용자가 먼저 처리한 요청. 재조회 후 다시 판단해야 함."""
    code = STATE_CONFLICT


class BusinessRuleError(ApprovalError):
    code = BUSINESS_RULE


class RequestNotFoundError(ApprovalError):
    code = NOT_FOUND


class StoreTransactionError(ApprovalError):
    """일시적인 저장소 장애. 같은 명령을 그대로 재시도해도 안전함."""
    code = STORE_UNAVAILABLE
    retryable = True


class SideEffectError(ApprovalError):
    """
    최종 승인 후 후속 처리(연차 차감, 대출 활성화) 실패.
    상태 전이는 이미 커밋되었으므로 dispatch만 다시 시도하면 된다.
    """
    code = "dispatch_failed"
    retryable = True


class DispatchInProgressError(StateConflictError):
    """다른 호출이 후속 처리를 선점한 상태. 잠시 후 dispatch를 다시 시도하면 된다."""
    retryable = True
