from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

RequestType = Literal["overtime", "leave", "loan"]
RequestStatus = Literal[
    "pending", "in_progress", "approved", "rejected", "cancelled", "escalated"
]
StepStatus = Literal["pending", "approved", "rejected", "skipped"]
HistoryAction = Literal[
    "created", "approved", "rejected", "cancelled", "delegated", "escalated"
]

ACTIONABLE_STATUSES = ("pending", "in_progress", "escalated")
OPEN_STATUSES = ("pending", "in_progress")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo 드라이버 설정에 따라 naive datetime이 올 수 있어 UTC로 통일."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ApprovalChainStep(BaseModel):
    level: int
    approverEmployeeId: str
    approverName: str = ""
    approverJobTitle: str = ""
    status: StepStatus = "pending"
    notes: Optional[str] = None
    delegatedTo: Optional[str] = None
    delegatedToName: Optional[str] = None
    decidedAt: Optional[datetime] = None

    @field_validator("decidedAt")
    @classmethod
    def normalize_decided_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class ApprovalHistoryEntry(BaseModel):
    """
    요청 문서에 함께 저장되는 감사 로그 한 줄.
    override=True 이면 관리자가 지정 결재자 대신 처리한 것.
    """
    action: HistoryAction
    stepIndex: Optional[int] = None
    performedBy: str
    performedByName: str = ""
    override: bool = False
    notes: Optional[str] = None
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)


class ApprovalRequest(BaseModel):
    """
    MongoDB에 저장되는 결재 요청 Document.
    approvalChain은 요청 안에 비정규화되어 한 번의 갱신으로 원자적으로 바뀐다.
    """
    requestId: int
    requestType: RequestType
    employeeId: str
    employeeName: str = ""
    requestData: Dict[str, Any] = Field(default_factory=dict)
    approvalChain: List[ApprovalChainStep] = Field(default_factory=list)
    currentStep: int = 0
    status: RequestStatus = "pending"
    sourceRequestId: Optional[str] = None
    history: List[ApprovalHistoryEntry] = Field(default_factory=list)
    version: int = 0
    createdAt: datetime
    updatedAt: datetime

    @field_validator("createdAt", "updatedAt")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return as_utc(v)

    @property
    def current(self) -> Optional[ApprovalChainStep]:
        if 0 <= self.currentStep < len(self.approvalChain):
            return self.approvalChain[self.currentStep]
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status not in ACTIONABLE_STATUSES

    @classmethod
    def from_document(cls, raw: dict) -> "ApprovalRequest":
        """
        MongoDB Document(dict) -> Pydantic 모델로 변환.
        _id 필드는 제외.
        """
        data = dict(raw)
        data.pop("_id", None)
        return cls(**data)

    def to_document(self) -> dict:
        return self.model_dump(mode="python")


# ── 요청 유형별 payload ──────────────────────────────────────────────


class LeaveRequestData(BaseModel):
    leaveType: Literal["annual", "sick", "emergency", "unpaid"] = "annual"
    startDate: date
    endDate: date
    totalDays: float = Field(..., gt=0)
    reason: Optional[str] = None

    @model_validator(mode="after")
    def validate_range(self) -> "LeaveRequestData":
        if self.startDate > self.endDate:
            raise ValueError("startDate must not be after endDate")
        return self


class LoanRequestData(BaseModel):
    """
    installment: totalInstallments 회 분할 상환
    monthly_advance: 급여 가불. 다음 달 한 번에 전액 상환
    """
    loanId: str = Field(..., min_length=1)
    loanType: Literal["installment", "monthly_advance"] = "installment"
    loanAmount: float = Field(..., gt=0)
    totalInstallments: int = Field(1, ge=1, le=60)
    startMonth: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    reason: Optional[str] = None

    @model_validator(mode="after")
    def validate_installments(self) -> "LoanRequestData":
        if self.loanType == "monthly_advance" and self.totalInstallments != 1:
            raise ValueError("monthly_advance loans are repaid in a single installment")
        if round(self.loanAmount * 100) < self.totalInstallments:
            raise ValueError("each installment must be at least 0.01")
        return self


class OvertimeRequestData(BaseModel):
    workDate: date
    hours: float = Field(..., gt=0, le=24)
    reason: Optional[str] = None


REQUEST_DATA_MODELS = {
    "leave": LeaveRequestData,
    "loan": LoanRequestData,
    "overtime": OvertimeRequestData,
}


# ── 호출자 / 명령 ────────────────────────────────────────────────────


class CallerContext(BaseModel):
    employeeId: str
    employeeName: str = ""
    permissions: List[str] = Field(default_factory=list)

    @field_validator("permissions", mode="before")
    @classmethod
    def normalize_permissions(cls, v: Union[None, List[str], Dict[str, bool]]) -> List[str]:
        # {"approval.view": true, ...} 형태의 권한 맵도 허용
        if v is None:
            return []
        if isinstance(v, dict):
            return [key for key, granted in v.items() if granted]
        return list(v)


class ApprovalRequestCreate(BaseModel):
    """
    POST /approvals 요청 바디
    """
    requestType: RequestType
    employeeId: str = Field(..., min_length=1)
    employeeName: str = ""
    requestData: Dict[str, Any] = Field(default_factory=dict)
    sourceRequestId: Optional[str] = None


class ChainPreviewRequest(BaseModel):
    requestType: RequestType
    employeeId: str = Field(..., min_length=1)


class DecisionCommand(BaseModel):
    notes: str = ""


class DelegateCommand(BaseModel):
    stepIndex: int = Field(..., ge=0)
    delegatedTo: str = Field(..., min_length=1)
    delegatedToName: str = ""


class EscalateCommand(BaseModel):
    notes: str = ""


# ── 결과 ─────────────────────────────────────────────────────────────


class OperationResult(BaseModel):
    success: bool
    error: Optional[str] = None
    errorCode: Optional[str] = None
    retryable: bool = False
    request: Optional[ApprovalRequest] = None


class ChainPreview(BaseModel):
    chain: List[ApprovalChainStep]
    errors: List[str]


class OverdueStatus(BaseModel):
    requestId: int
    overdue: bool
    stepStartedAt: Optional[datetime] = None
