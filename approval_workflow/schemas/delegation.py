from datetime import date, datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from approval_workflow.schemas.approval import RequestType, as_utc


class DelegationCreate(BaseModel):
    """
    POST /delegations 요청 바디.
    fromEmployeeId를 비우면 호출자 본인의 결재 권한을 위임한다.
    """
    fromEmployeeId: Optional[str] = None
    fromEmployeeName: str = ""
    toEmployeeId: str = Field(..., min_length=1)
    toEmployeeName: str = ""
    startDate: date
    endDate: date
    requestTypes: Union[Literal["all"], List[RequestType]] = "all"

    @model_validator(mode="after")
    def validate_range(self) -> "DelegationCreate":
        if self.startDate > self.endDate:
            raise ValueError("startDate must not be after endDate")
        return self


class ApprovalDelegation(BaseModel):
    delegationId: int
    fromEmployeeId: str
    fromEmployeeName: str = ""
    toEmployeeId: str
    toEmployeeName: str = ""
    startDate: date
    endDate: date
    requestTypes: Union[Literal["all"], List[RequestType]] = "all"
    isActive: bool = True
    createdBy: str
    createdAt: datetime

    def covers(self, request_type: str, on_date: date) -> bool:
        if not self.isActive:
            return False
        if not (self.startDate <= on_date <= self.endDate):
            return False
        return self.requestTypes == "all" or request_type in self.requestTypes

    @classmethod
    def from_document(cls, raw: dict) -> "ApprovalDelegation":
        data = dict(raw)
        data.pop("_id", None)
        data["createdAt"] = as_utc(data["createdAt"])
        return cls(**data)

    def to_document(self) -> dict:
        # date는 BSON 타입이 아니므로 ISO 문자열로 저장
        doc = self.model_dump(mode="python")
        doc["startDate"] = self.startDate.isoformat()
        doc["endDate"] = self.endDate.isoformat()
        return doc
