from typing import Optional

from pydantic import BaseModel, Field


class EmployeeHierarchyInfo(BaseModel):
    """
    HR 모듈이 소유하는 조직도 스냅샷의 한 행 (읽기 전용).
    jobLevel: 1(실무자) ~ TOP_JOB_LEVEL(최고 경영진)
    """
    employeeId: str = Field(..., min_length=1)
    employeeName: str = ""
    jobTitle: str = ""
    managerId: Optional[str] = None
    departmentId: str = ""
    jobPositionId: str = ""
    jobLevel: int = Field(..., ge=1)
