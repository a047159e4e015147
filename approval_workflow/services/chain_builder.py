import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List, Optional

from approval_workflow.core.config import ApprovalPolicy, get_policy
from approval_workflow.core.errors import HierarchyError
from approval_workflow.schemas.approval import ApprovalChainStep
from approval_workflow.schemas.delegation import ApprovalDelegation
from approval_workflow.schemas.hierarchy import EmployeeHierarchyInfo
from approval_workflow.services.hierarchy import index_by_id, resolve_chain

logger = logging.getLogger(__name__)


@dataclass
class ChainResult:
    chain: List[ApprovalChainStep] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def generate_approval_chain(
    subject: EmployeeHierarchyInfo,
    all_info: Iterable[EmployeeHierarchyInfo],
    request_type: str,
    policy: Optional[ApprovalPolicy] = None,
) -> ChainResult:
    """
    요청자의 상위 결재 라인을 만든다.

    - 직급(jobLevel)이 올라갈 때마다 그 직급의 첫 관리자를 한 단계로 추가
    - 같은 결재자가 연속으로 나오면 한 번만
    - 최고 직급에 도달하거나 요청 유형별 최대 단계 수에 도달하면 종료
    - 조직도 오류가 하나라도 있으면 chain은 비우고 errors만 채운다
    """
    policy = policy or get_policy()
    all_info = list(all_info)
    by_id = index_by_id(all_info)

    try:
        managers = resolve_chain(subject, all_info, policy.top_job_level)
    except HierarchyError as e:
        logger.warning(
            "Approval chain generation failed for employee %s (%s): %s",
            subject.employeeId,
            e.kind,
            e.message,
        )
        return ChainResult(chain=[], errors=[e.message])

    max_steps = policy.max_steps_for(request_type)
    steps: List[ApprovalChainStep] = []
    last_level = subject.jobLevel
    last_approver: Optional[str] = None

    for employee_id, level in managers:
        if len(steps) >= max_steps:
            break
        if employee_id == last_approver or level <= last_level:
            continue

        manager = by_id[employee_id]
        steps.append(
            ApprovalChainStep(
                level=level,
                approverEmployeeId=manager.employeeId,
                approverName=manager.employeeName,
                approverJobTitle=manager.jobTitle,
            )
        )
        last_level = level
        last_approver = employee_id

        if level >= policy.top_job_level:
            break

    errors = validate_chain(steps, subject.employeeId)
    if errors:
        return ChainResult(chain=[], errors=errors)
    return ChainResult(chain=steps, errors=[])


def validate_chain(chain: List[ApprovalChainStep], subject_id: str) -> List[str]:
    """결재 라인 자체의 일관성 검사 (레벨 증가, 결재자 중복, 본인 결재)."""
    errors: List[str] = []
    seen = set()
    previous_level = None
    for index, step in enumerate(chain):
        if previous_level is not None and step.level <= previous_level:
            errors.append(f"Step {index} level {step.level} is not above level {previous_level}")
        if step.approverEmployeeId in seen:
            errors.append(f"Approver {step.approverEmployeeId} appears more than once")
        if step.approverEmployeeId == subject_id:
            errors.append(f"Employee {subject_id} cannot approve their own request")
        seen.add(step.approverEmployeeId)
        previous_level = step.level
    return errors


def apply_active_delegations(
    chain: List[ApprovalChainStep],
    delegations: Iterable[ApprovalDelegation],
    request_type: str,
    on_date: date,
    subject_id: str,
) -> List[ApprovalChainStep]:
    """
    결재자에게 유효한 위임이 있으면 delegatedTo를 채운 새 체인을 반환한다.
    approverEmployeeId(원 결재자)는 바뀌지 않는다.
    요청자 본인에게 위임된 건은 적용하지 않는다.
    """
    active = [
        d for d in delegations
        if d.covers(request_type, on_date) and d.toEmployeeId != subject_id
    ]
    result: List[ApprovalChainStep] = []
    for step in chain:
        match = next(
            (d for d in active if d.fromEmployeeId == step.approverEmployeeId),
            None,
        )
        if match is None:
            result.append(step)
            continue
        result.append(
            step.model_copy(
                update={
                    "delegatedTo": match.toEmployeeId,
                    "delegatedToName": match.toEmployeeName,
                }
            )
        )
    return result
