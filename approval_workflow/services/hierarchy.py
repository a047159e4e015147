import logging
from typing import Dict, Iterable, List, Tuple

import httpx

from approval_workflow.core.config import settings
from approval_workflow.core.errors import HierarchyError, StoreTransactionError
from approval_workflow.core.http import ServiceClient
from approval_workflow.schemas.hierarchy import EmployeeHierarchyInfo

logger = logging.getLogger(__name__)


def index_by_id(
    employees: Iterable[EmployeeHierarchyInfo],
) -> Dict[str, EmployeeHierarchyInfo]:
    return {e.employeeId: e for e in employees}


def resolve_chain(
    employee: EmployeeHierarchyInfo,
    all_employees: Iterable[EmployeeHierarchyInfo],
    top_level: int,
) -> List[Tuple[str, int]]:
    """
    managerId를 따라 위로 올라가며 (employeeId, jobLevel) 목록을 반환한다.
    대상 직원 본인은 포함하지 않는다.

    - 같은 직원을 두 번 만나면 HierarchyError(cycle)
    - top_level 미만인데 managerId가 없거나, managerId가 스냅샷에 없으면
      HierarchyError(broken)
    """
    by_id = index_by_id(all_employees)
    chain: List[Tuple[str, int]] = []
    visited = {employee.employeeId}
    node = employee

    while node.managerId:
        manager = by_id.get(node.managerId)
        if manager is None:
            raise HierarchyError(
                HierarchyError.BROKEN,
                node.employeeId,
                f"Manager {node.managerId} of employee {node.employeeId} "
                "is not in the hierarchy snapshot; fix the employee's manager "
                "assignment before submitting",
            )
        if manager.employeeId in visited:
            raise HierarchyError(
                HierarchyError.CYCLE,
                manager.employeeId,
                f"Manager chain of employee {employee.employeeId} loops back to "
                f"{manager.employeeId}; the reporting lines must form a tree",
            )
        visited.add(manager.employeeId)
        chain.append((manager.employeeId, manager.jobLevel))
        node = manager

    if node.jobLevel < top_level:
        raise HierarchyError(
            HierarchyError.BROKEN,
            node.employeeId,
            f"Employee {node.employeeId} (level {node.jobLevel}) has no manager; "
            f"employee {employee.employeeId} has no resolvable manager chain",
        )

    if employee.jobLevel < top_level and not any(
        level > employee.jobLevel for _, level in chain
    ):
        raise HierarchyError(
            HierarchyError.BROKEN,
            employee.employeeId,
            f"Manager chain of employee {employee.employeeId} never reaches a "
            "level above the employee's own",
        )

    return chain


class HierarchyClient(ServiceClient):
    """
    Employee Service에서 조직도 스냅샷을 가져온다.
    결재 라인 생성 직전마다 새로 조회하며, 내부 캐시는 두지 않는다.
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        super().__init__(settings.EMPLOYEE_SERVICE_BASE_URL, client)

    async def fetch_snapshot(self) -> List[EmployeeHierarchyInfo]:
        try:
            resp = await self.request("GET", "/employees/hierarchy")
        except httpx.HTTPError as e:
            logger.error("Failed to fetch hierarchy snapshot: %s", e)
            raise StoreTransactionError(
                "Employee Service is unavailable; hierarchy snapshot could not be loaded"
            ) from e
        return [EmployeeHierarchyInfo(**row) for row in resp.json()]
