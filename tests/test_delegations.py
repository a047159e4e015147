from datetime import date

import pytest
from pydantic import ValidationError

from approval_workflow.core.errors import AuthorizationError, BusinessRuleError, RequestNotFoundError
from approval_workflow.schemas.delegation import DelegationCreate
from approval_workflow.services.delegations import DelegationService


def _payload(**overrides):
    data = {
        "toEmployeeId": "E2",
        "toEmployeeName": "Lee",
        "startDate": date(2026, 3, 1),
        "endDate": date(2026, 3, 31),
    }
    data.update(overrides)
    return DelegationCreate(**data)


@pytest.fixture
def service(db):
    return DelegationService(db)


class TestDelegationService:
    async def test_create_for_self(self, service, caller):
        delegation = await service.create(_payload(), caller("M1"))
        assert delegation.delegationId == 1
        assert delegation.fromEmployeeId == "M1"
        assert delegation.isActive

        stored = await service.get(1)
        assert stored.startDate == date(2026, 3, 1)
        assert stored.requestTypes == "all"

    async def test_on_behalf_requires_permission(self, service, caller):
        with pytest.raises(AuthorizationError):
            await service.create(_payload(fromEmployeeId="M2"), caller("M1"))

        delegation = await service.create(
            _payload(fromEmployeeId="M2"), caller("HR", "approval.delegate")
        )
        assert delegation.fromEmployeeId == "M2"
        assert delegation.createdBy == "HR"

    async def test_self_delegation_rejected(self, service, caller):
        with pytest.raises(BusinessRuleError):
            await service.create(_payload(toEmployeeId="M1"), caller("M1"))

    def test_invalid_range(self):
        with pytest.raises(ValidationError):
            _payload(startDate=date(2026, 4, 1))

    async def test_find_active_and_deactivate(self, service, caller):
        await service.create(_payload(requestTypes=["leave"]), caller("M1"))
        await service.create(_payload(toEmployeeId="E1"), caller("M2"))

        active = await service.find_active(["M1", "M2"], "leave", date(2026, 3, 15))
        assert {d.fromEmployeeId for d in active} == {"M1", "M2"}
        active = await service.find_active(["M1", "M2"], "loan", date(2026, 3, 15))
        assert [d.fromEmployeeId for d in active] == ["M2"]
        assert await service.find_active(["M1", "M2"], "leave", date(2026, 4, 1)) == []

        with pytest.raises(AuthorizationError):
            await service.deactivate(1, caller("M2"))
        deactivated = await service.deactivate(1, caller("M1"))
        assert not deactivated.isActive
        active = await service.find_active(["M1"], "leave", date(2026, 3, 15))
        assert active == []

    async def test_get_all_and_missing(self, service, caller):
        await service.create(_payload(), caller("M1"))
        await service.create(_payload(toEmployeeId="E1"), caller("M2"))
        assert [d.delegationId for d in await service.get_all()] == [2, 1]
        assert [d.delegationId for d in await service.get_all("M1")] == [1]

        with pytest.raises(RequestNotFoundError):
            await service.get(99)
