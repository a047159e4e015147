from datetime import datetime, timezone
from typing import AsyncGenerator, List

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from approval_workflow.api.deps import (
    get_dispatcher,
    get_hierarchy_client,
    get_publisher,
)
from approval_workflow.core.config import ApprovalPolicy
from approval_workflow.core.db import get_approvals_database
from approval_workflow.main import app
from approval_workflow.schemas.approval import (
    ApprovalChainStep,
    ApprovalHistoryEntry,
    ApprovalRequest,
    CallerContext,
)
from approval_workflow.schemas.hierarchy import EmployeeHierarchyInfo
from approval_workflow.services.delegations import DelegationService
from approval_workflow.services.dispatcher import SideEffectDispatcher
from approval_workflow.services.engine import ApprovalEngine
from approval_workflow.services.hierarchy import HierarchyClient
from approval_workflow.services.ledgers import LeaveBalanceClient, LoanClient
from approval_workflow.services.notifications import ApprovalEventPublisher

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

# E1 -> M1 -> M2 -> CEO, E2는 E1의 동료
HIERARCHY_ROWS = [
    {"employeeId": "E1", "employeeName": "Kim", "jobTitle": "Engineer", "managerId": "M1", "jobLevel": 1},
    {"employeeId": "E2", "employeeName": "Lee", "jobTitle": "Engineer", "managerId": "M1", "jobLevel": 1},
    {"employeeId": "M1", "employeeName": "Park", "jobTitle": "Team Lead", "managerId": "M2", "jobLevel": 2},
    {"employeeId": "M2", "employeeName": "Choi", "jobTitle": "Director", "managerId": "CEO", "jobLevel": 3},
    {"employeeId": "CEO", "employeeName": "Jung", "jobTitle": "CEO", "managerId": None, "jobLevel": 4},
]


class FakeExchange:
    """aio-pika Exchange 대신 publish된 메시지를 모아둔다. fail_with가 있으면 그 예외를 던진다."""

    def __init__(self):
        self.messages = []
        self.fail_with = None

    async def publish(self, message, routing_key):
        if self.fail_with is not None:
            raise self.fail_with
        self.messages.append((routing_key, message))


class LedgerStub:
    """Employee/Loan Service 대역. fail=True 이면 503."""

    def __init__(self):
        self.calls: List[httpx.Request] = []
        self.fail = False

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.fail:
            return httpx.Response(503, json={"detail": "unavailable"})
        return httpx.Response(200, json={"ok": True})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self.handle),
            base_url="http://ledger",
        )


def make_caller(employee_id: str, *permissions: str) -> CallerContext:
    return CallerContext(employeeId=employee_id, employeeName=employee_id, permissions=list(permissions))


@pytest.fixture
def hierarchy() -> List[EmployeeHierarchyInfo]:
    return [EmployeeHierarchyInfo(**row) for row in HIERARCHY_ROWS]


@pytest.fixture
def policy() -> ApprovalPolicy:
    return ApprovalPolicy()


@pytest.fixture
def caller():
    return make_caller


@pytest.fixture
def build_request():
    """저장소 없이 상태 머신을 시험하기 위한 요청 팩토리."""

    def _build(approvers=("M1", "M2", "CEO"), request_type="leave", employee_id="E1", **overrides):
        chain = [
            ApprovalChainStep(level=index + 2, approverEmployeeId=approver, approverName=approver)
            for index, approver in enumerate(approvers)
        ]
        data = {
            "requestId": 1,
            "requestType": request_type,
            "employeeId": employee_id,
            "employeeName": employee_id,
            "requestData": {},
            "approvalChain": chain,
            "currentStep": 0,
            "status": "pending",
            "history": [
                ApprovalHistoryEntry(action="created", performedBy=employee_id, timestamp=NOW)
            ],
            "version": 0,
            "createdAt": NOW,
            "updatedAt": NOW,
        }
        data.update(overrides)
        return ApprovalRequest(**data)

    return _build


@pytest.fixture
def db():
    return AsyncMongoMockClient()["approval_test"]


@pytest.fixture
def ledger() -> LedgerStub:
    return LedgerStub()


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def dispatcher(db, ledger) -> SideEffectDispatcher:
    return SideEffectDispatcher(
        db,
        leave_client=LeaveBalanceClient(client=ledger.client()),
        loan_client=LoanClient(client=ledger.client()),
    )


@pytest.fixture
def publisher(exchange) -> ApprovalEventPublisher:
    return ApprovalEventPublisher(exchange)


@pytest.fixture
def engine(db, dispatcher, publisher, policy) -> ApprovalEngine:
    return ApprovalEngine(
        db,
        dispatcher=dispatcher,
        publisher=publisher,
        delegations=DelegationService(db),
        policy=policy,
    )


@pytest.fixture
async def client(db, dispatcher, publisher) -> AsyncGenerator[AsyncClient, None]:
    """Employee Service / Mongo / RabbitMQ를 대역으로 바꾼 API 클라이언트"""

    def hierarchy_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=HIERARCHY_ROWS)

    async def override_db():
        yield db

    app.dependency_overrides[get_approvals_database] = override_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_hierarchy_client] = lambda: HierarchyClient(
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(hierarchy_handler),
            base_url="http://employee-service",
        )
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
