from typing import AsyncGenerator

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from approval_workflow.core.config import settings

_client: AsyncIOMotorClient | None = None


def get_client() -> AsyncIOMotorClient:
    """
    싱글톤 패턴으로 MongoDB 클라이언트 생성.
    tz_aware=True 이므로 저장된 시각은 UTC aware datetime으로 돌아온다.
    """
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(settings.MONGODB_URI, tz_aware=True)
    return _client


def get_database() -> AsyncIOMotorDatabase:
    return get_client()[settings.MONGODB_DB_NAME]


async def get_approvals_database() -> AsyncGenerator[AsyncIOMotorDatabase, None]:
    """
    FastAPI 의존성 주입용.
    """
    yield get_database()


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    approvals = db[settings.APPROVALS_COLLECTION]
    await approvals.create_index("requestId", unique=True)
    await approvals.create_index([("status", 1), ("requestType", 1)])
    await approvals.create_index("employeeId")
    await approvals.create_index("approvalChain.approverEmployeeId")
    await approvals.create_index("approvalChain.delegatedTo")

    delegations = db[settings.DELEGATIONS_COLLECTION]
    await delegations.create_index("delegationId", unique=True)
    await delegations.create_index([("fromEmployeeId", 1), ("isActive", 1)])

    dispatches = db[settings.DISPATCHES_COLLECTION]
    await dispatches.create_index("status")


def close_client() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
