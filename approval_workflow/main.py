from fastapi import FastAPI

from approval_workflow.api.approvals import router as approvals_router
from approval_workflow.api.delegations import router as delegations_router
from approval_workflow.api.responses import approval_error_handler
from approval_workflow.core.db import close_client, ensure_indexes, get_database
from approval_workflow.core.errors import ApprovalError
from approval_workflow.core.logging import setup_logging
from approval_workflow.core.rabbitmq import close_rabbitmq, init_rabbitmq

app = FastAPI(
    title="Approval Workflow Service",
    version="0.1.0",
    description="Hierarchical approval workflow (REST + MongoDB + RabbitMQ events)",
)


@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "service": "approval-workflow-service",
    }


@app.get("/")
async def root():
    return {
        "message": "Approval Workflow Service is running",
        "docs": "/docs",
    }


@app.on_event("startup")
async def on_startup():
    # 1) 로깅
    setup_logging()
    # 2) MongoDB 인덱스
    await ensure_indexes(get_database())
    # 3) RabbitMQ 연결
    await init_rabbitmq(app)


@app.on_event("shutdown")
async def on_shutdown():
    await close_rabbitmq(app)
    close_client()


app.add_exception_handler(ApprovalError, approval_error_handler)
app.include_router(approvals_router)
app.include_router(delegations_router)
