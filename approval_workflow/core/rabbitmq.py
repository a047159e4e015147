import logging

import aio_pika
from aio_pika import ExchangeType, Message
from aio_pika.abc import AbstractExchange
from fastapi import FastAPI

from approval_workflow.core.config import settings
from approval_workflow.schemas.message import ApprovalEventMessage

logger = logging.getLogger(__name__)

RABBITMQ_QUEUE = "approval.notifications"


async def init_rabbitmq(app: FastAPI) -> None:
    app.state.rabbit_exchange = None
    if not settings.RABBITMQ_ENABLED:
        logger.info("RabbitMQ disabled; approval events will not be published")
        return

    connection = await aio_pika.connect_robust(settings.RABBITMQ_URL)
    channel = await connection.channel()

    exchange = await channel.declare_exchange(
        settings.RABBITMQ_EXCHANGE,
        ExchangeType.DIRECT,
        durable=True,
    )
    queue = await channel.declare_queue(RABBITMQ_QUEUE, durable=True)
    await queue.bind(exchange, routing_key=settings.RABBITMQ_ROUTING_KEY)

    app.state.rabbit_connection = connection
    app.state.rabbit_channel = channel
    app.state.rabbit_exchange = exchange


async def close_rabbitmq(app: FastAPI) -> None:
    connection = getattr(app.state, "rabbit_connection", None)
    if connection:
        await connection.close()


async def publish_event(exchange: AbstractExchange, msg: ApprovalEventMessage) -> None:
    """
    ApprovalEventMessage를 RabbitMQ로 publish.
    """
    body = msg.model_dump_json().encode("utf-8")

    message = Message(
        body=body,
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )

    await exchange.publish(message, routing_key=settings.RABBITMQ_ROUTING_KEY)
