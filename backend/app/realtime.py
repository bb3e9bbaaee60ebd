"""Process-wide realtime wiring: broker transport, persistence gateway and stream client.

Components built here share one gateway and one stream client; closing a
component releases its own subscriptions, and ``shutdown_realtime`` releases
whatever is still open.
"""

from __future__ import annotations

import logging
import uuid

from app.config import Settings, get_settings
from app.database import build_engine, build_session_factory
from app.gateway import InMemoryGateway, SQLGateway
from app.models import Base
from app.services.cards import CardLookupService
from app.services.conversations import ConversationSynchronizer
from app.services.notification_factory import NotificationFactory
from app.services.notifications import NotificationDispatcher
from app.services.rewards import RewardNotificationQueue
from judgeline.realtime.gateway import PersistenceGateway
from judgeline.realtime.stream import EventStreamClient
from judgeline.realtime.transport import BrokerConfig, RedisNATSTransport, TransportUnavailableError

logger = logging.getLogger(__name__)


def build_transport(settings: Settings) -> RedisNATSTransport:
    return RedisNATSTransport(
        BrokerConfig(
            redis_url=settings.realtime_redis_url,
            redis_prefix=settings.realtime_namespace,
            nats_url=settings.realtime_nats_url,
            nats_prefix=settings.realtime_namespace,
            node_id=settings.realtime_node_id or uuid.uuid4().hex,
        )
    )


def build_gateway(settings: Settings, transport: RedisNATSTransport) -> PersistenceGateway:
    if settings.gateway_backend == "sql":
        engine = build_engine(settings)
        Base.metadata.create_all(bind=engine)
        return SQLGateway(
            build_session_factory(engine),
            transport,
            serialize=engine.dialect.name == "sqlite",
        )
    return InMemoryGateway()


settings = get_settings()

transport = build_transport(settings)
gateway = build_gateway(settings, transport)
stream_client = EventStreamClient(gateway)


async def startup_realtime() -> None:
    try:
        await transport.start()
    except (TransportUnavailableError, OSError):
        logger.warning(
            "Realtime backend unavailable during startup; continuing without cross-node sync",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return
    if transport.started:
        logger.info("Realtime transport started", extra={"node_id": transport.node_id})


async def shutdown_realtime() -> None:
    await stream_client.close()
    await transport.stop()


def conversation_view(conversation_id: str, user_id: str) -> ConversationSynchronizer:
    return ConversationSynchronizer(
        gateway,
        conversation_id,
        user_id,
        client=stream_client,
        cards=CardLookupService(settings),
        notifications=NotificationFactory(gateway),
        settings=settings,
    )


def notification_dispatcher(user_id: str) -> NotificationDispatcher:
    return NotificationDispatcher(gateway, user_id, client=stream_client, settings=settings)


def reward_queue(user_id: str) -> RewardNotificationQueue:
    return RewardNotificationQueue(gateway, user_id, client=stream_client)


def get_transport() -> RedisNATSTransport:
    return transport
