"""Redis/NATS pub/sub transport carrying change feeds, broadcasts and presence."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, TYPE_CHECKING

try:  # pragma: no cover - optional dependency
    import redis.asyncio as redis_asyncio
    from redis.exceptions import RedisError
except ImportError:  # pragma: no cover - Redis is only needed for the realtime extra
    redis_asyncio = None  # type: ignore[assignment]
    RedisError = None  # type: ignore[assignment]

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from redis.asyncio import Redis as RedisClient
else:
    RedisClient = Any  # type: ignore[assignment,misc]

try:  # pragma: no cover - optional dependency
    import nats
    from nats.aio.msg import Msg as NatsMessage
    from nats.errors import Error as NatsError
except ImportError:  # pragma: no cover - NATS is only needed for the realtime extra
    nats = None
    NatsMessage = Any  # type: ignore[assignment]
    NatsError = None  # type: ignore[assignment]

from app.monitoring.metrics import realtime_transport_restarts_total


logger = logging.getLogger(__name__)

_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)
_REDIS_ERRORS = _CONNECTION_ERRORS + ((RedisError,) if RedisError is not None else ())
_NATS_ERRORS = _CONNECTION_ERRORS + ((NatsError,) if NatsError is not None else ())

_REDIS_RECOVERY_BASE_DELAY = 0.5
_REDIS_RECOVERY_MAX_DELAY = 30.0

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
StatusListener = Callable[[str, str | None], None]


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, default=_json_default)


@dataclass(slots=True)
class BrokerConfig:
    """Connection settings for the realtime broker."""

    redis_url: str | None
    redis_prefix: str = "judgeline.realtime"
    nats_url: str | None = None
    nats_prefix: str = "judgeline.realtime"
    node_id: str | None = None


class Subscription:
    """Handle returned when subscribing to a topic; ``close`` releases it."""

    def __init__(
        self,
        name: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._name = name
        self._cleanup = cleanup
        self._task = task
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()


class TransportUnavailableError(RuntimeError):
    """Raised when the configured broker cannot be reached."""


@dataclass(slots=True)
class _TopicReader:
    topic: str
    channel: str
    handler: MessageHandler
    subscription: Subscription | None = None
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    pausing: bool = False


@dataclass(slots=True)
class _LocalPresence:
    members: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)


class RedisNATSTransport:
    """Pub/sub over Redis (preferred) or NATS with automatic Redis recovery."""

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: RedisClient | None = None
        self._readers: list[_TopicReader] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None
        self._nats: Any | None = None
        self._nats_subscriptions: list[Subscription] = []
        self._presence = _LocalPresence()
        self._status_listeners: list[StatusListener] = []
        self._started = False
        self._missing_driver_logged = False

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def started(self) -> bool:
        return self._started

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Register ``listener(status, reason)``; returns a callable removing it."""

        self._status_listeners.append(listener)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._status_listeners.remove(listener)

        return remove

    def _notify_status(self, status: str, reason: str | None) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(status, reason)
            except Exception:
                logger.exception("Realtime status listener failed", extra={"status": status})

    async def start(self) -> None:
        if self._config.redis_url:
            if redis_asyncio is None:
                if not self._missing_driver_logged:
                    logger.info(
                        "Redis realtime URL configured but 'redis' is not installed; "
                        "install the 'realtime' extra to enable it"
                    )
                    self._missing_driver_logged = True
            elif self._redis is None:
                await self._connect_redis()
        if self._config.nats_url and nats is not None:
            if self._nats is None:
                self._nats = nats.aio.client.Client()
            if not self._nats.is_connected:
                try:
                    await self._nats.connect(self._config.nats_url, name=self._config.node_id)
                except Exception:  # pragma: no cover - connection errors are not deterministic
                    logger.exception("Failed to connect to NATS realtime backend")
                    raise
        self._started = self._redis is not None or (
            self._nats is not None and self._nats.is_connected
        )

    async def stop(self) -> None:
        for reader in list(self._readers):
            if reader.subscription is not None:
                await reader.subscription.close()
        self._readers.clear()
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        for subscription in list(self._nats_subscriptions):
            await subscription.close()
        self._nats_subscriptions.clear()
        if self._redis is not None:
            await self._redis.close()
            self._redis = None
        if self._nats is not None and self._nats.is_connected:  # pragma: no branch - depends on backend
            await self._nats.drain()
            await self._nats.close()
        self._started = False

    # ------------------------------------------------------------------
    # Redis plumbing
    # ------------------------------------------------------------------
    async def _connect_redis(self) -> None:
        if self._config.redis_url is None or redis_asyncio is None:
            return
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except OSError:
            logger.exception("Failed to connect to Redis realtime backend")
            await client.close()
            raise
        self._redis = client

    def _redis_key(self, topic: str) -> str:
        prefix = self._config.redis_prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    def _nats_subject(self, topic: str) -> str:
        prefix = self._config.nats_prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    async def _pause_reader(self, reader: _TopicReader) -> None:
        reader.pausing = True
        task = reader.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        reader.task = None
        if reader.pubsub is not None:
            with contextlib.suppress(Exception):
                await reader.pubsub.unsubscribe(reader.channel)
            with contextlib.suppress(Exception):
                await reader.pubsub.close()
        reader.pubsub = None
        reader.pausing = False

    async def _release_reader(self, reader: _TopicReader) -> None:
        reader.active = False
        await self._pause_reader(reader)
        if reader in self._readers:
            self._readers.remove(reader)

    async def _attach_reader(self, reader: _TopicReader) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(reader.channel)
        except _REDIS_ERRORS as exc:
            await pubsub.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        reader.pubsub = pubsub

        async def consume() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    raw = message.get("data")
                    if not isinstance(raw, str):
                        continue
                    try:
                        payload = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning(
                            "Discarded malformed realtime payload", extra={"channel": reader.channel}
                        )
                        continue
                    try:
                        await reader.handler(payload)
                    except Exception:
                        logger.exception(
                            "Realtime handler failed", extra={"channel": reader.channel}
                        )
            finally:
                with contextlib.suppress(Exception):
                    await pubsub.unsubscribe(reader.channel)
                with contextlib.suppress(Exception):
                    await pubsub.close()

        task = asyncio.create_task(consume(), name=f"realtime-redis-{reader.channel}")
        reader.task = task
        if reader.subscription is not None:
            reader.subscription._task = task
        task.add_done_callback(
            lambda finished: asyncio.create_task(self._on_reader_done(reader, finished))
        )

    async def _on_reader_done(self, reader: _TopicReader, task: asyncio.Task[Any]) -> None:
        reader.task = None
        reader.pubsub = None
        if not reader.active or reader.pausing or task.cancelled():
            return
        exc = task.exception()
        logger.warning(
            "Redis reader stopped; scheduling recovery",
            exc_info=exc,
            extra={"channel": reader.channel},
        )
        self._schedule_recovery("reader_stopped")

    def _schedule_recovery(self, reason: str) -> None:
        if self._config.redis_url is None or redis_asyncio is None:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        self._notify_status("error", reason)
        self._recovery_task = asyncio.create_task(
            self._run_recovery(reason), name="realtime-redis-recovery"
        )

    async def _run_recovery(self, reason: str) -> None:
        attempt = 0
        while True:
            await asyncio.sleep(min(_REDIS_RECOVERY_BASE_DELAY * (2**attempt), _REDIS_RECOVERY_MAX_DELAY))
            try:
                await self._restart_redis(reason)
            except Exception:
                attempt += 1
                logger.exception(
                    "Redis recovery attempt failed", extra={"attempt": attempt, "reason": reason}
                )
                continue
            break
        self._recovery_task = None
        self._notify_status("recovered", reason)

    async def _restart_redis(self, reason: str) -> None:
        async with self._recovery_lock:
            for reader in list(self._readers):
                await self._pause_reader(reader)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.close()
                self._redis = None
            await self.start()
            for reader in [item for item in self._readers if item.active]:
                await self._attach_reader(reader)
        realtime_transport_restarts_total.labels("redis", reason).inc()
        logger.info(
            "Redis realtime backend recovered",
            extra={"reason": reason, "subscriptions": len(self._readers)},
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def _default_backend(self) -> str:
        if self._redis is not None:
            return "redis"
        if self._nats is not None and self._nats.is_connected:
            return "nats"
        raise TransportUnavailableError("No realtime backend is configured")

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        backend: str | None = None,
    ) -> None:
        target = backend or self._default_backend()
        encoded = encode_payload(payload)
        if target == "redis":
            if self._redis is None:
                raise TransportUnavailableError("Redis backend is not configured")
            channel = self._redis_key(topic)
            try:
                await self._redis.publish(channel, encoded)
            except _REDIS_ERRORS as exc:
                self._schedule_recovery("publish_failed")
                raise TransportUnavailableError("Redis backend is unavailable") from exc
            logger.debug("Published realtime payload via Redis", extra={"channel": channel})
            return
        if target == "nats":
            if self._nats is None or not self._nats.is_connected:
                raise TransportUnavailableError("NATS backend is not configured")
            subject = self._nats_subject(topic)
            try:
                await self._nats.publish(subject, encoded.encode("utf-8"))
            except _NATS_ERRORS as exc:  # pragma: no cover - nats optional
                raise TransportUnavailableError("NATS backend is unavailable") from exc
            logger.debug("Published realtime payload via NATS", extra={"subject": subject})
            return
        raise TransportUnavailableError(f"Unsupported backend '{target}'")

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        backend: str | None = None,
    ) -> Subscription:
        target = backend or self._default_backend()
        if target == "redis":
            if self._redis is None:
                raise TransportUnavailableError("Redis backend is not configured")
            reader = _TopicReader(topic=topic, channel=self._redis_key(topic), handler=handler)

            async def cleanup() -> None:
                await self._release_reader(reader)

            subscription = Subscription(reader.channel, cleanup)
            reader.subscription = subscription
            self._readers.append(reader)
            try:
                await self._attach_reader(reader)
            except Exception as exc:
                await self._release_reader(reader)
                self._schedule_recovery("subscribe_failed")
                if isinstance(exc, TransportUnavailableError):
                    raise
                raise TransportUnavailableError("Redis backend is unavailable") from exc
            return subscription

        if target == "nats":
            if self._nats is None or not self._nats.is_connected:
                raise TransportUnavailableError("NATS backend is not configured")
            subject = self._nats_subject(topic)

            async def callback(message: NatsMessage) -> None:  # pragma: no cover - nats optional
                raw = message.data.decode("utf-8") if isinstance(message.data, (bytes, bytearray)) else message.data
                try:
                    payload = json.loads(raw)
                except (TypeError, json.JSONDecodeError):
                    logger.warning("Discarded malformed realtime payload", extra={"subject": subject})
                    return
                await handler(payload)

            nats_subscription = await self._nats.subscribe(subject, cb=callback)

            async def unsubscribe() -> None:
                await nats_subscription.unsubscribe()
                if wrapper in self._nats_subscriptions:
                    self._nats_subscriptions.remove(wrapper)

            wrapper = Subscription(subject, unsubscribe)
            self._nats_subscriptions.append(wrapper)
            return wrapper

        raise TransportUnavailableError(f"Unsupported backend '{target}'")

    async def presence_update(
        self, topic: str, key: str, payload: dict[str, Any] | None
    ) -> dict[str, dict[str, Any]]:
        """Set (or with ``None`` remove) one presence entry and return the full membership."""

        if self._redis is None:
            bucket = self._presence.members.setdefault(topic, {})
            if payload is None:
                bucket.pop(key, None)
            else:
                bucket[key] = dict(payload)
            if not bucket:
                self._presence.members.pop(topic, None)
            return {member: dict(data) for member, data in bucket.items()}

        name = self._redis_key(f"presence.{topic}")
        try:
            if payload is None:
                await self._redis.hdel(name, key)
            else:
                await self._redis.hset(name, key, encode_payload(payload))
            raw_members = await self._redis.hgetall(name)
        except _REDIS_ERRORS as exc:
            self._schedule_recovery("presence_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        members: dict[str, dict[str, Any]] = {}
        for member, raw in raw_members.items():
            try:
                members[member] = json.loads(raw)
            except (TypeError, json.JSONDecodeError):
                logger.warning("Discarded malformed presence entry", extra={"key": name})
        return members


# Topic names shared by the gateway implementations
CHANGES_TOPIC = "changes"
CHANNEL_TOPIC = "channel"
