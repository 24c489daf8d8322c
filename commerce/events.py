"""Domain event publication over RabbitMQ.

The lifecycle managers are synchronous and run one request per worker thread,
so the aio-pika connection lives on its own event loop in a daemon thread.
``publish`` hands the message to that loop and returns at once; the outcome is
only logged. Events are notifications, never part of a write's atomicity.
"""
import asyncio
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Any, Dict, Iterable, Optional

import aio_pika
import structlog
from aio_pika import DeliveryMode, ExchangeType, Message
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = structlog.get_logger(component="events")

ORDERS_EXCHANGE = "orders"
PAYMENTS_EXCHANGE = "payments"


class EventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_UPDATED = "order.updated"
    ORDER_STATUS_CHANGED = "order.status_changed"
    ORDER_CANCELLED = "order.cancelled"

    PAYMENT_INTENT_CREATED = "payment.intent.created"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"

    @property
    def exchange(self) -> str:
        return ORDERS_EXCHANGE if self.value.startswith("order.") else PAYMENTS_EXCHANGE


class EventEnvelope(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any]

    def to_message_body(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode()


class EventPublisher:

    def __init__(
        self,
        url: Optional[str] = None,
        exchanges: Iterable[str] = (ORDERS_EXCHANGE, PAYMENTS_EXCHANGE),
        connect_timeout: float = 10.0,
    ):
        self._url = url
        self._exchange_names = tuple(exchanges)
        self._connect_timeout = connect_timeout

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._connection = None
        self._exchanges: Dict[str, Any] = {}
        self._pending = set()
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return bool(self._exchanges)

    def start(self) -> None:
        if not self._url:
            logger.warning("event_bus_disabled", reason="AMQP_URL not set")
            return

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever, name="event-publisher", daemon=True
        )
        self._thread.start()

        future = asyncio.run_coroutine_threadsafe(self._connect(), self._loop)
        try:
            future.result(timeout=self._connect_timeout)
        except Exception as e:
            # the service keeps running; publishes become logged no-ops
            logger.error("event_bus_connect_failed", error=str(e))
            self._exchanges = {}

    async def _connect(self) -> None:
        self._connection = await aio_pika.connect_robust(self._url)
        channel = await self._connection.channel()
        exchanges = {}
        for name in self._exchange_names:
            exchanges[name] = await channel.declare_exchange(
                name, ExchangeType.TOPIC, durable=True
            )
        self._exchanges = exchanges
        logger.info("event_bus_connected", exchanges=list(exchanges))

    def publish(self, event_type: EventType, data: Dict[str, Any]) -> Optional[EventEnvelope]:
        envelope = EventEnvelope(event_type=event_type, data=data)
        exchange = self._exchanges.get(event_type.exchange)
        if exchange is None or self._loop is None:
            logger.warning("event_publish_skipped", event_type=event_type.value,
                           event_id=envelope.event_id, reason="no bus connection")
            return None

        message = Message(
            body=envelope.to_message_body(),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=envelope.event_id,
            timestamp=envelope.timestamp,
        )
        try:
            future = asyncio.run_coroutine_threadsafe(
                exchange.publish(message, routing_key=event_type.value), self._loop
            )
        except RuntimeError as e:
            logger.error("event_publish_failed", event_type=event_type.value,
                         event_id=envelope.event_id, error=str(e))
            return None

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(partial(self._on_done, envelope))
        return envelope

    def _on_done(self, envelope: EventEnvelope, future) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            logger.error("event_publish_failed", event_type=envelope.event_type.value,
                         event_id=envelope.event_id, error="cancelled")
            return
        error = future.exception()
        if error is not None:
            logger.error("event_publish_failed", event_type=envelope.event_type.value,
                         event_id=envelope.event_id, error=str(error))
        else:
            logger.info("event_published", event_type=envelope.event_type.value,
                        event_id=envelope.event_id)

    def flush(self, timeout: float = 5.0) -> None:
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            try:
                future.result(timeout=timeout)
            except Exception:
                # already logged by _on_done
                continue

    def close(self) -> None:
        if self._loop is None:
            return
        self.flush()
        if self._connection is not None:
            future = asyncio.run_coroutine_threadsafe(self._connection.close(), self._loop)
            try:
                future.result(timeout=self._connect_timeout)
            except Exception as e:
                logger.error("event_bus_disconnect_error", error=str(e))
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=self._connect_timeout)
        self._loop.close()
        self._loop = None
        self._exchanges = {}
        logger.info("event_bus_disconnected")
