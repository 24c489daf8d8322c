from dataclasses import dataclass

import structlog
from sqlalchemy.engine import Engine

from commerce.cache import Cache
from commerce.config import Settings
from commerce.database import Base, make_engine, make_session_factory
from commerce.events import EventPublisher
from commerce.orders import OrderLifecycleManager
from commerce.payments import PaymentLifecycleManager
from commerce.store import LedgerStore
from commerce.stripe_service import StripeGateway
from commerce.webhooks import WebhookVerifier

logger = structlog.get_logger(component="services")


@dataclass
class Services:
    """Everything a request needs, built once by the process entry point."""

    engine: Engine
    store: LedgerStore
    cache: Cache
    publisher: EventPublisher
    orders: OrderLifecycleManager
    payments: PaymentLifecycleManager

    def close(self) -> None:
        self.publisher.close()
        self.cache.close()
        self.engine.dispose()
        logger.info("services_closed")


def build_services(settings: Settings, cache: Cache = None, publisher: EventPublisher = None) -> Services:
    engine = make_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    store = LedgerStore(make_session_factory(engine))

    if cache is None:
        cache = Cache.from_url(settings.redis_url, settings.cache_ttl_seconds)
    if publisher is None:
        publisher = EventPublisher(settings.amqp_url)
        publisher.start()

    gateway = StripeGateway(settings.stripe_secret_key)
    verifier = WebhookVerifier(gateway, settings.stripe_webhook_secret)

    return Services(
        engine=engine,
        store=store,
        cache=cache,
        publisher=publisher,
        orders=OrderLifecycleManager(store, cache, publisher, settings.write_retries),
        payments=PaymentLifecycleManager(
            store, cache, publisher, gateway, verifier, settings.write_retries
        ),
    )
