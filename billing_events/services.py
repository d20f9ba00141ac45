"""
Service wiring.

``build_services`` constructs every component once per process and hands
each one its collaborators explicitly. The API lifespan and the workers
both start from here.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx
import redis.asyncio as aioredis
import structlog

from billing_events.config import Settings, get_settings
from billing_events.core import (
    BillingEventHandlers,
    BillingScheduler,
    DeliveryManager,
    EndpointRegistry,
    EventEmitter,
    EventProcessor,
    EventRouter,
    EventStore,
    Ledger,
    LedgerReconciler,
    LockManager,
    PayoutService,
    SignatureVerifier,
    SubscriptionService,
    build_default_router,
)
from billing_events.database import Database
from billing_events.integrations import ProcessorClient
from billing_events.monitoring import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    database: Database
    redis: aioredis.Redis
    lock_manager: LockManager
    verifier: SignatureVerifier
    emitter: EventEmitter
    ledger: Ledger
    processor_client: ProcessorClient
    payouts: PayoutService
    router: EventRouter
    store: EventStore
    event_processor: EventProcessor
    subscriptions: SubscriptionService
    scheduler: BillingScheduler
    endpoints: EndpointRegistry
    delivery: DeliveryManager
    reconciler: LedgerReconciler
    health: HealthCheck

    async def close(self) -> None:
        await self.delivery.close()
        await self.redis.aclose()
        await self.database.close()
        logger.info("services_closed")


def build_services(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    redis_client: Optional[aioredis.Redis] = None,
    processor_client: Optional[ProcessorClient] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Services:
    """
    Construct all services.

    Every argument defaults to a component built from ``settings``; tests
    pass their own database, Redis client, processor client or HTTP client.
    """
    settings = settings or get_settings()
    database = database or Database(settings=settings)
    redis_client = redis_client or aioredis.from_url(settings.redis_url)
    processor_client = processor_client or ProcessorClient(settings=settings)
    session_factory = database.session_factory

    lock_manager = LockManager(
        redis_client,
        ttl_seconds=settings.redis_lock_timeout,
        default_timeout_ms=settings.lock_acquire_timeout_ms,
    )
    emitter = EventEmitter()
    ledger = Ledger(settings.platform_account_id)
    payouts = PayoutService(
        session_factory, lock_manager, ledger, emitter, processor_client, settings
    )
    router = build_default_router(BillingEventHandlers(ledger, emitter, payouts, settings))
    store = EventStore(session_factory)

    return Services(
        settings=settings,
        database=database,
        redis=redis_client,
        lock_manager=lock_manager,
        verifier=SignatureVerifier(settings.webhook_tolerance_seconds),
        emitter=emitter,
        ledger=ledger,
        processor_client=processor_client,
        payouts=payouts,
        router=router,
        store=store,
        event_processor=EventProcessor(
            session_factory,
            store,
            router,
            max_age=timedelta(hours=settings.event_max_replay_age_hours),
        ),
        subscriptions=SubscriptionService(session_factory, lock_manager, emitter),
        scheduler=BillingScheduler(session_factory, lock_manager, emitter, settings),
        endpoints=EndpointRegistry(session_factory),
        delivery=DeliveryManager(session_factory, settings, http_client),
        reconciler=LedgerReconciler(session_factory, settings),
        health=HealthCheck(session_factory, redis_client, processor_client.ping),
    )
