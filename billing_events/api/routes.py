"""
API routes for the billing events service.
"""
import time
from typing import Any, Dict, List, Optional

import structlog
from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    status,
)
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_events.database.models import Event, EventSource, utc_now
from billing_events.monitoring.metrics import metrics
from billing_events.services import Services

from .dependencies import get_db, get_services
from .schemas import (
    BalanceResponse,
    CancelAtPeriodEndRequest,
    CreateEndpointRequest,
    CreatePayoutRequest,
    DeliveryResponse,
    EndpointCreatedResponse,
    EndpointResponse,
    EventResponse,
    HealthCheckResponse,
    InboundEvent,
    PayoutResponse,
    ReconciliationResponse,
    RecordUsageRequest,
    SchedulerRunResponse,
    SubscriptionResponse,
    UpdateEndpointRequest,
    WebhookAcceptedResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
event_router = APIRouter(prefix="/events", tags=["events"])
subscription_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
payout_router = APIRouter(tags=["payouts"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

INVALID_WEBHOOK = "Invalid webhook"


@webhook_router.post(
    "/inbound",
    response_model=WebhookAcceptedResponse,
    summary="Inbound processor webhook",
    description="Verify, store and acknowledge a processor event; processing runs afterwards",
)
async def inbound_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_webhook_id: Optional[str] = Header(default=None),
    x_webhook_timestamp: Optional[str] = Header(default=None),
    x_webhook_signature: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Accept an inbound webhook.

    The sender only ever sees 200 or 400. Verification failures are not
    distinguished in the response; the reason is logged.
    """
    start_time = time.time()
    body = await request.body()

    if not services.verifier.verify(
        body, x_webhook_signature, x_webhook_timestamp, services.settings.webhook_secret
    ):
        metrics.record_webhook_received("rejected")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_WEBHOOK)

    try:
        envelope = InboundEvent.model_validate_json(body)
    except ValidationError as e:
        logger.warning("webhook_body_invalid", errors=e.error_count())
        metrics.record_webhook_received("rejected")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_WEBHOOK)

    if x_webhook_id is not None and x_webhook_id != envelope.id:
        logger.warning("webhook_id_mismatch", header_id=x_webhook_id, event_id=envelope.id)
        metrics.record_webhook_received("rejected")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=INVALID_WEBHOOK)

    stored = await services.store.append(
        Event(
            id=envelope.id,
            type=envelope.type,
            source=EventSource.PROCESSOR.value,
            timestamp=envelope.timestamp,
            payload=envelope.data,
            previous_attributes=envelope.previous_attributes,
            created_at=utc_now(),
        )
    )
    metrics.record_webhook_received("accepted" if stored else "stored_duplicate")

    # Also scheduled for redeliveries, in case an earlier attempt never finished processing.
    background_tasks.add_task(services.event_processor.process_safely, envelope.id)

    logger.info(
        "api_webhook_received",
        event_id=envelope.id,
        event_type=envelope.type,
        stored=stored,
        duration_seconds=time.time() - start_time,
    )
    return {"received": True, "event_id": envelope.id}


@webhook_router.post(
    "/endpoints",
    response_model=EndpointCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a subscriber endpoint",
)
async def create_endpoint(
    request: CreateEndpointRequest,
    services: Services = Depends(get_services),
) -> EndpointCreatedResponse:
    endpoint = await services.endpoints.register(
        url=str(request.url),
        event_types=request.event_types,
        secret=request.secret,
        enabled=request.enabled,
    )
    return EndpointCreatedResponse.model_validate(endpoint)


@webhook_router.get("/endpoints", response_model=List[EndpointResponse])
async def list_endpoints(
    enabled: Optional[bool] = None,
    services: Services = Depends(get_services),
) -> List[EndpointResponse]:
    endpoints = await services.endpoints.list(enabled=enabled)
    return [EndpointResponse.model_validate(endpoint) for endpoint in endpoints]


@webhook_router.get("/endpoints/{endpoint_id}", response_model=EndpointResponse)
async def get_endpoint(
    endpoint_id: str,
    services: Services = Depends(get_services),
) -> EndpointResponse:
    return EndpointResponse.model_validate(await services.endpoints.get(endpoint_id))


@webhook_router.patch("/endpoints/{endpoint_id}", response_model=EndpointResponse)
async def update_endpoint(
    endpoint_id: str,
    request: UpdateEndpointRequest,
    services: Services = Depends(get_services),
) -> EndpointResponse:
    changes = request.model_dump(exclude_none=True)
    if "url" in changes:
        changes["url"] = str(request.url)
    endpoint = await services.endpoints.update(endpoint_id, changes)
    return EndpointResponse.model_validate(endpoint)


@webhook_router.delete("/endpoints/{endpoint_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_endpoint(
    endpoint_id: str,
    services: Services = Depends(get_services),
) -> Response:
    await services.endpoints.delete(endpoint_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@webhook_router.get(
    "/deliveries",
    response_model=List[DeliveryResponse],
    summary="List outbound deliveries",
    description="Filter by status=failed to see deliveries that exhausted every retry",
)
async def list_deliveries(
    delivery_status: Optional[str] = Query(default=None, alias="status"),
    endpoint_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    services: Services = Depends(get_services),
) -> List[DeliveryResponse]:
    deliveries = await services.endpoints.list_deliveries(
        status=delivery_status, endpoint_id=endpoint_id, limit=limit
    )
    return [DeliveryResponse.model_validate(delivery) for delivery in deliveries]


@event_router.get("", response_model=List[EventResponse], summary="Query events")
async def list_events(
    event_type: Optional[str] = Query(default=None, alias="type"),
    source: Optional[str] = None,
    since: Optional[int] = Query(default=None, description="Unix seconds, inclusive"),
    until: Optional[int] = Query(default=None, description="Unix seconds, inclusive"),
    limit: int = Query(default=100, ge=1, le=1000),
    services: Services = Depends(get_services),
) -> List[EventResponse]:
    events = await services.store.list(
        event_type=event_type, source=source, since=since, until=until, limit=limit
    )
    return [EventResponse.model_validate(event) for event in events]


@event_router.get("/{event_id}", response_model=EventResponse)
async def get_event(
    event_id: str,
    services: Services = Depends(get_services),
) -> EventResponse:
    return EventResponse.model_validate(await services.store.get(event_id))


@subscription_router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: str,
    services: Services = Depends(get_services),
) -> SubscriptionResponse:
    return SubscriptionResponse.model_validate(await services.subscriptions.get(subscription_id))


@subscription_router.post(
    "/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel immediately",
)
async def cancel_subscription(
    subscription_id: str,
    services: Services = Depends(get_services),
) -> SubscriptionResponse:
    subscription = await services.subscriptions.cancel_now(subscription_id)
    logger.info("api_subscription_canceled", subscription_id=subscription_id)
    return SubscriptionResponse.model_validate(subscription)


@subscription_router.post(
    "/{subscription_id}/cancel-at-period-end",
    response_model=SubscriptionResponse,
    summary="Cancel at the end of the current period",
)
async def cancel_subscription_at_period_end(
    subscription_id: str,
    request: CancelAtPeriodEndRequest,
    services: Services = Depends(get_services),
) -> SubscriptionResponse:
    subscription = await services.subscriptions.cancel_at_period_end(
        subscription_id, cancel=request.cancel
    )
    return SubscriptionResponse.model_validate(subscription)


@subscription_router.post(
    "/{subscription_id}/usage",
    response_model=SubscriptionResponse,
    summary="Record metered usage",
)
async def record_usage(
    subscription_id: str,
    request: RecordUsageRequest,
    services: Services = Depends(get_services),
) -> SubscriptionResponse:
    subscription = await services.subscriptions.record_usage(subscription_id, request.quantity)
    return SubscriptionResponse.model_validate(subscription)


@payout_router.get("/accounts/{account_id}/balance", response_model=BalanceResponse)
async def get_balance(
    account_id: str,
    services: Services = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    balance = await services.ledger.get_balance(db, account_id)
    return {"account_id": account_id, "balance": balance}


@payout_router.post(
    "/accounts/{account_id}/payouts",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payout",
    description="Reserve the balance and start settlement",
)
async def create_payout(
    account_id: str,
    request: CreatePayoutRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> PayoutResponse:
    logger.info("api_create_payout_request", account_id=account_id, amount=request.amount)
    payout = await services.payouts.create_payout(account_id, amount=request.amount)
    # Transfer failures leave the payout pending for the payout worker.
    background_tasks.add_task(services.payouts.transfer_pending)
    return PayoutResponse.model_validate(payout)


@payout_router.get("/payouts/{payout_id}", response_model=PayoutResponse)
async def get_payout(
    payout_id: str,
    services: Services = Depends(get_services),
) -> PayoutResponse:
    return PayoutResponse.model_validate(await services.payouts.get(payout_id))


@admin_router.post(
    "/scheduler/run",
    response_model=SchedulerRunResponse,
    summary="Run the billing scheduler",
)
async def run_scheduler(services: Services = Depends(get_services)) -> Dict[str, int]:
    report = await services.scheduler.run()
    return report.to_dict()


@admin_router.get(
    "/reconciliation",
    response_model=ReconciliationResponse,
    summary="Run ledger reconciliation",
)
async def run_reconciliation(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.reconciler.find_unbalanced_keys()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get("/health/live", response_model=HealthCheckResponse)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get("/health/ready", response_model=HealthCheckResponse)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
