"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    CreateEndpointRequest,
    CreatePayoutRequest,
    InboundEvent,
    PayoutResponse,
    SubscriptionResponse,
    WebhookAcceptedResponse,
)

__all__ = [
    "create_app",
    "CreateEndpointRequest",
    "CreatePayoutRequest",
    "InboundEvent",
    "PayoutResponse",
    "SubscriptionResponse",
    "WebhookAcceptedResponse",
]
