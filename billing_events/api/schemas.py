"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator


class InboundEvent(BaseModel):
    """Body of an inbound processor webhook."""

    id: str = Field(..., min_length=1, description="Globally unique event ID")
    type: str = Field(..., min_length=1, description="Dotted event type")
    timestamp: int = Field(..., description="Event time (unix seconds)")
    data: Dict[str, Any] = Field(..., description="Event payload")
    previous_attributes: Optional[Dict[str, Any]] = Field(
        default=None, description="Changed fields before the update"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": "evt_1NqQ2x",
                    "type": "invoice.payment_succeeded",
                    "timestamp": 1700000000,
                    "data": {"subscription_id": "sub_123"},
                }
            ]
        }
    }


class WebhookAcceptedResponse(BaseModel):
    received: bool = Field(..., description="Event was accepted")
    event_id: str = Field(..., description="Accepted event ID")


class CreateEndpointRequest(BaseModel):
    """Request schema for registering a subscriber endpoint."""

    url: HttpUrl = Field(..., description="Delivery URL")
    event_types: List[str] = Field(
        ..., min_length=1, description="Event types to receive; '*' for all"
    )
    secret: Optional[str] = Field(
        default=None, min_length=16, description="Signing secret; generated when omitted"
    )
    enabled: bool = Field(default=True)


class UpdateEndpointRequest(BaseModel):
    url: Optional[HttpUrl] = None
    event_types: Optional[List[str]] = Field(default=None, min_length=1)
    secret: Optional[str] = Field(default=None, min_length=16)
    enabled: Optional[bool] = None


class EndpointResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    url: str
    event_types: List[str]
    enabled: bool
    created_at: datetime
    last_triggered_at: Optional[datetime] = None


class EndpointCreatedResponse(EndpointResponse):
    secret: str = Field(..., description="Signing secret, only returned on creation")


class DeliveryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    endpoint_id: str
    event_id: str
    status: str
    attempt: int
    next_attempt_at: Optional[datetime] = None
    last_status: Optional[int] = None
    last_error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class EventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    source: str
    timestamp: int
    data: Dict[str, Any] = Field(validation_alias="payload")
    previous_attributes: Optional[Dict[str, Any]] = None
    created_at: datetime


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    product_id: str
    account_id: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    price: Dict[str, Any]
    recurring_interval: str
    recurring_interval_count: int
    currency: str
    metered_units: int
    past_due_at: Optional[datetime] = None
    payment_retry_count: int
    next_payment_retry_at: Optional[datetime] = None
    unpaid_at: Optional[datetime] = None


class CancelAtPeriodEndRequest(BaseModel):
    cancel: bool = Field(default=True, description="False revokes a scheduled cancellation")


class RecordUsageRequest(BaseModel):
    quantity: int = Field(..., gt=0, description="Units consumed")


class BalanceResponse(BaseModel):
    account_id: str
    balance: int = Field(..., description="Ledger balance in cents")


class CreatePayoutRequest(BaseModel):
    """Request schema for creating a payout."""

    amount: Optional[int] = Field(
        default=None, gt=0, description="Net amount to receive; whole balance when omitted"
    )


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    status: str
    amount: int
    fees_amount: int
    account_amount: int
    currency: str
    transfer_id: Optional[str] = None
    processor_id: Optional[str] = None
    transferred_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime


class SchedulerRunResponse(BaseModel):
    renewed: int
    canceled: int
    dunning_retries: int
    unpaid: int
    final_actions: int
    expired: int
    skipped: int
    failed: int


class ReconciliationResponse(BaseModel):
    checked_at: str
    balanced: bool
    unbalanced_keys: List[Dict[str, Any]]
    stuck_payouts: List[Dict[str, Any]]


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in ("healthy", "unhealthy", "alive"):
            raise ValueError(f"Unknown health status: {v}")
        return v
