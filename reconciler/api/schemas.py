"""
Pydantic schemas for API responses.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class OrderWebhookResponse(BaseModel):
    """Response schema for order webhooks."""

    status: str = Field(..., description="stored or ignored")
    order_id: Optional[str] = Field(default=None, description="Order identifier")
    version: Optional[int] = Field(default=None, description="Record version after the write")
    webhook_types_seen: Optional[List[str]] = Field(
        default=None, description="Webhook types merged into the record"
    )
    reason: Optional[str] = Field(default=None, description="Why the delivery was ignored")


class PaymentWebhookResponse(BaseModel):
    """Response schema for payment webhooks."""

    status: str = Field(..., description="ignored, retry_queued, invoiced or notified")
    order_ref: Optional[str] = Field(default=None, description="Order reference from metadata")
    payment_id: Optional[str] = Field(default=None, description="Charge ID")
    attempt: Optional[int] = Field(default=None, description="Retry attempt scheduled")
    delay_seconds: Optional[float] = Field(default=None, description="Retry delay")
    invoice_id: Optional[str] = Field(default=None, description="Ledger invoice ID")
    duplicate: Optional[bool] = Field(
        default=None, description="Order was already invoiced; nothing sent"
    )
    delivered: Optional[bool] = Field(
        default=None, description="Manual review notification delivered"
    )
    reason: Optional[str] = Field(default=None, description="Status reason")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
