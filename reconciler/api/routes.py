"""
API routes: webhook receivers and monitoring.

Routes translate normalized events and engine outcomes into HTTP responses;
reconciliation decisions are made by the engine.
"""
import json
import time
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from reconciler.core.dependencies import Dependencies
from reconciler.domain import (
    Ignored,
    NeedsManualReview,
    OrderCreated,
    PaymentConfirmed,
)
from reconciler.errors import MalformedInputError, MissingMetadataError, ReconcilerError
from reconciler.monitoring.metrics import metrics

from .schemas import HealthCheckResponse, OrderWebhookResponse, PaymentWebhookResponse

logger = structlog.get_logger(__name__)

# Create routers
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_dependencies(request: Request) -> Dependencies:
    """Dependency bundle attached to the application at startup."""
    return request.app.state.dependencies


async def _read_json(request: Request) -> Any:
    body = await request.body()
    try:
        return json.loads(body)
    except ValueError as e:
        raise MalformedInputError(f"Request body is not valid JSON: {str(e)}") from e


@webhook_router.post(
    "/orders",
    response_model=OrderWebhookResponse,
    response_model_exclude_none=True,
    summary="Order webhook endpoint",
    description="Store or merge a paid order",
)
async def order_webhook(
    request: Request,
    deps: Dependencies = Depends(get_dependencies),
) -> Dict[str, Any]:
    """
    Handle order-stream webhooks.

    Unsupported webhook types are acknowledged without side effects.
    """
    start_time = time.time()
    result = "error"

    try:
        payload = await _read_json(request)
        event = deps.normalizer.normalize_order(payload)

        if isinstance(event, Ignored):
            result = "ignored"
            return {"status": "ignored", "reason": event.reason}

        if not isinstance(event, OrderCreated):
            result = "malformed"
            raise MalformedInputError(event.reason)

        record = await deps.engine.handle_order_created(event)
        result = "stored"

        return {
            "status": "stored",
            "order_id": record.order_id,
            "version": record.version,
            "webhook_types_seen": sorted(record.webhook_types_seen),
        }

    except ReconcilerError as e:
        logger.error("api_order_webhook_error", error=e.message, error_code=e.error_code)
        raise

    finally:
        metrics.record_webhook_event("order", result, time.time() - start_time)


@webhook_router.post(
    "/stripe",
    response_model=PaymentWebhookResponse,
    response_model_exclude_none=True,
    summary="Stripe webhook endpoint",
    description="Reconcile a confirmed payment with its order",
)
async def stripe_webhook(
    request: Request,
    deps: Dependencies = Depends(get_dependencies),
) -> Dict[str, Any]:
    """
    Handle payment-stream webhooks.

    Every valid ``charge.succeeded`` event ends as retry_queued, invoiced or
    notified. Store and external service failures return 5xx so the sender
    redelivers.
    """
    start_time = time.time()
    result = "error"

    try:
        payload = await _read_json(request)
        event = deps.normalizer.normalize_payment(payload)

        if isinstance(event, Ignored):
            result = "ignored"
            return {"status": "ignored", "reason": event.reason}

        if isinstance(event, NeedsManualReview):
            outcome = await deps.engine.handle_manual_review(
                event.event, event.reason, code=MissingMetadataError.error_code
            )
        elif isinstance(event, PaymentConfirmed):
            outcome = await deps.engine.process_payment(event.event)
        else:
            result = "malformed"
            raise MalformedInputError(event.reason)

        result = outcome.status
        logger.info("api_payment_webhook_processed", **outcome.to_dict())
        return outcome.to_dict()

    except ReconcilerError as e:
        logger.error("api_payment_webhook_error", error=e.message, error_code=e.error_code)
        raise

    finally:
        metrics.record_webhook_event("payment", result, time.time() - start_time)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(deps: Dependencies = Depends(get_dependencies)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await deps.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(deps: Dependencies = Depends(get_dependencies)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await deps.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(deps: Dependencies = Depends(get_dependencies)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await deps.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
