"""
Manual review notifications.

Posts a JSON message to the configured channel endpoint. Delivery is
at-most-once: there is no retry, and a failure is raised to the caller, which
logs it and carries on.
"""
from typing import Any, Dict, Optional

import httpx
import structlog

from reconciler.domain import PaymentEvent
from reconciler.domain.models import utcnow
from reconciler.errors import NotificationDeliveryError
from reconciler.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def build_manual_review_message(event: PaymentEvent, reason: str) -> Dict[str, Any]:
    """Notification body for a payment that needs a human."""
    return {
        "subject": f"Manual order handling required for charge {event.payment_id}",
        "message": {
            "message": reason,
            "charge": event.charge or event.model_dump(mode="json"),
            "order_ref": event.order_ref,
            "reason": reason,
            "timestamp": utcnow().isoformat(),
        },
    }


class WebhookNotifier:
    """Sends manual review alerts to an HTTP webhook (chat channel, pager, etc.)."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    async def notify_manual_review(self, event: PaymentEvent, reason: str) -> None:
        """
        Dispatch a manual review alert for ``event``.

        Args:
            event: The payment that could not be reconciled automatically
            reason: Human-readable explanation

        Raises:
            NotificationDeliveryError: If the channel rejects or cannot be reached
        """
        body = build_manual_review_message(event, reason)

        try:
            response = await self._client.post(self.url, json=body)
        except httpx.HTTPError as e:
            metrics.record_notification(delivered=False)
            raise NotificationDeliveryError(
                f"Notification channel unreachable: {str(e)}",
                payment_id=event.payment_id,
            ) from e

        if not response.is_success:
            metrics.record_notification(delivered=False)
            raise NotificationDeliveryError(
                f"Notification channel returned {response.status_code}",
                payment_id=event.payment_id,
                status_code=response.status_code,
            )

        metrics.record_notification(delivered=True)
        logger.info(
            "manual_review_notification_sent",
            payment_id=event.payment_id,
            order_ref=event.order_ref,
        )

    async def close(self) -> None:
        await self._client.aclose()
