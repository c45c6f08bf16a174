"""
Exception classes for the reconciler.

Every exception carries:
- Error code (for client handling and log filtering)
- HTTP status code (for the webhook transport)

Validation and metadata problems are turned into successful outcomes close to
where they are detected. Store and external-service failures propagate to the
transport, which owns the redelivery policy for them.
"""

from typing import Any, Dict, List, Optional


class ReconcilerError(Exception):
    """Base exception for all reconciler errors."""

    error_code = "reconciler_error"
    http_status = 500

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message)
        self.message = message
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class ConfigError(ReconcilerError):
    """Required configuration is missing or invalid. Fatal at startup."""

    error_code = "config_error"

    def __init__(self, message: str, fields: Optional[List[str]] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.fields = fields or []


class MalformedInputError(ReconcilerError):
    """Inbound payload failed validation. The delivery is rejected, not retried."""

    error_code = "malformed_input"
    http_status = 400


class NotFoundError(ReconcilerError):
    """
    Order referenced by a payment is not in the order store yet.

    Never reaches the caller: the engine turns it into a scheduled retry.
    """

    error_code = "order_not_found"
    http_status = 404

    def __init__(self, order_id: str, **kwargs: Any):
        super().__init__(f"Order not found: {order_id}", order_id=order_id, **kwargs)
        self.order_id = order_id


class MissingMetadataError(ReconcilerError):
    """
    Payment event lacks the order reference.

    Never reaches the caller: it is routed to the manual review channel.
    """

    error_code = "missing_order_reference"
    http_status = 200

    def __init__(self, payment_id: str, **kwargs: Any):
        super().__init__(
            f"Payment {payment_id} has no order reference", payment_id=payment_id, **kwargs
        )
        self.payment_id = payment_id


class StoreError(ReconcilerError):
    """Durable store read or write failed. Fatal for this delivery."""

    error_code = "store_error"


class OrderConflictError(ReconcilerError):
    """An order was redelivered with different items under the ``reject`` strategy."""

    error_code = "order_conflict"
    http_status = 409

    def __init__(self, order_id: str, **kwargs: Any):
        super().__init__(
            f"Order {order_id} already stored with different items", order_id=order_id, **kwargs
        )
        self.order_id = order_id


class ExternalServiceError(ReconcilerError):
    """
    Ledger API or payment provider call failed.

    ``retryable`` marks transport failures, timeouts, 429 and 5xx responses.
    Client errors (other 4xx) are never retried.
    """

    error_code = "external_service_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        service: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.service = service
        self.status_code = status_code
        self.retryable = retryable

    @staticmethod
    def is_retryable_status(status_code: int) -> bool:
        """Classify an HTTP status code for retry logic."""
        return status_code == 429 or status_code >= 500


class CustomerProfileError(ExternalServiceError):
    """Customer record from the payment provider lacks an email or country."""

    error_code = "customer_profile_incomplete"

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, service="stripe", retryable=False, **kwargs)


class NotificationDeliveryError(ReconcilerError):
    """
    Manual review alert could not be dispatched.

    Logged by callers; never blocks order processing.
    """

    error_code = "notification_delivery_failed"
