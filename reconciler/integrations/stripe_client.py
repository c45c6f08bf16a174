"""
Stripe customer lookup with circuit breaking and error classification.

Only the customer profile is read from Stripe; the charge itself arrives by
webhook.
"""
import asyncio
import time
from typing import Any, Mapping, Optional

import stripe
import structlog

from reconciler.domain import CustomerProfile
from reconciler.errors import CustomerProfileError, ExternalServiceError

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """
    Circuit breaker for payment provider calls.

    Stops sending requests for ``timeout`` seconds after ``failure_threshold``
    consecutive failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Raises:
            ExternalServiceError: If the circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise ExternalServiceError(
                    "Stripe circuit breaker is open", service="stripe", retryable=True
                )

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


def build_customer_profile(
    customer_id: str, customer: Mapping[str, Any], receipt_email: Optional[str] = None
) -> CustomerProfile:
    """
    Reduce a Stripe customer object to a ``CustomerProfile``.

    Email falls back to the charge's receipt email, name falls back to email,
    and country falls back to the address state field.

    Raises:
        CustomerProfileError: If no email or no country can be determined
    """
    email = customer.get("email") or receipt_email
    name = customer.get("name") or email
    address = customer.get("address") or {}
    country = address.get("country") or address.get("state")

    if not email:
        raise CustomerProfileError(f"No customer email found for customer {customer_id}")
    if not country:
        raise CustomerProfileError(f"No customer country found for customer {customer_id}")

    return CustomerProfile(
        customer_id=customer_id,
        name=name,
        email=email,
        country=country,
        line1=address.get("line1"),
        line2=address.get("line2"),
        city=address.get("city"),
        postal_code=address.get("postal_code"),
    )


class StripeCustomerClient:
    """
    Reads customer profiles from Stripe.

    Holds its own ``stripe.StripeClient`` so no key is set on the ``stripe``
    module and several clients can coexist in one process.
    """

    def __init__(
        self,
        api_key: str,
        api_version: Optional[str] = None,
        max_network_retries: int = 2,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_version = api_version
        self._stripe = stripe.StripeClient(
            api_key,
            stripe_version=api_version,
            max_network_retries=max_network_retries,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_customer_client_initialized",
            api_version=api_version,
            test_mode=api_key.startswith(("sk_test_", "rk_test_")),
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> bool:
        """Whether a Stripe error is worth retrying."""
        if isinstance(
            error,
            (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError),
        ):
            return True
        status = getattr(error, "http_status", None)
        return status is not None and ExternalServiceError.is_retryable_status(status)

    def _retrieve(self, customer_id: str) -> Any:
        return self._stripe.customers.retrieve(customer_id)

    async def fetch_customer_profile(
        self, customer_id: str, receipt_email: Optional[str] = None
    ) -> CustomerProfile:
        """
        Fetch a customer and build its profile.

        Args:
            customer_id: Stripe customer id
            receipt_email: Charge receipt email used when the customer has none

        Returns:
            CustomerProfile: Profile for contact and invoice creation

        Raises:
            ExternalServiceError: If Stripe fails
            CustomerProfileError: If the profile is incomplete
        """
        logger.info("fetching_stripe_customer", customer_id=customer_id)
        self.circuit_breaker.before_call()

        try:
            customer = await asyncio.to_thread(self._retrieve, customer_id)
        except stripe.StripeError as e:
            self.circuit_breaker.on_failure()
            retryable = self._classify_error(e)
            logger.error(
                "stripe_api_error",
                customer_id=customer_id,
                retryable=retryable,
                error_code=getattr(e, "code", None),
                error=str(e),
            )
            raise ExternalServiceError(
                f"Stripe API error (fetch customer): {str(e)}",
                service="stripe",
                status_code=getattr(e, "http_status", None),
                retryable=retryable,
            ) from e

        self.circuit_breaker.on_success()

        if customer.get("deleted"):
            raise CustomerProfileError(f"Stripe customer {customer_id} is deleted")

        return build_customer_profile(customer_id, customer, receipt_email)
