"""
Ledger (invoicing) API client with retry logic and error classification.

Implements:
- Contact lookup by customer reference, contact creation
- Invoice creation and e-mail delivery
- Exponential backoff for transient errors (tenacity)
- Non-2xx responses mapped to ExternalServiceError
"""
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from reconciler.domain import CombinedInvoiceRequest, CustomerProfile
from reconciler.errors import ExternalServiceError
from reconciler.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SERVICE = "ledger"


def build_contact_payload(profile: CustomerProfile, language: str) -> Dict[str, Any]:
    """Contact body for a new customer."""
    return {
        "customer": True,
        "name": profile.name,
        "email": profile.email,
        "memberNumberString": profile.customer_id,
        "language": language,
        "address": {
            "streetAddress": profile.line1,
            "streetAddressLine2": profile.line2,
            "city": profile.city,
            "postCode": profile.postal_code,
            "country": profile.country,
        },
    }


def build_invoice_payload(request: CombinedInvoiceRequest, contact_id: str) -> Dict[str, Any]:
    """Invoice body; line prices are already in minor units."""
    lines: List[Dict[str, Any]] = [
        {
            "currency": line.currency,
            "vatType": line.vat_type,
            "incomeAccount": line.income_account,
            "productName": line.product_name,
            "description": line.description,
            "comment": line.comment,
            "unitPrice": line.unit_price,
            "quantity": line.quantity,
        }
        for line in request.lines
    ]
    return {
        "issueDate": request.issue_date.isoformat(),
        "dueDate": request.due_date.isoformat(),
        "lines": lines,
        "bankAccountCode": request.bank_account_code,
        "paymentAccount": request.payment_account,
        "cash": request.cash,
        "customerId": contact_id,
        "currency": request.currency.upper(),
        "invoiceText": request.invoice_text,
        "yourReference": request.order_ref,
    }


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ExternalServiceError) and error.retryable


class LedgerClient:
    """
    Client for the Ledger REST API, scoped to one company.

    Reads (contact lookup) are retried on timeouts, 429 and 5xx. Writes are
    only retried when the request provably never reached the server
    (connection failures) or was rate limited, so a slow create never turns
    into a duplicate invoice.
    """

    def __init__(
        self,
        base_url: str,
        company_slug: str,
        api_token: str,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_base_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Ledger client.

        Args:
            base_url: API root, e.g. ``https://api.fiken.no/api/v2``
            company_slug: Company/tenant identifier
            api_token: Bearer token
            timeout_seconds: Per-request timeout
            max_attempts: Attempts per call including the first
            retry_base_delay: Backoff multiplier in seconds
            transport: Optional httpx transport (tests)
        """
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/companies/{company_slug}",
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

        logger.info(
            "ledger_client_initialized",
            company_slug=company_slug,
            max_attempts=max_attempts,
        )

    async def _send_once(
        self, operation: str, method: str, url: str, idempotent: bool, **kwargs: Any
    ) -> httpx.Response:
        start_time = time.time()
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.ConnectError as e:
            metrics.record_ledger_call(operation, "connect_error", time.time() - start_time)
            raise ExternalServiceError(
                f"Ledger API unreachable ({operation}): {str(e)}",
                service=SERVICE,
                retryable=True,
            ) from e
        except httpx.TimeoutException as e:
            metrics.record_ledger_call(operation, "timeout", time.time() - start_time)
            raise ExternalServiceError(
                f"Ledger API timeout ({operation})",
                service=SERVICE,
                retryable=idempotent,
            ) from e
        except httpx.HTTPError as e:
            metrics.record_ledger_call(operation, "transport_error", time.time() - start_time)
            raise ExternalServiceError(
                f"Ledger API transport error ({operation}): {str(e)}",
                service=SERVICE,
                retryable=idempotent,
            ) from e

        duration = time.time() - start_time
        metrics.record_ledger_call(operation, str(response.status_code), duration)

        if not response.is_success:
            status_code = response.status_code
            retryable = status_code == 429 or (
                idempotent and ExternalServiceError.is_retryable_status(status_code)
            )
            logger.error(
                "ledger_api_error",
                operation=operation,
                status_code=status_code,
                retryable=retryable,
                body=response.text[:500],
            )
            raise ExternalServiceError(
                f"Ledger API error ({operation}): {status_code} - {response.text}",
                service=SERVICE,
                status_code=status_code,
                retryable=retryable,
            )

        return response

    async def _request(
        self, operation: str, method: str, url: str, idempotent: bool, **kwargs: Any
    ) -> httpx.Response:
        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "ledger_api_retry",
                operation=operation,
                attempt=retry_state.attempt_number + 1,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=16),
            before_sleep=log_retry,
            reraise=True,
        )
        return await retrying(self._send_once, operation, method, url, idempotent, **kwargs)

    @staticmethod
    def _id_from_location(response: httpx.Response, operation: str) -> str:
        location = response.headers.get("Location")
        if not location:
            raise ExternalServiceError(
                f"Ledger API did not return Location header ({operation})",
                service=SERVICE,
                status_code=response.status_code,
            )
        return location.rstrip("/").split("/")[-1]

    async def find_contact(self, customer_ref: str) -> Optional[str]:
        """
        Look up a contact by the payment provider's customer reference.

        Returns:
            Optional[str]: Contact id, or None if no contact exists
        """
        response = await self._request(
            "find_contact",
            "GET",
            "/contacts",
            idempotent=True,
            params={"memberNumberString": customer_ref},
        )
        contacts = response.json()
        if not contacts:
            return None
        first = contacts[0]
        contact_id = first.get("contactId") or first.get("id")
        logger.info("ledger_contact_found", customer_ref=customer_ref, contact_id=contact_id)
        return str(contact_id) if contact_id is not None else None

    async def create_contact(self, profile: CustomerProfile, language: str) -> str:
        """Create a customer contact and return its id."""
        response = await self._request(
            "create_contact",
            "POST",
            "/contacts",
            idempotent=False,
            json=build_contact_payload(profile, language),
        )
        contact_id = self._id_from_location(response, "create_contact")
        logger.info(
            "ledger_contact_created",
            customer_ref=profile.customer_id,
            contact_id=contact_id,
        )
        return contact_id

    async def ensure_contact(self, profile: CustomerProfile, language: str) -> str:
        """Reuse the customer's contact or create one."""
        contact_id = await self.find_contact(profile.customer_id)
        if contact_id is not None:
            return contact_id
        return await self.create_contact(profile, language)

    async def create_invoice(self, request: CombinedInvoiceRequest, contact_id: str) -> str:
        """Create an invoice and return its id."""
        payload = build_invoice_payload(request, contact_id)
        logger.info(
            "ledger_creating_invoice",
            order_ref=request.order_ref,
            contact_id=contact_id,
            line_count=len(payload["lines"]),
        )
        response = await self._request(
            "create_invoice", "POST", "/invoices", idempotent=False, json=payload
        )
        invoice_id = self._id_from_location(response, "create_invoice")
        logger.info("ledger_invoice_created", order_ref=request.order_ref, invoice_id=invoice_id)
        return invoice_id

    async def send_invoice(
        self,
        invoice_id: str,
        recipient_email: str,
        recipient_name: str,
        message: str,
        subject: str,
    ) -> None:
        """E-mail the invoice to the customer as a PDF attachment."""
        await self._request(
            "send_invoice",
            "POST",
            "/invoices/send",
            idempotent=False,
            json={
                "invoiceId": invoice_id,
                "recipientEmail": recipient_email,
                "recipientName": recipient_name,
                "message": message,
                "method": ["email"],
                "subject": subject,
                "emailSendOption": "attachment",
            },
        )
        logger.info("ledger_invoice_sent", invoice_id=invoice_id)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
