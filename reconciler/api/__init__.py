"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import HealthCheckResponse, OrderWebhookResponse, PaymentWebhookResponse

__all__ = [
    "app",
    "create_app",
    "HealthCheckResponse",
    "OrderWebhookResponse",
    "PaymentWebhookResponse",
]
