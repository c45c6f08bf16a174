"""
Explicit wiring of the engine and its collaborators.

Entry points (API, retry worker) build one ``Dependencies`` bundle from
settings and hand it down; nothing below them looks up clients globally.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from reconciler.config import Settings
from reconciler.core.locale import LocaleClassifier
from reconciler.core.normalizer import WebhookNormalizer
from reconciler.core.order_store import ConflictStrategy, OrderStore
from reconciler.core.reconciliation import InvoiceConfig, ReconciliationEngine
from reconciler.core.retry_scheduler import BackoffPolicy, RedisRetryScheduler, RetryScheduler
from reconciler.database import (
    SQLAlchemyOrderStore,
    build_orders_table,
    create_engine_from_settings,
    create_session_factory,
)
from reconciler.integrations import LedgerClient, StripeCustomerClient, WebhookNotifier
from reconciler.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class Dependencies:
    """Everything a process needs to normalize and reconcile events."""

    settings: Settings
    normalizer: WebhookNormalizer
    order_store: OrderStore
    retry_scheduler: RetryScheduler
    engine: ReconciliationEngine
    health: HealthCheck
    ledger_client: Optional[LedgerClient] = None
    notifier: Optional[WebhookNotifier] = None
    db_engine: Optional[AsyncEngine] = None
    redis_client: Optional[aioredis.Redis] = None

    async def close(self) -> None:
        """Release HTTP clients and connection pools."""
        if self.ledger_client is not None:
            await self.ledger_client.close()
        if self.notifier is not None:
            await self.notifier.close()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        if self.db_engine is not None:
            await self.db_engine.dispose()
        logger.info("dependencies_closed")


def build_backoff_policy(settings: Settings) -> BackoffPolicy:
    return BackoffPolicy(
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
        max_attempts=settings.retry_max_attempts,
    )


def build_dependencies(settings: Settings) -> Dependencies:
    """
    Build production dependencies: SQL order store, Redis retry queue,
    Stripe, Ledger API and the notification webhook.

    Args:
        settings: Validated application settings

    Returns:
        Dependencies: Wired bundle; call ``close()`` on shutdown
    """
    db_engine = create_engine_from_settings(settings)
    order_store = SQLAlchemyOrderStore(
        create_session_factory(db_engine),
        build_orders_table(settings.orders_table),
        conflict_strategy=ConflictStrategy(settings.order_conflict_strategy),
        max_write_attempts=settings.order_store_max_write_attempts,
    )

    redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    retry_scheduler = RedisRetryScheduler(
        redis_client,
        queue_key=settings.retry_queue_key,
        inflight_key=settings.retry_inflight_key,
        dead_letter_key=settings.retry_dead_letter_key,
        policy=build_backoff_policy(settings),
    )

    ledger_client = LedgerClient(
        base_url=settings.ledger_base_url,
        company_slug=settings.ledger_company_slug,
        api_token=settings.ledger_api_token,
        timeout_seconds=settings.ledger_timeout_seconds,
        max_attempts=settings.ledger_max_attempts,
        retry_base_delay=settings.ledger_retry_base_delay,
    )
    notifier = WebhookNotifier(
        settings.notification_webhook_url,
        timeout_seconds=settings.notification_timeout_seconds,
    )
    customer_client = StripeCustomerClient(
        settings.stripe_secret_key,
        api_version=settings.stripe_api_version,
        max_network_retries=settings.stripe_max_network_retries,
    )

    engine = ReconciliationEngine(
        order_store=order_store,
        retry_scheduler=retry_scheduler,
        customer_client=customer_client,
        ledger_client=ledger_client,
        notifier=notifier,
        locale=LocaleClassifier(settings.get_domestic_country_aliases()),
        invoice_config=InvoiceConfig.from_settings(settings),
    )

    return Dependencies(
        settings=settings,
        normalizer=WebhookNormalizer(settings.get_allowed_order_webhook_types()),
        order_store=order_store,
        retry_scheduler=retry_scheduler,
        engine=engine,
        health=HealthCheck(db_engine=db_engine, redis_client=redis_client),
        ledger_client=ledger_client,
        notifier=notifier,
        db_engine=db_engine,
        redis_client=redis_client,
    )
