"""
Retry worker.

Polls the retry queue for due envelopes and feeds them back into the
reconciliation engine. Envelopes are leased, processed concurrently, and
acknowledged once handled:

- success -> ack
- transient failure -> requeue as the next attempt, then ack; past
  ``max_attempts`` the envelope is dead-lettered and escalated
- permanent failure (non-retryable external error) -> dead-letter, ack and
  escalate to manual review

An envelope whose requeue or dead-letter write fails stays leased until the
lease runs out and is then claimed again.
"""
import asyncio
import signal
from typing import List

import structlog

from reconciler.config import get_settings
from reconciler.core.dependencies import build_dependencies
from reconciler.core.reconciliation import RETRY_EXHAUSTED, ReconciliationEngine
from reconciler.core.retry_scheduler import ClaimedEnvelope, RetryScheduler
from reconciler.database import init_db
from reconciler.errors import ExternalServiceError, StoreError
from reconciler.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


class RetryWorker:
    """Drains due retry envelopes into the engine."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        retry_scheduler: RetryScheduler,
        batch_size: int = 25,
        lease_seconds: float = 60.0,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize retry worker.

        Args:
            engine: Reconciliation engine
            retry_scheduler: Queue to claim envelopes from
            batch_size: Envelopes claimed per poll
            lease_seconds: Time an envelope stays invisible to other workers
            poll_interval_seconds: Sleep between polls when nothing is due
        """
        self.engine = engine
        self.retry_scheduler = retry_scheduler
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

        logger.info(
            "retry_worker_initialized",
            batch_size=batch_size,
            lease_seconds=lease_seconds,
        )

    async def _process_one(self, claimed: ClaimedEnvelope) -> bool:
        envelope = claimed.envelope
        try:
            outcome = await self.engine.process_retry(envelope)
        except Exception as e:
            logger.error(
                "retry_processing_failed",
                order_ref=envelope.order_ref,
                payment_id=envelope.payment_event.payment_id,
                attempt=envelope.attempt,
                error=str(e),
                error_type=type(e).__name__,
            )
            if isinstance(e, ExternalServiceError) and not e.retryable:
                return await self._give_up(claimed, e)
            return await self._requeue(claimed, e)

        await self.retry_scheduler.ack(claimed)
        logger.info(
            "retry_processed",
            order_ref=envelope.order_ref,
            attempt=envelope.attempt,
            status=outcome.status,
        )
        return True

    async def _requeue(self, claimed: ClaimedEnvelope, error: Exception) -> bool:
        envelope = claimed.envelope
        try:
            queued = await self.retry_scheduler.schedule(envelope.next_attempt())
            await self.retry_scheduler.ack(claimed)
        except StoreError as e:
            logger.error("retry_requeue_failed", order_ref=envelope.order_ref, error=e.message)
            return False

        if not queued:
            await self.engine.handle_manual_review(
                envelope.payment_event,
                f"Charge {envelope.payment_event.payment_id} for order {envelope.order_ref} "
                f"still failing after {envelope.attempt} attempts: {error}",
                code=RETRY_EXHAUSTED,
            )
        return False

    async def _give_up(self, claimed: ClaimedEnvelope, error: ExternalServiceError) -> bool:
        envelope = claimed.envelope
        try:
            await self.retry_scheduler.dead_letter(envelope)
            await self.retry_scheduler.ack(claimed)
        except StoreError as e:
            logger.error("retry_dead_letter_failed", order_ref=envelope.order_ref, error=e.message)
            return False

        await self.engine.handle_manual_review(
            envelope.payment_event, error.message, code=error.error_code
        )
        return False

    async def process_batch(self) -> int:
        """
        Claim and process one batch of due envelopes.

        Returns:
            int: Number of envelopes claimed
        """
        claimed: List[ClaimedEnvelope] = await self.retry_scheduler.claim_due(
            self.batch_size, self.lease_seconds
        )
        if not claimed:
            return 0

        results = await asyncio.gather(*(self._process_one(item) for item in claimed))
        logger.info(
            "retry_batch_processed",
            claimed=len(claimed),
            succeeded=sum(1 for ok in results if ok),
        )
        return len(claimed)

    async def start(self) -> None:
        """Run until ``stop()`` is called."""
        self._running = True
        logger.info("retry_worker_started")

        try:
            while self._running:
                try:
                    processed = await self.process_batch()

                    if processed == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        # Work was due, poll again right away
                        await asyncio.sleep(0)

                except Exception as e:
                    logger.error("retry_worker_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("retry_worker_stopped")

    def stop(self) -> None:
        """Stop after the current batch."""
        self._running = False
        logger.info("retry_worker_stop_requested")


async def run_retry_worker() -> None:
    """
    Start the retry worker with production dependencies.

    Runs until SIGINT/SIGTERM.
    """
    settings = get_settings()
    setup_logging(settings)
    logger.info("retry_worker_starting")

    deps = build_dependencies(settings)
    await init_db(deps.db_engine, deps.order_store.table)

    worker = RetryWorker(
        deps.engine,
        deps.retry_scheduler,
        batch_size=settings.retry_batch_size,
        lease_seconds=settings.retry_lease_seconds,
        poll_interval_seconds=settings.retry_poll_interval_seconds,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.start()
    finally:
        await deps.close()


def main() -> None:
    asyncio.run(run_retry_worker())


if __name__ == "__main__":
    main()
