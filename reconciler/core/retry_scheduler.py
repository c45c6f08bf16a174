"""
Delayed redelivery of payments whose order has not arrived yet.

Delivery is at-least-once: a claimed envelope is leased, and a lease that is
never acknowledged expires and the envelope becomes due again. The engine
tolerates duplicates because a retry only reads the order store.

Envelopes past ``max_attempts`` go to the dead-letter output instead of the
queue.
"""
import heapq
import itertools
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from reconciler.domain import RetryEnvelope
from reconciler.errors import StoreError
from reconciler.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with an attempt ceiling.

    Attempt ``n`` waits ``base_delay * 2 ** (n - 1)`` seconds, capped at
    ``max_delay``.
    """

    base_delay: float = 5.0
    max_delay: float = 900.0
    max_attempts: int = 8

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def is_exhausted(self, attempt: int) -> bool:
        return attempt > self.max_attempts


@dataclass(frozen=True)
class ClaimedEnvelope:
    """An envelope leased to a worker; ``receipt`` acknowledges it."""

    envelope: RetryEnvelope
    receipt: str


class RetryScheduler(ABC):
    """Retry scheduler contract."""

    def __init__(self, policy: Optional[BackoffPolicy] = None, clock: Clock = time.time):
        """
        Initialize retry scheduler.

        Args:
            policy: Backoff and attempt ceiling
            clock: Wall clock in epoch seconds
        """
        self.policy = policy or BackoffPolicy()
        self.clock = clock

    async def schedule(self, envelope: RetryEnvelope, delay: Optional[float] = None) -> bool:
        """
        Queue ``envelope`` for redelivery after ``delay`` seconds.

        Args:
            envelope: Envelope carrying the payment and its attempt number
            delay: Override for the policy delay

        Returns:
            bool: True if queued, False if the attempt ceiling routed it to dead letter

        Raises:
            StoreError: If the queue is unreachable
        """
        if self.policy.is_exhausted(envelope.attempt):
            await self.dead_letter(envelope)
            return False

        wait = self.policy.delay_for(envelope.attempt) if delay is None else delay
        await self._enqueue(envelope, self.clock() + wait)
        metrics.record_retry_scheduled(wait)
        logger.info(
            "retry_envelope_scheduled",
            order_ref=envelope.order_ref,
            payment_id=envelope.payment_event.payment_id,
            attempt=envelope.attempt,
            delay_seconds=wait,
        )
        return True

    async def dead_letter(self, envelope: RetryEnvelope) -> None:
        """
        Route ``envelope`` to the dead-letter output.

        Raises:
            StoreError: If the queue is unreachable
        """
        await self._dead_letter(envelope)
        metrics.record_dead_letter()
        logger.warning(
            "retry_envelope_dead_lettered",
            order_ref=envelope.order_ref,
            payment_id=envelope.payment_event.payment_id,
            attempt=envelope.attempt,
            max_attempts=self.policy.max_attempts,
        )

    def delay_for(self, envelope: RetryEnvelope) -> float:
        return self.policy.delay_for(envelope.attempt)

    @abstractmethod
    async def _enqueue(self, envelope: RetryEnvelope, due_at: float) -> None:
        """Persist ``envelope`` to become due at ``due_at``."""

    @abstractmethod
    async def _dead_letter(self, envelope: RetryEnvelope) -> None:
        """Persist ``envelope`` to the dead-letter output."""

    @abstractmethod
    async def claim_due(self, limit: int, lease_seconds: float) -> List[ClaimedEnvelope]:
        """Lease up to ``limit`` due envelopes for ``lease_seconds``."""

    @abstractmethod
    async def ack(self, claimed: ClaimedEnvelope) -> None:
        """Remove a processed envelope for good."""

    @abstractmethod
    async def dead_letters(self) -> List[RetryEnvelope]:
        """Envelopes that exhausted their attempts."""


# Moves due members of KEYS[1] into KEYS[2] with score ARGV[3].
_CLAIM_SCRIPT = """
local items = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, item in ipairs(items) do
    redis.call('ZREM', KEYS[1], item)
    redis.call('ZADD', KEYS[2], ARGV[3], item)
end
return items
"""


class RedisRetryScheduler(RetryScheduler):
    """
    Durable delay queue on Redis sorted sets.

    - pending set scored by due time
    - in-flight set scored by lease deadline
    - dead-letter list of exhausted envelopes

    Moving between sets runs in a Lua script so two workers never claim the
    same member.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        queue_key: str,
        inflight_key: str,
        dead_letter_key: str,
        policy: Optional[BackoffPolicy] = None,
        clock: Clock = time.time,
    ):
        super().__init__(policy, clock)
        self.redis_client = redis_client
        self.queue_key = queue_key
        self.inflight_key = inflight_key
        self.dead_letter_key = dead_letter_key
        self._claim = redis_client.register_script(_CLAIM_SCRIPT)

        logger.info(
            "redis_retry_scheduler_initialized",
            queue_key=queue_key,
            max_attempts=self.policy.max_attempts,
        )

    @staticmethod
    def _encode(envelope: RetryEnvelope) -> str:
        return json.dumps(envelope.to_message(), sort_keys=True)

    async def _enqueue(self, envelope: RetryEnvelope, due_at: float) -> None:
        try:
            await self.redis_client.zadd(self.queue_key, {self._encode(envelope): due_at})
        except RedisError as e:
            logger.error("retry_enqueue_failed", order_ref=envelope.order_ref, error=str(e))
            raise StoreError(f"Failed to schedule retry: {str(e)}") from e

    async def _dead_letter(self, envelope: RetryEnvelope) -> None:
        try:
            await self.redis_client.rpush(self.dead_letter_key, self._encode(envelope))
        except RedisError as e:
            logger.error("retry_dead_letter_failed", order_ref=envelope.order_ref, error=str(e))
            raise StoreError(f"Failed to dead-letter retry: {str(e)}") from e

    async def claim_due(self, limit: int, lease_seconds: float) -> List[ClaimedEnvelope]:
        now = self.clock()
        try:
            # Expired leases first, so crashed workers' envelopes come back.
            await self._claim(
                keys=[self.inflight_key, self.queue_key], args=[now, limit, now]
            )
            members = await self._claim(
                keys=[self.queue_key, self.inflight_key],
                args=[now, limit, now + lease_seconds],
            )
        except RedisError as e:
            logger.error("retry_claim_failed", error=str(e))
            raise StoreError(f"Failed to claim retries: {str(e)}") from e

        claimed: List[ClaimedEnvelope] = []
        for member in members or []:
            raw = member.decode() if isinstance(member, bytes) else member
            try:
                envelope = RetryEnvelope.from_message(json.loads(raw))
            except (ValueError, KeyError, ValidationError) as e:
                logger.error("retry_envelope_undecodable", error=str(e))
                await self.redis_client.zrem(self.inflight_key, raw)
                await self.redis_client.rpush(self.dead_letter_key, raw)
                continue
            claimed.append(ClaimedEnvelope(envelope=envelope, receipt=raw))
        return claimed

    async def ack(self, claimed: ClaimedEnvelope) -> None:
        try:
            await self.redis_client.zrem(self.inflight_key, claimed.receipt)
        except RedisError as e:
            logger.error("retry_ack_failed", order_ref=claimed.envelope.order_ref, error=str(e))
            raise StoreError(f"Failed to acknowledge retry: {str(e)}") from e

    async def dead_letters(self) -> List[RetryEnvelope]:
        raw_items = await self.redis_client.lrange(self.dead_letter_key, 0, -1)
        envelopes = []
        for raw in raw_items:
            try:
                envelopes.append(RetryEnvelope.from_message(json.loads(raw)))
            except (ValueError, KeyError, ValidationError):
                continue
        return envelopes

    async def pending_count(self) -> int:
        return int(await self.redis_client.zcard(self.queue_key))


class InMemoryRetryScheduler(RetryScheduler):
    """Process-local scheduler with the same lease semantics as the Redis one."""

    def __init__(self, policy: Optional[BackoffPolicy] = None, clock: Clock = time.time):
        super().__init__(policy, clock)
        self._pending: List[Tuple[float, int, str, RetryEnvelope]] = []
        self._inflight: Dict[str, Tuple[float, RetryEnvelope]] = {}
        self._dead: List[RetryEnvelope] = []
        self._seq = itertools.count()

    async def _enqueue(self, envelope: RetryEnvelope, due_at: float) -> None:
        heapq.heappush(self._pending, (due_at, next(self._seq), uuid.uuid4().hex, envelope))

    async def _dead_letter(self, envelope: RetryEnvelope) -> None:
        self._dead.append(envelope)

    async def claim_due(self, limit: int, lease_seconds: float) -> List[ClaimedEnvelope]:
        now = self.clock()
        for receipt, (deadline, envelope) in list(self._inflight.items()):
            if deadline <= now:
                del self._inflight[receipt]
                heapq.heappush(self._pending, (now, next(self._seq), receipt, envelope))

        claimed: List[ClaimedEnvelope] = []
        while self._pending and self._pending[0][0] <= now and len(claimed) < limit:
            _, _, receipt, envelope = heapq.heappop(self._pending)
            self._inflight[receipt] = (now + lease_seconds, envelope)
            claimed.append(ClaimedEnvelope(envelope=envelope, receipt=receipt))
        return claimed

    async def ack(self, claimed: ClaimedEnvelope) -> None:
        self._inflight.pop(claimed.receipt, None)

    async def dead_letters(self) -> List[RetryEnvelope]:
        return list(self._dead)

    async def pending_count(self) -> int:
        return len(self._pending)

    def pending(self) -> List[RetryEnvelope]:
        """Queued envelopes in due order."""
        return [entry[3] for entry in sorted(self._pending)]
