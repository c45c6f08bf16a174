"""
Tests for retry scheduling, leases and dead-lettering.
"""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from reconciler.core import BackoffPolicy, InMemoryRetryScheduler, RedisRetryScheduler
from reconciler.domain import PaymentEvent, RetryEnvelope
from reconciler.errors import StoreError


def make_envelope(attempt: int = 1, order_ref: str = "999") -> RetryEnvelope:
    event = PaymentEvent(
        event_type="charge.succeeded",
        payment_id="ch_1",
        customer_id="cus_1",
        currency="usd",
        order_ref=order_ref,
    )
    return RetryEnvelope(order_ref=order_ref, payment_event=event, attempt=attempt)


class TestBackoffPolicy:
    """Delay and ceiling arithmetic."""

    @pytest.mark.unit
    def test_exponential_delays_capped(self) -> None:
        policy = BackoffPolicy(base_delay=5, max_delay=60, max_attempts=8)

        assert [policy.delay_for(n) for n in range(1, 6)] == [5, 10, 20, 40, 60]

    @pytest.mark.unit
    def test_exhaustion(self) -> None:
        policy = BackoffPolicy(max_attempts=3)

        assert not policy.is_exhausted(3)
        assert policy.is_exhausted(4)


class TestInMemoryRetryScheduler:
    """Lease semantics on the process-local scheduler."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_not_due_before_delay(self, retry_scheduler, clock) -> None:
        assert await retry_scheduler.schedule(make_envelope()) is True

        assert await retry_scheduler.claim_due(10, 60) == []
        clock.advance(4.9)
        assert await retry_scheduler.claim_due(10, 60) == []
        clock.advance(0.1)

        claimed = await retry_scheduler.claim_due(10, 60)
        assert [c.envelope.order_ref for c in claimed] == ["999"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_explicit_delay_overrides_policy(self, retry_scheduler, clock) -> None:
        await retry_scheduler.schedule(make_envelope(), delay=0)

        assert len(await retry_scheduler.claim_due(10, 60)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_claimed_envelope_is_leased(self, retry_scheduler, clock) -> None:
        await retry_scheduler.schedule(make_envelope(), delay=0)

        first = await retry_scheduler.claim_due(10, 30)
        assert len(first) == 1
        assert await retry_scheduler.claim_due(10, 30) == []

        clock.advance(30)
        again = await retry_scheduler.claim_due(10, 30)
        assert [c.envelope for c in again] == [first[0].envelope]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ack_removes_for_good(self, retry_scheduler, clock) -> None:
        await retry_scheduler.schedule(make_envelope(), delay=0)
        (claimed,) = await retry_scheduler.claim_due(10, 30)

        await retry_scheduler.ack(claimed)
        clock.advance(3600)

        assert await retry_scheduler.claim_due(10, 30) == []
        assert await retry_scheduler.pending_count() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_claim_respects_limit_and_due_order(self, retry_scheduler, clock) -> None:
        await retry_scheduler.schedule(make_envelope(order_ref="b"), delay=2)
        await retry_scheduler.schedule(make_envelope(order_ref="a"), delay=1)
        await retry_scheduler.schedule(make_envelope(order_ref="c"), delay=3)
        clock.advance(10)

        claimed = await retry_scheduler.claim_due(2, 30)

        assert [c.envelope.order_ref for c in claimed] == ["a", "b"]
        assert await retry_scheduler.pending_count() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhausted_envelope_dead_lettered(self, retry_scheduler) -> None:
        """max_attempts is 3 in the fixture."""
        envelope = make_envelope(attempt=4)

        assert await retry_scheduler.schedule(envelope) is False

        assert await retry_scheduler.pending_count() == 0
        assert await retry_scheduler.dead_letters() == [envelope]


@pytest.fixture
def redis_client() -> AsyncMock:
    client = AsyncMock()
    client.register_script = MagicMock(return_value=AsyncMock())
    return client


@pytest.fixture
def redis_scheduler(redis_client: AsyncMock, clock) -> RedisRetryScheduler:
    return RedisRetryScheduler(
        redis_client,
        queue_key="retry:pending",
        inflight_key="retry:inflight",
        dead_letter_key="retry:dead",
        policy=BackoffPolicy(base_delay=5, max_delay=900, max_attempts=3),
        clock=clock,
    )


class TestRedisRetryScheduler:
    """Redis commands issued by the durable scheduler."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_schedule_adds_to_sorted_set(self, redis_scheduler, redis_client, clock) -> None:
        envelope = make_envelope(attempt=2)

        await redis_scheduler.schedule(envelope)

        key, mapping = redis_client.zadd.await_args.args
        assert key == "retry:pending"
        ((member, score),) = mapping.items()
        assert score == clock.now + 10
        message = json.loads(member)
        assert message["order_number"] == "999"
        assert message["attempt"] == 2
        assert message["paymentEvent"]["payment_id"] == "ch_1"
        assert "timestamp" in message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhausted_goes_to_dead_letter_list(self, redis_scheduler, redis_client) -> None:
        assert await redis_scheduler.schedule(make_envelope(attempt=4)) is False

        redis_client.zadd.assert_not_awaited()
        key, member = redis_client.rpush.await_args.args
        assert key == "retry:dead"
        assert json.loads(member)["attempt"] == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_claim_due_requeues_expired_then_leases(
        self, redis_scheduler, redis_client, clock
    ) -> None:
        envelope = make_envelope()
        member = json.dumps(envelope.to_message(), sort_keys=True)
        claim_script = redis_client.register_script.return_value
        claim_script.side_effect = [[], [member.encode()]]

        claimed = await redis_scheduler.claim_due(10, 60)

        assert [c.envelope.order_ref for c in claimed] == ["999"]
        assert claimed[0].receipt == member
        expire_call, lease_call = claim_script.await_args_list
        assert expire_call.kwargs["keys"] == ["retry:inflight", "retry:pending"]
        assert lease_call.kwargs["keys"] == ["retry:pending", "retry:inflight"]
        assert lease_call.kwargs["args"] == [clock.now, 10, clock.now + 60]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_undecodable_member_dead_lettered(self, redis_scheduler, redis_client) -> None:
        claim_script = redis_client.register_script.return_value
        claim_script.side_effect = [[], ["not-json"]]

        assert await redis_scheduler.claim_due(10, 60) == []

        redis_client.zrem.assert_awaited_once_with("retry:inflight", "not-json")
        redis_client.rpush.assert_awaited_once_with("retry:dead", "not-json")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ack_removes_inflight_member(self, redis_scheduler, redis_client) -> None:
        envelope = make_envelope()
        member = json.dumps(envelope.to_message(), sort_keys=True)
        claim_script = redis_client.register_script.return_value
        claim_script.side_effect = [[], [member]]
        (claimed,) = await redis_scheduler.claim_due(10, 60)

        await redis_scheduler.ack(claimed)

        redis_client.zrem.assert_awaited_once_with("retry:inflight", member)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_failure_raises_store_error(self, redis_scheduler, redis_client) -> None:
        redis_client.zadd.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(StoreError):
            await redis_scheduler.schedule(make_envelope())
