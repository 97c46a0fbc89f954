"""In-memory provider fakes for tests."""
import asyncio
import time
from collections import defaultdict
from datetime import datetime
from typing import Any

from creditledger.adapters.interfaces import ChargeResult, MeterEventSummary, MeteringProvider, PaymentProvider
from creditledger.exceptions import ProviderError, ProviderIdempotencyConflict


class FakeMeteringProvider(MeteringProvider):
    """
    Records submitted events and mimics provider-side idempotency.

    `failures` maps an idempotency key to exceptions raised on successive
    submissions of that key; `delay` simulates network latency so
    concurrency can be observed through `max_in_flight`.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.events: list[dict[str, Any]] = []
        self.accepted_keys: set[str] = set()
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.summaries: list[MeterEventSummary] = []
        self.summary_requests: list[dict[str, Any]] = []
        self.calls = 0
        self.call_times: list[float] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def submit_event(
        self,
        event_name: str,
        external_customer_id: str,
        value: int,
        timestamp: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> None:
        self.calls += 1
        self.call_times.append(time.monotonic())
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)

            if idempotency_key and self.failures.get(idempotency_key):
                raise self.failures[idempotency_key].pop(0)
            if idempotency_key and idempotency_key in self.accepted_keys:
                raise ProviderIdempotencyConflict(f"Key {idempotency_key} already used", code="idempotency_key_in_use")

            if idempotency_key:
                self.accepted_keys.add(idempotency_key)
            self.events.append(
                {
                    "event_name": event_name,
                    "external_customer_id": external_customer_id,
                    "value": value,
                    "timestamp": timestamp,
                    "idempotency_key": idempotency_key,
                }
            )
        finally:
            self.in_flight -= 1

    async def list_event_summaries(
        self,
        meter_id: str,
        external_customer_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> list[MeterEventSummary]:
        self.summary_requests.append(
            {
                "meter_id": meter_id,
                "external_customer_id": external_customer_id,
                "start_time": start_time,
                "end_time": end_time,
            }
        )
        return list(self.summaries)


class FakePaymentProvider(PaymentProvider):
    """Records charges; raises `error` instead when set."""

    def __init__(self):
        self.charges: list[dict[str, Any]] = []
        self.error: ProviderError | None = None

    async def charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        idempotency_key: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        if self.error is not None:
            raise self.error

        self.charges.append(
            {
                "customer_id": customer_id,
                "payment_method_id": payment_method_id,
                "amount_cents": amount_cents,
                "idempotency_key": idempotency_key,
                "description": description,
                "metadata": metadata or {},
            }
        )
        return ChargeResult(id=f"pi_test_{len(self.charges)}", status="succeeded", amount_cents=amount_cents)


class FakeRedisLock:
    def __init__(self, redis: "FakeRedis", name: str):
        self.redis = redis
        self.name = name

    async def acquire(self, blocking: bool = True) -> bool:
        if self.name in self.redis.held_locks:
            return False
        self.redis.held_locks.add(self.name)
        return True

    async def release(self) -> None:
        self.redis.held_locks.discard(self.name)


class FakeRedis:
    """
    The subset of redis.asyncio.Redis the application uses.

    Covers ping, locks, aclose and the sorted-set commands of the rate
    limiter. One instance shared by several workers behaves like one server.
    """

    def __init__(self):
        self.held_locks: set[str] = set()
        self.sorted_sets: dict[str, dict[str, float]] = defaultdict(dict)
        self.available = True
        self.closed = False

    def _check_available(self) -> None:
        if not self.available:
            raise ConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def ping(self) -> bool:
        self._check_available()
        return True

    def pipeline(self, transaction: bool = True) -> "FakeRedisPipeline":
        return FakeRedisPipeline(self)

    def _zremrangebyscore(self, key: str, min_score, max_score) -> int:  # noqa: ANN001
        low, high = float(min_score), float(max_score)
        members = self.sorted_sets[key]
        removed = [member for member, score in members.items() if low <= score <= high]
        for member in removed:
            del members[member]
        return len(removed)

    def _zadd(self, key: str, mapping: dict[str, float]) -> int:
        added = len(set(mapping) - set(self.sorted_sets[key]))
        self.sorted_sets[key].update(mapping)
        return added

    def _zcard(self, key: str) -> int:
        return len(self.sorted_sets[key])

    def _expire(self, key: str, seconds: int) -> bool:
        return key in self.sorted_sets

    async def zremrangebyscore(self, key: str, min_score, max_score) -> int:  # noqa: ANN001
        self._check_available()
        return self._zremrangebyscore(key, min_score, max_score)

    async def zcard(self, key: str) -> int:
        self._check_available()
        return self._zcard(key)

    async def zrem(self, key: str, *members: str) -> int:
        self._check_available()
        removed = [member for member in members if self.sorted_sets[key].pop(member, None) is not None]
        return len(removed)

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False) -> list[Any]:
        self._check_available()
        ordered = sorted(self.sorted_sets[key].items(), key=lambda item: item[1])
        stop = None if end == -1 else end + 1
        selected = ordered[start:stop]
        return selected if withscores else [member for member, _ in selected]

    def lock(self, name: str, timeout: float | None = None) -> FakeRedisLock:
        return FakeRedisLock(self, name)

    async def aclose(self) -> None:
        self.closed = True


class FakeRedisPipeline:
    """Queues sorted-set commands and applies them together on execute."""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.commands: list[tuple[str, tuple]] = []

    def zremrangebyscore(self, key: str, min_score, max_score) -> "FakeRedisPipeline":  # noqa: ANN001
        self.commands.append(("_zremrangebyscore", (key, min_score, max_score)))
        return self

    def zadd(self, key: str, mapping: dict[str, float]) -> "FakeRedisPipeline":
        self.commands.append(("_zadd", (key, mapping)))
        return self

    def zcard(self, key: str) -> "FakeRedisPipeline":
        self.commands.append(("_zcard", (key,)))
        return self

    def expire(self, key: str, seconds: int) -> "FakeRedisPipeline":
        self.commands.append(("_expire", (key, seconds)))
        return self

    async def execute(self) -> list[Any]:
        self.redis._check_available()
        results = [getattr(self.redis, name)(*args) for name, args in self.commands]
        self.commands = []
        return results
