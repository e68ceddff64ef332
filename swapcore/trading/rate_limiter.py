from __future__ import annotations

import asyncio
import collections
import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from swapcore.common import log_event, mask_secret, spawn_background
from swapcore.common.async_utils import SleepFunc
from swapcore.errors import (
    ErrorKind,
    InvalidArgumentError,
    NetworkUnavailableError,
    classify_error,
    normalize_error,
)
from swapcore.retry import JitterFunc, RetryState, exponential_backoff_seconds, linear_backoff_seconds

T = TypeVar("T")

BUCKET_GENERAL = "general"
BUCKET_PRICE = "price"
BUCKET_CLASSES = (BUCKET_GENERAL, BUCKET_PRICE)

FREE_API_HOST = "https://lite-api.jup.ag"
PAID_API_HOST = "https://api.jup.ag"


@dataclass(slots=True, frozen=True)
class RateLimitTier:
    name: str
    requests_per_minute: int
    capacity: int
    separate_price_bucket: bool
    requires_api_key: bool
    api_host: str

    @property
    def refill_rate_per_second(self) -> float:
        return self.requests_per_minute / 60.0


TIER_PRESETS: dict[str, RateLimitTier] = {
    "free": RateLimitTier("free", 60, 10, False, False, FREE_API_HOST),
    "pro_i": RateLimitTier("pro_i", 600, 100, True, True, PAID_API_HOST),
    "pro_ii": RateLimitTier("pro_ii", 3000, 500, True, True, PAID_API_HOST),
    "pro_iii": RateLimitTier("pro_iii", 6000, 1000, True, True, PAID_API_HOST),
    "pro_iv": RateLimitTier("pro_iv", 30000, 5000, True, True, PAID_API_HOST),
}


class TokenBucket:
    """Lazily refilled token bucket; callers pass the current monotonic time."""

    def __init__(self, *, capacity: float, refill_rate_per_second: float, now: float) -> None:
        self.capacity = max(1.0, float(capacity))
        self.refill_rate_per_second = max(0.001, float(refill_rate_per_second))
        self.tokens = self.capacity
        self.last_refill_at = now

    def refill(self, *, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill_at)
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_second)
        self.last_refill_at = max(self.last_refill_at, now)

    def available(self, *, now: float) -> float:
        self.refill(now=now)
        return self.tokens

    def try_consume(self, *, now: float, tokens: float = 1.0) -> bool:
        self.refill(now=now)
        if self.tokens < tokens:
            return False
        self.tokens = max(0.0, self.tokens - tokens)
        return True

    def wait_time_ms(self, *, now: float, tokens: float = 1.0) -> int:
        self.refill(now=now)
        if self.tokens >= tokens:
            return 0
        deficit = tokens - self.tokens
        return math.ceil(deficit / self.refill_rate_per_second * 1000 + 50)


@dataclass(slots=True)
class _PendingCall:
    operation: Callable[[], Awaitable[Any]]
    bucket_class: str
    future: asyncio.Future[Any]
    retry: RetryState
    label: str = ""


@dataclass(slots=True)
class RateLimiterStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    retried_requests: int = 0
    rate_limit_errors: int = 0
    other_errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "retried_requests": self.retried_requests,
            "rate_limit_errors": self.rate_limit_errors,
            "other_errors": self.other_errors,
        }


@dataclass(slots=True)
class _Buckets:
    tier: RateLimitTier
    general: TokenBucket
    price: TokenBucket | None = None


class AggregatorRateLimiter:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        tier: str = "free",
        api_key: str = "",
        max_concurrent: int = 2,
        max_retries: int = 3,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
        jitter: JitterFunc = random.uniform,
    ) -> None:
        self._logger = logger
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter
        self._max_concurrent = max(1, int(max_concurrent))
        self._max_retries = max(0, int(max_retries))
        self._api_key = ""
        self._buckets = self._build_buckets(tier, api_key)
        self._api_key = api_key.strip()
        self._queue: collections.deque[_PendingCall] = collections.deque()
        self._active_requests = 0
        self._slot_released = asyncio.Event()
        self._drain_task: asyncio.Task[Any] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._stats = RateLimiterStats()

    def _build_buckets(self, tier: str, api_key: str) -> _Buckets:
        preset = TIER_PRESETS.get((tier or "").strip().lower())
        if preset is None:
            raise InvalidArgumentError(f"Unknown rate limit tier: {tier!r}")
        if preset.requires_api_key and not (api_key or self._api_key).strip():
            raise InvalidArgumentError(f"Rate limit tier {preset.name} requires an API key")

        now = self._clock()
        general = TokenBucket(
            capacity=preset.capacity,
            refill_rate_per_second=preset.refill_rate_per_second,
            now=now,
        )
        price = None
        if preset.separate_price_bucket:
            price = TokenBucket(
                capacity=preset.capacity,
                refill_rate_per_second=preset.refill_rate_per_second,
                now=now,
            )
        return _Buckets(tier=preset, general=general, price=price)

    @property
    def tier(self) -> RateLimitTier:
        return self._buckets.tier

    @property
    def api_host(self) -> str:
        return self._buckets.tier.api_host

    @property
    def api_key(self) -> str:
        return self._api_key

    @property
    def queued_requests(self) -> int:
        return len(self._queue)

    def auth_headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"x-api-key": self._api_key}

    def set_tier(self, tier: str, api_key: str | None = None) -> None:
        buckets = self._build_buckets(tier, api_key or "")
        previous = self._buckets.tier.name
        self._buckets = buckets
        if api_key:
            self._api_key = api_key.strip()
        log_event(
            self._logger,
            level="info",
            event="rate_limiter_tier_changed",
            message="Aggregator rate limit tier changed",
            previous_tier=previous,
            tier=buckets.tier.name,
            requests_per_minute=buckets.tier.requests_per_minute,
            api_host=buckets.tier.api_host,
        )

    def _bucket(self, bucket_class: str) -> TokenBucket:
        if bucket_class == BUCKET_PRICE:
            return self._buckets.price or self._buckets.general
        if bucket_class == BUCKET_GENERAL:
            return self._buckets.general
        raise InvalidArgumentError(f"Unknown bucket class: {bucket_class!r}")

    def try_consume(self, bucket_class: str = BUCKET_GENERAL) -> bool:
        return self._bucket(bucket_class).try_consume(now=self._clock())

    def wait_time_ms(self, bucket_class: str = BUCKET_GENERAL) -> int:
        return self._bucket(bucket_class).wait_time_ms(now=self._clock())

    def tokens_available(self, bucket_class: str = BUCKET_GENERAL) -> float:
        return self._bucket(bucket_class).available(now=self._clock())

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        bucket_class: str = BUCKET_GENERAL,
        *,
        label: str = "",
    ) -> T:
        self._bucket(bucket_class)
        loop = asyncio.get_running_loop()
        call = _PendingCall(
            operation=operation,
            bucket_class=bucket_class,
            future=loop.create_future(),
            retry=RetryState(max_attempts=self._max_retries),
            label=label,
        )
        self._stats.total_requests += 1
        self._queue.append(call)
        self._kick()
        return await call.future

    def _kick(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            if self._active_requests >= self._max_concurrent:
                self._slot_released.clear()
                await self._slot_released.wait()
                continue

            call = self._queue[0]
            if call.future.done():
                self._queue.popleft()
                continue

            wait_ms = self.wait_time_ms(call.bucket_class)
            if wait_ms > 0 or not self.try_consume(call.bucket_class):
                await self._sleep(max(wait_ms, 50) / 1000)
                continue

            self._queue.popleft()
            self._active_requests += 1
            spawn_background(self._run(call), registry=self._background)

    async def _run(self, call: _PendingCall) -> None:
        try:
            result = await call.operation()
        except asyncio.CancelledError:
            if not call.future.done():
                call.future.cancel()
            raise
        except Exception as error:
            self._handle_failure(call, error)
        else:
            self._stats.successful_requests += 1
            if not call.future.done():
                call.future.set_result(result)
        finally:
            self._active_requests -= 1
            self._slot_released.set()

    def _retry_delay_seconds(self, kind: ErrorKind, call: _PendingCall, error: Exception) -> float | None:
        if kind is ErrorKind.RATE_LIMIT:
            if getattr(error, "circuit_open", False):
                return None
            delay = exponential_backoff_seconds(call.retry.attempt, jitter=self._jitter)
            retry_after = getattr(error, "retry_after_seconds", None)
            if retry_after:
                delay = max(delay, float(retry_after))
            return delay
        if kind in {ErrorKind.NETWORK, ErrorKind.TIMEOUT}:
            return linear_backoff_seconds(call.retry.attempt, jitter=self._jitter)
        return None

    def _handle_failure(self, call: _PendingCall, error: Exception) -> None:
        kind = classify_error(error)
        if kind is ErrorKind.RATE_LIMIT:
            self._stats.rate_limit_errors += 1
        else:
            self._stats.other_errors += 1

        delay = self._retry_delay_seconds(kind, call, error)
        if delay is None or call.retry.exhausted:
            self._stats.failed_requests += 1
            normalized = normalize_error(error, provider="jupiter")
            log_event(
                self._logger,
                level="warning",
                event="aggregator_request_failed",
                message="Aggregator request failed without further retries",
                label=call.label,
                error=str(error),
                error_kind=kind.value,
                attempts=call.retry.attempt + 1,
            )
            if not call.future.done():
                call.future.set_exception(normalized)
            return

        call.retry = call.retry.advanced(error)
        self._stats.retried_requests += 1
        log_event(
            self._logger,
            level="warning",
            event="aggregator_rate_limited" if kind is ErrorKind.RATE_LIMIT else "aggregator_retry_scheduled",
            message="Aggregator request will be retried",
            label=call.label,
            error=str(error),
            error_kind=kind.value,
            retry_attempt=call.retry.attempt,
            max_retries=call.retry.max_attempts,
            delay_seconds=round(delay, 3),
        )
        spawn_background(self._requeue_after(call, delay), registry=self._background)

    async def _requeue_after(self, call: _PendingCall, delay_seconds: float) -> None:
        await self._sleep(delay_seconds)
        if call.future.done():
            return
        self._queue.appendleft(call)
        self._kick()

    def get_status(self) -> dict[str, Any]:
        tier = self._buckets.tier
        return {
            "tier": tier.name,
            "api_host": tier.api_host,
            "api_key": mask_secret(self._api_key),
            "requests_per_minute": tier.requests_per_minute,
            "tokens_available": {
                bucket_class: round(self.tokens_available(bucket_class), 3) for bucket_class in BUCKET_CLASSES
            },
            "separate_price_bucket": tier.separate_price_bucket,
            "queued_requests": len(self._queue),
            "active_requests": self._active_requests,
            "stats": self._stats.to_dict(),
        }

    async def close(self) -> None:
        tasks = [task for task in (self._drain_task, *self._background) if task is not None and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._drain_task = None

        while self._queue:
            call = self._queue.popleft()
            if not call.future.done():
                call.future.set_exception(NetworkUnavailableError("Aggregator rate limiter was closed"))
