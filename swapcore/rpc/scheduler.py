from __future__ import annotations

import asyncio
import collections
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from swapcore.common import guarded_call, log_event, spawn_background
from swapcore.common.async_utils import SleepFunc
from swapcore.config import SchedulerSettings
from swapcore.errors import (
    RETRYABLE_KINDS,
    ErrorKind,
    NetworkUnavailableError,
    RequestTimeoutError,
    classify_error,
    normalize_error,
)
from swapcore.retry import JitterFunc, RetryState, exponential_backoff_seconds

from .endpoints import Endpoint, EndpointRegistry
from .operations import OPERATIONS, OperationSpec, RpcOperation, prepare_arguments
from .windows import RequestWindows


@dataclass(slots=True)
class QueuedRequest:
    operation: RpcOperation
    args: tuple[Any, ...]
    future: asyncio.Future[Any]
    retry: RetryState
    enqueued_at: float


class RpcRequestScheduler:
    def __init__(
        self,
        *,
        registry: EndpointRegistry,
        logger: logging.Logger,
        settings: SchedulerSettings | None = None,
        operations: Mapping[RpcOperation, OperationSpec] = OPERATIONS,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
        jitter: JitterFunc = random.uniform,
    ) -> None:
        self._registry = registry
        self._logger = logger
        self._settings = settings or SchedulerSettings()
        self._operations = operations
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter
        self._queue: collections.deque[QueuedRequest] = collections.deque()
        self._windows = RequestWindows()
        self._last_dispatch_at: float | None = None
        self._processor: asyncio.Task[Any] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    async def call(self, operation: RpcOperation, *args: Any) -> Any:
        prepared = prepare_arguments(operation, args)
        loop = asyncio.get_running_loop()
        request = QueuedRequest(
            operation=operation,
            args=prepared,
            future=loop.create_future(),
            retry=RetryState(max_attempts=self._settings.max_retries),
            enqueued_at=self._clock(),
        )
        self._queue.append(request)
        self._kick()
        return await request.future

    def _kick(self) -> None:
        if self._processor is None or self._processor.done():
            self._processor = asyncio.get_running_loop().create_task(self._process_queue())

    async def _process_queue(self) -> None:
        while self._queue:
            request = self._queue.popleft()
            if request.future.done():
                continue
            await self._respect_spacing(request.operation)
            await self._dispatch(request)

    async def _respect_spacing(self, operation: RpcOperation) -> None:
        if not self._settings.throttling_enabled:
            return

        delay = 0.0
        if self._last_dispatch_at is not None:
            elapsed = self._clock() - self._last_dispatch_at
            delay = max(0.0, self._settings.min_request_interval_seconds - elapsed)

        if self._windows.method_count(operation.value, self._clock()) >= self._settings.method_max_requests_per_10s:
            delay += self._settings.method_throttle_delay_seconds
            log_event(
                self._logger,
                level="debug",
                event="rpc_method_throttled",
                message="Per-method RPC budget reached; delaying request",
                method=operation.value,
                delay_seconds=round(delay, 3),
            )

        if delay > 0:
            await self._sleep(delay)

    def _prepare_endpoint(self, operation: RpcOperation) -> Endpoint:
        now = self._clock()
        current = self._registry.current_endpoint()
        reason = self._registry.rotation_reason(
            global_usage_ratio=self._windows.global_10s.count(now) / self._settings.global_max_requests_per_10s,
            endpoint_requests_last_minute=self._windows.endpoint_count(current.url, now),
        )
        if reason is not None:
            current = self._registry.rotate(reason=reason)

        self._windows.record(endpoint_url=current.url, method=operation.value, now=now)
        self._last_dispatch_at = now
        return current

    async def _dispatch(self, request: QueuedRequest) -> None:
        entry = self._operations[request.operation]
        endpoint = self._prepare_endpoint(request.operation)
        started = self._clock()
        try:
            client = self._registry.connection(endpoint)
            result = await asyncio.wait_for(
                entry.handler(client, *request.args),
                timeout=self._settings.request_timeout_seconds,
            )
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.cancel()
            raise
        except asyncio.TimeoutError as error:
            timeout_error = RequestTimeoutError(
                f"{request.operation.value} timed out after {self._settings.request_timeout_seconds:.1f}s"
            )
            timeout_error.__cause__ = error
            self._handle_failure(request, endpoint, timeout_error)
        except Exception as error:
            self._handle_failure(request, endpoint, error)
        else:
            self._registry.record_success(endpoint, (self._clock() - started) * 1000.0)
            if not request.future.done():
                request.future.set_result(result)

    def _handle_failure(self, request: QueuedRequest, endpoint: Endpoint, error: Exception) -> None:
        kind = classify_error(error)
        retryable = kind in RETRYABLE_KINDS

        if kind is ErrorKind.INVALID_ARGUMENT:
            self._reject(request, error, kind)
            return

        retry_after = getattr(error, "retry_after_seconds", None)
        if kind is ErrorKind.AUTH or retryable:
            self._registry.mark_failed(
                endpoint,
                retry_after if retry_after else self._registry.cooldown_for(kind),
                kind=kind,
                rotate=False,
            )
        else:
            self._registry.record_failure(endpoint)
        self._registry.rotate(reason=f"request_{kind.value}")

        if not retryable or request.retry.exhausted:
            self._reject(request, error, kind)
            if retryable and len(self._queue) > self._settings.health_check_queue_threshold:
                spawn_background(
                    guarded_call(
                        self._registry.check_all,
                        logger=self._logger,
                        event="endpoint_health_check_error",
                        message="Health check after exhausted retries failed",
                    ),
                    registry=self._background,
                )
            return

        delay = exponential_backoff_seconds(
            request.retry.attempt,
            base_seconds=self._settings.retry_base_seconds,
            max_seconds=self._settings.retry_max_seconds,
            jitter_seconds=self._settings.retry_jitter_seconds,
            jitter=self._jitter,
        )
        request.retry = request.retry.advanced(error)
        log_event(
            self._logger,
            level="warning",
            event="rpc_retry_scheduled",
            message="RPC request failed; retrying on the next endpoint",
            method=request.operation.value,
            endpoint=endpoint.label,
            error=str(error),
            error_kind=kind.value,
            retry_attempt=request.retry.attempt,
            max_retries=request.retry.max_attempts,
            delay_seconds=round(delay, 3),
        )
        spawn_background(self._requeue_after(request, delay), registry=self._background)

    def _reject(self, request: QueuedRequest, error: Exception, kind: ErrorKind) -> None:
        log_event(
            self._logger,
            level="error",
            event="rpc_request_failed",
            message="RPC request failed",
            method=request.operation.value,
            error=str(error),
            error_kind=kind.value,
            attempts=request.retry.attempt + 1,
        )
        if not request.future.done():
            request.future.set_exception(normalize_error(error, provider="rpc"))

    async def _requeue_after(self, request: QueuedRequest, delay_seconds: float) -> None:
        await self._sleep(delay_seconds)
        if request.future.done():
            return
        self._queue.appendleft(request)
        self._kick()

    def window_usage(self) -> dict[str, Any]:
        now = self._clock()
        requests_in_10s = self._windows.global_10s.count(now)
        budget = self._settings.global_max_requests_per_10s
        return {
            "requests_in_10_sec": requests_in_10s,
            "max_requests_per_10_sec": budget,
            "usage_percentage": round(requests_in_10s / budget * 100.0, 2),
            "method_usage": self._windows.method_counts(now),
            "queued_requests": len(self._queue),
        }

    async def close(self) -> None:
        tasks = [task for task in (self._processor, *self._background) if task is not None and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._processor = None

        while self._queue:
            request = self._queue.popleft()
            if not request.future.done():
                request.future.set_exception(NetworkUnavailableError("RPC scheduler was closed"))
