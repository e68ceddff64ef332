from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from swapcore.common import guarded_call, log_event, wait_with_stop
from swapcore.config import HealthMonitorSettings

from .endpoints import EndpointRegistry


class EndpointHealthMonitor:
    """Periodic liveness probing of every endpoint.

    The interval shortens after consecutive failed rounds, and connections are
    recreated once no endpoint has answered for ``reset_after_seconds``.
    """

    def __init__(
        self,
        *,
        registry: EndpointRegistry,
        logger: logging.Logger,
        settings: HealthMonitorSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._logger = logger
        self._settings = settings or HealthMonitorSettings()
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[Any] | None = None
        self._consecutive_failures = 0
        self._started_at = clock()

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def current_interval(self) -> float:
        if self._consecutive_failures >= self._settings.degraded_after_failures:
            return self._settings.degraded_interval_seconds
        return self._settings.interval_seconds

    async def run_once(self) -> dict[str, bool]:
        results = await guarded_call(
            self._registry.check_all,
            logger=self._logger,
            event="endpoint_health_round_error",
            message="Endpoint health round failed",
            default={},
        )
        results = results or {}

        if any(results.values()):
            self._consecutive_failures = 0
        else:
            self._consecutive_failures += 1
            log_event(
                self._logger,
                level="warning",
                event="endpoint_health_degraded",
                message="No RPC endpoint passed the health round",
                consecutive_failures=self._consecutive_failures,
                next_interval_seconds=self.current_interval(),
            )

        await self._reset_if_stale()
        return results

    async def _reset_if_stale(self) -> None:
        last_success = self._registry.last_success_at()
        reference = last_success if last_success is not None else self._started_at
        if self._clock() - reference < self._settings.reset_after_seconds:
            return

        await guarded_call(
            self._registry.reset_connections,
            logger=self._logger,
            event="endpoint_reset_failed",
            message="Failed to recreate RPC connections",
        )
        self._started_at = self._clock()

    async def _run(self) -> None:
        log_event(
            self._logger,
            level="info",
            event="endpoint_health_monitor_started",
            message="Endpoint health monitor started",
            interval_seconds=self._settings.interval_seconds,
        )
        while not self._stop_event.is_set():
            await self.run_once()
            await wait_with_stop(self._stop_event, self.current_interval())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        self._stop_event.set()
        task = self._task
        self._task = None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=self._settings.interval_seconds)
        except asyncio.TimeoutError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
