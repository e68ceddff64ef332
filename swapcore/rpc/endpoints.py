from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

from solana.rpc.async_api import AsyncClient

from swapcore.common import log_event, redact_url
from swapcore.config import EndpointConfig, RegistrySettings
from swapcore.errors import ErrorKind, InvalidArgumentError, NetworkUnavailableError, classify_error

ConnectionFactory = Callable[[str], Any]
ProbeFunc = Callable[[Any], Awaitable[Any]]


async def latest_blockhash_probe(client: Any) -> Any:
    response = await client.get_latest_blockhash()
    if getattr(response, "value", None) is None:
        raise NetworkUnavailableError(f"Liveness probe returned no blockhash: {response}")
    return response.value


@dataclass(slots=True)
class EndpointMetrics:
    success_count: int = 0
    failure_count: int = 0
    total_latency_ms: float = 0.0
    last_success_at: float | None = None
    cooldown_until: float = 0.0

    @property
    def avg_latency_ms(self) -> float:
        if self.success_count <= 0:
            return 0.0
        return self.total_latency_ms / self.success_count

    @property
    def success_rate(self) -> float:
        total = self.success_count + self.failure_count
        if total <= 0:
            return 0.0
        return self.success_count / total * 100.0


@dataclass(slots=True)
class Endpoint:
    url: str
    tier: int = 1
    is_active: bool = True
    metrics: EndpointMetrics = field(default_factory=EndpointMetrics)

    @property
    def label(self) -> str:
        return redact_url(self.url)

    def is_cooling(self, now: float) -> bool:
        return self.metrics.cooldown_until > now

    def cooldown_remaining(self, now: float) -> float:
        return max(0.0, self.metrics.cooldown_until - now)


class EndpointRegistry:
    def __init__(
        self,
        endpoints: Iterable[EndpointConfig],
        *,
        logger: logging.Logger,
        settings: RegistrySettings | None = None,
        connection_factory: ConnectionFactory = AsyncClient,
        probe: ProbeFunc = latest_blockhash_probe,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = logger
        self._settings = settings or RegistrySettings()
        self._connection_factory = connection_factory
        self._probe = probe
        self._clock = clock
        ordered = sorted(
            (Endpoint(url=item.url, tier=item.tier) for item in endpoints),
            key=lambda endpoint: endpoint.tier,
            reverse=True,
        )
        if not ordered:
            raise InvalidArgumentError("At least one RPC endpoint must be configured")
        self._endpoints: tuple[Endpoint, ...] = tuple(ordered)
        self._by_url = {endpoint.url: endpoint for endpoint in self._endpoints}
        self._connections: dict[str, Any] = {}
        self._current = self._endpoints[0]
        self._last_rotation_at = clock()

    @property
    def endpoints(self) -> tuple[Endpoint, ...]:
        return self._endpoints

    @property
    def last_rotation_at(self) -> float:
        return self._last_rotation_at

    def get(self, url: str) -> Endpoint:
        try:
            return self._by_url[url]
        except KeyError:
            raise InvalidArgumentError(f"Unknown RPC endpoint: {redact_url(url)}") from None

    def current_endpoint(self) -> Endpoint:
        return self._current

    def connection(self, endpoint: Endpoint | None = None) -> Any:
        target = endpoint or self._current
        client = self._connections.get(target.url)
        if client is None:
            client = self._connection_factory(target.url)
            self._connections[target.url] = client
        return client

    def cooldown_for(self, kind: ErrorKind) -> float:
        if kind is ErrorKind.RATE_LIMIT:
            return self._settings.rate_limit_cooldown_seconds
        if kind is ErrorKind.AUTH:
            return self._settings.auth_cooldown_seconds
        if kind in {ErrorKind.NETWORK, ErrorKind.TIMEOUT}:
            return self._settings.network_cooldown_seconds
        return self._settings.unknown_cooldown_seconds

    def _available(self, now: float) -> list[Endpoint]:
        return [endpoint for endpoint in self._endpoints if endpoint.is_active and not endpoint.is_cooling(now)]

    def find_best(self) -> Endpoint:
        now = self._clock()
        available = self._available(now)
        if available:
            return available[0]

        active = [endpoint for endpoint in self._endpoints if endpoint.is_active]
        if not active:
            raise NetworkUnavailableError("No active RPC endpoints are configured")

        # Every endpoint is cooling: take the one that recovers first.
        soonest = min(active, key=lambda endpoint: endpoint.metrics.cooldown_until)
        soonest.metrics.cooldown_until = 0.0
        log_event(
            self._logger,
            level="warning",
            event="endpoint_cooldown_forced_clear",
            message="All RPC endpoints are cooling down; reusing the one that expires first",
            endpoint=soonest.label,
            tier=soonest.tier,
        )
        return soonest

    def _next_peer(self, best: Endpoint, now: float) -> Endpoint:
        peers = [endpoint for endpoint in self._available(now) if endpoint.tier == best.tier]
        if len(peers) < 2 or self._current not in peers:
            return best
        index = peers.index(self._current)
        return peers[(index + 1) % len(peers)]

    def rotate(self, *, reason: str = "manual") -> Endpoint:
        now = self._clock()
        previous = self._current
        best = self.find_best()
        if best.tier == previous.tier:
            best = self._next_peer(best, now)

        self._current = best
        self._last_rotation_at = now
        if best is not previous:
            log_event(
                self._logger,
                level="warning" if reason not in {"rotation_interval", "higher_tier_available"} else "info",
                event="endpoint_rotated",
                message="Rotated RPC endpoint",
                reason=reason,
                previous_endpoint=previous.label,
                endpoint=best.label,
                tier=best.tier,
            )
        return best

    def rotation_reason(
        self,
        *,
        global_usage_ratio: float = 0.0,
        endpoint_requests_last_minute: int = 0,
    ) -> str | None:
        now = self._clock()
        current = self._current
        if not current.is_active or current.is_cooling(now):
            return "current_endpoint_cooling"
        if global_usage_ratio > self._settings.global_usage_threshold:
            return "global_rate_budget"
        if endpoint_requests_last_minute >= self._settings.max_requests_per_minute:
            return "endpoint_minute_cap"
        if now - self._last_rotation_at >= self._settings.rotation_interval_seconds:
            return "rotation_interval"
        available = self._available(now)
        if available and available[0].tier > current.tier:
            return "higher_tier_available"
        return None

    def mark_failed(
        self,
        endpoint: Endpoint,
        retry_after_seconds: float | None = None,
        *,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        rotate: bool = True,
    ) -> float:
        now = self._clock()
        requested = retry_after_seconds if retry_after_seconds is not None else self.cooldown_for(kind)
        requested = max(0.0, float(requested))
        metrics = endpoint.metrics

        if endpoint.is_cooling(now):
            remaining = endpoint.cooldown_remaining(now)
            cap = self._settings.max_cooldown_seconds
            duration = max(min(cap, remaining * 2), min(cap, requested), remaining)
            if kind is ErrorKind.AUTH:
                # auth cooldowns are exempt from the cap
                duration = max(duration, requested)
        else:
            duration = requested

        metrics.cooldown_until = now + duration
        metrics.failure_count += 1
        log_event(
            self._logger,
            level="warning",
            event="endpoint_marked_failed",
            message="Marked RPC endpoint as failed",
            endpoint=endpoint.label,
            error_kind=kind.value,
            cooldown_seconds=round(duration, 3),
            failure_count=metrics.failure_count,
        )

        if rotate and endpoint is self._current:
            self.rotate(reason="endpoint_failed")
        return duration

    def mark_failed_for(self, endpoint: Endpoint, kind: ErrorKind, *, rotate: bool = True) -> float:
        return self.mark_failed(endpoint, self.cooldown_for(kind), kind=kind, rotate=rotate)

    def record_success(self, endpoint: Endpoint, latency_ms: float, *, clear_cooldown: bool = False) -> None:
        metrics = endpoint.metrics
        metrics.success_count += 1
        metrics.total_latency_ms += max(0.0, latency_ms)
        metrics.last_success_at = self._clock()
        if clear_cooldown:
            metrics.cooldown_until = 0.0

    def record_failure(self, endpoint: Endpoint) -> None:
        endpoint.metrics.failure_count += 1

    def last_success_at(self) -> float | None:
        stamps = [endpoint.metrics.last_success_at for endpoint in self._endpoints]
        known = [stamp for stamp in stamps if stamp is not None]
        return max(known) if known else None

    async def check_health(self, endpoint: Endpoint) -> bool:
        started = self._clock()
        try:
            client = self.connection(endpoint)
            await asyncio.wait_for(self._probe(client), timeout=self._settings.probe_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            kind = classify_error(error)
            log_event(
                self._logger,
                level="warning",
                event="endpoint_health_check_failed",
                message="RPC endpoint failed its liveness probe",
                endpoint=endpoint.label,
                error=str(error),
                error_kind=kind.value,
            )
            self.mark_failed_for(endpoint, kind)
            return False

        self.record_success(endpoint, (self._clock() - started) * 1000.0, clear_cooldown=True)
        return True

    async def check_all(self) -> dict[str, bool]:
        targets = [endpoint for endpoint in self._endpoints if endpoint.is_active]
        outcomes = await asyncio.gather(*(self.check_health(endpoint) for endpoint in targets))
        results = {endpoint.url: healthy for endpoint, healthy in zip(targets, outcomes)}

        current_healthy = results.get(self._current.url, False)
        if not current_healthy and any(results.values()):
            self.rotate(reason="health_check")

        log_event(
            self._logger,
            level="info",
            event="endpoint_health_checked",
            message="RPC endpoint health check completed",
            healthy=sum(1 for healthy in results.values() if healthy),
            total=len(results),
            current_endpoint=self._current.label,
        )
        return results

    def deactivate(self, url: str) -> None:
        endpoint = self.get(url)
        endpoint.is_active = False
        log_event(
            self._logger,
            level="warning",
            event="endpoint_deactivated",
            message="RPC endpoint deactivated",
            endpoint=endpoint.label,
        )
        if endpoint is self._current:
            self.rotate(reason="endpoint_deactivated")

    def activate(self, url: str) -> None:
        self.get(url).is_active = True

    async def _close_connections(self) -> None:
        connections = list(self._connections.values())
        self._connections.clear()
        for client in connections:
            close = getattr(client, "close", None)
            if close is None:
                continue
            with contextlib.suppress(Exception):
                await close()

    async def reset_connections(self) -> None:
        await self._close_connections()
        for endpoint in self._endpoints:
            endpoint.metrics.cooldown_until = 0.0
        self._current = self.find_best()
        self._last_rotation_at = self._clock()
        log_event(
            self._logger,
            level="warning",
            event="endpoint_connections_reset",
            message="RPC connections were recreated and cooldowns cleared",
            endpoint=self._current.label,
        )

    def metrics_snapshot(self) -> dict[str, dict[str, Any]]:
        now = self._clock()
        return {
            endpoint.url: {
                "success_rate": round(endpoint.metrics.success_rate, 2),
                "avg_latency_ms": round(endpoint.metrics.avg_latency_ms, 2),
                "is_failed": endpoint.is_cooling(now),
                "tier": endpoint.tier,
                "is_active": endpoint.is_active,
                "is_current": endpoint is self._current,
                "success_count": endpoint.metrics.success_count,
                "failure_count": endpoint.metrics.failure_count,
                "cooldown_remaining_seconds": round(endpoint.cooldown_remaining(now), 3),
            }
            for endpoint in self._endpoints
        }

    async def close(self) -> None:
        await self._close_connections()
