from __future__ import annotations

import logging
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from swapcore.config import EndpointConfig, RegistrySettings
from swapcore.errors import ErrorKind, NetworkUnavailableError
from swapcore.rpc import EndpointRegistry

URL_A = "https://rpc-a.example.com/?api-key=aaaa"
URL_B = "https://rpc-b.example.com"
URL_C = "https://rpc-c.example.com"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _client(*, healthy: bool = True) -> MagicMock:
    client = MagicMock()
    if healthy:
        client.get_latest_blockhash = AsyncMock(return_value=SimpleNamespace(value="blockhash"))
    else:
        client.get_latest_blockhash = AsyncMock(side_effect=ConnectionResetError("ECONNRESET"))
    client.close = AsyncMock()
    return client


class EndpointRegistryTests(unittest.IsolatedAsyncioTestCase):
    def _registry(
        self,
        endpoints: list[EndpointConfig] | None = None,
        *,
        clients: dict[str, MagicMock] | None = None,
    ) -> EndpointRegistry:
        self.clock = FakeClock()
        self.clients = clients or {url: _client() for url in (URL_A, URL_B, URL_C)}
        return EndpointRegistry(
            endpoints or [EndpointConfig(URL_A), EndpointConfig(URL_B), EndpointConfig(URL_C)],
            logger=logging.getLogger("test.endpoints"),
            settings=RegistrySettings(),
            connection_factory=self.clients.__getitem__,
            clock=self.clock,
        )

    def test_endpoints_are_ordered_by_descending_tier(self) -> None:
        registry = self._registry(
            [EndpointConfig(URL_A, tier=1), EndpointConfig(URL_B, tier=3), EndpointConfig(URL_C, tier=2)]
        )

        self.assertEqual([endpoint.url for endpoint in registry.endpoints], [URL_B, URL_C, URL_A])
        self.assertEqual(registry.current_endpoint().url, URL_B)

    def test_rotate_never_returns_cooling_endpoint_until_cooldown_passes(self) -> None:
        registry = self._registry()
        endpoint_a = registry.get(URL_A)

        registry.mark_failed(endpoint_a, 60, kind=ErrorKind.NETWORK)

        self.assertNotEqual(registry.current_endpoint().url, URL_A)
        for _ in range(20):
            self.clock.advance(2.5)
            self.assertNotEqual(registry.rotate(reason="test").url, URL_A)

        self.clock.advance(10)
        seen = {registry.rotate(reason="test").url for _ in range(3)}
        self.assertIn(URL_A, seen)

    def test_rotation_spreads_load_across_same_tier_peers(self) -> None:
        registry = self._registry()

        seen = [registry.rotate(reason="rotation_interval").url for _ in range(3)]

        self.assertEqual(seen, [URL_B, URL_C, URL_A])

    def test_repeated_failure_at_least_doubles_cooldown_up_to_cap(self) -> None:
        registry = self._registry()
        endpoint_b = registry.get(URL_B)

        first = registry.mark_failed(endpoint_b, 60)
        second = registry.mark_failed(endpoint_b, 60)

        self.assertEqual(first, 60)
        self.assertGreaterEqual(second, 2 * first)

        third = registry.mark_failed(endpoint_b, 60)
        fourth = registry.mark_failed(endpoint_b, 60)
        self.assertEqual(third, 240)
        self.assertEqual(fourth, 480)
        self.assertEqual(registry.mark_failed(endpoint_b, 60), 600)
        self.assertEqual(endpoint_b.cooldown_remaining(self.clock()), 600)

    def test_escalation_cap_applies_to_everything_but_auth(self) -> None:
        registry = self._registry()
        endpoint_b = registry.get(URL_B)
        endpoint_c = registry.get(URL_C)
        registry.mark_failed(endpoint_b, 30)
        registry.mark_failed(endpoint_c, 30)

        limited = registry.mark_failed(endpoint_b, 900, kind=ErrorKind.RATE_LIMIT)
        auth = registry.mark_failed(endpoint_c, retry_after_seconds=None, kind=ErrorKind.AUTH)

        self.assertEqual(limited, 600)
        self.assertEqual(auth, 3600)
        self.assertEqual(registry.mark_failed(endpoint_c, 60, kind=ErrorKind.NETWORK), 3600)

    def test_error_class_cooldowns(self) -> None:
        registry = self._registry()

        self.assertEqual(registry.cooldown_for(ErrorKind.RATE_LIMIT), 120)
        self.assertEqual(registry.cooldown_for(ErrorKind.AUTH), 3600)
        self.assertEqual(registry.cooldown_for(ErrorKind.TIMEOUT), 60)
        self.assertEqual(registry.cooldown_for(ErrorKind.NETWORK), 60)
        self.assertEqual(registry.cooldown_for(ErrorKind.UNKNOWN), 30)

    def test_all_cooling_force_selects_soonest_expiry(self) -> None:
        registry = self._registry()
        registry.mark_failed(registry.get(URL_A), 100, rotate=False)
        registry.mark_failed(registry.get(URL_B), 50, rotate=False)
        registry.mark_failed(registry.get(URL_C), 80, rotate=False)

        best = registry.find_best()

        self.assertEqual(best.url, URL_B)
        self.assertFalse(best.is_cooling(self.clock()))
        self.assertTrue(registry.get(URL_A).is_cooling(self.clock()))

    def test_find_best_raises_when_every_endpoint_is_deactivated(self) -> None:
        registry = self._registry([EndpointConfig(URL_A)])
        registry.get(URL_A).is_active = False

        with self.assertRaises(NetworkUnavailableError):
            registry.find_best()

    def test_rotation_reasons(self) -> None:
        registry = self._registry([EndpointConfig(URL_A, tier=2), EndpointConfig(URL_B, tier=1)])

        self.assertIsNone(registry.rotation_reason())
        self.assertEqual(registry.rotation_reason(global_usage_ratio=0.85), "global_rate_budget")
        self.assertEqual(registry.rotation_reason(endpoint_requests_last_minute=30), "endpoint_minute_cap")

        self.clock.advance(180)
        self.assertEqual(registry.rotation_reason(), "rotation_interval")

        registry.mark_failed(registry.get(URL_A), 60)
        self.assertEqual(registry.current_endpoint().url, URL_B)
        self.assertIsNone(registry.rotation_reason())

        self.clock.advance(61)
        self.assertEqual(registry.rotation_reason(), "higher_tier_available")
        self.assertEqual(registry.rotate(reason="higher_tier_available").url, URL_A)

    async def test_check_all_marks_failures_and_rotates_off_unhealthy_current(self) -> None:
        clients = {URL_A: _client(healthy=False), URL_B: _client(), URL_C: _client()}
        registry = self._registry(clients=clients)

        results = await registry.check_all()

        self.assertEqual(results, {URL_A: False, URL_B: True, URL_C: True})
        self.assertTrue(registry.get(URL_A).is_cooling(self.clock()))
        self.assertEqual(registry.get(URL_A).cooldown_remaining(self.clock()), 60)
        self.assertNotEqual(registry.current_endpoint().url, URL_A)
        self.assertEqual(registry.get(URL_B).metrics.success_count, 1)

    async def test_reset_connections_recreates_clients_and_clears_cooldowns(self) -> None:
        registry = self._registry()
        first_client = registry.connection(registry.get(URL_A))
        registry.mark_failed(registry.get(URL_A), 60)

        await registry.reset_connections()

        first_client.close.assert_awaited_once()
        self.assertFalse(registry.get(URL_A).is_cooling(self.clock()))
        self.assertEqual(registry.current_endpoint().url, URL_A)

    def test_metrics_snapshot_reports_rates_latency_and_state(self) -> None:
        registry = self._registry()
        endpoint_a = registry.get(URL_A)
        registry.record_success(endpoint_a, 100.0)
        registry.record_success(endpoint_a, 300.0)
        registry.record_failure(endpoint_a)
        registry.mark_failed(registry.get(URL_C), 30, rotate=False)

        snapshot = registry.metrics_snapshot()

        self.assertAlmostEqual(snapshot[URL_A]["success_rate"], 66.67)
        self.assertEqual(snapshot[URL_A]["avg_latency_ms"], 200.0)
        self.assertFalse(snapshot[URL_A]["is_failed"])
        self.assertTrue(snapshot[URL_C]["is_failed"])
        self.assertEqual(snapshot[URL_B]["tier"], 1)


if __name__ == "__main__":
    unittest.main()
