from __future__ import annotations

import asyncio
import logging
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from swapcore.config import EndpointConfig, RegistrySettings, SchedulerSettings
from swapcore.errors import (
    AuthRejectedError,
    InvalidArgumentError,
    NetworkUnavailableError,
    RateLimitedError,
    RequestTimeoutError,
)
from swapcore.rpc import EndpointRegistry, RpcOperation, RpcRequestScheduler, prepare_arguments
from swapcore.rpc.operations import OperationSpec

URL_A = "https://rpc-a.example.com"
URL_B = "https://rpc-b.example.com"
URL_C = "https://rpc-c.example.com"
WSOL = "So11111111111111111111111111111111111111112"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _no_jitter(_low: float, _high: float) -> float:
    return 0.0


class PrepareArgumentsTests(unittest.TestCase):
    def test_default_commitment_replaces_missing_value(self) -> None:
        self.assertEqual(prepare_arguments(RpcOperation.GET_BALANCE, ("addr", None)), ("addr", "confirmed"))
        self.assertEqual(prepare_arguments(RpcOperation.GET_BALANCE, ("addr",)), ("addr", "confirmed"))

    def test_commitment_is_padded_after_optional_arguments(self) -> None:
        self.assertEqual(
            prepare_arguments(RpcOperation.GET_TOKEN_ACCOUNTS_BY_OWNER, ("owner",)),
            ("owner", None, "confirmed"),
        )

    def test_explicit_commitment_is_kept(self) -> None:
        self.assertEqual(
            prepare_arguments(RpcOperation.GET_ACCOUNT_INFO, ("addr", "finalized")),
            ("addr", "finalized"),
        )

    def test_trailing_none_is_stripped_for_operations_without_commitment(self) -> None:
        self.assertEqual(
            prepare_arguments(RpcOperation.GET_SIGNATURE_STATUSES, (["sig"], None, None)),
            (["sig"],),
        )


class RpcRequestSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        self.sleeps: list[float] = []
        self.clients = {url: MagicMock(name=url) for url in (URL_A, URL_B, URL_C)}
        self.logger = logging.getLogger("test.rpc_scheduler")
        self.registry = EndpointRegistry(
            [EndpointConfig(URL_A), EndpointConfig(URL_B), EndpointConfig(URL_C)],
            logger=self.logger,
            settings=RegistrySettings(),
            connection_factory=self.clients.__getitem__,
            clock=self.clock,
        )
        self.scheduler: RpcRequestScheduler | None = None

    async def asyncTearDown(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.close()
        await self.registry.close()

    async def _fake_sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.clock.advance(seconds)
        await asyncio.sleep(0)

    def _scheduler(self, handler: AsyncMock, *, sleep=None, **overrides) -> RpcRequestScheduler:
        settings = {
            "min_request_interval_seconds": 0.0,
            "throttling_enabled": False,
            "retry_jitter_seconds": 0.0,
            "max_retries": 5,
        }
        settings.update(overrides)
        self.scheduler = RpcRequestScheduler(
            registry=self.registry,
            logger=self.logger,
            settings=SchedulerSettings(**settings),
            operations={RpcOperation.GET_BALANCE: OperationSpec(handler, commitment_index=1)},
            clock=self.clock,
            sleep=sleep or self._fake_sleep,
            jitter=_no_jitter,
        )
        return self.scheduler

    async def test_retries_on_next_endpoint_with_growing_backoff(self) -> None:
        handler = AsyncMock(
            side_effect=[
                RateLimitedError("429 Too Many Requests", provider="rpc"),
                NetworkUnavailableError("ECONNRESET"),
                1_000_000,
            ]
        )
        scheduler = self._scheduler(handler)

        result = await scheduler.call(RpcOperation.GET_BALANCE, WSOL)

        self.assertEqual(result, 1_000_000)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        used_clients = [call.args[0] for call in handler.await_args_list]
        self.assertEqual(used_clients, [self.clients[URL_A], self.clients[URL_B], self.clients[URL_C]])
        self.assertEqual(handler.await_args_list[0].args[1:], (WSOL, "confirmed"))
        self.assertTrue(self.registry.get(URL_A).is_cooling(self.clock()))
        self.assertTrue(self.registry.get(URL_B).is_cooling(self.clock()))
        self.assertEqual(self.registry.get(URL_C).metrics.success_count, 1)

    async def test_rate_limit_cooldown_honours_retry_after(self) -> None:
        handler = AsyncMock(side_effect=[RateLimitedError("slow down", retry_after_seconds=300), "ok"])
        scheduler = self._scheduler(handler)

        await scheduler.call(RpcOperation.GET_BALANCE, WSOL)

        self.assertEqual(self.registry.get(URL_A).cooldown_remaining(self.clock()), 299.0)

    async def test_retried_request_runs_before_later_arrivals(self) -> None:
        retry_gate = asyncio.Event()
        slow_gate = asyncio.Event()
        failed_once: set[str] = set()

        async def balance(client, address, commitment):
            if address == "first" and address not in failed_once:
                failed_once.add(address)
                raise NetworkUnavailableError("ECONNRESET")
            if address == "second":
                await slow_gate.wait()
            return address

        async def gated_sleep(seconds: float) -> None:
            self.sleeps.append(seconds)
            await retry_gate.wait()

        handler = AsyncMock(side_effect=balance)
        scheduler = self._scheduler(handler, sleep=gated_sleep)

        async def settle() -> None:
            for _ in range(20):
                await asyncio.sleep(0)

        first = asyncio.create_task(scheduler.call(RpcOperation.GET_BALANCE, "first"))
        await settle()
        second = asyncio.create_task(scheduler.call(RpcOperation.GET_BALANCE, "second"))
        await settle()
        third = asyncio.create_task(scheduler.call(RpcOperation.GET_BALANCE, "third"))
        await settle()
        self.assertEqual(scheduler.queue_length, 1)

        retry_gate.set()
        await settle()
        self.assertEqual(scheduler.queue_length, 2)
        slow_gate.set()

        self.assertEqual(await asyncio.gather(first, second, third), ["first", "second", "third"])
        self.assertEqual(
            [call.args[1] for call in handler.await_args_list],
            ["first", "second", "first", "third"],
        )
        self.assertEqual(self.sleeps, [1.0])

    async def test_exhausted_retries_reject_with_last_error(self) -> None:
        handler = AsyncMock(side_effect=RateLimitedError("429 Too Many Requests"))
        scheduler = self._scheduler(handler, max_retries=2)

        with self.assertRaises(RateLimitedError):
            await scheduler.call(RpcOperation.GET_BALANCE, WSOL)

        self.assertEqual(handler.await_count, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    async def test_invalid_argument_is_not_retried(self) -> None:
        handler = AsyncMock(side_effect=InvalidArgumentError("Invalid public key"))
        scheduler = self._scheduler(handler)

        with self.assertRaises(InvalidArgumentError):
            await scheduler.call(RpcOperation.GET_BALANCE, "not-a-key")

        handler.assert_awaited_once()
        self.assertEqual(self.sleeps, [])
        self.assertFalse(self.registry.get(URL_A).is_cooling(self.clock()))

    async def test_auth_rejection_parks_endpoint_for_an_hour(self) -> None:
        handler = AsyncMock(side_effect=AuthRejectedError("401 Unauthorized"))
        scheduler = self._scheduler(handler)

        with self.assertRaises(AuthRejectedError):
            await scheduler.call(RpcOperation.GET_BALANCE, WSOL)

        handler.assert_awaited_once()
        self.assertEqual(self.registry.get(URL_A).cooldown_remaining(self.clock()), 3600)
        self.assertNotEqual(self.registry.current_endpoint().url, URL_A)

    async def test_slow_request_times_out(self) -> None:
        async def slow_handler(_client, *_args):
            await asyncio.sleep(1)

        self.scheduler = RpcRequestScheduler(
            registry=self.registry,
            logger=self.logger,
            settings=SchedulerSettings(
                min_request_interval_seconds=0.0,
                throttling_enabled=False,
                request_timeout_seconds=0.05,
                max_retries=0,
            ),
            operations={RpcOperation.GET_BALANCE: OperationSpec(slow_handler, commitment_index=1)},
            clock=self.clock,
            sleep=self._fake_sleep,
            jitter=_no_jitter,
        )

        with self.assertRaises(RequestTimeoutError):
            await self.scheduler.call(RpcOperation.GET_BALANCE, WSOL)

        self.assertEqual(self.registry.get(URL_A).cooldown_remaining(self.clock()), 60)

    async def test_throttling_spaces_requests_and_tracks_windows(self) -> None:
        handler = AsyncMock(return_value=1)
        scheduler = self._scheduler(handler, throttling_enabled=True, min_request_interval_seconds=0.5)

        await scheduler.call(RpcOperation.GET_BALANCE, WSOL)
        await scheduler.call(RpcOperation.GET_BALANCE, WSOL)

        self.assertEqual(self.sleeps, [0.5])
        usage = scheduler.window_usage()
        self.assertEqual(usage["requests_in_10_sec"], 2)
        self.assertEqual(usage["method_usage"], {"getBalance": 2})
        self.assertEqual(usage["queued_requests"], 0)
        self.assertEqual(usage["usage_percentage"], 2.5)

    async def test_typed_balance_handler_unwraps_client_response(self) -> None:
        client = self.clients[URL_A]
        client.get_balance = AsyncMock(return_value=SimpleNamespace(value=5000))
        self.scheduler = RpcRequestScheduler(
            registry=self.registry,
            logger=self.logger,
            settings=SchedulerSettings(min_request_interval_seconds=0.0, throttling_enabled=False),
            clock=self.clock,
            sleep=self._fake_sleep,
            jitter=_no_jitter,
        )

        balance = await self.scheduler.call(RpcOperation.GET_BALANCE, WSOL)

        self.assertEqual(balance, 5000)
        client.get_balance.assert_awaited_once()
        pubkey, = client.get_balance.await_args.args
        self.assertEqual(str(pubkey), WSOL)
        self.assertEqual(client.get_balance.await_args.kwargs["commitment"], "confirmed")


if __name__ == "__main__":
    unittest.main()
