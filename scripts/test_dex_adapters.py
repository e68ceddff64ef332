from __future__ import annotations

import asyncio
import logging
import unittest
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from swapcore.errors import (
    AuthRejectedError,
    InsufficientLiquidityError,
    NetworkUnavailableError,
    NoRouteFoundError,
    RateLimitedError,
    RequestTimeoutError,
)
from swapcore.trading import AggregatorRateLimiter, FailureCooldownTracker, SwapExecution
from swapcore.trading.adapters import (
    ApeJupiterAdapter,
    JupiterAggregatorAdapter,
    JupiterDirectAdapter,
    PumpSwapAdapter,
    parse_jupiter_quote,
)
from swapcore.trading.adapters.base import HttpDexAdapter
from swapcore.trading.adapters.jupiter import _JupiterStyleAdapter

WSOL = "So11111111111111111111111111111111111111112"
TOKEN = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"

JUPITER_QUOTE = {
    "inputMint": WSOL,
    "outputMint": TOKEN,
    "inAmount": "10000000",
    "outAmount": "123456789",
    "slippageBps": 500,
    "priceImpactPct": "0.0123",
    "routePlan": [{"swapInfo": {"label": "Raydium", "ammKey": "amm1"}}, {"swapInfo": {"ammKey": "amm2"}}],
}


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(self, status: int, body: Any, headers: dict[str, str] | None = None) -> None:
        self.status = status
        self._body = body
        self.headers = headers or {}

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    async def json(self, content_type: str | None = "application/json") -> Any:
        if isinstance(self._body, (dict, list)):
            return self._body
        raise ValueError("not json")

    async def text(self) -> str:
        return str(self._body)


class FakeSession:
    """Replays scripted responses in order and records every request."""

    def __init__(self, *responses: FakeResponse | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self) -> None:
        return None


def _submitter() -> MagicMock:
    submitter = MagicMock()
    submitter.submit = AsyncMock(
        return_value=SwapExecution(adapter_name="x", success=True, tx_hash="sig", output_amount=1, simulated=True)
    )
    return submitter


class JupiterQuoteParsingTests(unittest.TestCase):
    def test_parses_amounts_route_and_impact(self) -> None:
        quote = parse_jupiter_quote("jupiter", JUPITER_QUOTE, slippage_bps=300)

        self.assertEqual(quote.amount_in, 10_000_000)
        self.assertEqual(quote.amount_out, 123_456_789)
        self.assertEqual(quote.slippage_bps, 500)
        self.assertEqual(quote.route, ("Raydium", "amm2"))
        self.assertAlmostEqual(quote.price_impact_pct, 1.23)
        self.assertIs(quote.raw, JUPITER_QUOTE)

    def test_missing_or_zero_output_is_no_route(self) -> None:
        with self.assertRaises(NoRouteFoundError):
            parse_jupiter_quote("jupiter", {"error": "No routes found"}, slippage_bps=500)
        with self.assertRaises(NoRouteFoundError):
            parse_jupiter_quote("jupiter", {**JUPITER_QUOTE, "outAmount": "0"}, slippage_bps=500)


class JupiterStyleAdapterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("test.adapters")
        self.clock = FakeClock()

    def _direct(self, session: FakeSession, *, breaker: FailureCooldownTracker | None = None) -> JupiterDirectAdapter:
        return JupiterDirectAdapter(
            logger=self.logger,
            submitter=_submitter(),
            base_url="https://quote.example.com/v6/",
            breaker=breaker,
            session=session,
        )

    async def test_direct_quote_calls_base_url_with_query(self) -> None:
        session = FakeSession(FakeResponse(200, JUPITER_QUOTE))
        adapter = self._direct(session)

        quote = await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=10_000_000, slippage_bps=500)

        self.assertEqual(quote.adapter_name, "jupiter_direct")
        request, = session.requests
        self.assertEqual(request["url"], "https://quote.example.com/v6/quote")
        self.assertEqual(
            request["params"],
            {"inputMint": WSOL, "outputMint": TOKEN, "amount": "10000000", "slippageBps": "500"},
        )

    async def test_rate_limit_carries_retry_after(self) -> None:
        session = FakeSession(FakeResponse(429, "Too Many Requests", {"Retry-After": "3"}))
        adapter = self._direct(session)

        with self.assertRaises(RateLimitedError) as caught:
            await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=1, slippage_bps=500)

        self.assertEqual(caught.exception.retry_after_seconds, 3.0)
        self.assertEqual(caught.exception.provider, "jupiter_direct")

    async def test_breaker_opens_after_repeated_rate_limits(self) -> None:
        breaker = FailureCooldownTracker(threshold=5, cooldown_seconds=60, clock=self.clock)
        session = FakeSession(*(FakeResponse(429, "Too Many Requests") for _ in range(5)))
        adapter = self._direct(session, breaker=breaker)

        for _ in range(6):
            with self.assertRaises(RateLimitedError):
                await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=1, slippage_bps=500)

        self.assertEqual(len(session.requests), 5)
        self.assertTrue(breaker.is_on_cooldown("jupiter_direct"))

        self.clock.advance(60)
        session.responses.append(FakeResponse(200, JUPITER_QUOTE))
        await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=1, slippage_bps=500)
        self.assertEqual(breaker.failure_count("jupiter_direct"), 0)

    async def test_status_codes_map_to_error_kinds(self) -> None:
        cases = [
            (FakeResponse(400, {"error": "Could not find any route"}), NoRouteFoundError),
            (FakeResponse(400, {"error": "TOKEN_NOT_TRADABLE"}), NoRouteFoundError),
            (FakeResponse(401, {"error": "Unauthorized"}), AuthRejectedError),
            (FakeResponse(503, "<html>bad gateway</html>"), NetworkUnavailableError),
            (aiohttp.ClientConnectionError("Connection reset by peer"), NetworkUnavailableError),
            (asyncio.TimeoutError(), RequestTimeoutError),
        ]
        for response, expected in cases:
            with self.subTest(expected=expected.__name__):
                adapter = self._direct(FakeSession(response))
                with self.assertRaises(expected):
                    await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=1, slippage_bps=500)

    async def test_build_swap_requires_transaction(self) -> None:
        session = FakeSession(
            FakeResponse(200, {"swapTransaction": "AQID", "lastValidBlockHeight": 123}),
            FakeResponse(200, {"error": "simulation failed"}),
        )
        adapter = self._direct(session)
        quote = parse_jupiter_quote("jupiter_direct", JUPITER_QUOTE, slippage_bps=500)

        bundle = await adapter.build_swap(quote, user_public_key="Wallet111", priority_fee_lamports=1000)

        self.assertEqual(bundle.transactions, ("AQID",))
        self.assertEqual(bundle.last_valid_block_height, 123)
        body = session.requests[0]["json"]
        self.assertEqual(body["quoteResponse"], JUPITER_QUOTE)
        self.assertEqual(body["userPublicKey"], "Wallet111")
        self.assertEqual(body["prioritizationFeeLamports"], 1000)
        self.assertTrue(body["wrapAndUnwrapSol"])

        with self.assertRaises(NoRouteFoundError):
            await adapter.build_swap(quote, user_public_key="Wallet111", priority_fee_lamports=1000)

    async def test_execute_quote_signs_through_submitter(self) -> None:
        session = FakeSession(FakeResponse(200, {"swapTransaction": "AQID"}))
        submitter = _submitter()
        adapter = JupiterDirectAdapter(logger=self.logger, submitter=submitter, session=session)
        wallet = MagicMock()
        wallet.public_key = "Wallet111"
        quote = parse_jupiter_quote("jupiter_direct", JUPITER_QUOTE, slippage_bps=500)

        execution = await adapter.execute_quote(quote, wallet=wallet, priority_fee_lamports=0)

        self.assertTrue(execution.success)
        bundle = submitter.submit.await_args.args[0]
        self.assertEqual(bundle.transactions, ("AQID",))
        self.assertIs(submitter.submit.await_args.kwargs["wallet"], wallet)

    async def test_ape_rejects_high_price_impact_and_sends_mev_flag(self) -> None:
        session = FakeSession(
            FakeResponse(200, {**JUPITER_QUOTE, "priceImpactPct": "0.2"}),
            FakeResponse(200, JUPITER_QUOTE),
            FakeResponse(200, {"swapTransaction": "AQID"}),
        )
        adapter = ApeJupiterAdapter(
            logger=self.logger,
            submitter=_submitter(),
            base_url="https://ape.example.com/swap/v1",
            api_key="ape-key",
            use_mev_protection=True,
            max_price_impact_pct=15.0,
            session=session,
        )

        with self.assertRaises(InsufficientLiquidityError):
            await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=1, slippage_bps=500)

        quote = await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=1, slippage_bps=500)
        await adapter.build_swap(quote, user_public_key="Wallet111", priority_fee_lamports=0)

        self.assertEqual(session.requests[0]["headers"], {"Authorization": "Bearer ape-key"})
        self.assertEqual(session.requests[2]["url"], "https://ape.example.com/swap/v1/swap")
        self.assertTrue(session.requests[2]["json"]["useMevProtection"])

    async def test_aggregator_goes_through_rate_limiter_host(self) -> None:
        limiter = AggregatorRateLimiter(logger=self.logger, tier="free")
        session = FakeSession(
            FakeResponse(200, JUPITER_QUOTE),
            FakeResponse(200, {WSOL: {"usdPrice": 150.5}, TOKEN: {"price": "0"}}),
        )
        adapter = JupiterAggregatorAdapter(
            logger=self.logger,
            submitter=_submitter(),
            limiter=limiter,
            session=session,
        )
        try:
            quote = await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=1, slippage_bps=500)
            prices = await adapter.fetch_prices([WSOL, TOKEN, WSOL])
        finally:
            await limiter.close()

        self.assertEqual(quote.adapter_name, "jupiter")
        self.assertEqual(session.requests[0]["url"], "https://lite-api.jup.ag/swap/v1/quote")
        self.assertIsNone(session.requests[0]["headers"])
        self.assertEqual(session.requests[1]["params"], {"ids": f"{WSOL},{TOKEN}"})
        self.assertEqual(prices, {WSOL: 150.5})
        self.assertEqual(limiter.get_status()["stats"]["successful_requests"], 2)

    def _limited_aggregator(
        self, session: FakeSession, breaker: FailureCooldownTracker
    ) -> tuple[JupiterAggregatorAdapter, AggregatorRateLimiter, list[float]]:
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            self.clock.advance(seconds)
            await asyncio.sleep(0)

        limiter = AggregatorRateLimiter(
            logger=self.logger,
            tier="free",
            clock=self.clock,
            sleep=fake_sleep,
            jitter=lambda _low, _high: 0.0,
        )
        adapter = JupiterAggregatorAdapter(
            logger=self.logger,
            submitter=_submitter(),
            limiter=limiter,
            breaker=breaker,
            session=session,
        )
        return adapter, limiter, sleeps

    async def test_open_breaker_fails_fast_without_queueing_in_limiter(self) -> None:
        breaker = FailureCooldownTracker(threshold=1, cooldown_seconds=60, clock=self.clock)
        breaker.record_failure("jupiter")
        session = FakeSession(FakeResponse(200, JUPITER_QUOTE))
        adapter, limiter, sleeps = self._limited_aggregator(session, breaker)
        try:
            with self.assertRaises(RateLimitedError) as caught:
                await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=1, slippage_bps=500)
        finally:
            await limiter.close()

        self.assertTrue(caught.exception.circuit_open)
        self.assertEqual(sleeps, [])
        self.assertEqual(session.requests, [])

    async def test_breaker_opening_during_limiter_retry_stops_retrying(self) -> None:
        breaker = FailureCooldownTracker(threshold=1, cooldown_seconds=60, clock=self.clock)
        session = FakeSession(FakeResponse(429, "Too Many Requests"), FakeResponse(200, JUPITER_QUOTE))
        adapter, limiter, sleeps = self._limited_aggregator(session, breaker)
        try:
            with self.assertRaises(RateLimitedError) as caught:
                await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=1, slippage_bps=500)
        finally:
            await limiter.close()

        self.assertTrue(caught.exception.circuit_open)
        self.assertEqual(sleeps, [1.0])
        self.assertEqual(len(session.requests), 1)


class AdapterBaseTests(unittest.TestCase):
    def test_base_classes_cannot_be_instantiated(self) -> None:
        with self.assertRaises(TypeError):
            HttpDexAdapter(logger=logging.getLogger("test.adapters"), submitter=_submitter())
        with self.assertRaises(TypeError):
            _JupiterStyleAdapter(logger=logging.getLogger("test.adapters"), submitter=_submitter())


class PumpSwapAdapterTests(unittest.IsolatedAsyncioTestCase):
    def _adapter(self, session: FakeSession) -> PumpSwapAdapter:
        return PumpSwapAdapter(
            logger=logging.getLogger("test.pumpswap"),
            submitter=_submitter(),
            base_url="https://pump.example.com",
            session=session,
        )

    async def test_quote_and_build_swap(self) -> None:
        session = FakeSession(
            FakeResponse(
                200,
                {
                    "success": True,
                    "inAmount": "10000000",
                    "outAmount": "5000000000",
                    "priceImpact": "2.5",
                    "routes": [{"pool": "curve"}],
                },
            ),
            FakeResponse(200, {"success": True, "encodedTransaction": "AQID"}),
        )
        adapter = self._adapter(session)

        quote = await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=10_000_000, slippage_bps=6000)
        bundle = await adapter.build_swap(quote, user_public_key="Wallet111", priority_fee_lamports=0)

        self.assertEqual(quote.amount_out, 5_000_000_000)
        self.assertEqual(quote.price_impact_pct, 2.5)
        self.assertEqual(session.requests[0]["params"]["slippage"], "6000")
        self.assertEqual(session.requests[1]["json"], {"routes": [{"pool": "curve"}], "userPublicKey": "Wallet111"})
        self.assertEqual(bundle.transactions, ("AQID",))

    async def test_any_failure_status_is_no_route(self) -> None:
        for status in (400, 429, 500):
            with self.subTest(status=status):
                adapter = self._adapter(FakeSession(FakeResponse(status, "error")))
                with self.assertRaises(NoRouteFoundError):
                    await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=1, slippage_bps=500)

    async def test_unsuccessful_payloads_are_no_route(self) -> None:
        for body in (
            {"success": False, "error": "token not tradable"},
            {"success": True, "outAmount": "0", "routes": [{}]},
            {"success": True, "outAmount": "10", "routes": []},
        ):
            with self.subTest(body=body):
                adapter = self._adapter(FakeSession(FakeResponse(200, body)))
                with self.assertRaises(NoRouteFoundError):
                    await adapter.quote(token_in=WSOL, token_out=TOKEN, amount_in=1, slippage_bps=500)


if __name__ == "__main__":
    unittest.main()
