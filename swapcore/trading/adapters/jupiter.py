from __future__ import annotations

import logging
from abc import abstractmethod
from typing import Any, Iterable

import aiohttp

from swapcore.common import to_float, to_int
from swapcore.errors import InsufficientLiquidityError, NoRouteFoundError

from ..cooldown import FailureCooldownTracker
from ..rate_limiter import BUCKET_GENERAL, BUCKET_PRICE, AggregatorRateLimiter
from ..submitter import TransactionSubmitter
from ..types import Quote, UnsignedSwapBundle
from .base import HttpDexAdapter


def parse_jupiter_quote(adapter_name: str, data: Any, *, slippage_bps: int) -> Quote:
    if not isinstance(data, dict) or "outAmount" not in data:
        raise NoRouteFoundError(f"{adapter_name} returned no route: {data}")

    amount_out = to_int(data.get("outAmount"), 0)
    if amount_out <= 0:
        raise NoRouteFoundError(f"{adapter_name} quoted a zero output amount")

    route: list[str] = []
    for step in data.get("routePlan") or []:
        swap_info = step.get("swapInfo") if isinstance(step, dict) else None
        if isinstance(swap_info, dict):
            route.append(str(swap_info.get("label") or swap_info.get("ammKey") or "?"))

    return Quote(
        adapter_name=adapter_name,
        input_mint=str(data.get("inputMint", "")),
        output_mint=str(data.get("outputMint", "")),
        amount_in=to_int(data.get("inAmount"), 0),
        amount_out=amount_out,
        slippage_bps=to_int(data.get("slippageBps"), slippage_bps),
        # Jupiter reports impact as a fraction string, e.g. "0.0123".
        price_impact_pct=to_float(data.get("priceImpactPct"), 0.0) * 100.0,
        route=tuple(route),
        raw=data,
    )


class _JupiterStyleAdapter(HttpDexAdapter):
    widened_slippage_bps = 2500

    @abstractmethod
    def _quote_url(self) -> str: ...

    @abstractmethod
    def _swap_url(self) -> str: ...

    def _headers(self) -> dict[str, str]:
        return {}

    async def _call(
        self,
        method: str,
        url: str,
        *,
        label: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        return await self._request_json(method, url, params=params, json=json, headers=self._headers() or None)

    def _swap_body(self, quote: Quote, *, user_public_key: str, priority_fee_lamports: int) -> dict[str, Any]:
        return {
            "quoteResponse": quote.raw,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": int(priority_fee_lamports),
        }

    async def quote(
        self,
        *,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
    ) -> Quote:
        params = {
            "inputMint": token_in,
            "outputMint": token_out,
            "amount": str(int(amount_in)),
            "slippageBps": str(int(slippage_bps)),
        }
        data = await self._call("GET", self._quote_url(), label="quote", params=params)
        return parse_jupiter_quote(self.name, data, slippage_bps=slippage_bps)

    async def build_swap(
        self,
        quote: Quote,
        *,
        user_public_key: str,
        priority_fee_lamports: int,
    ) -> UnsignedSwapBundle:
        body = self._swap_body(quote, user_public_key=user_public_key, priority_fee_lamports=priority_fee_lamports)
        data = await self._call("POST", self._swap_url(), label="swap", json=body)
        encoded = data.get("swapTransaction") if isinstance(data, dict) else None
        if not encoded:
            raise NoRouteFoundError(f"{self.name} swap response has no transaction: {data}")

        return UnsignedSwapBundle(
            adapter_name=self.name,
            transactions=(str(encoded),),
            quote=quote,
            last_valid_block_height=data.get("lastValidBlockHeight"),
        )


class JupiterAggregatorAdapter(_JupiterStyleAdapter):
    """Jupiter swap API behind the tiered rate limiter."""

    name = "jupiter"

    def __init__(
        self,
        *,
        logger: logging.Logger,
        submitter: TransactionSubmitter,
        limiter: AggregatorRateLimiter,
        timeout_seconds: float = 10.0,
        breaker: FailureCooldownTracker | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__(
            logger=logger,
            submitter=submitter,
            timeout_seconds=timeout_seconds,
            breaker=breaker,
            session=session,
        )
        self._limiter = limiter

    def _quote_url(self) -> str:
        return f"{self._limiter.api_host}/swap/v1/quote"

    def _swap_url(self) -> str:
        return f"{self._limiter.api_host}/swap/v1/swap"

    def _headers(self) -> dict[str, str]:
        return self._limiter.auth_headers()

    async def _call(
        self,
        method: str,
        url: str,
        *,
        label: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        bucket_class: str = BUCKET_GENERAL,
    ) -> Any:
        async def operation() -> Any:
            return await self._request_json(method, url, params=params, json=json, headers=self._headers() or None)

        self._check_breaker()
        return await self._limiter.execute(operation, bucket_class, label=f"{self.name}:{label}")

    async def fetch_prices(self, mints: Iterable[str]) -> dict[str, float]:
        ids = [mint for mint in dict.fromkeys(mints) if mint]
        if not ids:
            return {}

        data = await self._call(
            "GET",
            f"{self._limiter.api_host}/price/v3",
            label="price",
            params={"ids": ",".join(ids)},
            bucket_class=BUCKET_PRICE,
        )
        prices: dict[str, float] = {}
        if not isinstance(data, dict):
            return prices
        for mint, entry in data.items():
            if isinstance(entry, dict):
                price = to_float(entry.get("usdPrice", entry.get("price")), 0.0)
                if price > 0:
                    prices[mint] = price
        return prices


class JupiterDirectAdapter(_JupiterStyleAdapter):
    """The same aggregator called directly, skipping the limiter queue."""

    name = "jupiter_direct"

    def __init__(
        self,
        *,
        logger: logging.Logger,
        submitter: TransactionSubmitter,
        base_url: str = "https://quote-api.jup.ag/v6",
        timeout_seconds: float = 10.0,
        breaker: FailureCooldownTracker | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__(
            logger=logger,
            submitter=submitter,
            timeout_seconds=timeout_seconds,
            breaker=breaker,
            session=session,
        )
        self._base_url = base_url.rstrip("/")

    def _quote_url(self) -> str:
        return f"{self._base_url}/quote"

    def _swap_url(self) -> str:
        return f"{self._base_url}/swap"


class ApeJupiterAdapter(_JupiterStyleAdapter):
    name = "ape_jupiter"

    def __init__(
        self,
        *,
        logger: logging.Logger,
        submitter: TransactionSubmitter,
        base_url: str = "https://lite-api.jup.ag/swap/v1",
        api_key: str = "",
        use_mev_protection: bool = False,
        max_price_impact_pct: float = 15.0,
        timeout_seconds: float = 10.0,
        breaker: FailureCooldownTracker | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__(
            logger=logger,
            submitter=submitter,
            timeout_seconds=timeout_seconds,
            breaker=breaker,
            session=session,
        )
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._use_mev_protection = use_mev_protection
        self._max_price_impact_pct = max_price_impact_pct

    def _quote_url(self) -> str:
        return f"{self._base_url}/quote"

    def _swap_url(self) -> str:
        return f"{self._base_url}/swap"

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    def _swap_body(self, quote: Quote, *, user_public_key: str, priority_fee_lamports: int) -> dict[str, Any]:
        body = super()._swap_body(
            quote,
            user_public_key=user_public_key,
            priority_fee_lamports=priority_fee_lamports,
        )
        body["useMevProtection"] = self._use_mev_protection
        return body

    async def quote(
        self,
        *,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
    ) -> Quote:
        quote = await super().quote(
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            slippage_bps=slippage_bps,
        )
        if quote.price_impact_pct > self._max_price_impact_pct:
            raise InsufficientLiquidityError(
                f"{self.name} price impact {quote.price_impact_pct:.2f}% exceeds "
                f"{self._max_price_impact_pct:.2f}%"
            )
        return quote
