from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

import aiohttp

from swapcore.common import log_event, to_float, to_int
from swapcore.config import WSOL_MINT
from swapcore.errors import InsufficientLiquidityError, NoRouteFoundError

from ..cooldown import FailureCooldownTracker
from ..submitter import TransactionSubmitter
from ..types import Quote, UnsignedSwapBundle, to_base_units
from .base import HttpDexAdapter

DEFAULT_FEE_RATE = 0.003
DEFAULT_COMPUTE_UNITS = 200_000
MAX_PRICE_IMPACT_PCT = 100.0


@dataclass(slots=True, frozen=True)
class PoolState:
    pool_id: str
    mint_a: str
    mint_b: str
    reserve_a: float
    reserve_b: float
    decimals_a: int
    decimals_b: int
    source: str = "pools_api"

    @property
    def reserve_product(self) -> float:
        return self.reserve_a * self.reserve_b

    def has_mint(self, mint: str) -> bool:
        return mint in {self.mint_a, self.mint_b}

    def oriented(self, mint_in: str) -> tuple[float, float, int, int]:
        """Return ``(reserve_in, reserve_out, decimals_in, decimals_out)`` for a swap from ``mint_in``."""
        if mint_in == self.mint_a:
            return self.reserve_a, self.reserve_b, self.decimals_a, self.decimals_b
        if mint_in == self.mint_b:
            return self.reserve_b, self.reserve_a, self.decimals_b, self.decimals_a
        raise NoRouteFoundError(f"Pool {self.pool_id} does not trade {mint_in}")


def constant_product_out(amount_in: float, reserve_in: float, reserve_out: float, fee_rate: float) -> float:
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0.0
    effective_in = amount_in * (1.0 - fee_rate)
    return reserve_out - (reserve_in * reserve_out) / (reserve_in + effective_in)


def price_impact_pct(
    amount_in: float,
    reserve_in: float,
    reserve_out: float,
    fee_rate: float,
    *,
    volatility_factor: float = 1.0,
) -> float:
    amount_out = constant_product_out(amount_in, reserve_in, reserve_out, fee_rate)
    if amount_out <= 0:
        return MAX_PRICE_IMPACT_PCT
    spot_price = reserve_out / reserve_in
    execution_price = amount_out / amount_in
    impact = abs(execution_price / spot_price - 1.0) * 100.0
    return min(MAX_PRICE_IMPACT_PCT, impact * max(1.0, volatility_factor))


def choose_best_pool(pools: Iterable[PoolState]) -> PoolState | None:
    candidates = [pool for pool in pools if pool.reserve_a > 0 and pool.reserve_b > 0]
    if not candidates:
        return None
    return max(candidates, key=lambda pool: pool.reserve_product)


def _default_decimals(mint: str) -> int:
    return 9 if mint == WSOL_MINT else 6


def parse_v3_pools(data: Any) -> list[PoolState]:
    payload = data.get("data") if isinstance(data, dict) else None
    items = payload.get("data") if isinstance(payload, dict) else payload
    pools: list[PoolState] = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        mint_a = item.get("mintA") or {}
        mint_b = item.get("mintB") or {}
        address_a = str(mint_a.get("address", ""))
        address_b = str(mint_b.get("address", ""))
        if not item.get("id") or not address_a or not address_b:
            continue
        pools.append(
            PoolState(
                pool_id=str(item["id"]),
                mint_a=address_a,
                mint_b=address_b,
                reserve_a=to_float(item.get("mintAmountA"), 0.0),
                reserve_b=to_float(item.get("mintAmountB"), 0.0),
                decimals_a=to_int(mint_a.get("decimals"), _default_decimals(address_a)),
                decimals_b=to_int(mint_b.get("decimals"), _default_decimals(address_b)),
            )
        )
    return pools


def parse_listing_pairs(data: Any, *, mint_x: str, mint_y: str) -> list[PoolState]:
    pools: list[PoolState] = []
    wanted = {mint_x, mint_y}
    for item in data if isinstance(data, list) else []:
        if not isinstance(item, dict):
            continue
        base = str(item.get("baseMint", ""))
        quote = str(item.get("quoteMint", ""))
        if {base, quote} != wanted or not item.get("ammId"):
            continue
        pools.append(
            PoolState(
                pool_id=str(item["ammId"]),
                mint_a=base,
                mint_b=quote,
                reserve_a=to_float(item.get("tokenAmountCoin"), 0.0),
                reserve_b=to_float(item.get("tokenAmountPc"), 0.0),
                decimals_a=_default_decimals(base),
                decimals_b=_default_decimals(quote),
                source="pairs_listing",
            )
        )
    return pools


class RaydiumAdapter(HttpDexAdapter):
    """Constant-product AMM: local x*y=k quoting, transactions built by the trade API."""

    name = "raydium"
    widened_slippage_bps = 1000

    def __init__(
        self,
        *,
        logger: logging.Logger,
        submitter: TransactionSubmitter,
        pool_api_url: str = "https://api-v3.raydium.io",
        listing_url: str = "https://api.raydium.io/v2/main/pairs",
        trade_api_url: str = "https://transaction-v1.raydium.io",
        fee_rate: float = DEFAULT_FEE_RATE,
        max_price_impact_pct: float = 15.0,
        volatility_factors: Mapping[str, float] | None = None,
        listing_cache_seconds: float = 300.0,
        timeout_seconds: float = 10.0,
        breaker: FailureCooldownTracker | None = None,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(
            logger=logger,
            submitter=submitter,
            timeout_seconds=timeout_seconds,
            breaker=breaker,
            session=session,
        )
        self._pool_api_url = pool_api_url.rstrip("/")
        self._listing_url = listing_url
        self._trade_api_url = trade_api_url.rstrip("/")
        self._fee_rate = fee_rate
        self._max_price_impact_pct = max_price_impact_pct
        self._volatility_factors = dict(volatility_factors or {})
        self._listing_cache_seconds = listing_cache_seconds
        self._clock = clock
        self._listing_cache: tuple[float, Any] | None = None

    def volatility_factor(self, pool: PoolState) -> float:
        for key in (pool.pool_id, pool.mint_a, pool.mint_b):
            factor = self._volatility_factors.get(key)
            if factor:
                return factor
        return 1.0

    async def _fetch_listing(self) -> Any:
        now = self._clock()
        if self._listing_cache is not None and now - self._listing_cache[0] < self._listing_cache_seconds:
            return self._listing_cache[1]
        data = await self._request_json("GET", self._listing_url)
        self._listing_cache = (now, data)
        return data

    async def discover_pools(self, mint_x: str, mint_y: str) -> list[PoolState]:
        data = await self._request_json(
            "GET",
            f"{self._pool_api_url}/pools/info/mint",
            params={
                "mint1": mint_x,
                "mint2": mint_y,
                "poolType": "standard",
                "poolSortField": "liquidity",
                "sortType": "desc",
                "pageSize": "10",
                "page": "1",
            },
        )
        pools = [pool for pool in parse_v3_pools(data) if pool.has_mint(mint_x) and pool.has_mint(mint_y)]
        if pools:
            return pools

        log_event(
            self._logger,
            level="info",
            event="raydium_pool_listing_fallback",
            message="Primary pool lookup was empty; scanning the public pair listing",
            input_mint=mint_x,
            output_mint=mint_y,
        )
        return parse_listing_pairs(await self._fetch_listing(), mint_x=mint_x, mint_y=mint_y)

    async def quote(
        self,
        *,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
    ) -> Quote:
        pool = choose_best_pool(await self.discover_pools(token_in, token_out))
        if pool is None:
            raise NoRouteFoundError(f"{self.name} has no pool with reserves for {token_in} -> {token_out}")

        reserve_in, reserve_out, decimals_in, decimals_out = pool.oriented(token_in)
        ui_amount_in = amount_in / (10**decimals_in)
        ui_amount_out = constant_product_out(ui_amount_in, reserve_in, reserve_out, self._fee_rate)
        impact = price_impact_pct(
            ui_amount_in,
            reserve_in,
            reserve_out,
            self._fee_rate,
            volatility_factor=self.volatility_factor(pool),
        )
        if ui_amount_out <= 0 or impact > self._max_price_impact_pct:
            raise InsufficientLiquidityError(
                f"{self.name} pool {pool.pool_id} price impact {impact:.2f}% exceeds "
                f"{self._max_price_impact_pct:.2f}%"
            )

        return Quote(
            adapter_name=self.name,
            input_mint=token_in,
            output_mint=token_out,
            amount_in=int(amount_in),
            amount_out=to_base_units(ui_amount_out, decimals_out),
            slippage_bps=int(slippage_bps),
            price_impact_pct=impact,
            route=(pool.pool_id,),
            raw={"pool_id": pool.pool_id, "pool_source": pool.source},
        )

    async def build_swap(
        self,
        quote: Quote,
        *,
        user_public_key: str,
        priority_fee_lamports: int,
    ) -> UnsignedSwapBundle:
        compute = await self._request_json(
            "GET",
            f"{self._trade_api_url}/compute/swap-base-in",
            params={
                "inputMint": quote.input_mint,
                "outputMint": quote.output_mint,
                "amount": str(quote.amount_in),
                "slippageBps": str(quote.slippage_bps),
                "txVersion": "V0",
            },
        )
        if not isinstance(compute, dict) or not compute.get("success"):
            raise NoRouteFoundError(f"{self.name} compute failed: {compute}")

        micro_lamports = int(priority_fee_lamports * 1_000_000 / DEFAULT_COMPUTE_UNITS)
        data = await self._request_json(
            "POST",
            f"{self._trade_api_url}/transaction/swap-base-in",
            json={
                "computeUnitPriceMicroLamports": str(micro_lamports),
                "swapResponse": compute,
                "txVersion": "V0",
                "wallet": user_public_key,
                "wrapSol": quote.input_mint == WSOL_MINT,
                "unwrapSol": quote.output_mint == WSOL_MINT,
            },
        )
        items = data.get("data") if isinstance(data, dict) and data.get("success") else None
        transactions = tuple(
            str(item["transaction"]) for item in items or [] if isinstance(item, dict) and item.get("transaction")
        )
        if not transactions:
            raise NoRouteFoundError(f"{self.name} transaction build returned nothing: {data}")

        return UnsignedSwapBundle(adapter_name=self.name, transactions=transactions, quote=quote)
