from __future__ import annotations

import logging
from typing import Any

import aiohttp

from swapcore.common import to_float, to_int
from swapcore.errors import NoRouteFoundError, SwapCoreError

from ..cooldown import FailureCooldownTracker
from ..submitter import TransactionSubmitter
from ..types import Quote, UnsignedSwapBundle
from .base import HttpDexAdapter


class PumpSwapAdapter(HttpDexAdapter):
    """Bonding-curve venue reached through its hosted quote/swap service."""

    name = "pumpswap"
    widened_slippage_bps = 6000

    def __init__(
        self,
        *,
        logger: logging.Logger,
        submitter: TransactionSubmitter,
        base_url: str = "https://api.pump.fun",
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

    def _status_error(self, status: int, body: Any, retry_after: float | None) -> SwapCoreError:
        # The service gives no usable error contract: every non-2xx is a missing route.
        return NoRouteFoundError(f"{self.name} request failed: status={status} body={body}")

    def _require_success(self, data: Any, *, action: str) -> dict[str, Any]:
        if not isinstance(data, dict) or not data.get("success"):
            reason = data.get("error") if isinstance(data, dict) else data
            raise NoRouteFoundError(f"{self.name} {action} failed: {reason or 'unknown error'}")
        return data

    async def quote(
        self,
        *,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
    ) -> Quote:
        data = await self._request_json(
            "GET",
            f"{self._base_url}/quote",
            params={
                "inputMint": token_in,
                "outputMint": token_out,
                "amount": str(int(amount_in)),
                "slippage": str(int(slippage_bps)),
            },
        )
        payload = self._require_success(data, action="quote")
        amount_out = to_int(payload.get("outAmount"), 0)
        routes = payload.get("routes")
        if amount_out <= 0 or not routes:
            raise NoRouteFoundError(f"{self.name} quote is missing outAmount or routes")

        return Quote(
            adapter_name=self.name,
            input_mint=token_in,
            output_mint=token_out,
            amount_in=to_int(payload.get("inAmount"), int(amount_in)),
            amount_out=amount_out,
            slippage_bps=int(slippage_bps),
            price_impact_pct=to_float(payload.get("priceImpact"), 0.0),
            route=(self.name,),
            raw=payload,
        )

    async def build_swap(
        self,
        quote: Quote,
        *,
        user_public_key: str,
        priority_fee_lamports: int,
    ) -> UnsignedSwapBundle:
        data = await self._request_json(
            "POST",
            f"{self._base_url}/swap",
            json={"routes": quote.raw.get("routes"), "userPublicKey": user_public_key},
        )
        payload = self._require_success(data, action="swap build")
        encoded = payload.get("encodedTransaction")
        if not encoded:
            raise NoRouteFoundError(f"{self.name} swap response has no encodedTransaction")

        return UnsignedSwapBundle(adapter_name=self.name, transactions=(str(encoded),), quote=quote)
