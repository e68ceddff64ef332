from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import aiohttp

from swapcore.common import log_event, to_float
from swapcore.errors import (
    AuthRejectedError,
    ErrorKind,
    NetworkUnavailableError,
    NoRouteFoundError,
    RateLimitedError,
    RequestTimeoutError,
    SwapCoreError,
    classify_text,
    normalize_error,
)

from ..cooldown import FailureCooldownTracker
from ..submitter import TransactionSubmitter
from ..types import Quote, SwapExecution, UnsignedSwapBundle, WalletSigner


def parse_retry_after(value: str | None) -> float | None:
    seconds = to_float(value, 0.0)
    return seconds if seconds > 0 else None


class HttpDexAdapter(ABC):
    """Shared plumbing for adapters that talk to an HTTP swap API.

    Subclasses implement ``quote`` and ``build_swap``; signing, sending and
    confirmation go through the shared ``TransactionSubmitter``.
    """

    name = "http"
    widened_slippage_bps = 2500

    def __init__(
        self,
        *,
        logger: logging.Logger,
        submitter: TransactionSubmitter,
        timeout_seconds: float = 10.0,
        breaker: FailureCooldownTracker | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._logger = logger
        self._submitter = submitter
        self._timeout_seconds = timeout_seconds
        self._breaker = breaker
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _check_breaker(self) -> None:
        if self._breaker is None or not self._breaker.is_on_cooldown(self.name):
            return
        remaining = self._breaker.cooldown_remaining(self.name)
        raise RateLimitedError(
            f"{self.name} circuit breaker is open for {remaining:.0f}s",
            retry_after_seconds=remaining,
            provider=self.name,
            circuit_open=True,
        )

    def _record_rate_limit(self) -> None:
        if self._breaker is None:
            return
        if self._breaker.record_failure(self.name):
            log_event(
                self._logger,
                level="warning",
                event="adapter_circuit_opened",
                message="Adapter circuit breaker opened after repeated rate limits",
                adapter=self.name,
                cooldown_seconds=self._breaker.cooldown_seconds,
            )

    def _status_error(self, status: int, body: Any, retry_after: float | None) -> SwapCoreError:
        text = f"{self.name} request failed: status={status} body={body}"
        if status == 429:
            return RateLimitedError(text, retry_after_seconds=retry_after, provider=self.name)
        if status in {401, 403}:
            return AuthRejectedError(text)
        if status >= 500:
            return NetworkUnavailableError(text)

        kind = classify_text(str(body))
        if kind in {ErrorKind.UNKNOWN, ErrorKind.NO_ROUTE}:
            return NoRouteFoundError(text)
        return normalize_error(RuntimeError(text), provider=self.name)

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        self._check_breaker()
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise NetworkUnavailableError(f"{self.name} HTTP session is not initialized.")

        try:
            async with self._session.request(method, url, params=params, json=json, headers=headers) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = await response.text()
                if response.status >= 400:
                    error = self._status_error(
                        response.status,
                        data,
                        parse_retry_after(response.headers.get("Retry-After")),
                    )
                    raise error
        except asyncio.CancelledError:
            raise
        except RateLimitedError:
            self._record_rate_limit()
            raise
        except SwapCoreError:
            raise
        except asyncio.TimeoutError as error:
            raise RequestTimeoutError(f"{self.name} request timed out: {method} {url}") from error
        except aiohttp.ClientError as error:
            raise NetworkUnavailableError(f"{self.name} request failed: {error}") from error

        if self._breaker is not None:
            self._breaker.reset(self.name)
        return data

    @abstractmethod
    async def quote(
        self,
        *,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
    ) -> Quote:
        ...

    @abstractmethod
    async def build_swap(
        self,
        quote: Quote,
        *,
        user_public_key: str,
        priority_fee_lamports: int,
    ) -> UnsignedSwapBundle:
        ...

    async def execute_quote(
        self,
        quote: Quote,
        *,
        wallet: WalletSigner,
        priority_fee_lamports: int,
    ) -> SwapExecution:
        bundle = await self.build_swap(
            quote,
            user_public_key=str(wallet.public_key),
            priority_fee_lamports=priority_fee_lamports,
        )
        return await self._submitter.submit(bundle, wallet=wallet)

    async def execute_swap(
        self,
        *,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
        wallet: WalletSigner,
        priority_fee_lamports: int = 0,
    ) -> SwapExecution:
        quote = await self.quote(
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            slippage_bps=slippage_bps,
        )
        return await self.execute_quote(quote, wallet=wallet, priority_fee_lamports=priority_fee_lamports)
