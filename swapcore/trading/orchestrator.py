from __future__ import annotations

import asyncio
import logging
import math
from typing import Sequence

from swapcore.common import guarded_call, log_event
from swapcore.config import WSOL_MINT, SwapSettings
from swapcore.errors import (
    AllAdaptersExhaustedError,
    InvalidArgumentError,
    NoRouteFoundError,
    TokenOnCooldownError,
    classify_error,
)

from .cooldown import FailureCooldownTracker, FailureLedger
from .types import (
    LAMPORTS_PER_SOL,
    OUTCOME_ERROR,
    OUTCOME_SUCCESS,
    SIDE_BUY,
    SIDE_SELL,
    DexAdapter,
    Quote,
    SwapAttemptRecord,
    SwapExecution,
    SwapRequest,
    SwapResult,
    TokenInfo,
    TokenMetadataStore,
    normalize_mint,
    to_base_units,
)

SOL_DECIMALS = 9

# (max liquidity in USD, slippage bps); thinner pools need more room.
LIQUIDITY_SLIPPAGE_TIERS = (
    (1_000.0, 3000),
    (5_000.0, 2000),
    (20_000.0, 1000),
    (100_000.0, 500),
)
DEEP_LIQUIDITY_SLIPPAGE_BPS = 300


def slippage_for_liquidity(liquidity_usd: float | None, default_bps: int) -> int:
    if liquidity_usd is None or liquidity_usd <= 0:
        return default_bps
    for ceiling, bps in LIQUIDITY_SLIPPAGE_TIERS:
        if liquidity_usd < ceiling:
            return bps
    return DEEP_LIQUIDITY_SLIPPAGE_BPS


class SwapOrchestrator:
    """Runs one swap through the ordered adapter list until an adapter succeeds."""

    def __init__(
        self,
        *,
        adapters: Sequence[DexAdapter],
        logger: logging.Logger,
        settings: SwapSettings | None = None,
        token_cooldowns: FailureCooldownTracker,
        ledger: FailureLedger | None = None,
        token_store: TokenMetadataStore | None = None,
    ) -> None:
        self._adapters = {adapter.name: adapter for adapter in adapters}
        self._logger = logger
        self._settings = settings or SwapSettings()
        self._token_cooldowns = token_cooldowns
        self._ledger = ledger if ledger is not None else FailureLedger()
        self._token_store = token_store

    @property
    def ledger(self) -> FailureLedger:
        return self._ledger

    @property
    def token_cooldowns(self) -> FailureCooldownTracker:
        return self._token_cooldowns

    def adapter_order(self, token_address: str) -> list[DexAdapter]:
        ordered = [self._adapters[name] for name in self._settings.adapter_order if name in self._adapters]
        bonding_curve = self._adapters.get(self._settings.bonding_curve_adapter)
        marker = self._settings.bonding_curve_marker
        if bonding_curve is not None and marker and marker in token_address.lower():
            ordered = [bonding_curve, *(adapter for adapter in ordered if adapter is not bonding_curve)]
        return ordered

    def _validate(self, request: SwapRequest) -> str:
        token_address = normalize_mint(request.token_address)
        if not token_address:
            raise InvalidArgumentError("token_address is required")
        if token_address == WSOL_MINT:
            raise InvalidArgumentError("token_address must be a token other than SOL")
        if request.user_wallet is None:
            raise InvalidArgumentError("user_wallet is required")
        if request.side not in {SIDE_BUY, SIDE_SELL}:
            raise InvalidArgumentError(f"Unsupported swap side: {request.side!r}")
        amount = request.amount_in
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount <= 0:
            raise InvalidArgumentError(f"amount_in must be a positive number, got {amount!r}")
        if request.slippage_bps is not None and not 0 < request.slippage_bps <= self._settings.max_slippage_bps:
            raise InvalidArgumentError(
                f"slippage_bps must be within 1..{self._settings.max_slippage_bps}, got {request.slippage_bps}"
            )
        return token_address

    async def _token_info(self, token_address: str) -> TokenInfo | None:
        if self._token_store is None:
            return None
        return await guarded_call(
            lambda: self._token_store.get_token(token_address),
            logger=self._logger,
            event="token_metadata_lookup_failed",
            message="Token metadata lookup failed; using defaults",
            token_address=token_address,
        )

    def widened_slippage(self, adapter: DexAdapter, slippage_bps: int) -> int:
        widened = max(slippage_bps * 2, getattr(adapter, "widened_slippage_bps", 0))
        return min(self._settings.max_slippage_bps, widened)

    async def _quote_with_widening(
        self,
        adapter: DexAdapter,
        *,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
    ) -> Quote:
        try:
            return await adapter.quote(
                token_in=token_in,
                token_out=token_out,
                amount_in=amount_in,
                slippage_bps=slippage_bps,
            )
        except NoRouteFoundError as error:
            widened = self.widened_slippage(adapter, slippage_bps)
            if widened <= slippage_bps:
                raise
            log_event(
                self._logger,
                level="info",
                event="adapter_quote_retry_widened",
                message="No route found; retrying quote with widened slippage",
                adapter=adapter.name,
                slippage_bps=slippage_bps,
                widened_slippage_bps=widened,
                error=str(error),
            )
            return await adapter.quote(
                token_in=token_in,
                token_out=token_out,
                amount_in=amount_in,
                slippage_bps=widened,
            )

    async def _run_adapter(
        self,
        adapter: DexAdapter,
        *,
        request: SwapRequest,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
    ) -> SwapExecution:
        quote = await self._quote_with_widening(
            adapter,
            token_in=token_in,
            token_out=token_out,
            amount_in=amount_in,
            slippage_bps=slippage_bps,
        )
        priority_fee = request.priority_fee_lamports
        if priority_fee is None:
            priority_fee = self._settings.priority_fee_lamports
        return await adapter.execute_quote(
            quote,
            wallet=request.user_wallet,
            priority_fee_lamports=priority_fee,
        )

    def _cooldown_result(self, token_address: str) -> SwapResult:
        entry = self._token_cooldowns.entry(token_address)
        error = TokenOnCooldownError(
            token_address,
            remaining_seconds=self._token_cooldowns.cooldown_remaining(token_address),
            failure_count=entry.failure_count if entry is not None else 0,
            attempts=self._ledger.attempts_for(token_address),
        )
        log_event(
            self._logger,
            level="warning",
            event="token_on_cooldown",
            message="Swap skipped; token is cooling down after repeated failures",
            token_address=token_address,
            remaining_seconds=round(error.remaining_seconds, 1),
            failure_count=error.failure_count,
        )
        return SwapResult(success=False, error=error)

    async def submit_swap(self, request: SwapRequest) -> SwapResult:
        token_address = self._validate(request)
        if self._token_cooldowns.is_on_cooldown(token_address):
            return self._cooldown_result(token_address)

        info = await self._token_info(token_address)
        slippage_bps = request.slippage_bps
        if slippage_bps is None:
            liquidity = info.liquidity if info is not None else None
            slippage_bps = slippage_for_liquidity(liquidity, self._settings.default_slippage_bps)

        if request.side == SIDE_BUY:
            token_in, token_out = WSOL_MINT, token_address
            amount_in = to_base_units(request.amount_in, SOL_DECIMALS)
        else:
            decimals = info.decimals if info is not None and info.decimals is not None else None
            token_in, token_out = token_address, WSOL_MINT
            amount_in = to_base_units(
                request.amount_in,
                decimals if decimals is not None else self._settings.default_token_decimals,
            )
        if amount_in <= 0:
            raise InvalidArgumentError(f"amount_in {request.amount_in} rounds to zero base units")

        ordered = self.adapter_order(token_address)
        attempts: list[SwapAttemptRecord] = []
        for index, adapter in enumerate(ordered):
            try:
                execution = await self._run_adapter(
                    adapter,
                    request=request,
                    token_in=token_in,
                    token_out=token_out,
                    amount_in=amount_in,
                    slippage_bps=slippage_bps,
                )
            except asyncio.CancelledError:
                raise
            except Exception as error:
                attempts.append(
                    self._record_failure(
                        token_address,
                        adapter=adapter,
                        amount_in=amount_in,
                        slippage_bps=slippage_bps,
                        reason=str(error) or type(error).__name__,
                        kind=classify_error(error).value,
                    )
                )
                continue

            if not execution.success:
                attempts.append(
                    self._record_failure(
                        token_address,
                        adapter=adapter,
                        amount_in=amount_in,
                        slippage_bps=slippage_bps,
                        reason=execution.error or "adapter reported an unsuccessful swap",
                        kind="unknown",
                    )
                )
                continue

            attempts.append(
                SwapAttemptRecord(
                    token_address=token_address,
                    amount_in=amount_in,
                    slippage_bps=slippage_bps,
                    adapter_name=adapter.name,
                    outcome=OUTCOME_SUCCESS,
                )
            )
            self._token_cooldowns.reset(token_address)
            log_event(
                self._logger,
                level="info",
                event="swap_completed",
                message="Swap completed",
                token_address=token_address,
                side=request.side,
                adapter=adapter.name,
                tx_hash=execution.tx_hash,
                output_amount=execution.output_amount,
                used_fallback=index > 0,
                simulated=execution.simulated,
                amount_in_sol=amount_in / LAMPORTS_PER_SOL if request.side == SIDE_BUY else None,
            )
            return SwapResult(
                success=True,
                adapter_used=adapter.name,
                tx_hash=execution.tx_hash,
                output_amount=execution.output_amount,
                used_fallback=index > 0,
                simulated=execution.simulated,
                attempts=tuple(attempts),
            )

        return self._exhausted(token_address, attempts)

    def _record_failure(
        self,
        token_address: str,
        *,
        adapter: DexAdapter,
        amount_in: int,
        slippage_bps: int,
        reason: str,
        kind: str,
    ) -> SwapAttemptRecord:
        attempt = SwapAttemptRecord(
            token_address=token_address,
            amount_in=amount_in,
            slippage_bps=slippage_bps,
            adapter_name=adapter.name,
            outcome=OUTCOME_ERROR,
            error_reason=reason,
            error_kind=kind,
        )
        self._ledger.record(attempt)
        log_event(
            self._logger,
            level="warning",
            event="adapter_attempt_failed",
            message="Swap adapter failed; trying the next one",
            token_address=token_address,
            adapter=adapter.name,
            error=reason,
            error_kind=kind,
        )
        return attempt

    def _exhausted(self, token_address: str, attempts: list[SwapAttemptRecord]) -> SwapResult:
        error = AllAdaptersExhaustedError(token_address, attempts)
        opened = self._token_cooldowns.record_failure(token_address)
        log_event(
            self._logger,
            level="error",
            event="swap_failed",
            message="All swap adapters failed",
            token_address=token_address,
            reasons=error.reasons,
            failure_count=self._token_cooldowns.failure_count(token_address),
        )
        if opened:
            log_event(
                self._logger,
                level="warning",
                event="token_cooldown_opened",
                message="Token placed on cooldown after repeated swap failures",
                token_address=token_address,
                cooldown_seconds=self._token_cooldowns.cooldown_seconds,
            )
        return SwapResult(success=False, error=error, attempts=tuple(attempts))
