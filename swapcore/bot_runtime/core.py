from __future__ import annotations

import contextlib
import logging
from typing import Any, Callable

import aiohttp
from solana.rpc.async_api import AsyncClient

from swapcore.common import log_event
from swapcore.config import CoreConfig
from swapcore.errors import InvalidArgumentError
from swapcore.rpc import EndpointHealthMonitor, EndpointRegistry, RpcRequestScheduler
from swapcore.trading import (
    AggregatorRateLimiter,
    FailureCooldownTracker,
    FailureLedger,
    SwapOrchestrator,
    SwapRequest,
    SwapResult,
    TokenMetadataStore,
    TransactionSubmitter,
)
from swapcore.trading.adapters import (
    ApeJupiterAdapter,
    HttpDexAdapter,
    JupiterAggregatorAdapter,
    JupiterDirectAdapter,
    PumpSwapAdapter,
    RaydiumAdapter,
)


class SwapCore:
    """Entry point for callers: swaps plus the endpoint and rate limiter views."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        limiter: AggregatorRateLimiter,
        registry: EndpointRegistry,
        scheduler: RpcRequestScheduler,
        health_monitor: EndpointHealthMonitor,
        orchestrator: SwapOrchestrator,
        adapters: list[HttpDexAdapter],
    ) -> None:
        self._logger = logger
        self.limiter = limiter
        self.registry = registry
        self.scheduler = scheduler
        self.health_monitor = health_monitor
        self.orchestrator = orchestrator
        self.adapters = adapters

    async def submit_swap(self, request: SwapRequest) -> SwapResult:
        return await self.orchestrator.submit_swap(request)

    def get_endpoint_metrics(self) -> dict[str, dict[str, Any]]:
        return self.registry.metrics_snapshot()

    def get_rate_limiter_status(self) -> dict[str, Any]:
        return self.limiter.get_status()

    def get_rpc_usage(self) -> dict[str, Any]:
        usage = self.scheduler.window_usage()
        usage["current_endpoint"] = self.registry.current_endpoint().label
        usage["token_cooldowns"] = self.orchestrator.token_cooldowns.snapshot()
        return usage

    def start(self) -> None:
        self.health_monitor.start()

    async def close(self) -> None:
        await self.health_monitor.stop()
        for adapter in self.adapters:
            with contextlib.suppress(Exception):
                await adapter.close()
        await self.limiter.close()
        await self.scheduler.close()
        await self.registry.close()
        log_event(
            self._logger,
            level="info",
            event="swap_core_closed",
            message="Swap core shut down",
        )


def build_core(
    config: CoreConfig,
    *,
    logger: logging.Logger,
    token_store: TokenMetadataStore | None = None,
    connection_factory: Callable[[str], Any] = AsyncClient,
    session: aiohttp.ClientSession | None = None,
) -> SwapCore:
    limiter = AggregatorRateLimiter(
        logger=logger,
        tier=config.rate_limiter.tier,
        api_key=config.rate_limiter.api_key,
        max_concurrent=config.rate_limiter.max_concurrent,
        max_retries=config.rate_limiter.max_retries,
    )
    registry = EndpointRegistry(
        config.endpoints,
        logger=logger,
        settings=config.registry,
        connection_factory=connection_factory,
    )
    scheduler = RpcRequestScheduler(registry=registry, logger=logger, settings=config.scheduler)
    health_monitor = EndpointHealthMonitor(registry=registry, logger=logger, settings=config.health)
    submitter = TransactionSubmitter(
        scheduler=scheduler,
        logger=logger,
        dry_run=config.swap.dry_run,
        skip_preflight=config.swap.skip_preflight,
        confirm_timeout_seconds=config.swap.confirm_timeout_seconds,
        confirm_poll_interval_seconds=config.swap.confirm_poll_interval_seconds,
    )

    adapter_settings = config.adapters
    common: dict[str, Any] = {
        "logger": logger,
        "submitter": submitter,
        "timeout_seconds": adapter_settings.http_timeout_seconds,
        "session": session,
    }
    factories: dict[str, Callable[[FailureCooldownTracker], HttpDexAdapter]] = {
        "jupiter": lambda breaker: JupiterAggregatorAdapter(limiter=limiter, breaker=breaker, **common),
        "jupiter_direct": lambda breaker: JupiterDirectAdapter(
            base_url=adapter_settings.jupiter_direct_base_url,
            breaker=breaker,
            **common,
        ),
        "ape_jupiter": lambda breaker: ApeJupiterAdapter(
            base_url=adapter_settings.ape_base_url,
            api_key=adapter_settings.ape_api_key,
            use_mev_protection=adapter_settings.ape_use_mev_protection,
            max_price_impact_pct=adapter_settings.max_price_impact_pct,
            breaker=breaker,
            **common,
        ),
        "pumpswap": lambda breaker: PumpSwapAdapter(
            base_url=adapter_settings.pumpswap_base_url,
            breaker=breaker,
            **common,
        ),
        "raydium": lambda breaker: RaydiumAdapter(
            pool_api_url=adapter_settings.raydium_pool_api_url,
            listing_url=adapter_settings.raydium_listing_url,
            trade_api_url=adapter_settings.raydium_trade_api_url,
            fee_rate=adapter_settings.raydium_fee_rate,
            max_price_impact_pct=adapter_settings.max_price_impact_pct,
            volatility_factors=adapter_settings.volatility_factors,
            listing_cache_seconds=adapter_settings.raydium_listing_cache_seconds,
            breaker=breaker,
            **common,
        ),
    }

    adapters: list[HttpDexAdapter] = []
    for name in config.swap.adapter_order:
        factory = factories.get(name)
        if factory is None:
            raise InvalidArgumentError(f"Unknown swap adapter in adapter order: {name!r}")
        breaker = FailureCooldownTracker(
            threshold=config.cooldowns.breaker_rate_limit_threshold,
            cooldown_seconds=config.cooldowns.breaker_cooldown_seconds,
        )
        adapters.append(factory(breaker))

    orchestrator = SwapOrchestrator(
        adapters=adapters,
        logger=logger,
        settings=config.swap,
        token_cooldowns=FailureCooldownTracker(
            threshold=config.cooldowns.token_failure_threshold,
            cooldown_seconds=config.cooldowns.token_cooldown_seconds,
        ),
        ledger=FailureLedger(max_entries_per_token=config.cooldowns.ledger_entries_per_token),
        token_store=token_store,
    )

    log_event(
        logger,
        level="info",
        event="swap_core_built",
        message="Swap core initialized",
        endpoints=[endpoint.label for endpoint in registry.endpoints],
        rate_limit_tier=limiter.tier.name,
        adapter_order=[adapter.name for adapter in adapters],
        dry_run=config.swap.dry_run,
    )
    return SwapCore(
        logger=logger,
        limiter=limiter,
        registry=registry,
        scheduler=scheduler,
        health_monitor=health_monitor,
        orchestrator=orchestrator,
        adapters=adapters,
    )
