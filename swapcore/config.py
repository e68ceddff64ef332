from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from swapcore.common import to_bool, to_csv_tuple, to_float, to_int

WSOL_MINT = "So11111111111111111111111111111111111111112"
DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_ADAPTER_ORDER = ("jupiter", "jupiter_direct", "ape_jupiter", "pumpswap", "raydium")


def parse_endpoints(raw: str | None, *, fallback_url: str = "") -> tuple["EndpointConfig", ...]:
    """Parse ``url|tier`` pairs separated by commas; a bare url gets tier 1."""
    endpoints: list[EndpointConfig] = []
    seen: set[str] = set()
    for chunk in (raw or "").split(","):
        item = chunk.strip()
        if not item:
            continue
        url, _, tier_raw = item.partition("|")
        url = url.strip()
        if not url or url in seen:
            continue
        seen.add(url)
        endpoints.append(EndpointConfig(url=url, tier=to_int(tier_raw, 1)))

    if not endpoints:
        url = fallback_url.strip() or DEFAULT_RPC_URL
        endpoints.append(EndpointConfig(url=url, tier=1))
    return tuple(endpoints)


def parse_factor_map(raw: str | None) -> dict[str, float]:
    factors: dict[str, float] = {}
    for chunk in (raw or "").split(","):
        key, _, value = chunk.partition(":")
        key = key.strip()
        factor = to_float(value, 0.0)
        if key and factor > 0:
            factors[key] = factor
    return factors


@dataclass(slots=True, frozen=True)
class EndpointConfig:
    url: str
    tier: int = 1


@dataclass(slots=True, frozen=True)
class RateLimiterSettings:
    tier: str = "free"
    api_key: str = ""
    max_concurrent: int = 2
    max_retries: int = 3

    @classmethod
    def from_env(cls) -> "RateLimiterSettings":
        return cls(
            tier=os.getenv("JUPITER_TIER", "free").strip().lower() or "free",
            api_key=os.getenv("JUPITER_API_KEY", "").strip(),
            max_concurrent=max(1, to_int(os.getenv("JUPITER_MAX_CONCURRENT"), 2)),
            max_retries=max(0, to_int(os.getenv("JUPITER_MAX_RETRIES"), 3)),
        )


@dataclass(slots=True, frozen=True)
class RegistrySettings:
    max_requests_per_minute: int = 30
    global_usage_threshold: float = 0.8
    rotation_interval_seconds: float = 180.0
    max_cooldown_seconds: float = 600.0
    probe_timeout_seconds: float = 10.0
    rate_limit_cooldown_seconds: float = 120.0
    auth_cooldown_seconds: float = 3600.0
    network_cooldown_seconds: float = 60.0
    unknown_cooldown_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "RegistrySettings":
        return cls(
            max_requests_per_minute=max(1, to_int(os.getenv("RPC_MAX_REQUESTS_PER_MINUTE"), 30)),
            global_usage_threshold=min(1.0, max(0.1, to_float(os.getenv("RPC_GLOBAL_USAGE_THRESHOLD"), 0.8))),
            rotation_interval_seconds=max(1.0, to_float(os.getenv("RPC_ROTATION_INTERVAL_SECONDS"), 180.0)),
            max_cooldown_seconds=max(1.0, to_float(os.getenv("RPC_MAX_COOLDOWN_SECONDS"), 600.0)),
            probe_timeout_seconds=max(1.0, to_float(os.getenv("RPC_PROBE_TIMEOUT_SECONDS"), 10.0)),
        )


@dataclass(slots=True, frozen=True)
class SchedulerSettings:
    min_request_interval_seconds: float = 0.5
    request_timeout_seconds: float = 15.0
    max_retries: int = 5
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    retry_jitter_seconds: float = 1.0
    global_max_requests_per_10s: int = 80
    method_max_requests_per_10s: int = 30
    method_throttle_delay_seconds: float = 1.0
    throttling_enabled: bool = True
    health_check_queue_threshold: int = 5

    @classmethod
    def from_env(cls) -> "SchedulerSettings":
        return cls(
            min_request_interval_seconds=max(0.0, to_float(os.getenv("RPC_MIN_REQUEST_INTERVAL_SECONDS"), 0.5)),
            request_timeout_seconds=max(1.0, to_float(os.getenv("RPC_REQUEST_TIMEOUT_SECONDS"), 15.0)),
            max_retries=max(0, to_int(os.getenv("RPC_MAX_RETRIES"), 5)),
            global_max_requests_per_10s=max(1, to_int(os.getenv("RPC_MAX_REQUESTS_PER_10_SEC"), 80)),
            method_max_requests_per_10s=max(1, to_int(os.getenv("RPC_MAX_REQUESTS_PER_METHOD_PER_10_SEC"), 30)),
            throttling_enabled=to_bool(os.getenv("RPC_ENABLE_THROTTLING"), True),
        )


@dataclass(slots=True, frozen=True)
class HealthMonitorSettings:
    interval_seconds: float = 120.0
    degraded_interval_seconds: float = 30.0
    degraded_after_failures: int = 3
    reset_after_seconds: float = 600.0

    @classmethod
    def from_env(cls) -> "HealthMonitorSettings":
        return cls(
            interval_seconds=max(5.0, to_float(os.getenv("RPC_HEALTH_INTERVAL_SECONDS"), 120.0)),
            degraded_interval_seconds=max(1.0, to_float(os.getenv("RPC_HEALTH_DEGRADED_INTERVAL_SECONDS"), 30.0)),
            degraded_after_failures=max(1, to_int(os.getenv("RPC_HEALTH_DEGRADED_AFTER_FAILURES"), 3)),
            reset_after_seconds=max(60.0, to_float(os.getenv("RPC_HEALTH_RESET_AFTER_SECONDS"), 600.0)),
        )


@dataclass(slots=True, frozen=True)
class CooldownSettings:
    token_failure_threshold: int = 3
    token_cooldown_seconds: float = 600.0
    breaker_rate_limit_threshold: int = 5
    breaker_cooldown_seconds: float = 60.0
    ledger_entries_per_token: int = 100

    @classmethod
    def from_env(cls) -> "CooldownSettings":
        return cls(
            token_failure_threshold=max(1, to_int(os.getenv("TOKEN_FAILURE_THRESHOLD"), 3)),
            token_cooldown_seconds=max(1.0, to_float(os.getenv("TOKEN_COOLDOWN_SECONDS"), 600.0)),
            breaker_rate_limit_threshold=max(1, to_int(os.getenv("ADAPTER_BREAKER_THRESHOLD"), 5)),
            breaker_cooldown_seconds=max(1.0, to_float(os.getenv("ADAPTER_BREAKER_COOLDOWN_SECONDS"), 60.0)),
        )


@dataclass(slots=True, frozen=True)
class AdapterSettings:
    http_timeout_seconds: float = 10.0
    jupiter_direct_base_url: str = "https://quote-api.jup.ag/v6"
    ape_base_url: str = "https://lite-api.jup.ag/swap/v1"
    ape_api_key: str = ""
    ape_use_mev_protection: bool = False
    pumpswap_base_url: str = "https://api.pump.fun"
    raydium_pool_api_url: str = "https://api-v3.raydium.io"
    raydium_listing_url: str = "https://api.raydium.io/v2/main/pairs"
    raydium_trade_api_url: str = "https://transaction-v1.raydium.io"
    raydium_fee_rate: float = 0.003
    raydium_listing_cache_seconds: float = 300.0
    max_price_impact_pct: float = 15.0
    volatility_factors: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "AdapterSettings":
        return cls(
            http_timeout_seconds=max(1.0, to_float(os.getenv("DEX_HTTP_TIMEOUT_SECONDS"), 10.0)),
            jupiter_direct_base_url=os.getenv("JUPITER_DIRECT_API", "https://quote-api.jup.ag/v6").strip().rstrip("/"),
            ape_base_url=os.getenv("APE_JUPITER_API", "https://lite-api.jup.ag/swap/v1").strip().rstrip("/"),
            ape_api_key=os.getenv("APE_JUPITER_API_KEY", "").strip(),
            ape_use_mev_protection=to_bool(os.getenv("APE_USE_MEV_PROTECTION"), False),
            pumpswap_base_url=os.getenv("PUMPSWAP_API", "https://api.pump.fun").strip().rstrip("/"),
            raydium_pool_api_url=os.getenv("RAYDIUM_POOL_API", "https://api-v3.raydium.io").strip().rstrip("/"),
            raydium_listing_url=os.getenv("RAYDIUM_LISTING_API", "https://api.raydium.io/v2/main/pairs").strip(),
            raydium_trade_api_url=os.getenv("RAYDIUM_TRADE_API", "https://transaction-v1.raydium.io").strip().rstrip("/"),
            raydium_fee_rate=min(0.1, max(0.0, to_float(os.getenv("RAYDIUM_FEE_RATE"), 0.003))),
            max_price_impact_pct=max(0.1, to_float(os.getenv("MAX_PRICE_IMPACT_PCT"), 15.0)),
            volatility_factors=parse_factor_map(os.getenv("RAYDIUM_VOLATILITY_FACTORS")),
        )


@dataclass(slots=True, frozen=True)
class SwapSettings:
    adapter_order: tuple[str, ...] = DEFAULT_ADAPTER_ORDER
    bonding_curve_adapter: str = "pumpswap"
    bonding_curve_marker: str = "pump"
    default_slippage_bps: int = 500
    max_slippage_bps: int = 10_000
    priority_fee_lamports: int = 1000
    default_token_decimals: int = 6
    confirm_timeout_seconds: float = 45.0
    confirm_poll_interval_seconds: float = 1.0
    skip_preflight: bool = False
    dry_run: bool = True

    @classmethod
    def from_env(cls) -> "SwapSettings":
        return cls(
            adapter_order=to_csv_tuple(os.getenv("SWAP_ADAPTER_ORDER"), DEFAULT_ADAPTER_ORDER),
            bonding_curve_adapter=os.getenv("BONDING_CURVE_ADAPTER", "pumpswap").strip() or "pumpswap",
            bonding_curve_marker=os.getenv("BONDING_CURVE_MARKER", "pump").strip().lower() or "pump",
            default_slippage_bps=max(1, to_int(os.getenv("DEFAULT_SLIPPAGE_BPS"), 500)),
            max_slippage_bps=max(1, to_int(os.getenv("MAX_SLIPPAGE_BPS"), 10_000)),
            priority_fee_lamports=max(0, to_int(os.getenv("PRIORITY_FEE_LAMPORTS"), 1000)),
            default_token_decimals=max(0, to_int(os.getenv("DEFAULT_TOKEN_DECIMALS"), 6)),
            confirm_timeout_seconds=max(5.0, to_float(os.getenv("LIVE_CONFIRM_TIMEOUT_SECONDS"), 45.0)),
            confirm_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("LIVE_CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            skip_preflight=to_bool(os.getenv("SKIP_PREFLIGHT"), False),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
        )


@dataclass(slots=True, frozen=True)
class CoreConfig:
    endpoints: tuple[EndpointConfig, ...]
    rate_limiter: RateLimiterSettings = RateLimiterSettings()
    registry: RegistrySettings = RegistrySettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    health: HealthMonitorSettings = HealthMonitorSettings()
    cooldowns: CooldownSettings = CooldownSettings()
    adapters: AdapterSettings = field(default_factory=AdapterSettings)
    swap: SwapSettings = SwapSettings()

    @classmethod
    def from_env(cls) -> "CoreConfig":
        return cls(
            endpoints=parse_endpoints(
                os.getenv("RPC_ENDPOINTS"),
                fallback_url=os.getenv("SOLANA_RPC_URL", ""),
            ),
            rate_limiter=RateLimiterSettings.from_env(),
            registry=RegistrySettings.from_env(),
            scheduler=SchedulerSettings.from_env(),
            health=HealthMonitorSettings.from_env(),
            cooldowns=CooldownSettings.from_env(),
            adapters=AdapterSettings.from_env(),
            swap=SwapSettings.from_env(),
        )

    def with_overrides(self, overrides: Mapping[str, Any]) -> "CoreConfig":
        """Apply a flat mapping of runtime overrides, e.g. a Redis hash."""
        if not overrides:
            return self

        endpoints = self.endpoints
        if overrides.get("rpc_endpoints"):
            endpoints = parse_endpoints(str(overrides["rpc_endpoints"]))

        rate_limiter = replace(
            self.rate_limiter,
            tier=str(overrides.get("jupiter_tier") or self.rate_limiter.tier).strip().lower(),
            max_concurrent=max(1, to_int(overrides.get("jupiter_max_concurrent"), self.rate_limiter.max_concurrent)),
            max_retries=max(0, to_int(overrides.get("jupiter_max_retries"), self.rate_limiter.max_retries)),
        )
        scheduler = replace(
            self.scheduler,
            min_request_interval_seconds=max(
                0.0,
                to_float(
                    overrides.get("rpc_min_request_interval_seconds"),
                    self.scheduler.min_request_interval_seconds,
                ),
            ),
            request_timeout_seconds=max(
                1.0,
                to_float(overrides.get("rpc_request_timeout_seconds"), self.scheduler.request_timeout_seconds),
            ),
            max_retries=max(0, to_int(overrides.get("rpc_max_retries"), self.scheduler.max_retries)),
            global_max_requests_per_10s=max(
                1,
                to_int(overrides.get("rpc_max_requests_per_10_sec"), self.scheduler.global_max_requests_per_10s),
            ),
        )
        cooldowns = replace(
            self.cooldowns,
            token_failure_threshold=max(
                1,
                to_int(overrides.get("token_failure_threshold"), self.cooldowns.token_failure_threshold),
            ),
            token_cooldown_seconds=max(
                1.0,
                to_float(overrides.get("token_cooldown_seconds"), self.cooldowns.token_cooldown_seconds),
            ),
        )
        swap = replace(
            self.swap,
            adapter_order=to_csv_tuple(overrides.get("adapter_order"), self.swap.adapter_order),
            default_slippage_bps=max(
                1,
                to_int(overrides.get("default_slippage_bps"), self.swap.default_slippage_bps),
            ),
            priority_fee_lamports=max(
                0,
                to_int(overrides.get("priority_fee_lamports"), self.swap.priority_fee_lamports),
            ),
            dry_run=to_bool(overrides.get("dry_run"), self.swap.dry_run),
        )
        return replace(
            self,
            endpoints=endpoints,
            rate_limiter=rate_limiter,
            scheduler=scheduler,
            cooldowns=cooldowns,
            swap=swap,
        )
