from .cooldown import CooldownEntry, FailureCooldownTracker, FailureLedger
from .orchestrator import SwapOrchestrator, slippage_for_liquidity
from .rate_limiter import TIER_PRESETS, AggregatorRateLimiter, RateLimitTier, TokenBucket
from .submitter import TransactionSubmitter
from .types import (
    DexAdapter,
    Quote,
    SwapAttemptRecord,
    SwapExecution,
    SwapRequest,
    SwapResult,
    TokenInfo,
    TokenMetadataStore,
    UnsignedSwapBundle,
    WalletSigner,
)
from .wallet import KeypairWallet, parse_private_key

__all__ = [
    "TIER_PRESETS",
    "AggregatorRateLimiter",
    "CooldownEntry",
    "DexAdapter",
    "FailureCooldownTracker",
    "FailureLedger",
    "KeypairWallet",
    "Quote",
    "RateLimitTier",
    "SwapAttemptRecord",
    "SwapExecution",
    "SwapOrchestrator",
    "SwapRequest",
    "SwapResult",
    "TokenBucket",
    "TokenInfo",
    "TokenMetadataStore",
    "TransactionSubmitter",
    "UnsignedSwapBundle",
    "WalletSigner",
    "parse_private_key",
    "slippage_for_liquidity",
]
