from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol

from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from swapcore.config import WSOL_MINT

if TYPE_CHECKING:
    from swapcore.errors import SwapCoreError

LAMPORTS_PER_SOL = 1_000_000_000
SOL_ALIASES = {"sol", "solana", "native", "11111111111111111111111111111111"}

SIDE_BUY = "buy"
SIDE_SELL = "sell"

OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_mint(address: str) -> str:
    value = str(address or "").strip()
    if value.lower() in SOL_ALIASES:
        return WSOL_MINT
    return value


def to_base_units(amount: float, decimals: int) -> int:
    return int(Decimal(str(amount)).scaleb(decimals))


@dataclass(slots=True, frozen=True)
class TokenInfo:
    price: float | None = None
    liquidity: float | None = None
    decimals: int | None = None


@dataclass(slots=True, frozen=True)
class Quote:
    adapter_name: str
    input_mint: str
    output_mint: str
    amount_in: int
    amount_out: int
    slippage_bps: int
    price_impact_pct: float = 0.0
    route: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(slots=True, frozen=True)
class UnsignedSwapBundle:
    adapter_name: str
    transactions: tuple[str, ...]
    quote: Quote
    last_valid_block_height: int | None = None


@dataclass(slots=True, frozen=True)
class SwapExecution:
    adapter_name: str
    success: bool
    tx_hash: str | None = None
    output_amount: int | None = None
    simulated: bool = False
    error: str | None = None


@dataclass(slots=True, frozen=True)
class SwapAttemptRecord:
    token_address: str
    amount_in: int
    slippage_bps: int
    adapter_name: str
    outcome: str
    error_reason: str = ""
    error_kind: str = ""
    timestamp: str = field(default_factory=now_iso)

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class SwapRequest:
    token_address: str
    user_wallet: "WalletSigner"
    amount_in: float
    slippage_bps: int | None = None
    side: str = SIDE_BUY
    priority_fee_lamports: int | None = None


@dataclass(slots=True)
class SwapResult:
    success: bool
    adapter_used: str | None = None
    tx_hash: str | None = None
    output_amount: int | None = None
    error: "SwapCoreError | None" = None
    used_fallback: bool = False
    simulated: bool = False
    attempts: tuple[SwapAttemptRecord, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "adapter_used": self.adapter_used,
            "tx_hash": self.tx_hash,
            "output_amount": self.output_amount,
            "error": str(self.error) if self.error is not None else None,
            "error_kind": self.error.kind.value if self.error is not None else None,
            "used_fallback": self.used_fallback,
            "simulated": self.simulated,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


class WalletSigner(Protocol):
    @property
    def public_key(self) -> Pubkey:
        ...

    def sign_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction:
        ...


class TokenMetadataStore(Protocol):
    async def get_token(self, address: str) -> TokenInfo | None:
        ...


class DexAdapter(Protocol):
    name: str
    widened_slippage_bps: int

    async def quote(
        self,
        *,
        token_in: str,
        token_out: str,
        amount_in: int,
        slippage_bps: int,
    ) -> Quote:
        ...

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
        ...

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
        ...

    async def close(self) -> None:
        ...
