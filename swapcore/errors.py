from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Iterable

import aiohttp


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    NO_ROUTE = "no_route"
    INSUFFICIENT_LIQUIDITY = "insufficient_liquidity"
    AUTH = "auth"
    INVALID_ARGUMENT = "invalid_argument"
    ADAPTERS_EXHAUSTED = "adapters_exhausted"
    TOKEN_COOLDOWN = "token_cooldown"
    TRANSACTION_FAILED = "transaction_failed"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.NETWORK})

_RATE_LIMIT_MARKERS = ("429", "too many requests", "rate limit", "rate-limit", "quota exceeded", "-32429")
_AUTH_MARKERS = ("401", "403", "forbidden", "unauthorized", "api key", "api-key")
_TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")
_NETWORK_MARKERS = (
    "econnreset",
    "econnrefused",
    "socket hang up",
    "network error",
    "failed to fetch",
    "fetch failed",
    "connection error",
    "connection reset",
    "connection refused",
    "cannot connect",
    "server disconnected",
    "502",
    "503",
    "504",
)
_NO_ROUTE_MARKERS = (
    "no route",
    "no_route",
    "no routes",
    "could not find any route",
    "route not found",
    "token_not_tradable",
    "not tradable",
)
_LIQUIDITY_MARKERS = ("insufficient liquidity", "insufficient_liquidity", "not enough liquidity")


class SwapCoreError(RuntimeError):
    kind = ErrorKind.UNKNOWN

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class RateLimitedError(SwapCoreError):
    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: float | None = None,
        provider: str = "unknown",
        circuit_open: bool = False,
    ) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds
        self.provider = provider
        self.circuit_open = circuit_open


class RequestTimeoutError(SwapCoreError):
    kind = ErrorKind.TIMEOUT


class NetworkUnavailableError(SwapCoreError):
    kind = ErrorKind.NETWORK


class NoRouteFoundError(SwapCoreError):
    kind = ErrorKind.NO_ROUTE


class InsufficientLiquidityError(SwapCoreError):
    kind = ErrorKind.INSUFFICIENT_LIQUIDITY


class AuthRejectedError(SwapCoreError):
    kind = ErrorKind.AUTH


class InvalidArgumentError(SwapCoreError, ValueError):
    kind = ErrorKind.INVALID_ARGUMENT


class TransactionFailedError(SwapCoreError):
    kind = ErrorKind.TRANSACTION_FAILED

    def __init__(self, message: str, *, signature: str | None = None) -> None:
        super().__init__(message)
        self.signature = signature


class AllAdaptersExhaustedError(SwapCoreError):
    kind = ErrorKind.ADAPTERS_EXHAUSTED

    def __init__(self, token_address: str, attempts: Iterable[Any]) -> None:
        self.token_address = token_address
        self.attempts = tuple(attempts)
        reasons = "; ".join(
            f"{getattr(attempt, 'adapter_name', '?')}: {getattr(attempt, 'error_reason', '')}"
            for attempt in self.attempts
        )
        super().__init__(f"All adapters failed for {token_address}: {reasons or 'no adapters configured'}")

    @property
    def reasons(self) -> dict[str, str]:
        return {
            str(getattr(attempt, "adapter_name", "?")): str(getattr(attempt, "error_reason", ""))
            for attempt in self.attempts
        }


class TokenOnCooldownError(SwapCoreError):
    kind = ErrorKind.TOKEN_COOLDOWN

    def __init__(
        self,
        token_address: str,
        *,
        remaining_seconds: float,
        failure_count: int,
        attempts: Iterable[Any] = (),
    ) -> None:
        self.token_address = token_address
        self.remaining_seconds = remaining_seconds
        self.failure_count = failure_count
        self.attempts = tuple(attempts)
        super().__init__(
            f"Token {token_address} is on cooldown for {remaining_seconds:.0f}s "
            f"after {failure_count} failed swap attempts"
        )


_KIND_TO_CLASS: dict[ErrorKind, type[SwapCoreError]] = {
    ErrorKind.RATE_LIMIT: RateLimitedError,
    ErrorKind.TIMEOUT: RequestTimeoutError,
    ErrorKind.NETWORK: NetworkUnavailableError,
    ErrorKind.NO_ROUTE: NoRouteFoundError,
    ErrorKind.INSUFFICIENT_LIQUIDITY: InsufficientLiquidityError,
    ErrorKind.AUTH: AuthRejectedError,
    ErrorKind.INVALID_ARGUMENT: InvalidArgumentError,
    ErrorKind.TRANSACTION_FAILED: TransactionFailedError,
}


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    return any(marker in text for marker in markers)


def classify_text(text: str) -> ErrorKind:
    lowered = text.lower()
    if _contains_any(lowered, _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMIT
    if _contains_any(lowered, _NO_ROUTE_MARKERS):
        return ErrorKind.NO_ROUTE
    if _contains_any(lowered, _LIQUIDITY_MARKERS):
        return ErrorKind.INSUFFICIENT_LIQUIDITY
    if _contains_any(lowered, _AUTH_MARKERS):
        return ErrorKind.AUTH
    if _contains_any(lowered, _TIMEOUT_MARKERS):
        return ErrorKind.TIMEOUT
    if _contains_any(lowered, _NETWORK_MARKERS):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def classify_status(status: int) -> ErrorKind | None:
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status in {401, 403}:
        return ErrorKind.AUTH
    if status in {408, 504}:
        return ErrorKind.TIMEOUT
    if status >= 500:
        return ErrorKind.NETWORK
    return None


def classify_error(error: BaseException) -> ErrorKind:
    if isinstance(error, SwapCoreError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, aiohttp.ClientResponseError):
        by_status = classify_status(error.status)
        if by_status is not None:
            return by_status
    if isinstance(error, (aiohttp.ClientConnectionError, ConnectionError)):
        text_kind = classify_text(str(error))
        return text_kind if text_kind is not ErrorKind.UNKNOWN else ErrorKind.NETWORK

    text_kind = classify_text(f"{error} {error.__cause__ or ''}")
    if text_kind is not ErrorKind.UNKNOWN:
        return text_kind
    if isinstance(error, aiohttp.ClientError):
        return ErrorKind.NETWORK
    if isinstance(error, (ValueError, TypeError)):
        return ErrorKind.INVALID_ARGUMENT
    return ErrorKind.UNKNOWN


def normalize_error(error: BaseException, *, provider: str = "unknown") -> SwapCoreError:
    if isinstance(error, SwapCoreError):
        return error

    kind = classify_error(error)
    message = str(error) or type(error).__name__
    if kind is ErrorKind.RATE_LIMIT:
        normalized: SwapCoreError = RateLimitedError(message, provider=provider)
    else:
        normalized = _KIND_TO_CLASS.get(kind, SwapCoreError)(message)
    normalized.__cause__ = error
    return normalized


def is_retryable(error: BaseException) -> bool:
    return classify_error(error) in RETRYABLE_KINDS
