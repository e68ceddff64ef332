from __future__ import annotations

import asyncio
import unittest
from unittest.mock import MagicMock

import aiohttp

from swapcore.errors import (
    AllAdaptersExhaustedError,
    ErrorKind,
    InvalidArgumentError,
    NoRouteFoundError,
    RateLimitedError,
    SwapCoreError,
    TokenOnCooldownError,
    classify_error,
    is_retryable,
    normalize_error,
)
from swapcore.trading import SwapAttemptRecord


def _response_error(status: int) -> aiohttp.ClientResponseError:
    return aiohttp.ClientResponseError(MagicMock(), (), status=status, message="")


class ClassifyErrorTests(unittest.TestCase):
    def test_http_status_wins_over_message(self) -> None:
        self.assertIs(classify_error(_response_error(429)), ErrorKind.RATE_LIMIT)
        self.assertIs(classify_error(_response_error(401)), ErrorKind.AUTH)
        self.assertIs(classify_error(_response_error(403)), ErrorKind.AUTH)
        self.assertIs(classify_error(_response_error(504)), ErrorKind.TIMEOUT)
        self.assertIs(classify_error(_response_error(502)), ErrorKind.NETWORK)

    def test_transport_failures(self) -> None:
        self.assertIs(classify_error(asyncio.TimeoutError()), ErrorKind.TIMEOUT)
        self.assertIs(classify_error(ConnectionResetError("peer reset")), ErrorKind.NETWORK)
        self.assertIs(classify_error(aiohttp.ClientConnectionError("boom")), ErrorKind.NETWORK)

    def test_message_markers(self) -> None:
        cases = {
            "Too Many Requests": ErrorKind.RATE_LIMIT,
            "RPC error -32429: quota exceeded": ErrorKind.RATE_LIMIT,
            "Could not find any route": ErrorKind.NO_ROUTE,
            "insufficient liquidity in pool": ErrorKind.INSUFFICIENT_LIQUIDITY,
            "invalid api key": ErrorKind.AUTH,
            "request timed out": ErrorKind.TIMEOUT,
            "socket hang up": ErrorKind.NETWORK,
            "fetch failed": ErrorKind.NETWORK,
            "something odd happened": ErrorKind.UNKNOWN,
        }
        for message, expected in cases.items():
            with self.subTest(message=message):
                self.assertIs(classify_error(RuntimeError(message)), expected)

    def test_value_errors_are_invalid_arguments(self) -> None:
        self.assertIs(classify_error(ValueError("Invalid public key")), ErrorKind.INVALID_ARGUMENT)

    def test_typed_errors_keep_their_kind(self) -> None:
        self.assertIs(classify_error(NoRouteFoundError("429 in message")), ErrorKind.NO_ROUTE)
        self.assertIs(classify_error(InvalidArgumentError("bad")), ErrorKind.INVALID_ARGUMENT)


class NormalizeErrorTests(unittest.TestCase):
    def test_rate_limit_is_wrapped_with_provider_and_cause(self) -> None:
        original = RuntimeError("429 Too Many Requests")

        normalized = normalize_error(original, provider="rpc")

        self.assertIsInstance(normalized, RateLimitedError)
        self.assertEqual(normalized.provider, "rpc")
        self.assertIs(normalized.__cause__, original)
        self.assertTrue(normalized.retryable)

    def test_typed_errors_pass_through(self) -> None:
        error = NoRouteFoundError("no route")

        self.assertIs(normalize_error(error), error)
        self.assertFalse(error.retryable)

    def test_unknown_errors_become_base_error(self) -> None:
        normalized = normalize_error(RuntimeError("weird"))

        self.assertIs(type(normalized), SwapCoreError)
        self.assertIs(normalized.kind, ErrorKind.UNKNOWN)

    def test_retryable_kinds(self) -> None:
        self.assertTrue(is_retryable(RuntimeError("ECONNRESET")))
        self.assertTrue(is_retryable(asyncio.TimeoutError()))
        self.assertFalse(is_retryable(RuntimeError("No routes found")))
        self.assertFalse(is_retryable(ValueError("bad")))


class AggregateErrorTests(unittest.TestCase):
    def test_exhausted_error_lists_reasons_per_adapter(self) -> None:
        attempts = [
            SwapAttemptRecord("TKN", 1, 500, "jupiter", "error", error_reason="No routes found"),
            SwapAttemptRecord("TKN", 1, 500, "raydium", "error", error_reason="price impact too high"),
        ]

        error = AllAdaptersExhaustedError("TKN", attempts)

        self.assertEqual(error.reasons, {"jupiter": "No routes found", "raydium": "price impact too high"})
        self.assertIn("jupiter: No routes found", str(error))
        self.assertIs(error.kind, ErrorKind.ADAPTERS_EXHAUSTED)

    def test_cooldown_error_message(self) -> None:
        error = TokenOnCooldownError("TKN", remaining_seconds=125.4, failure_count=3)

        self.assertEqual(str(error), "Token TKN is on cooldown for 125s after 3 failed swap attempts")
        self.assertEqual(error.attempts, ())


if __name__ == "__main__":
    unittest.main()
