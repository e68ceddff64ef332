from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable

from .types import SwapAttemptRecord


@dataclass(slots=True)
class CooldownEntry:
    key: str
    failure_count: int = 0
    cooldown_expires_at: float = 0.0


class FailureCooldownTracker:
    """Counts failures per key and blocks the key once the threshold is reached.

    Keys are token addresses for the orchestrator and adapter names for the
    adapter circuit breakers. Expiry clears both the cooldown and the counter.
    """

    def __init__(
        self,
        *,
        threshold: int,
        cooldown_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = max(1, int(threshold))
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._clock = clock
        self._entries: dict[str, CooldownEntry] = {}

    def _expire(self, key: str, now: float) -> CooldownEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.cooldown_expires_at and entry.cooldown_expires_at <= now:
            del self._entries[key]
            return None
        return entry

    def is_on_cooldown(self, key: str) -> bool:
        entry = self._expire(key, self._clock())
        return entry is not None and entry.cooldown_expires_at > 0

    def cooldown_remaining(self, key: str) -> float:
        now = self._clock()
        entry = self._expire(key, now)
        if entry is None or not entry.cooldown_expires_at:
            return 0.0
        return max(0.0, entry.cooldown_expires_at - now)

    def failure_count(self, key: str) -> int:
        entry = self._expire(key, self._clock())
        return entry.failure_count if entry is not None else 0

    def record_failure(self, key: str) -> bool:
        """Count one failure; returns True when this failure opened the cooldown."""
        now = self._clock()
        entry = self._expire(key, now)
        if entry is None:
            entry = CooldownEntry(key=key)
            self._entries[key] = entry

        entry.failure_count += 1
        if entry.cooldown_expires_at == 0.0 and entry.failure_count >= self.threshold:
            entry.cooldown_expires_at = now + self.cooldown_seconds
            return True
        return False

    def reset(self, key: str) -> None:
        self._entries.pop(key, None)

    def entry(self, key: str) -> CooldownEntry | None:
        return self._expire(key, self._clock())

    def snapshot(self) -> dict[str, dict[str, Any]]:
        now = self._clock()
        result: dict[str, dict[str, Any]] = {}
        for key in list(self._entries):
            entry = self._expire(key, now)
            if entry is None:
                continue
            result[key] = {
                "failure_count": entry.failure_count,
                "cooldown_remaining_seconds": round(max(0.0, entry.cooldown_expires_at - now), 3)
                if entry.cooldown_expires_at
                else 0.0,
            }
        return result


class FailureLedger:
    """In-memory failed swap attempts keyed by token address."""

    def __init__(self, *, max_entries_per_token: int = 100) -> None:
        self._max_entries = max(1, int(max_entries_per_token))
        self._records: defaultdict[str, deque[SwapAttemptRecord]] = defaultdict(
            lambda: deque(maxlen=self._max_entries)
        )

    def record(self, attempt: SwapAttemptRecord) -> None:
        self._records[attempt.token_address].append(attempt)

    def attempts_for(self, token_address: str) -> tuple[SwapAttemptRecord, ...]:
        records = self._records.get(token_address)
        return tuple(records) if records else ()

    def all(self) -> tuple[SwapAttemptRecord, ...]:
        return tuple(record for records in self._records.values() for record in records)

    def clear(self, token_address: str | None = None) -> None:
        if token_address is None:
            self._records.clear()
        else:
            self._records.pop(token_address, None)

    def __len__(self) -> int:
        return sum(len(records) for records in self._records.values())
