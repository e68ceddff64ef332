from __future__ import annotations

from collections import defaultdict, deque


class SlidingWindow:
    def __init__(self, horizon_seconds: float) -> None:
        self.horizon_seconds = horizon_seconds
        self._timestamps: deque[float] = deque()

    def _prune(self, now: float) -> None:
        cutoff = now - self.horizon_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def add(self, now: float) -> None:
        self._prune(now)
        self._timestamps.append(now)

    def count(self, now: float) -> int:
        self._prune(now)
        return len(self._timestamps)


class RequestWindows:
    """Per-endpoint minute, global 10 second and per-method 10 second counters."""

    def __init__(self) -> None:
        self.global_10s = SlidingWindow(10.0)
        self._per_endpoint: defaultdict[str, SlidingWindow] = defaultdict(lambda: SlidingWindow(60.0))
        self._per_method: defaultdict[str, SlidingWindow] = defaultdict(lambda: SlidingWindow(10.0))

    def record(self, *, endpoint_url: str, method: str, now: float) -> None:
        self.global_10s.add(now)
        self._per_endpoint[endpoint_url].add(now)
        self._per_method[method].add(now)

    def endpoint_count(self, endpoint_url: str, now: float) -> int:
        window = self._per_endpoint.get(endpoint_url)
        return window.count(now) if window is not None else 0

    def method_count(self, method: str, now: float) -> int:
        window = self._per_method.get(method)
        return window.count(now) if window is not None else 0

    def method_counts(self, now: float) -> dict[str, int]:
        counts = {method: window.count(now) for method, window in self._per_method.items()}
        return {method: count for method, count in counts.items() if count > 0}
