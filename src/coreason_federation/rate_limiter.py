# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_federation

"""
Rate limiting for the transport boundary. The grant and SAML engines never see it.
"""

import math
import time
from collections.abc import Callable
from typing import Protocol

import anyio
from pydantic import BaseModel, ConfigDict


class RateLimitDecision(BaseModel):
    """Outcome of one `hit`, rendered as RFC 6585 style headers."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    limit: int
    remaining: int
    reset_after: float

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, math.ceil(self.reset_after)))
        return headers


class RateLimiter(Protocol):
    """Keyed by caller identity. Implementations may be backed by a shared store."""

    async def hit(self, key: str) -> RateLimitDecision:
        """Counts one request for `key` and reports whether it is allowed."""
        ...


class RateLimitPreset(BaseModel):
    model_config = ConfigDict(frozen=True)

    window_seconds: float
    max_requests: int


RATE_LIMIT_PRESETS: dict[str, RateLimitPreset] = {
    "auth": RateLimitPreset(window_seconds=15 * 60, max_requests=10),
    "api": RateLimitPreset(window_seconds=60, max_requests=100),
    "oauth": RateLimitPreset(window_seconds=60, max_requests=300),
    "tools": RateLimitPreset(window_seconds=60, max_requests=100),
}


class InMemoryFixedWindowRateLimiter:
    """
    Fixed-window counter per key, held in process memory.

    Args:
        window_seconds (float): Window length.
        max_requests (int): Requests allowed per key per window.
        clock (Callable[[], float]): Monotonic time source.
    """

    def __init__(
        self,
        window_seconds: float,
        max_requests: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds <= 0 or max_requests <= 0:
            raise ValueError("window_seconds and max_requests must be positive")
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock: anyio.Lock | None = None

    @classmethod
    def from_preset(cls, name: str) -> "InMemoryFixedWindowRateLimiter":
        preset = RATE_LIMIT_PRESETS[name]
        return cls(preset.window_seconds, preset.max_requests)

    def _get_lock(self) -> anyio.Lock:
        if self._lock is None:
            self._lock = anyio.Lock()
        return self._lock

    async def hit(self, key: str) -> RateLimitDecision:
        async with self._get_lock():
            now = self._clock()
            reset_at, count = self._windows.get(key, (0.0, 0))
            if now >= reset_at:
                reset_at, count = now + self.window_seconds, 0
            count += 1
            self._windows[key] = (reset_at, count)

        return RateLimitDecision(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_after=reset_at - now,
        )

    def cleanup(self) -> int:
        """Drops expired windows. Returns the number removed."""
        now = self._clock()
        stale = [k for k, (reset_at, _) in self._windows.items() if now >= reset_at]
        for k in stale:
            del self._windows[k]
        return len(stale)
