"""Utility routines for retry and jitter policies.

Used by the ownership index to space out optimistic transaction retries.
"""

from __future__ import annotations
import asyncio
import os
from typing import Literal

__all__ = ["compute_backoff_delay_ms", "async_backoff_sleep"]

def _rand_u8() -> int:
    """Small helper to avoid importing random; uses os.urandom."""
    return int.from_bytes(os.urandom(1), "big")

def compute_backoff_delay_ms(
    attempt: int,
    *,
    base_ms: int,
    jitter_ms: int,
    cap_ms: int | None = None,
    mode: Literal["exp_equal_jitter", "exp_full_jitter"] = "exp_equal_jitter",
) -> int:
    """Compute a retry backoff (milliseconds) with jitter.

    Modes:
      - exp_equal_jitter: (base * 2**(n-1)) + uniform(0, jitter)
      - exp_full_jitter:  uniform(0, (base * 2**(n-1)) + jitter)
    """
    if attempt < 1:
        attempt = 1
    exp = base_ms * (2 ** (attempt - 1))
    if mode == "exp_equal_jitter":
        delay = exp + (_rand_u8() % max(1, jitter_ms))
    else:
        span = exp + max(1, jitter_ms)
        delay = int((_rand_u8() / 255.0) * span)
    if cap_ms is not None:
        delay = min(delay, cap_ms)
    return max(0, int(delay))

async def async_backoff_sleep(
    attempt: int,
    *,
    base_ms: int,
    jitter_ms: int,
    cap_ms: int | None = None,
    mode: Literal["exp_equal_jitter", "exp_full_jitter"] = "exp_equal_jitter",
) -> int:
    """Async sleep wrapper around compute_backoff_delay_ms. Returns the delay slept."""
    delay_ms = compute_backoff_delay_ms(attempt, base_ms=base_ms, jitter_ms=jitter_ms, cap_ms=cap_ms, mode=mode)
    await asyncio.sleep(delay_ms / 1000.0)
    return delay_ms
