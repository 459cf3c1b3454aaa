"""
Single clock abstraction driving debounce, backoff and health thresholds.

Tests substitute a manually advanced clock; production uses the running
asyncio loop.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class Clock:
    """Wall clock plus loop timers."""

    def monotonic(self) -> float:
        return time.monotonic()

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback, *args)
