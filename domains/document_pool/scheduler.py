"""
Reload scheduler.

Explicit state machine deciding when a load cycle runs:

    IDLE -> DEBOUNCING -> LOADING -> IDLE                      (success)
                          LOADING -> IDLE, result discarded    (superseded)
                          LOADING -> BACKOFF -> LOADING        (failure, retries left)
                          LOADING -> COOLDOWN -> IDLE          (failure, retries exhausted)

Change notifications always re-arm the quiet-window timer; a load starts
only once the window elapses uninterrupted and no backoff or cooldown is
active. Every new cycle cancels the token of the previous one, and a
cycle whose token was cancelled can never publish its result. All timers
go through one Clock so tests can drive time by hand.
"""

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from loguru import logger

from domains.document_pool.cancellation import CancellationToken
from domains.document_pool.clock import Clock, TimerHandle
from domains.document_pool.errors import Cancelled
from domains.document_pool.models import LoadSession

T = TypeVar("T")

Loader = Callable[[CancellationToken, int], Awaitable[T]]
ErrorListener = Callable[[BaseException, bool], None]


class SchedulerState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    LOADING = "loading"
    BACKOFF = "backoff"
    COOLDOWN = "cooldown"
    CLOSED = "closed"


@dataclass(frozen=True)
class SchedulerConfig:
    """Timing policy of the scheduler (seconds)."""

    debounce_seconds: float = 2.0
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    cooldown_seconds: float = 30.0
    error_notice_interval_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings) -> "SchedulerConfig":
        return cls(
            debounce_seconds=settings.debounce_seconds,
            max_retries=settings.max_retries,
            backoff_base_seconds=settings.backoff_base_seconds,
            cooldown_seconds=settings.cooldown_seconds,
            error_notice_interval_seconds=settings.error_notice_interval_seconds,
        )

    def backoff_delay(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count`` (1-based): 1s, 2s, 4s..."""
        return self.backoff_base_seconds * (2 ** (retry_count - 1))


class ReloadScheduler(Generic[T]):
    """Debounces notifications, cancels stale loads and retries failures."""

    def __init__(
        self,
        loader: Loader,
        on_success: Callable[[T], None],
        on_error: Optional[ErrorListener] = None,
        clock: Optional[Clock] = None,
        config: Optional[SchedulerConfig] = None,
        page_index: int = 0,
    ):
        self._loader = loader
        self._on_success = on_success
        self._on_error = on_error
        self._clock = clock or Clock()
        self.config = config or SchedulerConfig()
        self.page_index = page_index

        self._state = SchedulerState.IDLE
        self._session: Optional[LoadSession] = None
        self._task: Optional[asyncio.Task] = None
        self._debounce_handle: Optional[TimerHandle] = None
        self._retry_handle: Optional[TimerHandle] = None
        self._notice_handle: Optional[TimerHandle] = None
        self._deferred = False
        self._cycle = 0
        self._retry_available = False
        self._last_error: Optional[BaseException] = None
        self._last_notice_at: Optional[float] = None
        self._last_success_at: Optional[float] = None

    # Public API -----------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def session(self) -> Optional[LoadSession]:
        return self._session

    @property
    def retry_count(self) -> int:
        return self._session.retry_count if self._session else 0

    @property
    def suppressed(self) -> bool:
        return self._state in (SchedulerState.BACKOFF, SchedulerState.COOLDOWN)

    @property
    def retry_available(self) -> bool:
        """True once automatic retries are exhausted, until a load succeeds."""
        return self._retry_available

    @property
    def debounce_pending(self) -> bool:
        return self._debounce_handle is not None

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    @property
    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "cycle": self._cycle,
            "page_index": self.page_index,
            "retry_count": self.retry_count,
            "suppressed": self.suppressed,
            "retry_available": self._retry_available,
            "debounce_pending": self.debounce_pending,
            "last_error": str(self._last_error) if self._last_error else None,
            "last_success_at": self._last_success_at,
        }

    def notify(self, reason: str = "change") -> None:
        """Record a change notification; re-arms the quiet window."""
        if self._state is SchedulerState.CLOSED:
            return
        logger.debug(f"Change notification ({reason}), state={self._state.value}")
        self._arm_debounce()
        if self._state is SchedulerState.IDLE:
            self._state = SchedulerState.DEBOUNCING

    def force_reload(self, page_index: Optional[int] = None) -> None:
        """Start a load now, bypassing the quiet window and any backoff or cooldown."""
        if self._state is SchedulerState.CLOSED:
            return
        if page_index is not None:
            self.page_index = page_index
        self._cancel_retry()
        self._cancel_notice()
        self._deferred = False
        if self._session is not None:
            self._session = replace(self._session, retry_count=0, suppressed=False)
        self._start_load("manual")

    async def wait_until_settled(self) -> None:
        """Wait until no load cycle is running."""
        while True:
            task = self._task
            if task is None or task.done():
                return
            await asyncio.wait({task})

    async def close(self) -> None:
        """Cancel timers and any in-flight load; no state updates afterwards."""
        if self._state is SchedulerState.CLOSED:
            return
        self._state = SchedulerState.CLOSED
        self._cancel_debounce()
        self._cancel_retry()
        self._cancel_notice()
        if self._session is not None:
            self._session.cancellation_token.cancel("teardown")

        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        logger.info("Reload scheduler closed")

    # Timers ---------------------------------------------------------------------

    def _arm_debounce(self) -> None:
        self._cancel_debounce()
        self._debounce_handle = self._clock.call_later(
            self.config.debounce_seconds, self._on_debounce_elapsed
        )

    def _cancel_debounce(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _cancel_notice(self) -> None:
        if self._notice_handle is not None:
            self._notice_handle.cancel()
            self._notice_handle = None

    def _on_debounce_elapsed(self) -> None:
        self._debounce_handle = None
        if self._state is SchedulerState.CLOSED:
            return
        if self.suppressed:
            # picked up when backoff retries or cooldown ends
            self._deferred = True
            logger.debug(f"Quiet window elapsed during {self._state.value}; load deferred")
            return
        self._start_load("change")

    def _on_retry_due(self) -> None:
        self._retry_handle = None
        if self._state is not SchedulerState.BACKOFF:
            return
        self._start_load(f"retry {self.retry_count}")

    def _on_cooldown_elapsed(self) -> None:
        self._retry_handle = None
        if self._state is not SchedulerState.COOLDOWN:
            return
        self._session = replace(self._session, retry_count=0, suppressed=False)
        self._state = SchedulerState.IDLE
        logger.info("Cooldown over, automatic reloads resumed")

        if self._debounce_handle is not None:
            self._state = SchedulerState.DEBOUNCING
        elif self._deferred:
            self._deferred = False
            self._state = SchedulerState.DEBOUNCING
            self._arm_debounce()

    # Load cycles ----------------------------------------------------------------

    def _start_load(self, reason: str) -> None:
        previous = self._session
        task = self._task
        if previous is not None and task is not None and not task.done():
            previous.cancellation_token.cancel("superseded")
            task.cancel()
            logger.debug(f"Cancelled in-flight {previous.cancellation_token.label}")

        self._cycle += 1
        self._deferred = False
        self._session = LoadSession(
            cancellation_token=CancellationToken(label=f"cycle-{self._cycle}"),
            page_index=self.page_index,
            retry_count=previous.retry_count if previous else 0,
            last_error_at=previous.last_error_at if previous else None,
            suppressed=False,
        )
        self._state = SchedulerState.LOADING
        logger.info(f"Starting load cycle {self._cycle} ({reason}, page {self.page_index})")
        self._task = asyncio.get_running_loop().create_task(
            self._run(self._session), name=f"pool-load-{self._cycle}"
        )

    def _is_stale(self, session: LoadSession) -> bool:
        return (
            self._state is SchedulerState.CLOSED
            or session is not self._session
            or session.cancellation_token.cancelled
        )

    def _settle_aborted(self, session: LoadSession) -> None:
        if session is self._session and self._state is SchedulerState.LOADING:
            self._state = (
                SchedulerState.DEBOUNCING if self._debounce_handle is not None else SchedulerState.IDLE
            )

    async def _run(self, session: LoadSession) -> None:
        token = session.cancellation_token
        try:
            result = await self._loader(token, session.page_index)
            token.raise_if_cancelled()
        except Cancelled:
            logger.debug(f"{token.label} discarded: cancelled")
            self._settle_aborted(session)
            return
        except asyncio.CancelledError:
            logger.debug(f"{token.label} task cancelled")
            raise
        except Exception as exc:
            if self._is_stale(session):
                logger.debug(f"{token.label} failed after being superseded: {exc}")
                return
            self._handle_failure(session, exc)
            return

        if self._is_stale(session):
            logger.debug(f"{token.label} finished after being superseded; result discarded")
            self._settle_aborted(session)
            return

        try:
            self._on_success(result)
        except Exception as exc:
            logger.exception(f"Publishing result of {token.label} failed")
            self._handle_failure(session, exc)
            return

        self._session = replace(session, retry_count=0, suppressed=False)
        self._last_success_at = self._clock.monotonic()
        self._last_error = None
        self._retry_available = False
        self._cancel_notice()
        self._state = (
            SchedulerState.DEBOUNCING if self._debounce_handle is not None else SchedulerState.IDLE
        )
        logger.success(f"Load cycle {token.label} applied")

    def _handle_failure(self, session: LoadSession, exc: BaseException) -> None:
        retry_count = session.retry_count + 1
        now = self._clock.monotonic()
        self._last_error = exc
        self._session = replace(session, retry_count=retry_count, last_error_at=now, suppressed=True)

        exhausted = retry_count > self.config.max_retries
        if exhausted:
            self._state = SchedulerState.COOLDOWN
            self._retry_available = True
            self._retry_handle = self._clock.call_later(
                self.config.cooldown_seconds, self._on_cooldown_elapsed
            )
            logger.error(
                f"Load failed {retry_count} times, cooling down for "
                f"{self.config.cooldown_seconds}s: {exc}"
            )
        else:
            delay = self.config.backoff_delay(retry_count)
            self._state = SchedulerState.BACKOFF
            self._retry_handle = self._clock.call_later(delay, self._on_retry_due)
            logger.error(f"Load failed (attempt {retry_count}), retrying in {delay}s: {exc}")

        self._emit_notice(exc, exhausted, now)

    def _emit_notice(self, exc: BaseException, exhausted: bool, now: float) -> None:
        if self._on_error is None:
            return
        interval = self.config.error_notice_interval_seconds
        if self._last_notice_at is not None and now - self._last_notice_at < interval:
            if exhausted:
                # delivered when the throttle window closes, if still cooling down
                self._cancel_notice()
                self._notice_handle = self._clock.call_later(
                    self._last_notice_at + interval - now, self._on_notice_due
                )
                logger.debug("Exhausted notice postponed by throttle")
            else:
                logger.debug("Error notice throttled")
            return
        self._last_notice_at = now
        self._on_error(exc, exhausted)

    def _on_notice_due(self) -> None:
        self._notice_handle = None
        if self._state is not SchedulerState.COOLDOWN or self._last_error is None:
            return
        self._emit_notice(self._last_error, True, self._clock.monotonic())
