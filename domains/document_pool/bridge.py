"""
Change notification bridge.

Subscribes to every source's change feed and runs a fixed-interval
fallback poll. Every event is forwarded as an opaque "something changed"
signal; payloads are only logged.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger

from domains.document_pool.clock import Clock, TimerHandle
from domains.document_pool.sources.base import SourceAdapter, Unsubscribe


class ChangeNotificationBridge:
    """Fans change feeds of all sources into one notify callback."""

    def __init__(
        self,
        adapters: Sequence[SourceAdapter],
        notify: Callable[[str], None],
        clock: Optional[Clock] = None,
        fallback_seconds: float = 30.0,
        log_events: bool = False,
    ):
        self.adapters = list(adapters)
        self.notify = notify
        self.clock = clock or Clock()
        self.fallback_seconds = fallback_seconds
        self.log_events = log_events

        self._unsubscribers: List[Unsubscribe] = []
        self._fallback: Optional[TimerHandle] = None
        self._running = False
        self.events_forwarded = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for adapter in self.adapters:
            source = adapter.source_id.value
            self._unsubscribers.append(
                adapter.subscribe(lambda payload, source=source: self._on_change(source, payload))
            )
        logger.info(f"Subscribed to {len(self._unsubscribers)} change feeds")
        self._arm_fallback()

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._fallback is not None:
            self._fallback.cancel()
            self._fallback = None

        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()
        logger.info("Change notification bridge stopped")

    def _on_change(self, source: str, payload: Dict[str, Any]) -> None:
        if not self._running:
            return
        self.events_forwarded += 1
        if self.log_events:
            logger.info(f"Change on {source}: {payload}")
        else:
            logger.debug(f"Change on {source}: {payload}")
        self.notify(f"change:{source}")

    def _arm_fallback(self) -> None:
        if self.fallback_seconds <= 0:
            return
        self._fallback = self.clock.call_later(self.fallback_seconds, self._on_fallback)

    def _on_fallback(self) -> None:
        self._fallback = None
        if not self._running:
            return
        if self.log_events:
            logger.info("Fallback poll")
        self.notify("fallback-poll")
        self._arm_fallback()
