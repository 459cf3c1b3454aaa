"""User-visible error notices."""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from loguru import logger

from domains.document_pool.clock import Clock


@dataclass(frozen=True)
class ErrorNotice:
    message: str
    exhausted: bool
    raised_at: datetime


class ErrorNotifier:
    """
    Receives the scheduler's (already throttled) error notices.

    Keeps the latest notice for the status endpoint and forwards it to
    optional listeners (the CLI prints them).
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()
        self.latest: Optional[ErrorNotice] = None
        self.total = 0
        self._listeners: List[Callable[[ErrorNotice], None]] = []

    def add_listener(self, listener: Callable[[ErrorNotice], None]) -> None:
        self._listeners.append(listener)

    def __call__(self, error: BaseException, exhausted: bool) -> None:
        if exhausted:
            message = f"Automatic retries exhausted, reload manually to retry: {error}"
        else:
            message = f"Could not refresh documents, retrying: {error}"

        notice = ErrorNotice(message=message, exhausted=exhausted, raised_at=self.clock.utcnow())
        self.latest = notice
        self.total += 1
        logger.error(message)
        for listener in self._listeners:
            listener(notice)

    def clear(self) -> None:
        self.latest = None
