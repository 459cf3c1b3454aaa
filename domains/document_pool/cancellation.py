"""Cooperative cancellation tokens shared by every query of one load cycle."""

from itertools import count
from typing import Optional

from domains.document_pool.errors import Cancelled

_token_ids = count(1)


class CancellationToken:
    """Signal checked by adapters before they hand results back."""

    def __init__(self, label: Optional[str] = None):
        self.id = next(_token_ids)
        self.label = label or f"cycle-{self.id}"
        self._cancelled = False
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "superseded") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled(f"{self.label} cancelled ({self._reason})")

    def __repr__(self) -> str:
        state = f"cancelled:{self._reason}" if self._cancelled else "live"
        return f"<CancellationToken {self.label} {state}>"

