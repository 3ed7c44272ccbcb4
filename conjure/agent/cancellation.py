"""Cooperative cancellation for agent runs.

Each run owns one CancelToken. Cancelling never interrupts an in-flight
model or tool await; the run notices at its next suspension point
(raise_if_cancelled) and unwinds via RunCancelled.
"""

from __future__ import annotations

import asyncio


class RunCancelled(Exception):
    """Raised inside a run once its token has been cancelled."""


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self.reason or "cancelled")
