"""Cooperative cancellation for long-running broker operations."""

from __future__ import annotations

import threading

from aws_agent_broker.errors import OperationCancelled


class CancellationToken:
    """Set once by any thread; checked by the worker between blocking steps."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, step: str | None = None) -> None:
        if self._event.is_set():
            where = f" during {step}" if step else ""
            raise OperationCancelled(f"Operation cancelled{where}: {self.reason or 'no reason given'}")


def check_cancelled(token: CancellationToken | None, step: str | None = None) -> None:
    if token is not None:
        token.raise_if_cancelled(step)
