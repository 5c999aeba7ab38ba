"""blockbench.core.cancellation

Cooperative cancellation.

A token is a one-way flag shared between whoever wants a run to stop and the
loop doing the work. The loop polls it at checkpoints and unwinds on its own;
nothing is ever interrupted mid-step.
"""

from __future__ import annotations

import threading


class CancellationToken:
    """Thread-safe one-way cancellation signal."""

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# A token nobody can cancel, for callers that do not care.
NEVER = CancellationToken()
