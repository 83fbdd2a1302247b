from __future__ import annotations

import threading


class CancellationToken:
    """Cooperative stop flag shared between a caller and a running orchestrator."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise InterruptedError("Processing cancelled")
