from __future__ import annotations

import threading


class CancellationToken:
    """Cooperative stop flag, polled at loop boundaries.

    A token may be chained to a parent (for example an application-wide cancel
    signal); it reads as cancelled when either itself or any ancestor is.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)
