from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .acquisition import AcquisitionQueue, ImageStack


class AcquisitionError(RuntimeError):
    """Raised by a gateway when a queue could not be played to completion."""


class AcquisitionTimeout(AcquisitionError, TimeoutError):
    """Raised when the stacks of a queue did not arrive within the budget."""


class AcquisitionGateway(Protocol):
    """Interface for the microscope's acquisition queue executor."""

    def build_queue(self) -> AcquisitionQueue:
        """Return a new, empty queue bound to this microscope."""

    def execute(self, queue: AcquisitionQueue, timeout_s: float) -> list[ImageStack]:
        """Play the queue and return one stack per detection arm.

        Raises `AcquisitionError` (or `AcquisitionTimeout`) when the queue
        fails or the stacks do not arrive within `timeout_s`.
        """


class ProgressSink(Protocol):
    """Monitoring sink for chart series and per-grid-point notes."""

    def configure_chart(self, chart: str, series: str, x_label: str, y_label: str) -> None:
        """Declare a chart series."""

    def add_point(self, chart: str, series: str, clear: bool, x: float, y: float) -> None:
        """Append a point to a series, clearing it first when `clear` is set."""

    def add_entry(self, module: str, row: int, column: int, text: str) -> None:
        """Attach a text note to a (row, column) cell of a module's grid."""
