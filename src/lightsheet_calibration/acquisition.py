from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Sequence

import numpy as np

from .config import AcquisitionConfig
from .interfaces import AcquisitionError, AcquisitionGateway, AcquisitionTimeout

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class FrameState:
    """Complete device state for one frame of an acquisition queue."""

    light_sheet_index: int = 0
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    alpha: float = 0.0
    width: float = 0.0
    height: float = 1.0
    power: float = 0.5
    detection_z: tuple[float, ...] = ()
    capture: bool = True


@dataclass(slots=True)
class AcquisitionQueue:
    """Ordered frames submitted to the microscope as one acquisition unit."""

    number_of_detection_arms: int
    exposure_s: float = 0.01
    transition_time_s: float = 0.0
    frames: list[FrameState] = field(default_factory=list)
    metadata: dict[str, object] = field(default_factory=dict)

    def add_frame(self, frame: FrameState) -> None:
        if frame.detection_z and len(frame.detection_z) != self.number_of_detection_arms:
            raise ValueError("detection_z must provide one value per detection arm")
        self.frames.append(frame)

    def clear(self) -> None:
        self.frames.clear()
        self.metadata.clear()

    @property
    def number_of_captured_frames(self) -> int:
        return sum(1 for frame in self.frames if frame.capture)

    def __len__(self) -> int:
        return len(self.frames)

    def __iter__(self) -> Iterator[FrameState]:
        return iter(self.frames)


class StackRecycler:
    """Bounded pool of stack buffers; requests beyond capacity block."""

    def __init__(self, capacity: int, timeout_s: float | None = None) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._timeout_s = timeout_s
        self._semaphore = threading.BoundedSemaphore(capacity)
        self._lock = threading.Lock()
        self._in_use = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    def request(self) -> None:
        if not self._semaphore.acquire(timeout=self._timeout_s):
            raise AcquisitionTimeout(
                f"No free stack buffer within {self._timeout_s} s (capacity {self._capacity})"
            )
        with self._lock:
            self._in_use += 1

    def free(self) -> None:
        with self._lock:
            self._in_use -= 1
        self._semaphore.release()


class ImageStack:
    """Planes captured by one detection arm, released explicitly by their owner."""

    def __init__(
        self,
        planes: np.ndarray | None,
        *,
        detection_arm_index: int = 0,
        on_release: Callable[[], None] | None = None,
    ) -> None:
        if planes is not None:
            planes = np.asarray(planes, dtype=float)
            if planes.ndim != 3:
                raise ValueError("Stack planes must be a 3D array (plane, y, x)")
        self._planes = planes
        self.detection_arm_index = detection_arm_index
        self._on_release = on_release
        self._released = False
        self._lock = threading.Lock()

    @classmethod
    def empty(cls, detection_arm_index: int = 0) -> "ImageStack":
        return cls(None, detection_arm_index=detection_arm_index)

    @property
    def is_empty(self) -> bool:
        return self._planes is None or self._planes.shape[0] == 0

    @property
    def released(self) -> bool:
        return self._released

    @property
    def planes(self) -> np.ndarray:
        if self._released:
            raise RuntimeError("Stack has already been released")
        if self._planes is None:
            raise ValueError("Empty stack has no planes")
        return self._planes

    @property
    def number_of_planes(self) -> int:
        return 0 if self._planes is None else int(self._planes.shape[0])

    @property
    def shape(self) -> tuple[int, int]:
        planes = self.planes
        return int(planes.shape[1]), int(planes.shape[2])

    def duplicate(self, recycler: StackRecycler | None = None) -> "ImageStack":
        if self.is_empty:
            return ImageStack.empty(self.detection_arm_index)
        planes = self.planes
        on_release = None
        if recycler is not None:
            recycler.request()
            on_release = recycler.free
        return ImageStack(planes.copy(), detection_arm_index=self.detection_arm_index, on_release=on_release)

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
            self._planes = None
            callback = self._on_release
            self._on_release = None
        if callback is not None:
            callback()

    def __enter__(self) -> "ImageStack":
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self.release()


@contextmanager
def released_on_exit(stacks: Sequence[ImageStack]) -> Iterator[Sequence[ImageStack]]:
    """Release every stack when the block exits, whatever the exit path."""

    with ExitStack() as scope:
        for stack in stacks:
            scope.callback(stack.release)
        yield stacks


def play_queue(
    gateway: AcquisitionGateway,
    queue: AcquisitionQueue,
    config: AcquisitionConfig,
    *,
    timeout_s: float | None = None,
) -> list[ImageStack] | None:
    """Execute a queue and return its stacks, or None if acquisition failed."""

    if timeout_s is None:
        timeout_s = config.timeout_for(len(queue))
    try:
        return gateway.execute(queue, timeout_s)
    except AcquisitionError as exc:
        logger.error("Acquisition of %d frames failed: %s", len(queue), exc)
        return None
