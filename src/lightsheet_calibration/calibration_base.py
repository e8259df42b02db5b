from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from typing import Any

import numpy as np

from .acquisition import AcquisitionQueue, FrameState, play_queue, released_on_exit
from .config import AcquisitionConfig
from .devices import LightSheetMicroscope
from .interfaces import ProgressSink

logger = logging.getLogger(__name__)


class CalibrationAxis(enum.Enum):
    """Closed set of calibration variants driven by the engine."""

    Z = "Z"
    ANGLE = "A"
    XY = "XY"
    POWER = "P"
    HEIGHT_POWER = "HP"
    WIDTH_POWER = "WP"
    WIDTH = "W"

    @property
    def per_light_sheet(self) -> bool:
        return self in (
            CalibrationAxis.Z,
            CalibrationAxis.ANGLE,
            CalibrationAxis.XY,
            CalibrationAxis.HEIGHT_POWER,
            CalibrationAxis.WIDTH_POWER,
        )


@dataclass(slots=True, frozen=True)
class ZParams:
    light_sheet_index: int
    n_detection_samples: int = 13
    n_illumination_samples: int = 13
    # Centre the detection sweep on each illumination position instead of the range centre.
    restricted_search: bool = False
    # Half-width of the detection sweep as a fraction of the detection Z span.
    search_amplitude: float = 0.5
    adjust_detection_z: bool = False


@dataclass(slots=True, frozen=True)
class AngleParams:
    light_sheet_index: int
    n_angles: int = 32
    n_repeats: int = 4


@dataclass(slots=True, frozen=True)
class XYParams:
    light_sheet_index: int
    detection_arm_index: int = 0
    n_points: int = 3


@dataclass(slots=True, frozen=True)
class PowerParams:
    detection_arm_index: int = 0
    n_repeats: int = 4
    # Light sheets to equalize; None means all. The first one is the reference.
    light_sheet_indices: tuple[int, ...] | None = None


@dataclass(slots=True, frozen=True)
class PowerRatioParams:
    light_sheet_index: int
    detection_arm_index: int = 0
    n_samples_geometry: int = 8
    n_samples_power: int = 16


@dataclass(slots=True, frozen=True)
class WidthParams:
    detection_arm_index: int = 0
    n_samples: int = 32


class CalibrationModule:
    """Shared plumbing of the per-axis calibration modules.

    Subclasses implement `calibrate(params) -> bool`, which acquires and fits
    without touching the device model, and `apply(params) -> float`, which
    installs the correction and returns the residual error (`inf` when no
    usable data is available).
    """

    axis: CalibrationAxis

    def __init__(
        self,
        microscope: LightSheetMicroscope,
        acquisition_config: AcquisitionConfig | None = None,
        progress: ProgressSink | None = None,
    ) -> None:
        self._microscope = microscope
        self._acquisition = acquisition_config or AcquisitionConfig()
        self._progress = progress

    @property
    def name(self) -> str:
        return self.axis.value

    @property
    def microscope(self) -> LightSheetMicroscope:
        return self._microscope

    def calibrate(self, params: Any) -> bool:
        raise NotImplementedError

    def apply(self, params: Any) -> float:
        raise NotImplementedError

    def reset(self) -> None:
        """Forget everything measured so far."""

    def _check_light_sheet(self, light_sheet_index: int) -> None:
        if not 0 <= light_sheet_index < self._microscope.number_of_light_sheets:
            raise IndexError(f"Light sheet index {light_sheet_index} out of range")

    def _check_detection_arm(self, detection_arm_index: int) -> None:
        if not 0 <= detection_arm_index < self._microscope.number_of_detection_arms:
            raise IndexError(f"Detection arm index {detection_arm_index} out of range")

    def _new_queue(self) -> AcquisitionQueue:
        queue = self._microscope.gateway.build_queue()
        queue.exposure_s = self._acquisition.exposure_s
        queue.transition_time_s = self._acquisition.transition_time_s
        return queue

    def _frame(self, light_sheet_index: int, **changes: Any) -> FrameState:
        """Current device state of one light sheet, with `changes` applied."""

        ls = self._microscope.light_sheets[light_sheet_index]
        frame = FrameState(
            light_sheet_index=light_sheet_index,
            x=ls.x.value,
            y=ls.y.value,
            z=ls.z.value,
            alpha=ls.alpha.value,
            width=ls.width.value,
            height=ls.height.value,
            power=ls.power.value,
            detection_z=tuple(arm.z.value for arm in self._microscope.detection_arms),
        )
        return replace(frame, **changes)

    def _acquire(self, queue: AcquisitionQueue) -> list[np.ndarray | None] | None:
        """Play a queue and copy out the planes of every detection arm.

        Returns None when acquisition failed. Gateway stacks are always
        released before returning.
        """

        stacks = play_queue(self._microscope.gateway, queue, self._acquisition)
        if stacks is None:
            return None
        with released_on_exit(stacks):
            return [None if stack.is_empty else stack.planes.copy() for stack in stacks]

    def _configure_chart(self, chart: str, series: str, x_label: str, y_label: str) -> None:
        if self._progress is not None:
            self._progress.configure_chart(chart, series, x_label, y_label)

    def _plot(self, chart: str, series: str, xs: Any, ys: Any) -> None:
        if self._progress is None:
            return
        for i, (x, y) in enumerate(zip(xs, ys)):
            self._progress.add_point(chart, series, i == 0, float(x), float(y))
