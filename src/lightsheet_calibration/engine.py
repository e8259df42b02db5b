from __future__ import annotations

import logging
import math
import threading
from pathlib import Path
from typing import Any, Callable

from .calibration_angle import AngleCalibration
from .calibration_base import (
    AngleParams,
    CalibrationAxis,
    CalibrationModule,
    PowerParams,
    PowerRatioParams,
    WidthParams,
    XYParams,
    ZParams,
)
from .calibration_power import HeightPowerCalibration, PowerCalibration, WidthPowerCalibration
from .calibration_width import WidthCalibration
from .calibration_xy import XYCalibration
from .calibration_z import ZCalibration
from .cancellation import CancellationToken
from .config import AcquisitionConfig, CalibrationConfig
from .devices import LightSheetMicroscope
from .interfaces import ProgressSink
from .persistence import CalibrationData, load_calibration, save_calibration
from .positioner import LightSheetPositioner

logger = logging.getLogger(__name__)


def search_amplitude(iteration: int) -> float:
    """Half-width of the Z search window, halved at every retry."""

    return 1.0 / 2 ** (1 + iteration)


class CalibrationEngine:
    """Runs the calibration sequence against one microscope.

    Axis loops alternate calibrate and apply until the residual error falls
    below the axis threshold or `max_iterations` cycles have run. A stop
    request or a cancelled token ends the run at the next loop boundary with
    a False result.
    """

    def __init__(
        self,
        microscope: LightSheetMicroscope,
        config: CalibrationConfig | None = None,
        *,
        acquisition_config: AcquisitionConfig | None = None,
        progress: ProgressSink | None = None,
        on_progress: Callable[[float], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self._microscope = microscope
        self._config = config or CalibrationConfig()
        self._acquisition = acquisition_config or AcquisitionConfig()
        self._on_progress = on_progress
        self._cancel = cancel_token if cancel_token is not None else CancellationToken()
        self._stop_evt = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._last_error: Exception | None = None
        self._result: bool | None = None
        self._progress_value = 0.0
        self._completed_units = 0
        self._total_units = 1
        self._positioners: dict[tuple[int, int], LightSheetPositioner] = {}

        if not 0 <= self._config.detection_arm_index < microscope.number_of_detection_arms:
            raise ValueError("detection_arm_index must name an existing detection arm")

        args = (microscope, self._acquisition, progress)
        self._xy = XYCalibration(*args)
        self.modules: dict[CalibrationAxis, CalibrationModule] = {
            CalibrationAxis.Z: ZCalibration(*args),
            CalibrationAxis.ANGLE: AngleCalibration(*args),
            CalibrationAxis.XY: self._xy,
            CalibrationAxis.POWER: PowerCalibration(*args),
            CalibrationAxis.HEIGHT_POWER: HeightPowerCalibration(*args),
            CalibrationAxis.WIDTH_POWER: WidthPowerCalibration(*args),
            CalibrationAxis.WIDTH: WidthCalibration(*args),
        }

    @property
    def config(self) -> CalibrationConfig:
        return self._config

    @property
    def microscope(self) -> LightSheetMicroscope:
        return self._microscope

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def result(self) -> bool | None:
        """Outcome of the last background run, None while running or never started."""
        return self._result

    @property
    def progress(self) -> float:
        return self._progress_value

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def is_stop_requested(self) -> bool:
        return self._stop_evt.is_set() or self._cancel.cancelled

    # Background execution

    def start(self) -> bool:
        """Run `calibrate()` on a background thread.

        Refused, with a warning, while another task holds the microscope.
        """

        if not self._microscope.claim_task(self):
            logger.warning("Cannot start calibration: microscope is busy with %r", self._microscope.current_task)
            return False
        with self._lock:
            self._stop_evt.clear()
            self._last_error = None
            self._result = None
            self._thread = threading.Thread(target=self._run, name="calibration", daemon=True)
            self._thread.start()
        return True

    def _run(self) -> None:
        try:
            self._result = self.calibrate()
        except Exception as exc:
            logger.exception("Calibration run failed")
            self._last_error = exc
            self._result = False
        finally:
            self._microscope.release_task(self)

    def stop(self, *, wait: bool = True, timeout_s: float | None = None) -> None:
        self._stop_evt.set()
        if wait:
            self.join(timeout_s)

    def join(self, timeout_s: float | None = None) -> None:
        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout_s)

    # Calibration sequence

    def _enabled_light_sheets(self) -> list[int]:
        return [
            l for l in range(self._microscope.number_of_light_sheets) if self._config.is_light_sheet_enabled(l)
        ]

    def _planned_steps(self) -> list[CalibrationAxis]:
        cfg = self._config
        steps = []
        if cfg.calibrate_z:
            steps.append(CalibrationAxis.Z)
        if cfg.calibrate_angle:
            steps.append(CalibrationAxis.ANGLE)
        if cfg.calibrate_xy:
            steps.append(CalibrationAxis.XY)
        if cfg.calibrate_power:
            steps.append(CalibrationAxis.POWER)
        if (cfg.calibrate_angle or cfg.calibrate_xy) and cfg.calibrate_z:
            steps.append(CalibrationAxis.Z)
        if cfg.calibrate_power:
            steps.append(CalibrationAxis.POWER)
        if cfg.calibrate_height_power:
            steps.append(CalibrationAxis.HEIGHT_POWER)
        if cfg.calibrate_width_power:
            steps.append(CalibrationAxis.WIDTH_POWER)
        if cfg.calibrate_width:
            steps.append(CalibrationAxis.WIDTH)
        return steps

    def _set_progress(self, value: float) -> None:
        value = max(self._progress_value, min(1.0, value))
        self._progress_value = value
        if self._on_progress is not None:
            self._on_progress(value)

    def _unit_done(self) -> None:
        self._completed_units += 1
        self._set_progress(self._completed_units / self._total_units)

    def calibrate(self) -> bool:
        """Run the enabled calibration steps in their fixed order.

        Returns True when the sequence finished, False when a step failed or
        a stop was requested.
        """

        steps = self._planned_steps()
        n_light_sheets = len(self._enabled_light_sheets())
        self._total_units = max(1, sum(n_light_sheets if axis.per_light_sheet else 1 for axis in steps))
        self._completed_units = 0
        self._progress_value = 0.0
        self._set_progress(0.0)

        cfg = self._config
        if cfg.calibrate_z and not self.calibrate_axis(CalibrationAxis.Z):
            return False
        if self.is_stop_requested():
            return False

        if cfg.calibrate_angle and not self.calibrate_axis(CalibrationAxis.ANGLE):
            return False
        if self.is_stop_requested():
            return False

        if cfg.calibrate_xy and not self.calibrate_axis(CalibrationAxis.XY):
            return False
        if self.is_stop_requested():
            return False

        if cfg.calibrate_power and not self.calibrate_axis(CalibrationAxis.POWER):
            return False
        if self.is_stop_requested():
            return False

        # Angle and XY moves shift the beam relative to the focal plane.
        if (cfg.calibrate_angle or cfg.calibrate_xy) and cfg.calibrate_z:
            if not self.calibrate_axis(CalibrationAxis.Z):
                return False
        if self.is_stop_requested():
            return False

        if cfg.calibrate_power and not self.calibrate_axis(CalibrationAxis.POWER):
            # Only a stop aborts here; a failed second power pass is tolerated.
            if self.is_stop_requested():
                return False

        for axis, enabled in (
            (CalibrationAxis.HEIGHT_POWER, cfg.calibrate_height_power),
            (CalibrationAxis.WIDTH_POWER, cfg.calibrate_width_power),
            (CalibrationAxis.WIDTH, cfg.calibrate_width),
        ):
            if enabled and not self.calibrate_axis(axis):
                return False
            if self.is_stop_requested():
                return False

        self._set_progress(1.0)
        return True

    def calibrate_axis(self, axis: CalibrationAxis) -> bool:
        """Run the loop of one axis, once per enabled light sheet when per light sheet."""

        if not axis.per_light_sheet:
            ok = self.run_axis(axis)
            self._unit_done()
            return ok

        for l in self._enabled_light_sheets():
            if self.is_stop_requested():
                return False
            if not self.run_axis(axis, l):
                return False
            self._unit_done()
        return True

    def threshold(self, axis: CalibrationAxis) -> float:
        cfg = self._config
        return {
            CalibrationAxis.Z: cfg.z_threshold,
            CalibrationAxis.ANGLE: cfg.angle_threshold,
            CalibrationAxis.XY: cfg.xy_threshold,
            CalibrationAxis.POWER: cfg.power_threshold,
            CalibrationAxis.WIDTH: cfg.width_threshold,
            # Power ratio fits report no residual: one pass.
            CalibrationAxis.HEIGHT_POWER: math.inf,
            CalibrationAxis.WIDTH_POWER: math.inf,
        }[axis]

    def params_for(self, axis: CalibrationAxis, light_sheet_index: int | None, iteration: int) -> Any:
        cfg = self._config
        d = cfg.detection_arm_index
        l = 0 if light_sheet_index is None else light_sheet_index
        if axis is CalibrationAxis.Z:
            return ZParams(
                light_sheet_index=l,
                n_detection_samples=cfg.z_samples,
                n_illumination_samples=cfg.z_samples,
                restricted_search=iteration > 0,
                search_amplitude=search_amplitude(iteration),
                adjust_detection_z=l == 0,
            )
        if axis is CalibrationAxis.ANGLE:
            return AngleParams(l, cfg.angle_samples, cfg.angle_repeats)
        if axis is CalibrationAxis.XY:
            return XYParams(l, d, cfg.xy_points)
        if axis is CalibrationAxis.POWER:
            return PowerParams(d, cfg.power_repeats, tuple(self._enabled_light_sheets()))
        if axis in (CalibrationAxis.HEIGHT_POWER, CalibrationAxis.WIDTH_POWER):
            return PowerRatioParams(l, d, cfg.power_ratio_geometry_samples, cfg.power_ratio_power_samples)
        return WidthParams(d, cfg.width_samples)

    def run_axis(self, axis: CalibrationAxis, light_sheet_index: int | None = None) -> bool:
        """Calibrate-apply loop of one axis.

        Hitting the iteration cap is not a failure. Returns False on a failed
        acquisition or a stop request.
        """

        if self.is_stop_requested():
            return False

        module = self.modules[axis]
        threshold = self.threshold(axis)
        iteration = 0
        error = math.inf
        while error >= threshold and iteration < self._config.max_iterations:
            params = self.params_for(axis, light_sheet_index, iteration)
            if not module.calibrate(params):
                logger.error("axis=%s light_sheet=%s iteration=%d calibration failed", axis.value, light_sheet_index, iteration)
                return False
            error = module.apply(params)
            logger.info(
                "axis=%s light_sheet=%s iteration=%d error=%.4g", axis.value, light_sheet_index, iteration, error
            )
            iteration += 1
            if self.is_stop_requested():
                return False
        return True

    # Module state

    def reset(self) -> None:
        for module in self.modules.values():
            module.reset()
        self._positioners.clear()
        self._microscope.reset_functions()

    @property
    def xy(self) -> XYCalibration:
        return self._xy

    def positioners(self) -> dict[tuple[int, int], LightSheetPositioner]:
        """Positioners for every (light sheet, detection arm) with a published transform.

        Rebuilt on each call so that a repeated XY calibration replaces older ones.
        """

        for key, matrix in self.xy.transform_matrices.items():
            self._positioners[key] = LightSheetPositioner(matrix)
        return dict(self._positioners)

    def get_positioner(self, light_sheet_index: int, detection_arm_index: int) -> LightSheetPositioner | None:
        return self.positioners().get((light_sheet_index, detection_arm_index))

    def set_positioner(self, light_sheet_index: int, detection_arm_index: int, positioner: LightSheetPositioner) -> None:
        self.xy.set_transform_matrix(light_sheet_index, detection_arm_index, positioner.matrix)
        self._positioners[(light_sheet_index, detection_arm_index)] = positioner

    # Persistence

    def _path(self, name: str | None) -> Path:
        return Path(self._config.calibration_folder) / f"{name or self._config.calibration_name}.json"

    def save(self, name: str | None = None) -> Path:
        data = CalibrationData.from_microscope(self._microscope, self.xy.transform_matrices)
        path = self._path(name)
        save_calibration(path, data)
        logger.info("Saved calibration to %s", path)
        return path

    def load(self, name: str | None = None) -> bool:
        path = self._path(name)
        if not path.exists():
            logger.warning("No calibration named %r in %s", name or self._config.calibration_name, path.parent)
            return False
        data = load_calibration(path)
        data.apply_to(self._microscope)
        self._positioners.clear()
        for (l, d), matrix in data.transform_matrices.items():
            self.xy.set_transform_matrix(l, d, matrix)
        logger.info("Loaded calibration from %s", path)
        return True
