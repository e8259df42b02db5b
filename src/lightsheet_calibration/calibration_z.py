from __future__ import annotations

import logging
import math

import numpy as np

from .calibration_base import CalibrationAxis, CalibrationModule, ZParams
from .fitting import fit_line, fit_result
from .functions import AffineFunction
from .metrics import dcts_per_plane

logger = logging.getLogger(__name__)


class ZCalibration(CalibrationModule):
    """Aligns illumination Z with the focal plane of the detection arms.

    For a set of illumination positions the detection Z is swept and the
    sharpest plane located. A line `best_dz = a * iz + b` is fitted per
    (light sheet, detection arm); a perfectly aligned system has a = 1, b = 0.
    """

    axis = CalibrationAxis.Z

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._models: dict[tuple[int, int], tuple[float, float]] = {}

    def reset(self) -> None:
        self._models.clear()

    def model(self, light_sheet_index: int, detection_arm_index: int) -> tuple[float, float] | None:
        return self._models.get((light_sheet_index, detection_arm_index))

    def _detection_sweep(self, iz: float, params: ZParams) -> np.ndarray:
        # Detection arms share one sweep; arm 0 defines its bounds.
        dz_setting = self._microscope.detection_arms[0].z
        center = iz if params.restricted_search else dz_setting.center
        half_width = params.search_amplitude * dz_setting.span
        low = max(dz_setting.min, center - half_width)
        high = min(dz_setting.max, center + half_width)
        if high <= low:
            low, high = dz_setting.min, dz_setting.max
        return np.linspace(low, high, params.n_detection_samples)

    def calibrate(self, params: ZParams) -> bool:
        l = params.light_sheet_index
        self._check_light_sheet(l)
        if params.n_detection_samples < 3 or params.n_illumination_samples < 2:
            raise ValueError("Z calibration needs >= 3 detection and >= 2 illumination samples")

        z_setting = self._microscope.light_sheets[l].z
        quarter = 0.25 * z_setting.span
        iz_values = np.linspace(z_setting.min + quarter, z_setting.max - quarter, params.n_illumination_samples)
        n_arms = self._microscope.number_of_detection_arms

        best: dict[int, list[tuple[float, float]]] = {d: [] for d in range(n_arms)}
        for iz in iz_values:
            dz_values = self._detection_sweep(float(iz), params)
            queue = self._new_queue()
            for dz in dz_values:
                queue.add_frame(self._frame(l, z=float(iz), detection_z=(float(dz),) * n_arms))

            planes = self._acquire(queue)
            if planes is None:
                logger.error("Z calibration of light sheet %d aborted at iz=%.4g", l, iz)
                return False

            for d, arm_planes in enumerate(planes):
                if arm_planes is None:
                    continue
                metrics = dcts_per_plane(arm_planes)
                chart = f"Z L={l} D={d}"
                self._configure_chart(chart, f"iz={iz:.3g}", "DZ", "focus metric")
                self._plot(chart, f"iz={iz:.3g}", dz_values, metrics)
                result = fit_result(dz_values, metrics)
                if result.is_usable:
                    best[d].append((float(iz), result.argmax))
                else:
                    logger.debug("No focus peak for light sheet %d, arm %d at iz=%.4g", l, d, iz)

        for d, samples in best.items():
            if len(samples) < 2:
                logger.warning("Not enough focus peaks to model light sheet %d, arm %d", l, d)
                self._models.pop((l, d), None)
                continue
            ivals, dvals = zip(*samples)
            try:
                self._models[(l, d)] = fit_line(ivals, dvals)
            except ValueError as exc:
                logger.warning("Z model fit failed for light sheet %d, arm %d: %s", l, d, exc)
                self._models.pop((l, d), None)
        return True

    def apply(self, params: ZParams) -> float:
        l = params.light_sheet_index
        self._check_light_sheet(l)
        reference = self._models.get((l, 0))
        if reference is None:
            return math.inf
        a0, b0 = reference
        if a0 == 0.0:
            return math.inf

        ls = self._microscope.light_sheets[l]
        ls.z_function.compose_with(AffineFunction(1.0 / a0, -b0 / a0))
        error = abs(b0) + abs(a0 - 1.0)

        if params.adjust_detection_z:
            for d in range(1, self._microscope.number_of_detection_arms):
                model = self._models.get((l, d))
                if model is None:
                    continue
                a, b = model
                arm = self._microscope.detection_arms[d]
                arm.z_function.compose_with(AffineFunction(a / a0, b - a * b0 / a0))
                error += abs(b - b0) + abs(a - a0)

        logger.debug("Z model for light sheet %d: a=%.4g b=%.4g", l, a0, b0)
        return error
