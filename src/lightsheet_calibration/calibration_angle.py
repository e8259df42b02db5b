from __future__ import annotations

import logging
import math

import numpy as np

from .calibration_base import AngleParams, CalibrationAxis, CalibrationModule
from .fitting import FitResult, fit_result
from .functions import AffineFunction
from .metrics import dcts_per_plane

logger = logging.getLogger(__name__)


class AngleCalibration(CalibrationModule):
    """Finds the alpha angle at which a light sheet lies flat in the focal plane."""

    axis = CalibrationAxis.ANGLE

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._results: dict[int, FitResult] = {}

    def reset(self) -> None:
        self._results.clear()

    def result(self, light_sheet_index: int) -> FitResult | None:
        return self._results.get(light_sheet_index)

    def calibrate(self, params: AngleParams) -> bool:
        l = params.light_sheet_index
        self._check_light_sheet(l)
        if params.n_angles < 3 or params.n_repeats < 1:
            raise ValueError("Angle calibration needs >= 3 angles and >= 1 repeat")

        alpha = self._microscope.light_sheets[l].alpha
        angles = np.linspace(alpha.min, alpha.max, params.n_angles)
        queue = self._new_queue()
        for angle in angles:
            for _ in range(params.n_repeats):
                queue.add_frame(self._frame(l, alpha=float(angle)))

        planes = self._acquire(queue)
        if planes is None:
            logger.error("Angle calibration of light sheet %d aborted", l)
            self._results.pop(l, None)
            return False

        per_arm = []
        for d, arm_planes in enumerate(planes):
            if arm_planes is None:
                continue
            metrics = dcts_per_plane(arm_planes).reshape(params.n_angles, params.n_repeats).mean(axis=1)
            self._configure_chart(f"A L={l}", f"D={d}", "alpha", "focus metric")
            self._plot(f"A L={l}", f"D={d}", angles, metrics)
            per_arm.append(metrics)

        if not per_arm:
            self._results[l] = FitResult.unfit()
            return True
        averaged = np.mean(per_arm, axis=0)
        self._results[l] = fit_result(angles, averaged)
        return True

    def apply(self, params: AngleParams) -> float:
        l = params.light_sheet_index
        self._check_light_sheet(l)
        result = self._results.get(l)
        if result is None or not result.is_usable:
            return math.inf

        ls = self._microscope.light_sheets[l]
        ls.alpha_function.compose_with(AffineFunction(1.0, result.argmax))
        return abs(result.argmax)
