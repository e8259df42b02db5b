from __future__ import annotations

import logging
import math

import numpy as np

from .calibration_base import CalibrationAxis, CalibrationModule, WidthParams
from .fitting import FitResult, fit_result
from .functions import AffineFunction
from .metrics import dcts_per_plane

logger = logging.getLogger(__name__)


class WidthCalibration(CalibrationModule):
    """Centres the width range of all light sheets on their sharpest width."""

    axis = CalibrationAxis.WIDTH

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._result: FitResult | None = None

    def reset(self) -> None:
        self._result = None

    @property
    def result(self) -> FitResult | None:
        return self._result

    def calibrate(self, params: WidthParams) -> bool:
        d = params.detection_arm_index
        self._check_detection_arm(d)
        if params.n_samples < 3:
            raise ValueError("Width calibration needs >= 3 samples")

        width = self._microscope.light_sheets[0].width
        widths = np.linspace(width.min, width.max, params.n_samples)
        curves = []
        for l in range(self._microscope.number_of_light_sheets):
            queue = self._new_queue()
            for w in widths:
                queue.add_frame(self._frame(l, width=float(w)))
            planes = self._acquire(queue)
            if planes is None or planes[d] is None:
                logger.error("Width calibration aborted while sweeping light sheet %d", l)
                self._result = None
                return False
            metrics = dcts_per_plane(planes[d])
            self._plot(f"W D={d}", f"L={l}", widths, metrics)
            curves.append(metrics)

        self._result = fit_result(widths, np.mean(curves, axis=0))
        return True

    def apply(self, params: WidthParams) -> float:
        if self._result is None or not self._result.is_usable:
            return math.inf

        width = self._microscope.light_sheets[0].width
        shift = self._result.argmax - width.center
        for ls in self._microscope.light_sheets:
            ls.width_function.compose_with(AffineFunction(1.0, shift))
        return abs(shift) / width.span if width.span > 0 else abs(shift)
