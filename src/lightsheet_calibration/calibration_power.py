from __future__ import annotations

import logging
import math

import numpy as np

from .calibration_base import CalibrationAxis, CalibrationModule, PowerParams, PowerRatioParams
from .fitting import fit_polynomial, nearest_index
from .functions import AffineFunction, PolynomialFunction
from .metrics import percentile_intensity_per_plane, smooth

logger = logging.getLogger(__name__)


class PowerCalibration(CalibrationModule):
    """Equalizes the brightness of the selected light sheets to that of the first one.

    By default every light sheet is selected, so light sheet 0 is the reference.
    """

    axis = CalibrationAxis.POWER

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._intensities: dict[int, float] = {}

    def reset(self) -> None:
        self._intensities.clear()

    def intensity(self, light_sheet_index: int) -> float | None:
        return self._intensities.get(light_sheet_index)

    def _selected(self, params: PowerParams) -> list[int]:
        if params.light_sheet_indices is None:
            return list(range(self._microscope.number_of_light_sheets))
        return list(params.light_sheet_indices)

    def calibrate(self, params: PowerParams) -> bool:
        d = params.detection_arm_index
        self._check_detection_arm(d)
        if params.n_repeats < 1:
            raise ValueError("n_repeats must be >= 1")
        selected = self._selected(params)
        for l in selected:
            self._check_light_sheet(l)

        self._intensities.clear()
        for l in selected:
            queue = self._new_queue()
            for _ in range(params.n_repeats):
                queue.add_frame(self._frame(l))
            planes = self._acquire(queue)
            if planes is None or planes[d] is None:
                logger.error("Power calibration aborted while measuring light sheet %d", l)
                self._intensities.clear()
                return False
            self._intensities[l] = float(np.mean(percentile_intensity_per_plane(planes[d])))

        self._plot("P", f"D={d}", list(self._intensities), list(self._intensities.values()))
        return True

    def apply(self, params: PowerParams) -> float:
        selected = self._selected(params)
        if not selected or any(l not in self._intensities for l in selected):
            return math.inf
        reference = self._intensities[selected[0]]
        if reference <= 0 or any(self._intensities[l] <= 0 for l in selected):
            logger.error("Power calibration measured a non-positive intensity")
            return math.inf

        errors = []
        for l in selected:
            intensity = self._intensities[l]
            ratio = reference / intensity
            self._microscope.light_sheets[l].power_function.compose_with(AffineFunction(ratio, 0.0))
            errors.append(abs(1.0 - intensity / reference))
        return float(np.mean(errors))


class PowerRatioCalibration(CalibrationModule):
    """Finds the power needed to keep brightness constant as a beam dimension changes.

    The brightness at maximum power and maximum extent is the target. For
    each sampled extent a power sweep picks the power whose brightness is
    nearest the target; a quadratic fit of power ratio versus extent becomes
    the light sheet's power compensation function.
    """

    # Light-sheet setting that is varied and the polynomial it calibrates.
    geometry: str
    function_name: str

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._functions: dict[tuple[int, int], PolynomialFunction] = {}

    def reset(self) -> None:
        self._functions.clear()

    def function(self, light_sheet_index: int, detection_arm_index: int) -> PolynomialFunction | None:
        return self._functions.get((light_sheet_index, detection_arm_index))

    def calibrate(self, params: PowerRatioParams) -> bool:
        l, d = params.light_sheet_index, params.detection_arm_index
        self._check_light_sheet(l)
        self._check_detection_arm(d)
        if params.n_samples_geometry < 3 or params.n_samples_power < 2:
            raise ValueError("Power ratio calibration needs >= 3 geometry and >= 2 power samples")

        ls = self._microscope.light_sheets[l]
        adapt = ls.adapt_power_to_width_height
        ls.adapt_power_to_width_height = False
        try:
            power = ls.power
            geometry = getattr(ls, self.geometry)
            reference_power = power.max

            reference_intensity = self._adjust_power(
                l, d, reference_power, reference_power, params.n_samples_power, geometry.max, None
            )
            if reference_intensity is None:
                return False

            extents = np.linspace(geometry.min, geometry.max, params.n_samples_geometry)
            ratios = []
            for extent in extents:
                selected = self._adjust_power(
                    l, d, power.min, power.max, params.n_samples_power, float(extent), reference_intensity
                )
                if selected is None:
                    return False
                ratios.append(selected / reference_power)
        finally:
            ls.adapt_power_to_width_height = adapt

        function = fit_polynomial(extents, ratios, 2)
        self._functions[(l, d)] = function

        chart = f"{self.name} L={l} D={d}"
        self._configure_chart(chart, "samples", self.geometry, "power ratio")
        self._configure_chart(chart, "fit", self.geometry, "power ratio")
        self._plot(chart, "samples", extents, ratios)
        self._plot(chart, "fit", extents, [function(e) for e in extents])
        return True

    def _adjust_power(
        self,
        l: int,
        d: int,
        min_power: float,
        max_power: float,
        n_samples: int,
        extent: float,
        target_intensity: float | None,
    ) -> float | None:
        """Sweep power at one extent.

        Returns the median brightness when `target_intensity` is None,
        otherwise the sampled power whose brightness is nearest the target.
        """

        step = (max_power - min_power) / n_samples
        powers = [min_power + i * step for i in range(n_samples)]

        queue = self._new_queue()
        queue.add_frame(self._frame(l, power=min_power, capture=False, **{self.geometry: extent}))
        for p in powers:
            queue.add_frame(self._frame(l, power=p, **{self.geometry: extent}))
        queue.add_frame(self._frame(l, power=min_power, capture=False, **{self.geometry: extent}))

        planes = self._acquire(queue)
        if planes is None or planes[d] is None:
            logger.error("%s power sweep of light sheet %d failed at %s=%.4g", self.name, l, self.geometry, extent)
            return None

        intensities = smooth(percentile_intensity_per_plane(planes[d]), 1)
        mode = "intensity" if target_intensity is None else "power"
        self._plot(f"{self.name} L={l} D={d} {self.geometry}={extent:.3g}", mode, powers, intensities)

        if target_intensity is None:
            return float(np.median(intensities))
        return powers[nearest_index(intensities, target_intensity)]

    def apply(self, params: PowerRatioParams) -> float:
        l, d = params.light_sheet_index, params.detection_arm_index
        self._check_light_sheet(l)
        function = self._functions.get((l, d))
        if function is None:
            return math.inf
        setattr(self._microscope.light_sheets[l], self.function_name, PolynomialFunction(list(function.coefficients)))
        return 0.0


class HeightPowerCalibration(PowerRatioCalibration):
    axis = CalibrationAxis.HEIGHT_POWER
    geometry = "height"
    function_name = "height_power_function"


class WidthPowerCalibration(PowerRatioCalibration):
    axis = CalibrationAxis.WIDTH_POWER
    geometry = "width"
    function_name = "width_power_function"
