from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from .functions import AffineFunction, PolynomialFunction
from .interfaces import AcquisitionGateway


@dataclass(slots=True)
class BoundedSetting:
    """Numeric device setting with hard limits and an optional granularity."""

    value: float = 0.0
    min: float = -1.0
    max: float = 1.0
    granularity: float = 0.0

    def __post_init__(self) -> None:
        if self.max < self.min:
            raise ValueError("max must be >= min")
        if self.granularity < 0:
            raise ValueError("granularity must be >= 0")
        self.value = self.clamp(self.value)

    @property
    def span(self) -> float:
        return self.max - self.min

    @property
    def center(self) -> float:
        return 0.5 * (self.min + self.max)

    def clamp(self, value: float) -> float:
        value = max(self.min, min(self.max, float(value)))
        if self.granularity > 0:
            value = self.min + round((value - self.min) / self.granularity) * self.granularity
            value = max(self.min, min(self.max, value))
        return value

    def set(self, value: float) -> float:
        self.value = self.clamp(value)
        return self.value

    def set_min_max(self, min_value: float, max_value: float) -> None:
        if max_value < min_value:
            raise ValueError("max must be >= min")
        self.min = float(min_value)
        self.max = float(max_value)
        self.value = self.clamp(self.value)


@dataclass(slots=True)
class LightSheet:
    """Control model of one illumination path."""

    index: int
    x: BoundedSetting = field(default_factory=BoundedSetting)
    y: BoundedSetting = field(default_factory=BoundedSetting)
    z: BoundedSetting = field(default_factory=BoundedSetting)
    alpha: BoundedSetting = field(default_factory=lambda: BoundedSetting(0.0, -5.0, 5.0))
    width: BoundedSetting = field(default_factory=lambda: BoundedSetting(0.0, 0.0, 1.0))
    height: BoundedSetting = field(default_factory=lambda: BoundedSetting(1.0, 0.0, 1.0))
    power: BoundedSetting = field(default_factory=lambda: BoundedSetting(0.5, 0.0, 1.0))
    x_function: AffineFunction = field(default_factory=AffineFunction.identity)
    y_function: AffineFunction = field(default_factory=AffineFunction.identity)
    z_function: AffineFunction = field(default_factory=AffineFunction.identity)
    alpha_function: AffineFunction = field(default_factory=AffineFunction.identity)
    width_function: AffineFunction = field(default_factory=AffineFunction.identity)
    height_function: AffineFunction = field(default_factory=AffineFunction.identity)
    power_function: AffineFunction = field(default_factory=AffineFunction.identity)
    width_power_function: PolynomialFunction = field(default_factory=PolynomialFunction.constant)
    height_power_function: PolynomialFunction = field(default_factory=PolynomialFunction.constant)
    adapt_power_to_width_height: bool = True

    def effective_power(self, power: float, width: float, height: float) -> float:
        """Laser power sent to the hardware for the given control values."""

        value = self.power_function(power)
        if self.adapt_power_to_width_height:
            value *= self.width_power_function(width) * self.height_power_function(height)
        return value

    def reset_functions(self) -> None:
        for name in AFFINE_FUNCTION_NAMES:
            setattr(self, name, AffineFunction.identity())
        self.width_power_function = PolynomialFunction.constant()
        self.height_power_function = PolynomialFunction.constant()


AFFINE_FUNCTION_NAMES = (
    "x_function",
    "y_function",
    "z_function",
    "alpha_function",
    "width_function",
    "height_function",
    "power_function",
)


@dataclass(slots=True)
class DetectionArm:
    """Control model of one camera path."""

    index: int
    z: BoundedSetting = field(default_factory=BoundedSetting)
    z_function: AffineFunction = field(default_factory=AffineFunction.identity)

    def reset_functions(self) -> None:
        self.z_function = AffineFunction.identity()


class LightSheetMicroscope:
    """Device inventory plus the single task slot shared by calibration and adaptation."""

    def __init__(
        self,
        gateway: AcquisitionGateway,
        light_sheets: list[LightSheet],
        detection_arms: list[DetectionArm],
    ) -> None:
        if not light_sheets:
            raise ValueError("At least one light sheet is required")
        if not detection_arms:
            raise ValueError("At least one detection arm is required")
        self.gateway = gateway
        self.light_sheets = light_sheets
        self.detection_arms = detection_arms
        self._task_lock = threading.Lock()
        self._current_task: Any | None = None

    @property
    def number_of_light_sheets(self) -> int:
        return len(self.light_sheets)

    @property
    def number_of_detection_arms(self) -> int:
        return len(self.detection_arms)

    @property
    def current_task(self) -> Any | None:
        with self._task_lock:
            return self._current_task

    def claim_task(self, owner: Any) -> bool:
        with self._task_lock:
            if self._current_task is not None:
                return False
            self._current_task = owner
            return True

    def release_task(self, owner: Any) -> None:
        with self._task_lock:
            if self._current_task is owner:
                self._current_task = None

    def reset_functions(self) -> None:
        for light_sheet in self.light_sheets:
            light_sheet.reset_functions()
        for arm in self.detection_arms:
            arm.reset_functions()
