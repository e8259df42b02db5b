from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any


class ExecutionMode(enum.Enum):
    """Whether metric tasks of successive grid points may overlap."""

    SERIAL = "serial"
    CONCURRENT = "concurrent"


@dataclass(slots=True)
class AcquisitionConfig:
    # Queue timeout budget: base + per-frame allowance * number of frames.
    base_timeout_s: float = 10.0
    per_frame_timeout_s: float = 1.0
    # Maximum number of duplicated stacks held by in-flight metric tasks.
    recycler_capacity: int = 8
    # None blocks until a buffer is freed.
    recycler_timeout_s: float | None = None
    exposure_s: float = 0.01
    transition_time_s: float = 0.1
    # Warm-up frames played before the captured one when probing beam position.
    pre_images: int = 6

    def __post_init__(self) -> None:
        if self.base_timeout_s < 0:
            raise ValueError("base_timeout_s must be >= 0")
        if self.per_frame_timeout_s < 0:
            raise ValueError("per_frame_timeout_s must be >= 0")
        if self.recycler_capacity < 1:
            raise ValueError("recycler_capacity must be >= 1")
        if self.recycler_timeout_s is not None and self.recycler_timeout_s <= 0:
            raise ValueError("recycler_timeout_s must be > 0 when provided")
        if self.exposure_s <= 0:
            raise ValueError("exposure_s must be > 0")
        if self.transition_time_s < 0:
            raise ValueError("transition_time_s must be >= 0")
        if self.pre_images < 1:
            raise ValueError("pre_images must be >= 1")

    def timeout_for(self, number_of_frames: int) -> float:
        return self.base_timeout_s + self.per_frame_timeout_s * number_of_frames


@dataclass(slots=True)
class CalibrationConfig:
    calibrate_z: bool = True
    calibrate_angle: bool = False
    calibrate_xy: bool = False
    calibrate_power: bool = False
    calibrate_height_power: bool = False
    calibrate_width_power: bool = False
    calibrate_width: bool = False
    # Per light sheet on/off toggles; None calibrates every light sheet.
    light_sheets: list[bool] | None = None
    max_iterations: int = 3
    z_threshold: float = 0.02
    angle_threshold: float = 0.5
    xy_threshold: float = 0.05
    power_threshold: float = 0.04
    width_threshold: float = 0.05
    z_samples: int = 13
    angle_samples: int = 32
    angle_repeats: int = 4
    xy_points: int = 3
    power_repeats: int = 4
    power_ratio_geometry_samples: int = 8
    power_ratio_power_samples: int = 16
    width_samples: int = 32
    detection_arm_index: int = 0
    calibration_folder: str = "calibration"
    calibration_name: str = "system"

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        for name in ("z_threshold", "angle_threshold", "xy_threshold", "power_threshold", "width_threshold"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        for name in ("z_samples", "angle_samples", "xy_points", "power_ratio_geometry_samples",
                     "power_ratio_power_samples", "width_samples"):
            if getattr(self, name) < 2:
                raise ValueError(f"{name} must be >= 2")
        if self.angle_repeats < 1:
            raise ValueError("angle_repeats must be >= 1")
        if self.power_repeats < 1:
            raise ValueError("power_repeats must be >= 1")
        if self.detection_arm_index < 0:
            raise ValueError("detection_arm_index must be >= 0")
        if not self.calibration_name:
            raise ValueError("calibration_name must not be empty")

    def is_light_sheet_enabled(self, light_sheet_index: int) -> bool:
        if self.light_sheets is None or light_sheet_index >= len(self.light_sheets):
            return True
        return bool(self.light_sheets[light_sheet_index])


@dataclass(slots=True)
class AdaptationConfig:
    number_of_samples: int = 9
    probability_threshold: float = 0.5
    metric_threshold: float = 0.0
    exposure_s: float = 0.05
    laser_power: float = 0.5
    # Half-width of the illumination Z sweep used by focus adaptation.
    focus_delta_z: float = 0.3
    max_workers: int = 2
    execution_mode: ExecutionMode = ExecutionMode.SERIAL
    relative_correction: bool = True
    flip_correction_sign: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.execution_mode, str):
            self.execution_mode = ExecutionMode(self.execution_mode)
        if self.number_of_samples < 3:
            raise ValueError("number_of_samples must be >= 3")
        if not 0.0 <= self.probability_threshold <= 1.0:
            raise ValueError("probability_threshold must be in [0.0, 1.0]")
        if self.metric_threshold < 0:
            raise ValueError("metric_threshold must be >= 0")
        if self.exposure_s <= 0:
            raise ValueError("exposure_s must be > 0")
        if not 0.0 <= self.laser_power <= 1.0:
            raise ValueError("laser_power must be in [0.0, 1.0]")
        if self.focus_delta_z <= 0:
            raise ValueError("focus_delta_z must be > 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")


@dataclass(slots=True)
class Settings:
    acquisition: AcquisitionConfig = field(default_factory=AcquisitionConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    adaptation: AdaptationConfig = field(default_factory=AdaptationConfig)


def _build_section(cls: type, data: Any, section: str) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"Config section '{section}' must be an object")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown keys in config section '{section}': {', '.join(unknown)}")
    return cls(**data)


def load_config_json(path: str | Path) -> Settings:
    """Read calibration settings from a JSON document with optional sections."""

    in_path = Path(path)
    with in_path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("Config document must be a JSON object")

    unknown = sorted(set(data) - {"acquisition", "calibration", "adaptation"})
    if unknown:
        raise ValueError(f"Unknown config sections: {', '.join(unknown)}")

    return Settings(
        acquisition=_build_section(AcquisitionConfig, data.get("acquisition", {}), "acquisition"),
        calibration=_build_section(CalibrationConfig, data.get("calibration", {}), "calibration"),
        adaptation=_build_section(AdaptationConfig, data.get("adaptation", {}), "adaptation"),
    )
