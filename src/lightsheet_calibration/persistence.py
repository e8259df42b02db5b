from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from .devices import AFFINE_FUNCTION_NAMES, LightSheetMicroscope
from .functions import AffineFunction, PolynomialFunction

FORMAT_VERSION = 1


def positioner_key(light_sheet_index: int, detection_arm_index: int) -> str:
    return f"i{light_sheet_index}d{detection_arm_index}"


def _parse_positioner_key(key: str) -> tuple[int, int]:
    if not key.startswith("i") or "d" not in key:
        raise ValueError(f"Malformed positioner key: {key!r}")
    l, d = key[1:].split("d", 1)
    return int(l), int(d)


@dataclass(slots=True)
class CalibrationData:
    """Snapshot of every calibration function and transform of a microscope."""

    light_sheets: list[dict[str, Any]] = field(default_factory=list)
    detection_arms: list[dict[str, Any]] = field(default_factory=list)
    transform_matrices: dict[tuple[int, int], np.ndarray] = field(default_factory=dict)

    @classmethod
    def from_microscope(
        cls,
        microscope: LightSheetMicroscope,
        transform_matrices: dict[tuple[int, int], np.ndarray] | None = None,
    ) -> "CalibrationData":
        light_sheets = []
        for ls in microscope.light_sheets:
            entry: dict[str, Any] = {name: getattr(ls, name).to_dict() for name in AFFINE_FUNCTION_NAMES}
            entry["width_power_function"] = ls.width_power_function.to_dict()
            entry["height_power_function"] = ls.height_power_function.to_dict()
            entry["adapt_power_to_width_height"] = ls.adapt_power_to_width_height
            light_sheets.append(entry)
        detection_arms = [{"z_function": arm.z_function.to_dict()} for arm in microscope.detection_arms]
        matrices = {key: np.array(m, dtype=float) for key, m in (transform_matrices or {}).items()}
        return cls(light_sheets, detection_arms, matrices)

    def apply_to(self, microscope: LightSheetMicroscope) -> None:
        if len(self.light_sheets) != microscope.number_of_light_sheets:
            raise ValueError(
                f"Calibration holds {len(self.light_sheets)} light sheets,"
                f" microscope has {microscope.number_of_light_sheets}"
            )
        if len(self.detection_arms) != microscope.number_of_detection_arms:
            raise ValueError(
                f"Calibration holds {len(self.detection_arms)} detection arms,"
                f" microscope has {microscope.number_of_detection_arms}"
            )
        for ls, entry in zip(microscope.light_sheets, self.light_sheets):
            for name in AFFINE_FUNCTION_NAMES:
                setattr(ls, name, AffineFunction.from_dict(entry[name]))
            ls.width_power_function = PolynomialFunction.from_dict(entry["width_power_function"])
            ls.height_power_function = PolynomialFunction.from_dict(entry["height_power_function"])
            ls.adapt_power_to_width_height = bool(entry.get("adapt_power_to_width_height", True))
        for arm, entry in zip(microscope.detection_arms, self.detection_arms):
            arm.z_function = AffineFunction.from_dict(entry["z_function"])

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": FORMAT_VERSION,
            "light_sheets": self.light_sheets,
            "detection_arms": self.detection_arms,
            "positioners": {
                positioner_key(l, d): matrix.tolist() for (l, d), matrix in sorted(self.transform_matrices.items())
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalibrationData":
        version = data.get("version", FORMAT_VERSION)
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported calibration format version: {version}")
        matrices = {}
        for key, rows in data.get("positioners", {}).items():
            matrix = np.array(rows, dtype=float)
            if matrix.shape != (2, 2):
                raise ValueError(f"Positioner {key} is not a 2x2 matrix")
            matrices[_parse_positioner_key(key)] = matrix
        return cls(
            light_sheets=list(data.get("light_sheets", [])),
            detection_arms=list(data.get("detection_arms", [])),
            transform_matrices=matrices,
        )


def save_calibration(path: str | Path, data: CalibrationData) -> None:
    """Write a calibration record as JSON; floats round-trip exactly."""

    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(data.to_dict(), f, indent=2)


def load_calibration(path: str | Path) -> CalibrationData:
    in_path = Path(path)
    with in_path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("Calibration document must be a JSON object")
    return CalibrationData.from_dict(data)
