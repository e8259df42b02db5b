from __future__ import annotations

import enum
from dataclasses import dataclass, field

import numpy as np

from .layout import ControlPlaneLayout


class LightSheetDOF(enum.Enum):
    """Light-sheet degrees of freedom held in the interpolation tables."""

    IX = "IX"
    IY = "IY"
    IZ = "IZ"
    IA = "IA"
    IW = "IW"
    IH = "IH"
    IP = "IP"


class InterpolationTables:
    """Per-DOF correction values at every (control plane, light sheet)."""

    def __init__(self, number_of_control_planes: int, number_of_light_sheets: int) -> None:
        if number_of_control_planes < 2:
            raise ValueError("number_of_control_planes must be >= 2")
        if number_of_light_sheets < 1:
            raise ValueError("number_of_light_sheets must be >= 1")
        self._number_of_control_planes = number_of_control_planes
        self._number_of_light_sheets = number_of_light_sheets
        self._tables = {
            dof: np.zeros((number_of_control_planes, number_of_light_sheets), dtype=float)
            for dof in LightSheetDOF
        }

    @property
    def number_of_control_planes(self) -> int:
        return self._number_of_control_planes

    @property
    def number_of_light_sheets(self) -> int:
        return self._number_of_light_sheets

    def _check(self, control_plane_index: int, light_sheet_index: int) -> None:
        if not 0 <= control_plane_index < self._number_of_control_planes:
            raise IndexError(f"Control plane index {control_plane_index} out of range")
        if not 0 <= light_sheet_index < self._number_of_light_sheets:
            raise IndexError(f"Light sheet index {light_sheet_index} out of range")

    def get(self, dof: LightSheetDOF, control_plane_index: int, light_sheet_index: int) -> float:
        self._check(control_plane_index, light_sheet_index)
        return float(self._tables[dof][control_plane_index, light_sheet_index])

    def set(self, dof: LightSheetDOF, control_plane_index: int, light_sheet_index: int, value: float) -> None:
        self._check(control_plane_index, light_sheet_index)
        self._tables[dof][control_plane_index, light_sheet_index] = float(value)

    def add(self, dof: LightSheetDOF, control_plane_index: int, light_sheet_index: int, delta: float) -> None:
        self._check(control_plane_index, light_sheet_index)
        self._tables[dof][control_plane_index, light_sheet_index] += float(delta)

    def table(self, dof: LightSheetDOF) -> np.ndarray:
        return self._tables[dof].copy()

    def reset(self) -> None:
        for table in self._tables.values():
            table.fill(0.0)


@dataclass(slots=True)
class AcquisitionState:
    """Interpolation tables plus the detection-Z layout of the control planes."""

    tables: InterpolationTables
    number_of_detection_arms: int = 1
    layout: ControlPlaneLayout = ControlPlaneLayout.LINEAR
    z_min: float = -1.0
    z_max: float = 1.0
    metadata: dict[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.number_of_detection_arms < 1:
            raise ValueError("number_of_detection_arms must be >= 1")
        if self.z_max <= self.z_min:
            raise ValueError("z_max must be greater than z_min")

    @property
    def number_of_control_planes(self) -> int:
        return self.tables.number_of_control_planes

    @property
    def number_of_light_sheets(self) -> int:
        return self.tables.number_of_light_sheets

    def control_plane_z(self, control_plane_index: int) -> float:
        fraction = self.layout.layout(self.number_of_control_planes, control_plane_index)
        return self.z_min + fraction * (self.z_max - self.z_min)
