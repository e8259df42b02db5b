from __future__ import annotations

import numpy as np


class LightSheetPositioner:
    """Maps normalized sensor coordinates to light-sheet X/Y control values.

    `matrix` columns are the sensor displacements produced by a unit step of
    the X and Y controls, as measured by the XY calibration.
    """

    def __init__(self, matrix: np.ndarray) -> None:
        matrix = np.array(matrix, dtype=float)
        if matrix.shape != (2, 2):
            raise ValueError("Transform matrix must be 2x2")
        self._matrix = matrix
        self._inverse = np.linalg.inv(matrix)

    @property
    def matrix(self) -> np.ndarray:
        return self._matrix.copy()

    def to_control(self, sensor_x: float, sensor_y: float) -> tuple[float, float]:
        x, y = self._inverse @ np.array([sensor_x, sensor_y], dtype=float)
        return float(x), float(y)

    def to_sensor(self, control_x: float, control_y: float) -> tuple[float, float]:
        x, y = self._matrix @ np.array([control_x, control_y], dtype=float)
        return float(x), float(y)
