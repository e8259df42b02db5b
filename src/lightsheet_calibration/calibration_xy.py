from __future__ import annotations

import logging
import math

import numpy as np

from .calibration_base import CalibrationAxis, CalibrationModule, XYParams
from .functions import AffineFunction
from .metrics import normalized_centroid

logger = logging.getLogger(__name__)


class XYCalibration(CalibrationModule):
    """Measures how light-sheet X/Y commands move the beam on the sensor.

    Each control is probed on its own: the beam centroid at 0 gives an
    origin, the centroid displacement between +f and -f gives a unit
    vector. The two unit vectors form the 2x2 transform matrix of the pair
    (light sheet, detection arm).
    """

    axis = CalibrationAxis.XY

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._origins: dict[tuple[int, int, str], np.ndarray] = {}
        self._unit_vectors: dict[tuple[int, int, str], np.ndarray] = {}
        self._matrices: dict[tuple[int, int], np.ndarray] = {}

    def reset(self) -> None:
        self._origins.clear()
        self._unit_vectors.clear()
        self._matrices.clear()

    @property
    def transform_matrices(self) -> dict[tuple[int, int], np.ndarray]:
        return {key: matrix.copy() for key, matrix in self._matrices.items()}

    def transform_matrix(self, light_sheet_index: int, detection_arm_index: int) -> np.ndarray | None:
        matrix = self._matrices.get((light_sheet_index, detection_arm_index))
        return None if matrix is None else matrix.copy()

    def set_transform_matrix(self, light_sheet_index: int, detection_arm_index: int, matrix: np.ndarray) -> None:
        matrix = np.array(matrix, dtype=float)
        if matrix.shape != (2, 2):
            raise ValueError("Transform matrix must be 2x2")
        self._matrices[(light_sheet_index, detection_arm_index)] = matrix

    def calibrate(self, params: XYParams) -> bool:
        l, d = params.light_sheet_index, params.detection_arm_index
        self._check_light_sheet(l)
        self._check_detection_arm(d)
        if params.n_points < 2:
            raise ValueError("XY calibration needs >= 2 points")

        probes = {}
        for axis_name in ("x", "y"):
            probe = self._probe(l, d, axis_name, params.n_points)
            if probe is None:
                return False
            probes[axis_name] = probe

        # Both probes completed: only now are their estimates recorded.
        for axis_name, (origin, unit_vector) in probes.items():
            self._origins[(l, d, axis_name)] = origin
            self._unit_vectors[(l, d, axis_name)] = unit_vector
        return True

    def _probe(self, l: int, d: int, axis_name: str, n_points: int) -> tuple[np.ndarray, np.ndarray] | None:
        setting = getattr(self._microscope.light_sheets[l], axis_name)
        m = min(abs(setting.min), abs(setting.max))
        if m == 0.0:
            logger.error("Light sheet %d %s range does not straddle zero", l, axis_name)
            return None

        origins = []
        unit_vectors = []
        for f in np.linspace(0.5 * m, 0.7 * m, n_points):
            centroids = {}
            for position in (0.0, float(f), float(-f)):
                centroid = self._centroid_at(l, d, axis_name, position)
                if centroid is None:
                    logger.error("XY probe of light sheet %d along %s failed at %.4g", l, axis_name, position)
                    return None
                centroids[position] = centroid
            origins.append(centroids[0.0])
            unit_vectors.append((centroids[float(f)] - centroids[float(-f)]) / (2.0 * f))

        origin = np.median(np.array(origins), axis=0)
        unit_vector = np.median(np.array(unit_vectors), axis=0)
        logger.debug("XY probe L=%d D=%d %s: origin=%s unit=%s", l, d, axis_name, origin, unit_vector)
        return origin, unit_vector

    def _centroid_at(self, l: int, d: int, axis_name: str, position: float) -> np.ndarray | None:
        other = "y" if axis_name == "x" else "x"
        queue = self._new_queue()
        n = self._acquisition.pre_images
        for i in range(n):
            # Only the last frame is captured; the others let the beam settle.
            queue.add_frame(self._frame(l, **{axis_name: position, other: 0.0, "capture": i == n - 1}))

        planes = self._acquire(queue)
        if planes is None or planes[d] is None:
            return None
        return np.array(normalized_centroid(planes[d][-1]), dtype=float)

    def apply(self, params: XYParams) -> float:
        l, d = params.light_sheet_index, params.detection_arm_index
        self._check_light_sheet(l)
        try:
            u = self._unit_vectors[(l, d, "x")]
            v = self._unit_vectors[(l, d, "y")]
            origin = 0.5 * (self._origins[(l, d, "x")] + self._origins[(l, d, "y")])
        except KeyError:
            return math.inf

        matrix = np.column_stack([u, v])
        try:
            x_offset, y_offset = np.linalg.inv(matrix) @ origin
        except np.linalg.LinAlgError:
            logger.error("Singular XY transform for light sheet %d, arm %d", l, d)
            return math.inf
        self._matrices[(l, d)] = matrix

        ls = self._microscope.light_sheets[l]
        ls.x_function.compose_with(AffineFunction(1.0, -float(x_offset)))
        ls.y_function.compose_with(AffineFunction(1.0, -float(y_offset)))
        ls.height_function = AffineFunction.identity()
        ls.height.set_min_max(-1.0, 1.0)

        return abs(float(x_offset)) + abs(float(y_offset))
