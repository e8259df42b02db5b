from __future__ import annotations

import enum
import math


class ControlPlaneLayout(enum.Enum):
    """How control planes are distributed along the optical axis."""

    # Equal spacing.
    LINEAR = "linear"
    # Equal spacing on the unit circle, projected on the x axis: denser near both ends.
    CIRCULAR = "circular"

    def layout(self, number_of_control_planes: int, control_plane_index: int) -> float:
        """Return the normalized position in [0, 1] of a control plane."""

        if self is ControlPlaneLayout.CIRCULAR:
            return circular_layout(number_of_control_planes, control_plane_index)
        return linear_layout(number_of_control_planes, control_plane_index)


def _check(number_of_control_planes: int, control_plane_index: int) -> None:
    if number_of_control_planes < 2:
        raise ValueError("Need at least two control planes")
    if not 0 <= control_plane_index < number_of_control_planes:
        raise IndexError(f"Control plane index {control_plane_index} out of range")


def linear_layout(number_of_control_planes: int, control_plane_index: int) -> float:
    _check(number_of_control_planes, control_plane_index)
    return control_plane_index / (number_of_control_planes - 1)


def circular_layout(number_of_control_planes: int, control_plane_index: int) -> float:
    z = linear_layout(number_of_control_planes, control_plane_index)
    return 0.5 * (1.0 + math.cos(math.pi * (1.0 - z)))
