from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass(slots=True)
class AffineFunction:
    """Univariate affine mapping y = slope * x + offset.

    Device settings are passed through one of these before reaching the
    hardware. Corrections are composed on the right, so an existing
    calibration is refined rather than replaced.
    """

    slope: float = 1.0
    offset: float = 0.0

    @classmethod
    def identity(cls) -> "AffineFunction":
        return cls(1.0, 0.0)

    def __call__(self, x: float) -> float:
        return self.slope * x + self.offset

    def compose_with(self, inner: "AffineFunction") -> None:
        """Replace this function in place by self(inner(x))."""

        self.offset = self.slope * inner.offset + self.offset
        self.slope = self.slope * inner.slope

    def inverse(self) -> "AffineFunction":
        if self.slope == 0.0:
            raise ValueError("Affine function with zero slope is not invertible")
        return AffineFunction(1.0 / self.slope, -self.offset / self.slope)

    def is_identity(self) -> bool:
        return self.slope == 1.0 and self.offset == 0.0

    def to_dict(self) -> dict[str, float]:
        return {"slope": self.slope, "offset": self.offset}

    @classmethod
    def from_dict(cls, data: dict[str, float]) -> "AffineFunction":
        return cls(float(data["slope"]), float(data["offset"]))


@dataclass(slots=True)
class PolynomialFunction:
    """Polynomial with coefficients in ascending order (c0 + c1*x + c2*x^2 ...)."""

    coefficients: list[float] = field(default_factory=lambda: [1.0])

    @classmethod
    def constant(cls, value: float = 1.0) -> "PolynomialFunction":
        return cls([float(value)])

    @property
    def degree(self) -> int:
        return len(self.coefficients) - 1

    def __call__(self, x: float) -> float:
        return float(np.polynomial.polynomial.polyval(x, self.coefficients))

    def to_dict(self) -> dict[str, list[float]]:
        return {"coefficients": list(self.coefficients)}

    @classmethod
    def from_dict(cls, data: dict[str, list[float]]) -> "PolynomialFunction":
        return cls([float(c) for c in data["coefficients"]])
