from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy.optimize import OptimizeWarning, curve_fit

from .functions import PolynomialFunction

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class FitResult:
    """Peak estimate of one sampled response curve.

    `probability` is the confidence of the fit in [0, 1]. A result with zero
    probability carries no usable peak location.
    """

    argmax: float
    metric_max: float
    probability: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.probability <= 1.0:
            raise ValueError("probability must be in [0.0, 1.0]")

    @classmethod
    def unfit(cls, metric_max: float = 0.0) -> "FitResult":
        return cls(argmax=0.0, metric_max=metric_max, probability=0.0)

    @property
    def evidence(self) -> float:
        return self.metric_max * self.probability

    @property
    def is_usable(self) -> bool:
        return self.probability > 0.0


def _gaussian(x: np.ndarray, amplitude: float, center: float, sigma: float, offset: float) -> np.ndarray:
    return offset + amplitude * np.exp(-0.5 * ((x - center) / sigma) ** 2)


def _r_squared(y: np.ndarray, predicted: np.ndarray) -> float:
    ss_res = float(((y - predicted) ** 2).sum())
    ss_tot = float(((y - y.mean()) ** 2).sum())
    if ss_tot == 0.0:
        return 0.0
    return 1.0 - ss_res / ss_tot


def _fit_gaussian_peak(x: np.ndarray, y: np.ndarray) -> tuple[float, float] | None:
    i = int(np.argmax(y))
    x_span = float(x.max() - x.min())
    p0 = [float(y.max() - y.min()), float(x[i]), x_span / 4.0, float(y.min())]
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", OptimizeWarning)
            with np.errstate(all="ignore"):
                popt, _ = curve_fit(_gaussian, x, y, p0=p0, maxfev=2000)
    except (RuntimeError, ValueError) as exc:
        logger.debug("Gaussian peak fit failed: %s", exc)
        return None

    amplitude, center, sigma, _offset = (float(v) for v in popt)
    if amplitude <= 0 or sigma == 0 or not np.isfinite(center):
        return None
    if not x.min() <= center <= x.max():
        return None
    with np.errstate(all="ignore"):
        r2 = _r_squared(y, _gaussian(x, *popt))
    if not np.isfinite(r2):
        return None
    return center, r2


def _fit_parabola_peak(x: np.ndarray, y: np.ndarray) -> tuple[float, float] | None:
    c2, c1, c0 = np.polyfit(x, y, 2)
    if c2 >= 0:
        return None
    center = float(-c1 / (2.0 * c2))
    if not x.min() <= center <= x.max():
        return None
    r2 = _r_squared(y, np.polyval([c2, c1, c0], x))
    return center, r2


def fit_argmax(values: Sequence[float], metrics: Sequence[float]) -> tuple[float, float] | None:
    """Locate the peak of a unimodal response.

    Returns `(argmax, probability)` or None when no peak can be found inside
    the sampled range. A Gaussian-plus-offset model is tried first, then a
    parabola; the probability is the coefficient of determination of the
    accepted model, clipped to [0, 1].
    """

    x = np.asarray(values, dtype=float)
    y = np.asarray(metrics, dtype=float)
    if x.shape != y.shape or x.ndim != 1:
        raise ValueError("values and metrics must be 1D sequences of equal length")
    if x.size < 3 or not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
        return None
    if float(y.max() - y.min()) <= 0.0 or float(x.max() - x.min()) <= 0.0:
        return None

    fitted = _fit_gaussian_peak(x, y)
    if fitted is None:
        fitted = _fit_parabola_peak(x, y)
    if fitted is None:
        return None

    center, r2 = fitted
    return center, min(1.0, max(0.0, r2))


def fit_result(values: Sequence[float], metrics: Sequence[float]) -> FitResult:
    """Fit a sample set and fold a failed fit into a zero-confidence result."""

    metric_max = float(np.max(metrics)) if len(metrics) else 0.0
    fitted = fit_argmax(values, metrics)
    if fitted is None:
        return FitResult.unfit(metric_max)
    argmax, probability = fitted
    return FitResult(argmax=argmax, metric_max=metric_max, probability=probability)


def fit_line(xs: Sequence[float], ys: Sequence[float]) -> tuple[float, float]:
    """Least-squares line y = slope * x + intercept."""

    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if x.size < 2 or x.size != y.size:
        raise ValueError("Need at least two samples")
    if float(x.max() - x.min()) == 0.0:
        raise ValueError("Samples are degenerate")
    slope, intercept = np.polyfit(x, y, 1)
    return float(slope), float(intercept)


def fit_polynomial(xs: Sequence[float], ys: Sequence[float], degree: int = 2) -> PolynomialFunction:
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if x.size != y.size:
        raise ValueError("xs and ys must have equal length")
    if x.size < degree + 1:
        raise ValueError(f"Need at least {degree + 1} samples for a degree {degree} fit")
    coefficients = np.polynomial.polynomial.polyfit(x, y, degree)
    return PolynomialFunction([float(c) for c in coefficients])


def nearest_index(values: Sequence[float], target: float) -> int:
    """Index of the first value minimizing |value - target|."""

    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        raise ValueError("Cannot search an empty sequence")
    return int(np.argmin(np.abs(arr - target)))
