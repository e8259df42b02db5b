from __future__ import annotations

from typing import Any

import numpy as np
from scipy import fft

from .acquisition import ImageStack


def _coerce_planes(stack: Any) -> np.ndarray:
    if isinstance(stack, ImageStack):
        stack = stack.planes
    if hasattr(stack, "tolist") and not isinstance(stack, np.ndarray):
        stack = stack.tolist()
    arr = np.asarray(stack, dtype=float)
    if arr.ndim == 2:
        arr = arr[np.newaxis, ...]
    if arr.ndim != 3:
        raise ValueError("Stack must be a 2D image or a 3D array of planes")
    if arr.shape[0] == 0 or arr.shape[1] == 0 or arr.shape[2] == 0:
        raise ValueError("Empty stack")
    return arr


def dcts(image: Any, psf_support_radius: float = 3.0) -> float:
    """Normalized DCT Shannon entropy of a single image.

    Higher values mean more energy spread over the frequencies passed by the
    optics, i.e. a sharper image. Coefficients outside the triangular support
    `x + y < width / psf_support_radius` are ignored.
    """

    arr = _coerce_planes(image)[0]
    if psf_support_radius <= 0:
        raise ValueError("psf_support_radius must be > 0")

    coefficients = np.abs(fft.dctn(arr, norm="ortho"))
    norm = float(np.sqrt((coefficients**2).sum()))
    if norm == 0.0:
        return 0.0

    h, w = arr.shape
    r0 = max(1.0, w / psf_support_radius)
    y_idx, x_idx = np.indices((h, w))
    support = (x_idx + y_idx) < r0

    p = coefficients[support] / norm
    p = p[p > 0]
    entropy = -float((p * np.log2(p)).sum())
    return 2.0 * entropy / (r0 * r0)


def dcts_per_plane(stack: Any, psf_support_radius: float = 3.0) -> np.ndarray:
    planes = _coerce_planes(stack)
    return np.array([dcts(plane, psf_support_radius) for plane in planes], dtype=float)


def clean_with_min(planes: Any) -> np.ndarray:
    """Subtract each plane's minimum so that the background sits at zero."""

    arr = _coerce_planes(planes)
    return arr - arr.min(axis=(1, 2), keepdims=True)


def brightest_region_centroid(image: Any, percentile: float = 99.0) -> tuple[float, float]:
    """Return the (x, y) centre of mass of the pixels above `percentile`."""

    arr = clean_with_min(image)[0]
    threshold = float(np.percentile(arr, percentile))
    weights = np.where(arr >= threshold, arr, 0.0)
    total = float(weights.sum())
    h, w = arr.shape
    if total <= 0:
        return (w - 1) / 2.0, (h - 1) / 2.0
    y_idx, x_idx = np.indices(arr.shape, dtype=float)
    cx = float((x_idx * weights).sum() / total)
    cy = float((y_idx * weights).sum() / total)
    return cx, cy


def normalized_centroid(image: Any, percentile: float = 99.0) -> tuple[float, float]:
    """Brightest-region centroid in image-relative coordinates within [-1, 1]."""

    arr = _coerce_planes(image)[0]
    h, w = arr.shape
    cx, cy = brightest_region_centroid(arr, percentile)
    # Pixel centres run from 0 to w-1; the optical centre sits at (w-1)/2.
    return 2.0 * (cx - 0.5 * (w - 1)) / w, 2.0 * (cy - 0.5 * (h - 1)) / h


def centroids_per_plane(stack: Any, percentile: float = 99.0) -> list[tuple[float, float]]:
    return [normalized_centroid(plane, percentile) for plane in _coerce_planes(stack)]


def percentile_intensity_per_plane(stack: Any, percentile: float = 99.0) -> np.ndarray:
    """Robust maximum intensity of each plane."""

    planes = _coerce_planes(stack)
    return np.percentile(planes.reshape(planes.shape[0], -1), percentile, axis=1)


def smooth(values: Any, iterations: int = 1) -> np.ndarray:
    """Three-tap running mean applied forward then backward, endpoints kept."""

    out = np.array(values, dtype=float)
    n = out.shape[0]
    for _ in range(iterations):
        for i in range(1, n - 1):
            out[i] = (out[i - 1] + out[i] + out[i + 1]) / 3.0
        for i in range(n - 2, 0, -1):
            out[i] = (out[i - 1] + out[i] + out[i + 1]) / 3.0
    return out
