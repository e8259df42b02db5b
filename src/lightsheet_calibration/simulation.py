from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

import numpy as np
from scipy import ndimage

from .acquisition import AcquisitionQueue, FrameState, ImageStack
from .devices import DetectionArm, LightSheet, LightSheetMicroscope
from .interfaces import AcquisitionTimeout


def _pick(values: list[float], index: int, default: float) -> float:
    return values[index] if index < len(values) else default


@dataclass(slots=True)
class SimulatedScene:
    """Ground truth of a simulated lightsheet microscope.

    Frames show a random fluorescent texture plus the beam spot, blurred by
    defocus and tilt. Per-device offsets model the misalignments that the
    calibration modules are expected to remove.
    """

    image_size: int = 32
    seed: int = 0
    background: float = 10.0
    brightness: float = 1000.0
    base_sigma_px: float = 0.6
    defocus_sigma_px: float = 6.0
    # Blur per degree of tilt.
    angle_sigma_px: float = 0.4
    width_sigma_px: float = 3.0
    # None disables the width dependence of sharpness.
    best_width: float | None = None
    light_sheet_z_offsets: list[float] = field(default_factory=list)
    detection_z_offsets: list[float] = field(default_factory=list)
    alpha_offsets: list[float] = field(default_factory=list)
    light_sheet_efficiencies: list[float] = field(default_factory=list)
    # Focus shift introduced by the sample, per unit of detection Z.
    sample_z_slope: float = 0.0
    beam_matrix: tuple[tuple[float, float], tuple[float, float]] = ((0.5, 0.0), (0.0, 0.5))
    beam_origin: tuple[float, float] = (0.0, 0.0)
    spot_sigma_px: float = 2.0
    texture_weight: float = 0.25
    _texture: np.ndarray | None = field(default=None, init=False, repr=False)

    def texture(self) -> np.ndarray:
        if self._texture is None:
            rng = np.random.default_rng(self.seed)
            self._texture = rng.random((self.image_size, self.image_size))
        return self._texture

    def defocus(self, frame: FrameState, light_sheet: LightSheet, arm: DetectionArm) -> float:
        ls_z = light_sheet.z_function(frame.z) + _pick(self.light_sheet_z_offsets, light_sheet.index, 0.0)
        dz = frame.detection_z[arm.index] if frame.detection_z else arm.z.value
        det_z = arm.z_function(dz) + _pick(self.detection_z_offsets, arm.index, 0.0)
        return ls_z - det_z - self.sample_z_slope * det_z

    def blur_sigma(self, frame: FrameState, light_sheet: LightSheet, arm: DetectionArm) -> float:
        alpha = light_sheet.alpha_function(frame.alpha) + _pick(self.alpha_offsets, light_sheet.index, 0.0)
        sigma = self.base_sigma_px
        sigma += self.defocus_sigma_px * abs(self.defocus(frame, light_sheet, arm))
        sigma += self.angle_sigma_px * abs(alpha)
        if self.best_width is not None:
            sigma += self.width_sigma_px * abs(light_sheet.width_function(frame.width) - self.best_width)
        return sigma

    def beam_position(self, frame: FrameState, light_sheet: LightSheet) -> np.ndarray:
        """Beam centre in normalized sensor coordinates ([-1, 1] across the image)."""

        control = np.array([light_sheet.x_function(frame.x), light_sheet.y_function(frame.y)])
        return np.array(self.beam_matrix, dtype=float) @ control + np.array(self.beam_origin, dtype=float)

    def intensity(self, frame: FrameState, light_sheet: LightSheet) -> float:
        power = light_sheet.effective_power(frame.power, frame.width, frame.height)
        height = abs(light_sheet.height_function(frame.height))
        width = abs(light_sheet.width_function(frame.width))
        efficiency = _pick(self.light_sheet_efficiencies, light_sheet.index, 1.0)
        return self.brightness * efficiency * power / (0.5 + height) / (0.5 + width)

    def render(self, frame: FrameState, light_sheet: LightSheet, arm: DetectionArm) -> np.ndarray:
        size = self.image_size
        center = 0.5 * (size - 1)
        bx, by = self.beam_position(frame, light_sheet)
        y, x = np.mgrid[0:size, 0:size]
        cx = center + bx * size / 2.0
        cy = center + by * size / 2.0
        spot = np.exp(-((x - cx) ** 2 + (y - cy) ** 2) / (2 * self.spot_sigma_px**2))
        scene = self.texture_weight * self.texture() + spot
        blurred = ndimage.gaussian_filter(scene, self.blur_sigma(frame, light_sheet, arm), mode="nearest")
        return self.background + self.intensity(frame, light_sheet) * blurred


class SimulatedGateway:
    """Acquisition gateway that renders every captured frame from a `SimulatedScene`.

    Tracks how many stacks are still held by callers, and can be told to
    fail chosen calls to exercise error paths.
    """

    def __init__(
        self,
        scene: SimulatedScene,
        light_sheets: list[LightSheet],
        detection_arms: list[DetectionArm],
        *,
        latency_s: float = 0.0,
    ) -> None:
        self.scene = scene
        self._light_sheets = light_sheets
        self._detection_arms = detection_arms
        self._latency_s = latency_s
        self._lock = threading.Lock()
        self._outstanding = 0
        self.calls = 0
        self.timeouts: list[float] = []
        self.fail_calls: set[int] = set()
        self.fail_all = False
        self.empty_arms: set[int] = set()

    @property
    def outstanding_stacks(self) -> int:
        with self._lock:
            return self._outstanding

    def _released(self) -> None:
        with self._lock:
            self._outstanding -= 1

    def build_queue(self) -> AcquisitionQueue:
        return AcquisitionQueue(number_of_detection_arms=len(self._detection_arms))

    def execute(self, queue: AcquisitionQueue, timeout_s: float) -> list[ImageStack]:
        with self._lock:
            call = self.calls
            self.calls += 1
            self.timeouts.append(timeout_s)
        if self.fail_all or call in self.fail_calls:
            raise AcquisitionTimeout(f"Simulated stacks did not arrive within {timeout_s:.1f} s")
        if self._latency_s > 0:
            time.sleep(self._latency_s)

        captured = [frame for frame in queue if frame.capture]
        stacks = []
        for arm in self._detection_arms:
            if arm.index in self.empty_arms or not captured:
                planes = None
            else:
                planes = np.stack(
                    [self.scene.render(f, self._light_sheets[f.light_sheet_index], arm) for f in captured]
                )
            stacks.append(ImageStack(planes, detection_arm_index=arm.index, on_release=self._released))
        with self._lock:
            self._outstanding += len(stacks)
        return stacks


def build_simulated_microscope(
    number_of_light_sheets: int = 1,
    number_of_detection_arms: int = 1,
    scene: SimulatedScene | None = None,
    *,
    latency_s: float = 0.0,
) -> LightSheetMicroscope:
    if number_of_light_sheets < 1 or number_of_detection_arms < 1:
        raise ValueError("Need at least one light sheet and one detection arm")
    light_sheets = [LightSheet(index=l) for l in range(number_of_light_sheets)]
    arms = [DetectionArm(index=d) for d in range(number_of_detection_arms)]
    gateway = SimulatedGateway(scene or SimulatedScene(), light_sheets, arms, latency_s=latency_s)
    return LightSheetMicroscope(gateway, light_sheets, arms)
