import math

import numpy as np
import pytest

from lightsheet_calibration.acquisition import FrameState
from lightsheet_calibration.calibration_angle import AngleCalibration
from lightsheet_calibration.calibration_base import (
    AngleParams,
    PowerParams,
    PowerRatioParams,
    WidthParams,
    XYParams,
    ZParams,
)
from lightsheet_calibration.calibration_power import HeightPowerCalibration, PowerCalibration, WidthPowerCalibration
from lightsheet_calibration.calibration_width import WidthCalibration
from lightsheet_calibration.calibration_xy import XYCalibration
from lightsheet_calibration.calibration_z import ZCalibration
from lightsheet_calibration.config import CalibrationConfig
from lightsheet_calibration.engine import CalibrationEngine
from lightsheet_calibration.functions import AffineFunction
from lightsheet_calibration.progress import ChartRecorder
from lightsheet_calibration.simulation import SimulatedScene, build_simulated_microscope


def _residual_defocus(microscope, l: int, d: int, iz: float, dz: float) -> float:
    scene = microscope.gateway.scene
    n_arms = microscope.number_of_detection_arms
    frame = FrameState(light_sheet_index=l, z=iz, detection_z=(dz,) * n_arms)
    return scene.defocus(frame, microscope.light_sheets[l], microscope.detection_arms[d])


def test_z_calibration_measures_light_sheet_offset() -> None:
    microscope = build_simulated_microscope(1, 1, SimulatedScene(light_sheet_z_offsets=[0.15]))
    recorder = ChartRecorder()
    module = ZCalibration(microscope, progress=recorder)
    params = ZParams(0, n_detection_samples=21, n_illumination_samples=5)

    assert module.calibrate(params)
    a, b = module.model(0, 0)
    assert a == pytest.approx(1.0, abs=0.1)
    assert b == pytest.approx(0.15, abs=0.05)
    assert microscope.light_sheets[0].z_function.is_identity()

    error = module.apply(params)

    assert error == pytest.approx(abs(b) + abs(a - 1.0))
    assert _residual_defocus(microscope, 0, 0, 0.0, 0.0) == pytest.approx(0.0, abs=0.05)
    assert recorder.charts()
    assert microscope.gateway.outstanding_stacks == 0


def test_z_calibration_failure_leaves_functions_untouched() -> None:
    microscope = build_simulated_microscope()
    microscope.gateway.fail_all = True
    module = ZCalibration(microscope)
    params = ZParams(0, n_detection_samples=5, n_illumination_samples=3)

    assert not module.calibrate(params)
    assert module.apply(params) == math.inf
    assert microscope.light_sheets[0].z_function.is_identity()


def test_engine_aligns_every_light_sheet_and_arm() -> None:
    scene = SimulatedScene(light_sheet_z_offsets=[0.1, -0.1], detection_z_offsets=[0.0, 0.08])
    microscope = build_simulated_microscope(2, 2, scene)
    engine = CalibrationEngine(microscope, CalibrationConfig(z_samples=13))

    assert engine.calibrate()

    for l in range(2):
        for d in range(2):
            assert _residual_defocus(microscope, l, d, 0.2, 0.2) == pytest.approx(0.0, abs=0.06)


def test_angle_calibration_flattens_light_sheet() -> None:
    microscope = build_simulated_microscope(1, 1, SimulatedScene(alpha_offsets=[1.5]))
    module = AngleCalibration(microscope)
    params = AngleParams(0, n_angles=21, n_repeats=2)

    assert module.calibrate(params)
    assert module.result(0).argmax == pytest.approx(-1.5, abs=0.3)

    error = module.apply(params)

    assert error == pytest.approx(1.5, abs=0.3)
    alpha = microscope.light_sheets[0].alpha_function
    assert alpha(0.0) + 1.5 == pytest.approx(0.0, abs=0.3)


def test_angle_calibration_without_peak_changes_nothing() -> None:
    microscope = build_simulated_microscope(1, 1, SimulatedScene(angle_sigma_px=0.0))
    module = AngleCalibration(microscope)
    params = AngleParams(0, n_angles=5, n_repeats=1)

    assert module.calibrate(params)
    assert not module.result(0).is_usable
    assert module.apply(params) == math.inf
    assert microscope.light_sheets[0].alpha_function.is_identity()


BEAM_MATRIX = ((0.5, 0.05), (-0.04, 0.45))


def test_xy_calibration_recovers_beam_matrix() -> None:
    scene = SimulatedScene(image_size=64, beam_matrix=BEAM_MATRIX, beam_origin=(0.1, -0.05))
    microscope = build_simulated_microscope(1, 1, scene)
    ls = microscope.light_sheets[0]
    ls.height_function = AffineFunction(2.0, 0.1)
    module = XYCalibration(microscope)
    params = XYParams(0, 0, 3)

    assert module.calibrate(params)
    error = module.apply(params)

    assert module.transform_matrix(0, 0) == pytest.approx(np.array(BEAM_MATRIX), abs=0.03)
    assert error > 0.1
    beam = scene.beam_position(FrameState(x=0.0, y=0.0), ls)
    assert beam.tolist() == pytest.approx([0.0, 0.0], abs=0.02)
    assert (ls.height.min, ls.height.max) == (-1.0, 1.0)
    assert ls.height_function.is_identity()


def test_xy_matrix_is_published_only_after_both_probes() -> None:
    microscope = build_simulated_microscope()
    module = XYCalibration(microscope)
    params = XYParams(0, 0, 3)
    # The x probe plays 3 points * 3 positions; the first y queue fails.
    microscope.gateway.fail_calls = {9}

    assert not module.calibrate(params)
    assert module.transform_matrix(0, 0) is None
    assert module.apply(params) == math.inf
    assert microscope.light_sheets[0].x_function.is_identity()


def test_power_calibration_equalizes_light_sheets() -> None:
    scene = SimulatedScene(background=0.0, light_sheet_efficiencies=[1.0, 0.5])
    microscope = build_simulated_microscope(2, 1, scene)
    module = PowerCalibration(microscope)
    params = PowerParams(0, 2)

    assert module.calibrate(params)
    assert module.intensity(1) == pytest.approx(0.5 * module.intensity(0))
    assert module.apply(params) == pytest.approx(0.25)
    assert microscope.light_sheets[1].power_function.slope == pytest.approx(2.0)

    assert module.calibrate(params)
    assert module.apply(params) < 0.01


def test_power_calibration_without_data_is_inf() -> None:
    microscope = build_simulated_microscope(2, 1)
    microscope.gateway.fail_calls = {1}
    module = PowerCalibration(microscope)

    assert not module.calibrate(PowerParams())
    assert module.apply(PowerParams()) == math.inf
    assert microscope.light_sheets[0].power_function.is_identity()


@pytest.mark.parametrize(
    "module_cls, function_name",
    [(HeightPowerCalibration, "height_power_function"), (WidthPowerCalibration, "width_power_function")],
)
def test_power_ratio_calibration_compensates_geometry(module_cls, function_name: str) -> None:
    microscope = build_simulated_microscope(1, 1, SimulatedScene(background=0.0))
    ls = microscope.light_sheets[0]
    module = module_cls(microscope)
    params = PowerRatioParams(0, 0, n_samples_geometry=5, n_samples_power=20)

    assert module.calibrate(params)
    assert ls.adapt_power_to_width_height

    function = module.function(0, 0)
    # Brightness falls as 1 / (0.5 + extent); the reference is the largest extent.
    assert function(0.5) == pytest.approx(2 / 3, abs=0.06)
    assert function(0.0) == pytest.approx(1 / 3, abs=0.06)

    assert module.apply(params) == 0.0
    assert getattr(ls, function_name).coefficients == function.coefficients
    assert microscope.gateway.outstanding_stacks == 0


def test_power_ratio_failure_restores_adaptation_flag() -> None:
    microscope = build_simulated_microscope()
    microscope.gateway.fail_calls = {2}
    module = HeightPowerCalibration(microscope)
    params = PowerRatioParams(0, 0, n_samples_geometry=3, n_samples_power=4)

    assert not module.calibrate(params)
    assert microscope.light_sheets[0].adapt_power_to_width_height
    assert module.apply(params) == math.inf


def test_width_calibration_centres_width_range() -> None:
    scene = SimulatedScene(background=0.0, best_width=0.7)
    microscope = build_simulated_microscope(2, 1, scene)
    module = WidthCalibration(microscope)
    params = WidthParams(0, 21)

    assert module.calibrate(params)
    assert module.result.argmax == pytest.approx(0.7, abs=0.05)

    error = module.apply(params)

    assert error == pytest.approx(0.2, abs=0.05)
    for ls in microscope.light_sheets:
        assert ls.width_function(0.5) == pytest.approx(0.7, abs=0.05)


def test_modules_reject_unknown_indices() -> None:
    microscope = build_simulated_microscope()
    with pytest.raises(IndexError):
        ZCalibration(microscope).calibrate(ZParams(1))
    with pytest.raises(IndexError):
        XYCalibration(microscope).calibrate(XYParams(0, 2))


def test_positioner_follows_repeated_xy_calibration() -> None:
    scene = SimulatedScene(image_size=64, beam_matrix=BEAM_MATRIX)
    microscope = build_simulated_microscope(1, 1, scene)
    engine = CalibrationEngine(microscope)
    params = XYParams(0, 0, 3)

    assert engine.xy.calibrate(params)
    engine.xy.apply(params)
    first = engine.get_positioner(0, 0).matrix

    scene.beam_matrix = ((0.3, 0.08), (-0.09, 0.3))
    assert engine.xy.calibrate(params)
    engine.xy.apply(params)

    current = engine.get_positioner(0, 0).matrix
    assert np.array_equal(current, engine.xy.transform_matrix(0, 0))
    assert current == pytest.approx(np.array(scene.beam_matrix), abs=0.03)
    assert not np.allclose(current, first, atol=0.1)


def test_power_calibration_skips_unselected_light_sheets() -> None:
    scene = SimulatedScene(background=0.0, light_sheet_efficiencies=[1.0, 0.5, 0.25])
    microscope = build_simulated_microscope(3, 1, scene)
    module = PowerCalibration(microscope)
    params = PowerParams(0, 2, light_sheet_indices=(0, 2))

    assert module.calibrate(params)
    assert module.intensity(1) is None
    assert module.apply(params) == pytest.approx(0.375)
    assert microscope.light_sheets[1].power_function.is_identity()
    assert microscope.light_sheets[2].power_function.slope == pytest.approx(4.0)
