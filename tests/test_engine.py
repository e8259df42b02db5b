import logging

import pytest

from lightsheet_calibration.calibration_base import CalibrationAxis, ZParams
from lightsheet_calibration.cancellation import CancellationToken
from lightsheet_calibration.config import CalibrationConfig
from lightsheet_calibration.engine import CalibrationEngine, search_amplitude
from lightsheet_calibration.functions import AffineFunction
from lightsheet_calibration.simulation import build_simulated_microscope


class _ScriptedModule:
    """Stands in for a calibration module; records calls and returns scripted errors."""

    def __init__(self, name: str, log: list[str], errors=(1.0,), outcomes=(True,), on_apply=None) -> None:
        self.name = name
        self.log = log
        self.errors = list(errors)
        self.outcomes = list(outcomes)
        self.on_apply = on_apply
        self.params: list[object] = []
        self.resets = 0

    def calibrate(self, params) -> bool:
        self.log.append(self.name)
        self.params.append(params)
        index = min(len(self.params), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def apply(self, params) -> float:
        if self.on_apply is not None:
            self.on_apply(len(self.params) - 1)
        return self.errors[min(len(self.params), len(self.errors)) - 1]

    def reset(self) -> None:
        self.resets += 1


def _engine(n_ls: int = 1, **config) -> tuple[CalibrationEngine, list[str]]:
    microscope = build_simulated_microscope(n_ls, 1)
    engine = CalibrationEngine(microscope, CalibrationConfig(**config))
    log: list[str] = []
    for axis in CalibrationAxis:
        engine.modules[axis] = _ScriptedModule(axis.value, log, errors=(0.0,))
    return engine, log


def test_search_amplitude_halves_each_iteration() -> None:
    assert [search_amplitude(i) for i in range(3)] == [0.5, 0.25, 0.125]


def test_run_axis_stops_at_iteration_cap() -> None:
    engine, log = _engine()
    engine.modules[CalibrationAxis.Z] = module = _ScriptedModule("Z", log, errors=(1.0,))

    assert engine.run_axis(CalibrationAxis.Z, 0)

    assert len(module.params) == 3


def test_run_axis_stops_below_threshold() -> None:
    engine, log = _engine()
    engine.modules[CalibrationAxis.Z] = module = _ScriptedModule("Z", log, errors=(0.5, 0.01, 0.3))

    assert engine.run_axis(CalibrationAxis.Z, 0)

    assert len(module.params) == 2


def test_z_search_narrows_each_iteration() -> None:
    engine, log = _engine(2)
    engine.modules[CalibrationAxis.Z] = module = _ScriptedModule("Z", log, errors=(1.0,))

    engine.run_axis(CalibrationAxis.Z, 0)
    engine.run_axis(CalibrationAxis.Z, 1)

    first = module.params[:3]
    assert [p.search_amplitude for p in first] == [0.5, 0.25, 0.125]
    assert [p.restricted_search for p in first] == [False, True, True]
    assert all(p.adjust_detection_z for p in first)
    assert not any(p.adjust_detection_z for p in module.params[3:])
    assert all(isinstance(p, ZParams) for p in module.params)


def test_cancel_between_iterations() -> None:
    token = CancellationToken()
    microscope = build_simulated_microscope()
    engine = CalibrationEngine(microscope, CalibrationConfig(), cancel_token=token)

    def cancel_after_second(iteration: int) -> None:
        if iteration == 1:
            token.cancel()

    module = _ScriptedModule("Z", [], errors=(1.0,), on_apply=cancel_after_second)
    engine.modules[CalibrationAxis.Z] = module

    assert not engine.run_axis(CalibrationAxis.Z, 0)
    assert len(module.params) == 2


def test_failed_calibration_aborts_sequence(caplog: pytest.LogCaptureFixture) -> None:
    engine, log = _engine(calibrate_angle=True)
    engine.modules[CalibrationAxis.ANGLE] = _ScriptedModule("A", log, outcomes=(False,))

    with caplog.at_level(logging.ERROR):
        assert not engine.calibrate()

    assert log == ["Z", "A"]
    assert "calibration failed" in caplog.text


def test_sequence_order() -> None:
    engine, log = _engine(calibrate_angle=True, calibrate_xy=True, calibrate_power=True)

    assert engine.calibrate()

    assert log == ["Z", "A", "XY", "P", "Z", "P"]


def test_full_sequence_with_every_axis() -> None:
    engine, log = _engine(
        2,
        calibrate_angle=True,
        calibrate_xy=True,
        calibrate_power=True,
        calibrate_height_power=True,
        calibrate_width_power=True,
        calibrate_width=True,
    )

    assert engine.calibrate()

    assert log == ["Z", "Z", "A", "A", "XY", "XY", "P", "Z", "Z", "P", "HP", "HP", "WP", "WP", "W"]


def test_second_power_failure_is_tolerated() -> None:
    engine, log = _engine(calibrate_power=True, calibrate_width=True)
    engine.modules[CalibrationAxis.POWER] = _ScriptedModule("P", log, errors=(0.0,), outcomes=(True, False))

    assert engine.calibrate()

    assert log == ["Z", "P", "P", "W"]


def test_second_power_failure_with_stop_aborts() -> None:
    engine, log = _engine(calibrate_power=True, calibrate_width=True)

    class _StoppingPower(_ScriptedModule):
        def calibrate(self, params) -> bool:
            ok = super().calibrate(params)
            if not ok:
                engine.stop(wait=False)
            return ok

    engine.modules[CalibrationAxis.POWER] = _StoppingPower("P", log, errors=(0.0,), outcomes=(True, False))

    assert not engine.calibrate()
    assert log == ["Z", "P", "P"]


def test_disabled_light_sheets_are_skipped() -> None:
    engine, log = _engine(2, light_sheets=[False, True])
    module = engine.modules[CalibrationAxis.Z]

    assert engine.calibrate()

    assert [p.light_sheet_index for p in module.params] == [1]


def test_progress_is_monotonic_and_complete() -> None:
    values: list[float] = []
    microscope = build_simulated_microscope(2, 1)
    engine = CalibrationEngine(
        microscope,
        CalibrationConfig(calibrate_angle=True, calibrate_xy=True, calibrate_power=True),
        on_progress=values.append,
    )
    log: list[str] = []
    for axis in CalibrationAxis:
        engine.modules[axis] = _ScriptedModule(axis.value, log, errors=(0.0,))

    assert engine.calibrate()

    assert values[0] == 0.0
    assert values[-1] == 1.0
    assert all(b >= a for a, b in zip(values, values[1:]))
    assert engine.progress == 1.0


def test_stop_before_axis_runs_nothing() -> None:
    engine, log = _engine()
    engine.stop(wait=False)

    assert not engine.run_axis(CalibrationAxis.Z, 0)
    assert log == []


def test_background_run_reports_result() -> None:
    engine, log = _engine()

    assert engine.start()
    engine.join(timeout_s=5.0)

    assert engine.result is True
    assert engine.last_error is None
    assert not engine.is_running
    assert engine.microscope.current_task is None
    assert log == ["Z"]


def test_background_run_records_errors() -> None:
    engine, log = _engine()
    engine.modules[CalibrationAxis.Z] = _ScriptedModule("Z", log, outcomes=(RuntimeError("stage jammed"),))

    assert engine.start()
    engine.join(timeout_s=5.0)

    assert engine.result is False
    assert isinstance(engine.last_error, RuntimeError)
    assert engine.microscope.current_task is None


def test_start_refused_while_microscope_busy(caplog: pytest.LogCaptureFixture) -> None:
    engine, log = _engine()
    engine.microscope.claim_task("adaptation")

    with caplog.at_level(logging.WARNING):
        assert not engine.start()

    assert log == []
    assert "busy" in caplog.text


def test_reset_clears_modules_and_functions() -> None:
    engine, _ = _engine()
    engine.microscope.light_sheets[0].z_function = AffineFunction(2.0, 0.1)

    engine.reset()

    assert engine.microscope.light_sheets[0].z_function.is_identity()
    assert all(module.resets == 1 for module in engine.modules.values())


def test_engine_rejects_unknown_detection_arm() -> None:
    with pytest.raises(ValueError, match="detection_arm_index"):
        CalibrationEngine(build_simulated_microscope(), CalibrationConfig(detection_arm_index=1))


def test_parent_token_cancels_engine() -> None:
    parent = CancellationToken()
    engine = CalibrationEngine(build_simulated_microscope(), cancel_token=parent.child())
    assert not engine.is_stop_requested()

    parent.cancel()

    assert engine.is_stop_requested()
    assert not engine.calibrate()


def test_power_step_measures_only_enabled_light_sheets() -> None:
    engine, log = _engine(3, calibrate_z=False, calibrate_power=True, light_sheets=[True, False, True])
    module = engine.modules[CalibrationAxis.POWER]

    assert engine.calibrate()

    assert log == ["P", "P"]
    assert all(p.light_sheet_indices == (0, 2) for p in module.params)
