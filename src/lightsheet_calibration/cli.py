from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace

import numpy as np

from .adaptation import AdaptiveEngine, FocusAdaptationModule
from .calibration_base import CalibrationAxis
from .config import CalibrationConfig, ExecutionMode, Settings, load_config_json
from .devices import LightSheetMicroscope
from .engine import CalibrationEngine
from .progress import ChartRecorder
from .simulation import SimulatedScene, build_simulated_microscope
from .state import AcquisitionState, InterpolationTables, LightSheetDOF

_AXIS_FLAGS = {
    CalibrationAxis.Z: "calibrate_z",
    CalibrationAxis.ANGLE: "calibrate_angle",
    CalibrationAxis.XY: "calibrate_xy",
    CalibrationAxis.POWER: "calibrate_power",
    CalibrationAxis.HEIGHT_POWER: "calibrate_height_power",
    CalibrationAxis.WIDTH_POWER: "calibrate_width_power",
    CalibrationAxis.WIDTH: "calibrate_width",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Calibrate a simulated lightsheet microscope")
    parser.add_argument("--light-sheets", type=int, default=1, help="Number of simulated light sheets")
    parser.add_argument("--detection-arms", type=int, default=1, help="Number of simulated detection arms")
    parser.add_argument("--seed", type=int, default=0, help="Seed for the simulated misalignments")
    parser.add_argument("--config", default=None, help="JSON settings file (acquisition/calibration/adaptation)")
    parser.add_argument(
        "--axes",
        default="Z",
        help="Comma separated axes to calibrate: Z, A, XY, P, HP, WP, W (empty for none)",
    )
    parser.add_argument("--max-iterations", type=int, default=None, help="Override the per-axis iteration cap")
    parser.add_argument("--load", action="store_true", help="Load the named calibration before running")
    parser.add_argument("--save", action="store_true", help="Save the calibration after running")
    parser.add_argument("--calibration-name", default=None, help="Calibration record name")
    parser.add_argument("--calibration-folder", default=None, help="Folder holding calibration records")
    parser.add_argument("--adapt", action="store_true", help="Run focus adaptation after calibration")
    parser.add_argument("--control-planes", type=int, default=5, help="Control planes for adaptation")
    parser.add_argument(
        "--concurrent",
        action="store_true",
        help="Let metric tasks of successive grid points overlap during adaptation",
    )
    parser.add_argument("--charts-csv", default=None, help="Write recorded chart points to this CSV")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    return parser


def parse_axes(text: str) -> list[CalibrationAxis]:
    axes = []
    for token in text.split(","):
        token = token.strip().upper()
        if not token:
            continue
        try:
            axes.append(CalibrationAxis(token))
        except ValueError:
            valid = ", ".join(axis.value for axis in CalibrationAxis)
            raise ValueError(f"Unknown axis {token!r}; expected one of {valid}") from None
    return axes


def _calibration_config(base: CalibrationConfig, args, axes: list[CalibrationAxis]) -> CalibrationConfig:
    changes: dict[str, object] = {flag: axis in axes for axis, flag in _AXIS_FLAGS.items()}
    if args.max_iterations is not None:
        changes["max_iterations"] = args.max_iterations
    if args.calibration_name is not None:
        changes["calibration_name"] = args.calibration_name
    if args.calibration_folder is not None:
        changes["calibration_folder"] = args.calibration_folder
    return replace(base, **changes)


def demo_scene(number_of_light_sheets: int, number_of_detection_arms: int, seed: int) -> SimulatedScene:
    """Scene with random but moderate misalignments on every device."""

    rng = np.random.default_rng(seed)
    angle = rng.uniform(-0.2, 0.2)
    scale = rng.uniform(0.4, 0.6)
    rotation = np.array([[np.cos(angle), -np.sin(angle)], [np.sin(angle), np.cos(angle)]]) * scale
    return SimulatedScene(
        seed=seed,
        light_sheet_z_offsets=list(rng.uniform(-0.15, 0.15, number_of_light_sheets)),
        detection_z_offsets=[0.0] + list(rng.uniform(-0.1, 0.1, number_of_detection_arms - 1)),
        alpha_offsets=list(rng.uniform(-1.5, 1.5, number_of_light_sheets)),
        light_sheet_efficiencies=list(rng.uniform(0.7, 1.0, number_of_light_sheets)),
        sample_z_slope=0.1,
        beam_matrix=(tuple(rotation[0]), tuple(rotation[1])),
        beam_origin=tuple(rng.uniform(-0.1, 0.1, 2)),
    )


def _run_adaptation(microscope: LightSheetMicroscope, settings: Settings, args, recorder: ChartRecorder) -> bool:
    adaptation = settings.adaptation
    if args.concurrent:
        adaptation = replace(adaptation, execution_mode=ExecutionMode.CONCURRENT)
    arm_z = microscope.detection_arms[0].z
    state = AcquisitionState(
        InterpolationTables(args.control_planes, microscope.number_of_light_sheets),
        number_of_detection_arms=microscope.number_of_detection_arms,
        z_min=arm_z.min,
        z_max=arm_z.max,
    )
    module = FocusAdaptationModule(
        microscope, adaptation, acquisition_config=settings.acquisition, progress=recorder
    )
    engine = AdaptiveEngine(
        microscope, state, [module], config=adaptation, acquisition_config=settings.acquisition
    )
    ok = engine.run()
    table = state.tables.table(LightSheetDOF.IZ)
    for l in range(microscope.number_of_light_sheets):
        values = " ".join(f"{v:+0.3f}" for v in table[:, l])
        print(f"adaptation light_sheet={l} IZ=[{values}]")
    return ok


def main() -> int:
    args = build_parser().parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    try:
        settings = load_config_json(args.config) if args.config else Settings()
        axes = parse_axes(args.axes)
        calibration = _calibration_config(settings.calibration, args, axes)
        if args.control_planes < 2:
            raise ValueError("--control-planes must be >= 2")
        if args.adapt and settings.acquisition.recycler_capacity < args.detection_arms:
            raise ValueError("recycler_capacity must be >= --detection-arms when adapting")
        microscope = build_simulated_microscope(
            args.light_sheets,
            args.detection_arms,
            demo_scene(args.light_sheets, args.detection_arms, args.seed),
        )
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    recorder = ChartRecorder()
    engine = CalibrationEngine(microscope, calibration, acquisition_config=settings.acquisition, progress=recorder)

    if args.load and not engine.load():
        print(f"Error: calibration {calibration.calibration_name!r} not found", file=sys.stderr)
        return 1

    ok = engine.calibrate() if axes else True
    if ok and args.adapt:
        ok = _run_adaptation(microscope, settings, args, recorder)

    if args.save:
        path = engine.save()
        print(f"saved={path}")
    if args.charts_csv:
        recorder.save_csv(args.charts_csv)

    for ls in microscope.light_sheets:
        print(
            f"light_sheet={ls.index} z={ls.z_function.slope:+0.4f}x{ls.z_function.offset:+0.4f} "
            f"alpha_offset={ls.alpha_function.offset:+0.3f} power_gain={ls.power_function.slope:0.3f}"
        )
    print(
        f"calibrated={ok} axes={','.join(axis.value for axis in axes) or '-'} "
        f"light_sheets={microscope.number_of_light_sheets} detection_arms={microscope.number_of_detection_arms}"
    )
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
