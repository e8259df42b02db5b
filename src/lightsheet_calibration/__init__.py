"""Closed-loop calibration and adaptation for multi-view lightsheet microscopes."""

from .acquisition import AcquisitionQueue, FrameState, ImageStack, StackRecycler
from .adaptation import (
    AdaptiveEngine,
    FocusAdaptationModule,
    NDIterator,
    ResultTable,
    StandardAdaptationModule,
    WidthAdaptationModule,
)
from .calibration_base import (
    AngleParams,
    CalibrationAxis,
    PowerParams,
    PowerRatioParams,
    WidthParams,
    XYParams,
    ZParams,
)
from .cancellation import CancellationToken
from .config import AcquisitionConfig, AdaptationConfig, CalibrationConfig, ExecutionMode, Settings, load_config_json
from .devices import BoundedSetting, DetectionArm, LightSheet, LightSheetMicroscope
from .engine import CalibrationEngine
from .fitting import FitResult, fit_argmax
from .functions import AffineFunction, PolynomialFunction
from .interfaces import AcquisitionError, AcquisitionGateway, AcquisitionTimeout, ProgressSink
from .layout import ControlPlaneLayout
from .positioner import LightSheetPositioner
from .progress import ChartRecorder
from .simulation import SimulatedGateway, SimulatedScene, build_simulated_microscope
from .state import AcquisitionState, InterpolationTables, LightSheetDOF

__all__ = [
    "AcquisitionQueue",
    "FrameState",
    "ImageStack",
    "StackRecycler",
    "AdaptiveEngine",
    "FocusAdaptationModule",
    "NDIterator",
    "ResultTable",
    "StandardAdaptationModule",
    "WidthAdaptationModule",
    "AngleParams",
    "CalibrationAxis",
    "PowerParams",
    "PowerRatioParams",
    "WidthParams",
    "XYParams",
    "ZParams",
    "CancellationToken",
    "AcquisitionConfig",
    "AdaptationConfig",
    "CalibrationConfig",
    "ExecutionMode",
    "Settings",
    "load_config_json",
    "BoundedSetting",
    "DetectionArm",
    "LightSheet",
    "LightSheetMicroscope",
    "CalibrationEngine",
    "FitResult",
    "fit_argmax",
    "AffineFunction",
    "PolynomialFunction",
    "AcquisitionError",
    "AcquisitionGateway",
    "AcquisitionTimeout",
    "ProgressSink",
    "ControlPlaneLayout",
    "LightSheetPositioner",
    "ChartRecorder",
    "SimulatedGateway",
    "SimulatedScene",
    "build_simulated_microscope",
    "AcquisitionState",
    "InterpolationTables",
    "LightSheetDOF",
]
