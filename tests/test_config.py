import json

import pytest

from lightsheet_calibration.config import (
    AcquisitionConfig,
    AdaptationConfig,
    CalibrationConfig,
    ExecutionMode,
    load_config_json,
)


def test_load_config_json_reads_sections(tmp_path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps(
            {
                "acquisition": {"base_timeout_s": 5.0, "recycler_capacity": 2},
                "calibration": {"calibrate_angle": True, "light_sheets": [True, False]},
                "adaptation": {"execution_mode": "concurrent", "number_of_samples": 7},
            }
        ),
        encoding="utf-8",
    )

    settings = load_config_json(path)

    assert settings.acquisition.timeout_for(3) == pytest.approx(8.0)
    assert settings.acquisition.recycler_capacity == 2
    assert settings.calibration.calibrate_angle
    assert settings.calibration.is_light_sheet_enabled(0)
    assert not settings.calibration.is_light_sheet_enabled(1)
    assert settings.calibration.is_light_sheet_enabled(5)
    assert settings.adaptation.execution_mode is ExecutionMode.CONCURRENT
    assert settings.adaptation.number_of_samples == 7


def test_load_config_json_rejects_unknown_keys(tmp_path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"calibration": {"calibrate_q": True}}), encoding="utf-8")
    with pytest.raises(ValueError, match="calibrate_q"):
        load_config_json(path)

    path.write_text(json.dumps({"viewer": {}}), encoding="utf-8")
    with pytest.raises(ValueError, match="Unknown config sections"):
        load_config_json(path)


def test_missing_sections_use_defaults(tmp_path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{}", encoding="utf-8")

    settings = load_config_json(path)

    assert settings.calibration.max_iterations == 3
    assert settings.adaptation.execution_mode is ExecutionMode.SERIAL


def test_config_validation() -> None:
    with pytest.raises(ValueError, match="max_iterations"):
        CalibrationConfig(max_iterations=0)
    with pytest.raises(ValueError, match="z_threshold"):
        CalibrationConfig(z_threshold=-1.0)
    with pytest.raises(ValueError, match="probability_threshold"):
        AdaptationConfig(probability_threshold=1.5)
    with pytest.raises(ValueError, match="recycler_capacity"):
        AcquisitionConfig(recycler_capacity=0)
    with pytest.raises(ValueError):
        AdaptationConfig(execution_mode="sometimes")
