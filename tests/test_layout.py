import pytest

from lightsheet_calibration.layout import ControlPlaneLayout, circular_layout, linear_layout


def test_linear_layout_is_evenly_spaced() -> None:
    assert [linear_layout(5, i) for i in range(5)] == pytest.approx([0.0, 0.25, 0.5, 0.75, 1.0])


def test_circular_layout_matches_cosine_projection() -> None:
    assert circular_layout(3, 0) == pytest.approx(0.0)
    assert circular_layout(3, 1) == pytest.approx(0.5)
    assert circular_layout(3, 2) == pytest.approx(1.0)
    assert circular_layout(5, 1) == pytest.approx(0.5 * (1.0 - 2**-0.5))


def test_circular_layout_is_denser_near_the_ends() -> None:
    assert circular_layout(5, 1) < linear_layout(5, 1)
    assert circular_layout(5, 3) > linear_layout(5, 3)


def test_layout_enum_dispatches() -> None:
    assert ControlPlaneLayout.LINEAR.layout(4, 1) == pytest.approx(1 / 3)
    assert ControlPlaneLayout.CIRCULAR.layout(4, 1) == pytest.approx(circular_layout(4, 1))


def test_layout_rejects_bad_arguments() -> None:
    with pytest.raises(ValueError, match="two control planes"):
        linear_layout(1, 0)
    with pytest.raises(IndexError):
        circular_layout(3, 3)
    with pytest.raises(IndexError):
        linear_layout(3, -1)
