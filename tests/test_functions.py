import pytest

from lightsheet_calibration.devices import BoundedSetting, LightSheet
from lightsheet_calibration.functions import AffineFunction, PolynomialFunction


def test_affine_compose_applies_inner_first() -> None:
    f = AffineFunction(2.0, 1.0)
    f.compose_with(AffineFunction(3.0, 4.0))

    assert f.slope == pytest.approx(6.0)
    assert f.offset == pytest.approx(9.0)
    assert f(1.0) == pytest.approx(15.0)


def test_affine_inverse_round_trips() -> None:
    f = AffineFunction(2.0, -0.5)
    assert f.inverse()(f(3.0)) == pytest.approx(3.0)

    with pytest.raises(ValueError, match="zero slope"):
        AffineFunction(0.0, 1.0).inverse()


def test_affine_identity_and_dict() -> None:
    assert AffineFunction.identity().is_identity()
    f = AffineFunction(1.25, -0.125)
    assert AffineFunction.from_dict(f.to_dict()) == f


def test_polynomial_evaluates_ascending_coefficients() -> None:
    p = PolynomialFunction([1.0, 2.0, 3.0])

    assert p.degree == 2
    assert p(2.0) == pytest.approx(17.0)
    assert PolynomialFunction.constant(0.5)(10.0) == pytest.approx(0.5)
    assert PolynomialFunction.from_dict(p.to_dict()) == p


def test_bounded_setting_clamps_and_snaps() -> None:
    s = BoundedSetting(0.0, -1.0, 1.0, granularity=0.25)

    assert s.set(2.0) == 1.0
    assert s.set(0.3) == pytest.approx(0.25)
    assert s.span == pytest.approx(2.0)
    assert s.center == pytest.approx(0.0)

    with pytest.raises(ValueError, match="max must be >= min"):
        BoundedSetting(0.0, 1.0, -1.0)


def test_light_sheet_effective_power_follows_adaptation_flag() -> None:
    ls = LightSheet(index=0)
    ls.power_function = AffineFunction(2.0, 0.0)
    ls.height_power_function = PolynomialFunction([0.5])

    assert ls.effective_power(0.25, 0.0, 1.0) == pytest.approx(0.25)
    ls.adapt_power_to_width_height = False
    assert ls.effective_power(0.25, 0.0, 1.0) == pytest.approx(0.5)


def test_light_sheet_reset_functions() -> None:
    ls = LightSheet(index=0)
    ls.z_function = AffineFunction(2.0, 1.0)
    ls.width_power_function = PolynomialFunction([0.1, 0.2])

    ls.reset_functions()

    assert ls.z_function.is_identity()
    assert ls.width_power_function.coefficients == [1.0]
