import dataclasses

import numpy as np
import pytest

from allometric.pipeline import (
    AllometricEquation,
    DomainInputError,
    build_equation,
    fit_ols,
)


def test_equation_carries_fit_coefficients():
    fit = fit_ols([[1.0, 0.5], [1.2, 1.1], [1.6, 1.9], [1.9, 2.4]])
    eq = build_equation(fit)
    assert eq.slope == fit.slope
    assert eq.intercept == fit.intercept

    xs = np.array([0.3, 1.0, 1.7])
    np.testing.assert_array_equal(eq.predict_log(xs), fit.slope * xs + fit.intercept)


def test_predict_original_power_law():
    eq = AllometricEquation(slope=2.0, intercept=0.0)
    assert eq.predict_original(50.0) == pytest.approx(2500.0)
    assert isinstance(eq.predict_original(50.0), float)

    eq = AllometricEquation(slope=2.5, intercept=-1.0)
    assert eq.multiplier == pytest.approx(0.1)
    np.testing.assert_allclose(
        eq.predict_original([4.0, 16.0]), [0.1 * 4.0**2.5, 0.1 * 16.0**2.5]
    )


@pytest.mark.parametrize("value", [0.0, -5.0, [10.0, 0.0], float("nan")])
def test_predict_original_rejects_non_positive(value):
    eq = AllometricEquation(slope=2.0, intercept=0.0)
    with pytest.raises(DomainInputError, match="non-positive explanatory value"):
        eq.predict_original(value)


def test_equation_is_immutable():
    eq = AllometricEquation(slope=2.0, intercept=0.0)
    with pytest.raises(dataclasses.FrozenInstanceError):
        eq.slope = 3.0


def test_describe_renders_both_forms():
    text = AllometricEquation(slope=2.3456, intercept=-1.2).describe("DBH", "Ptot")
    assert "log10(Ptot) = 2.3456 * log10(DBH) - 1.2000" in text
    assert "Ptot = 0.0630957 * DBH^2.3456" in text
