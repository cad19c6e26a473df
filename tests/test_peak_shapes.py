import numpy as np
import pytest
from scipy.integrate import trapezoid

from peakdecon.data import ShapeType
from peakdecon.fitting.peak_functions import (
    FWHM_TO_SIGMA,
    exponentially_modified_gaussian,
    gaussian_peak,
    get_parameter_names,
    get_params_per_peak,
    multi_peak_function
)
from peakdecon.fitting.peak_shapes import SHAPES, get_shape, numeric_fwhm, split_parameters


@pytest.mark.parametrize("shape_type", list(ShapeType))
def test_every_shape_peaks_near_its_center(shape_type):
    shape = get_shape(shape_type)
    params = shape.initial_guess(5.0, 10.0, 0.8)
    x = np.linspace(0.0, 10.0, 2001)
    y = shape.evaluate(x, params)

    assert len(params) == shape.n_params == get_params_per_peak(shape_type)
    assert tuple(get_parameter_names(shape_type.value)) == shape.parameter_names
    assert np.all(np.isfinite(y))
    assert abs(x[np.argmax(y)] - 5.0) < 0.8
    assert shape.area(params) > 0
    assert shape.fwhm(params) > 0
    assert 0.0 <= shape.symmetry(params) <= 1.0


@pytest.mark.parametrize("shape_type", list(ShapeType))
def test_area_matches_numerical_integral(shape_type):
    shape = get_shape(shape_type)
    params = shape.initial_guess(50.0, 3.0, 1.0)
    x = np.linspace(0.0, 100.0, 200001)
    integral = trapezoid(shape.evaluate(x, params), x)

    # heavy-tailed shapes lose a little area outside the grid
    assert shape.area(params) == pytest.approx(integral, rel=2e-2)


@pytest.mark.parametrize("shape_type", [ShapeType.GAUSSIAN, ShapeType.LORENTZIAN,
                                        ShapeType.PSEUDO_VOIGT])
def test_closed_form_gradient_matches_finite_differences(shape_type):
    shape = get_shape(shape_type)
    params = shape.initial_guess(2.0, 4.0, 0.6)
    x = np.linspace(0.0, 4.0, 41)
    analytic = shape.gradient(x, params)

    numeric = np.empty_like(analytic)
    for i in range(len(params)):
        step = np.zeros_like(params)
        step[i] = 1e-6
        numeric[:, i] = (shape.evaluate(x, params + step) - shape.evaluate(x, params - step)) / 2e-6

    np.testing.assert_allclose(analytic, numeric, rtol=1e-4, atol=1e-6)


def test_gaussian_fwhm_and_area_closed_forms():
    shape = get_shape("gaussian")
    sigma = 0.5 / FWHM_TO_SIGMA
    params = np.array([100.0, 10.0, sigma])

    assert shape.fwhm(params) == pytest.approx(0.5)
    assert shape.area(params) == pytest.approx(100.0 * sigma * np.sqrt(2 * np.pi))
    assert numeric_fwhm(shape.function, params, 10.0, sigma) == pytest.approx(0.5, rel=1e-3)


def test_emg_reduces_to_gaussian_for_small_tau():
    x = np.linspace(-3.0, 3.0, 121)
    emg = exponentially_modified_gaussian(x, 10.0, 0.0, 0.5, 1e-6)
    np.testing.assert_allclose(emg, gaussian_peak(x, 10.0, 0.0, 0.5), atol=1e-4)


def test_emg_is_finite_for_narrow_and_wide_tails():
    x = np.linspace(-50.0, 50.0, 1001)
    for tau in (1e-4, 0.01, 1.0, 100.0):
        assert np.all(np.isfinite(exponentially_modified_gaussian(x, 1.0, 0.0, 0.3, tau)))


def test_multi_peak_function_sums_members():
    x = np.linspace(0.0, 10.0, 101)
    params = [1.0, 3.0, 0.5, 2.0, 7.0, 1.0]
    expected = gaussian_peak(x, 1.0, 3.0, 0.5) + gaussian_peak(x, 2.0, 7.0, 1.0)
    np.testing.assert_allclose(multi_peak_function(x, ["gaussian", "gaussian"], params), expected)


def test_default_bounds_follow_bound_kinds():
    shape = get_shape(ShapeType.PSEUDO_VOIGT)
    lower, upper = shape.default_bounds(4.0, window=(1.0, 5.0))

    np.testing.assert_array_equal(lower, [0.0, 1.0, 4e-3, 0.0])
    np.testing.assert_array_equal(upper, [np.inf, 5.0, 4.0, 1.0])


def test_split_parameters_by_shape():
    shapes = [SHAPES[ShapeType.GAUSSIAN], SHAPES[ShapeType.EMG]]
    pieces = split_parameters(shapes, np.arange(7.0))
    np.testing.assert_array_equal(pieces[0], [0.0, 1.0, 2.0])
    np.testing.assert_array_equal(pieces[1], [3.0, 4.0, 5.0, 6.0])
