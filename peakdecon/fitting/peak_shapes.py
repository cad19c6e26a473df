"""
Peak Shape Model
================

Capability records for every supported peak shape. Each
:class:`PeakShape` bundles the value function with its parameter names,
default bounds, initial-guess heuristic, gradient, area and FWHM. Shapes
are looked up by :class:`~peakdecon.data.peak.ShapeType` through
:func:`get_shape`; callers never branch on the shape type themselves.

Closed forms are used where they exist (gradients of Gaussian, Lorentzian
and pseudo-Voigt; areas of Gaussian, Lorentzian, pseudo-Voigt, EMG,
BiGaussian and the Gaussian mixture). Everything else falls back to central
finite differences or ``scipy.integrate.quad``.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
from scipy.integrate import quad

from peakdecon.data.peak import ShapeType
from peakdecon.fitting.peak_functions import PEAK_FUNCTIONS, PARAMETER_NAMES, FWHM_TO_SIGMA

SQRT_2PI = np.sqrt(2 * np.pi)

# Relative step for finite-difference gradients
GRADIENT_STEP = 1e-6

# Integration / FWHM search range in units of the widest width parameter
EXTENT_WIDTHS = 50.0


@dataclass(frozen=True)
class PeakShape:
    """
    Capabilities of one peak shape.

    Attributes:
        shape_type: The shape tag
        parameter_names: Coefficient names, in vector order
        function: Vectorised value function f(x, *params)
        bound_kinds: One bound rule per coefficient ("amplitude", "center",
            "width", "fraction", "offset" or a fixed (low, high) pair)
        guess: Initial-guess heuristic guess(center, amplitude, fwhm)
        gradient_fn: Closed-form gradient, or None for finite differences
        area_fn: Closed-form area, or None for numerical quadrature
        fwhm_fn: Closed-form FWHM, or None for a numerical search
        symmetry_fn: Symmetry score in [0, 1], or None for symmetric shapes
    """
    shape_type: ShapeType
    parameter_names: Tuple[str, ...]
    function: Callable
    bound_kinds: Tuple
    guess: Callable
    gradient_fn: Optional[Callable] = None
    area_fn: Optional[Callable] = None
    fwhm_fn: Optional[Callable] = None
    symmetry_fn: Optional[Callable] = None

    @property
    def name(self):
        return self.shape_type.value

    @property
    def n_params(self):
        return len(self.parameter_names)

    @property
    def has_analytic_gradient(self):
        return self.gradient_fn is not None

    def evaluate(self, x, params):
        return self.function(x, *params)

    def gradient(self, x, params):
        """Partial derivatives, shape (len(x), n_params)."""
        x = np.atleast_1d(np.asarray(x, dtype=float))
        params = np.asarray(params, dtype=float)
        if self.gradient_fn is not None:
            return self.gradient_fn(x, *params)

        jac = np.empty((len(x), self.n_params))
        for i in range(self.n_params):
            h = GRADIENT_STEP * max(1.0, abs(params[i]))
            step = np.zeros_like(params)
            step[i] = h
            jac[:, i] = (self.function(x, *(params + step)) - self.function(x, *(params - step))) / (2 * h)
        return jac

    def width(self, params):
        """Widest width-like coefficient, used to size search ranges."""
        widths = [abs(params[i]) for i, kind in enumerate(self.bound_kinds) if kind == "width"]
        return max(widths) if widths else 1.0

    def area(self, params):
        if self.area_fn is not None:
            return float(self.area_fn(*params))
        center = params[1]
        extent = EXTENT_WIDTHS * self.width(params)
        value, _ = quad(lambda t: float(self.function(t, *params)),
                        center - extent, center + extent, points=[center], limit=200)
        return float(value)

    def fwhm(self, params):
        if self.fwhm_fn is not None:
            return float(self.fwhm_fn(*params))
        return numeric_fwhm(self.function, params, params[1], self.width(params))

    def symmetry(self, params):
        if self.symmetry_fn is None:
            return 1.0
        return float(np.clip(self.symmetry_fn(*params), 0.0, 1.0))

    def initial_guess(self, center, amplitude, fwhm):
        return np.asarray(self.guess(center, amplitude, fwhm), dtype=float)

    def default_bounds(self, x_span, window=None):
        """
        Default coefficient bounds.

        Parameters
        ----------
        x_span : float
            Span of the data being fitted; scales width and offset bounds
        window : tuple of float, optional
            (min, max) range allowed for the center

        Returns
        -------
        lower, upper : ndarray
        """
        lower = []
        upper = []
        for kind in self.bound_kinds:
            if kind == "amplitude":
                lo, hi = 0.0, np.inf
            elif kind == "center":
                lo, hi = window if window is not None else (-np.inf, np.inf)
            elif kind == "width":
                lo, hi = 1e-3 * x_span, x_span
            elif kind == "fraction":
                lo, hi = 0.0, 1.0
            elif kind == "offset":
                lo, hi = -0.5 * x_span, 0.5 * x_span
            else:
                lo, hi = kind
            lower.append(lo)
            upper.append(hi)
        return np.asarray(lower, dtype=float), np.asarray(upper, dtype=float)

    def parameter_dict(self, params):
        return {name: float(value) for name, value in zip(self.parameter_names, params)}


def numeric_fwhm(function, params, center, width, n_points=4001):
    """Full width at half maximum found on a dense grid.

    The half-maximum crossings either side of the maximum are linearly
    interpolated. Returns the grid extent when a crossing is missing.
    """
    extent = EXTENT_WIDTHS * width
    grid = np.linspace(center - extent, center + extent, n_points)
    values = function(grid, *params)
    peak_idx = int(np.argmax(values))
    half = values[peak_idx] / 2.0
    if half <= 0:
        return 0.0

    below_left = np.nonzero(values[:peak_idx] < half)[0]
    below_right = np.nonzero(values[peak_idx:] < half)[0]
    if len(below_left) == 0 or len(below_right) == 0:
        return float(grid[-1] - grid[0])

    i = below_left[-1]
    left = np.interp(half, [values[i], values[i + 1]], [grid[i], grid[i + 1]])
    j = peak_idx + below_right[0]
    right = np.interp(half, [values[j], values[j - 1]], [grid[j], grid[j - 1]])
    return float(right - left)


# Closed-form gradients

def _gaussian_gradient(x, amplitude, center, sigma):
    z = (x - center) / sigma
    g = np.exp(-0.5 * z ** 2)
    return np.column_stack([g, amplitude * g * z / sigma, amplitude * g * z ** 2 / sigma])


def _lorentzian_gradient(x, amplitude, center, gamma):
    u = (x - center) / gamma
    lor = 1 / (1 + u ** 2)
    return np.column_stack([lor,
                            amplitude * lor ** 2 * 2 * u / gamma,
                            amplitude * lor ** 2 * 2 * u ** 2 / gamma])


def _pseudo_voigt_gradient(x, amplitude, center, sigma, eta):
    gamma = 0.5 * FWHM_TO_SIGMA * sigma
    z = (x - center) / sigma
    u = (x - center) / gamma
    g = np.exp(-0.5 * z ** 2)
    lor = 1 / (1 + u ** 2)
    d_center = eta * lor ** 2 * 2 * u / gamma + (1 - eta) * g * z / sigma
    d_sigma = eta * lor ** 2 * 2 * u ** 2 / sigma + (1 - eta) * g * z ** 2 / sigma
    return np.column_stack([eta * lor + (1 - eta) * g,
                            amplitude * d_center,
                            amplitude * d_sigma,
                            amplitude * (lor - g)])


# Closed-form areas

def _gaussian_area(amplitude, center, sigma):
    return amplitude * sigma * SQRT_2PI


def _lorentzian_area(amplitude, center, gamma):
    return amplitude * gamma * np.pi


def _pseudo_voigt_area(amplitude, center, sigma, eta):
    gamma = 0.5 * FWHM_TO_SIGMA * sigma
    return amplitude * (eta * gamma * np.pi + (1 - eta) * sigma * SQRT_2PI)


def _emg_area(amplitude, center, sigma, tau):
    return amplitude * sigma * SQRT_2PI


def _bigaussian_area(amplitude, center, sigma_left, sigma_right):
    return amplitude * np.sqrt(np.pi / 2) * (sigma_left + sigma_right)


def _gmg_area(amplitude, center, sigma, weight, offset, sigma2):
    return amplitude * SQRT_2PI * (weight * sigma + (1 - weight) * sigma2)


def _sigma_from_fwhm(fwhm):
    return fwhm / FWHM_TO_SIGMA


SHAPES = {
    ShapeType.GAUSSIAN: PeakShape(
        shape_type=ShapeType.GAUSSIAN,
        parameter_names=PARAMETER_NAMES[ShapeType.GAUSSIAN],
        function=PEAK_FUNCTIONS[ShapeType.GAUSSIAN],
        bound_kinds=("amplitude", "center", "width"),
        guess=lambda c, a, w: [a, c, _sigma_from_fwhm(w)],
        gradient_fn=_gaussian_gradient,
        area_fn=_gaussian_area,
        fwhm_fn=lambda a, c, s: FWHM_TO_SIGMA * s,
    ),
    ShapeType.LORENTZIAN: PeakShape(
        shape_type=ShapeType.LORENTZIAN,
        parameter_names=PARAMETER_NAMES[ShapeType.LORENTZIAN],
        function=PEAK_FUNCTIONS[ShapeType.LORENTZIAN],
        bound_kinds=("amplitude", "center", "width"),
        guess=lambda c, a, w: [a, c, 0.5 * w],
        gradient_fn=_lorentzian_gradient,
        area_fn=_lorentzian_area,
        fwhm_fn=lambda a, c, g: 2 * g,
    ),
    ShapeType.PSEUDO_VOIGT: PeakShape(
        shape_type=ShapeType.PSEUDO_VOIGT,
        parameter_names=PARAMETER_NAMES[ShapeType.PSEUDO_VOIGT],
        function=PEAK_FUNCTIONS[ShapeType.PSEUDO_VOIGT],
        bound_kinds=("amplitude", "center", "width", "fraction"),
        guess=lambda c, a, w: [a, c, _sigma_from_fwhm(w), 0.5],
        gradient_fn=_pseudo_voigt_gradient,
        area_fn=_pseudo_voigt_area,
        fwhm_fn=lambda a, c, s, eta: FWHM_TO_SIGMA * s,
    ),
    ShapeType.EMG: PeakShape(
        shape_type=ShapeType.EMG,
        parameter_names=PARAMETER_NAMES[ShapeType.EMG],
        function=PEAK_FUNCTIONS[ShapeType.EMG],
        bound_kinds=("amplitude", "center", "width", "width"),
        guess=lambda c, a, w: [a, c, _sigma_from_fwhm(w), 0.5 * _sigma_from_fwhm(w)],
        area_fn=_emg_area,
        symmetry_fn=lambda a, c, s, t: s / (s + t),
    ),
    ShapeType.BIGAUSSIAN: PeakShape(
        shape_type=ShapeType.BIGAUSSIAN,
        parameter_names=PARAMETER_NAMES[ShapeType.BIGAUSSIAN],
        function=PEAK_FUNCTIONS[ShapeType.BIGAUSSIAN],
        bound_kinds=("amplitude", "center", "width", "width"),
        guess=lambda c, a, w: [a, c, _sigma_from_fwhm(w), _sigma_from_fwhm(w)],
        area_fn=_bigaussian_area,
        fwhm_fn=lambda a, c, sl, sr: 0.5 * FWHM_TO_SIGMA * (sl + sr),
        symmetry_fn=lambda a, c, sl, sr: min(sl, sr) / max(sl, sr),
    ),
    ShapeType.VOIGT_EXPONENTIAL_TAIL: PeakShape(
        shape_type=ShapeType.VOIGT_EXPONENTIAL_TAIL,
        parameter_names=PARAMETER_NAMES[ShapeType.VOIGT_EXPONENTIAL_TAIL],
        function=PEAK_FUNCTIONS[ShapeType.VOIGT_EXPONENTIAL_TAIL],
        bound_kinds=("amplitude", "center", "width", "width", "width"),
        guess=lambda c, a, w: [a, c, _sigma_from_fwhm(w), 0.25 * w, _sigma_from_fwhm(w)],
        symmetry_fn=lambda a, c, s, g, t: s / (s + t),
    ),
    ShapeType.PEARSON_IV: PeakShape(
        shape_type=ShapeType.PEARSON_IV,
        parameter_names=PARAMETER_NAMES[ShapeType.PEARSON_IV],
        function=PEAK_FUNCTIONS[ShapeType.PEARSON_IV],
        bound_kinds=("amplitude", "center", "width", (0.51, 50.0), (-20.0, 20.0)),
        # m = 2 gives FWHM = 2 * width * sqrt(sqrt(2) - 1)
        guess=lambda c, a, w: [a, c, 0.5 * w / np.sqrt(np.sqrt(2) - 1), 2.0, 0.0],
        symmetry_fn=lambda a, c, w, m, nu: 1 / (1 + abs(nu) / (2 * m)),
    ),
    ShapeType.NLC: PeakShape(
        shape_type=ShapeType.NLC,
        parameter_names=PARAMETER_NAMES[ShapeType.NLC],
        function=PEAK_FUNCTIONS[ShapeType.NLC],
        bound_kinds=("amplitude", "center", "width", (-1.0, 1.0), (-1.0, 1.0)),
        guess=lambda c, a, w: [a, c, _sigma_from_fwhm(w), 0.0, 0.0],
        symmetry_fn=lambda a, c, s, skew, kurt: 1 - min(1.0, abs(skew)),
    ),
    ShapeType.GMG_BAYESIAN: PeakShape(
        shape_type=ShapeType.GMG_BAYESIAN,
        parameter_names=PARAMETER_NAMES[ShapeType.GMG_BAYESIAN],
        function=PEAK_FUNCTIONS[ShapeType.GMG_BAYESIAN],
        bound_kinds=("amplitude", "center", "width", "fraction", "offset", "width"),
        guess=lambda c, a, w: [a, c, _sigma_from_fwhm(w), 0.7, 0.0, 1.5 * _sigma_from_fwhm(w)],
        area_fn=_gmg_area,
        symmetry_fn=lambda a, c, s, wt, off, s2: 1 - min(1.0, abs(off) / (s + s2)),
    ),
}


def get_shape(shape_type) -> PeakShape:
    """Look up the capability record for a shape type or shape name."""
    return SHAPES[ShapeType.parse(shape_type)]


def split_parameters(shapes, params):
    """Split a concatenated coefficient vector into one array per shape."""
    params = np.asarray(params, dtype=float)
    pieces = []
    start = 0
    for shape in shapes:
        pieces.append(params[start:start + shape.n_params].copy())
        start += shape.n_params
    return pieces


def composite_gradient(shapes, x, params):
    """Jacobian of the sum of shapes with respect to the concatenated vector."""
    return np.hstack([shape.gradient(x, piece)
                      for shape, piece in zip(shapes, split_parameters(shapes, params))])
