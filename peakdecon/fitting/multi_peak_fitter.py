"""
Multi-Peak Fitter Module
========================

Joint optimisation of an overlap group. All member shapes are summed into
one composite model and the Parameter Optimizer runs once over the
concatenated coefficient vector, so that the interaction between
neighbouring peaks is captured. The joint result is then split back into
the member peaks, each getting its own coefficients, area (from its own
shape integral), FWHM, boundaries and a FitResult.

Classes
-------
GroupFit
    Statistics of one joint fit
MultiPeakFitter
    Fits a group of peak candidates against a curve segment
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from peakdecon.data.peak import FitResult
from peakdecon.errors import InsufficientData
from peakdecon.fitting.parameter_optimizer import (
    LeastSquaresObjective,
    LevenbergMarquardtConfig,
    optimize
)
from peakdecon.fitting.peak_functions import multi_peak_function
from peakdecon.fitting.peak_shapes import composite_gradient, get_shape, split_parameters

logger = logging.getLogger(__name__)


@dataclass
class GroupFit:
    """
    Statistics of one (joint or per-peak) fit.

    Attributes:
        r_squared: Coefficient of determination on the fit window (unclamped)
        residual_sum_squares: Sum of squared residuals on the window
        standard_error: Residual standard error sqrt(RSS / dof)
        iterations: Optimizer iterations
        converged: Optimizer convergence flag
        optimizer: Algorithm that was requested
        window: (x_min, x_max) of the fitted segment
        n_points: Samples in the window
        fallback: Fallback algorithm used, if any
    """
    r_squared: float
    residual_sum_squares: float
    standard_error: float
    iterations: int
    converged: bool
    optimizer: str
    window: Tuple[float, float]
    n_points: int
    fallback: Optional[str] = None
    extra: dict = field(default_factory=dict)

    def to_metadata(self):
        return {
            'r_squared': self.r_squared,
            'rss': self.residual_sum_squares,
            'standard_error': self.standard_error,
            'iterations': self.iterations,
            'converged': self.converged,
            'optimizer': self.optimizer,
            'fallback': self.fallback,
            'window': self.window,
        }

    @classmethod
    def combine(cls, fits, optimizer=None):
        """Group statistics of independent per-peak fits (worst R², summed RSS)."""
        fallbacks = [f.fallback for f in fits if f.fallback]
        return cls(
            r_squared=float(min(f.r_squared for f in fits)),
            residual_sum_squares=float(sum(f.residual_sum_squares for f in fits)),
            standard_error=float(max(f.standard_error for f in fits)),
            iterations=int(max(f.iterations for f in fits)),
            converged=all(f.converged for f in fits),
            optimizer=optimizer if optimizer is not None else fits[0].optimizer,
            window=(min(f.window[0] for f in fits), max(f.window[1] for f in fits)),
            n_points=int(sum(f.n_points for f in fits)),
            fallback=fallbacks[0] if fallbacks else None,
        )


def calculate_fit_statistics(y, y_fit, n_params):
    """
    Goodness-of-fit statistics.

    Parameters
    ----------
    y : ndarray
        Observed intensities
    y_fit : ndarray
        Model intensities
    n_params : int
        Number of fitted parameters

    Returns
    -------
    dict
        r_squared (not clamped), adj_r_squared, rss, rmse,
        standard_error, aic, bic
    """
    residuals = y - y_fit
    n = len(y)
    ss_res = float(np.sum(residuals ** 2))
    ss_tot = float(np.sum((y - np.mean(y)) ** 2))
    r_squared = 1 - (ss_res / ss_tot) if ss_tot != 0 else 0.0

    adj_r_squared = (1 - (ss_res / ss_tot) * (n - 1) / (n - n_params - 1)
                     if ss_tot != 0 and (n - n_params - 1) > 0 else r_squared)
    dof = max(1, n - n_params)

    if ss_res > 0:
        aic = n * np.log(ss_res / n) + 2 * n_params
        bic = n * np.log(ss_res / n) + n_params * np.log(n)
    else:
        aic = bic = -np.inf

    return {
        'r_squared': r_squared,
        'adj_r_squared': adj_r_squared,
        'rss': ss_res,
        'rmse': float(np.sqrt(ss_res / n)),
        'standard_error': float(np.sqrt(ss_res / dof)),
        'aic': aic,
        'bic': bic,
    }


def seed_coefficients(peak, shape, fallback_width):
    """Initial coefficients: the peak's own when they fit the shape, else its guess."""
    if peak.coefficients is not None and len(peak.coefficients) == shape.n_params:
        return np.asarray(peak.coefficients, dtype=float).copy()
    fwhm = peak.fwhm if peak.fwhm > 0 else fallback_width
    return shape.initial_guess(peak.center, max(peak.amplitude, 0.0), fwhm)


def apply_fit(peak, shape, coefficients, curve, fit_result, metadata):
    """Write fitted coefficients and derived quantities into a peak."""
    peak.shape = shape.shape_type
    peak.coefficients = np.asarray(coefficients, dtype=float)
    peak.amplitude = float(coefficients[0])
    peak.center = float(coefficients[1])
    peak.fwhm = shape.fwhm(coefficients)
    peak.area = shape.area(coefficients)
    peak.set_boundaries(curve.x[0], curve.x[-1])
    peak.fit = fit_result
    peak.metadata['symmetry'] = shape.symmetry(coefficients)
    peak.metadata.update(metadata)


class MultiPeakFitter:
    """
    Joint fitter for a group of overlapping peaks.

    Attributes
    ----------
    optimizer : optimizer configuration
        Configuration passed to :func:`~peakdecon.fitting.parameter_optimizer.optimize`
    fit_window_size : float
        Window half-width around each member, in units of its FWHM

    Examples
    --------
    >>> fitter = MultiPeakFitter()
    >>> group_fit = fitter.fit(curve, [peak_a, peak_b])
    >>> peak_a.fit.r_squared, peak_a.area
    """

    def __init__(self, optimizer=None, fit_window_size=3.0):
        self.optimizer = optimizer if optimizer is not None else LevenbergMarquardtConfig()
        self.fit_window_size = fit_window_size

    def fit_window(self, curve, peaks):
        """Union of member boundaries and center +/- fit_window_size * fwhm, clipped to the curve."""
        lows = []
        highs = []
        for peak in peaks:
            width = peak.fwhm if peak.fwhm > 0 else self._fallback_width(curve, peak)
            lows.append(peak.center - self.fit_window_size * width)
            highs.append(peak.center + self.fit_window_size * width)
            if peak.has_boundaries:
                lows.append(peak.left_boundary)
                highs.append(peak.right_boundary)
        return max(min(lows), curve.x[0]), min(max(highs), curve.x[-1])

    @staticmethod
    def _fallback_width(curve, peak):
        if peak.has_boundaries:
            return peak.support_width / 2
        return 0.01 * curve.span

    def fit(self, curve, peaks, regularization=0.0, attempt=1, prior_scale=None, limits=None):
        """
        Fit all peaks of a group jointly; the peaks are updated in place.

        Parameters
        ----------
        curve : Curve
            Full curve; only the fit window is used
        peaks : list of PeakCandidate
            Group members, each with its shape tag set
        regularization : float, optional
            Weight of a Tikhonov penalty pulling the coefficients towards
            their initial values (default: 0, no penalty)
        attempt : int, optional
            Attempt number recorded in each FitResult
        prior_scale : array_like, optional
            Per-coefficient scale of the penalty over the concatenated
            vector (default: the magnitude of each initial value)
        limits : tuple of float, optional
            (min, max) range the fit window is clipped to

        Returns
        -------
        GroupFit

        Raises
        ------
        InsufficientData
            When the window holds fewer samples than coefficients
        """
        shapes = [get_shape(peak.shape) for peak in peaks]
        lo, hi = self.fit_window(curve, peaks)
        if limits is not None:
            lo, hi = max(lo, limits[0]), min(hi, limits[1])
        x, y = curve.segment(lo, hi)
        n_params = sum(shape.n_params for shape in shapes)

        if len(x) < n_params:
            raise InsufficientData(
                f"Fit window [{lo:.4g}, {hi:.4g}] has {len(x)} samples for {n_params} coefficients",
                required=n_params, available=len(x)
            )

        x_span = max(hi - lo, curve.spacing)
        initial = []
        lower = []
        upper = []
        for peak, shape in zip(peaks, shapes):
            initial.append(seed_coefficients(peak, shape, self._fallback_width(curve, peak)))
            lo_b, hi_b = shape.default_bounds(x_span, window=(lo, hi))
            lower.append(lo_b)
            upper.append(hi_b)
        initial = np.concatenate(initial)
        bounds = (np.concatenate(lower), np.concatenate(upper))

        types = [shape.shape_type for shape in shapes]
        objective = LeastSquaresObjective(
            lambda xx, p: multi_peak_function(xx, types, p),
            x, y,
            model_jacobian=lambda xx, p: composite_gradient(shapes, xx, p),
            prior=initial if regularization > 0 else None,
            regularization=regularization,
            prior_scale=prior_scale if regularization > 0 else None
        )
        result = optimize(objective, initial, bounds, self.optimizer)

        stats = calculate_fit_statistics(y, multi_peak_function(x, types, result.parameters), n_params)
        group_fit = GroupFit(
            r_squared=stats['r_squared'],
            residual_sum_squares=stats['rss'],
            standard_error=stats['standard_error'],
            iterations=result.iterations,
            converged=result.converged,
            optimizer=result.algorithm,
            window=(float(lo), float(hi)),
            n_points=len(x),
            fallback=result.fallback,
        )

        start = 0
        for peak, shape, coefficients in zip(peaks, shapes, split_parameters(shapes, result.parameters)):
            stop = start + shape.n_params
            covariance = None
            if result.covariance is not None:
                covariance = result.covariance[start:stop, start:stop].copy()
            fit_result = FitResult(
                r_squared=group_fit.r_squared,
                residual_sum_squares=group_fit.residual_sum_squares,
                iterations=group_fit.iterations,
                converged=group_fit.converged,
                standard_error=group_fit.standard_error,
                parameter_errors=result.parameter_errors[start:stop].copy(),
                covariance=covariance,
                optimizer=result.algorithm,
                attempt=attempt,
            )
            apply_fit(peak, shape, coefficients, curve, fit_result, {
                'iterations': group_fit.iterations,
                'converged': group_fit.converged,
                'optimizer': result.algorithm,
                'window': group_fit.window,
                'group_size': len(peaks),
            })
            start = stop

        logger.info("Fitted %d peak(s) on [%.4g, %.4g]: R²=%.4f, %d iterations, converged=%s",
                    len(peaks), lo, hi, group_fit.r_squared, group_fit.iterations, group_fit.converged)
        return group_fit
