"""
Fast per-peak fitting (FBF) for lightly overlapping groups.

Each peak is seeded from the intensity moments inside its own boundaries
and then fitted on its own support, independently of its neighbours,
which are held at their moment estimates.
The fast path is ``scipy.optimize.curve_fit``; when it fails, or when a
non Levenberg-Marquardt optimizer is requested (escalated retries), the
peak is fitted through :func:`~peakdecon.fitting.parameter_optimizer.optimize`
with a light pull towards the moment estimate.
"""

import logging

import numpy as np
from scipy.optimize import curve_fit

from peakdecon.data.peak import FitResult
from peakdecon.errors import InsufficientData, InvalidConfiguration
from peakdecon.fitting.multi_peak_fitter import (
    GroupFit,
    apply_fit,
    calculate_fit_statistics,
    seed_coefficients
)
from peakdecon.fitting.parameter_optimizer import (
    LeastSquaresObjective,
    LevenbergMarquardtConfig,
    optimize
)
from peakdecon.fitting.peak_functions import FWHM_TO_SIGMA
from peakdecon.fitting.peak_shapes import get_shape

logger = logging.getLogger(__name__)


class FBFStrategy:
    """
    Independent fast fits for LightOverlap groups.

    Parameters
    ----------
    max_iterations : int
        Iteration budget per peak (curve_fit gets this many evaluations per
        coefficient)
    convergence_threshold : float
        Relative tolerance passed to the optimizer
    regularization : float
        Weight of the pull towards the moment estimate in the fallback fit
    """

    name = "fbf"

    def __init__(self, max_iterations=100, convergence_threshold=1e-6, regularization=0.01,
                 fit_window_size=3.0):
        if max_iterations < 1:
            raise InvalidConfiguration("fbf.max_iterations must be positive")
        if convergence_threshold <= 0:
            raise InvalidConfiguration("fbf.convergence_threshold must be positive")
        if regularization < 0:
            raise InvalidConfiguration("fbf.regularization must be non-negative")
        self.max_iterations = max_iterations
        self.convergence_threshold = convergence_threshold
        self.regularization = regularization
        self.fit_window_size = fit_window_size

    def prepare(self, curve, peaks):
        """Moment-based seeding inside each peak's own boundaries."""
        for peak in peaks:
            peak.strategy = self.name
            x, y = curve.segment(peak.left_boundary, peak.right_boundary)
            weights = np.clip(y - np.min(y), 0.0, None) if len(y) else y
            shape = get_shape(peak.shape)

            if len(x) >= 3 and weights.sum() > 0:
                centroid = float(np.sum(weights * x) / np.sum(weights))
                variance = float(np.sum(weights * (x - centroid) ** 2) / np.sum(weights))
                fwhm = FWHM_TO_SIGMA * np.sqrt(variance) if variance > 0 else peak.fwhm
                # keep the detected center if the centroid is pulled off the support
                if peak.left_boundary < centroid < peak.right_boundary:
                    peak.center = centroid
                peak.amplitude = float(max(curve.intensity_at(peak.center), peak.amplitude * 0.5))
                peak.fwhm = float(fwhm) if fwhm > 0 else peak.fwhm

            fwhm = peak.fwhm if peak.fwhm > 0 else 0.01 * curve.span
            peak.coefficients = shape.initial_guess(peak.center, peak.amplitude, fwhm)
            peak.metadata['fbf_processed'] = True

    def fit(self, curve, peaks, optimizer, attempt=1):
        use_curve_fit = isinstance(optimizer, LevenbergMarquardtConfig)
        seeds = [(get_shape(p.shape), seed_coefficients(p, get_shape(p.shape), 0.01 * curve.span))
                 for p in peaks]
        per_peak = []
        for i, peak in enumerate(peaks):
            neighbours = seeds[:i] + seeds[i + 1:]
            per_peak.append(self._fit_peak(curve, peak, neighbours, optimizer, use_curve_fit, attempt))

        total_area = sum(max(p.area, 0.0) for p in peaks)
        for peak in peaks:
            peak.metadata['fbf_weight'] = peak.area / total_area if total_area > 0 else 0.0

        return GroupFit.combine(per_peak, "curve_fit" if use_curve_fit else optimizer.kind)

    def _fit_peak(self, curve, peak, neighbours, optimizer, use_curve_fit, attempt):
        shape = get_shape(peak.shape)
        lo = max(peak.left_boundary, curve.x[0])
        hi = min(peak.right_boundary, curve.x[-1])
        x, y = curve.segment(lo, hi)
        # neighbours are held at their moment estimates
        for other_shape, other_coefficients in neighbours:
            y = y - other_shape.evaluate(x, other_coefficients)
        if len(x) < shape.n_params + 1:
            raise InsufficientData(
                f"Peak {peak.peak_id} support holds {len(x)} samples for {shape.n_params} coefficients",
                required=shape.n_params + 1, available=len(x)
            )

        lower, upper = shape.default_bounds(max(hi - lo, curve.spacing), window=(lo, hi))
        p0 = np.clip(seed_coefficients(peak, shape, hi - lo), lower, upper)

        params = None
        if use_curve_fit:
            params, errors, covariance, iterations, converged, algorithm = self._curve_fit(
                shape, x, y, p0, lower, upper)
        if params is None:
            fallback = optimizer if not use_curve_fit else LevenbergMarquardtConfig(
                max_iterations=self.max_iterations, convergence_threshold=self.convergence_threshold)
            objective = LeastSquaresObjective(
                lambda xx, p: shape.evaluate(xx, p), x, y,
                model_jacobian=shape.gradient, prior=p0, regularization=self.regularization
            )
            result = optimize(objective, p0, (lower, upper), fallback)
            params, errors, covariance = result.parameters, result.parameter_errors, result.covariance
            iterations, converged, algorithm = result.iterations, result.converged, result.algorithm

        stats = calculate_fit_statistics(y, shape.evaluate(x, params), shape.n_params)
        fit_result = FitResult(
            r_squared=stats['r_squared'],
            residual_sum_squares=stats['rss'],
            iterations=iterations,
            converged=converged,
            standard_error=stats['standard_error'],
            parameter_errors=np.asarray(errors, dtype=float),
            covariance=covariance,
            optimizer=algorithm,
            attempt=attempt,
        )
        apply_fit(peak, shape, params, curve, fit_result, {
            'iterations': iterations,
            'converged': converged,
            'optimizer': algorithm,
            'window': (float(lo), float(hi)),
            'group_size': 1,
        })
        return GroupFit(stats['r_squared'], stats['rss'], stats['standard_error'], iterations,
                        converged, algorithm, (float(lo), float(hi)), len(x))

    def _curve_fit(self, shape, x, y, p0, lower, upper):
        """Bounded curve_fit; returns params None when it does not succeed."""
        try:
            popt, pcov, infodict, _, ier = curve_fit(
                lambda xx, *p: shape.evaluate(xx, p), x, y,
                p0=p0,
                bounds=(lower, upper),
                maxfev=self.max_iterations * (shape.n_params + 1),
                ftol=self.convergence_threshold,
                xtol=self.convergence_threshold,
                full_output=True
            )
        except (RuntimeError, ValueError) as exc:
            logger.debug("curve_fit failed (%s), using the optimizer instead", exc)
            return None, None, None, 0, False, "curve_fit"

        errors = np.sqrt(np.clip(np.diag(pcov), 0.0, None))
        return popt, errors, pcov, int(infodict.get('nfev', 0)), ier in (1, 2, 3, 4), "curve_fit"
