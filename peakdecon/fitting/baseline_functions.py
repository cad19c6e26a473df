"""Baseline estimation and subtraction ahead of peak fitting.

A baseline is estimated on the samples that lie outside every peak's fit
region (``linear``, ``polynomial``) or on the whole curve with asymmetric
weights (``als``), and subtracted from the curve before the overlap groups
are fitted.
"""

import logging

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve

from peakdecon.data.curve import Curve
from peakdecon.errors import InvalidConfiguration

logger = logging.getLogger(__name__)

BASELINE_METHODS = ("none", "linear", "polynomial", "als")

# Half-width, in FWHM units, of the region around each peak left out of the baseline fit
EXCLUSION_WIDTHS = 3.0
# Share of the curve taken from each end when too few samples lie outside the peaks
EDGE_FRACTION = 0.1
MIN_EDGE_POINTS = 3


def linear_baseline(x, slope, intercept):
    """Linear baseline function.

    Args:
        x: Independent variable
        slope: Linear slope
        intercept: Y-intercept

    Returns:
        Array of baseline values
    """
    return slope * np.asarray(x, dtype=float) + intercept


def polynomial_baseline(x, *coeffs):
    """Polynomial baseline function.

    Args:
        x: Independent variable
        *coeffs: Polynomial coefficients (highest degree first)

    Returns:
        Array of baseline values
    """
    return np.polyval(coeffs, np.asarray(x, dtype=float))


def als_baseline(y, lam=1e5, p=0.01, max_iterations=10):
    """Asymmetric least squares baseline (smooth curve hugging the lower envelope)."""
    y = np.asarray(y, dtype=float)
    n = len(y)
    if n < 3:
        return np.zeros_like(y)
    diff = sparse.diags([1, -2, 1], [0, -1, -2], shape=(n - 2, n), format="csc")
    penalty = lam * (diff.T @ diff).tocsc()
    weights = np.ones(n)
    z = y
    for _ in range(max(1, int(max_iterations))):
        z = spsolve(sparse.diags(weights, 0, shape=(n, n), format="csc") + penalty, weights * y)
        new_weights = p * (y > z) + (1 - p) * (y <= z)
        if np.array_equal(new_weights, weights):
            break
        weights = new_weights
    return np.asarray(z, dtype=float)


def baseline_mask(curve, peaks, order=1):
    """Samples usable for a baseline fit.

    Everything outside center +/- EXCLUSION_WIDTHS * fwhm of every peak; when
    that leaves fewer than ``order + 2`` samples, the first and last
    EDGE_FRACTION of the curve instead.
    """
    mask = np.ones(curve.point_count, dtype=bool)
    for peak in peaks:
        half = EXCLUSION_WIDTHS * (peak.fwhm if peak.fwhm > 0 else 0.01 * curve.span)
        mask &= (curve.x < peak.center - half) | (curve.x > peak.center + half)
    if np.count_nonzero(mask) >= order + 2:
        return mask

    edge = max(MIN_EDGE_POINTS, int(EDGE_FRACTION * curve.point_count))
    mask = np.zeros(curve.point_count, dtype=bool)
    mask[:edge] = True
    mask[-edge:] = True
    return mask


def estimate_baseline(curve, peaks, method="linear", order=2, als_lambda=1e5, als_p=0.01):
    """
    Baseline of ``curve`` under the given peaks.

    Parameters
    ----------
    curve : Curve
    peaks : list of PeakCandidate
        Peaks whose regions are left out of the ``linear``/``polynomial`` fits
    method : str
        One of BASELINE_METHODS
    order : int
        Polynomial order for ``polynomial``
    als_lambda, als_p : float
        Smoothness and asymmetry for ``als``

    Returns
    -------
    ndarray
        Baseline sampled on ``curve.x`` (zeros for ``none``)
    """
    if method not in BASELINE_METHODS:
        raise InvalidConfiguration(f"Unknown baseline method {method!r}; choose from {list(BASELINE_METHODS)}")
    if method == "none":
        return np.zeros(curve.point_count)
    if method == "als":
        return als_baseline(curve.y, lam=als_lambda, p=als_p)

    degree = 1 if method == "linear" else int(order)
    mask = baseline_mask(curve, peaks, degree)
    # centred coordinates keep the Vandermonde matrix well conditioned
    origin = float(np.mean(curve.x))
    coeffs = np.polyfit(curve.x[mask] - origin, curve.y[mask], degree)
    if method == "linear":
        slope, intercept = coeffs
        baseline = linear_baseline(curve.x - origin, slope, intercept)
    else:
        baseline = polynomial_baseline(curve.x - origin, *coeffs)
    logger.debug("%s baseline on %d of %d samples, range [%.4g, %.4g]", method, np.count_nonzero(mask),
                 curve.point_count, baseline.min(), baseline.max())
    return baseline


def subtract_baseline(curve, baseline):
    """New curve with ``baseline`` removed; the explicit noise level is kept."""
    return Curve(curve.x, curve.y - np.asarray(baseline, dtype=float), curve_id=curve.curve_id,
                 noise=curve.noise)
