"""Peak function definitions for curve fitting.

This module provides the peak shape functions used by the decomposition
engine, from the symmetric Gaussian/Lorentzian profiles to the tailing
chromatographic shapes (EMG, Voigt with exponential tail, Pearson IV,
non-linear chromatographic and the two-component Gaussian mixture).

Every function takes the coordinate array first, followed by the shape's
coefficients in the order given by :func:`get_parameter_names`.
"""

import numpy as np
from scipy.special import erfc, erfcx

from peakdecon.data.peak import ShapeType

# FWHM = FWHM_TO_SIGMA * sigma for a Gaussian
FWHM_TO_SIGMA = 2.0 * np.sqrt(2.0 * np.log(2.0))

_TINY = 1e-12


def _as_array(x):
    return np.atleast_1d(np.asarray(x, dtype=float))


def gaussian_peak(x, amplitude, center, sigma):
    """Gaussian peak function.

    Args:
        x: Independent variable
        amplitude: Peak height
        center: Peak center position
        sigma: Peak width (standard deviation)

    Returns:
        Array of y values
    """
    return amplitude * np.exp(-0.5 * ((np.asarray(x, dtype=float) - center) / sigma) ** 2)


def lorentzian_peak(x, amplitude, center, gamma):
    """Lorentzian peak function.

    Args:
        x: Independent variable
        amplitude: Peak height
        center: Peak center position
        gamma: Peak half width at half maximum

    Returns:
        Array of y values
    """
    return amplitude / (1 + ((np.asarray(x, dtype=float) - center) / gamma) ** 2)


def pseudo_voigt_peak(x, amplitude, center, sigma, eta):
    """Pseudo-Voigt profile.

    Linear mix of a Gaussian and a Lorentzian sharing the same FWHM, with
    mixing parameter eta (0 = pure Gaussian, 1 = pure Lorentzian).

    Args:
        x: Independent variable
        amplitude: Peak height
        center: Peak center position
        sigma: Gaussian width (standard deviation)
        eta: Lorentzian fraction in [0, 1]

    Returns:
        Array of y values
    """
    x = np.asarray(x, dtype=float)
    gamma = 0.5 * FWHM_TO_SIGMA * sigma
    gaussian = np.exp(-0.5 * ((x - center) / sigma) ** 2)
    lorentzian = 1 / (1 + ((x - center) / gamma) ** 2)

    return amplitude * (eta * lorentzian + (1 - eta) * gaussian)


def bigaussian_peak(x, amplitude, center, sigma_left, sigma_right):
    """Bi-Gaussian function with different widths on each side.

    Args:
        x: Independent variable
        amplitude: Peak height
        center: Peak center position
        sigma_left: Left-side width
        sigma_right: Right-side width

    Returns:
        Array of y values
    """
    x = np.asarray(x, dtype=float)
    sigma = np.where(x <= center, sigma_left, sigma_right)
    return amplitude * np.exp(-0.5 * ((x - center) / sigma) ** 2)


def exponentially_modified_gaussian(x, amplitude, center, sigma, tau):
    """Exponentially Modified Gaussian (EMG).

    Convolution of a Gaussian with an exponential decay, useful for tailing
    peaks. Scaled so that the area equals that of a Gaussian with the same
    amplitude and sigma; as tau goes to zero it reduces to that Gaussian.

    Args:
        x: Independent variable
        amplitude: Height of the underlying Gaussian
        center: Gaussian center position
        sigma: Gaussian width
        tau: Exponential time constant

    Returns:
        Array of y values
    """
    shape = np.shape(x)
    x = _as_array(x)
    sigma = max(sigma, _TINY)
    tau = max(tau, _TINY)

    ratio = sigma / tau
    z = (x - center) / sigma
    b = (ratio - z) / np.sqrt(2)
    scale = amplitude * ratio * np.sqrt(np.pi / 2)

    result = np.empty_like(z)
    pos = b >= 0
    # scaled erfc keeps the product finite for narrow tails
    result[pos] = scale * np.exp(-0.5 * z[pos] ** 2) * erfcx(b[pos])
    neg = ~pos
    result[neg] = scale * np.exp(0.5 * ratio ** 2 - ratio * z[neg]) * erfc(b[neg])

    return result.reshape(shape)


def voigt_exponential_tail(x, amplitude, center, sigma, gamma, tau):
    """Pseudo-Voigt core with an exponential tail on the high side.

    The Lorentzian fraction is gamma / (sigma + gamma). The tail carries
    10% of the amplitude and is switched on smoothly past the center.

    Args:
        x: Independent variable
        amplitude: Core peak height
        center: Peak center position
        sigma: Gaussian width
        gamma: Lorentzian half width
        tau: Tail decay constant

    Returns:
        Array of y values
    """
    x = np.asarray(x, dtype=float)
    eta = gamma / (sigma + gamma)
    dx = x - center
    core = eta / (1 + (dx / gamma) ** 2) + (1 - eta) * np.exp(-0.5 * (dx / sigma) ** 2)

    right = np.maximum(dx, 0.0)
    tail = 0.1 * np.exp(-right / tau) * (1 - np.exp(-0.5 * (right / sigma) ** 2))

    return amplitude * (core + tail)


def pearson_iv_peak(x, amplitude, center, width, m, nu):
    """Pearson type IV profile.

    Args:
        x: Independent variable
        amplitude: Value at the center coordinate
        center: Location parameter
        width: Scale parameter
        m: Shape exponent (> 0.5), controls tail weight
        nu: Skewness parameter

    Returns:
        Array of y values
    """
    u = (np.asarray(x, dtype=float) - center) / width
    return amplitude * (1 + u ** 2) ** (-m) * np.exp(-nu * np.arctan(u))


def nlc_peak(x, amplitude, center, sigma, skew, kurtosis):
    """Non-linear chromatographic peak.

    Gaussian modulated by third and fourth order Hermite corrections
    (Gram-Charlier series), clipped at zero.

    Args:
        x: Independent variable
        amplitude: Gaussian height
        center: Peak center position
        sigma: Gaussian width
        skew: Third-order correction
        kurtosis: Fourth-order correction

    Returns:
        Array of y values
    """
    z = (np.asarray(x, dtype=float) - center) / sigma
    he3 = z ** 3 - 3 * z
    he4 = z ** 4 - 6 * z ** 2 + 3
    modulation = np.maximum(0.0, 1 + skew / 6 * he3 + kurtosis / 24 * he4)
    return amplitude * np.exp(-0.5 * z ** 2) * modulation


def gmg_peak(x, amplitude, center, sigma, weight, offset, sigma2):
    """Two-component Gaussian mixture peak.

    Args:
        x: Independent variable
        amplitude: Mixture height scale
        center: Main component center
        sigma: Main component width
        weight: Weight of the main component in [0, 1]
        offset: Shift of the secondary component from the center
        sigma2: Secondary component width

    Returns:
        Array of y values
    """
    x = np.asarray(x, dtype=float)
    main = np.exp(-0.5 * ((x - center) / sigma) ** 2)
    secondary = np.exp(-0.5 * ((x - center - offset) / sigma2) ** 2)
    return amplitude * (weight * main + (1 - weight) * secondary)


PEAK_FUNCTIONS = {
    ShapeType.GAUSSIAN: gaussian_peak,
    ShapeType.LORENTZIAN: lorentzian_peak,
    ShapeType.PSEUDO_VOIGT: pseudo_voigt_peak,
    ShapeType.EMG: exponentially_modified_gaussian,
    ShapeType.BIGAUSSIAN: bigaussian_peak,
    ShapeType.VOIGT_EXPONENTIAL_TAIL: voigt_exponential_tail,
    ShapeType.PEARSON_IV: pearson_iv_peak,
    ShapeType.NLC: nlc_peak,
    ShapeType.GMG_BAYESIAN: gmg_peak,
}

PARAMETER_NAMES = {
    ShapeType.GAUSSIAN: ("amplitude", "center", "sigma"),
    ShapeType.LORENTZIAN: ("amplitude", "center", "gamma"),
    ShapeType.PSEUDO_VOIGT: ("amplitude", "center", "sigma", "eta"),
    ShapeType.EMG: ("amplitude", "center", "sigma", "tau"),
    ShapeType.BIGAUSSIAN: ("amplitude", "center", "sigma_left", "sigma_right"),
    ShapeType.VOIGT_EXPONENTIAL_TAIL: ("amplitude", "center", "sigma", "gamma", "tau"),
    ShapeType.PEARSON_IV: ("amplitude", "center", "width", "m", "nu"),
    ShapeType.NLC: ("amplitude", "center", "sigma", "skew", "kurtosis"),
    ShapeType.GMG_BAYESIAN: ("amplitude", "center", "sigma", "weight", "offset", "sigma2"),
}


def multi_peak_function(x, peak_types, params):
    """Sum of several peaks, possibly of different shapes.

    Args:
        x: Independent variable
        peak_types: Sequence of shape types, one per peak
        params: Flattened parameters for all peaks, in order

    Returns:
        Sum of all peak contributions
    """
    x = np.asarray(x, dtype=float)
    y = np.zeros_like(x)

    start = 0
    for peak_type in peak_types:
        peak_type = ShapeType.parse(peak_type)
        n_params = len(PARAMETER_NAMES[peak_type])
        y = y + PEAK_FUNCTIONS[peak_type](x, *params[start:start + n_params])
        start += n_params

    return y


def get_params_per_peak(peak_type) -> int:
    """Get number of parameters required for a peak type.

    Args:
        peak_type: Shape type or its name

    Returns:
        Number of parameters per peak
    """
    return len(PARAMETER_NAMES[ShapeType.parse(peak_type)])


def get_parameter_names(peak_type) -> list:
    """Get parameter names for a peak type.

    Args:
        peak_type: Shape type or its name

    Returns:
        List of parameter names
    """
    return list(PARAMETER_NAMES[ShapeType.parse(peak_type)])
