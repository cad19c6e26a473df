"""
Curve value object.

A :class:`Curve` holds the sampled intensity-vs-coordinate data of one
decomposition run together with its derived noise statistics. It is
immutable: the arrays are copied and flagged read-only on construction.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
from scipy.integrate import trapezoid

from peakdecon.errors import InsufficientData, InvalidConfiguration

MIN_CURVE_POINTS = 3

# Scale factor turning a median absolute deviation into a Gaussian sigma
MAD_TO_SIGMA = 1.4826


@dataclass(frozen=True)
class Curve:
    """
    Sampled curve with strictly ascending coordinates.

    Attributes:
        x: Coordinates (drift time, retention time, ...), strictly ascending
        y: Intensities, same length as ``x``
        curve_id: Optional identifier carried into results
        noise: Explicit noise level; estimated from the data when None
        noise_level: Noise estimate used for SNR calculations
        baseline_intensity: Minimum intensity
        signal_to_noise: (max - min) / noise_level
        quality_score: Heuristic data quality in [0, 1]
    """
    x: np.ndarray
    y: np.ndarray
    curve_id: str = "curve"
    noise: Optional[float] = None
    noise_level: float = field(init=False)
    baseline_intensity: float = field(init=False)
    signal_to_noise: float = field(init=False)
    quality_score: float = field(init=False)

    def __post_init__(self):
        x = np.array(self.x, dtype=float)
        y = np.array(self.y, dtype=float)

        if x.ndim != 1 or y.ndim != 1:
            raise InvalidConfiguration("Curve coordinates and intensities must be 1-D arrays")
        if len(x) != len(y):
            raise InvalidConfiguration(
                f"Curve arrays differ in length ({len(x)} coordinates, {len(y)} intensities)"
            )
        if len(x) < MIN_CURVE_POINTS:
            raise InsufficientData(
                f"Curve needs at least {MIN_CURVE_POINTS} samples, got {len(x)}",
                required=MIN_CURVE_POINTS, available=len(x)
            )
        if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
            raise InvalidConfiguration("Curve contains non-finite values")
        if np.any(np.diff(x) <= 0):
            raise InvalidConfiguration("Curve coordinates must be strictly ascending")

        x.flags.writeable = False
        y.flags.writeable = False
        object.__setattr__(self, "x", x)
        object.__setattr__(self, "y", y)

        if self.noise is not None:
            if self.noise < 0:
                raise InvalidConfiguration("Explicit noise level must be non-negative")
            noise_level = float(self.noise)
        else:
            noise_level = estimate_noise(y)

        y_min = float(np.min(y))
        y_max = float(np.max(y))
        snr = (y_max - y_min) / noise_level if noise_level > 0 else 0.0
        quality = 0.7 * min(1.0, snr / 100.0) + 0.3 * min(1.0, len(y) / 100.0)

        object.__setattr__(self, "noise_level", noise_level)
        object.__setattr__(self, "baseline_intensity", y_min)
        object.__setattr__(self, "signal_to_noise", snr)
        object.__setattr__(self, "quality_score", quality)

    # pickling of read-only arrays drops the flag, restore it
    def __setstate__(self, state):
        self.__dict__.update(state)
        self.x.flags.writeable = False
        self.y.flags.writeable = False

    @property
    def point_count(self) -> int:
        return len(self.x)

    @property
    def x_range(self) -> Tuple[float, float]:
        return float(self.x[0]), float(self.x[-1])

    @property
    def span(self) -> float:
        return float(self.x[-1] - self.x[0])

    @property
    def spacing(self) -> float:
        """Median sample spacing."""
        return float(np.median(np.diff(self.x)))

    @property
    def detection_threshold(self) -> float:
        return self.baseline_intensity + 3.0 * self.noise_level

    def segment(self, x_min, x_max):
        """Return the (x, y) samples with ``x_min <= x <= x_max``."""
        mask = (self.x >= x_min) & (self.x <= x_max)
        return self.x[mask], self.y[mask]

    def intensity_at(self, position):
        """Linearly interpolated intensity at ``position``."""
        return float(np.interp(position, self.x, self.y))

    def area(self):
        return float(trapezoid(self.y, self.x))


def estimate_noise(y):
    """Robust sample-to-sample noise estimate.

    Uses the median absolute deviation of first differences, which is
    insensitive to the peaks themselves. Falls back to the intensity
    standard deviation for perfectly smooth data.
    """
    diffs = np.diff(y)
    mad = np.median(np.abs(diffs - np.median(diffs)))
    noise = MAD_TO_SIGMA * mad / np.sqrt(2.0)
    if noise <= 0:
        noise = float(np.std(y))
    return float(noise)
