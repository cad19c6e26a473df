"""
Configuration Module

Holds the option set of a decomposition run, its validation, dictionary and
JSON round-tripping, and the named presets.

Classes:
- DecompositionConfig: All options of one workflow run

Functions:
- preset: Configuration for a named use case
"""

import json
import logging
import math
from dataclasses import dataclass, field, fields
from typing import Optional

from peakdecon.data.peak import ShapeType
from peakdecon.errors import InvalidConfiguration
from peakdecon.fitting.baseline_functions import BASELINE_METHODS
from peakdecon.fitting.peak_detection import DETECTORS
from peakdecon.fitting.parameter_optimizer import (
    LevenbergMarquardtConfig,
    optimizer_from_dict,
    optimizer_to_dict
)
from peakdecon.overlap.strategy import STRATEGIES, build_strategy

logger = logging.getLogger(__name__)

STRATEGY_OPTION_KEYS = ("fbf", "sharpen_cwt", "emg_nlls", "extreme_overlap")
DETECTOR_NAMES = tuple(algorithm.value for algorithm in DETECTORS)


@dataclass
class DecompositionConfig:
    """
    Options of one decomposition run.

    Attributes:
        peak_detection_threshold: Minimum peak height as a fraction of the intensity range
        min_peak_distance: Minimum distance between detected peaks, in x units
        fit_window_size: Fit window half-width around each peak, in FWHM units
        min_rsquared: Acceptance threshold on R²
        min_amplitude: Acceptance threshold on fitted amplitude
        max_standard_error: Acceptance threshold on the residual standard error
        optimizer: Optimizer configuration for the first attempt
        max_retries: Escalated retries allowed per group
        parallel: Process overlap groups in worker processes
        max_workers: Worker count (default: 75% of the available cores)
        auto_shape: Choose each peak's shape from its measured asymmetry
        default_shape: Shape given to detected peaks
        forced_strategy: Strategy used for every group instead of the selector
        smoothing_points: Savitzky-Golay half-window used by detection
        detection_algorithm: Built-in detector (simple, cwt, derivative)
        baseline: Baseline removed before fitting (none, linear, polynomial, als)
        baseline_order: Polynomial order for the polynomial baseline
        fbf, sharpen_cwt, emg_nlls, extreme_overlap: Per-strategy options
    """
    peak_detection_threshold: float = 0.1
    min_peak_distance: float = 0.5
    fit_window_size: float = 3.0
    min_rsquared: float = 0.8
    min_amplitude: float = 0.0
    max_standard_error: float = math.inf
    optimizer: object = field(default_factory=LevenbergMarquardtConfig)
    max_retries: int = 1
    parallel: bool = False
    max_workers: Optional[int] = None
    auto_shape: bool = False
    default_shape: str = "gaussian"
    forced_strategy: Optional[str] = None
    smoothing_points: int = 5
    detection_algorithm: str = "simple"
    baseline: str = "linear"
    baseline_order: int = 2
    fbf: dict = field(default_factory=dict)
    sharpen_cwt: dict = field(default_factory=dict)
    emg_nlls: dict = field(default_factory=dict)
    extreme_overlap: dict = field(default_factory=dict)

    def validate(self):
        """Raise InvalidConfiguration listing every out-of-range option."""
        problems = []
        if not 0 < self.peak_detection_threshold < 1:
            problems.append("peak_detection_threshold must be in (0, 1)")
        if self.min_peak_distance < 0:
            problems.append("min_peak_distance must be non-negative")
        if self.fit_window_size <= 0:
            problems.append("fit_window_size must be positive")
        if self.min_rsquared > 1:
            problems.append("min_rsquared must not exceed 1")
        if self.min_amplitude < 0:
            problems.append("min_amplitude must be non-negative")
        if self.max_standard_error <= 0:
            problems.append("max_standard_error must be positive")
        if self.max_retries < 0:
            problems.append("max_retries must be non-negative")
        if self.max_workers is not None and self.max_workers < 1:
            problems.append("max_workers must be positive")
        if self.smoothing_points < 0:
            problems.append("smoothing_points must be non-negative")
        if self.detection_algorithm not in DETECTOR_NAMES:
            problems.append(f"detection_algorithm {self.detection_algorithm!r} is not one of {list(DETECTOR_NAMES)}")
        if self.baseline not in BASELINE_METHODS:
            problems.append(f"baseline {self.baseline!r} is not one of {list(BASELINE_METHODS)}")
        if self.baseline_order < 0:
            problems.append("baseline_order must be non-negative")
        if not hasattr(self.optimizer, "kind"):
            problems.append(f"optimizer must be an optimizer configuration, got {self.optimizer!r}")
        try:
            ShapeType.parse(self.default_shape)
        except ValueError as exc:
            problems.append(str(exc))
        if self.forced_strategy is not None and self.forced_strategy not in STRATEGIES:
            problems.append(f"forced_strategy {self.forced_strategy!r} is not one of {sorted(STRATEGIES)}")
        for key in STRATEGY_OPTION_KEYS:
            try:
                build_strategy(key, getattr(self, key), self.fit_window_size)
            except InvalidConfiguration as exc:
                problems.extend(exc.problems)

        if problems:
            raise InvalidConfiguration("; ".join(problems), problems=problems)
        return self

    def strategy_options(self, name):
        return dict(getattr(self, name, None) or {})

    def to_dict(self):
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "optimizer":
                value = optimizer_to_dict(value)
            elif isinstance(value, dict):
                value = dict(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, options):
        """
        Build a configuration from a (partial) dictionary.

        Missing keys keep their defaults; nested option dictionaries are
        merged key by key. The optimizer section is merged over the default
        optimizer only when it names the same algorithm.

        Raises
        ------
        InvalidConfiguration
            For unknown keys or out-of-range values
        """
        options = dict(options or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise InvalidConfiguration(f"Unknown configuration keys: {unknown}", problems=unknown)

        merged = _merge_options(cls().to_dict(), options)
        merged["optimizer"] = optimizer_from_dict(merged["optimizer"])
        return cls(**merged).validate()

    @classmethod
    def from_json(cls, path):
        with open(path, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))

    def save_json(self, path):
        data = self.to_dict()
        if math.isinf(data["max_standard_error"]):
            data["max_standard_error"] = "inf"
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)


def _merge_options(default, loaded):
    """Recursively merge option dictionaries, keeping defaults for missing keys."""
    merged = default.copy()
    for key, value in loaded.items():
        if key == "max_standard_error" and isinstance(value, str):
            value = float(value)
        if (key == "optimizer" and isinstance(value, dict)
                and value.get("type", merged[key]["type"]) != merged[key]["type"]):
            merged[key] = dict(value)
        elif key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _merge_options(merged[key], value)
        else:
            merged[key] = value
    return merged


PRESETS = {
    "simple_peaks": {
        "peak_detection_threshold": 0.1,
        "min_peak_distance": 0.5,
        "optimizer": {"type": "levenberg_marquardt", "max_iterations": 100,
                      "convergence_threshold": 1e-6},
    },
    "overlapping_peaks": {
        "peak_detection_threshold": 0.05,
        "min_peak_distance": 0.3,
        "optimizer": {"type": "levenberg_marquardt", "max_iterations": 150,
                      "convergence_threshold": 1e-7},
    },
    "complex_peaks": {
        "peak_detection_threshold": 0.03,
        "min_peak_distance": 0.2,
        "forced_strategy": "extreme_overlap",
        "optimizer": {"type": "simulated_annealing", "max_iterations": 500,
                      "initial_temperature": 100.0, "cooling_rate": 0.95},
    },
    "high_precision": {
        "peak_detection_threshold": 0.01,
        "min_peak_distance": 0.1,
        "forced_strategy": "sharpen_cwt",
        "sharpen_cwt": {"sharpen_strength": 2.0, "cwt_scales": (1, 50), "noise_threshold": 0.05},
        "optimizer": {"type": "levenberg_marquardt", "max_iterations": 500,
                      "convergence_threshold": 1e-9, "damping_factor": 0.01},
    },
}


def preset(name):
    """
    Configuration for a named use case.

    Parameters
    ----------
    name : str
        One of ``simple_peaks``, ``overlapping_peaks``, ``complex_peaks``,
        ``high_precision``
    """
    if name not in PRESETS:
        raise InvalidConfiguration(f"Unknown preset {name!r}; choose from {sorted(PRESETS)}")
    logger.debug("Using preset %s", name)
    return DecompositionConfig.from_dict(PRESETS[name])
