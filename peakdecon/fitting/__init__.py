"""Peak fitting module for peakdecon.

This module provides the fitting layer used by every overlap strategy:
- Peak shape functions (Gaussian, Lorentzian, pseudo-Voigt, EMG, BiGaussian,
  Voigt with exponential tail, Pearson IV, NLC, GMG)
- Shape capability records (bounds, initial guesses, areas, FWHM)
- Bounded parameter optimisation with four interchangeable algorithms
- Joint multi-peak fitting of overlap groups
- Baseline estimation and subtraction
- Peak detection, automatic shape selection and result tables
"""

from .peak_functions import (
    gaussian_peak,
    lorentzian_peak,
    pseudo_voigt_peak,
    bigaussian_peak,
    exponentially_modified_gaussian,
    voigt_exponential_tail,
    pearson_iv_peak,
    nlc_peak,
    gmg_peak,
    multi_peak_function,
    get_params_per_peak,
    get_parameter_names
)

from .baseline_functions import (
    linear_baseline,
    polynomial_baseline,
    als_baseline,
    estimate_baseline,
    subtract_baseline
)
from .peak_shapes import PeakShape, SHAPES, get_shape
from .parameter_optimizer import (
    GridSearchConfig,
    GradientDescentConfig,
    LevenbergMarquardtConfig,
    SimulatedAnnealingConfig,
    LeastSquaresObjective,
    OptimizationResult,
    optimize,
    optimizer_from_dict
)
from .multi_peak_fitter import GroupFit, MultiPeakFitter, calculate_fit_statistics
from .peak_detection import PeakDetector
from .shape_analyzer import ShapeAnalyzer
from .result_analyzer import ResultAnalyzer

__all__ = [
    # Peak functions
    'gaussian_peak',
    'lorentzian_peak',
    'pseudo_voigt_peak',
    'bigaussian_peak',
    'exponentially_modified_gaussian',
    'voigt_exponential_tail',
    'pearson_iv_peak',
    'nlc_peak',
    'gmg_peak',
    'multi_peak_function',
    'get_params_per_peak',
    'get_parameter_names',
    # Baselines
    'linear_baseline',
    'polynomial_baseline',
    'als_baseline',
    'estimate_baseline',
    'subtract_baseline',
    # Shapes
    'PeakShape',
    'SHAPES',
    'get_shape',
    # Optimizer
    'GridSearchConfig',
    'GradientDescentConfig',
    'LevenbergMarquardtConfig',
    'SimulatedAnnealingConfig',
    'LeastSquaresObjective',
    'OptimizationResult',
    'optimize',
    'optimizer_from_dict',
    # Classes
    'GroupFit',
    'MultiPeakFitter',
    'calculate_fit_statistics',
    'PeakDetector',
    'ShapeAnalyzer',
    'ResultAnalyzer'
]
