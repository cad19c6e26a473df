"""
Parameter Optimizer Module
==========================

Generic bounded non-linear minimisation used by every fitter in the
package. One entry point, :func:`optimize`, runs one of four
interchangeable algorithms selected by a tagged configuration object:

- :class:`GridSearchConfig` - exhaustive grid or coordinate-descent refinement
- :class:`GradientDescentConfig` - numerical-gradient descent with backtracking
- :class:`LevenbergMarquardtConfig` - damped Gauss-Newton (default)
- :class:`SimulatedAnnealingConfig` - seeded stochastic search

The algorithm objects are stateless; all state lives in the call.

Classes
-------
LeastSquaresObjective
    Sum-of-squares objective exposing its residual vector and Jacobian
OptimizationResult
    Outcome of one optimisation run
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Optional

import numpy as np
from scipy import linalg

from peakdecon.errors import ConvergenceFailure, InvalidConfiguration, NumericalInstability

logger = logging.getLogger(__name__)

_TINY = 1e-300

# Pivot below this fraction of the largest diagonal entry counts as singular
SINGULAR_PIVOT = 1e-12
MAX_CONDITION = 1e12

MIN_DAMPING = 1e-12
MAX_DAMPING = 1e12

# Simulated annealing stops below this temperature
MIN_TEMPERATURE = 1e-6


@dataclass(frozen=True)
class GridSearchConfig:
    resolution: int = 20
    max_iterations: int = 10
    exhaustive_limit: int = 2
    kind: str = field(default="grid_search", init=False)

    def __post_init__(self):
        if self.resolution < 2:
            raise InvalidConfiguration("grid_search.resolution must be at least 2")
        if self.max_iterations < 1:
            raise InvalidConfiguration("grid_search.max_iterations must be positive")


@dataclass(frozen=True)
class GradientDescentConfig:
    learning_rate: float = 0.01
    max_iterations: int = 1000
    convergence_threshold: float = 1e-6
    decay: float = 0.0
    kind: str = field(default="gradient_descent", init=False)

    def __post_init__(self):
        if self.learning_rate <= 0:
            raise InvalidConfiguration("gradient_descent.learning_rate must be positive")
        if self.max_iterations < 1:
            raise InvalidConfiguration("gradient_descent.max_iterations must be positive")
        if self.convergence_threshold <= 0:
            raise InvalidConfiguration("gradient_descent.convergence_threshold must be positive")
        if self.decay < 0:
            raise InvalidConfiguration("gradient_descent.decay must be non-negative")


@dataclass(frozen=True)
class LevenbergMarquardtConfig:
    max_iterations: int = 100
    convergence_threshold: float = 1e-6
    damping_factor: float = 0.1
    kind: str = field(default="levenberg_marquardt", init=False)

    def __post_init__(self):
        if self.max_iterations < 1:
            raise InvalidConfiguration("levenberg_marquardt.max_iterations must be positive")
        if self.convergence_threshold <= 0:
            raise InvalidConfiguration("levenberg_marquardt.convergence_threshold must be positive")
        if self.damping_factor <= 0:
            raise InvalidConfiguration("levenberg_marquardt.damping_factor must be positive")


@dataclass(frozen=True)
class SimulatedAnnealingConfig:
    initial_temperature: float = 1.0
    cooling_rate: float = 0.95
    max_iterations: int = 1000
    step_scale: float = 0.1
    seed: int = 42
    kind: str = field(default="simulated_annealing", init=False)

    def __post_init__(self):
        if self.initial_temperature <= 0:
            raise InvalidConfiguration("simulated_annealing.initial_temperature must be positive")
        if not 0 < self.cooling_rate < 1:
            raise InvalidConfiguration("simulated_annealing.cooling_rate must be in (0, 1)")
        if self.max_iterations < 1:
            raise InvalidConfiguration("simulated_annealing.max_iterations must be positive")
        if self.step_scale <= 0:
            raise InvalidConfiguration("simulated_annealing.step_scale must be positive")


CONFIG_TYPES = {
    "grid_search": GridSearchConfig,
    "gradient_descent": GradientDescentConfig,
    "levenberg_marquardt": LevenbergMarquardtConfig,
    "simulated_annealing": SimulatedAnnealingConfig,
}

_ALIASES = {
    "grid": "grid_search",
    "gd": "gradient_descent",
    "lm": "levenberg_marquardt",
    "sa": "simulated_annealing",
}


def optimizer_from_dict(options):
    """
    Build an optimizer configuration from its flat dictionary form.

    Parameters
    ----------
    options : dict
        ``{"type": "levenberg_marquardt", "max_iterations": 100, ...}``

    Returns
    -------
    GridSearchConfig, GradientDescentConfig, LevenbergMarquardtConfig or SimulatedAnnealingConfig

    Raises
    ------
    InvalidConfiguration
        For unknown types or options that do not belong to the type
    """
    options = dict(options)
    kind = str(options.pop("type", "levenberg_marquardt")).lower()
    kind = _ALIASES.get(kind, kind)
    if kind not in CONFIG_TYPES:
        raise InvalidConfiguration(f"Unknown optimizer type: {kind!r}")

    config_type = CONFIG_TYPES[kind]
    allowed = {f.name for f in fields(config_type) if f.init}
    unknown = sorted(set(options) - allowed)
    if unknown:
        raise InvalidConfiguration(
            f"Options {unknown} are not valid for optimizer {kind!r}", problems=unknown
        )
    return config_type(**options)


def optimizer_to_dict(config):
    options = asdict(config)
    options["type"] = options.pop("kind")
    return options


def escalate(config):
    """Return the stronger optimizer to retry with, or None when there is none."""
    if config.kind in ("levenberg_marquardt", "gradient_descent"):
        return SimulatedAnnealingConfig()
    return None


@dataclass
class OptimizationResult:
    """
    Outcome of one optimisation run.

    Attributes:
        parameters: Best parameter vector found
        final_error: Objective value at ``parameters``
        iterations: Iterations used
        converged: Whether the convergence criterion was met
        parameter_errors: One-sigma uncertainty estimate per parameter
        covariance: Parameter covariance when a residual vector is available
        algorithm: Algorithm that was requested
        fallback: Name of the fallback algorithm that produced the result, if any
    """
    parameters: np.ndarray
    final_error: float
    iterations: int
    converged: bool
    parameter_errors: Optional[np.ndarray] = None
    covariance: Optional[np.ndarray] = None
    algorithm: str = ""
    fallback: Optional[str] = None


class LeastSquaresObjective:
    """
    Sum of squared residuals between a model and observed samples.

    Calling the object returns the scalar objective. ``residuals`` and
    ``jacobian`` expose the residual vector so that Levenberg-Marquardt and
    the covariance estimate can use it. An optional Tikhonov penalty
    ``regularization * ||(p - prior) / scale||^2`` is appended to the residuals.
    ``scale`` is ``prior_scale`` when given, else ``|prior|``.
    """

    def __init__(self, model, x, y, model_jacobian=None, prior=None, regularization=0.0,
                 prior_scale=None):
        self.model = model
        self.model_jacobian = model_jacobian
        self.x = np.asarray(x, dtype=float)
        self.y = np.asarray(y, dtype=float)
        self.regularization = float(regularization)
        self.prior = None if prior is None else np.asarray(prior, dtype=float)
        if self.prior is not None:
            scale = np.abs(self.prior) if prior_scale is None else np.abs(np.asarray(prior_scale, dtype=float))
            self.prior_scale = np.maximum(scale, 1e-6)

    @property
    def n_observations(self):
        return len(self.y)

    @property
    def _penalised(self):
        return self.prior is not None and self.regularization > 0

    def residuals(self, params):
        params = np.asarray(params, dtype=float)
        residuals = self.y - self.model(self.x, params)
        if self._penalised:
            penalty = np.sqrt(self.regularization) * (params - self.prior) / self.prior_scale
            residuals = np.concatenate([residuals, penalty])
        return residuals

    def jacobian(self, params):
        """Residual Jacobian, or None when the model has no analytic one."""
        if self.model_jacobian is None:
            return None
        jac = -self.model_jacobian(self.x, np.asarray(params, dtype=float))
        if self._penalised:
            jac = np.vstack([jac, np.diag(np.sqrt(self.regularization) / self.prior_scale)])
        return jac

    def __call__(self, params):
        residuals = self.residuals(params)
        return float(residuals @ residuals)


def numerical_gradient(objective, params):
    params = np.asarray(params, dtype=float)
    grad = np.empty_like(params)
    for i in range(len(params)):
        h = 1e-6 * max(1.0, abs(params[i]))
        step = np.zeros_like(params)
        step[i] = h
        grad[i] = (objective(params + step) - objective(params - step)) / (2 * h)
    return grad


def numerical_hessian(objective, params):
    params = np.asarray(params, dtype=float)
    n = len(params)
    hessian = np.empty((n, n))
    for i in range(n):
        h = 1e-4 * max(1.0, abs(params[i]))
        step = np.zeros(n)
        step[i] = h
        hessian[i] = (numerical_gradient(objective, params + step)
                      - numerical_gradient(objective, params - step)) / (2 * h)
    return 0.5 * (hessian + hessian.T)


def residual_jacobian(objective, params):
    """Analytic residual Jacobian when available, else central differences."""
    jac = objective.jacobian(params) if hasattr(objective, "jacobian") else None
    if jac is not None:
        return jac
    params = np.asarray(params, dtype=float)
    columns = []
    for i in range(len(params)):
        h = 1e-7 * max(1.0, abs(params[i]))
        step = np.zeros_like(params)
        step[i] = h
        columns.append((objective.residuals(params + step) - objective.residuals(params - step)) / (2 * h))
    return np.column_stack(columns)


def _finite_bounds(params, lower, upper):
    """Replace infinite bounds by params +/- max(1, |params|)."""
    reach = np.maximum(1.0, np.abs(params))
    lo = np.where(np.isfinite(lower), lower, params - reach)
    hi = np.where(np.isfinite(upper), upper, params + reach)
    return lo, hi


class GridSearch:
    """Deterministic grid search.

    Exhaustive over all parameters when there are at most
    ``exhaustive_limit`` of them, otherwise coordinate descent: each sweep
    scans every parameter in turn over its window, then halves the windows
    around the best point.
    """

    name = "grid_search"

    def minimize(self, objective, initial, lower, upper, config):
        lo, hi = _finite_bounds(initial, lower, upper)
        if len(initial) <= config.exhaustive_limit:
            return self._exhaustive(objective, initial, lo, hi, config)
        return self._coordinate_descent(objective, initial, lo, hi, config)

    def _exhaustive(self, objective, initial, lo, hi, config):
        axes = [np.linspace(l, h, config.resolution) for l, h in zip(lo, hi)]
        best = initial.copy()
        best_error = objective(best)
        for point in np.stack(np.meshgrid(*axes, indexing="ij"), axis=-1).reshape(-1, len(initial)):
            error = objective(point)
            if error < best_error:
                best, best_error = point.copy(), error
        return OptimizationResult(best, best_error, 1, True, algorithm=self.name)

    def _coordinate_descent(self, objective, initial, lo, hi, config):
        best = initial.copy()
        best_error = objective(best)
        half_width = (hi - lo) / 2.0
        converged = False
        iterations = 0

        for iterations in range(1, config.max_iterations + 1):
            sweep_start = best_error
            for i in range(len(best)):
                window_lo = max(lo[i], best[i] - half_width[i])
                window_hi = min(hi[i], best[i] + half_width[i])
                for value in np.linspace(window_lo, window_hi, config.resolution):
                    trial = best.copy()
                    trial[i] = value
                    error = objective(trial)
                    if error < best_error:
                        best, best_error = trial, error
            half_width = half_width / 2.0
            if sweep_start - best_error <= 1e-12 * max(sweep_start, _TINY):
                converged = True
                break

        return OptimizationResult(best, best_error, iterations, converged, algorithm=self.name)


class GradientDescent:
    """Steepest descent on the numerical gradient with step backtracking."""

    name = "gradient_descent"

    def minimize(self, objective, initial, lower, upper, config):
        params = initial.copy()
        error = objective(params)
        converged = False
        iterations = 0

        for iterations in range(1, config.max_iterations + 1):
            grad = numerical_gradient(objective, params)
            if not np.all(np.isfinite(grad)):
                raise NumericalInstability("Non-finite gradient in gradient descent")

            rate = config.learning_rate / (1.0 + config.decay * iterations)
            for _ in range(40):
                trial = np.clip(params - rate * grad, lower, upper)
                trial_error = objective(trial)
                if trial_error < error:
                    break
                rate /= 2.0
            else:
                # no descent direction left
                converged = True
                break

            improvement = (error - trial_error) / max(error, _TINY)
            params, error = trial, trial_error
            if improvement < config.convergence_threshold:
                converged = True
                break

        return OptimizationResult(params, error, iterations, converged, algorithm=self.name)


class LevenbergMarquardt:
    """
    Levenberg-Marquardt with Marquardt diagonal scaling.

    Damping doubles when a step is rejected and halves when it is accepted.
    With a residual objective the normal equations use the residual
    Jacobian; with a plain scalar objective they use the numerical gradient
    and Hessian. A singular or ill-conditioned system raises
    :class:`NumericalInstability`.
    """

    name = "levenberg_marquardt"

    def minimize(self, objective, initial, lower, upper, config):
        params = initial.copy()
        error = objective(params)
        damping = config.damping_factor
        converged = False
        iterations = 0

        for iterations in range(1, config.max_iterations + 1):
            if error <= _TINY:
                converged = True
                break

            hessian, gradient = self._normal_equations(objective, params)
            step = self._solve(hessian, gradient, damping)

            if np.linalg.norm(step) <= config.convergence_threshold * (
                    np.linalg.norm(params) + config.convergence_threshold):
                converged = True
                break

            trial = np.clip(params + step, lower, upper)
            trial_error = objective(trial)

            if np.isfinite(trial_error) and trial_error < error:
                improvement = (error - trial_error) / max(error, _TINY)
                params, error = trial, trial_error
                damping = max(damping / 2.0, MIN_DAMPING)
                logger.debug("LM iteration %d accepted, error %.6g, damping %.3g",
                             iterations, error, damping)
                if improvement < config.convergence_threshold:
                    converged = True
                    break
            else:
                damping *= 2.0
                if damping > MAX_DAMPING:
                    # no damped step improves the objective
                    converged = True
                    break

        return OptimizationResult(params, error, iterations, converged, algorithm=self.name)

    @staticmethod
    def _normal_equations(objective, params):
        if hasattr(objective, "residuals"):
            residuals = objective.residuals(params)
            jac = residual_jacobian(objective, params)
            return jac.T @ jac, jac.T @ residuals
        # f = r.r, so grad f = 2 J.r and hess f ~ 2 J.J
        return 0.5 * numerical_hessian(objective, params), 0.5 * numerical_gradient(objective, params)

    @staticmethod
    def _solve(hessian, gradient, damping):
        if not (np.all(np.isfinite(hessian)) and np.all(np.isfinite(gradient))):
            raise NumericalInstability("Non-finite normal equations")

        diag = np.abs(np.diag(hessian))
        if diag.max() <= 0 or np.any(diag <= SINGULAR_PIVOT * diag.max()):
            raise NumericalInstability("Singular normal matrix (zero pivot)")

        scale = np.sqrt(diag)
        scaled = hessian / np.outer(scale, scale) + damping * np.eye(len(diag))
        if np.linalg.cond(scaled) > MAX_CONDITION:
            raise NumericalInstability("Ill-conditioned normal matrix")
        try:
            solution = linalg.solve(scaled, gradient / scale)
        except linalg.LinAlgError as exc:
            raise NumericalInstability(str(exc)) from exc
        # J is the residual Jacobian, so the descent step is -(J.J)^-1 J.r
        return -solution / scale


def acceptance_probability(delta, temperature):
    """Metropolis rule: improvements always, an increase delta with exp(-delta / T)."""
    if not np.isfinite(delta):
        return 0.0
    if delta <= 0:
        return 1.0
    return float(np.exp(-delta / temperature))


class SimulatedAnnealing:
    """Seeded simulated annealing.

    Worse proposals are accepted with probability exp(-delta / T), where
    delta is the absolute increase of the objective. The temperature decays
    geometrically and the proposal width shrinks with it.
    """

    name = "simulated_annealing"

    def minimize(self, objective, initial, lower, upper, config):
        rng = np.random.default_rng(config.seed)
        lo, hi = _finite_bounds(initial, lower, upper)
        span = hi - lo

        current = initial.copy()
        current_error = objective(current)
        best, best_error = current.copy(), current_error
        temperature = config.initial_temperature
        converged = False
        iterations = 0

        for iterations in range(1, config.max_iterations + 1):
            if temperature < MIN_TEMPERATURE:
                converged = True
                break

            width = config.step_scale * span * max(np.sqrt(temperature / config.initial_temperature), 1e-3)
            trial = np.clip(current + rng.normal(size=len(current)) * width, lower, upper)
            trial_error = objective(trial)
            if rng.random() < acceptance_probability(trial_error - current_error, temperature):
                current, current_error = trial, trial_error
                if current_error < best_error:
                    best, best_error = current.copy(), current_error

            temperature *= config.cooling_rate

        return OptimizationResult(best, best_error, iterations, converged, algorithm=self.name)


ALGORITHMS = {
    "grid_search": GridSearch(),
    "gradient_descent": GradientDescent(),
    "levenberg_marquardt": LevenbergMarquardt(),
    "simulated_annealing": SimulatedAnnealing(),
}


def _normalize_bounds(bounds, n_params):
    if bounds is None:
        return np.full(n_params, -np.inf), np.full(n_params, np.inf)
    lower, upper = bounds
    lower = np.broadcast_to(np.asarray(lower, dtype=float), (n_params,)).copy()
    upper = np.broadcast_to(np.asarray(upper, dtype=float), (n_params,)).copy()
    if np.any(lower > upper):
        raise InvalidConfiguration("Lower bounds must not exceed upper bounds")
    return lower, upper


def estimate_parameter_errors(objective, params):
    """
    Parameter uncertainties at the optimum.

    Uses the covariance (RSS / dof) * (J^T J)^-1 for residual objectives,
    otherwise sqrt(2 f / f'') per coordinate from second differences.

    Returns
    -------
    errors : ndarray
    covariance : ndarray or None
    """
    params = np.asarray(params, dtype=float)

    if hasattr(objective, "residuals"):
        residuals = objective.residuals(params)
        jac = residual_jacobian(objective, params)
        dof = max(1, len(residuals) - len(params))
        covariance = (residuals @ residuals) / dof * linalg.pinv(jac.T @ jac)
        errors = np.sqrt(np.clip(np.diag(covariance), 0.0, None))
        return errors, covariance

    value = objective(params)
    errors = np.empty_like(params)
    for i in range(len(params)):
        h = 1e-4 * max(1.0, abs(params[i]))
        step = np.zeros_like(params)
        step[i] = h
        curvature = (objective(params + step) - 2 * value + objective(params - step)) / h ** 2
        errors[i] = np.sqrt(2 * value / curvature) if curvature > 0 else np.inf
    return errors, None


def optimize(objective, initial, bounds=None, config=None, raise_on_failure=False):
    """
    Minimise ``objective`` over a bounded parameter vector.

    Parameters
    ----------
    objective : callable
        Scalar objective f(params). A :class:`LeastSquaresObjective` (or any
        object with a ``residuals`` method) unlocks the Gauss-Newton model in
        Levenberg-Marquardt and covariance-based parameter errors.
    initial : array_like
        Starting point; clipped into the bounds
    bounds : tuple of array_like, optional
        (lower, upper) bounds; infinite values are allowed
    config : optimizer configuration, optional
        One of the ``*Config`` classes (default: Levenberg-Marquardt)
    raise_on_failure : bool, optional
        Raise :class:`ConvergenceFailure` instead of returning a
        non-converged result

    Returns
    -------
    OptimizationResult

    Notes
    -----
    When Levenberg-Marquardt hits a singular or ill-conditioned system the
    same attempt is finished by grid search; ``result.fallback`` is then
    ``"grid_search"``.
    """
    config = config if config is not None else LevenbergMarquardtConfig()
    if config.kind not in ALGORITHMS:
        raise InvalidConfiguration(f"Unknown optimizer type: {config.kind!r}")

    initial = np.asarray(initial, dtype=float)
    lower, upper = _normalize_bounds(bounds, len(initial))
    initial = np.clip(initial, lower, upper)

    try:
        result = ALGORITHMS[config.kind].minimize(objective, initial, lower, upper, config)
    except NumericalInstability as exc:
        logger.warning("%s unstable (%s), falling back to grid search", config.kind, exc)
        result = ALGORITHMS["grid_search"].minimize(objective, initial, lower, upper, GridSearchConfig())
        result.fallback = "grid_search"
    result.algorithm = config.kind

    result.parameter_errors, result.covariance = estimate_parameter_errors(objective, result.parameters)

    if not result.converged:
        logger.info("%s did not converge after %d iterations (error %.6g)",
                    config.kind, result.iterations, result.final_error)
        if raise_on_failure:
            raise ConvergenceFailure(
                f"{config.kind} did not converge within {result.iterations} iterations",
                iterations=result.iterations, final_error=result.final_error
            )

    return result
