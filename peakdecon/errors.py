"""Error types raised by the decomposition engine.

All errors derive from :class:`DecompositionError`. The workflow catches them
per overlap group, so a failure only affects the peaks of that group.
"""


class DecompositionError(Exception):
    """Base class for all peakdecon errors."""


class InsufficientData(DecompositionError):
    """Raised when a region holds fewer samples than a fit requires."""

    def __init__(self, message, required=None, available=None):
        self.required = required
        self.available = available
        super().__init__(message)


class InvalidConfiguration(DecompositionError, ValueError):
    """Raised for out-of-range options or malformed inputs."""

    def __init__(self, message, problems=None):
        self.problems = list(problems) if problems else [message]
        super().__init__(message)


class ConvergenceFailure(DecompositionError):
    """Raised when an optimizer hits its iteration cap without converging."""

    def __init__(self, message, iterations=None, final_error=None):
        self.iterations = iterations
        self.final_error = final_error
        super().__init__(message)


class NumericalInstability(DecompositionError, ArithmeticError):
    """Raised when a fit matrix is singular or ill-conditioned."""
