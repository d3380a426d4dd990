"""Exceptions raised by the integrators."""


class IntegrationError(Exception):
    """Base exception for all integration errors."""

    pass


class ODESolverError(IntegrationError):
    """Base exception for initial value problem solver failures.

    Sensitivity engines never catch these: a solver failure during the
    forward or the backward pass ends the gradient computation.
    """

    pass


class MaxStepsExceeded(ODESolverError):
    """Raised when an adaptive solver exceeds max_steps."""

    pass


class StepSizeError(ODESolverError):
    """Raised when the adaptive step size falls below dt_min."""

    pass


class ConvergenceError(ODESolverError):
    """Raised when a Newton iteration fails to converge."""

    pass
