"""Exceptions and warnings raised by the sensitivity engines."""

from torchsensitivity.ordinary_differential_equation._exceptions import (
    ODESolverError,
)


class SensitivityError(Exception):
    """Base exception for sensitivity analysis errors."""

    pass


class ConfigurationError(SensitivityError, ValueError):
    """Raised when a sensitivity algorithm cannot handle a problem.

    Covers equation-class mismatches, unsupported event multiplicity and
    incompatible VJP / algorithm pairings. Raised before any integration
    starts.
    """

    pass


class NumericalInstabilityError(SensitivityError, RuntimeError):
    """Raised when the backward pass drifts away from the forward solution."""

    pass


class AdjointDivergedError(NumericalInstabilityError):
    """Raised when the adjoint state becomes non-finite."""

    def __init__(self, t: float, norm: float):
        super().__init__(
            f"Adjoint diverged at t={t:.4f} (norm={norm:.2e}). "
            f"Consider a shorter time span, checkpointing, or a "
            f"discrete method such as AutogradAdjoint."
        )
        self.t = t
        self.norm = norm


# Solver failures reach the caller as the solver's own exception.
UpstreamSolverError = ODESolverError


class BacksolveAdjointWarning(UserWarning):
    """Warning when the backward reconstruction of the state drifts."""

    pass


class InterpolationAccuracyWarning(UserWarning):
    """Warning when an adjoint reads states from low-order dense output."""

    pass


class AdjointStabilityWarning(UserWarning):
    """Warning when the adjoint state grows rapidly over a segment."""

    pass
