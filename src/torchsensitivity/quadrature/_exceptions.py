"""Exceptions for quadrature integration."""

from torchsensitivity.ordinary_differential_equation._exceptions import (
    IntegrationError,
)


class QuadratureWarning(UserWarning):
    """Warning for quadrature issues (e.g., slow convergence)."""

    pass


class QuadratureError(IntegrationError):
    """Error when adaptive quadrature fails to converge."""

    pass
