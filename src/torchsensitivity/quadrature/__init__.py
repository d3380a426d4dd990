"""
Adaptive numerical quadrature.

quad
    Adaptive Gauss-Kronrod integration of (vector-valued) integrands.
quad_info
    Like quad, also returning the error estimate and diagnostics.
GaussKronrod
    G7-K15 / G10-K21 rule with embedded error estimate.
"""

from torchsensitivity.quadrature._exceptions import (
    QuadratureError,
    QuadratureWarning,
)
from torchsensitivity.quadrature._nodes import gauss_kronrod_nodes_weights
from torchsensitivity.quadrature._quad import quad, quad_info
from torchsensitivity.quadrature._rules import GaussKronrod

__all__ = [
    "GaussKronrod",
    "QuadratureError",
    "QuadratureWarning",
    "gauss_kronrod_nodes_weights",
    "quad",
    "quad_info",
]
