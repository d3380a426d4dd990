"""torchsensitivity: sensitivity analysis of differential equations."""

from . import (
    ordinary_differential_equation,
    quadrature,
    sensitivity,
)

__all__ = [
    "ordinary_differential_equation",
    "quadrature",
    "sensitivity",
]

__version__ = "0.1.0"
