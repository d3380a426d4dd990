"""Gauss-Kronrod quadrature rule."""

from typing import Callable, Tuple, Union

import torch
from torch import Tensor

from torchsensitivity.quadrature._nodes import gauss_kronrod_nodes_weights


class GaussKronrod:
    """
    Gauss-Kronrod quadrature rule with embedded error estimation.

    Uses G(n)-K(2n+1) pairs: G7-K15, G10-K21. Integrands may be
    vector-valued: ``f(x)`` receives the nodes, shape (order,), and returns
    values of shape (order, *value_shape).

    Parameters
    ----------
    order : int
        Kronrod order: 15 or 21.

    Examples
    --------
    >>> rule = GaussKronrod(15)  # G7-K15
    >>> result, error = rule.integrate_with_error(torch.sin, 0, torch.pi)
    """

    def __init__(self, order: int = 15):
        if order not in (15, 21):
            raise ValueError(f"order must be 15 or 21, got {order}")
        self.order = order
        self._cache: dict = {}

    def _get_nodes_weights(
        self,
        dtype: torch.dtype,
        device: torch.device,
    ) -> Tuple[Tensor, Tensor, Tensor, Tensor]:
        """Get cached nodes and weights."""
        key = (str(dtype), str(device))
        if key not in self._cache:
            self._cache[key] = gauss_kronrod_nodes_weights(
                self.order, dtype=dtype, device=device
            )
        return self._cache[key]

    def integrate(
        self,
        f: Callable[[Tensor], Tensor],
        a: Union[float, Tensor],
        b: Union[float, Tensor],
    ) -> Tensor:
        """Kronrod approximation of the integral of f from a to b."""
        result, _ = self.integrate_with_error(f, a, b)
        return result

    def integrate_with_error(
        self,
        f: Callable[[Tensor], Tensor],
        a: Union[float, Tensor],
        b: Union[float, Tensor],
        dtype: torch.dtype = torch.float64,
        device: torch.device = None,
    ) -> Tuple[Tensor, Tensor]:
        """
        Integrate f with error estimate.

        Returns
        -------
        result : Tensor
            Kronrod approximation, shape ``value_shape``.
        error : Tensor
            Estimated error (max over components of |Kronrod - Gauss|),
            a 0-d tensor.
        """
        if isinstance(a, Tensor):
            dtype, device = a.dtype, a.device
        elif isinstance(b, Tensor):
            dtype, device = b.dtype, b.device

        nodes, k_weights, g_weights, g_indices = self._get_nodes_weights(
            dtype, device
        )

        half_width = (b - a) / 2
        center = (a + b) / 2

        values = f(half_width * nodes + center)
        expand = (-1,) + (1,) * (values.dim() - 1)

        kronrod_result = half_width * (
            values * k_weights.reshape(expand)
        ).sum(dim=0)
        gauss_result = half_width * (
            values[g_indices] * g_weights.reshape(expand)
        ).sum(dim=0)

        error = torch.abs(kronrod_result - gauss_result).detach()
        if error.dim() > 0:
            error = error.max() if error.numel() else error.sum()

        return kronrod_result, error
