"""Adaptive quadrature using Gauss-Kronrod rules."""

import heapq
import warnings
from typing import Callable, Tuple, Union

import torch
from torch import Tensor

from torchsensitivity.quadrature._exceptions import (
    QuadratureError,
    QuadratureWarning,
)
from torchsensitivity.quadrature._rules import GaussKronrod


def quad(
    f: Callable[[Tensor], Tensor],
    a: Union[float, Tensor],
    b: Union[float, Tensor],
    *,
    epsabs: float = 1.49e-8,
    epsrel: float = 1.49e-8,
    limit: int = 50,
    order: int = 21,
) -> Tensor:
    """
    Compute definite integral using adaptive quadrature.

    Uses adaptive bisection with Gauss-Kronrod error estimation. The
    integrand may be vector-valued; the error test uses the largest
    component.

    Parameters
    ----------
    f : callable
        Integrand. Receives nodes of shape (order,) and returns values of
        shape (order, *value_shape).
    a, b : float or Tensor
        Integration bounds (scalars only, not batched).
    epsabs : float
        Absolute error tolerance.
    epsrel : float
        Relative error tolerance.
    limit : int
        Maximum number of subintervals.
    order : int
        Kronrod order of the underlying rule, 15 or 21.

    Returns
    -------
    Tensor
        Integral approximation, shape ``value_shape``.

    Raises
    ------
    QuadratureError
        If convergence is not achieved within ``limit`` subdivisions.

    Notes
    -----
    Differentiable with respect to parameters captured in f's closure.
    Gradients through the integration limits are not supported.

    Examples
    --------
    >>> quad(torch.sin, 0, torch.pi)  # approximately 2.0
    """
    result, error, info = quad_info(
        f,
        a,
        b,
        epsabs=epsabs,
        epsrel=epsrel,
        limit=limit,
        order=order,
        warn=False,
    )

    if not info["converged"]:
        scale = result.detach().abs().max().item() if result.numel() else 0
        raise QuadratureError(
            f"Integration failed to converge after {info['nsubintervals']} "
            f"subintervals. Error estimate: {error.item():.2e}, "
            f"tolerance: {epsabs + epsrel * scale:.2e}"
        )

    return result


def quad_info(
    f: Callable[[Tensor], Tensor],
    a: Union[float, Tensor],
    b: Union[float, Tensor],
    *,
    epsabs: float = 1.49e-8,
    epsrel: float = 1.49e-8,
    limit: int = 50,
    order: int = 21,
    warn: bool = True,
) -> Tuple[Tensor, Tensor, dict]:
    """
    Like quad, but returns error estimate and info dict.

    Returns
    -------
    result : Tensor
        Integral approximation.
    error : Tensor
        Estimated absolute error.
    info : dict
        Information dict with keys:
        - "neval": Number of function evaluations
        - "nsubintervals": Number of subintervals used
        - "converged": Whether tolerance was achieved

    Warns
    -----
    QuadratureWarning
        If the tolerance was not achieved and ``warn`` is True.
    """
    gk_rule = GaussKronrod(order)

    if isinstance(a, Tensor):
        dtype, device = a.dtype, a.device
    elif isinstance(b, Tensor):
        dtype, device = b.dtype, b.device
    else:
        dtype, device = torch.float64, torch.device("cpu")

    a_val = a.detach().item() if isinstance(a, Tensor) else float(a)
    b_val = b.detach().item() if isinstance(b, Tensor) else float(b)

    def integrate(left: float, right: float):
        return gk_rule.integrate_with_error(
            f,
            torch.tensor(left, dtype=dtype, device=device),
            torch.tensor(right, dtype=dtype, device=device),
        )

    def tolerance(total: Tensor) -> float:
        scale = total.detach().abs().max().item() if total.numel() else 0.0
        return epsabs + epsrel * scale

    result_ab, error_ab = integrate(a_val, b_val)
    neval = order

    if error_ab.item() <= tolerance(result_ab):
        return (
            result_ab,
            error_ab,
            {"neval": neval, "nsubintervals": 1, "converged": True},
        )

    # Leaf intervals: index -> (bounds, result, error)
    leaves = {0: ((a_val, b_val), result_ab, error_ab)}
    heap = [(-error_ab.item(), 0)]
    next_index = 1
    nsubintervals = 1
    converged = False

    while heap and nsubintervals < limit:
        _, idx = heapq.heappop(heap)
        (left, right), _, _ = leaves.pop(idx)
        mid = (left + right) / 2

        for bounds in ((left, mid), (mid, right)):
            result_i, error_i = integrate(*bounds)
            leaves[next_index] = (bounds, result_i, error_i)
            heapq.heappush(heap, (-error_i.item(), next_index))
            next_index += 1

        neval += 2 * order
        nsubintervals += 1

        total_result = sum(leaf[1] for leaf in leaves.values())
        total_error = sum(leaf[2] for leaf in leaves.values())
        if total_error.item() <= tolerance(total_result):
            converged = True
            break

    total_result = sum(leaf[1] for leaf in leaves.values())
    total_error = sum(leaf[2] for leaf in leaves.values())

    if not converged and warn:
        warnings.warn(
            f"Quadrature did not converge. Error: {total_error.item():.2e}",
            QuadratureWarning,
        )

    return (
        total_result,
        total_error,
        {
            "neval": neval,
            "nsubintervals": nsubintervals,
            "converged": converged,
        },
    )
