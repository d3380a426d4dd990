"""Newton's method for algebraic constraints."""

from typing import Callable, Sequence, Tuple

import torch
import torch.autograd.forward_ad as fwAD

from torchsensitivity.ordinary_differential_equation._exceptions import (
    ConvergenceError,
)


def _has_tangent(x: torch.Tensor) -> bool:
    return fwAD.unpack_dual(x).tangent is not None


def newton_solve(
    g: Callable[..., torch.Tensor],
    z0: torch.Tensor,
    args: Sequence[torch.Tensor] = (),
    tol: float = 1e-10,
    max_iter: int = 20,
    throw: bool = True,
) -> Tuple[torch.Tensor, bool]:
    """
    Solve g(z, *args) = 0 for z using Newton's method.

    The iteration runs on detached values. One final Newton step is then
    taken from the converged iterate with the residual evaluated on the
    original ``args`` and a constant Jacobian, so that the returned root
    carries the implicit-function-theorem derivative
    ``dz/dargs = -(dg/dz)^{-1} dg/dargs`` for both reverse-mode graphs and
    forward-mode tangents.

    Parameters
    ----------
    g : callable
        Residual ``g(z, *args)`` with the same shape as z, shape (n,).
    z0 : Tensor
        Initial guess, shape (n,).
    args : sequence of Tensor
        Extra arguments the root depends on.
    tol : float
        Convergence tolerance on the residual norm.
    max_iter : int
        Maximum number of Newton iterations.
    throw : bool
        If True (default), raise ConvergenceError when the iteration fails.

    Returns
    -------
    z : Tensor
        Root of g.
    converged : bool
        Whether the iteration converged within tolerance.

    Raises
    ------
    ConvergenceError
        If the iteration does not converge or the Jacobian is singular
        (only when throw=True).
    """
    detached_args = [
        a.detach() if isinstance(a, torch.Tensor) else a for a in args
    ]

    def g_detached(z):
        return g(z, *detached_args)

    z = z0.detach().clone()
    converged = False
    with torch.no_grad():
        for _ in range(max_iter):
            residual = g_detached(z)
            if torch.linalg.norm(residual) < tol:
                converged = True
                break

            jac = torch.func.jacrev(g_detached)(z)
            if jac.dim() == 1:
                jac = jac.unsqueeze(0)

            try:
                dz = torch.linalg.solve(jac, -residual.unsqueeze(-1))
            except RuntimeError as exc:
                if throw:
                    raise ConvergenceError(
                        "Singular Jacobian in Newton iteration"
                    ) from exc
                return z, False

            z = z + dz.squeeze(-1)
        else:
            converged = bool(torch.linalg.norm(g_detached(z)) < tol)

    if not converged and throw:
        raise ConvergenceError(
            f"Newton iteration did not converge in {max_iter} iterations"
        )

    jac = torch.func.jacrev(g_detached)(z).detach()
    if jac.dim() == 1:
        jac = jac.unsqueeze(0)
    residual = g(z, *args)
    if isinstance(residual, torch.Tensor) and not (
        residual.requires_grad or _has_tangent(residual)
    ):
        return z, converged
    correction = torch.linalg.solve(jac, residual.unsqueeze(-1)).squeeze(-1)
    return z - correction, converged
