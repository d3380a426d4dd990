"""Vector-Jacobian and Jacobian-vector products of right-hand sides.

A VJP choice is a small frozen record naming an automatic differentiation
strategy. ``choice.backend()`` builds the object the engines call:

* ``vjp(rhs, u, p, t, v) -> (f, J_u^T v, J_p^T v)``
* ``jvp(rhs, u, p, t, du, dp) -> (f, J_u du + J_p dp)``

where ``rhs(u, p, t)`` acts on flat state and parameter vectors. What a
backend can do is declared by capability flags on the choice rather than
hard-coded per algorithm.
"""

import contextlib
from dataclasses import dataclass
from typing import Callable, ClassVar, Optional, Tuple

import torch
import torch.autograd.forward_ad as fwAD
from torch import Tensor


def _zeros_if_none(grad: Optional[Tensor], like: Tensor) -> Tensor:
    return torch.zeros_like(like) if grad is None else grad


def dual_level():
    """
    Forward AD level for duals made internally.

    Dual levels do not nest, so a level the caller has entered is reused.
    Inputs must then be stripped of the caller's tangents (see ``primal``).
    """
    if fwAD._current_level >= 0:
        return contextlib.nullcontext()
    return fwAD.dual_level()


def primal(x: Tensor) -> Tensor:
    """``x`` without its forward mode tangent."""
    return fwAD.unpack_dual(x).primal


class VJPBackend:
    """Interface of the products the engines need."""

    def vjp(
        self, rhs: Callable, u: Tensor, p: Tensor, t: Tensor, v: Tensor
    ) -> Tuple[Tensor, Tensor, Tensor]:
        raise NotImplementedError

    def jvp(
        self,
        rhs: Callable,
        u: Tensor,
        p: Tensor,
        t: Tensor,
        du: Tensor,
        dp: Tensor,
    ) -> Tuple[Tensor, Tensor]:
        raise NotImplementedError

    def jacobians(
        self, rhs: Callable, u: Tensor, p: Tensor, t: Tensor
    ) -> Tuple[Tensor, Tensor, Tensor]:
        """Dense ``(f, J_u, J_p)`` built column by column from ``jvp``."""
        n, m = u.numel(), p.numel()
        f = None
        columns_u = []
        for i in range(n):
            du = torch.zeros_like(u)
            du[i] = 1.0
            f, column = self.jvp(rhs, u, p, t, du, torch.zeros_like(p))
            columns_u.append(column)
        columns_p = []
        for j in range(m):
            dp = torch.zeros_like(p)
            dp[j] = 1.0
            f, column = self.jvp(rhs, u, p, t, torch.zeros_like(u), dp)
            columns_p.append(column)
        if f is None:
            f = rhs(u, p, t)
        jac_u = torch.stack(columns_u, dim=-1)
        if columns_p:
            jac_p = torch.stack(columns_p, dim=-1)
        else:
            jac_p = u.new_zeros(f.numel(), 0)
        return f, jac_u, jac_p


class _TapeBackend(VJPBackend):
    def __init__(self, compile: bool = False):
        self._compile = compile
        self._traced = {}

    def _function(self, rhs, u, p, t):
        if not self._compile:
            return rhs
        key = id(rhs)
        if key not in self._traced:

            def traced_rhs(u, p, t):
                return rhs(u, p, t)

            # rhs is stored alongside so its id stays unique
            self._traced[key] = (
                rhs,
                torch.jit.trace(
                    traced_rhs,
                    (u.detach(), p.detach(), t.detach()),
                    check_trace=False,
                ),
            )
        return self._traced[key][1]

    def vjp(self, rhs, u, p, t, v):
        with torch.enable_grad():
            u_ = u.detach().requires_grad_(True)
            p_ = p.detach().requires_grad_(True)
            f = self._function(rhs, u_, p_, t)(u_, p_, t)
            grad_u, grad_p = torch.autograd.grad(
                f, (u_, p_), v, allow_unused=True
            )
        return (
            f.detach(),
            _zeros_if_none(grad_u, u),
            _zeros_if_none(grad_p, p),
        )


class _FunctionalBackend(VJPBackend):
    def vjp(self, rhs, u, p, t, v):
        f, pullback = torch.func.vjp(
            lambda u_, p_: rhs(u_, p_, t), u.detach(), p.detach()
        )
        grad_u, grad_p = pullback(v)
        return f, grad_u, grad_p


class _ForwardModeBackend(VJPBackend):
    def jvp(self, rhs, u, p, t, du, dp):
        with dual_level():
            u_dual = fwAD.make_dual(primal(u).detach(), du)
            p_dual = fwAD.make_dual(primal(p).detach(), dp)
            out = fwAD.unpack_dual(rhs(u_dual, p_dual, t))
            tangent = out.tangent
            f = out.primal.clone()
            tangent = (
                torch.zeros_like(f) if tangent is None else tangent.clone()
            )
        return f, tangent

    def vjp(self, rhs, u, p, t, v):
        f, jac_u, jac_p = self.jacobians(rhs, u, p, t)
        return f, jac_u.T @ v, jac_p.T @ v


class _NumericalBackend(VJPBackend):
    def __init__(self, step: Optional[float] = None):
        self._step = step

    def jvp(self, rhs, u, p, t, du, dp):
        u, p = u.detach(), p.detach()
        direction_norm = torch.sqrt((du**2).sum() + (dp**2).sum()).item()
        f = rhs(u, p, t)
        if direction_norm == 0:
            return f, torch.zeros_like(f)
        if self._step is None:
            scale = max(1.0, u.abs().max().item() if u.numel() else 0.0)
            eps = torch.finfo(u.dtype).eps ** (1 / 3) * scale
        else:
            eps = self._step
        eps = eps / direction_norm
        forward = rhs(u + eps * du, p + eps * dp, t)
        backward = rhs(u - eps * du, p - eps * dp, t)
        return f, (forward - backward) / (2 * eps)

    def vjp(self, rhs, u, p, t, v):
        f, jac_u, jac_p = self.jacobians(rhs, u, p, t)
        return f, jac_u.T @ v, jac_p.T @ v


class _UserBackend(VJPBackend):
    def __init__(self, fn: Callable):
        self._fn = fn

    def vjp(self, rhs, u, p, t, v):
        # rhs carries the (un)flattening of the problem it was built for
        f, pullback = rhs.user_vjp(self._fn, u, p, t)
        grad_u, grad_p = pullback(v)
        return f, grad_u, grad_p


@dataclass(frozen=True)
class AutogradVJP:
    """
    Tape-based reverse mode (``torch.autograd``).

    Parameters
    ----------
    compile : bool
        Trace the right-hand side once with ``torch.jit.trace`` and reuse
        the trace. Only valid when ``f`` has no data-dependent branching.
        Not available for DAEs, whose right-hand side runs a Newton
        iteration.
    """

    compile: bool = False

    supports_reverse: ClassVar[bool] = True
    supports_forward: ClassVar[bool] = False
    supports_nonode: ClassVar[bool] = True

    @property
    def supports_dae(self) -> bool:
        return not self.compile

    def backend(self) -> VJPBackend:
        return _TapeBackend(compile=self.compile)


@dataclass(frozen=True)
class FunctionalVJP:
    """Functional transform (``torch.func.vjp``); reverse products only."""

    supports_reverse: ClassVar[bool] = True
    supports_forward: ClassVar[bool] = False
    supports_nonode: ClassVar[bool] = True
    supports_dae: ClassVar[bool] = False

    def backend(self) -> VJPBackend:
        return _FunctionalBackend()


@dataclass(frozen=True)
class ForwardModeJVP:
    """
    Forward mode dual numbers (``torch.autograd.forward_ad``).

    Vector-Jacobian products assemble the dense Jacobian from one JVP per
    state and parameter component, so use it for small systems only.
    """

    supports_reverse: ClassVar[bool] = True
    supports_forward: ClassVar[bool] = True
    supports_nonode: ClassVar[bool] = True
    supports_dae: ClassVar[bool] = True

    def backend(self) -> VJPBackend:
        return _ForwardModeBackend()


@dataclass(frozen=True)
class NumericalJVP:
    """
    Central finite differences.

    Parameters
    ----------
    step : float, optional
        Perturbation size. Default: ``eps ** (1/3)`` scaled by the state
        magnitude.
    """

    step: Optional[float] = None

    supports_reverse: ClassVar[bool] = True
    supports_forward: ClassVar[bool] = True
    supports_nonode: ClassVar[bool] = True
    supports_dae: ClassVar[bool] = True

    def backend(self) -> VJPBackend:
        return _NumericalBackend(self.step)


@dataclass(frozen=True)
class UserVJP:
    """
    Hand-written vector-Jacobian product.

    Parameters
    ----------
    fn : callable
        ``fn(u, p, t) -> (f(u, p, t), pullback)`` with
        ``pullback(v) -> (J_u^T v, J_p^T v)``, in the structure of the
        problem's state and parameters.
    """

    fn: Callable

    supports_reverse: ClassVar[bool] = True
    supports_forward: ClassVar[bool] = False
    supports_nonode: ClassVar[bool] = False
    supports_dae: ClassVar[bool] = False

    def backend(self) -> VJPBackend:
        return _UserBackend(self.fn)


VJP_CHOICES = (
    AutogradVJP,
    FunctionalVJP,
    ForwardModeJVP,
    NumericalJVP,
    UserVJP,
)
