"""Flat-vector views of user problems.

The engines work with an integration state ``y`` of ``n_state`` entries, a
flat parameter vector ``p`` of ``n_params`` entries and 0-d tensor times.
A dynamics object translates to and from the structures the user's
functions expect, and maps the integration state to the reported solution
``u = output(y, p, t)``. For ODEs, SDEs and DDEs ``y`` is the flattened
``u``; for DAEs it is the differential part ``x`` only, the algebraic part
being recovered by Newton iteration.
"""

from typing import Callable, List, Optional, Tuple

import torch
from torch import Tensor

from torchsensitivity.ordinary_differential_equation import (
    flatten_state,
    newton_solve,
)
from torchsensitivity.sensitivity._callbacks import ContinuousCallback
from torchsensitivity.sensitivity._problem import (
    DAEProblem,
    DDEProblem,
    ODEProblem,
    Problem,
    SDEProblem,
)


def _flat(x) -> Tensor:
    if isinstance(x, Tensor):
        return x.reshape(-1)
    flat, _ = flatten_state(x)
    return flat


class SegmentRHS:
    """Right-hand side ``rhs(y, p, t)`` valid on one solver segment."""

    def __init__(self, dynamics: "ODEDynamics", noise_index: Optional[int]):
        self.dynamics = dynamics
        self.noise_index = noise_index

    def __call__(self, y: Tensor, p: Tensor, t: Tensor) -> Tensor:
        return self.dynamics.rhs(y, p, t, self.noise_index)

    def user_vjp(self, fn: Callable, y: Tensor, p: Tensor, t: Tensor):
        return self.dynamics.user_vjp(fn, y, p, t)


class ODEDynamics:
    """Flat view of an ``ODEProblem``."""

    def __init__(self, problem: Problem):
        self.problem = problem
        u0_flat, self._unflatten_u = flatten_state(problem.u0)
        self.n_output = u0_flat.numel()
        self.n_state = self.n_output
        self.dtype = u0_flat.dtype
        self.device = u0_flat.device
        self.p_shape = None if problem.p is None else problem.p.shape
        self.n_params = 0 if problem.p is None else problem.p.numel()
        self.callbacks = tuple(problem.callbacks)
        self.t0, self.t1 = problem.tspan
        self._segment_rhs = {}

    @property
    def equation_class(self) -> str:
        return self.problem.equation_class

    @property
    def has_continuous_callbacks(self) -> bool:
        return any(isinstance(c, ContinuousCallback) for c in self.callbacks)

    # -- structure ----------------------------------------------------------

    def flat_u0(self) -> Tensor:
        return _flat(self.problem.u0)

    def flat_p(self) -> Tensor:
        if self.problem.p is None:
            return torch.zeros(0, dtype=self.dtype, device=self.device)
        return self.problem.p.reshape(-1)

    def unflatten_u(self, u: Tensor):
        return self._unflatten_u(u)

    def unflatten_p(self, p: Tensor):
        if self.p_shape is None:
            return None
        return p.reshape(self.p_shape)

    def as_time(self, t) -> Tensor:
        if isinstance(t, Tensor):
            return t
        return torch.tensor(t, dtype=self.dtype, device=self.device)

    def _call(self, fn: Callable, inplace: bool, u, *args) -> Tensor:
        if inplace:
            du = torch.zeros_like(u)
            fn(du, u, *args)
            return _flat(du)
        return _flat(fn(u, *args))

    # -- integration state --------------------------------------------------

    @property
    def state_index(self) -> Tensor:
        """Indices of ``u0`` that make up the integration state."""
        return torch.arange(self.n_state, device=self.device)

    def initial_state(self, u0: Tensor) -> Tensor:
        return u0

    def state_from_output(self, u: Tensor) -> Tensor:
        return u

    def output(self, y: Tensor, p: Tensor, t) -> Tensor:
        return y

    def output_vjp(
        self, y: Tensor, p: Tensor, t, w: Tensor
    ) -> Tuple[Tensor, Tensor]:
        return w, torch.zeros_like(p)

    # -- right-hand side ----------------------------------------------------

    def rhs(self, y: Tensor, p: Tensor, t, noise_index=None) -> Tensor:
        return self._call(
            self.problem.f,
            self.problem.inplace,
            self.unflatten_u(y),
            self.unflatten_p(p),
            self.as_time(t),
        )

    def breakpoints(self) -> List[float]:
        return []

    def noise_index_at(self, t: float) -> Optional[int]:
        return None

    def segment_rhs(self, t_start: float) -> SegmentRHS:
        k = self.noise_index_at(t_start)
        if k not in self._segment_rhs:
            self._segment_rhs[k] = SegmentRHS(self, k)
        return self._segment_rhs[k]

    def user_vjp(self, fn: Callable, y: Tensor, p: Tensor, t):
        f, pullback = fn(
            self.unflatten_u(y), self.unflatten_p(p), self.as_time(t)
        )

        def flat_pullback(v: Tensor):
            grad_u, grad_p = pullback(self.unflatten_u(v))
            grad_p = (
                torch.zeros_like(p) if grad_p is None else _flat(grad_p)
            )
            return _flat(grad_u), grad_p

        return _flat(f), flat_pullback

    # -- events -------------------------------------------------------------

    def condition(self, callback, y: Tensor, p: Tensor, t) -> Tensor:
        u = self.output(y, p, t)
        value = callback.condition(
            self.unflatten_u(u), self.unflatten_p(p), self.as_time(t)
        )
        return value.reshape(())

    def affect(self, callback, y: Tensor, p: Tensor, t) -> Tensor:
        u = self.output(y, p, t)
        u_new = callback.affect(
            self.unflatten_u(u), self.unflatten_p(p), self.as_time(t)
        )
        return self.state_from_output(_flat(u_new))


class SDEDynamics(ODEDynamics):
    """Pathwise random ODE ``f + g * dW_k / dt_k`` of an ``SDEProblem``."""

    def __init__(self, problem: SDEProblem):
        super().__init__(problem)
        self._noise = problem.noise

    def breakpoints(self) -> List[float]:
        return list(self._noise.times)

    def noise_index_at(self, t: float) -> Optional[int]:
        return self._noise.interval_index(t)

    def rhs(self, y: Tensor, p: Tensor, t, noise_index=None) -> Tensor:
        u = self.unflatten_u(y)
        p_user = self.unflatten_p(p)
        t = self.as_time(t)
        drift = self._call(self.problem.f, self.problem.inplace, u, p_user, t)
        if noise_index is None:
            return drift
        diffusion = self._call(
            self.problem.g, self.problem.inplace, u, p_user, t
        )
        xi = self._noise.white_noise(noise_index).reshape(-1)
        xi = xi.to(dtype=drift.dtype, device=drift.device)
        return drift + diffusion * xi


class DAEDynamics(ODEDynamics):
    """Reduced ODE in the differential variables of a ``DAEProblem``."""

    def __init__(self, problem: DAEProblem):
        super().__init__(problem)
        self.n_state = problem.n_differential
        self._z_guess = problem.u0[problem.n_differential :].detach().clone()

    def initial_state(self, u0: Tensor) -> Tensor:
        return u0[: self.n_state]

    def state_from_output(self, u: Tensor) -> Tensor:
        return u[: self.n_state]

    def algebraic(self, x: Tensor, p: Tensor, t) -> Tensor:
        g = self.problem.g
        unflatten_p = self.unflatten_p

        def residual(z, x_, p_, t_):
            return g(x_, z, unflatten_p(p_), t_).reshape(-1)

        z, _ = newton_solve(
            residual, self._z_guess, args=(x, p, self.as_time(t))
        )
        self._z_guess = z.detach().clone()
        return z

    def output(self, y: Tensor, p: Tensor, t) -> Tensor:
        return torch.cat([y, self.algebraic(y, p, t)])

    def output_vjp(self, y, p, t, w):
        with torch.enable_grad():
            y_ = y.detach().requires_grad_(True)
            p_ = p.detach().requires_grad_(True)
            u = self.output(y_, p_, t)
            grad_y, grad_p = torch.autograd.grad(
                u, (y_, p_), w, allow_unused=True
            )
        grad_y = torch.zeros_like(y) if grad_y is None else grad_y
        grad_p = torch.zeros_like(p) if grad_p is None else grad_p
        return grad_y, grad_p

    def rhs(self, y: Tensor, p: Tensor, t, noise_index=None) -> Tensor:
        t = self.as_time(t)
        z = self.algebraic(y, p, t)
        return self.problem.f(y, z, self.unflatten_p(p), t).reshape(-1)


class DDEDynamics(ODEDynamics):
    """Flat view of a ``DDEProblem``."""

    def delay_rhs(self, y: Tensor, h: Callable, p: Tensor, t) -> Tensor:
        unflatten_u = self.unflatten_u

        def h_user(s):
            return unflatten_u(h(s))

        return self._call(
            self.problem.f,
            self.problem.inplace,
            self.unflatten_u(y),
            h_user,
            self.unflatten_p(p),
            self.as_time(t),
        )

    def history(self, p: Tensor, s) -> Tensor:
        return _flat(self.problem.history(self.unflatten_p(p), s))

    def rhs(self, y, p, t, noise_index=None):
        raise TypeError("delay problems are integrated with delay_rhs")


def make_dynamics(problem: Problem) -> ODEDynamics:
    """Build the flat view matching the problem's equation class."""
    if isinstance(problem, SDEProblem):
        return SDEDynamics(problem)
    if isinstance(problem, DAEProblem):
        return DAEDynamics(problem)
    if isinstance(problem, DDEProblem):
        return DDEDynamics(problem)
    if isinstance(problem, ODEProblem):
        return ODEDynamics(problem)
    raise TypeError(f"Unsupported problem type {type(problem).__name__}")
