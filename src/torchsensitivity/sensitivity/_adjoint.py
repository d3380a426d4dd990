"""Continuous adjoint engines.

The forward pass is an ordinary ``integrate`` call with grad disabled. The
backward pass walks the recorded boundaries from ``t1`` to ``t0``. At each
boundary it adds the cotangents of the outputs saved there, maps the
adjoint across the events applied there, and then integrates the adjoint
equations over the segment before it. How the state is obtained along a
segment is what distinguishes the engines.

All backward integrations run in reversed time ``s = b - t`` so the
forward-only solvers can be reused.
"""

import logging
import math
import warnings
from typing import Callable, List, Tuple

import torch
from torch import Tensor

from torchsensitivity.sensitivity._dynamics import ODEDynamics
from torchsensitivity.sensitivity._exceptions import (
    AdjointDivergedError,
    AdjointStabilityWarning,
)
from torchsensitivity.sensitivity._trajectory import (
    EventRecord,
    Trajectory,
    integrate,
)
from torchsensitivity.sensitivity._vjp import VJPBackend

logger = logging.getLogger(__name__)


def _check_adjoint_stability(
    a: Tensor,
    a_prev: Tensor,
    t: float,
    dt: float,
    warned: List[bool],
) -> None:
    """Check adjoint stability and warn/raise as appropriate.

    Parameters
    ----------
    a : Tensor
        Adjoint state at the start of the segment just integrated.
    a_prev : Tensor
        Adjoint state at its end.
    t : float
        Current time.
    dt : float
        Segment length.
    warned : list of bool
        Single-element list used as mutable flag to avoid repeated warnings
    """
    a_norm = a.norm().item()
    a_prev_norm = a_prev.norm().item()

    if not torch.isfinite(a).all() or a_norm > 1e30:
        raise AdjointDivergedError(t, a_norm)

    if a_prev_norm > 1e-30 and dt > 0 and not warned[0]:
        growth_rate = (
            math.log(a_norm / a_prev_norm) / dt if a_norm > a_prev_norm else 0
        )
        if growth_rate > 1.0:  # e-folding time < 1
            warnings.warn(
                f"Adjoint growing rapidly at t={t:.4f} "
                f"(rate = {growth_rate:.2e}/unit time). "
                f"This may indicate unstable dynamics. "
                f"Consider reducing integration time.",
                AdjointStabilityWarning,
            )
            warned[0] = True


def _zeros_if_none(grad, like: Tensor) -> Tensor:
    return torch.zeros_like(like) if grad is None else grad


class AdjointEngine:
    """
    Shared forward pass and boundary handling of the adjoint methods.

    Subclasses implement ``backward_segment``.

    Parameters
    ----------
    dynamics : ODEDynamics
        Flat view of the problem.
    sensealg
        The adjoint algorithm record.
    backend : VJPBackend
        Vector-Jacobian products of the right-hand side.
    solver : callable
        Integrator used forward and backward.
    solver_options : dict
        Options forwarded to every solver call.
    save_times : list of float
        Output times, increasing.
    """

    keep_interpolants = True

    def __init__(
        self,
        dynamics: ODEDynamics,
        sensealg,
        backend: VJPBackend,
        solver: Callable,
        solver_options: dict,
        save_times: List[float],
    ):
        self.dynamics = dynamics
        self.sensealg = sensealg
        self.backend = backend
        self.solver = solver
        self.solver_options = dict(solver_options)
        self.save_times = list(save_times)
        self.trajectory: Trajectory = None
        self.p: Tensor = None

    def forward(self, u0: Tensor, p: Tensor) -> Tensor:
        """Integrate and return the outputs at the save times, (T, n)."""
        dynamics = self.dynamics
        self.p = p.detach()
        y0 = dynamics.initial_state(u0.detach()).reshape(1, -1)
        with torch.no_grad():
            self.trajectory = integrate(
                dynamics,
                y0,
                self.p.reshape(1, -1),
                self.save_times,
                solver=self.solver,
                solver_options=self.solver_options,
                differentiable_events=False,
                single_event=True,
                keep_interpolants=self.keep_interpolants,
            )
            outputs = [
                dynamics.output(y[0], self.p, t)
                for t, y in zip(self.save_times, self.trajectory.save_states)
            ]
        return torch.stack(outputs)

    # -- backward -----------------------------------------------------------

    def backward(self, grad_outputs: Tensor) -> Tuple[Tensor, Tensor]:
        """Gradients of ``<grad_outputs, outputs>`` w.r.t. ``u0`` and ``p``."""
        dynamics = self.dynamics
        trajectory = self.trajectory
        p = self.p
        lam = torch.zeros(
            dynamics.n_state, dtype=dynamics.dtype, device=dynamics.device
        )
        mu = torch.zeros_like(p)
        warned = [False]

        boundaries = trajectory.boundaries
        for k in range(len(boundaries) - 1, -1, -1):
            boundary = boundaries[k]
            for index in boundary.save_indices:
                grad_y, grad_p = dynamics.output_vjp(
                    boundary.y[0], p, boundary.time, grad_outputs[index]
                )
                lam = lam + grad_y
                mu = mu + grad_p
            for record in reversed(boundary.events):
                lam, mu = self._jump(record, lam, mu)
            if k == 0:
                break
            segment = trajectory.segments[k - 1]
            lam_end = lam
            lam, mu = self.backward_segment(k - 1, lam, mu)
            _check_adjoint_stability(
                lam,
                lam_end,
                segment.t_start,
                segment.t_end - segment.t_start,
                warned,
            )

        grad_u0 = torch.zeros(
            dynamics.n_output, dtype=dynamics.dtype, device=dynamics.device
        )
        grad_u0[dynamics.state_index] = lam
        logger.debug(
            "%s backward pass done, |grad_u0|=%.3e |grad_p|=%.3e",
            type(self.sensealg).__name__,
            grad_u0.norm().item(),
            mu.norm().item(),
        )
        return grad_u0, mu

    def backward_segment(
        self, index: int, lam: Tensor, mu: Tensor
    ) -> Tuple[Tensor, Tensor]:
        raise NotImplementedError

    def _jump(
        self, record: EventRecord, lam: Tensor, mu: Tensor
    ) -> Tuple[Tensor, Tensor]:
        """Map the adjoint from just after an event to just before it."""
        dynamics = self.dynamics
        callback = dynamics.callbacks[record.callback_index]
        p = self.p
        y_minus = record.y_minus[0].detach()
        t = dynamics.as_time(record.time)

        with torch.enable_grad():
            y_ = y_minus.clone().requires_grad_(True)
            p_ = p.clone().requires_grad_(True)
            t_ = t.clone().requires_grad_(True)
            y_plus = dynamics.affect(callback, y_, p_, t_)
            if y_plus.requires_grad:
                grads = torch.autograd.grad(
                    y_plus, (y_, p_, t_), lam, allow_unused=True
                )
            else:
                grads = (None, None, None)
        a_y = _zeros_if_none(grads[0], y_minus)
        a_p = _zeros_if_none(grads[1], p)
        a_t = _zeros_if_none(grads[2], t)

        if not record.continuous:
            return a_y, mu + a_p

        # A continuous event also moves in time when y- or p change.
        with torch.no_grad():
            f_minus = record.rhs_before(y_minus, p, t)
            f_plus = record.rhs_after(record.y_plus[0].detach(), p, t)
        with torch.enable_grad():
            y_ = y_minus.clone().requires_grad_(True)
            p_ = p.clone().requires_grad_(True)
            t_ = t.clone().requires_grad_(True)
            g = dynamics.condition(callback, y_, p_, t_)
            g_y, g_p, g_t = torch.autograd.grad(
                g, (y_, p_, t_), allow_unused=True
            )
        g_y = _zeros_if_none(g_y, y_minus)
        g_p = _zeros_if_none(g_p, p)
        g_t = _zeros_if_none(g_t, t)

        rate = torch.dot(g_y, f_minus) + g_t
        shift = torch.dot(a_y, f_minus) + a_t - torch.dot(lam, f_plus)
        ratio = shift / rate
        return a_y - ratio * g_y, mu + a_p - ratio * g_p


class _AdjointFunction(torch.autograd.Function):
    """Outputs at the save times, differentiated by an ``AdjointEngine``.

    The engine is passed through ``apply`` unchanged, so after the call it
    holds the forward trajectory for building the solution object.
    """

    @staticmethod
    def forward(ctx, u0: Tensor, p: Tensor, engine: AdjointEngine):
        ctx.engine = engine
        return engine.forward(u0, p)

    @staticmethod
    def backward(ctx, grad_outputs: Tensor):
        grad_u0, grad_p = ctx.engine.backward(grad_outputs.detach())
        return grad_u0, grad_p, None
