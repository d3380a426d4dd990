"""Continuous forward sensitivity equations.

The state is integrated together with its Jacobian
``S = [du/du0 | du/dp]``, ``S' = J_u S + [0 | J_p]``, in one augmented
solve. The Jacobians at the save times are then attached to the outputs
through ``_LinearizedSolution`` so both reverse and forward mode autograd
see the sensitivities.
"""

from typing import Callable, List, Tuple

import torch
from torch import Tensor

from torchsensitivity.sensitivity._dynamics import ODEDynamics
from torchsensitivity.sensitivity._trajectory import (
    Boundary,
    LeadingComponents,
    Segment,
    Trajectory,
)
from torchsensitivity.sensitivity._vjp import VJPBackend, primal


class _LinearizedSolution(torch.autograd.Function):
    """Outputs with precomputed Jacobians w.r.t. ``u0`` and ``p``."""

    @staticmethod
    def forward(ctx, u0, p, values, jac_u0, jac_p):
        ctx.save_for_backward(jac_u0, jac_p)
        ctx.save_for_forward(jac_u0, jac_p)
        return values.clone()

    @staticmethod
    def backward(ctx, grad_outputs):
        jac_u0, jac_p = ctx.saved_tensors
        grad_u0 = torch.einsum("ti,tij->j", grad_outputs, jac_u0)
        grad_p = torch.einsum("ti,tij->j", grad_outputs, jac_p)
        return grad_u0, grad_p, None, None, None

    @staticmethod
    def jvp(ctx, tangent_u0, tangent_p, *unused):
        jac_u0, jac_p = ctx.saved_tensors
        out = torch.zeros(
            jac_u0.shape[:2], dtype=jac_u0.dtype, device=jac_u0.device
        )
        if tangent_u0 is not None:
            out = out + torch.einsum("tij,j->ti", jac_u0, tangent_u0)
        if tangent_p is not None:
            out = out + torch.einsum("tij,j->ti", jac_p, tangent_p)
        return out


def linearized_outputs(
    u0: Tensor, p: Tensor, values: Tensor, jac_u0: Tensor, jac_p: Tensor
) -> Tensor:
    """Attach ``jac_u0`` and ``jac_p`` to ``values`` as their derivatives."""
    return _LinearizedSolution.apply(u0, p, values, jac_u0, jac_p)


class ForwardSensitivityEngine:
    """
    Integrate ``[u, S]`` between consecutive save times.

    Parameters
    ----------
    dynamics : ODEDynamics
        Flat view of an ODE without callbacks.
    backend : VJPBackend
        Source of the ``J_u s + J_p q`` products.
    solver : callable
        Integrator.
    solver_options : dict
        Options forwarded to every solver call.
    save_times : list of float
        Output times, increasing.
    """

    def __init__(
        self,
        dynamics: ODEDynamics,
        backend: VJPBackend,
        solver: Callable,
        solver_options: dict,
        save_times: List[float],
    ):
        self.dynamics = dynamics
        self.backend = backend
        self.solver = solver
        self.solver_options = dict(solver_options)
        self.save_times = list(save_times)
        self.trajectory: Trajectory = None

    def run(
        self, u0: Tensor, p: Tensor
    ) -> Tuple[Tensor, Tensor, Tensor, Trajectory]:
        """
        Solve the augmented system.

        Returns
        -------
        values : Tensor
            Outputs at the save times, (T, n).
        jac_u0 : Tensor
            ``du/du0`` at the save times, (T, n, n).
        jac_p : Tensor
            ``du/dp`` at the save times, (T, n, m).
        trajectory : Trajectory
            Boundaries and dense output of the state part.
        """
        dynamics = self.dynamics
        backend = self.backend
        n = dynamics.n_state
        m = p.numel()
        width = n + m
        p = primal(p).detach()
        rhs = dynamics.segment_rhs(dynamics.t0)
        eye_p = torch.eye(m, dtype=p.dtype, device=p.device)
        zero_p = torch.zeros_like(p)

        def sensitivity_rhs(t, z):
            y = z[:n]
            S = z[n:].reshape(n, width)
            f = None
            columns = []
            for j in range(width):
                dp = eye_p[j - n] if j >= n else zero_p
                f, column = backend.jvp(rhs, y, p, t, S[:, j], dp)
                columns.append(column)
            return torch.cat([f, torch.stack(columns, dim=-1).reshape(-1)])

        S0 = torch.zeros(n, width, dtype=p.dtype, device=p.device)
        S0[:, :n] = torch.eye(n, dtype=p.dtype, device=p.device)
        z = torch.cat([primal(u0).detach().reshape(-1), S0.reshape(-1)])

        times = sorted({dynamics.t0, dynamics.t1, *self.save_times})
        states = {times[0]: z}
        boundaries = [Boundary(times[0], z[:n].reshape(1, -1))]
        segments = []
        with torch.no_grad():
            for a, b in zip(times[:-1], times[1:]):
                z_end, interp = self.solver(
                    sensitivity_rhs, z, (a, b), **self.solver_options
                )
                segments.append(
                    Segment(
                        a,
                        b,
                        z[:n].reshape(1, -1),
                        z_end[:n].reshape(1, -1),
                        LeadingComponents(interp, n),
                        rhs,
                    )
                )
                boundaries.append(Boundary(b, z_end[:n].reshape(1, -1)))
                states[b] = z_end
                z = z_end

        saved = [states[t] for t in self.save_times]
        values = torch.stack([s[:n] for s in saved])
        jac = torch.stack([s[n:].reshape(n, width) for s in saved])
        for boundary in boundaries:
            boundary.save_indices = [
                i for i, t in enumerate(self.save_times) if t == boundary.time
            ]
        self.trajectory = Trajectory(
            boundaries,
            segments,
            self.save_times,
            [v.reshape(1, -1) for v in values],
            [],
        )
        return values, jac[:, :, :n], jac[:, :, n:], self.trajectory
