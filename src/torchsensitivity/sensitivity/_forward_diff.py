"""Forward mode differentiation through the solver with chunked duals.

Tangent directions over the initial state and the parameters are pushed
through the ordinary forward pass as ``torch.autograd.forward_ad`` duals.
One solve carries ``chunk`` directions as separate rows of the integration
state, all sharing one time grid.
"""

import logging
from typing import Callable, List, Optional, Tuple

import torch
import torch.autograd.forward_ad as fwAD
from torch import Tensor

from torchsensitivity.sensitivity._dynamics import DDEDynamics, ODEDynamics
from torchsensitivity.sensitivity._trajectory import (
    LeadingComponents,
    Trajectory,
    integrate,
    integrate_delay,
)
from torchsensitivity.sensitivity._vjp import dual_level, primal

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 12


def default_delay_step(dynamics: DDEDynamics) -> float:
    """Step of the method of steps when none is given."""
    lags = dynamics.problem.lags
    return min(min(lags), (dynamics.t1 - dynamics.t0) / 100)


def _tangent(dual: Tensor, like: Tensor) -> Tensor:
    tangent = fwAD.unpack_dual(dual).tangent
    return torch.zeros_like(like) if tangent is None else tangent


class ForwardDiffEngine:
    """
    Jacobians of the outputs by forward mode AD through the solver.

    Parameters
    ----------
    dynamics : ODEDynamics
        Flat view of the problem.
    sensealg : ForwardDiffSensitivity
        Chunk size and event time handling.
    solver : callable
        Integrator (ignored for delay problems).
    solver_options : dict
        Options forwarded to every solver call.
    save_times : list of float
        Output times, increasing.
    dt : float, optional
        Step of the method of steps for delay problems.
    max_steps : int
        Step limit of the method of steps.
    """

    def __init__(
        self,
        dynamics: ODEDynamics,
        sensealg,
        solver: Callable,
        solver_options: dict,
        save_times: List[float],
        dt: Optional[float] = None,
        max_steps: int = 100000,
    ):
        self.dynamics = dynamics
        self.sensealg = sensealg
        self.solver = solver
        self.solver_options = dict(solver_options)
        self.save_times = list(save_times)
        self.dt = dt
        self.max_steps = max_steps
        self.trajectory: Trajectory = None

    @property
    def differentiable_events(self) -> bool:
        convert_tspan = self.sensealg.convert_tspan
        if convert_tspan is None:
            return self.dynamics.has_continuous_callbacks
        return convert_tspan

    def _integrate(self, y0: Tensor, p: Tensor) -> Trajectory:
        dynamics = self.dynamics
        if isinstance(dynamics, DDEDynamics):
            dt = self.dt if self.dt is not None else default_delay_step(
                dynamics
            )
            return integrate_delay(
                dynamics,
                y0,
                p,
                self.save_times,
                dt=dt,
                max_steps=self.max_steps,
            )
        return integrate(
            dynamics,
            y0,
            p,
            self.save_times,
            solver=self.solver,
            solver_options=self.solver_options,
            differentiable_events=self.differentiable_events,
            single_event=False,
        )

    def _chunk(
        self, y0: Tensor, p: Tensor, directions: range
    ) -> Tuple[Tensor, Tensor, Trajectory]:
        dynamics = self.dynamics
        n = dynamics.n_state
        rows = len(directions)
        y0_rows = y0.expand(rows, -1).clone()
        p_rows = p.expand(rows, -1).clone()
        y0_tangent = torch.zeros_like(y0_rows)
        p_tangent = torch.zeros_like(p_rows)
        for r, j in enumerate(directions):
            if j < n:
                y0_tangent[r, j] = 1.0
            else:
                p_tangent[r, j - n] = 1.0

        with dual_level():
            p_dual = fwAD.make_dual(p_rows, p_tangent)
            trajectory = self._integrate(
                fwAD.make_dual(y0_rows, y0_tangent), p_dual
            )
            values = []
            columns = []
            for t, y in zip(self.save_times, trajectory.save_states):
                outputs = [
                    dynamics.output(y[r], p_dual[r], t) for r in range(rows)
                ]
                values.append(fwAD.unpack_dual(outputs[0]).primal.clone())
                columns.append(
                    torch.stack(
                        [_tangent(u, values[-1]).clone() for u in outputs],
                        dim=-1,
                    )
                )
        return (
            torch.stack(values),
            torch.stack(columns),
            _first_row(trajectory),
        )

    def run(
        self, u0: Tensor, p: Tensor
    ) -> Tuple[Tensor, Tensor, Tensor, Trajectory]:
        """
        Outputs and their Jacobians at the save times.

        Returns
        -------
        values : Tensor
            (T, n_out).
        jac_u0 : Tensor
            (T, n_out, n_out); columns of ``u0`` entries that are not part
            of the integration state are zero.
        jac_p : Tensor
            (T, n_out, m).
        trajectory : Trajectory
            Primal forward trajectory.
        """
        dynamics = self.dynamics
        y0 = dynamics.initial_state(primal(u0).detach()).reshape(1, -1)
        p = primal(p).detach().reshape(1, -1)
        n = dynamics.n_state
        total = n + p.shape[1]
        chunk = self.sensealg.chunk_size or min(total, DEFAULT_CHUNK_SIZE)

        values = None
        blocks = []
        trajectory = None
        with torch.no_grad():
            for start in range(0, total, chunk):
                directions = range(start, min(start + chunk, total))
                values, block, chunk_trajectory = self._chunk(
                    y0, p, directions
                )
                blocks.append(block)
                if trajectory is None:
                    trajectory = chunk_trajectory
        logger.debug(
            "forward diff: %d directions in chunks of %d", total, chunk
        )

        jac = torch.cat(blocks, dim=-1)
        jac_u0 = torch.zeros(
            *jac.shape[:2],
            dynamics.n_output,
            dtype=jac.dtype,
            device=jac.device,
        )
        jac_u0[:, :, dynamics.state_index] = jac[:, :, :n]
        self.trajectory = trajectory
        return values, jac_u0, jac[:, :, n:], trajectory


def _first_row(trajectory: Trajectory) -> Trajectory:
    """Restrict a chunked trajectory to the primal of its first row."""
    for boundary in trajectory.boundaries:
        boundary.y = primal(boundary.y[:1])
        for record in boundary.events:
            record.y_minus = primal(record.y_minus[:1])
            record.y_plus = primal(record.y_plus[:1])
    for segment in trajectory.segments:
        segment.y_start = primal(segment.y_start[:1])
        segment.y_end = primal(segment.y_end[:1])
        segment.interp = LeadingComponents(
            segment.interp, segment.y_start.numel()
        )
    trajectory.save_states = [primal(y[:1]) for y in trajectory.save_states]
    return trajectory
