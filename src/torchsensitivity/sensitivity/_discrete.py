"""Discrete sensitivities: differentiate the solver's own operations."""

import contextlib
from typing import Callable, List, Optional, Tuple

import torch
from torch import Tensor

from torchsensitivity.sensitivity._algorithms import AutogradAdjoint
from torchsensitivity.sensitivity._dynamics import DDEDynamics, ODEDynamics
from torchsensitivity.sensitivity._forward_diff import default_delay_step
from torchsensitivity.sensitivity._trajectory import (
    Trajectory,
    integrate,
    integrate_delay,
)


class DiscreteEngine:
    """
    Run the forward pass on tracked inputs.

    ``AutogradAdjoint`` records every solver step on the autograd tape,
    whatever the caller's grad mode. ``PassThrough`` leaves the mode alone,
    so a caller holding forward-mode duals or running under ``no_grad``
    gets exactly that.
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

    def run(self, u0: Tensor, p: Tensor) -> Tuple[Tensor, Trajectory]:
        dynamics = self.dynamics
        y0 = dynamics.initial_state(u0).reshape(1, -1)
        p_rows = p.reshape(1, -1)
        if isinstance(self.sensealg, AutogradAdjoint):
            mode = torch.enable_grad()
        else:
            mode = contextlib.nullcontext()

        with mode:
            if isinstance(dynamics, DDEDynamics):
                dt = self.dt
                if dt is None:
                    dt = default_delay_step(dynamics)
                trajectory = integrate_delay(
                    dynamics,
                    y0,
                    p_rows,
                    self.save_times,
                    dt=dt,
                    max_steps=self.max_steps,
                )
            else:
                trajectory = integrate(
                    dynamics,
                    y0,
                    p_rows,
                    self.save_times,
                    solver=self.solver,
                    solver_options=self.solver_options,
                    differentiable_events=True,
                    single_event=False,
                )
            values = torch.stack(
                [
                    dynamics.output(y[0], p, t)
                    for t, y in zip(self.save_times, trajectory.save_states)
                ]
            )
        self.trajectory = trajectory
        return values, trajectory
