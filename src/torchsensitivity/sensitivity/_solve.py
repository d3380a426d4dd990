"""Caller-facing entry points: ``solve`` and ``gradient``."""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple, Union

import torch
from tensordict import TensorDict
from torch import Tensor

from torchsensitivity.sensitivity._adjoint import _AdjointFunction
from torchsensitivity.sensitivity._algorithms import (
    BacksolveAdjoint,
    InterpolatingAdjoint,
    QuadratureAdjoint,
)
from torchsensitivity.sensitivity._backsolve import BacksolveAdjointEngine
from torchsensitivity.sensitivity._discrete import DiscreteEngine
from torchsensitivity.sensitivity._dynamics import make_dynamics
from torchsensitivity.sensitivity._exceptions import ConfigurationError
from torchsensitivity.sensitivity._forward_diff import ForwardDiffEngine
from torchsensitivity.sensitivity._forward_sensitivity import (
    ForwardSensitivityEngine,
    linearized_outputs,
)
from torchsensitivity.sensitivity._interpolating import (
    InterpolatingAdjointEngine,
)
from torchsensitivity.sensitivity._problem import Problem
from torchsensitivity.sensitivity._quadrature_adjoint import (
    QuadratureAdjointEngine,
)
from torchsensitivity.sensitivity._select import (
    check_dense_output,
    resolve,
    solver_setup,
    validate,
)

logger = logging.getLogger(__name__)

_ADJOINT_ENGINES = {
    BacksolveAdjoint: BacksolveAdjointEngine,
    InterpolatingAdjoint: InterpolatingAdjointEngine,
    QuadratureAdjoint: QuadratureAdjointEngine,
}


@dataclass
class SensitivitySolution:
    """
    Solution at the save times, differentiable through the chosen algorithm.

    Attributes
    ----------
    t : Tensor
        Save times, shape (T,).
    u : Tensor or TensorDict
        States at the save times, shape (T, *state_shape) or a TensorDict
        with batch size (T,). Values at an event time are post-event.
    events : list of (float, int)
        Applied events as ``(time, callback index)``, in time order.
    sensealg
        The algorithm record used, with its VJP choice filled in.
    du_dp : Tensor, optional
        ``du/dp`` at the save times, (T, n, m), forward algorithms only.
    du_du0 : Tensor, optional
        ``du/du0`` at the save times, (T, n, n), forward algorithms only.
    """

    t: Tensor
    u: Union[Tensor, TensorDict]
    events: List[Tuple[float, int]]
    sensealg: object
    du_dp: Optional[Tensor] = None
    du_du0: Optional[Tensor] = None
    _dense: Optional[Callable] = field(default=None, repr=False)
    _unflatten: Optional[Callable] = field(default=None, repr=False)

    def sol(self, t: Union[float, Tensor]):
        """Dense solution at time(s) ``t`` (not tracked by autograd)."""
        if self._dense is None:
            raise ValueError("This solution has no dense output")
        return self._unflatten(self._dense(t))

    def __iter__(self):
        return iter((self.t, self.u))


def _save_times(problem: Problem, saveat) -> List[float]:
    t0, t1 = problem.tspan
    if saveat is None:
        return [t0, t1]
    if isinstance(saveat, Tensor):
        saveat = saveat.detach().reshape(-1).tolist()
    elif isinstance(saveat, (int, float)):
        saveat = [saveat]
    times = sorted(float(t) for t in saveat)
    if not times:
        raise ConfigurationError("saveat must hold at least one time")
    if times[0] < t0 or times[-1] > t1:
        raise ConfigurationError(
            f"saveat times must lie in [{t0}, {t1}], got "
            f"[{times[0]}, {times[-1]}]"
        )
    return times


def _with_overrides(sensealg, **overrides):
    fields = {f.name for f in dataclasses.fields(sensealg)}
    changes = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in fields:
            raise ConfigurationError(
                f"{type(sensealg).__name__} has no '{key}' option"
            )
        changes[key] = value
    return dataclasses.replace(sensealg, **changes) if changes else sensealg


def solve(
    problem: Problem,
    sensealg=None,
    *,
    saveat: Optional[Union[Sequence[float], Tensor]] = None,
    solver: str = "dormand_prince_5",
    rtol: float = 1e-6,
    atol: float = 1e-9,
    dt: Optional[float] = None,
    autojacvec=None,
    checkpointing: Optional[bool] = None,
    max_steps: int = 10000,
) -> SensitivitySolution:
    """
    Solve a problem so that its solution is differentiable.

    The returned states carry gradients back to ``problem.u0`` and
    ``problem.p`` through the chosen sensitivity algorithm, whatever the
    caller does with them afterwards.

    Parameters
    ----------
    problem : ODEProblem, SDEProblem, DAEProblem or DDEProblem
        The problem.
    sensealg : optional
        Sensitivity algorithm. Default: ``InterpolatingAdjoint()``, or
        ``ForwardDiffSensitivity()`` for delay problems.
    saveat : sequence of float or Tensor, optional
        Output times in ``[t0, t1]``. Default: ``(t0, t1)``.
    solver : str
        ``"dormand_prince_5"`` or ``"runge_kutta_4"``. Delay problems are
        always integrated by the method of steps.
    rtol, atol : float
        Tolerances of the adaptive solver.
    dt : float, optional
        Step size for fixed-step solvers and the method of steps, initial
        step for adaptive ones.
    autojacvec : optional
        Overrides the algorithm's VJP choice.
    checkpointing : bool, optional
        Overrides the algorithm's checkpointing option.
    max_steps : int
        Step limit of each solver call.

    Returns
    -------
    SensitivitySolution

    Raises
    ------
    ConfigurationError
        If the algorithm cannot handle the problem. Raised before any
        integration.
    ODESolverError
        If the solver fails.

    Examples
    --------
    >>> p = torch.tensor([1.5, 1.0], dtype=torch.float64, requires_grad=True)
    >>> problem = ODEProblem(
    ...     lambda u, p, t: (p[0] - p[1]) * u,
    ...     torch.tensor([1.0], dtype=torch.float64),
    ...     (0.0, 1.0),
    ...     p,
    ... )
    >>> solution = solve(problem)
    >>> solution.u[-1].sum().backward()
    """
    sensealg = resolve(problem, sensealg)
    sensealg = _with_overrides(
        sensealg, autojacvec=autojacvec, checkpointing=checkpointing
    )
    if sensealg.kind == "shadowing":
        raise ConfigurationError(
            f"{type(sensealg).__name__} differentiates long-time averages; "
            f"use shadowing_sensitivity"
        )
    validate(problem, sensealg)
    save_times = _save_times(problem, saveat)
    solver_fn, solver_options = solver_setup(
        problem, solver, rtol=rtol, atol=atol, dt=dt, max_steps=max_steps
    )
    if sensealg.kind == "adjoint":
        check_dense_output(sensealg, solver)

    dynamics = make_dynamics(problem)
    u0 = dynamics.flat_u0()
    p = dynamics.flat_p()
    du_dp = du_du0 = None

    if sensealg.kind == "adjoint":
        engine = _ADJOINT_ENGINES[type(sensealg)](
            dynamics,
            sensealg,
            sensealg.autojacvec.backend(),
            solver_fn,
            solver_options,
            save_times,
        )
        values = _AdjointFunction.apply(u0, p, engine)
        trajectory = engine.trajectory
    elif sensealg.kind == "forward":
        engine = ForwardSensitivityEngine(
            dynamics,
            sensealg.autojacvec.backend(),
            solver_fn,
            solver_options,
            save_times,
        )
        values, du_du0, du_dp, trajectory = engine.run(u0, p)
        values = linearized_outputs(u0, p, values, du_du0, du_dp)
    elif sensealg.kind == "forward_diff":
        engine = ForwardDiffEngine(
            dynamics,
            sensealg,
            solver_fn,
            solver_options,
            save_times,
            dt=dt,
            max_steps=max_steps,
        )
        values, du_du0, du_dp, trajectory = engine.run(u0, p)
        values = linearized_outputs(u0, p, values, du_du0, du_dp)
    else:
        engine = DiscreteEngine(
            dynamics,
            sensealg,
            solver_fn,
            solver_options,
            save_times,
            dt=dt,
            max_steps=max_steps,
        )
        values, trajectory = engine.run(u0, p)

    logger.debug(
        "%s: %d save times, %d segments, %d events",
        type(sensealg).__name__,
        len(save_times),
        len(trajectory.segments),
        len(trajectory.events),
    )
    dense = (
        trajectory.dense(dynamics, p)
        if trajectory.has_dense_output
        else None
    )
    t = torch.tensor(save_times, dtype=dynamics.dtype, device=dynamics.device)
    return SensitivitySolution(
        t=t,
        u=dynamics.unflatten_u(values),
        events=list(trajectory.events),
        sensealg=sensealg,
        du_dp=du_dp,
        du_du0=du_du0,
        _dense=dense,
        _unflatten=dynamics.unflatten_u,
    )


def _leaf(x: Tensor) -> Tensor:
    return x.detach().clone().requires_grad_(True)


def gradient(
    problem: Problem,
    loss: Callable[[SensitivitySolution], Tensor],
    sensealg=None,
    **solve_options,
):
    """
    Gradient of a scalar loss of the solution w.r.t. ``u0`` and ``p``.

    Parameters
    ----------
    problem : ODEProblem, SDEProblem, DAEProblem or DDEProblem
        The problem. Its ``u0`` and ``p`` are used as values only.
    loss : callable
        ``loss(solution) -> Tensor`` with a single element.
    sensealg : optional
        Sensitivity algorithm, as for ``solve``.
    **solve_options
        Forwarded to ``solve``.

    Returns
    -------
    solution : SensitivitySolution
    grad_u0 : Tensor or TensorDict
        In the structure of ``problem.u0``.
    grad_p : Tensor or None
        ``None`` if the problem has no parameters.
    """
    if isinstance(problem.u0, TensorDict):
        u0 = problem.u0.apply(_leaf)
        u0_leaves = list(u0.values(include_nested=True, leaves_only=True))
    else:
        u0 = _leaf(problem.u0)
        u0_leaves = [u0]
    p = None if problem.p is None else _leaf(problem.p)
    inputs = u0_leaves + ([] if p is None else [p])

    with torch.enable_grad():
        solution = solve(problem.remake(u0=u0, p=p), sensealg, **solve_options)
        value = loss(solution)
        if value.numel() != 1:
            raise ValueError(
                f"loss must return a single element, got shape "
                f"{tuple(value.shape)}"
            )
        grads = torch.autograd.grad(
            value.reshape(()), inputs, allow_unused=True
        )
    grads = [
        torch.zeros_like(x) if g is None else g for g, x in zip(grads, inputs)
    ]

    if isinstance(u0, TensorDict):
        grad_u0 = u0.detach().clone()
        keys = list(u0.keys(include_nested=True, leaves_only=True))
        for key, g in zip(keys, grads):
            grad_u0[key] = g
    else:
        grad_u0 = grads[0]
    grad_p = None if p is None else grads[-1]
    return solution, grad_u0, grad_p
