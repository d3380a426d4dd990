"""Classical fourth-order Runge-Kutta ODE solver."""

import math
from typing import Callable, Tuple, Union

import torch
from tensordict import TensorDict

from torchsensitivity.ordinary_differential_equation._exceptions import (
    MaxStepsExceeded,
)
from torchsensitivity.ordinary_differential_equation._interpolation import (
    HermiteInterpolant,
)
from torchsensitivity.ordinary_differential_equation._tensordict_utils import (
    flatten_state,
)


def runge_kutta_4(
    f: Callable[[torch.Tensor, torch.Tensor], torch.Tensor],
    y0: Union[torch.Tensor, TensorDict],
    t_span: Tuple[float, float],
    dt: float,
    max_steps: int = 10000,
    **unused_options,
) -> Tuple[
    Union[torch.Tensor, TensorDict],
    Callable[[Union[float, torch.Tensor]], Union[torch.Tensor, TensorDict]],
]:
    """
    Solve ODE using the classical 4th order Runge-Kutta method.

    The interval is divided into the smallest number of equal steps no
    longer than ``dt``, so the final step lands exactly on t1.

    Parameters
    ----------
    f : callable
        Dynamics function with signature f(t, y) -> dy/dt.
    y0 : Tensor or TensorDict
        Initial state.
    t_span : tuple[float, float]
        Integration interval (t0, t1) with t1 >= t0.
    dt : float
        Maximum step size.
    max_steps : int
        Upper bound on the number of steps.
    **unused_options
        Tolerances accepted for interface compatibility with adaptive
        solvers and ignored.

    Returns
    -------
    y : Tensor or TensorDict
        State at t1.
    interp : HermiteInterpolant
        Cubic Hermite dense output through the step points.
    """
    t0, t1 = float(t_span[0]), float(t_span[1])
    if t1 < t0:
        raise ValueError(f"t_span must be increasing, got ({t0}, {t1})")
    if dt is None or dt <= 0:
        raise ValueError(f"runge_kutta_4 requires a positive dt, got {dt}")

    is_tensordict = isinstance(y0, TensorDict)
    y_flat, unflatten = flatten_state(y0)

    if is_tensordict:

        def f_flat(t, y):
            dy_flat, _ = flatten_state(f(t, unflatten(y)))
            return dy_flat

    else:
        f_flat = f

    dtype = y_flat.dtype
    device = y_flat.device

    n_steps = max(1, math.ceil((t1 - t0) / dt - 1e-9))
    if n_steps > max_steps:
        raise MaxStepsExceeded(
            f"Interval requires {n_steps} steps, more than max_steps "
            f"({max_steps})"
        )
    h = (t1 - t0) / n_steps

    def as_time(value: float) -> torch.Tensor:
        return torch.tensor(value, dtype=dtype, device=device)

    t_points = [t0]
    y_points = [y_flat]
    k1 = f_flat(as_time(t0), y_flat)
    dy_points = [k1]

    y = y_flat
    for step in range(n_steps):
        t = t0 + step * h
        k2 = f_flat(as_time(t + h / 2), y + h / 2 * k1)
        k3 = f_flat(as_time(t + h / 2), y + h / 2 * k2)
        k4 = f_flat(as_time(t + h), y + h * k3)
        y = y + h / 6 * (k1 + 2 * k2 + 2 * k3 + k4)

        t_next = t1 if step == n_steps - 1 else t0 + (step + 1) * h
        k1 = f_flat(as_time(t_next), y)
        t_points.append(t_next)
        y_points.append(y)
        dy_points.append(k1)

    interp = HermiteInterpolant(
        torch.tensor(t_points, dtype=dtype, device=device),
        torch.stack(y_points),
        torch.stack(dy_points),
    )

    if is_tensordict:

        def interp_tensordict(t_query):
            return unflatten(interp(t_query))

        interp_tensordict.t_points = interp.t_points
        return unflatten(y), interp_tensordict
    return y, interp
