"""Method of steps for delay differential equations with constant lags."""

import bisect
import math
from typing import Callable, Sequence, Tuple

import torch

from torchsensitivity.ordinary_differential_equation._exceptions import (
    MaxStepsExceeded,
)
from torchsensitivity.ordinary_differential_equation._interpolation import (
    HermiteInterpolant,
)


def _discontinuity_grid(
    t0: float, t1: float, lags: Sequence[float], t_stops: Sequence[float]
) -> list:
    # Derivative jumps of the solution propagate from t0 to t0 + k * lag
    grid = {t0, t1}
    for lag in lags:
        k = 1
        while t0 + k * lag < t1:
            grid.add(t0 + k * lag)
            k += 1
    for t_stop in t_stops:
        if t0 < t_stop < t1:
            grid.add(float(t_stop))
    return sorted(grid)


class _DelayedState:
    """Delayed state lookup ``h(s)`` over history and computed steps."""

    def __init__(self, history, t0, y0, dy0):
        self._history = history
        self._t0 = t0
        # the end stage of a step reaching t0 + lag sees the history side
        self.from_left = False
        self.t_points = [t0]
        self.y_points = [y0]
        self.dy_points = [dy0]

    def append(self, t, y, dy):
        self.t_points.append(t)
        self.y_points.append(y)
        self.dy_points.append(dy)

    def __call__(self, s):
        s_val = s.item() if isinstance(s, torch.Tensor) else float(s)
        if s_val < self._t0 or (s_val == self._t0 and self.from_left):
            return self._history(s)
        if s_val == self._t0:
            return self.y_points[0]

        i = bisect.bisect_left(self.t_points, s_val)
        if i >= len(self.t_points):
            if s_val - self.t_points[-1] <= 1e-12 * max(1.0, abs(s_val)):
                return self.y_points[-1]
            raise ValueError(
                f"Delayed time {s_val} lies beyond the computed solution "
                f"(t = {self.t_points[-1]})"
            )
        if self.t_points[i] == s_val:
            return self.y_points[i]

        ta, tb = self.t_points[i - 1], self.t_points[i]
        h = tb - ta
        u = (s - ta) / h
        u2 = u * u
        u3 = u2 * u
        return (
            (2 * u3 - 3 * u2 + 1) * self.y_points[i - 1]
            + (u3 - 2 * u2 + u) * h * self.dy_points[i - 1]
            + (-2 * u3 + 3 * u2) * self.y_points[i]
            + (u3 - u2) * h * self.dy_points[i]
        )


def method_of_steps(
    f: Callable,
    history: Callable[[torch.Tensor], torch.Tensor],
    lags: Sequence[float],
    y0: torch.Tensor,
    t_span: Tuple[float, float],
    dt: float,
    t_stops: Sequence[float] = (),
    max_steps: int = 100000,
    **unused_options,
) -> Tuple[torch.Tensor, HermiteInterpolant]:
    """
    Solve a delay differential equation by the method of steps.

    Integrates ``y' = f(t, y, h)`` where ``h(s)`` returns the state at the
    delayed time ``s``. Steps are classical RK4 no longer than ``dt`` or the
    smallest lag, so every delayed time a stage asks for has already been
    computed. The step grid contains every propagated discontinuity
    ``t0 + k * lag`` and every time in ``t_stops``.

    Parameters
    ----------
    f : callable
        Dynamics ``f(t, y, h) -> dy/dt`` with ``t`` a 0-d tensor.
    history : callable
        ``history(s)`` returns the state for ``s < t0``.
    lags : sequence of float
        Constant, positive delays.
    y0 : Tensor
        State at t0, shape (n,).
    t_span : tuple[float, float]
        Integration interval (t0, t1) with t1 > t0.
    dt : float
        Maximum step size.
    t_stops : sequence of float
        Additional times the step grid must contain.
    max_steps : int
        Upper bound on the number of steps.

    Returns
    -------
    y : Tensor
        State at t1.
    interp : HermiteInterpolant
        Cubic Hermite dense output through the step points.
    """
    t0, t1 = float(t_span[0]), float(t_span[1])
    if t1 <= t0:
        raise ValueError(f"t_span must be increasing, got ({t0}, {t1})")
    if not lags or min(lags) <= 0:
        raise ValueError(f"lags must be positive, got {list(lags)}")
    if dt is None or dt <= 0:
        raise ValueError(f"method_of_steps requires a positive dt, got {dt}")

    h_max = min(dt, min(lags))
    dtype = y0.dtype
    device = y0.device

    def as_time(value: float) -> torch.Tensor:
        return torch.tensor(value, dtype=dtype, device=device)

    grid = _discontinuity_grid(t0, t1, lags, t_stops)

    delayed = _DelayedState(history, t0, y0, None)
    k1 = f(as_time(t0), y0, delayed)
    delayed.dy_points[0] = k1

    y = y0
    n_steps = 0
    for a, b in zip(grid[:-1], grid[1:]):
        n_sub = max(1, math.ceil((b - a) / h_max - 1e-9))
        n_steps += n_sub
        if n_steps > max_steps:
            raise MaxStepsExceeded(
                f"Exceeded maximum number of steps ({max_steps})"
            )
        h = (b - a) / n_sub
        for step in range(n_sub):
            t = a + step * h
            k2 = f(as_time(t + h / 2), y + h / 2 * k1, delayed)
            k3 = f(as_time(t + h / 2), y + h / 2 * k2, delayed)
            delayed.from_left = True
            k4 = f(as_time(t + h), y + h * k3, delayed)
            delayed.from_left = False
            y = y + h / 6 * (k1 + 2 * k2 + 2 * k3 + k4)

            t_next = b if step == n_sub - 1 else a + (step + 1) * h
            k1 = f(as_time(t_next), y, delayed)
            delayed.append(t_next, y, k1)

    interp = HermiteInterpolant(
        torch.tensor(delayed.t_points, dtype=dtype, device=device),
        torch.stack(delayed.y_points),
        torch.stack(delayed.dy_points),
    )
    return y, interp
