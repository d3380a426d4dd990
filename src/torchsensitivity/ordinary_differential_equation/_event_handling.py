"""Event detection on dense ODE output.

Events are zero-crossings of user-defined functions g(t, y). When g changes
sign between two accepted steps, bisection on the interpolant locates the
crossing time.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple, Union

import torch


def _to_scalar(value):
    """Convert tensor to scalar if needed."""
    return value.item() if isinstance(value, torch.Tensor) else value


@dataclass
class EventSpec:
    """Event function with its crossing direction."""

    func: Callable[[Union[float, torch.Tensor], torch.Tensor], torch.Tensor]
    direction: int = 0  # 0=both, 1=upward, -1=downward

    def __post_init__(self):
        if self.direction not in {-1, 0, 1}:
            raise ValueError(
                f"Event direction must be -1, 0, or 1, got {self.direction}"
            )


def detect_event(
    event: EventSpec,
    t0: float,
    y0: torch.Tensor,
    t1: float,
    y1: torch.Tensor,
) -> bool:
    """Check if event occurred between (t0, y0) and (t1, y1).

    A crossing needs g(t0) != 0; a step that starts exactly on the surface
    does not fire again.
    """
    g0 = _to_scalar(event.func(t0, y0))
    g1 = _to_scalar(event.func(t1, y1))
    return _crosses(event.direction, g0, g1)


def _crosses(direction: int, g0: float, g1: float) -> bool:
    if g0 == 0:
        return False
    if (g0 > 0 and g1 > 0) or (g0 < 0 and g1 < 0):
        return False
    if direction > 0 and g1 <= g0:
        return False
    if direction < 0 and g1 >= g0:
        return False
    return True


def locate_event(
    event: EventSpec,
    t0: float,
    y0: torch.Tensor,
    t1: float,
    y1: torch.Tensor,
    interp: Callable,
    tol: float = 1e-12,
    max_iter: int = 100,
) -> Tuple[float, torch.Tensor]:
    """
    Locate event time using bisection with interpolant.

    Returns
    -------
    t_event : float
        Time of event, within ``tol`` of the crossing.
    y_event : Tensor
        State at the event from the interpolant.
    """
    g0 = _to_scalar(event.func(t0, y0))
    tol = tol * max(1.0, abs(t0), abs(t1))

    for _ in range(max_iter):
        if t1 - t0 < tol:
            break
        t_mid = (t0 + t1) / 2
        y_mid = interp(t_mid)
        g_mid = _to_scalar(event.func(t_mid, y_mid))

        if g_mid == 0:
            return t_mid, y_mid

        if g0 * g_mid < 0:
            t1 = t_mid
        else:
            t0 = t_mid
            g0 = g_mid

    t_final = (t0 + t1) / 2
    return t_final, interp(t_final)


def find_first_event(
    events: Sequence[EventSpec],
    t_points: Sequence[float],
    interp: Callable,
    skip_first: bool = False,
) -> Optional[Tuple[int, float]]:
    """
    Scan the step points of a dense solution for the earliest event.

    Parameters
    ----------
    events : sequence of EventSpec
        Event functions, in declaration order.
    t_points : sequence of float
        Accepted step boundaries of the solution, increasing.
    interp : callable
        Dense output covering ``t_points``.
    skip_first : bool
        Start the scan slightly after the first step point. Used right
        after an event, where the first point sits on the event surface.

    Returns
    -------
    (index, t_event) or None
        Index of the earliest firing event and its located time. Ties
        resolve to the first declared event.
    """
    points = [float(t) for t in t_points]
    if skip_first:
        eps = 1e-9 * max(1.0, abs(points[0]), abs(points[-1]))
        points[0] = points[0] + min(eps, (points[1] - points[0]) / 2)

    with torch.no_grad():
        values = [interp(t) for t in points]
        best = None
        for i, event in enumerate(events):
            g_prev = _to_scalar(event.func(points[0], values[0]))
            for k in range(1, len(points)):
                g_next = _to_scalar(event.func(points[k], values[k]))
                if _crosses(event.direction, g_prev, g_next):
                    t_event, _ = locate_event(
                        event,
                        points[k - 1],
                        values[k - 1],
                        points[k],
                        values[k],
                        interp,
                    )
                    if best is None or t_event < best[1]:
                        best = (i, t_event)
                    break
                g_prev = g_next
    return best
