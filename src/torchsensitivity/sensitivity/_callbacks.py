"""Event callbacks.

An ``affect(u, p, t) -> u_new`` maps the state just before an event to the
state just after it. It must be out of place and built from differentiable
tensor operations.
"""

from dataclasses import dataclass
from typing import Callable, Tuple

import torch


@dataclass(frozen=True)
class PresetTimeCallback:
    """
    Event at fixed times.

    Parameters
    ----------
    times : sequence of float
        Event times, each in ``(t0, t1]`` of the problem.
    affect : callable
        ``affect(u, p, t) -> u_new``.

    Examples
    --------
    >>> dose = PresetTimeCallback([0.5], lambda u, p, t: u + 1.0)
    """

    times: Tuple[float, ...]
    affect: Callable

    def __post_init__(self):
        times = self.times
        if isinstance(times, torch.Tensor):
            times = times.tolist()
        elif isinstance(times, (int, float)):
            times = [times]
        times = tuple(sorted({float(t) for t in times}))
        if not times:
            raise ValueError("PresetTimeCallback needs at least one time")
        object.__setattr__(self, "times", times)


@dataclass(frozen=True)
class ContinuousCallback:
    """
    Event where a scalar condition crosses zero.

    Parameters
    ----------
    condition : callable
        ``condition(u, p, t) -> Tensor`` with a single element.
    affect : callable
        ``affect(u, p, t) -> u_new``.
    direction : int
        0 fires on both crossing directions, 1 only when the condition
        goes from negative to positive, -1 only from positive to negative.

    Examples
    --------
    Bouncing ball with ``u = [height, velocity]``:

    >>> bounce = ContinuousCallback(
    ...     lambda u, p, t: u[0],
    ...     lambda u, p, t: torch.stack([u[0], -p[1] * u[1]]),
    ...     direction=-1,
    ... )
    """

    condition: Callable
    affect: Callable
    direction: int = 0

    def __post_init__(self):
        if self.direction not in (-1, 0, 1):
            raise ValueError(
                f"direction must be -1, 0, or 1, got {self.direction}"
            )
