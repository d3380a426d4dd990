"""Forward pass shared by all sensitivity engines.

The time span is cut at breakpoints (save times, preset event times and
noise grid points) and at located continuous events. Each piece is one
solver call. The driver keeps the states at every boundary, the events
applied there and, unless told otherwise, the dense output of every piece.

States are carried as ``(rows, n_state)`` tensors. All rows share one time
grid; forward-mode chunking uses the rows to push several tangent
directions through the same solve.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import torch
from torch import Tensor

from torchsensitivity.ordinary_differential_equation import (
    EventSpec,
    SegmentedInterpolant,
    find_first_event,
    method_of_steps,
)
from torchsensitivity.sensitivity._callbacks import (
    ContinuousCallback,
    PresetTimeCallback,
)
from torchsensitivity.sensitivity._dynamics import ODEDynamics, SegmentRHS
from torchsensitivity.sensitivity._exceptions import (
    ConfigurationError,
    NumericalInstabilityError,
)

logger = logging.getLogger(__name__)


@dataclass
class EventRecord:
    """An event applied at a boundary."""

    callback_index: int
    time: float
    y_minus: Tensor
    y_plus: Tensor
    continuous: bool
    rhs_before: SegmentRHS
    rhs_after: SegmentRHS


@dataclass
class Boundary:
    """A time where one solver call ends and the next one starts."""

    time: float
    y: Tensor
    events: List[EventRecord] = field(default_factory=list)
    save_indices: List[int] = field(default_factory=list)


@dataclass
class Segment:
    """One solver call between two adjacent boundaries."""

    t_start: float
    t_end: float
    y_start: Tensor
    y_end: Tensor
    interp: Optional[Callable]
    rhs: Optional[SegmentRHS]


class LeadingComponents:
    """
    Interpolant of the first ``n`` components of a wider flat state.

    Used to keep the state part of augmented (``[u, S]``) or row-stacked
    integration states.
    """

    def __init__(self, interp: Callable, n: int):
        self._interp = interp
        self._n = n

    def __call__(self, t):
        return self._interp(t)[..., : self._n]


@dataclass
class Trajectory:
    """Everything the forward pass recorded."""

    boundaries: List[Boundary]
    segments: List[Segment]
    save_times: List[float]
    save_states: List[Tensor]
    events: List[Tuple[float, int]]

    @property
    def has_dense_output(self) -> bool:
        return all(segment.interp is not None for segment in self.segments)

    def dense(self, dynamics: ODEDynamics, p: Tensor) -> Callable:
        """Dense solution ``u(t)`` of the first row, detached."""
        if not self.has_dense_output:
            raise ValueError(
                "Dense output is not kept by checkpointed interpolation"
            )
        rows = self.segments[0].y_start.shape[0]

        def piece(interp):
            def evaluate(t):
                with torch.no_grad():
                    y = interp(t).reshape(rows, -1)[0].detach()
                    return dynamics.output(y, p.detach(), t).detach()

            return evaluate

        return SegmentedInterpolant(
            [(s.t_start, s.t_end) for s in self.segments],
            [piece(s.interp) for s in self.segments],
        )


def rows_rhs(rhs: Callable, p: Tensor) -> Callable:
    rows = p.shape[0]

    def f(t, y_flat):
        y = y_flat.reshape(rows, -1)
        return torch.cat([rhs(y[i], p[i], t) for i in range(rows)])

    return f


def _condition_rate(
    dynamics: ODEDynamics, callback, y: Tensor, p: Tensor, t: float, f: Tensor
) -> float:
    """Time derivative of the condition along the flow, ``g_u . f + g_t``."""
    with torch.enable_grad():
        y_ = y.detach().requires_grad_(True)
        t_ = dynamics.as_time(t).detach().requires_grad_(True)
        g = dynamics.condition(callback, y_, p.detach(), t_)
        grad_y, grad_t = torch.autograd.grad(g, (y_, t_), allow_unused=True)
    rate = 0.0
    if grad_y is not None:
        rate += torch.dot(grad_y, f.detach()).item()
    if grad_t is not None:
        rate += grad_t.item()
    return rate


def _differentiable_affect(
    dynamics: ODEDynamics,
    callback,
    y_minus: Tensor,
    p: Tensor,
    t: float,
    rhs_before: SegmentRHS,
    rhs_after: SegmentRHS,
) -> Tensor:
    # The event time tau moves with the inputs as tau = t - g / (dg/dt).
    # delta = tau - t has a zero value and carries that derivative; the
    # state at the fixed time t after the event is then
    # affect(y(tau)) + f+ * (t - tau).
    t_value = dynamics.as_time(t)
    f_minus = rhs_before(y_minus, p, t_value)
    g = dynamics.condition(callback, y_minus, p, t_value)
    rate = _condition_rate(dynamics, callback, y_minus, p, t, f_minus)
    if abs(rate) < 1e-12:
        raise NumericalInstabilityError(
            f"Event at t={t} crosses its surface tangentially; the event "
            f"time is not differentiable"
        )
    delta = -(g - g.detach()) / rate
    y_at_tau = y_minus + f_minus * delta
    y_plus = dynamics.affect(callback, y_at_tau, p, t_value + delta)
    f_plus = rhs_after(y_plus, p, t_value)
    return y_plus - f_plus * delta


def _apply_events(
    dynamics: ODEDynamics,
    firing: Sequence[Tuple[int, bool]],
    t: float,
    y: Tensor,
    p: Tensor,
    rhs_before: SegmentRHS,
    rhs_after: SegmentRHS,
    differentiable: bool,
) -> Tuple[Tensor, List[EventRecord]]:
    records = []
    for index, continuous in firing:
        callback = dynamics.callbacks[index]
        rows = []
        for i in range(y.shape[0]):
            if continuous and differentiable:
                rows.append(
                    _differentiable_affect(
                        dynamics,
                        callback,
                        y[i],
                        p[i],
                        t,
                        rhs_before,
                        rhs_after,
                    )
                )
            else:
                rows.append(dynamics.affect(callback, y[i], p[i], t))
        y_plus = torch.stack(rows)
        records.append(
            EventRecord(
                index, t, y, y_plus, continuous, rhs_before, rhs_after
            )
        )
        y = y_plus
    return y, records


def _event_specs(dynamics: ODEDynamics, p: Tensor):
    specs = []
    indices = []
    for index, callback in enumerate(dynamics.callbacks):
        if not isinstance(callback, ContinuousCallback):
            continue

        def func(t, y_flat, callback=callback):
            y = y_flat.reshape(p.shape[0], -1)[0]
            return dynamics.condition(callback, y, p[0], t)

        specs.append(EventSpec(func=func, direction=callback.direction))
        indices.append(index)
    return specs, indices


def breakpoints(dynamics: ODEDynamics, save_times: Sequence[float]):
    """Sorted boundary times, and the preset events firing at each."""
    t0, t1 = dynamics.t0, dynamics.t1
    preset: Dict[float, List[int]] = {}
    for index, callback in enumerate(dynamics.callbacks):
        if isinstance(callback, PresetTimeCallback):
            for t in callback.times:
                preset.setdefault(t, []).append(index)
    times = {t0, t1}
    times.update(save_times)
    times.update(preset)
    times.update(t for t in dynamics.breakpoints() if t0 < t < t1)
    return sorted(times), preset


def integrate(
    dynamics: ODEDynamics,
    y0: Tensor,
    p: Tensor,
    save_times: Sequence[float],
    *,
    solver: Callable,
    solver_options: dict,
    differentiable_events: bool,
    single_event: bool,
    keep_interpolants: bool = True,
) -> Trajectory:
    """
    Integrate an ODE, SDE or DAE across breakpoints and events.

    Parameters
    ----------
    dynamics : ODEDynamics
        Flat view of the problem.
    y0 : Tensor
        Initial integration state, shape (rows, n_state).
    p : Tensor
        Flat parameters, shape (rows, n_params).
    save_times : sequence of float
        Times at which the (post-event) state is recorded.
    solver : callable
        Integrator ``solver(f, y0, t_span, **solver_options)``.
    differentiable_events : bool
        Carry the dependence of continuous event times on the inputs.
    single_event : bool
        Raise ``ConfigurationError`` when two events share a time point.
    keep_interpolants : bool
        Keep the dense output of every piece.

    Returns
    -------
    Trajectory
    """
    times, preset = breakpoints(dynamics, save_times)
    save_map: Dict[float, List[int]] = {}
    for index, t in enumerate(save_times):
        save_map.setdefault(t, []).append(index)

    specs, spec_indices = _event_specs(dynamics, p)

    y = y0
    a = times[0]
    boundaries = [Boundary(a, y, [], save_map.get(a, []))]
    segments: List[Segment] = []
    events: List[Tuple[float, int]] = []
    after_event = False

    for b in times[1:]:
        tol = 1e-10 * max(1.0, abs(b))
        while True:
            rhs = dynamics.segment_rhs(a)
            y_end, interp = solver(
                rows_rhs(rhs, p), y.reshape(-1), (a, b), **solver_options
            )
            hit = None
            if specs:
                hit = find_first_event(
                    specs, interp.t_points, interp, skip_first=after_event
                )
            if hit is not None and hit[1] < b - tol:
                spec_position, t_event = hit
                y_minus = interp(t_event).reshape(y.shape)
                segments.append(
                    Segment(
                        a,
                        t_event,
                        y,
                        y_minus,
                        interp if keep_interpolants else None,
                        rhs,
                    )
                )
                index = spec_indices[spec_position]
                y, records = _apply_events(
                    dynamics,
                    [(index, True)],
                    t_event,
                    y_minus,
                    p,
                    rhs,
                    dynamics.segment_rhs(t_event),
                    differentiable_events,
                )
                boundaries.append(Boundary(t_event, y, records, []))
                events.append((t_event, index))
                logger.debug(
                    "continuous event %d at t=%.12g", index, t_event
                )
                a = t_event
                after_event = True
                continue

            y_end = y_end.reshape(y.shape)
            segments.append(
                Segment(
                    a,
                    b,
                    y,
                    y_end,
                    interp if keep_interpolants else None,
                    rhs,
                )
            )
            firing = [(index, False) for index in preset.get(b, [])]
            if hit is not None:
                firing.append((spec_indices[hit[0]], True))
            firing.sort()
            if len(firing) > 1 and single_event:
                raise ConfigurationError(
                    f"{len(firing)} events fire at t={b}; continuous "
                    f"adjoints allow a single event per time point"
                )
            rhs_after = dynamics.segment_rhs(b) if b < times[-1] else rhs
            y, records = _apply_events(
                dynamics,
                firing,
                b,
                y_end,
                p,
                rhs,
                rhs_after,
                differentiable_events,
            )
            events.extend((b, index) for index, _ in firing)
            boundaries.append(Boundary(b, y, records, save_map.get(b, [])))
            after_event = bool(firing)
            a = b
            break

    save_states: List[Optional[Tensor]] = [None] * len(save_times)
    for boundary in boundaries:
        for index in boundary.save_indices:
            save_states[index] = boundary.y

    logger.debug(
        "forward pass: %d segments, %d events", len(segments), len(events)
    )
    return Trajectory(
        boundaries, segments, list(save_times), save_states, events
    )


def integrate_delay(
    dynamics,
    y0: Tensor,
    p: Tensor,
    save_times: Sequence[float],
    *,
    dt: float,
    max_steps: int,
) -> Trajectory:
    """Integrate a delay problem by the method of steps."""
    rows = y0.shape[0]
    t0, t1 = dynamics.t0, dynamics.t1

    def f(t, y_flat, h):
        y = y_flat.reshape(rows, -1)
        out = []
        for i in range(rows):

            def h_row(s, i=i):
                return h(s).reshape(rows, -1)[i]

            out.append(dynamics.delay_rhs(y[i], h_row, p[i], t))
        return torch.cat(out)

    def history(s):
        return torch.cat(
            [dynamics.history(p[i], s) for i in range(rows)]
        )

    y_end, interp = method_of_steps(
        f,
        history,
        dynamics.problem.lags,
        y0.reshape(-1),
        (t0, t1),
        dt,
        t_stops=save_times,
        max_steps=max_steps,
    )
    y_end = y_end.reshape(y0.shape)
    save_states = [
        y0 if t == t0 else interp(t).reshape(y0.shape) for t in save_times
    ]
    return Trajectory(
        [Boundary(t0, y0), Boundary(t1, y_end)],
        [Segment(t0, t1, y0, y_end, interp, None)],
        list(save_times),
        save_states,
        [],
    )
