"""Dense output interpolants for the integrators.

This module provides:
- HermiteInterpolant: cubic Hermite interpolation (fixed-step dense output)
- DP5Interpolant: Dormand-Prince continuous extension (adaptive dense output)
- SegmentedInterpolant: piecewise union of interpolants over adjacent
  intervals, used for solutions split at breakpoints and events
"""

from typing import Sequence, Tuple, Union

import torch


def _as_query(t, dtype, device) -> Tuple[torch.Tensor, bool]:
    if not isinstance(t, torch.Tensor):
        t = torch.tensor(t, dtype=dtype, device=device)
    scalar_query = t.dim() == 0
    if scalar_query:
        t = t.unsqueeze(0)
    return t, scalar_query


class HermiteInterpolant:
    """
    Cubic Hermite interpolant for ODE dense output.

    Uses function values AND derivatives at grid points, giving 4th-order
    accurate interpolation between the steps of a fixed-step method.

    Parameters
    ----------
    t_points : Tensor
        Time points, shape (N,), monotonically increasing.
    y_points : Tensor
        State values at time points, shape (N, *state_shape).
    dy_points : Tensor
        Derivative values at time points, shape (N, *state_shape).
    """

    def __init__(
        self,
        t_points: torch.Tensor,
        y_points: torch.Tensor,
        dy_points: torch.Tensor,
    ):
        self.t_points = t_points
        self.y_points = y_points
        self.dy_points = dy_points
        self.n_steps = len(t_points) - 1
        self._t_min = t_points[0].item()
        self._t_max = t_points[-1].item()
        self._tol = 100 * torch.finfo(t_points.dtype).eps * max(
            1.0, abs(self._t_min), abs(self._t_max)
        )

    def __call__(self, t: Union[float, torch.Tensor]) -> torch.Tensor:
        """
        Evaluate the interpolant at time(s) t.

        Parameters
        ----------
        t : float or Tensor
            Time(s) to query. Scalar or 1D tensor.

        Returns
        -------
        y : Tensor
            State at time(s) t: shape (*state_shape) for a scalar query,
            (T, *state_shape) for T query times.
        """
        t, scalar_query = _as_query(
            t, self.t_points.dtype, self.t_points.device
        )

        if (
            t.min().item() < self._t_min - self._tol
            or t.max().item() > self._t_max + self._tol
        ):
            raise ValueError(
                f"Query time(s) outside interpolant range "
                f"[{self._t_min}, {self._t_max}]"
            )

        indices = torch.searchsorted(self.t_points, t.detach().contiguous())
        indices = indices.clamp(1, len(self.t_points) - 1)

        t0 = self.t_points[indices - 1]
        t1 = self.t_points[indices]
        y0 = self.y_points[indices - 1]
        y1 = self.y_points[indices]
        dy0 = self.dy_points[indices - 1]
        dy1 = self.dy_points[indices]

        h = t1 - t0
        s = (t - t0) / h

        for _ in range(y0.dim() - 1):
            s = s.unsqueeze(-1)
            h = h.unsqueeze(-1)

        s2 = s * s
        s3 = s2 * s

        H00 = 2.0 * s3 - 3.0 * s2 + 1.0
        H10 = s3 - 2.0 * s2 + s
        H01 = -2.0 * s3 + 3.0 * s2
        H11 = s3 - s2

        y = H00 * y0 + H10 * h * dy0 + H01 * y1 + H11 * h * dy1

        if scalar_query:
            y = y.squeeze(0)

        return y


# DP5 dense output coefficients (scipy.integrate._ivp.rk.RK45)
#   y(t0 + theta*h) = y0 + h * sum_i b_i(theta) * k_i
#   b_i(theta) = sum_j P[i, j] * theta^(j + 1), j = 0..3
# fmt: off
_DP5_P = [
    [1.0, -2.8535800730693277, 3.0717434625687095, -1.1270175686556618],
    [0.0, 0.0, 0.0, 0.0],
    [0.0, 4.023133377671971, -6.249321571474188, 2.6754244809482835],
    [0.0, -3.7324019591773413, 10.068970588235294, -5.6855269578294915],
    [0.0, 2.554803831366355, -6.399112381036449, 3.521932369440949],
    [0.0, -1.3744241095453652, 3.2726577470945877, -1.7672812582195055],
    [0.0, 1.3824689314366552, -3.7649378599018604, 2.382468931436655],
]
# fmt: on


class DP5Interpolant:
    """
    Dormand-Prince 5 dense output interpolant.

    Uses the 7 RK stages of every accepted step to build a 4th-order
    accurate continuous extension.

    Parameters
    ----------
    t_segments : Tensor
        Step endpoints, shape (n_steps, 2), sorted by start time.
    y_segments : Tensor
        State values at step endpoints, shape (n_steps, 2, *state_shape).
    k_segments : Tensor
        RK stages for each step, shape (n_steps, 7, *state_shape).
    """

    def __init__(
        self,
        t_segments: torch.Tensor,
        y_segments: torch.Tensor,
        k_segments: torch.Tensor,
    ):
        self._t_segments = t_segments
        self._y_segments = y_segments
        self._k_segments = k_segments
        self.n_steps = len(t_segments)

        self._t_min = t_segments[0, 0].item()
        self._t_max = t_segments[-1, 1].item()
        self._tol = 100 * torch.finfo(t_segments.dtype).eps * max(
            1.0, abs(self._t_min), abs(self._t_max)
        )

        self._P = torch.tensor(
            _DP5_P, dtype=t_segments.dtype, device=t_segments.device
        )

    @property
    def t_points(self) -> torch.Tensor:
        """Accepted step boundaries, increasing."""
        t_starts = self._t_segments[:, 0]
        t_end = self._t_segments[-1, 1].unsqueeze(0)
        return torch.cat([t_starts, t_end])

    def __call__(self, t: Union[float, torch.Tensor]) -> torch.Tensor:
        """
        Evaluate the interpolant at time(s) t.

        Parameters
        ----------
        t : float or Tensor
            Time(s) to query. Scalar or 1D tensor. A tensor carrying
            gradients (or forward-mode tangents) propagates them.

        Returns
        -------
        y : Tensor
            State at time(s) t.
        """
        t, scalar_query = _as_query(
            t, self._t_segments.dtype, self._t_segments.device
        )

        if (
            t.min().item() < self._t_min - self._tol
            or t.max().item() > self._t_max + self._tol
        ):
            raise ValueError(
                f"Query time(s) outside interpolant range "
                f"[{self._t_min}, {self._t_max}]"
            )

        t_ends = self._t_segments[:, 1]
        seg_indices = torch.searchsorted(t_ends, t.detach().contiguous())
        seg_indices = seg_indices.clamp(0, len(self._t_segments) - 1)

        t0 = self._t_segments[seg_indices, 0]
        t1 = self._t_segments[seg_indices, 1]
        y_start = self._y_segments[seg_indices, 0]
        k = self._k_segments[seg_indices]

        h = t1 - t0
        # zero-length spans store a single degenerate step
        theta = (t - t0) / torch.where(h > 0, h, torch.ones_like(h))

        for _ in range(y_start.dim() - 1):
            theta = theta.unsqueeze(-1)
            h = h.unsqueeze(-1)

        theta2 = theta * theta
        theta3 = theta2 * theta
        theta4 = theta3 * theta
        theta_powers = torch.stack([theta, theta2, theta3, theta4], dim=-1)

        y = y_start
        for i in range(7):
            b_i = (theta_powers * self._P[i]).sum(dim=-1)
            y = y + h * b_i * k[:, i]

        if scalar_query:
            y = y.squeeze(0)

        return y


class SegmentedInterpolant:
    """
    Union of interpolants defined on adjacent intervals.

    At a shared boundary the interval on the right wins, so states after an
    event are returned at the event time.

    Parameters
    ----------
    bounds : sequence of (float, float)
        Interval endpoints, increasing and adjacent.
    pieces : sequence of callable
        Interpolant valid on the matching interval.
    """

    def __init__(
        self,
        bounds: Sequence[Tuple[float, float]],
        pieces: Sequence,
    ):
        if len(bounds) != len(pieces) or not bounds:
            raise ValueError("bounds and pieces must be non-empty and aligned")
        self.bounds = list(bounds)
        self.pieces = list(pieces)

    def _piece_index(self, t: float) -> int:
        for i in range(len(self.bounds) - 1, -1, -1):
            if t >= self.bounds[i][0]:
                return i
        return 0

    def __call__(self, t: Union[float, torch.Tensor]) -> torch.Tensor:
        if isinstance(t, torch.Tensor) and t.dim() == 1:
            return torch.stack([self(t_i) for t_i in t])
        t_val = t.item() if isinstance(t, torch.Tensor) else float(t)
        return self.pieces[self._piece_index(t_val)](t)
