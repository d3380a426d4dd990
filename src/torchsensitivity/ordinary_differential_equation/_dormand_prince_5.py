"""Dormand-Prince 5(4) adaptive ODE solver."""

from functools import lru_cache
from typing import Callable, Optional, Tuple, Union

import torch
from tensordict import TensorDict

from torchsensitivity.ordinary_differential_equation._exceptions import (
    MaxStepsExceeded,
    StepSizeError,
)
from torchsensitivity.ordinary_differential_equation._interpolation import (
    DP5Interpolant,
)
from torchsensitivity.ordinary_differential_equation._tensordict_utils import (
    flatten_state,
)

# Dormand-Prince 5(4) Butcher tableau coefficients (raw values)
# fmt: off
_C_RAW = [0.0, 1/5, 3/10, 4/5, 8/9, 1.0, 1.0]
_A_RAW = [
    [],
    [1/5],
    [3/40, 9/40],
    [44/45, -56/15, 32/9],
    [19372/6561, -25360/2187, 64448/6561, -212/729],
    [9017/3168, -355/33, 46732/5247, 49/176, -5103/18656],
    [35/384, 0, 500/1113, 125/192, -2187/6784, 11/84],
]
_B5_RAW = [35/384, 0, 500/1113, 125/192, -2187/6784, 11/84, 0]
_B4_RAW = [5179/57600, 0, 7571/16695, 393/640, -92097/339200, 187/2100, 1/40]
# fmt: on


@lru_cache(maxsize=8)
def _get_tableau(dtype_str: str, device_str: str):
    """Get Butcher tableau tensors for the given dtype and device.

    Uses string keys for proper LRU cache hashing.
    """
    dtype = getattr(torch, dtype_str)
    device = torch.device(device_str)

    C = torch.tensor(_C_RAW, dtype=dtype, device=device)
    A = [
        [torch.tensor(a, dtype=dtype, device=device) for a in row]
        for row in _A_RAW
    ]
    B5 = torch.tensor(_B5_RAW, dtype=dtype, device=device)
    B4 = torch.tensor(_B4_RAW, dtype=dtype, device=device)
    return C, A, B5, B4


class _TensorDictInterpolant:
    def __init__(self, base_interp, unflatten_fn):
        self._base = base_interp
        self._unflatten = unflatten_fn
        self.t_points = base_interp.t_points
        self.n_steps = base_interp.n_steps

    def __call__(self, t_query):
        return self._unflatten(self._base(t_query))


def dormand_prince_5(
    f: Callable[[torch.Tensor, torch.Tensor], torch.Tensor],
    y0: Union[torch.Tensor, TensorDict],
    t_span: Tuple[float, float],
    rtol: float = 1e-6,
    atol: float = 1e-9,
    dt0: Optional[float] = None,
    dt_min: Optional[float] = None,
    dt_max: Optional[float] = None,
    max_steps: int = 10000,
    error_weights: Optional[torch.Tensor] = None,
) -> Tuple[Union[torch.Tensor, TensorDict], DP5Interpolant]:
    """
    Solve ODE using Dormand-Prince 5(4) adaptive method.

    Every operation on the state is a tensor operation, so the final state
    and the interpolant carry reverse-mode graphs and forward-mode tangents
    of ``y0`` and of anything ``f`` closes over.

    Parameters
    ----------
    f : callable
        Dynamics function with signature f(t, y) -> dy/dt, where t is a
        0-d tensor.
    y0 : Tensor or TensorDict
        Initial state.
    t_span : tuple[float, float]
        Integration interval (t0, t1) with t1 >= t0.
    rtol : float
        Relative tolerance for step size control.
    atol : float
        Absolute tolerance for step size control.
    dt0 : float, optional
        Initial step size guess. If None, estimated automatically.
    dt_min : float, optional
        Minimum allowed step size. Raises StepSizeError below it.
    dt_max : float, optional
        Maximum allowed step size.
    max_steps : int
        Maximum number of accepted steps before raising MaxStepsExceeded.
    error_weights : Tensor, optional
        Per-component weights for seminorm error control. Zero weights
        remove a component from step size control entirely.

    Returns
    -------
    y : Tensor or TensorDict
        State at t1.
    interp : DP5Interpolant
        Dense output, ``interp(t)`` returns the state at time(s) t.

    Raises
    ------
    MaxStepsExceeded
        If integration requires more than max_steps.
    StepSizeError
        If the adaptive step size falls below dt_min.
    """
    t0, t1 = float(t_span[0]), float(t_span[1])
    if t1 < t0:
        raise ValueError(f"t_span must be increasing, got ({t0}, {t1})")

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

    dtype_str = str(dtype).replace("torch.", "")
    C, A, B5, B4 = _get_tableau(dtype_str, str(device))

    if error_weights is not None:
        if (error_weights < 0).any():
            raise ValueError("error_weights must be non-negative")
        error_weights = error_weights.to(dtype=dtype, device=device)

    def as_time(value: float) -> torch.Tensor:
        return torch.tensor(value, dtype=dtype, device=device)

    k1 = f_flat(as_time(t0), y_flat)

    if dt0 is None:
        scale = atol + rtol * torch.abs(y_flat.detach())
        d0 = torch.sqrt(torch.mean((y_flat.detach() / scale) ** 2))
        d1 = torch.sqrt(torch.mean((k1.detach() / scale) ** 2))
        if d0 < 1e-5 or d1 < 1e-5:
            dt0 = 1e-6
        else:
            dt0 = 0.01 * (d0 / d1).item()
    dt = dt0

    if dt_max is not None:
        dt = min(dt, dt_max)

    t_tol = 100 * torch.finfo(dtype).eps * max(abs(t0), abs(t1), 1.0)

    t_segments = []
    y_segments = []
    k_segments = []

    t = t0
    y = y_flat
    n_steps = 0

    while t1 - t > t_tol:
        if n_steps >= max_steps:
            raise MaxStepsExceeded(
                f"Exceeded maximum number of steps ({max_steps})"
            )

        h = min(dt, t1 - t)

        # FSAL: k[0] reuses k1 from the previous accepted step
        k = [None] * 7
        k[0] = k1
        for i in range(1, 7):
            y_i = y
            for j, a_ij in enumerate(A[i]):
                y_i = y_i + h * a_ij * k[j]
            k[i] = f_flat(as_time(t + C[i].item() * h), y_i)

        y_new = y
        for i, b in enumerate(B5):
            y_new = y_new + h * b * k[i]

        y_err = y
        for i, b in enumerate(B4):
            y_err = y_err + h * b * k[i]

        error = (y_new - y_err).detach()
        scale = atol + rtol * torch.maximum(
            torch.abs(y.detach()), torch.abs(y_new.detach())
        )
        if error_weights is not None:
            scaled_error = error * error_weights / scale
        else:
            scaled_error = error / scale
        err_norm = torch.sqrt(torch.mean(scaled_error**2)).item()

        if err_norm <= 1.0:
            t_segments.append((t, t + h))
            y_segments.append(torch.stack([y, y_new]))
            k_segments.append(torch.stack(k))
            t = t + h
            y = y_new
            k1 = k[6]
            n_steps += 1

        if err_norm == 0:
            factor = 5.0
        else:
            factor = 0.9 * (1.0 / err_norm) ** 0.2
        factor = max(0.1, min(factor, 5.0))
        dt = h * factor

        if dt_max is not None:
            dt = min(dt, dt_max)
        if dt_min is not None and dt < dt_min:
            raise StepSizeError(f"Step size {dt} below minimum {dt_min}")

    if not t_segments:
        t_seg_tensor = torch.tensor([[t0, t1]], dtype=dtype, device=device)
        y_seg_tensor = torch.stack([y_flat, y_flat]).unsqueeze(0)
        k_seg_tensor = torch.zeros(
            1, 7, *y_flat.shape, dtype=dtype, device=device
        )
    else:
        t_seg_tensor = torch.tensor(t_segments, dtype=dtype, device=device)
        y_seg_tensor = torch.stack(y_segments)
        k_seg_tensor = torch.stack(k_segments)

    interp = DP5Interpolant(t_seg_tensor, y_seg_tensor, k_seg_tensor)

    if is_tensordict:
        return unflatten(y), _TensorDictInterpolant(interp, unflatten)
    return y, interp
