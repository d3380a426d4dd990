"""Problem definitions for ODEs, SDEs, DAEs and DDEs.

Right-hand sides use the ``f(u, p, t)`` convention (state, parameters,
time); in-place variants ``f(du, u, p, t)`` write into ``du`` and are
detected from their arity.
"""

import dataclasses
import inspect
import math
from dataclasses import dataclass
from typing import Callable, ClassVar, Optional, Sequence, Tuple, Union

import torch
from tensordict import TensorDict

from torchsensitivity.sensitivity._callbacks import (
    ContinuousCallback,
    PresetTimeCallback,
)
from torchsensitivity.sensitivity._exceptions import ConfigurationError

State = Union[torch.Tensor, TensorDict]


def _positional_arity(fn: Callable) -> Optional[int]:
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return None
    count = 0
    for parameter in signature.parameters.values():
        if parameter.kind == inspect.Parameter.VAR_POSITIONAL:
            return None
        if parameter.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
        ):
            count += 1
    return count


def _detect_inplace(fn: Callable, out_of_place_arity: int) -> bool:
    return _positional_arity(fn) == out_of_place_arity + 1


def _check_tspan(tspan) -> Tuple[float, float]:
    if len(tspan) != 2:
        raise ConfigurationError(f"tspan must be (t0, t1), got {tspan}")
    t0, t1 = (float(t) for t in tspan)
    if not (math.isfinite(t0) and math.isfinite(t1)):
        raise ConfigurationError(f"tspan must be finite, got ({t0}, {t1})")
    if t1 <= t0:
        raise ConfigurationError(
            f"tspan must satisfy t1 > t0, got ({t0}, {t1})"
        )
    return t0, t1


def _check_state(u0: State) -> None:
    if isinstance(u0, TensorDict):
        leaves = u0.values(include_nested=True, leaves_only=True)
        if not all(leaf.is_floating_point() for leaf in leaves):
            raise ConfigurationError("u0 must hold floating point tensors")
    elif isinstance(u0, torch.Tensor):
        if not u0.is_floating_point():
            raise ConfigurationError(
                f"u0 must be a floating point tensor, got {u0.dtype}"
            )
    else:
        raise ConfigurationError(
            f"u0 must be a Tensor or TensorDict, got {type(u0).__name__}"
        )


def _check_parameters(p) -> None:
    if p is not None and not (
        isinstance(p, torch.Tensor) and p.is_floating_point()
    ):
        raise ConfigurationError("p must be None or a floating point tensor")


def _check_callbacks(callbacks, t0: float, t1: float) -> tuple:
    callbacks = tuple(callbacks)
    for callback in callbacks:
        if not isinstance(callback, (PresetTimeCallback, ContinuousCallback)):
            raise ConfigurationError(
                f"Unsupported callback type {type(callback).__name__}"
            )
        if isinstance(callback, PresetTimeCallback):
            for t in callback.times:
                if not t0 < t <= t1:
                    raise ConfigurationError(
                        f"Preset event time {t} outside ({t0}, {t1}]"
                    )
    return callbacks


class _Remake:
    def remake(self, **changes):
        """Return a copy of the problem with the given fields replaced."""
        return dataclasses.replace(self, **changes)

    @property
    def has_callbacks(self) -> bool:
        return bool(self.callbacks)


@dataclass(frozen=True, eq=False)
class ODEProblem(_Remake):
    """
    Ordinary differential equation ``du/dt = f(u, p, t)``.

    Parameters
    ----------
    f : callable
        ``f(u, p, t) -> du/dt`` or in place ``f(du, u, p, t)``.
    u0 : Tensor or TensorDict
        Initial state.
    tspan : tuple[float, float]
        Time span with ``t1 > t0``.
    p : Tensor, optional
        Parameters.
    callbacks : sequence
        ``PresetTimeCallback`` / ``ContinuousCallback`` events.
    vjp : callable, optional
        Hand-written ``vjp(u, p, t) -> (f(u, p, t), pullback)`` with
        ``pullback(v) -> (J_u^T v, J_p^T v)``. Used by adjoint methods in
        place of automatic differentiation unless ``autojacvec`` is given.
    inplace : bool, optional
        Override the arity-based in-place detection.

    Examples
    --------
    >>> problem = ODEProblem(
    ...     lambda u, p, t: (p[0] - p[1]) * u,
    ...     torch.tensor([1.0], dtype=torch.float64),
    ...     (0.0, 1.0),
    ...     torch.tensor([1.5, 1.0], dtype=torch.float64),
    ... )
    """

    equation_class: ClassVar[str] = "ode"

    f: Callable
    u0: State
    tspan: Tuple[float, float]
    p: Optional[torch.Tensor] = None
    callbacks: Sequence = ()
    vjp: Optional[Callable] = None
    inplace: Optional[bool] = None

    def __post_init__(self):
        tspan = _check_tspan(self.tspan)
        object.__setattr__(self, "tspan", tspan)
        _check_state(self.u0)
        _check_parameters(self.p)
        object.__setattr__(
            self, "callbacks", _check_callbacks(self.callbacks, *tspan)
        )
        if self.inplace is None:
            object.__setattr__(self, "inplace", _detect_inplace(self.f, 3))


class BrownianPath:
    """
    Fixed realization of a Brownian motion on a uniform grid.

    The path is piecewise linear between grid points, so the pathwise
    solution of an SDE driven by it converges to the Stratonovich solution.

    Parameters
    ----------
    t0, t1 : float
        Time span of the path.
    dt : float, optional
        Grid spacing. The span is divided into the smallest number of equal
        intervals no longer than ``dt``. Ignored if ``increments`` is given.
    shape : tuple of int
        Shape of one increment (the flattened state size for diagonal
        noise).
    seed : int, optional
        Seed of the ``torch.Generator`` drawing the increments.
    increments : Tensor, optional
        Explicit increments, shape (K, *shape), on K equal intervals.
    dtype : torch.dtype
        Floating point type of the increments.
    """

    def __init__(
        self,
        t0: float,
        t1: float,
        dt: Optional[float] = None,
        shape: Tuple[int, ...] = (),
        seed: Optional[int] = None,
        *,
        increments: Optional[torch.Tensor] = None,
        dtype: torch.dtype = torch.float64,
    ):
        t0, t1 = float(t0), float(t1)
        if increments is not None:
            n_intervals = increments.shape[0]
            increments = increments.detach()
        else:
            if dt is None or dt <= 0:
                raise ValueError(f"dt must be positive, got {dt}")
            n_intervals = max(1, math.ceil((t1 - t0) / dt - 1e-9))
            generator = torch.Generator()
            if seed is not None:
                generator.manual_seed(seed)
            h = (t1 - t0) / n_intervals
            increments = math.sqrt(h) * torch.randn(
                (n_intervals, *shape), generator=generator, dtype=dtype
            )
        self.times = [
            t0 + (t1 - t0) * k / n_intervals for k in range(n_intervals)
        ] + [t1]
        self.increments = increments

    @property
    def n_intervals(self) -> int:
        return len(self.times) - 1

    def interval_index(self, t: float) -> int:
        """Index k of the interval with ``times[k] <= t < times[k + 1]``."""
        for k in range(self.n_intervals - 1, -1, -1):
            if t >= self.times[k]:
                return k
        return 0

    def white_noise(self, k: int) -> torch.Tensor:
        """Constant derivative ``dW_k / dt_k`` of the path on interval k."""
        return self.increments[k] / (self.times[k + 1] - self.times[k])


@dataclass(frozen=True, eq=False)
class SDEProblem(_Remake):
    """
    Stratonovich SDE ``du = f(u, p, t) dt + g(u, p, t) * dW``.

    The noise is diagonal: ``g`` returns one intensity per state component.
    The equation is solved pathwise along a fixed ``BrownianPath``, so
    every sensitivity method differentiates the same realization.

    Parameters
    ----------
    f, g : callable
        Drift and diffusion, ``(u, p, t) -> Tensor`` or in place
        ``(du, u, p, t)``.
    u0 : Tensor or TensorDict
        Initial state.
    tspan : tuple[float, float]
        Time span with ``t1 > t0``.
    p : Tensor, optional
        Parameters.
    noise : BrownianPath, optional
        Driving path. Default: 100 intervals, seed 0.
    callbacks : sequence
        Events.
    inplace : bool, optional
        Override the arity-based in-place detection.
    """

    equation_class: ClassVar[str] = "sde"

    f: Callable
    g: Callable
    u0: State
    tspan: Tuple[float, float]
    p: Optional[torch.Tensor] = None
    noise: Optional[BrownianPath] = None
    callbacks: Sequence = ()
    inplace: Optional[bool] = None

    def __post_init__(self):
        tspan = _check_tspan(self.tspan)
        object.__setattr__(self, "tspan", tspan)
        _check_state(self.u0)
        _check_parameters(self.p)
        object.__setattr__(
            self, "callbacks", _check_callbacks(self.callbacks, *tspan)
        )
        if self.inplace is None:
            object.__setattr__(self, "inplace", _detect_inplace(self.f, 3))

        if isinstance(self.u0, TensorDict):
            n = sum(
                leaf.numel()
                for leaf in self.u0.values(
                    include_nested=True, leaves_only=True
                )
            )
        else:
            n = self.u0.numel()

        noise = self.noise
        if noise is None:
            dtype = (
                self.u0.dtype
                if isinstance(self.u0, torch.Tensor)
                else torch.float64
            )
            noise = BrownianPath(
                tspan[0],
                tspan[1],
                (tspan[1] - tspan[0]) / 100,
                shape=(n,),
                seed=0,
                dtype=dtype,
            )
            object.__setattr__(self, "noise", noise)

        if noise.increments[0].numel() != n:
            raise ConfigurationError(
                f"Noise increments have {noise.increments[0].numel()} "
                f"components, the state has {n}"
            )
        if (
            abs(noise.times[0] - tspan[0]) > 1e-12
            or abs(noise.times[-1] - tspan[1]) > 1e-12
        ):
            raise ConfigurationError("Noise path must span the problem tspan")


@dataclass(frozen=True, eq=False)
class DAEProblem(_Remake):
    """
    Semi-explicit index-1 DAE.

    ``dx/dt = f(x, z, p, t)``, ``0 = g(x, z, p, t)`` with ``u = [x, z]``.
    The algebraic part ``z`` is recovered from ``x`` by Newton iteration
    wherever the right-hand side is evaluated; the ``z`` entries of ``u0``
    only serve as the initial Newton guess.

    Parameters
    ----------
    f : callable
        Differential part ``f(x, z, p, t) -> dx/dt``.
    g : callable
        Algebraic constraint ``g(x, z, p, t) -> residual``, with
        ``dg/dz`` nonsingular.
    u0 : Tensor
        Initial state ``[x0, z0]``, 1-D.
    tspan : tuple[float, float]
        Time span with ``t1 > t0``.
    p : Tensor, optional
        Parameters.
    n_differential : int
        Number of differential components ``x``.
    callbacks : sequence
        Events. Conditions and affects see the full state ``[x, z]``.
    reinitialize : bool
        Whether the algebraic variables can be recovered under time
        reversal. ``False`` rules out ``BacksolveAdjoint``.
    """

    equation_class: ClassVar[str] = "dae"

    f: Callable
    g: Callable
    u0: torch.Tensor
    tspan: Tuple[float, float]
    p: Optional[torch.Tensor] = None
    n_differential: int = 1
    callbacks: Sequence = ()
    reinitialize: bool = True

    def __post_init__(self):
        tspan = _check_tspan(self.tspan)
        object.__setattr__(self, "tspan", tspan)
        _check_state(self.u0)
        _check_parameters(self.p)
        object.__setattr__(
            self, "callbacks", _check_callbacks(self.callbacks, *tspan)
        )
        if not isinstance(self.u0, torch.Tensor) or self.u0.dim() != 1:
            raise ConfigurationError("DAEProblem needs a 1-D tensor u0")
        if not 0 < self.n_differential < self.u0.numel():
            raise ConfigurationError(
                f"n_differential must be in (0, {self.u0.numel()}), "
                f"got {self.n_differential}"
            )


@dataclass(frozen=True, eq=False)
class DDEProblem(_Remake):
    """
    Delay differential equation with constant lags.

    ``du/dt = f(u, h, p, t)`` where ``h(s)`` returns the state at an
    earlier time ``s`` (typically ``t - lag``).

    Parameters
    ----------
    f : callable
        ``f(u, h, p, t) -> du/dt`` or in place ``f(du, u, h, p, t)``.
    history : callable
        ``history(p, t)`` gives the state for ``t < t0``.
    u0 : Tensor or TensorDict
        State at t0.
    tspan : tuple[float, float]
        Time span with ``t1 > t0``.
    p : Tensor, optional
        Parameters.
    lags : sequence of float
        Constant positive delays.
    callbacks : sequence
        Events (no DDE solver supports them).
    inplace : bool, optional
        Override the arity-based in-place detection.
    """

    equation_class: ClassVar[str] = "dde"

    f: Callable
    history: Callable
    u0: State
    tspan: Tuple[float, float]
    p: Optional[torch.Tensor] = None
    lags: Sequence[float] = ()
    callbacks: Sequence = ()
    inplace: Optional[bool] = None

    def __post_init__(self):
        tspan = _check_tspan(self.tspan)
        object.__setattr__(self, "tspan", tspan)
        _check_state(self.u0)
        _check_parameters(self.p)
        object.__setattr__(
            self, "callbacks", _check_callbacks(self.callbacks, *tspan)
        )
        lags = tuple(float(lag) for lag in self.lags)
        if not lags or min(lags) <= 0:
            raise ConfigurationError(
                f"DDEProblem needs positive lags, got {lags}"
            )
        object.__setattr__(self, "lags", lags)
        if self.inplace is None:
            object.__setattr__(self, "inplace", _detect_inplace(self.f, 4))


Problem = Union[ODEProblem, SDEProblem, DAEProblem, DDEProblem]
