"""Sensitivity algorithm choices and their applicability.

Each algorithm is a frozen record of its options; derive variants with
``dataclasses.replace``. Which problems an algorithm can differentiate is
declared by its ``applicability`` entry and enforced by ``validate`` before
any integration starts.
"""

from dataclasses import dataclass
from typing import ClassVar, FrozenSet, NamedTuple, Optional

ALL_CLASSES = frozenset({"ode", "sde", "dae", "dde"})


class Applicability(NamedTuple):
    """Equation classes an algorithm supports, with and without events."""

    equation_classes: FrozenSet[str]
    callback_classes: FrozenSet[str]
    single_event: bool = False
    caution_classes: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class ForwardSensitivity:
    """
    Continuous forward sensitivity equations.

    Integrates ``[u, S]`` with ``S' = J_u S + J_p [0 | I]`` in one solve.
    Smooth deterministic ODEs only.

    Parameters
    ----------
    autojacvec : ForwardModeJVP or NumericalJVP, optional
        How ``J_u S`` and ``J_p`` columns are computed. Default:
        ``ForwardModeJVP()``.
    """

    autojacvec: Optional[object] = None

    kind: ClassVar[str] = "forward"
    applicability: ClassVar[Applicability] = Applicability(
        frozenset({"ode"}), frozenset()
    )


@dataclass(frozen=True)
class ForwardDiffSensitivity:
    """
    Forward mode automatic differentiation through the solver.

    Parameters
    ----------
    chunk_size : int
        Number of tangent directions pushed through one solve. 0 picks
        ``min(n + m, 12)`` for n state and m parameter components.
    convert_tspan : bool, optional
        Make event times dual numbers so continuous callbacks are
        differentiated. ``None`` enables it when the problem has
        continuous callbacks; ``False`` with continuous callbacks is a
        configuration error.
    """

    chunk_size: int = 0
    convert_tspan: Optional[bool] = None

    kind: ClassVar[str] = "forward_diff"
    applicability: ClassVar[Applicability] = Applicability(
        ALL_CLASSES, frozenset({"ode", "sde", "dae"})
    )

    def __post_init__(self):
        if self.chunk_size < 0:
            raise ValueError(
                f"chunk_size must be non-negative, got {self.chunk_size}"
            )


@dataclass(frozen=True)
class BacksolveAdjoint:
    """
    Adjoint solved jointly with a backward re-integration of the state.

    Parameters
    ----------
    autojacvec : VJP choice, optional
        Vector-Jacobian product backend.
    checkpointing : bool
        Reset the backward state to the recorded forward state at every
        save point and measure the drift there.
    divergence_tolerance : float, optional
        Relative drift above which ``NumericalInstabilityError`` is raised.
        Without it a drift above 0.1 only warns.
    """

    autojacvec: Optional[object] = None
    checkpointing: bool = True
    divergence_tolerance: Optional[float] = None

    kind: ClassVar[str] = "adjoint"
    applicability: ClassVar[Applicability] = Applicability(
        frozenset({"ode", "sde", "dae"}),
        frozenset({"ode", "sde", "dae"}),
        single_event=True,
        caution_classes=frozenset({"dae"}),
    )


@dataclass(frozen=True)
class InterpolatingAdjoint:
    """
    Adjoint that reads the state from the forward dense output.

    Parameters
    ----------
    autojacvec : VJP choice, optional
        Vector-Jacobian product backend.
    checkpointing : bool
        Keep only save-point states and re-solve each interval forward
        during the backward pass.
    """

    autojacvec: Optional[object] = None
    checkpointing: bool = False

    kind: ClassVar[str] = "adjoint"
    applicability: ClassVar[Applicability] = Applicability(
        frozenset({"ode", "sde", "dae"}),
        frozenset({"ode", "sde"}),
        single_event=True,
    )


@dataclass(frozen=True)
class QuadratureAdjoint:
    """
    Adjoint ``lambda`` alone, parameter gradient by quadrature afterwards.

    Parameters
    ----------
    autojacvec : VJP choice, optional
        Vector-Jacobian product backend.
    abstol, reltol : float
        Tolerances of the Gauss-Kronrod quadrature of ``J_p^T lambda``.
    """

    autojacvec: Optional[object] = None
    abstol: float = 1e-6
    reltol: float = 1e-3

    kind: ClassVar[str] = "adjoint"
    applicability: ClassVar[Applicability] = Applicability(
        frozenset({"ode"}), frozenset({"ode"}), single_event=True
    )


@dataclass(frozen=True)
class AutogradAdjoint:
    """Reverse mode through every solver step on the autograd tape."""

    kind: ClassVar[str] = "discrete"
    applicability: ClassVar[Applicability] = Applicability(
        ALL_CLASSES, frozenset({"ode", "sde", "dae"})
    )


@dataclass(frozen=True)
class PassThrough:
    """Run the solve in the caller's ambient autodiff mode."""

    kind: ClassVar[str] = "discrete"
    applicability: ClassVar[Applicability] = Applicability(
        ALL_CLASSES, frozenset({"ode", "sde", "dae"})
    )


@dataclass(frozen=True)
class ForwardLSS:
    """
    Forward least squares shadowing for long-time averages.

    Parameters
    ----------
    alpha : float
        Weight of the time dilation term.
    n_points : int
        Number of time points of the discretized shadowing problem.
    t_transient : float
        Time discarded at the start of the trajectory.
    """

    alpha: float = 10.0
    n_points: int = 200
    t_transient: float = 0.0

    kind: ClassVar[str] = "shadowing"
    applicability: ClassVar[Applicability] = Applicability(
        frozenset({"ode"}), frozenset()
    )


ALGORITHMS = (
    ForwardSensitivity,
    ForwardDiffSensitivity,
    BacksolveAdjoint,
    InterpolatingAdjoint,
    QuadratureAdjoint,
    AutogradAdjoint,
    PassThrough,
    ForwardLSS,
)
