"""Algorithm defaults and the applicability checks run before integration."""

import dataclasses
import logging
import warnings
from typing import Callable, Dict, Optional, Tuple

from torchsensitivity.ordinary_differential_equation import (
    ADAPTIVE_METHODS,
    METHODS,
)
from torchsensitivity.sensitivity._algorithms import (
    ALGORITHMS,
    BacksolveAdjoint,
    ForwardDiffSensitivity,
    InterpolatingAdjoint,
    QuadratureAdjoint,
)
from torchsensitivity.sensitivity._callbacks import (
    ContinuousCallback,
    PresetTimeCallback,
)
from torchsensitivity.sensitivity._exceptions import (
    BacksolveAdjointWarning,
    ConfigurationError,
    InterpolationAccuracyWarning,
)
from torchsensitivity.sensitivity._problem import Problem
from torchsensitivity.sensitivity._vjp import (
    VJP_CHOICES,
    AutogradVJP,
    ForwardModeJVP,
    UserVJP,
)

logger = logging.getLogger(__name__)


def default_sensealg(problem: Problem):
    """Algorithm used when the caller does not choose one."""
    if problem.equation_class == "dde":
        return ForwardDiffSensitivity()
    return InterpolatingAdjoint()


def default_autojacvec(problem: Problem, sensealg):
    """VJP choice used when the algorithm does not name one."""
    if sensealg.kind == "forward":
        return ForwardModeJVP()
    hook = getattr(problem, "vjp", None)
    if hook is not None:
        return UserVJP(hook)
    return AutogradVJP()


def resolve(problem: Problem, sensealg=None):
    """Fill in the default algorithm and its default VJP choice."""
    if sensealg is None:
        sensealg = default_sensealg(problem)
    if not isinstance(sensealg, ALGORITHMS):
        raise ConfigurationError(
            f"Unknown sensitivity algorithm {type(sensealg).__name__}"
        )
    fields = {f.name for f in dataclasses.fields(sensealg)}
    if "autojacvec" in fields and sensealg.autojacvec is None:
        sensealg = dataclasses.replace(
            sensealg, autojacvec=default_autojacvec(problem, sensealg)
        )
    logger.debug(
        "%s problem: using %r", problem.equation_class.upper(), sensealg
    )
    return sensealg


def _check_autojacvec(problem: Problem, sensealg) -> None:
    name = type(sensealg).__name__
    choice = getattr(sensealg, "autojacvec", None)
    if choice is None:
        return
    if not isinstance(choice, VJP_CHOICES):
        raise ConfigurationError(
            f"{name}: autojacvec must be one of "
            f"{', '.join(c.__name__ for c in VJP_CHOICES)}, "
            f"got {type(choice).__name__}"
        )
    choice_name = type(choice).__name__
    equation_class = problem.equation_class
    if sensealg.kind == "forward" and not choice.supports_forward:
        raise ConfigurationError(
            f"{name} needs a forward mode product; {choice_name} only "
            f"provides vector-Jacobian products"
        )
    if sensealg.kind == "adjoint":
        if not choice.supports_reverse:
            raise ConfigurationError(
                f"{name} needs vector-Jacobian products from {choice_name}"
            )
        if equation_class != "ode" and not choice.supports_nonode:
            raise ConfigurationError(
                f"{choice_name} only supports ODE problems, got an "
                f"{equation_class.upper()} problem"
            )
        if equation_class == "dae" and not choice.supports_dae:
            raise ConfigurationError(
                f"{choice_name} cannot differentiate the Newton solve of a "
                f"DAE right-hand side"
            )


def validate(problem: Problem, sensealg) -> None:
    """
    Check that ``sensealg`` can differentiate ``problem``.

    Runs before any integration, so a mismatch never costs a solve.

    Parameters
    ----------
    problem : ODEProblem, SDEProblem, DAEProblem or DDEProblem
        The problem.
    sensealg
        One of the algorithm records.

    Raises
    ------
    ConfigurationError
        If the equation class, the callbacks or the VJP choice are not
        supported by the algorithm.

    Warns
    -----
    BacksolveAdjointWarning
        For backsolve adjoints of DAEs, whose algebraic variables are
        recovered along the backward reconstruction.
    """
    if not isinstance(sensealg, ALGORITHMS):
        raise ConfigurationError(
            f"Unknown sensitivity algorithm {type(sensealg).__name__}"
        )
    name = type(sensealg).__name__
    applicability = sensealg.applicability
    equation_class = problem.equation_class

    if equation_class not in applicability.equation_classes:
        raise ConfigurationError(
            f"{name} does not support {equation_class.upper()} problems"
        )
    if problem.callbacks and (
        equation_class not in applicability.callback_classes
    ):
        raise ConfigurationError(
            f"{name} does not support callbacks on "
            f"{equation_class.upper()} problems"
        )

    if applicability.single_event:
        seen: Dict[float, int] = {}
        for callback in problem.callbacks:
            if not isinstance(callback, PresetTimeCallback):
                continue
            for t in callback.times:
                seen[t] = seen.get(t, 0) + 1
        shared = sorted(t for t, count in seen.items() if count > 1)
        if shared:
            raise ConfigurationError(
                f"{name} allows a single event per time point; several "
                f"callbacks fire at t={shared[0]}"
            )

    if isinstance(sensealg, ForwardDiffSensitivity):
        continuous = any(
            isinstance(c, ContinuousCallback) for c in problem.callbacks
        )
        if continuous and sensealg.convert_tspan is False:
            raise ConfigurationError(
                "ForwardDiffSensitivity with convert_tspan=False cannot "
                "differentiate continuous callbacks"
            )

    if isinstance(sensealg, BacksolveAdjoint) and equation_class == "dae":
        if not problem.reinitialize:
            raise ConfigurationError(
                "BacksolveAdjoint needs to recover the algebraic variables "
                "backward in time, which reinitialize=False rules out"
            )

    _check_autojacvec(problem, sensealg)

    if equation_class in applicability.caution_classes:
        warnings.warn(
            f"{name} on a DAE reconstructs the algebraic variables along "
            f"the backward solve; prefer InterpolatingAdjoint if the "
            f"reconstruction drifts.",
            BacksolveAdjointWarning,
        )


def solver_setup(
    problem: Problem,
    solver: str,
    *,
    rtol: float,
    atol: float,
    dt: Optional[float],
    max_steps: int,
) -> Tuple[Optional[Callable], dict]:
    """Look up a solver by name and build its keyword options."""
    if problem.equation_class == "dde":
        return None, {}
    if solver not in METHODS:
        raise ConfigurationError(
            f"Unknown solver '{solver}'. Available: {sorted(METHODS)}"
        )
    if solver in ADAPTIVE_METHODS:
        options = {"rtol": rtol, "atol": atol, "max_steps": max_steps}
        if dt is not None:
            options["dt0"] = dt
    else:
        if dt is None:
            raise ConfigurationError(f"Solver '{solver}' needs a step dt")
        options = {"dt": dt, "max_steps": max_steps}
    return METHODS[solver], options


def check_dense_output(sensealg, solver: str) -> None:
    """Warn when an adjoint reads its state from fixed-step dense output."""
    if isinstance(sensealg, (InterpolatingAdjoint, QuadratureAdjoint)):
        if solver not in ADAPTIVE_METHODS:
            warnings.warn(
                f"{type(sensealg).__name__} reads the forward state from "
                f"the cubic Hermite output of '{solver}', whose error is "
                f"not controlled. Gradients may be less accurate than the "
                f"solution.",
                InterpolationAccuracyWarning,
            )
