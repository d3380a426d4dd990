"""
Sensitivity analysis of differential equation solutions.

Problems
--------
ODEProblem, SDEProblem, DAEProblem, DDEProblem
    Immutable problem records, ``f(u, p, t)`` convention.
BrownianPath
    Fixed noise realization of an SDE.
PresetTimeCallback, ContinuousCallback
    Events at fixed times or at zero crossings of a condition.

Algorithms
----------
ForwardSensitivity
    Continuous forward sensitivity equations.
ForwardDiffSensitivity
    Forward mode AD through the solver with chunked duals.
BacksolveAdjoint, InterpolatingAdjoint, QuadratureAdjoint
    Continuous adjoints.
AutogradAdjoint, PassThrough
    Reverse mode through the solver's operations / ambient AD mode.
ForwardLSS
    Least squares shadowing (``shadowing_sensitivity`` only).

VJP choices
-----------
AutogradVJP, FunctionalVJP, ForwardModeJVP, NumericalJVP, UserVJP

Entry points
------------
solve, gradient, validate, shadowing_sensitivity, recommend_sensealg
"""

from torchsensitivity.sensitivity._algorithms import (
    ALGORITHMS,
    Applicability,
    AutogradAdjoint,
    BacksolveAdjoint,
    ForwardDiffSensitivity,
    ForwardLSS,
    ForwardSensitivity,
    InterpolatingAdjoint,
    PassThrough,
    QuadratureAdjoint,
)
from torchsensitivity.sensitivity._callbacks import (
    ContinuousCallback,
    PresetTimeCallback,
)
from torchsensitivity.sensitivity._exceptions import (
    AdjointDivergedError,
    AdjointStabilityWarning,
    BacksolveAdjointWarning,
    ConfigurationError,
    InterpolationAccuracyWarning,
    NumericalInstabilityError,
    SensitivityError,
    UpstreamSolverError,
)
from torchsensitivity.sensitivity._problem import (
    BrownianPath,
    DAEProblem,
    DDEProblem,
    ODEProblem,
    SDEProblem,
)
from torchsensitivity.sensitivity._recommend import (
    analyze_sensitivity_problem,
    recommend_sensealg,
)
from torchsensitivity.sensitivity._select import validate
from torchsensitivity.sensitivity._shadowing import (
    ShadowingResult,
    shadowing_sensitivity,
)
from torchsensitivity.sensitivity._solve import (
    SensitivitySolution,
    gradient,
    solve,
)
from torchsensitivity.sensitivity._vjp import (
    VJP_CHOICES,
    AutogradVJP,
    ForwardModeJVP,
    FunctionalVJP,
    NumericalJVP,
    UserVJP,
)

__all__ = [
    "ALGORITHMS",
    "AdjointDivergedError",
    "AdjointStabilityWarning",
    "Applicability",
    "AutogradAdjoint",
    "AutogradVJP",
    "BacksolveAdjoint",
    "BacksolveAdjointWarning",
    "BrownianPath",
    "ConfigurationError",
    "ContinuousCallback",
    "DAEProblem",
    "DDEProblem",
    "ForwardDiffSensitivity",
    "ForwardLSS",
    "ForwardModeJVP",
    "ForwardSensitivity",
    "FunctionalVJP",
    "InterpolatingAdjoint",
    "InterpolationAccuracyWarning",
    "NumericalInstabilityError",
    "NumericalJVP",
    "ODEProblem",
    "PassThrough",
    "PresetTimeCallback",
    "QuadratureAdjoint",
    "SDEProblem",
    "SensitivityError",
    "SensitivitySolution",
    "ShadowingResult",
    "UpstreamSolverError",
    "UserVJP",
    "VJP_CHOICES",
    "analyze_sensitivity_problem",
    "gradient",
    "recommend_sensealg",
    "shadowing_sensitivity",
    "solve",
    "validate",
]
