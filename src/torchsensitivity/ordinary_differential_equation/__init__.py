"""
Differentiable initial value problem solvers.

Integrators share the signature ``solver(f, y0, t_span, **options) ->
(y_final, interp)`` with ``f(t, y)``. Every step is a plain tensor
operation, so solutions can be differentiated in reverse or forward mode.

Solvers
-------
dormand_prince_5
    Dormand-Prince 5(4) adaptive method with continuous dense output.
runge_kutta_4
    Classic 4th-order Runge-Kutta (fixed step, Hermite dense output).
method_of_steps
    Fixed-step RK4 for delay differential equations with constant lags.

Utilities
---------
newton_solve
    Newton iteration with an implicit-function-theorem final step.
EventSpec, detect_event, locate_event, find_first_event
    Zero-crossing detection on dense output.
flatten_state, unflatten_state
    Tensor / TensorDict state flattening.
"""

from torchsensitivity.ordinary_differential_equation._dormand_prince_5 import (
    dormand_prince_5,
)
from torchsensitivity.ordinary_differential_equation._event_handling import (
    EventSpec,
    detect_event,
    find_first_event,
    locate_event,
)
from torchsensitivity.ordinary_differential_equation._exceptions import (
    ConvergenceError,
    IntegrationError,
    MaxStepsExceeded,
    ODESolverError,
    StepSizeError,
)
from torchsensitivity.ordinary_differential_equation._interpolation import (
    DP5Interpolant,
    HermiteInterpolant,
    SegmentedInterpolant,
)
from torchsensitivity.ordinary_differential_equation._method_of_steps import (
    method_of_steps,
)
from torchsensitivity.ordinary_differential_equation._newton import (
    newton_solve,
)
from torchsensitivity.ordinary_differential_equation._runge_kutta_4 import (
    runge_kutta_4,
)
from torchsensitivity.ordinary_differential_equation._tensordict_utils import (
    flatten_state,
    unflatten_state,
)

METHODS = {
    "dormand_prince_5": dormand_prince_5,
    "runge_kutta_4": runge_kutta_4,
}

ADAPTIVE_METHODS = frozenset({"dormand_prince_5"})

__all__ = [
    "ADAPTIVE_METHODS",
    "ConvergenceError",
    "DP5Interpolant",
    "EventSpec",
    "HermiteInterpolant",
    "IntegrationError",
    "METHODS",
    "MaxStepsExceeded",
    "ODESolverError",
    "SegmentedInterpolant",
    "StepSizeError",
    "detect_event",
    "dormand_prince_5",
    "find_first_event",
    "flatten_state",
    "locate_event",
    "method_of_steps",
    "newton_solve",
    "runge_kutta_4",
    "unflatten_state",
]
