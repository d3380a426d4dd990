"""Advisory choice of a sensitivity algorithm.

The recommendation is never applied automatically; ``solve`` uses only
what it is given or its documented default.
"""

from typing import Dict, Union

import torch

from torchsensitivity.sensitivity._algorithms import (
    ForwardDiffSensitivity,
    ForwardSensitivity,
    InterpolatingAdjoint,
)
from torchsensitivity.sensitivity._dynamics import make_dynamics
from torchsensitivity.sensitivity._problem import Problem

FORWARD_PARAMETER_LIMIT = 100


def _rayleigh_quotients(
    rhs, y: torch.Tensor, p: torch.Tensor, t: torch.Tensor, n_samples: int
) -> torch.Tensor:
    """
    Estimate Jacobian eigenvalues via finite differences.

    Uses random probing directions ``v`` and the Rayleigh quotient
    ``v . J v`` without forming the Jacobian.
    """
    eps = 1e-7 * (1.0 + torch.abs(y).max().item())
    generator = torch.Generator().manual_seed(0)
    f0 = rhs(y, p, t)
    estimates = []
    for _ in range(n_samples):
        v = torch.randn(y.shape, generator=generator, dtype=y.dtype)
        v = v.to(y.device)
        v_norm = torch.norm(v)
        if v_norm < 1e-10:
            continue
        v = v / v_norm
        Jv = (rhs(y + eps * v, p, t) - f0) / eps
        estimates.append(torch.dot(v, Jv).item())
    if not estimates:
        return torch.tensor([0.0])
    return torch.tensor(estimates)


def analyze_sensitivity_problem(
    problem: Problem, n_samples: int = 10
) -> Dict[str, Union[bool, float, int, str]]:
    """
    Characteristics of a problem that matter for the algorithm choice.

    Parameters
    ----------
    problem : ODEProblem, SDEProblem, DAEProblem or DDEProblem
        The problem.
    n_samples : int
        Number of probing directions at the initial state.

    Returns
    -------
    dict
        Keys ``equation_class``, ``n_state``, ``n_params``,
        ``has_callbacks``, ``stiff``, ``stiffness_ratio`` and
        ``max_growth_rate`` (largest Rayleigh quotient, positive values
        indicating locally unstable dynamics). Delay problems are not
        probed and report a non-stiff, neutral problem.
    """
    dynamics = make_dynamics(problem)
    analysis = {
        "equation_class": problem.equation_class,
        "n_state": dynamics.n_state,
        "n_params": dynamics.n_params,
        "has_callbacks": problem.has_callbacks,
        "stiff": False,
        "stiffness_ratio": 1.0,
        "max_growth_rate": 0.0,
    }
    if problem.equation_class == "dde":
        return analysis

    with torch.no_grad():
        y = dynamics.initial_state(dynamics.flat_u0().detach())
        p = dynamics.flat_p().detach()
        t = dynamics.as_time(dynamics.t0)
        eigenvalues = _rayleigh_quotients(
            dynamics.segment_rhs(dynamics.t0), y, p, t, n_samples
        )

    magnitudes = eigenvalues.abs()
    max_eig = magnitudes.max().item()
    nonzero = magnitudes > 1e-10
    min_eig = magnitudes[nonzero].min().item() if nonzero.any() else 1e-10
    stiffness_ratio = max_eig / min_eig
    analysis["stiffness_ratio"] = stiffness_ratio
    analysis["stiff"] = (
        stiffness_ratio > 100 or eigenvalues.min().item() < -100
    )
    analysis["max_growth_rate"] = eigenvalues.max().item()
    return analysis


def recommend_sensealg(problem: Problem, n_samples: int = 10):
    """
    Recommend a sensitivity algorithm for a problem.

    Forward methods are cheaper below about 100 parameters, adjoints
    above. Backsolve is never recommended: stiff or locally unstable
    dynamics make the backward reconstruction of the state drift, and
    checkpointed interpolation is recommended for them instead.

    Parameters
    ----------
    problem : ODEProblem, SDEProblem, DAEProblem or DDEProblem
        The problem.
    n_samples : int
        Number of probing directions for the stiffness estimate.

    Returns
    -------
    An algorithm record.

    Examples
    --------
    >>> problem = ODEProblem(
    ...     lambda u, p, t: -p * u,
    ...     torch.tensor([1.0]),
    ...     (0.0, 1.0),
    ...     torch.tensor([1.0]),
    ... )
    >>> recommend_sensealg(problem)
    ForwardSensitivity(autojacvec=None)
    """
    if problem.equation_class == "dde":
        return ForwardDiffSensitivity()

    analysis = analyze_sensitivity_problem(problem, n_samples=n_samples)
    if analysis["n_params"] < FORWARD_PARAMETER_LIMIT:
        smooth = not analysis["has_callbacks"]
        if analysis["equation_class"] == "ode" and smooth:
            return ForwardSensitivity()
        return ForwardDiffSensitivity()

    if analysis["stiff"] or analysis["max_growth_rate"] > 1.0:
        return InterpolatingAdjoint(checkpointing=True)
    return InterpolatingAdjoint()
