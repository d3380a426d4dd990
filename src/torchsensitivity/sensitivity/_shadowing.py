"""Least squares shadowing for long-time averaged objectives.

For chaotic systems the derivative of a single trajectory grows without
bound, but the derivative of a long-time average does not. Least squares
shadowing finds the tangent ``v`` and time dilation ``eta`` of minimal
norm satisfying the linearized equations

    v' = J_u v + J_p + eta * f

and averages ``g_u v + g_p + eta (g - <g>)`` along the trajectory.
"""

import logging
from typing import Callable, Optional

import torch
from tensordict.tensorclass import tensorclass
from torch import Tensor

from torchsensitivity.sensitivity._algorithms import ForwardLSS
from torchsensitivity.sensitivity._dynamics import make_dynamics
from torchsensitivity.sensitivity._exceptions import ConfigurationError
from torchsensitivity.sensitivity._problem import ODEProblem
from torchsensitivity.sensitivity._select import solver_setup, validate
from torchsensitivity.sensitivity._trajectory import integrate
from torchsensitivity.sensitivity._vjp import ForwardModeJVP

logger = logging.getLogger(__name__)


@tensorclass
class ShadowingResult:
    """Result of a least squares shadowing computation.

    Attributes
    ----------
    average : Tensor
        Long-time average ``<g>`` after the transient.
    gradient : Tensor
        ``d<g>/dp``, in the shape of ``p``.
    t : Tensor
        Time points of the discretized shadowing problem, (N + 1,).
    v : Tensor
        Shadowing direction per parameter, (N + 1, n, m).
    eta : Tensor
        Time dilation per interval and parameter, (N, m).
    """

    average: Tensor
    gradient: Tensor
    t: Tensor
    v: Tensor
    eta: Tensor


def _objective_terms(g, dynamics, u, p, t):
    """``g`` and its gradients w.r.t. the flat state and parameters."""
    with torch.enable_grad():
        u_ = u.detach().requires_grad_(True)
        p_ = p.detach().requires_grad_(True)
        value = g(dynamics.unflatten_u(u_), dynamics.unflatten_p(p_), t)
        value = value.reshape(())
        grad_u, grad_p = torch.autograd.grad(
            value, (u_, p_), allow_unused=True
        )
    grad_u = torch.zeros_like(u) if grad_u is None else grad_u
    grad_p = torch.zeros_like(p) if grad_p is None else grad_p
    return value.detach(), grad_u, grad_p


def shadowing_sensitivity(
    problem: ODEProblem,
    g: Callable,
    sensealg: Optional[ForwardLSS] = None,
    *,
    solver: str = "dormand_prince_5",
    rtol: float = 1e-8,
    atol: float = 1e-10,
    dt: Optional[float] = None,
    max_steps: int = 100000,
) -> ShadowingResult:
    """
    Derivative of a long-time average by least squares shadowing.

    Parameters
    ----------
    problem : ODEProblem
        Problem without callbacks and with parameters.
    g : callable
        Instantaneous objective ``g(u, p, t) -> Tensor`` with one element.
    sensealg : ForwardLSS, optional
        Discretization options. Default: ``ForwardLSS()``.
    solver : str
        Solver of the underlying trajectory.
    rtol, atol : float
        Solver tolerances.
    dt : float, optional
        Step size for fixed-step solvers.
    max_steps : int
        Step limit of the trajectory solve.

    Returns
    -------
    ShadowingResult

    Raises
    ------
    ConfigurationError
        If the problem is not an ODE, has callbacks or has no parameters,
        or if the transient covers the whole time span.

    Notes
    -----
    The shadowing problem is discretized with the trapezoidal rule on
    ``n_points`` equal intervals and its KKT system

        [ I    0      C^T ] [ v   ]   [ 0 ]
        [ 0    a^2 I  F^T ] [ eta ] = [ 0 ]
        [ C    F      0   ] [ w   ]   [ b ]

    is solved densely, one right-hand side per parameter. Memory grows as
    ``(n_points * n)^2``.

    Examples
    --------
    >>> problem = ODEProblem(
    ...     lambda u, p, t: 1.0 - p[0] * u,
    ...     torch.tensor([0.5], dtype=torch.float64),
    ...     (0.0, 100.0),
    ...     torch.tensor([2.0], dtype=torch.float64),
    ... )
    >>> result = shadowing_sensitivity(problem, lambda u, p, t: u[0])
    >>> result.gradient  # approximately -1 / p^2 = -0.25
    """
    if sensealg is None:
        sensealg = ForwardLSS()
    if sensealg.kind != "shadowing":
        raise ConfigurationError(
            f"shadowing_sensitivity needs a shadowing algorithm, got "
            f"{type(sensealg).__name__}"
        )
    validate(problem, sensealg)
    if problem.p is None or problem.p.numel() == 0:
        raise ConfigurationError(
            "Shadowing differentiates w.r.t. parameters; the problem has none"
        )
    if sensealg.n_points < 2:
        raise ConfigurationError(
            f"n_points must be at least 2, got {sensealg.n_points}"
        )

    dynamics = make_dynamics(problem)
    t0, t1 = dynamics.t0, dynamics.t1
    t_start = t0 + sensealg.t_transient
    if not t_start < t1:
        raise ConfigurationError(
            f"t_transient={sensealg.t_transient} leaves nothing of the "
            f"span ({t0}, {t1})"
        )

    solver_fn, solver_options = solver_setup(
        problem, solver, rtol=rtol, atol=atol, dt=dt, max_steps=max_steps
    )
    p = dynamics.flat_p().detach()
    u0 = dynamics.flat_u0().detach()
    with torch.no_grad():
        trajectory = integrate(
            dynamics,
            u0.reshape(1, -1),
            p.reshape(1, -1),
            [t0, t1],
            solver=solver_fn,
            solver_options=solver_options,
            differentiable_events=False,
            single_event=False,
        )
    dense = trajectory.dense(dynamics, p)

    n = dynamics.n_state
    m = p.numel()
    N = sensealg.n_points
    dtype, device = p.dtype, p.device
    times = torch.linspace(t_start, t1, N + 1, dtype=dtype, device=device)
    rhs = dynamics.segment_rhs(t0)
    backend = ForwardModeJVP().backend()

    f, jac_u, jac_p = [], [], []
    values, grad_u, grad_p = [], [], []
    with torch.no_grad():
        for t in times:
            u = dense(t)
            f_i, jac_u_i, jac_p_i = backend.jacobians(rhs, u, p, t)
            g_i, g_u_i, g_p_i = _objective_terms(g, dynamics, u, p, t)
            f.append(f_i)
            jac_u.append(jac_u_i)
            jac_p.append(jac_p_i)
            values.append(g_i)
            grad_u.append(g_u_i)
            grad_p.append(g_p_i)

    h = (times[1:] - times[:-1]).tolist()
    n_v = (N + 1) * n
    n_c = N * n
    eye = torch.eye(n, dtype=dtype, device=device)
    C = torch.zeros(n_c, n_v, dtype=dtype, device=device)
    F = torch.zeros(n_c, N, dtype=dtype, device=device)
    b = torch.zeros(n_c, m, dtype=dtype, device=device)
    for i in range(N):
        rows = slice(i * n, (i + 1) * n)
        C[rows, i * n : (i + 1) * n] = -eye / h[i] - 0.5 * jac_u[i]
        C[rows, (i + 1) * n : (i + 2) * n] = eye / h[i] - 0.5 * jac_u[i + 1]
        F[rows, i] = -0.5 * (f[i] + f[i + 1])
        b[rows] = 0.5 * (jac_p[i] + jac_p[i + 1])

    alpha = sensealg.alpha
    size = n_v + N + n_c
    kkt = torch.zeros(size, size, dtype=dtype, device=device)
    kkt[:n_v, :n_v] = torch.eye(n_v, dtype=dtype, device=device)
    kkt[n_v : n_v + N, n_v : n_v + N] = alpha**2 * torch.eye(
        N, dtype=dtype, device=device
    )
    kkt[:n_v, n_v + N :] = C.T
    kkt[n_v : n_v + N, n_v + N :] = F.T
    kkt[n_v + N :, :n_v] = C
    kkt[n_v + N :, n_v : n_v + N] = F
    rhs_kkt = torch.zeros(size, m, dtype=dtype, device=device)
    rhs_kkt[n_v + N :] = b
    solution = torch.linalg.solve(kkt, rhs_kkt)
    v = solution[:n_v].reshape(N + 1, n, m)
    eta = solution[n_v : n_v + N]
    logger.debug(
        "shadowing: %d points, |v|_max=%.3e, |eta|_max=%.3e",
        N,
        v.abs().max().item(),
        eta.abs().max().item(),
    )

    # trapezoidal weights of the time average
    span = t1 - t_start
    weights = torch.zeros(N + 1, dtype=dtype, device=device)
    for i in range(N):
        weights[i] += 0.5 * h[i] / span
        weights[i + 1] += 0.5 * h[i] / span

    values = torch.stack(values)
    grad_u = torch.stack(grad_u)
    grad_p = torch.stack(grad_p)
    average = (weights * values).sum()

    tangent_term = torch.einsum("i,in,inm->m", weights, grad_u, v)
    direct_term = (weights[:, None] * grad_p).sum(dim=0)
    midpoint = 0.5 * (values[1:] + values[:-1]) - average
    interval = torch.tensor(h, dtype=dtype, device=device) / span
    dilation_term = ((interval * midpoint)[:, None] * eta).sum(dim=0)
    gradient = tangent_term + direct_term + dilation_term

    return ShadowingResult(
        average=average,
        gradient=gradient.reshape(problem.p.shape),
        t=times,
        v=v,
        eta=eta,
        batch_size=[],
    )
