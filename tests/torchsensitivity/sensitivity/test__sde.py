import pytest
import torch

from torchsensitivity.sensitivity import (
    AutogradAdjoint,
    BacksolveAdjoint,
    BrownianPath,
    ForwardDiffSensitivity,
    InterpolatingAdjoint,
    SDEProblem,
    gradient,
    solve,
)

DTYPE = torch.float64
TOLERANCES = {"rtol": 1e-10, "atol": 1e-12}


def _geometric_brownian_motion(seed=3, T=1.0):
    """du = -a u dt + b u dW on a fixed path."""
    noise = BrownianPath(0.0, T, 0.05, shape=(1,), seed=seed)
    return SDEProblem(
        lambda u, p, t: -p[0] * u,
        lambda u, p, t: p[1] * u,
        torch.tensor([1.0], dtype=DTYPE),
        (0.0, T),
        torch.tensor([0.7, 0.4], dtype=DTYPE),
        noise=noise,
    )


def _exact(problem):
    """u(T) = u0 exp(-a T + b W(T)) for piecewise constant white noise."""
    T = problem.tspan[1]
    W = problem.noise.increments.sum()
    a, b = problem.p
    return problem.u0 * torch.exp(-a * T + b * W), T, W


class TestPathwiseSolution:
    def test_final_state(self):
        """The pathwise solution matches the closed form"""
        problem = _geometric_brownian_motion()

        solution = solve(problem, **TOLERANCES)

        expected, _, _ = _exact(problem)
        assert torch.allclose(solution.u[-1], expected, rtol=1e-8)

    def test_same_seed_same_path(self):
        """A seeded path makes repeated solves identical"""
        first = solve(_geometric_brownian_motion(seed=5), **TOLERANCES)
        second = solve(_geometric_brownian_motion(seed=5), **TOLERANCES)

        assert torch.equal(first.u, second.u)

    def test_different_paths(self):
        """Different seeds give different realizations"""
        first = solve(_geometric_brownian_motion(seed=1), **TOLERANCES)
        second = solve(_geometric_brownian_motion(seed=2), **TOLERANCES)

        assert not torch.allclose(first.u[-1], second.u[-1])


class TestPathwiseGradient:
    @pytest.mark.parametrize(
        "sensealg",
        [
            ForwardDiffSensitivity(),
            BacksolveAdjoint(),
            InterpolatingAdjoint(),
            InterpolatingAdjoint(checkpointing=True),
            AutogradAdjoint(),
        ],
        ids=repr,
    )
    def test_geometric_brownian_motion(self, sensealg):
        """Gradients of one realization w.r.t. drift and diffusion"""
        problem = _geometric_brownian_motion()
        value, T, W = _exact(problem)

        _, grad_u0, grad_p = gradient(
            problem, lambda sol: sol.u[-1].sum(), sensealg, **TOLERANCES
        )

        expected_p = torch.stack([-T * value[0], W * value[0]])
        assert torch.allclose(grad_p, expected_p, rtol=1e-5)
        assert torch.allclose(grad_u0, value, rtol=1e-5)

    def test_methods_agree_on_nonlinear_noise(self):
        """Adjoint and discrete gradients agree for a nonlinear SDE"""
        noise = BrownianPath(0.0, 1.0, 0.1, shape=(2,), seed=11)
        problem = SDEProblem(
            lambda u, p, t: torch.stack([u[1], -p[0] * torch.sin(u[0])]),
            lambda u, p, t: p[1] * torch.stack([0.0 * u[0], 1.0 + u[0] ** 2]),
            torch.tensor([0.5, 0.0], dtype=DTYPE),
            (0.0, 1.0),
            torch.tensor([2.0, 0.3], dtype=DTYPE),
            noise=noise,
        )

        def loss(solution):
            return (solution.u**2).sum()

        saveat = [0.0, 0.5, 1.0]
        _, ref_u0, ref_p = gradient(
            problem, loss, AutogradAdjoint(), saveat=saveat, **TOLERANCES
        )
        for sensealg in [InterpolatingAdjoint(), ForwardDiffSensitivity()]:
            _, grad_u0, grad_p = gradient(
                problem, loss, sensealg, saveat=saveat, **TOLERANCES
            )
            assert torch.allclose(grad_u0, ref_u0, rtol=1e-5), sensealg
            assert torch.allclose(grad_p, ref_p, rtol=1e-5), sensealg
