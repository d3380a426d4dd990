import pytest
import torch

from torchsensitivity.sensitivity import (
    AutogradAdjoint,
    DDEProblem,
    ForwardDiffSensitivity,
    PassThrough,
    gradient,
    solve,
)

DTYPE = torch.float64


def _problem(T=1.0, history_scale=False):
    """u' = -k u(t - 1) with constant history."""

    def history(p, t):
        scale = p[1] if history_scale else 1.0
        return scale * torch.ones(1, dtype=DTYPE)

    return DDEProblem(
        lambda u, h, p, t: -p[0] * h(t - 1.0),
        history,
        torch.ones(1, dtype=DTYPE),
        (0.0, T),
        torch.tensor([1.0, 1.0], dtype=DTYPE),
        lags=[1.0],
    )


def _loss(solution):
    return solution.u[-1].sum()


DDE_METHODS = [
    ForwardDiffSensitivity(),
    ForwardDiffSensitivity(chunk_size=1),
    AutogradAdjoint(),
]


class TestDDESolution:
    def test_first_interval(self):
        """u(t) = 1 - k t while the delayed state is history"""
        solution = solve(_problem(), saveat=[0.0, 0.5, 1.0])

        assert torch.allclose(
            solution.u[:, 0],
            torch.tensor([1.0, 0.5, 0.0], dtype=DTYPE),
            atol=1e-12,
        )

    def test_second_interval(self):
        """u(2) = 1 - 2 k + k^2 / 2 once the delayed state is the solution"""
        solution = solve(_problem(T=2.0))

        assert abs(solution.u[-1].item() + 0.5) < 1e-10

    def test_explicit_step(self):
        """A given dt is used by the method of steps"""
        solution = solve(_problem(), PassThrough(), dt=0.25)

        assert abs(solution.u[-1].item()) < 1e-12


class TestDDEGradient:
    @pytest.mark.parametrize("sensealg", DDE_METHODS, ids=repr)
    def test_first_interval(self, sensealg):
        """d u(1) / dk = -1 and d u(1) / du0 = 1"""
        _, grad_u0, grad_p = gradient(_problem(), _loss, sensealg)

        assert torch.allclose(
            grad_p, torch.tensor([-1.0, 0.0], dtype=DTYPE), atol=1e-10
        )
        assert torch.allclose(
            grad_u0, torch.tensor([1.0], dtype=DTYPE), atol=1e-10
        )

    @pytest.mark.parametrize("sensealg", DDE_METHODS, ids=repr)
    def test_second_interval(self, sensealg):
        """u(2) = 1 - 2 k + k^2 / 2, so d u(2) / dk = -1 at k = 1"""
        _, _, grad_p = gradient(_problem(T=2.0), _loss, sensealg)

        assert torch.allclose(
            grad_p, torch.tensor([-1.0, 0.0], dtype=DTYPE), atol=1e-8
        )

    @pytest.mark.parametrize("sensealg", DDE_METHODS, ids=repr)
    def test_history_parameter(self, sensealg):
        """Parameters of the history function receive gradients"""
        _, _, grad_p = gradient(
            _problem(history_scale=True), _loss, sensealg
        )

        # u(1) = 1 - k s
        assert torch.allclose(
            grad_p, torch.tensor([-1.0, -1.0], dtype=DTYPE), atol=1e-10
        )

    def test_default_algorithm(self):
        """Delay problems default to forward mode"""
        solution, _, grad_p = gradient(_problem(), _loss)

        assert isinstance(solution.sensealg, ForwardDiffSensitivity)
        assert torch.allclose(
            grad_p, torch.tensor([-1.0, 0.0], dtype=DTYPE), atol=1e-10
        )
