import math

import pytest
import torch

from torchsensitivity.sensitivity import (
    AutogradAdjoint,
    BacksolveAdjoint,
    BacksolveAdjointWarning,
    DAEProblem,
    ForwardDiffSensitivity,
    InterpolatingAdjoint,
    PresetTimeCallback,
    gradient,
    solve,
)

DTYPE = torch.float64
TOLERANCES = {"rtol": 1e-10, "atol": 1e-12}


def _problem(a=0.5, callbacks=()):
    """x' = -z with the constraint z = a x."""
    return DAEProblem(
        lambda x, z, p, t: -z,
        lambda x, z, p, t: z - p[0] * x,
        torch.tensor([1.0, 0.3], dtype=DTYPE),
        (0.0, 1.0),
        torch.tensor([a], dtype=DTYPE),
        callbacks=callbacks,
    )


def _loss(solution):
    return solution.u[-1].sum()


class TestDAESolution:
    def test_consistent_algebraic_state(self):
        """The algebraic part satisfies the constraint at every save time"""
        a = 0.5
        solution = solve(
            _problem(a), saveat=[0.0, 0.5, 1.0], **TOLERANCES
        )

        x, z = solution.u[:, 0], solution.u[:, 1]
        assert torch.allclose(z, a * x, atol=1e-10)
        assert torch.allclose(
            x, torch.exp(-a * solution.t), rtol=1e-8
        )

    def test_initial_guess_replaced(self):
        """The reported initial algebraic state is reinitialized"""
        solution = solve(_problem(0.5), saveat=[0.0], **TOLERANCES)

        assert torch.allclose(
            solution.u[0], torch.tensor([1.0, 0.5], dtype=DTYPE)
        )


class TestDAEGradient:
    @pytest.mark.parametrize(
        "sensealg",
        [
            ForwardDiffSensitivity(),
            InterpolatingAdjoint(),
            InterpolatingAdjoint(checkpointing=True),
            AutogradAdjoint(),
        ],
        ids=repr,
    )
    def test_linear_constraint(self, sensealg):
        """d/da of x(T) + z(T) = (1 + a) exp(-a T)"""
        a, T = 0.5, 1.0

        _, grad_u0, grad_p = gradient(
            _problem(a), _loss, sensealg, **TOLERANCES
        )

        decay = math.exp(-a * T)
        assert torch.allclose(
            grad_p,
            torch.tensor([decay * (1.0 - (1.0 + a) * T)], dtype=DTYPE),
            rtol=1e-5,
        )
        # the algebraic initial value is only a Newton guess
        assert torch.allclose(
            grad_u0,
            torch.tensor([(1.0 + a) * decay, 0.0], dtype=DTYPE),
            rtol=1e-5,
            atol=1e-12,
        )

    def test_backsolve_warns_and_agrees(self):
        """Backsolve reconstructs the algebraic part backward"""
        a, T = 0.5, 1.0

        with pytest.warns(BacksolveAdjointWarning):
            _, _, grad_p = gradient(
                _problem(a), _loss, BacksolveAdjoint(), **TOLERANCES
            )

        decay = math.exp(-a * T)
        assert torch.allclose(
            grad_p,
            torch.tensor([decay * (1.0 - (1.0 + a) * T)], dtype=DTYPE),
            rtol=1e-5,
        )

    def test_preset_event(self):
        """Events on DAEs act on the full state"""
        dose = PresetTimeCallback(
            [0.5], lambda u, p, t: torch.cat([u[:1] + 1.0, u[1:]])
        )
        a = 0.5

        for sensealg in [ForwardDiffSensitivity(), AutogradAdjoint()]:
            solution, _, grad_p = gradient(
                _problem(a, callbacks=[dose]),
                lambda sol: sol.u[-1][0],
                sensealg,
                **TOLERANCES,
            )

            # x(1) = exp(-a) + exp(-a / 2)
            expected = math.exp(-a) + math.exp(-0.5 * a)
            assert abs(solution.u[-1][0].item() - expected) < 1e-8
            assert abs(
                grad_p.item() - (-math.exp(-a) - 0.5 * math.exp(-0.5 * a))
            ) < 1e-6
