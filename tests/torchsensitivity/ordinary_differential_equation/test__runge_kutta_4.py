import math

import pytest
import torch

from torchsensitivity.ordinary_differential_equation import (
    HermiteInterpolant,
    MaxStepsExceeded,
    runge_kutta_4,
)


class TestRungeKutta4:
    def test_exponential_decay(self):
        """Fourth order accuracy on dy/dt = -y"""
        y0 = torch.tensor([1.0], dtype=torch.float64)

        y_final, _ = runge_kutta_4(lambda t, y: -y, y0, (0.0, 1.0), dt=0.01)

        expected = torch.tensor([math.exp(-1.0)], dtype=torch.float64)
        assert torch.allclose(y_final, expected, rtol=1e-9)

    def test_convergence_order(self):
        """Halving dt reduces the error about 16 times"""
        y0 = torch.tensor([1.0], dtype=torch.float64)
        exact = math.exp(-1.0)

        y_coarse, _ = runge_kutta_4(lambda t, y: -y, y0, (0.0, 1.0), dt=0.1)
        y_fine, _ = runge_kutta_4(lambda t, y: -y, y0, (0.0, 1.0), dt=0.05)

        ratio = abs(y_coarse.item() - exact) / abs(y_fine.item() - exact)
        assert 12 < ratio < 20

    def test_lands_on_t1(self):
        """Steps are shortened so the grid ends exactly at t1"""
        y0 = torch.tensor([1.0], dtype=torch.float64)

        _, interp = runge_kutta_4(lambda t, y: -y, y0, (0.0, 1.0), dt=0.3)

        assert isinstance(interp, HermiteInterpolant)
        assert interp.t_points[-1].item() == 1.0
        assert len(interp.t_points) == 5

    def test_polynomial_exact(self):
        """dy/dt = 3t^2 is integrated exactly"""
        y0 = torch.zeros(1, dtype=torch.float64)

        y_final, interp = runge_kutta_4(
            lambda t, y: 3 * t**2 * torch.ones_like(y), y0, (0.0, 2.0), dt=0.5
        )

        assert torch.allclose(
            y_final, torch.tensor([8.0], dtype=torch.float64), atol=1e-12
        )
        assert torch.allclose(
            interp(1.5), torch.tensor([3.375], dtype=torch.float64)
        )

    def test_gradient(self):
        """Reverse mode through fixed steps"""
        k = torch.tensor(1.0, dtype=torch.float64, requires_grad=True)
        y0 = torch.tensor([1.0], dtype=torch.float64)

        y_final, _ = runge_kutta_4(
            lambda t, y: -k * y, y0, (0.0, 1.0), dt=0.01
        )
        y_final.sum().backward()

        assert torch.allclose(
            k.grad,
            torch.tensor(-math.exp(-1.0), dtype=torch.float64),
            rtol=1e-7,
        )

    def test_requires_dt(self):
        """A fixed-step method needs a positive step"""
        y0 = torch.tensor([1.0], dtype=torch.float64)

        with pytest.raises(ValueError, match="positive dt"):
            runge_kutta_4(lambda t, y: -y, y0, (0.0, 1.0), dt=None)
        with pytest.raises(ValueError, match="positive dt"):
            runge_kutta_4(lambda t, y: -y, y0, (0.0, 1.0), dt=-0.1)

    def test_backward_span_rejected(self):
        """t1 < t0 is rejected"""
        y0 = torch.tensor([1.0], dtype=torch.float64)

        with pytest.raises(ValueError, match="increasing"):
            runge_kutta_4(lambda t, y: -y, y0, (1.0, 0.0), dt=0.1)

    def test_max_steps(self):
        """The step count is checked before integrating"""
        y0 = torch.tensor([1.0], dtype=torch.float64)

        with pytest.raises(MaxStepsExceeded):
            runge_kutta_4(
                lambda t, y: -y, y0, (0.0, 10.0), dt=0.001, max_steps=100
            )

    def test_ignores_tolerances(self):
        """Adaptive solver options are accepted and ignored"""
        y0 = torch.tensor([1.0], dtype=torch.float64)

        y_a, _ = runge_kutta_4(lambda t, y: -y, y0, (0.0, 1.0), dt=0.1)
        y_b, _ = runge_kutta_4(
            lambda t, y: -y, y0, (0.0, 1.0), dt=0.1, rtol=1e-3, atol=1e-3
        )

        assert torch.equal(y_a, y_b)
