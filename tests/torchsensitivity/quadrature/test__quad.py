import math

import pytest
import scipy.integrate
import torch

from torchsensitivity.ordinary_differential_equation import IntegrationError
from torchsensitivity.quadrature import (
    GaussKronrod,
    QuadratureError,
    QuadratureWarning,
    gauss_kronrod_nodes_weights,
    quad,
    quad_info,
)


class TestGaussKronrodNodes:
    @pytest.mark.parametrize("order", [15, 21])
    def test_weights_sum_to_two(self, order):
        """Both embedded rules integrate constants exactly on [-1, 1]"""
        nodes, k_weights, g_weights, g_indices = gauss_kronrod_nodes_weights(
            order
        )

        assert nodes.shape == (order,)
        assert g_weights.shape == (order // 2,)
        assert torch.allclose(
            k_weights.sum(), torch.tensor(2.0, dtype=torch.float64)
        )
        assert torch.allclose(
            g_weights.sum(), torch.tensor(2.0, dtype=torch.float64)
        )
        assert torch.all(nodes[1:] > nodes[:-1])

    @pytest.mark.parametrize("order", [15, 21])
    def test_polynomial_exactness(self, order):
        """The Gauss rule is exact up to degree 2G - 1"""
        nodes, _, g_weights, g_indices = gauss_kronrod_nodes_weights(order)
        degree = 2 * (order // 2) - 1

        integral = (g_weights * nodes[g_indices] ** (degree - 1)).sum()

        # degree - 1 is even
        expected = 2.0 / degree
        assert abs(integral.item() - expected) < 1e-13

    def test_invalid_order(self):
        """Only 15 and 21 point rules exist"""
        with pytest.raises(ValueError, match="15 or 21"):
            gauss_kronrod_nodes_weights(11)
        with pytest.raises(ValueError, match="15 or 21"):
            GaussKronrod(11)


class TestQuad:
    def test_sine(self):
        """Integral of sin over [0, pi] is 2"""
        result = quad(torch.sin, 0.0, math.pi)

        assert abs(result.item() - 2.0) < 1e-12

    def test_against_scipy(self):
        """Peaked integrand matches scipy.integrate.quad"""

        def f(x):
            return 1.0 / (1e-2 + (x - 0.3) ** 2)

        result = quad(f, 0.0, 1.0)
        expected, _ = scipy.integrate.quad(
            lambda x: 1.0 / (1e-2 + (x - 0.3) ** 2), 0.0, 1.0
        )

        assert abs(result.item() - expected) < 1e-7 * abs(expected)

    def test_vector_valued(self):
        """Vector integrands are integrated componentwise"""

        def f(x):
            return torch.stack([x, x**2, torch.exp(x)], dim=-1)

        result = quad(f, 0.0, 1.0)

        expected = torch.tensor(
            [0.5, 1.0 / 3.0, math.e - 1.0], dtype=torch.float64
        )
        assert result.shape == (3,)
        assert torch.allclose(result, expected, atol=1e-12)

    def test_tensor_bounds(self):
        """Tensor bounds fix the dtype of the nodes"""
        a = torch.tensor(0.0, dtype=torch.float64)
        b = torch.tensor(2.0, dtype=torch.float64)

        result = quad(lambda x: x**3, a, b)

        assert result.dtype == torch.float64
        assert abs(result.item() - 4.0) < 1e-12

    def test_gradient_through_closure(self):
        """Parameters captured by the integrand receive gradients"""
        k = torch.tensor(2.0, dtype=torch.float64, requires_grad=True)

        result = quad(lambda x: torch.exp(-k * x), 0.0, 1.0)
        result.backward()

        # d/dk (1 - exp(-k)) / k
        value = math.exp(-2.0)
        expected = (2.0 * value - (1.0 - value)) / 4.0
        assert abs(k.grad.item() - expected) < 1e-10

    def test_failure_raises(self):
        """Exhausting the subdivision limit raises"""
        with pytest.raises(QuadratureError, match="failed to converge"):
            quad(lambda x: torch.sin(200.0 * x), 0.0, 10.0, limit=2)

        assert issubclass(QuadratureError, IntegrationError)


class TestQuadInfo:
    def test_info(self):
        """Diagnostics report evaluations and convergence"""
        result, error, info = quad_info(torch.exp, 0.0, 1.0)

        assert info["converged"]
        assert info["nsubintervals"] >= 1
        assert info["neval"] >= 21
        assert error.item() < 1e-10
        assert abs(result.item() - (math.e - 1.0)) < 1e-12

    def test_warns_without_convergence(self):
        """quad_info warns instead of raising"""
        with pytest.warns(QuadratureWarning):
            _, _, info = quad_info(
                lambda x: torch.sin(200.0 * x), 0.0, 10.0, limit=2
            )

        assert not info["converged"]

    def test_adaptive_subdivision(self):
        """A near-singular integrand needs several subintervals"""
        _, _, info = quad_info(lambda x: torch.sqrt(x), 0.0, 1.0, order=15)

        assert info["nsubintervals"] > 1
