import pytest
import torch
import torch.autograd.forward_ad as fwAD

from torchsensitivity.ordinary_differential_equation import (
    ConvergenceError,
    newton_solve,
)


class TestNewtonSolve:
    def test_simple_root(self):
        """Find root of f(x) = x^2 - 2 => x = sqrt(2)"""

        def f(x):
            return x**2 - 2

        x0 = torch.tensor([1.0], dtype=torch.float64)
        x_root, converged = newton_solve(f, x0, tol=1e-10, max_iter=50)

        expected = torch.sqrt(torch.tensor([2.0], dtype=torch.float64))
        assert converged
        assert torch.allclose(x_root, expected, atol=1e-8)

    def test_multidimensional(self):
        """Find root of [x^2 + y - 1, x + y^2 - 1] => x = y = 0.6180..."""

        def f(z):
            x, y = z[0], z[1]
            return torch.stack([x**2 + y - 1, x + y**2 - 1])

        # (0.5, 0.5) has a singular Jacobian
        z0 = torch.tensor([0.6, 0.7], dtype=torch.float64)
        z_root, converged = newton_solve(f, z0, tol=1e-10, max_iter=50)

        assert converged
        assert torch.allclose(
            f(z_root), torch.zeros(2, dtype=torch.float64), atol=1e-8
        )

    def test_convergence_failure(self):
        """Should not converge with too few iterations"""

        def f(x):
            return x**2 - 2

        x0 = torch.tensor([100.0], dtype=torch.float64)
        _, converged = newton_solve(f, x0, tol=1e-10, max_iter=2, throw=False)

        assert not converged

    def test_convergence_failure_raises(self):
        """By default a failed iteration raises"""

        def f(x):
            return x**2 - 2

        x0 = torch.tensor([100.0], dtype=torch.float64)
        with pytest.raises(ConvergenceError, match="did not converge"):
            newton_solve(f, x0, tol=1e-10, max_iter=2)

    def test_singular_jacobian(self):
        """x^2 + 1 has a zero derivative at the initial guess"""

        def f(x):
            return x**2 + 1

        x0 = torch.tensor([0.0], dtype=torch.float64)
        with pytest.raises(ConvergenceError, match="Singular"):
            newton_solve(f, x0)

        _, converged = newton_solve(f, x0, throw=False)
        assert not converged

    def test_differentiable_through_args(self):
        """Gradients flow to the extra arguments via the final step"""
        a = torch.tensor([2.0], dtype=torch.float64, requires_grad=True)

        def f(x, a):
            return x**2 - a

        x0 = torch.tensor([1.0], dtype=torch.float64)
        x_root, _ = newton_solve(f, x0, args=(a,), tol=1e-12, max_iter=50)

        x_root.sum().backward()

        # x_root = sqrt(a), so d(x_root)/da = 1/(2*sqrt(a))
        expected_grad = 1 / (2 * torch.sqrt(a.detach()))
        assert torch.allclose(a.grad, expected_grad, rtol=1e-8)

    def test_differentiable_through_closure(self):
        """Gradients flow to tensors the residual closes over"""
        a = torch.tensor([3.0], dtype=torch.float64, requires_grad=True)

        def f(x):
            return x**3 - a

        x0 = torch.tensor([1.0], dtype=torch.float64)
        x_root, _ = newton_solve(f, x0, tol=1e-12, max_iter=50)
        x_root.sum().backward()

        # d(a^(1/3))/da = a^(-2/3) / 3
        expected_grad = a.detach() ** (-2.0 / 3.0) / 3
        assert torch.allclose(a.grad, expected_grad, rtol=1e-8)

    def test_forward_mode(self):
        """Forward mode tangents of the arguments reach the root"""
        x0 = torch.tensor([1.0], dtype=torch.float64)

        with fwAD.dual_level():
            a = fwAD.make_dual(
                torch.tensor([4.0], dtype=torch.float64),
                torch.tensor([1.0], dtype=torch.float64),
            )
            x_root, _ = newton_solve(
                lambda x, a: x**2 - a, x0, args=(a,), tol=1e-12
            )
            primal, tangent = fwAD.unpack_dual(x_root)
            primal, tangent = primal.clone(), tangent.clone()

        assert torch.allclose(
            primal, torch.tensor([2.0], dtype=torch.float64)
        )
        assert torch.allclose(
            tangent, torch.tensor([0.25], dtype=torch.float64)
        )

    def test_no_gradient_inputs(self):
        """Without tracked inputs the root is returned as is"""

        def f(x):
            return x**2 - 9

        x0 = torch.tensor([2.0], dtype=torch.float64)
        x_root, converged = newton_solve(f, x0)

        assert converged
        assert not x_root.requires_grad
        assert torch.allclose(
            x_root, torch.tensor([3.0], dtype=torch.float64)
        )
