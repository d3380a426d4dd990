import math

import pytest
import torch

from torchsensitivity.ordinary_differential_equation import ODESolverError
from torchsensitivity.sensitivity import (
    AdjointDivergedError,
    AdjointStabilityWarning,
    AutogradAdjoint,
    BacksolveAdjoint,
    BacksolveAdjointWarning,
    ConfigurationError,
    InterpolatingAdjoint,
    InterpolationAccuracyWarning,
    NumericalInstabilityError,
    ODEProblem,
    SensitivityError,
    UpstreamSolverError,
    gradient,
)

DTYPE = torch.float64


def _exponential(rate, T):
    return ODEProblem(
        lambda u, p, t: p[0] * u,
        torch.tensor([1.0], dtype=DTYPE),
        (0.0, T),
        torch.tensor([rate], dtype=DTYPE),
    )


def _loss(solution):
    return solution.u[-1].sum()


class TestAdjointStability:
    def test_growth_warns(self):
        """An adjoint growing faster than e per unit time warns"""
        with pytest.warns(AdjointStabilityWarning, match="growing rapidly"):
            _, _, grad_p = gradient(
                _exponential(3.0, 2.0), _loss, InterpolatingAdjoint()
            )

        # d/dk exp(k T) = T exp(k T)
        assert torch.allclose(
            grad_p,
            torch.tensor([2.0 * math.exp(6.0)], dtype=DTYPE),
            rtol=1e-4,
        )

    def test_decay_does_not_warn(self, recwarn):
        """Decaying adjoints are quiet"""
        gradient(_exponential(-3.0, 2.0), _loss, InterpolatingAdjoint())

        assert not any(
            issubclass(w.category, AdjointStabilityWarning) for w in recwarn
        )

    def test_divergence_raises(self):
        """Adjoints beyond 1e30 abort the backward pass"""
        with pytest.raises(AdjointDivergedError) as info:
            gradient(_exponential(40.0, 2.0), _loss, InterpolatingAdjoint())

        assert info.value.t == 0.0
        assert info.value.norm > 1e30
        assert "Adjoint diverged" in str(info.value)

    def test_discrete_method_unaffected(self):
        """Reverse mode through the solver has no adjoint state to check"""
        _, _, grad_p = gradient(
            _exponential(3.0, 2.0), _loss, AutogradAdjoint()
        )

        assert torch.allclose(
            grad_p,
            torch.tensor([2.0 * math.exp(6.0)], dtype=DTYPE),
            rtol=1e-4,
        )


class TestBacksolveDrift:
    @staticmethod
    def _stiff_decay():
        """Backward reconstruction of u' = -20 u amplifies step errors"""
        return _exponential(-20.0, 3.0)

    FIXED_STEP = {"solver": "runge_kutta_4", "dt": 0.1}

    def test_drift_warns(self):
        """A drifting reconstruction warns"""
        with pytest.warns(BacksolveAdjointWarning, match="reconstruction"):
            gradient(
                self._stiff_decay(),
                _loss,
                BacksolveAdjoint(),
                **self.FIXED_STEP,
            )

    def test_drift_above_tolerance_raises(self):
        """divergence_tolerance turns the drift into an error"""
        with pytest.raises(NumericalInstabilityError, match="exceeds"):
            gradient(
                self._stiff_decay(),
                _loss,
                BacksolveAdjoint(divergence_tolerance=1e-3),
                **self.FIXED_STEP,
            )

    def test_small_drift_quiet(self, recwarn):
        """Accurate reconstructions pass the tolerance"""
        gradient(
            _exponential(-1.0, 1.0),
            _loss,
            BacksolveAdjoint(divergence_tolerance=1e-4),
            rtol=1e-10,
            atol=1e-12,
        )

        assert not any(
            issubclass(w.category, BacksolveAdjointWarning) for w in recwarn
        )


class TestDenseOutputAccuracy:
    def test_fixed_step_interpolation_warns(self):
        """Adjoints warn when reading uncontrolled dense output"""
        with pytest.warns(InterpolationAccuracyWarning):
            gradient(
                _exponential(-1.0, 1.0),
                _loss,
                InterpolatingAdjoint(),
                solver="runge_kutta_4",
                dt=0.05,
            )

    def test_backsolve_does_not_warn(self, recwarn):
        """Backsolve never reads dense output"""
        gradient(
            _exponential(-1.0, 1.0),
            _loss,
            BacksolveAdjoint(),
            solver="runge_kutta_4",
            dt=0.05,
        )

        assert not any(
            issubclass(w.category, InterpolationAccuracyWarning)
            for w in recwarn
        )


class TestExceptions:
    def test_hierarchy(self):
        """Errors share a base and keep their builtin meaning"""
        assert issubclass(ConfigurationError, SensitivityError)
        assert issubclass(ConfigurationError, ValueError)
        assert issubclass(NumericalInstabilityError, RuntimeError)
        assert issubclass(AdjointDivergedError, NumericalInstabilityError)
        assert UpstreamSolverError is ODESolverError

    def test_warnings_are_user_warnings(self):
        """Warnings can be filtered as UserWarning"""
        for category in (
            AdjointStabilityWarning,
            BacksolveAdjointWarning,
            InterpolationAccuracyWarning,
        ):
            assert issubclass(category, UserWarning)

    def test_diverged_message(self):
        """The time and norm are reported"""
        error = AdjointDivergedError(0.5, 1e31)

        assert error.t == 0.5
        assert error.norm == 1e31
        assert "t=0.5000" in str(error)
        assert "1.00e+31" in str(error)

    def test_solver_errors_propagate(self):
        """Solver failures reach the caller unchanged"""
        with pytest.raises(UpstreamSolverError):
            gradient(
                _exponential(-1.0, 1.0),
                _loss,
                InterpolatingAdjoint(),
                max_steps=2,
            )
