import pytest
import torch

from torchsensitivity.sensitivity import (
    ConfigurationError,
    DAEProblem,
    ForwardLSS,
    InterpolatingAdjoint,
    ODEProblem,
    PresetTimeCallback,
    ShadowingResult,
    shadowing_sensitivity,
)

DTYPE = torch.float64


def _relaxation(u0=0.5, p=(2.0,), T=100.0, **kwargs):
    """u' = 1 - k u relaxes to 1 / k."""
    return ODEProblem(
        lambda u, p, t: 1.0 - p[0] * u,
        torch.tensor([u0], dtype=DTYPE),
        (0.0, T),
        torch.tensor(p, dtype=DTYPE),
        **kwargs,
    )


def _state(u, p, t):
    return u[0]


class TestLeastSquaresShadowing:
    def test_equilibrium(self):
        """d<u>/dk = -1 / k^2 at the fixed point"""
        result = shadowing_sensitivity(_relaxation(), _state)

        assert isinstance(result, ShadowingResult)
        assert abs(result.average.item() - 0.5) < 1e-6
        assert result.gradient.shape == (1,)
        assert abs(result.gradient.item() + 0.25) < 0.03 * 0.25

    def test_transient_discarded(self):
        """A transient start does not bias the average"""
        problem = _relaxation(u0=3.0, T=60.0)

        result = shadowing_sensitivity(
            problem, _state, ForwardLSS(t_transient=10.0, n_points=100)
        )

        assert abs(result.average.item() - 0.5) < 1e-6
        assert abs(result.gradient.item() + 0.25) < 0.03 * 0.25
        assert result.t[0].item() == pytest.approx(10.0)

    def test_several_parameters(self):
        """u' = a - b u has <u> = a / b"""
        problem = ODEProblem(
            lambda u, p, t: p[0] - p[1] * u,
            torch.tensor([0.5], dtype=DTYPE),
            (0.0, 100.0),
            torch.tensor([1.0, 2.0], dtype=DTYPE),
        )

        result = shadowing_sensitivity(problem, _state)

        expected = torch.tensor([0.5, -0.25], dtype=DTYPE)
        assert torch.allclose(result.gradient, expected, rtol=0.03)

    def test_direct_parameter_dependence(self):
        """Objectives depending on p add their direct derivative"""
        result = shadowing_sensitivity(
            _relaxation(), lambda u, p, t: p[0] * u[0]
        )

        # <k u> = 1 for every k
        assert abs(result.average.item() - 1.0) < 1e-6
        assert abs(result.gradient.item()) < 0.03

    def test_result_shapes(self):
        """Tangents are reported per time point and parameter"""
        result = shadowing_sensitivity(
            _relaxation(), _state, ForwardLSS(n_points=50)
        )

        assert result.t.shape == (51,)
        assert result.v.shape == (51, 1, 1)
        assert result.eta.shape == (50, 1)


class TestShadowingConfiguration:
    def test_needs_parameters(self):
        """There is nothing to differentiate without parameters"""
        problem = ODEProblem(
            lambda u, p, t: -u, torch.tensor([1.0], dtype=DTYPE), (0.0, 1.0)
        )

        with pytest.raises(ConfigurationError, match="has none"):
            shadowing_sensitivity(problem, _state)

    def test_rejects_callbacks(self):
        """Shadowing needs smooth dynamics"""
        dose = PresetTimeCallback([0.5], lambda u, p, t: u + 1.0)

        with pytest.raises(ConfigurationError, match="callbacks"):
            shadowing_sensitivity(_relaxation(callbacks=[dose]), _state)

    def test_rejects_dae(self):
        """Only ODEs are shadowed"""
        problem = DAEProblem(
            lambda x, z, p, t: -z,
            lambda x, z, p, t: z - p[0] * x,
            torch.tensor([1.0, 1.0], dtype=DTYPE),
            (0.0, 1.0),
            torch.tensor([1.0], dtype=DTYPE),
        )

        with pytest.raises(ConfigurationError, match="DAE"):
            shadowing_sensitivity(problem, _state)

    def test_rejects_other_algorithms(self):
        """Only shadowing algorithms are accepted"""
        with pytest.raises(ConfigurationError, match="shadowing algorithm"):
            shadowing_sensitivity(
                _relaxation(), _state, InterpolatingAdjoint()
            )

    def test_transient_too_long(self):
        """The transient must leave part of the span"""
        with pytest.raises(ConfigurationError, match="t_transient"):
            shadowing_sensitivity(
                _relaxation(T=5.0), _state, ForwardLSS(t_transient=5.0)
            )

    def test_too_few_points(self):
        """At least two intervals are needed"""
        with pytest.raises(ConfigurationError, match="n_points"):
            shadowing_sensitivity(
                _relaxation(), _state, ForwardLSS(n_points=1)
            )
