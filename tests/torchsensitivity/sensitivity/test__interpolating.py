import math

import torch

from torchsensitivity.sensitivity import (
    InterpolatingAdjoint,
    ODEProblem,
    gradient,
)
from torchsensitivity.sensitivity._interpolating import (
    InterpolatingAdjointEngine,
)

DTYPE = torch.float64
TOLERANCES = {"rtol": 1e-9, "atol": 1e-11}
SAVEAT = [0.0, 0.25, 0.5, 0.75, 1.0]


class CountingRHS:
    """Right-hand side counting the calls made without gradient tracking."""

    def __init__(self):
        self.untracked_calls = 0

    def __call__(self, u, p, t):
        if not torch.is_grad_enabled():
            self.untracked_calls += 1
        return -p[0] * u


def _problem(f):
    return ODEProblem(
        f,
        torch.tensor([1.0], dtype=DTYPE),
        (0.0, 1.0),
        torch.tensor([1.0], dtype=DTYPE),
    )


def _record_resolves(monkeypatch):
    resolved = []
    original = InterpolatingAdjointEngine._interpolant

    def recording(self, segment):
        if segment.interp is None:
            resolved.append((segment.t_start, segment.t_end))
        return original(self, segment)

    monkeypatch.setattr(InterpolatingAdjointEngine, "_interpolant", recording)
    return resolved


def _gradient(f, sensealg):
    return gradient(
        _problem(f),
        lambda sol: sol.u.sum(),
        sensealg,
        saveat=SAVEAT,
        **TOLERANCES,
    )


class TestCheckpointing:
    def test_each_interval_resolved_once(self, monkeypatch):
        """Checkpointed intervals are re-solved exactly once each"""
        resolved = _record_resolves(monkeypatch)

        _, grad_u0, grad_p = _gradient(
            CountingRHS(), InterpolatingAdjoint(checkpointing=True)
        )

        assert sorted(resolved) == list(zip(SAVEAT[:-1], SAVEAT[1:]))
        # sum_k exp(-t_k) and -sum_k t_k exp(-t_k)
        assert torch.allclose(
            grad_u0,
            torch.tensor([sum(math.exp(-t) for t in SAVEAT)], dtype=DTYPE),
            rtol=1e-6,
        )
        assert torch.allclose(
            grad_p,
            torch.tensor(
                [-sum(t * math.exp(-t) for t in SAVEAT)], dtype=DTYPE
            ),
            rtol=1e-6,
        )

    def test_dense_output_kept_without_checkpointing(self, monkeypatch):
        """Without checkpointing the forward interpolants are reused"""
        resolved = _record_resolves(monkeypatch)

        _gradient(CountingRHS(), InterpolatingAdjoint())

        assert resolved == []

    def test_at_most_two_forward_passes(self):
        """Re-solving costs at most one extra forward pass"""
        plain = CountingRHS()
        checkpointed = CountingRHS()

        _gradient(plain, InterpolatingAdjoint())
        _gradient(checkpointed, InterpolatingAdjoint(checkpointing=True))

        assert checkpointed.untracked_calls > plain.untracked_calls
        assert checkpointed.untracked_calls <= 2 * plain.untracked_calls
