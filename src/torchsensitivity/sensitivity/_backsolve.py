"""Backsolve adjoint: the state is re-integrated backward with the adjoint."""

import warnings

import torch

from torchsensitivity.sensitivity._adjoint import AdjointEngine
from torchsensitivity.sensitivity._exceptions import (
    BacksolveAdjointWarning,
    NumericalInstabilityError,
)


class BacksolveAdjointEngine(AdjointEngine):
    """
    Integrate ``[y, lambda, mu]`` backward from the final state.

    The forward dense output is never read. The backward state is reset
    to the recorded forward state after every event, and at every
    boundary when checkpointing. The drift between the reconstructed and
    the recorded state is measured wherever a recorded state is
    available to compare.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._y_back = None
        self._warned = False

    def backward(self, grad_outputs):
        self._y_back = None
        self._warned = False
        return super().backward(grad_outputs)

    def _check_drift(self, y_back, y_record, t):
        drift = (y_back - y_record).norm().item() / max(
            1.0, y_record.norm().item()
        )
        tolerance = self.sensealg.divergence_tolerance
        if tolerance is not None and not drift <= tolerance:
            raise NumericalInstabilityError(
                f"BacksolveAdjoint reconstruction error {drift:.2e} at "
                f"t={t:.4f} exceeds divergence_tolerance={tolerance:.2e}. "
                f"Use InterpolatingAdjoint or checkpointing instead."
            )
        if drift > 0.1 and not self._warned:
            warnings.warn(
                f"BacksolveAdjoint reconstruction error: {drift:.2e}. "
                f"This may indicate chaotic or unstable dynamics. "
                f"Consider using InterpolatingAdjoint or checkpointing "
                f"instead.",
                BacksolveAdjointWarning,
            )
            self._warned = True

    def backward_segment(self, index, lam, mu):
        trajectory = self.trajectory
        segment = trajectory.segments[index]
        end = trajectory.boundaries[index + 1]

        reset = (
            self._y_back is None
            or bool(end.events)
            or self.sensealg.checkpointing
        )
        y = segment.y_end[0] if reset else self._y_back

        backend = self.backend
        rhs = segment.rhs
        p = self.p
        n = y.numel()
        b = segment.t_end

        def augmented_rhs(s, z):
            t = b - s
            f, vjp_y, vjp_p = backend.vjp(rhs, z[:n], p, t, z[n : 2 * n])
            return torch.cat([-f, vjp_y, vjp_p])

        with torch.no_grad():
            z, _ = self.solver(
                augmented_rhs,
                torch.cat([y, lam, mu]),
                (0.0, b - segment.t_start),
                **self.solver_options,
            )
        self._y_back = z[:n]

        if self.sensealg.checkpointing or index == 0:
            self._check_drift(
                self._y_back, segment.y_start[0], segment.t_start
            )
        return z[n : 2 * n], z[2 * n :]
