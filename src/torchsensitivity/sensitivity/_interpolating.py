"""Interpolating adjoint: the state along a segment comes from dense output."""

import torch

from torchsensitivity.sensitivity._adjoint import AdjointEngine
from torchsensitivity.sensitivity._trajectory import rows_rhs


class InterpolatingAdjointEngine(AdjointEngine):
    """
    Integrate ``[lambda, mu]`` backward, reading ``y(t)`` from interpolants.

    With checkpointing the forward pass keeps boundary states only and each
    segment is re-solved forward from its start when the backward pass
    reaches it.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.keep_interpolants = not self.sensealg.checkpointing

    def _interpolant(self, segment):
        if segment.interp is not None:
            return segment.interp
        with torch.no_grad():
            _, interp = self.solver(
                rows_rhs(segment.rhs, self.p.reshape(1, -1)),
                segment.y_start.reshape(-1),
                (segment.t_start, segment.t_end),
                **self.solver_options,
            )
        return interp

    def backward_segment(self, index, lam, mu):
        segment = self.trajectory.segments[index]
        if not lam.any():
            return lam, mu

        interp = self._interpolant(segment)
        backend = self.backend
        rhs = segment.rhs
        p = self.p
        n = lam.numel()
        b = segment.t_end

        def adjoint_rhs(s, z):
            t = b - s
            _, vjp_y, vjp_p = backend.vjp(rhs, interp(t), p, t, z[:n])
            return torch.cat([vjp_y, vjp_p])

        with torch.no_grad():
            z, _ = self.solver(
                adjoint_rhs,
                torch.cat([lam, mu]),
                (0.0, b - segment.t_start),
                **self.solver_options,
            )
        return z[:n], z[n:]
