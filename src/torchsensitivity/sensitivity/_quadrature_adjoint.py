"""Quadrature adjoint: ``lambda`` first, the parameter gradient afterwards."""

import torch

from torchsensitivity.quadrature import quad_info
from torchsensitivity.sensitivity._adjoint import AdjointEngine


class QuadratureAdjointEngine(AdjointEngine):
    """
    Integrate ``lambda`` alone backward, then ``mu`` by Gauss-Kronrod.

    The parameter gradient of a segment is ``int_a^b J_p^T lambda dt``,
    evaluated with the dense outputs of both the forward state and the
    backward adjoint.
    """

    def backward_segment(self, index, lam, mu):
        segment = self.trajectory.segments[index]
        if not lam.any():
            return lam, mu

        interp = segment.interp
        backend = self.backend
        rhs = segment.rhs
        p = self.p
        a, b = segment.t_start, segment.t_end

        def adjoint_rhs(s, lam_):
            t = b - s
            return backend.vjp(rhs, interp(t), p, t, lam_)[1]

        with torch.no_grad():
            lam_a, lam_interp = self.solver(
                adjoint_rhs, lam, (0.0, b - a), **self.solver_options
            )

            if p.numel() == 0:
                return lam_a, mu

            def integrand(nodes):
                return torch.stack(
                    [
                        backend.vjp(rhs, interp(t), p, t, lam_interp(b - t))[2]
                        for t in nodes
                    ]
                )

            integral, _, _ = quad_info(
                integrand,
                torch.tensor(a, dtype=p.dtype, device=p.device),
                torch.tensor(b, dtype=p.dtype, device=p.device),
                epsabs=self.sensealg.abstol,
                epsrel=self.sensealg.reltol,
            )
        return lam_a, mu + integral
