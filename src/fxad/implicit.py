"""Functions defined implicitly by a residual ``F(z, p1, ..., pn) = 0``."""

from __future__ import annotations

import logging
from typing import Any

import numpy as np

from fxad.dispatch import Representation
from fxad.errors import EvaluationError, ShapeError, UnsupportedOperationError
from fxad.function import Function
from fxad.linsol import LinearSolver, SuperLUSolver
from fxad.options import FunctionOptions, ImplicitOptions
from fxad.slots import unvec, vec

logger = logging.getLogger(__name__)


class ImplicitFunction(Function):
    """Solution ``z(p1, ..., pn)`` of a residual equation, found by Newton's method.

    The inputs are the residual's inputs ``1..n``;
    the single output is ``z``, the residual's input 0.
    Output 0 of the residual is driven to zero, other residual outputs are ignored.
    The current content of the output buffer is the initial guess,
    so repeated evaluations warm start from the previous solution.

    Sensitivities follow from the implicit function theorem::

        dz = -(dF/dz)^-1 (dF/dp) dp
        pbar = -(dF/dp)^T (dF/dz)^-T zbar

    Args:
        residual: Function whose input 0 (the unknown) and output 0
            are columns of equal length.
        solver: `LinearSolver` subclass used for ``dF/dz``.
        options: Function options.
        implicit_options: Newton iteration settings.
    """

    representations = frozenset({Representation.NUMERIC})

    def __init__(
        self,
        residual: Function,
        solver: type[LinearSolver] = SuperLUSolver,
        options: FunctionOptions | dict[str, Any] | None = None,
        implicit_options: ImplicitOptions | None = None,
    ) -> None:
        if residual.n_in < 1 or residual.n_out < 1:
            msg = "The residual needs the unknown as input 0 and the residual as output 0"
            raise ShapeError(msg)
        unknown = residual._input_sparsity[0]
        value = residual._output_sparsity[0]
        if not (unknown.is_column and value.is_column and unknown.nrow == value.nrow):
            msg = (
                f"The unknown and the residual must be columns of equal length, "
                f"got {unknown.shape} and {value.shape}"
            )
            raise ShapeError(msg)
        self.residual = residual
        self.solver = solver
        self.implicit_options = implicit_options or ImplicitOptions()
        super().__init__(residual._input_sparsity[1:], [unknown], options)
        self._linsol: LinearSolver | None = None

    @property
    def has_forward(self) -> bool:
        return self.residual.has_forward

    @property
    def has_adjoint(self) -> bool:
        return self.residual.has_adjoint and self.solver.supports_transpose

    def _init(self) -> None:
        residual = self.residual.init()
        self._newton = residual.jacobian_blocks([(None, 0), (0, 0)]).init()
        self._pattern = residual.jac_sparsity(0, 0)
        self._linsol = self.solver(self._pattern)
        residual.request_directions(1, 1)

    def _linearize(self, z: np.ndarray, args: list) -> tuple[np.ndarray, np.ndarray]:
        """Residual value and Jacobian ``dF/dz`` at ``(z, args)``."""
        residual_value, jac = self._newton(z, *args)
        return residual_value, jac

    def _factorize(self, jac: np.ndarray) -> None:
        pattern = self._pattern
        if not self._linsol.factorize(jac[pattern.row, pattern.cols]):
            msg = "dF/dz is singular"
            raise EvaluationError(Representation.NUMERIC, 0, msg)

    def _evaluate(self, rep, args):
        opts = self.implicit_options
        z = self.output(0).copy()
        for n_iter in range(opts.max_iter + 1):
            residual_value, jac = self._linearize(z, args)
            norm = float(np.max(np.abs(residual_value), initial=0.0))
            if norm <= opts.abstol:
                logger.debug(
                    "'%s' converged after %d Newton steps, |F| = %.3g",
                    self.name,
                    n_iter,
                    norm,
                )
                return [z]
            if n_iter == opts.max_iter:
                break
            self._factorize(jac)
            step = vec(residual_value).copy()
            self._linsol.solve(step)
            z = z - unvec(step, z.shape)
        msg = f"Newton iterations did not converge in {opts.max_iter} steps, |F| = {norm:.3g}"
        raise EvaluationError(rep, 0, msg)

    def _prepare(self, args: list, res: list) -> None:
        """Factorize ``dF/dz`` at the solution and load it into the residual."""
        z = res[0]
        _, jac = self._linearize(z, args)
        self._factorize(jac)
        residual = self.residual
        residual.input(0)[...] = z
        for i, arg in enumerate(args):
            residual.input(i + 1)[...] = arg

    def _forward(self, rep, args, res, fseeds):
        self._prepare(args, res)
        residual = self.residual
        shape = res[0].shape
        fsens = []
        for seeds in fseeds:
            residual.fwd_seed(0, 0)[...] = 0.0
            for i, seed in enumerate(seeds):
                residual.fwd_seed(i + 1, 0)[...] = seed
            residual.evaluate(1, 0)
            rhs = vec(residual.fwd_sens(0, 0)).copy()
            self._linsol.solve(rhs)
            fsens.append([-unvec(rhs, shape)])
        return fsens

    def _adjoint(self, rep, args, res, aseeds):
        if not self._linsol.supports_transpose:
            msg = f"{self.solver.__name__} cannot solve the transposed system for adjoints"
            raise UnsupportedOperationError(msg)
        self._prepare(args, res)
        residual = self.residual
        asens = []
        for (seed,) in aseeds:
            lam = vec(seed).copy()
            self._linsol.solve(lam, transpose=True)
            for j in range(residual.n_out):
                residual.adj_seed(j, 0)[...] = 0.0
            residual.adj_seed(0, 0)[...] = -unvec(lam, residual._output_sparsity[0].shape)
            residual.evaluate(0, 1)
            asens.append([residual.get_adj_sens(i + 1, 0) for i in range(self.n_in)])
        return asens
