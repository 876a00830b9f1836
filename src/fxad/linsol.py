"""Direct linear solvers for square systems with a fixed sparsity pattern.

A solver is built once per pattern, then factorized and solved repeatedly
as the nonzero values change.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import ClassVar

import numpy as np
import scipy.linalg as la
import scipy.sparse.linalg as sla
from numpy.typing import NDArray

from fxad.errors import DimensionMismatchError, ShapeError, UnsupportedOperationError
from fxad.pattern import SparsityPattern

logger = logging.getLogger(__name__)


class LinearSolver(ABC):
    """Factorize-then-solve interface for ``A x = b``.

    Args:
        sparsity: Pattern of ``A``; must be square.

    Attributes:
        supports_transpose: Whether ``solve(..., transpose=True)`` is available.
        supports_multiple_rhs: Whether ``solve`` accepts ``nrhs > 1``.
    """

    supports_transpose: ClassVar[bool] = True
    supports_multiple_rhs: ClassVar[bool] = True

    def __init__(self, sparsity: SparsityPattern) -> None:
        if sparsity.nrow != sparsity.ncol:
            msg = f"Linear solvers need a square pattern, got {sparsity.shape}"
            raise ShapeError(msg)
        self.sparsity = sparsity
        self.factorized = False
        self.initialize_structure(sparsity.row, sparsity.colind)

    @property
    def n(self) -> int:
        return self.sparsity.nrow

    def initialize_structure(self, row: NDArray[np.int64], colind: NDArray[np.int64]) -> None:
        """Prepare for matrices with the given compressed column structure."""
        self._row = row
        self._colind = colind

    @abstractmethod
    def factorize(self, values: NDArray) -> bool:
        """Factorize ``A`` from its nonzeros in pattern order.

        Returns:
            False if the matrix is numerically singular.
        """

    def solve(self, rhs: NDArray[np.float64], nrhs: int = 1, transpose: bool = False) -> bool:
        """Overwrite ``rhs`` with the solution of ``A x = rhs`` (or ``A^T x = rhs``).

        Args:
            rhs: Writable array of shape ``(n,)`` or ``(n, nrhs)``.
            nrhs: Number of right-hand sides.
            transpose: Solve with the transposed matrix.

        Returns:
            False if no factorization is available.
        """
        if transpose and not self.supports_transpose:
            msg = f"{type(self).__name__} cannot solve transposed systems"
            raise UnsupportedOperationError(msg)
        if nrhs > 1 and not self.supports_multiple_rhs:
            msg = f"{type(self).__name__} solves one right-hand side at a time"
            raise UnsupportedOperationError(msg)
        expected = (self.n,) if rhs.ndim == 1 and nrhs == 1 else (self.n, nrhs)
        if rhs.shape != expected:
            msg = f"Right-hand side must have shape {expected}, got {rhs.shape}"
            raise DimensionMismatchError(msg)
        if not self.factorized:
            logger.warning("%s.solve called before a successful factorize", type(self).__name__)
            return False
        rhs[...] = self._solve(rhs, transpose)
        return True

    @abstractmethod
    def _solve(self, rhs: NDArray[np.float64], transpose: bool) -> NDArray[np.float64]:
        """Return the solution for the validated right-hand side."""


class SuperLUSolver(LinearSolver):
    """Sparse LU factorization through SuperLU (``scipy.sparse.linalg.splu``)."""

    def factorize(self, values):
        matrix = self.sparsity.to_csc(np.asarray(values, dtype=np.float64))
        try:
            self._lu = sla.splu(matrix)
        except RuntimeError as exc:
            logger.warning("SuperLU factorization failed: %s", exc)
            self.factorized = False
            return False
        self.factorized = True
        return True

    def _solve(self, rhs, transpose):
        return self._lu.solve(rhs, trans="T" if transpose else "N")


class DenseLUSolver(LinearSolver):
    """Dense LU factorization with partial pivoting (``scipy.linalg.lu_factor``).

    Suited to small or nearly dense systems.
    """

    def factorize(self, values):
        matrix = self.sparsity.to_csc(np.asarray(values, dtype=np.float64)).toarray()
        lu, piv = la.lu_factor(matrix, check_finite=False)
        if not np.all(np.isfinite(lu)) or np.any(np.diag(lu) == 0.0):
            logger.warning("Dense LU factorization is singular")
            self.factorized = False
            return False
        self._lu = (lu, piv)
        self.factorized = True
        return True

    def _solve(self, rhs, transpose):
        return la.lu_solve(self._lu, rhs, trans=1 if transpose else 0, check_finite=False)


class SingleRhsSolver(SuperLUSolver):
    """SuperLU restricted to untransposed single right-hand-side solves.

    Models backends with fewer capabilities.
    """

    supports_transpose = False
    supports_multiple_rhs = False
