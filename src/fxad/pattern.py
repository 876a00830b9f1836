"""Sparsity patterns shared by slots, Jacobian blocks and the propagation engine."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from functools import cached_property
from typing import Literal

import jax.numpy as jnp
import numpy as np
from jax.experimental.sparse import BCOO
from numpy.typing import NDArray
from scipy.sparse import csc_matrix

from fxad._display import colored_repr, sparsity_repr, sparsity_str
from fxad.errors import ShapeError


@dataclass(frozen=True, eq=False)
class SparsityPattern:
    """Structural nonzeros of a 2-D block in compressed column storage.

    Immutable once constructed: the index arrays are made read-only,
    so a pattern can be shared by reference between slots, caches and threads.

    Attributes:
        nrow: Number of rows.
        ncol: Number of columns.
        colind: Column pointers, shape ``(ncol + 1,)``.
            The nonzeros of column ``j`` are ``row[colind[j]:colind[j + 1]]``.
        row: Row index of every nonzero, shape ``(nnz,)``,
            sorted and unique within each column.
    """

    nrow: int
    ncol: int
    colind: NDArray[np.int64]
    row: NDArray[np.int64]

    def __post_init__(self) -> None:
        """Validate the compressed column structure and freeze the index arrays."""
        colind = np.array(self.colind, dtype=np.int64).ravel()
        row = np.array(self.row, dtype=np.int64).ravel()
        colind.setflags(write=False)
        row.setflags(write=False)
        object.__setattr__(self, "nrow", int(self.nrow))
        object.__setattr__(self, "ncol", int(self.ncol))
        object.__setattr__(self, "colind", colind)
        object.__setattr__(self, "row", row)

        if self.nrow < 0 or self.ncol < 0:
            msg = f"Pattern dimensions must be non-negative, got {self.shape}"
            raise ShapeError(msg)
        if len(colind) != self.ncol + 1:
            msg = f"colind must have length ncol + 1 = {self.ncol + 1}, got {len(colind)}"
            raise ShapeError(msg)
        if colind[0] != 0 or colind[-1] != len(row) or np.any(np.diff(colind) < 0):
            msg = "colind must be non-decreasing, start at 0 and end at nnz"
            raise ShapeError(msg)
        if len(row) and (row.min() < 0 or row.max() >= self.nrow):
            msg = f"Row indices out of range for {self.nrow} rows"
            raise ShapeError(msg)
        if len(row) > 1:
            ordered = (np.diff(row) > 0) | (np.diff(self.cols) != 0)
            if not np.all(ordered):
                msg = "Row indices must be sorted and unique within each column"
                raise ShapeError(msg)

    # Properties

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions ``(nrow, ncol)``."""
        return (self.nrow, self.ncol)

    @property
    def nnz(self) -> int:
        """Number of structural nonzeros."""
        return len(self.row)

    @property
    def m(self) -> int:
        return self.nrow

    @property
    def n(self) -> int:
        return self.ncol

    @property
    def numel(self) -> int:
        return self.nrow * self.ncol

    @property
    def density(self) -> float:
        """Fraction of structurally nonzero entries."""
        total = self.numel
        return self.nnz / total if total > 0 else 0.0

    @property
    def is_column(self) -> bool:
        return self.ncol == 1

    @property
    def is_scalar(self) -> bool:
        return self.shape == (1, 1)

    @property
    def is_dense(self) -> bool:
        return self.nnz == self.numel

    @property
    def rows(self) -> NDArray[np.int64]:
        """Row index of every nonzero (alias of ``row``)."""
        return self.row

    @cached_property
    def cols(self) -> NDArray[np.int64]:
        """Column index of every nonzero."""
        return np.repeat(np.arange(self.ncol, dtype=np.int64), np.diff(self.colind))

    @cached_property
    def nz_positions(self) -> NDArray[np.int64]:
        """Column-major linear position of every nonzero in the full matrix."""
        return self.row + self.cols * self.nrow

    @cached_property
    def col_to_rows(self) -> dict[int, list[int]]:
        """Mapping from column index to list of row indices with non-zeros.

        Used by the coloring algorithm to build the row conflict graph.
        """
        result: dict[int, list[int]] = defaultdict(list)
        for row, col in zip(self.row, self.cols, strict=True):
            result[int(col)].append(int(row))
        return dict(result)

    @cached_property
    def row_to_cols(self) -> dict[int, list[int]]:
        """Mapping from row index to list of column indices with non-zeros.

        Used by the coloring algorithm to build the column conflict graph.
        """
        result: dict[int, list[int]] = defaultdict(list)
        for row, col in zip(self.row, self.cols, strict=True):
            result[int(row)].append(int(col))
        return dict(result)

    # Constructors

    @classmethod
    def from_coordinates(
        cls,
        rows: NDArray[np.integer] | Sequence[int],
        cols: NDArray[np.integer] | Sequence[int],
        shape: tuple[int, int],
    ) -> SparsityPattern:
        """Create a pattern from row and column index arrays.

        Coordinates may come in any order and may repeat;
        they are sorted column by column and duplicates are merged.
        """
        rows = np.asarray(rows, dtype=np.int64).ravel()
        cols = np.asarray(cols, dtype=np.int64).ravel()
        if len(rows) != len(cols):
            msg = f"rows and cols must have same length, got {len(rows)} and {len(cols)}"
            raise ShapeError(msg)
        nrow, ncol = int(shape[0]), int(shape[1])
        if len(rows) and (
            rows.min() < 0 or rows.max() >= nrow or cols.min() < 0 or cols.max() >= ncol
        ):
            msg = f"Coordinates out of range for shape {(nrow, ncol)}"
            raise ShapeError(msg)

        keys = np.unique(cols * max(nrow, 1) + rows)
        sorted_rows = keys % max(nrow, 1)
        sorted_cols = keys // max(nrow, 1)
        colind = np.zeros(ncol + 1, dtype=np.int64)
        colind[1:] = np.cumsum(np.bincount(sorted_cols, minlength=ncol))
        return cls(nrow, ncol, colind, sorted_rows)

    @classmethod
    def from_dense(cls, dense: NDArray) -> SparsityPattern:
        """Create pattern from dense boolean/numeric matrix.

        Non-zero entries indicate pattern positions.
        """
        dense = np.atleast_2d(np.asarray(dense))
        rows, cols = np.nonzero(dense)
        return cls.from_coordinates(rows, cols, (dense.shape[0], dense.shape[1]))

    @classmethod
    def dense(cls, nrow: int, ncol: int) -> SparsityPattern:
        """Fully populated pattern."""
        colind = np.arange(ncol + 1, dtype=np.int64) * nrow
        row = np.tile(np.arange(nrow, dtype=np.int64), ncol)
        return cls(nrow, ncol, colind, row)

    @classmethod
    def empty(cls, nrow: int, ncol: int) -> SparsityPattern:
        """Pattern without any nonzeros."""
        return cls(nrow, ncol, np.zeros(ncol + 1, dtype=np.int64), np.array([], np.int64))

    @staticmethod
    def vstack(patterns: Sequence[SparsityPattern]) -> SparsityPattern:
        """Stack patterns with equal column counts on top of each other."""
        if not patterns:
            msg = "vstack needs at least one pattern"
            raise ShapeError(msg)
        ncol = patterns[0].ncol
        rows, cols = [], []
        offset = 0
        for p in patterns:
            if p.ncol != ncol:
                msg = f"Cannot stack patterns with {p.ncol} and {ncol} columns"
                raise ShapeError(msg)
            rows.append(p.row + offset)
            cols.append(p.cols)
            offset += p.nrow
        return SparsityPattern.from_coordinates(
            np.concatenate(rows), np.concatenate(cols), (offset, ncol)
        )

    # Operations

    @cached_property
    def T(self) -> SparsityPattern:  # noqa: N802
        """Transposed pattern."""
        return SparsityPattern.from_coordinates(self.cols, self.row, (self.ncol, self.nrow))

    def union(self, other: SparsityPattern) -> SparsityPattern:
        """Pattern holding the nonzeros of both operands."""
        if self.shape != other.shape:
            msg = f"Cannot unite patterns of shape {self.shape} and {other.shape}"
            raise ShapeError(msg)
        return SparsityPattern.from_coordinates(
            np.concatenate([self.row, other.row]),
            np.concatenate([self.cols, other.cols]),
            self.shape,
        )

    def __or__(self, other: SparsityPattern) -> SparsityPattern:
        return self.union(other)

    # Conversion methods

    def todense(self) -> NDArray:
        """Convert to dense numpy array with 1s at pattern positions."""
        result = np.zeros(self.shape, dtype=np.int8)
        if self.nnz > 0:
            result[self.row, self.cols] = 1
        return result

    def mask(self) -> NDArray[np.bool_]:
        """Boolean matrix marking the structural nonzeros."""
        return self.todense().astype(bool)

    def to_csc(self, data: NDArray | None = None) -> csc_matrix:
        """Convert to a scipy CSC matrix sharing this pattern's structure.

        Args:
            data: Optional nonzero values in pattern order.
                If None, uses all 1s.
        """
        if data is None:
            data = np.ones(self.nnz)
        return csc_matrix((np.asarray(data), self.row, self.colind), shape=self.shape)

    def to_bcoo(self, data: jnp.ndarray | None = None) -> BCOO:
        """Convert to JAX BCOO sparse matrix.

        Args:
            data: Optional data values in pattern order.
                If None, uses all 1s.
        """
        if self.nnz == 0:
            indices = jnp.zeros((0, 2), dtype=jnp.int32)
            data = jnp.array([]) if data is None else data
        else:
            indices = jnp.stack([self.row, self.cols], axis=1).astype(jnp.int32)
            data = jnp.ones(self.nnz, dtype=jnp.int8) if data is None else data
        return BCOO((data, indices), shape=self.shape)

    # Comparison

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SparsityPattern):
            return NotImplemented
        return (
            self.shape == other.shape
            and np.array_equal(self.colind, other.colind)
            and np.array_equal(self.row, other.row)
        )

    def __hash__(self) -> int:
        return hash((self.shape, self.colind.tobytes(), self.row.tobytes()))

    # Display

    def __str__(self) -> str:
        """Render sparsity pattern with header and dot/braille grid."""
        return sparsity_str(self)

    def __repr__(self) -> str:
        """Return compact single-line representation."""
        return sparsity_repr(self)


@dataclass(frozen=True, repr=False, eq=False)
class ColoredPattern:
    """Result of a graph coloring for grouped seeding.

    Attributes:
        sparsity: The sparsity pattern that was colored.
        colors: Color assignment array.
            Shape ``(m,)`` for ``"adjoint"`` mode,
            ``(n,)`` for ``"forward"`` mode.
        num_colors: Total number of colors used,
            i.e. the number of directional derivatives needed.
        mode: The sweep used per color.
            ``"adjoint"`` for row-colored Jacobians,
            ``"forward"`` for column-colored Jacobians.
    """

    sparsity: SparsityPattern
    colors: NDArray[np.int32]
    num_colors: int
    mode: Literal["forward", "adjoint"]

    @cached_property
    def extraction_indices(self) -> tuple[NDArray[np.intp], NDArray[np.intp]]:
        """Indices for extracting sparse entries from compressed results.

        Returns ``(color_idx, elem_idx)`` such that for a compressed matrix
        ``C`` of shape ``(num_colors, dim)``::

            data = C[color_idx, elem_idx]

        gives the nnz values in sparsity-pattern order.

        For adjoint: ``color_idx = colors[rows]``, ``elem_idx = cols``.
        For forward: ``color_idx = colors[cols]``, ``elem_idx = rows``.
        """
        rows = self.sparsity.row
        cols = self.sparsity.cols
        if self.mode == "adjoint":
            return self.colors[rows].astype(np.intp), cols.astype(np.intp)
        return self.colors[cols].astype(np.intp), rows.astype(np.intp)

    @cached_property
    def seed_matrix(self) -> NDArray[np.float64]:
        """Seed matrix of shape ``(num_colors, dim)``.

        Row ``c`` is the indicator of ``colors == c``,
        used as the seed of the ``c``-th directional derivative.
        """
        dim = self.sparsity.m if self.mode == "adjoint" else self.sparsity.n
        seeds = np.zeros((self.num_colors, dim), dtype=np.float64)
        for c in range(self.num_colors):
            seeds[c] = self.colors == c
        return seeds

    def decompress(self, compressed: NDArray) -> NDArray:
        """Scatter compressed directional derivatives into a dense Jacobian."""
        result = np.zeros(self.sparsity.shape, dtype=np.float64)
        if self.sparsity.nnz == 0:
            return result
        color_idx, elem_idx = self.extraction_indices
        result[self.sparsity.row, self.sparsity.cols] = compressed[color_idx, elem_idx]
        return result

    def __repr__(self) -> str:
        """Return compact single-line representation."""
        return colored_repr(self)
