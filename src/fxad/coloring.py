"""Graph coloring for grouped seeding of Jacobian blocks.

Columns of a Jacobian block that never share a nonzero row can be seeded
together in one forward direction.
Rows that never share a nonzero column can be seeded together
in one adjoint direction.
A greedy coloring of the corresponding conflict graph gives the groups.

Algorithms adapted from SparseMatrixColorings.jl (MIT license)
Copyright (c) 2024 Guillaume Dalle, Alexis Montoison, and contributors
https://github.com/gdalle/SparseMatrixColorings.jl
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from fxad.options import AdMode
from fxad.pattern import ColoredPattern, SparsityPattern


def color_jacobian_pattern(
    sparsity: SparsityPattern, mode: AdMode = "automatic"
) -> ColoredPattern:
    """Color a Jacobian block for grouped forward or adjoint seeding.

    Args:
        sparsity: Jacobian sparsity of shape ``(m, n)``.
        mode: ``"forward"`` colors columns,
            ``"adjoint"`` colors rows,
            ``"automatic"`` picks whichever needs fewer colors
            (ties go to forward mode).

    Returns:
        A ColoredPattern whose ``num_colors`` is the number of sweeps needed.
    """
    if sparsity.nnz == 0:
        sweep = "adjoint" if mode == "adjoint" else "forward"
        n_vertices = sparsity.m if sweep == "adjoint" else sparsity.n
        return ColoredPattern(
            sparsity,
            colors=np.full(n_vertices, -1, dtype=np.int32),
            num_colors=0,
            mode=sweep,
        )

    if mode == "adjoint":
        colors, num = color_rows(sparsity)
        return ColoredPattern(sparsity, colors=colors, num_colors=num, mode="adjoint")

    if mode == "forward":
        colors, num = color_cols(sparsity)
        return ColoredPattern(sparsity, colors=colors, num_colors=num, mode="forward")

    row_colors, num_row = color_rows(sparsity)
    col_colors, num_col = color_cols(sparsity)
    if num_col <= num_row:
        return ColoredPattern(
            sparsity, colors=col_colors, num_colors=num_col, mode="forward"
        )
    return ColoredPattern(sparsity, colors=row_colors, num_colors=num_row, mode="adjoint")


def color_rows(sparsity: SparsityPattern) -> tuple[NDArray[np.int32], int]:
    """Greedy row coloring: rows sharing a nonzero column get different colors.

    Returns:
        Tuple ``(colors, num_colors)`` with ``colors`` of shape ``(m,)``.
    """
    if sparsity.m == 0:
        return np.array([], dtype=np.int32), 0
    conflicts = _conflict_sets(sparsity.m, sparsity.col_to_rows.values())
    return _greedy_color(sparsity.m, conflicts)


def color_cols(sparsity: SparsityPattern) -> tuple[NDArray[np.int32], int]:
    """Greedy column coloring: columns sharing a nonzero row get different colors.

    Returns:
        Tuple ``(colors, num_colors)`` with ``colors`` of shape ``(n,)``.
    """
    if sparsity.n == 0:
        return np.array([], dtype=np.int32), 0
    conflicts = _conflict_sets(sparsity.n, sparsity.row_to_cols.values())
    return _greedy_color(sparsity.n, conflicts)


def _greedy_color(
    num_vertices: int,
    conflicts: list[set[int]],
) -> tuple[NDArray[np.int32], int]:
    """Greedy graph coloring with LargestFirst vertex ordering.

    Vertices are visited by decreasing degree;
    each receives the smallest color unused by its colored neighbors.
    """
    order = sorted(range(num_vertices), key=lambda v: len(conflicts[v]), reverse=True)

    colors = np.full(num_vertices, -1, dtype=np.int32)
    num_colors = 0

    for v in order:
        used_colors = {int(colors[w]) for w in conflicts[v] if colors[w] >= 0}
        color = 0
        while color in used_colors:
            color += 1
        colors[v] = color
        num_colors = max(num_colors, color + 1)

    return colors, num_colors


def _conflict_sets(num_vertices: int, groups) -> list[set[int]]:
    """Vertices that appear together in any group conflict pairwise.

    For row coloring the groups are the rows present in each column,
    for column coloring the columns present in each row.
    """
    conflicts: list[set[int]] = [set() for _ in range(num_vertices)]
    for members in groups:
        for i, a in enumerate(members):
            for b in members[i + 1 :]:
                conflicts[a].add(b)
                conflicts[b].add(a)
    return conflicts
