"""Text rendering of sparsity patterns.

Small patterns print as a grid of dots, one per entry.
Larger ones are scaled onto Unicode braille cells of 4x2 entries each,
in the style of SparseArrays.jl (MIT license,
https://github.com/JuliaSparse/SparseArrays.jl/).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from fxad.pattern import ColoredPattern, SparsityPattern

_DOT_MAX_ROWS = 16
_DOT_MAX_COLS = 40
_BRAILLE_MAX_LINES = 20
_BRAILLE_MAX_CELLS = 40

# Bit of the braille dot at (row % 4, col % 2) within a cell.
_BRAILLE_BITS = np.array([[0x01, 0x08], [0x02, 0x10], [0x04, 0x20], [0x40, 0x80]])


def _summary(pattern: SparsityPattern) -> str:
    return f"{pattern.m}×{pattern.n}, nnz={pattern.nnz}, sparsity={1 - pattern.density:.1%}"


def sparsity_str(pattern: SparsityPattern) -> str:
    return f"SparsityPattern({_summary(pattern)})\n{render(pattern)}"


def sparsity_repr(pattern: SparsityPattern) -> str:
    return f"SparsityPattern(shape={pattern.shape}, nnz={pattern.nnz})"


def colored_repr(colored: ColoredPattern) -> str:
    c = colored.num_colors
    return (
        f"ColoredPattern({_summary(colored.sparsity)}, {colored.mode}, "
        f"{c} color{'' if c == 1 else 's'})"
    )


def render(pattern: SparsityPattern) -> str:
    """Dot grid for small patterns, bracketed braille block otherwise."""
    if pattern.m == 0 or pattern.n == 0:
        return "(empty)"
    if pattern.m <= _DOT_MAX_ROWS and pattern.n <= _DOT_MAX_COLS:
        return "\n".join(
            " ".join("●" if v else "⋅" for v in row) for row in pattern.mask()
        )
    lines = _braille_lines(pattern)
    if len(lines) == 1:
        return f"[{lines[0]}]"
    left = ["⎡"] + ["⎢"] * (len(lines) - 2) + ["⎣"]
    right = ["⎤"] + ["⎥"] * (len(lines) - 2) + ["⎦"]
    return "\n".join(f"{a}{line}{b}" for a, line, b in zip(left, lines, right, strict=True))


def _braille_lines(pattern: SparsityPattern) -> list[str]:
    """Nonzero coordinates are mapped linearly onto at most 20x40 braille cells."""
    height = min(pattern.m, 4 * _BRAILLE_MAX_LINES)
    width = min(pattern.n, 2 * _BRAILLE_MAX_CELLS)
    r = np.rint(pattern.rows * (height - 1) / max(pattern.m - 1, 1)).astype(np.intp)
    c = np.rint(pattern.cols * (width - 1) / max(pattern.n - 1, 1)).astype(np.intp)
    cells = np.zeros(((height - 1) // 4 + 1, (width - 1) // 2 + 1), dtype=np.intp)
    np.bitwise_or.at(cells, (r // 4, c // 2), _BRAILLE_BITS[r % 4, c % 2])
    return ["".join(chr(0x2800 + int(b)) for b in line) for line in cells]
