"""Jacobian sparsity by propagating dependency bits through a function.

Every slot entry carries a 64-bit word.
In forward mode a bit set on an input entry marks every output entry that
depends on it; in adjoint mode a bit set on an output entry marks every input
entry it depends on.
The 64 lanes of a word trace 64 seeds at once,
so detecting an ``m x n`` block takes ``ceil(nnz / 64)`` passes over the
seeded side's structural nonzeros.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from fxad.errors import NotInitializedError, ShapeError, UnsupportedOperationError
from fxad.pattern import SparsityPattern
from fxad.slots import SlotKind, unvec, vec

if TYPE_CHECKING:
    from fxad.function import Function

logger = logging.getLogger(__name__)

LANES = 64
"""Seeds traced per propagation pass, one per bit of a ``uint64`` word."""


class DependencyBits:
    """Dependency words of every input and output slot entry."""

    def __init__(
        self,
        input_sparsity: Sequence[SparsityPattern],
        output_sparsity: Sequence[SparsityPattern],
    ) -> None:
        self.inputs = [np.zeros(sp.shape, dtype=np.uint64) for sp in input_sparsity]
        self.outputs = [np.zeros(sp.shape, dtype=np.uint64) for sp in output_sparsity]

    def clear(self, kind: SlotKind) -> None:
        for words in self.inputs if kind is SlotKind.INPUT else self.outputs:
            words[...] = 0


def sp_init(fcn: Function, fwd: bool) -> None:
    fcn.assert_init()
    if not fcn._can_propagate(fwd):
        direction = "forward" if fwd else "adjoint"
        msg = f"Function '{fcn.name}' cannot propagate dependencies in {direction} mode"
        raise UnsupportedOperationError(msg)
    fcn._bits = DependencyBits(fcn._input_sparsity, fcn._output_sparsity)


def sp_evaluate(fcn: Function, fwd: bool) -> None:
    """Overwrite the traced side with the union of the seeded side's bits."""
    bits = fcn._bits
    if bits is None:
        msg = f"Call sp_init() on '{fcn.name}' before sp_evaluate()"
        raise NotInitializedError(msg)
    bits.clear(SlotKind.OUTPUT if fwd else SlotKind.INPUT)
    fcn._propagate(fwd, bits)


def bits(fcn: Function, kind: SlotKind, index: int) -> NDArray[np.uint64]:
    if fcn._bits is None:
        msg = f"Call sp_init() on '{fcn.name}' before accessing dependency bits"
        raise NotInitializedError(msg)
    return (fcn._bits.inputs if kind is SlotKind.INPUT else fcn._bits.outputs)[index]


def propagate_dependencies(
    dependencies: Sequence[Sequence[NDArray[np.intp]]],
    bits: DependencyBits,
    fwd: bool,
) -> None:
    """Propagate bits given explicit per-entry dependency lists.

    Args:
        dependencies: ``dependencies[j][k]`` holds the global ids of the input
            entries that entry ``k`` of output ``j`` depends on.
            Entries are numbered column-major within a slot,
            and input slots are numbered consecutively.
        bits: Dependency words to update.
        fwd: Direction of propagation.
    """
    flat_inputs = np.concatenate([vec(w) for w in bits.inputs]) if bits.inputs else None
    if flat_inputs is None:
        return
    if fwd:
        for words, deps in zip(bits.outputs, dependencies, strict=True):
            flat = np.zeros(words.size, dtype=np.uint64)
            for k, ids in enumerate(deps):
                if len(ids):
                    flat[k] = np.bitwise_or.reduce(flat_inputs[ids])
            words[...] = unvec(flat, words.shape)
        return

    flat_inputs[...] = 0
    for words, deps in zip(bits.outputs, dependencies, strict=True):
        flat_out = vec(words)
        for k, ids in enumerate(deps):
            if flat_out[k] and len(ids):
                flat_inputs[ids] |= flat_out[k]
    offset = 0
    for words in bits.inputs:
        words[...] = unvec(flat_inputs[offset : offset + words.size], words.shape)
        offset += words.size


def jacobian_sparsity(fcn: Function, iind: int, oind: int, compact: bool) -> SparsityPattern:
    """Cached Jacobian block sparsity, detected on first request."""
    with fcn._sparsity_lock:
        cached = fcn._sparsity_cache.get((iind, oind, compact))
        if cached is not None:
            return cached
        pattern = fcn._sparsity_cache.get((iind, oind, True))
        if pattern is None:
            pattern = _detect(fcn, iind, oind)
            fcn._sparsity_cache[(iind, oind, True)] = pattern
        if not compact:
            pattern = _expand(
                pattern, fcn._input_sparsity[iind], fcn._output_sparsity[oind]
            )
            fcn._sparsity_cache[(iind, oind, False)] = pattern
        return pattern


def set_jacobian_sparsity(
    fcn: Function,
    sparsity: SparsityPattern,
    iind: int,
    oind: int,
    compact: bool,
) -> None:
    in_sp = fcn._input_sparsity[iind]
    out_sp = fcn._output_sparsity[oind]
    expected = (out_sp.nnz, in_sp.nnz) if compact else (out_sp.numel, in_sp.numel)
    if sparsity.shape != expected:
        msg = f"Jacobian sparsity of shape {sparsity.shape} given, expected {expected}"
        raise ShapeError(msg)
    if compact:
        compact_sp, full_sp = sparsity, _expand(sparsity, in_sp, out_sp)
    else:
        compact_sp, full_sp = _compress(sparsity, in_sp, out_sp), sparsity
    with fcn._sparsity_lock:
        fcn._sparsity_cache[(iind, oind, True)] = compact_sp
        fcn._sparsity_cache[(iind, oind, False)] = full_sp


def _detect(fcn: Function, iind: int, oind: int) -> SparsityPattern:
    in_sp = fcn._input_sparsity[iind]
    out_sp = fcn._output_sparsity[oind]
    shape = (out_sp.nnz, in_sp.nnz)
    if not fcn.options.sparse:
        return SparsityPattern.dense(*shape)

    preferred = _prefer_forward(fcn, in_sp.nnz, out_sp.nnz)
    for fwd in (preferred, not preferred):
        if fcn._can_propagate(fwd):
            pattern = _propagate_block(fcn, iind, oind, fwd)
            logger.debug(
                "Detected %s Jacobian sparsity of '%s' block (%d, %d): %d of %d nonzeros",
                "forward" if fwd else "adjoint",
                fcn.name,
                oind,
                iind,
                pattern.nnz,
                shape[0] * shape[1],
            )
            return pattern

    logger.debug(
        "'%s' cannot propagate dependencies, assuming dense block (%d, %d)",
        fcn.name,
        oind,
        iind,
    )
    return SparsityPattern.dense(*shape)


def _prefer_forward(fcn: Function, nnz_in: int, nnz_out: int) -> bool:
    mode = fcn.options.ad_mode
    if mode == "forward":
        return True
    if mode == "adjoint":
        return False
    return nnz_in <= nnz_out


def _propagate_block(fcn: Function, iind: int, oind: int, fwd: bool) -> SparsityPattern:
    """Seed the structural nonzeros of one side, 64 per pass, and read the other."""
    in_sp = fcn._input_sparsity[iind]
    out_sp = fcn._output_sparsity[oind]
    seed_sp, traced_sp = (in_sp, out_sp) if fwd else (out_sp, in_sp)

    rows: list[NDArray[np.int64]] = []
    cols: list[NDArray[np.int64]] = []
    for offset in range(0, seed_sp.nnz, LANES):
        lanes = min(LANES, seed_sp.nnz - offset)
        nz = slice(offset, offset + lanes)

        sp_init(fcn, fwd)
        seeded = fcn._bits.inputs[iind] if fwd else fcn._bits.outputs[oind]
        seeded[seed_sp.row[nz], seed_sp.cols[nz]] = np.left_shift(
            np.uint64(1), np.arange(lanes, dtype=np.uint64)
        )
        sp_evaluate(fcn, fwd)
        traced = fcn._bits.outputs[oind] if fwd else fcn._bits.inputs[iind]

        words = traced[traced_sp.row, traced_sp.cols]
        hits = (words[:, None] >> np.arange(lanes, dtype=np.uint64)) & np.uint64(1)
        traced_nz, lane = np.nonzero(hits)
        seed_nz = offset + lane
        if fwd:
            rows.append(traced_nz)
            cols.append(seed_nz)
        else:
            rows.append(seed_nz)
            cols.append(traced_nz)

    fcn._bits = None
    if not rows:
        return SparsityPattern.empty(out_sp.nnz, in_sp.nnz)
    return SparsityPattern.from_coordinates(
        np.concatenate(rows), np.concatenate(cols), (out_sp.nnz, in_sp.nnz)
    )


def _expand(
    compact: SparsityPattern, in_sp: SparsityPattern, out_sp: SparsityPattern
) -> SparsityPattern:
    """Map rows and columns from nonzero numbering to entry numbering."""
    return SparsityPattern.from_coordinates(
        out_sp.nz_positions[compact.row],
        in_sp.nz_positions[compact.cols],
        (out_sp.numel, in_sp.numel),
    )


def _compress(
    full: SparsityPattern, in_sp: SparsityPattern, out_sp: SparsityPattern
) -> SparsityPattern:
    """Inverse of `_expand`; entries at structural zeros of a slot are dropped."""
    out_nz = np.full(out_sp.numel, -1, dtype=np.int64)
    out_nz[out_sp.nz_positions] = np.arange(out_sp.nnz)
    in_nz = np.full(in_sp.numel, -1, dtype=np.int64)
    in_nz[in_sp.nz_positions] = np.arange(in_sp.nnz)
    rows = out_nz[full.row]
    cols = in_nz[full.cols]
    keep = (rows >= 0) & (cols >= 0)
    return SparsityPattern.from_coordinates(rows[keep], cols[keep], (out_sp.nnz, in_sp.nnz))
