"""Dependency rules for primitives that only move elements around.

Every output element reads exactly one input element.
The rules replay the operation on a `position_map` with numpy
to find out which one.
"""

from __future__ import annotations

import numpy as np
from jax._src.core import JaxprEqn, Literal

from ._commons import Atom, Deps, atom_shape, index_sets, position_map, take_sets, union_all


def prop_broadcast_in_dim(eqn: JaxprEqn, deps: Deps) -> None:
    """Input dim ``i`` becomes output dim ``broadcast_dimensions[i]``.

    Example: x.shape = (3,), broadcast to (2, 3) with dims (1,)
        Input deps:  [{0}, {1}, {2}]
        Output deps: [{0}, {1}, {2}, {0}, {1}, {2}]
    """
    operand = eqn.invars[0]
    out_shape = tuple(eqn.params["shape"])
    in_shape = atom_shape(operand)
    aligned = [1] * len(out_shape)
    for i, d in enumerate(eqn.params["broadcast_dimensions"]):
        aligned[d] = in_shape[i]
    positions = np.broadcast_to(position_map(in_shape).reshape(aligned), out_shape)
    deps[eqn.outvars[0]] = take_sets(index_sets(deps, operand), positions)


def prop_reshape(eqn: JaxprEqn, deps: Deps) -> None:
    """Row-major reshape, optionally after permuting the axes with ``dimensions``.

    ``ravel(order="F")`` lowers to a reshape with ``dimensions=(1, 0)``.
    """
    operand = eqn.invars[0]
    positions = position_map(atom_shape(operand))
    dimensions = eqn.params.get("dimensions")
    if dimensions is not None:
        positions = positions.transpose(dimensions)
    deps[eqn.outvars[0]] = take_sets(index_sets(deps, operand), positions)


def prop_squeeze(eqn: JaxprEqn, deps: Deps) -> None:
    """Dropping unit dims keeps the row-major element order."""
    deps[eqn.outvars[0]] = [s.copy() for s in index_sets(deps, eqn.invars[0])]


def prop_transpose(eqn: JaxprEqn, deps: Deps) -> None:
    operand = eqn.invars[0]
    positions = position_map(atom_shape(operand)).transpose(eqn.params["permutation"])
    deps[eqn.outvars[0]] = take_sets(index_sets(deps, operand), positions)


def prop_rev(eqn: JaxprEqn, deps: Deps) -> None:
    operand = eqn.invars[0]
    positions = np.flip(position_map(atom_shape(operand)), axis=tuple(eqn.params["dimensions"]))
    deps[eqn.outvars[0]] = take_sets(index_sets(deps, operand), positions)


def prop_slice(eqn: JaxprEqn, deps: Deps) -> None:
    """Static strided slice.

    Example: x = [a, b, c, d, e], y = x[1:4:2]
        Output deps: [{1}, {3}]
    """
    operand = eqn.invars[0]
    start = eqn.params["start_indices"]
    limit = eqn.params["limit_indices"]
    strides = eqn.params.get("strides") or (1,) * len(start)
    index = tuple(slice(a, b, s) for a, b, s in zip(start, limit, strides, strict=True))
    positions = position_map(atom_shape(operand))[index]
    deps[eqn.outvars[0]] = take_sets(index_sets(deps, operand), positions)


def prop_concatenate(eqn: JaxprEqn, deps: Deps) -> None:
    """Join operands along ``dimension``.

    The operand sets are pooled, and the position maps are offset
    into the pool before concatenating them like the data.
    """
    pool = []
    maps = []
    for operand in eqn.invars:
        sets = index_sets(deps, operand)
        maps.append(position_map(atom_shape(operand)) + len(pool))
        pool.extend(sets)
    positions = np.concatenate(maps, axis=eqn.params["dimension"])
    deps[eqn.outvars[0]] = take_sets(pool, positions)


def prop_split(eqn: JaxprEqn, deps: Deps) -> None:
    """Cut the operand into pieces of ``sizes`` along ``axis``."""
    operand = eqn.invars[0]
    sets = index_sets(deps, operand)
    cuts = np.cumsum(eqn.params["sizes"])[:-1]
    pieces = np.split(position_map(atom_shape(operand)), cuts, axis=eqn.params["axis"])
    for outvar, positions in zip(eqn.outvars, pieces, strict=True):
        deps[outvar] = take_sets(sets, positions)


def _literal_starts(atoms: list[Atom], shape: tuple[int, ...], sizes) -> list[int] | None:
    """Start indices clamped like XLA does, or None if any start is traced."""
    starts = []
    for atom, dim, size in zip(atoms, shape, sizes, strict=True):
        if not isinstance(atom, Literal):
            return None
        start = int(np.ravel(atom.val)[0])
        starts.append(min(max(start, 0), dim - size))
    return starts


def prop_dynamic_slice(eqn: JaxprEqn, deps: Deps) -> None:
    """Window of ``slice_sizes`` at literal start indices.

    Traced starts could select any window, so every output element
    then depends on the whole operand.
    """
    operand = eqn.invars[0]
    shape = atom_shape(operand)
    sizes = tuple(eqn.params["slice_sizes"])
    sets = index_sets(deps, operand)
    starts = _literal_starts(eqn.invars[1:], shape, sizes)
    if starts is None:
        combined = union_all(sets)
        deps[eqn.outvars[0]] = [combined.copy() for _ in range(int(np.prod(sizes)))]
        return
    index = tuple(slice(a, a + s) for a, s in zip(starts, sizes, strict=True))
    deps[eqn.outvars[0]] = take_sets(sets, position_map(shape)[index])


def prop_dynamic_update_slice(eqn: JaxprEqn, deps: Deps) -> None:
    """Operand with a window overwritten by ``update``.

    With traced starts each element may come from either array.
    """
    operand, update = eqn.invars[:2]
    shape = atom_shape(operand)
    up_shape = atom_shape(update)
    op_sets = index_sets(deps, operand)
    up_sets = index_sets(deps, update)
    starts = _literal_starts(eqn.invars[2:], shape, up_shape)
    if starts is None:
        combined = union_all(up_sets)
        deps[eqn.outvars[0]] = [s | combined for s in op_sets]
        return
    pool = op_sets + up_sets
    positions = position_map(shape).copy()
    index = tuple(slice(a, a + s) for a, s in zip(starts, up_shape, strict=True))
    positions[index] = position_map(up_shape) + len(op_sets)
    deps[eqn.outvars[0]] = take_sets(pool, positions)


def prop_pad(eqn: JaxprEqn, deps: Deps) -> None:
    """Edge and interior padding, the transpose of a strided slice.

    Padded elements depend on the padding value, negative edges crop.
    """
    operand, padding_value = eqn.invars
    in_shape = atom_shape(operand)
    out_shape = atom_shape(eqn.outvars[0])
    sets = index_sets(deps, operand)
    pool = sets + [union_all(index_sets(deps, padding_value))]
    positions = np.full(out_shape, len(sets), dtype=np.intp)
    targets, keeps = [], []
    for (lo, _, interior), dim, out_dim in zip(
        eqn.params["padding_config"], in_shape, out_shape, strict=True
    ):
        coords = lo + np.arange(dim) * (interior + 1)
        keep = (coords >= 0) & (coords < out_dim)
        targets.append(coords[keep])
        keeps.append(keep)
    positions[np.ix_(*targets)] = position_map(in_shape)[np.ix_(*keeps)]
    deps[eqn.outvars[0]] = take_sets(pool, positions)
