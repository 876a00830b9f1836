"""Dependency rules for reductions and contractions."""

from __future__ import annotations

from jax._src.core import JaxprEqn

from ._commons import Deps, atom_shape, index_sets, position_map, union_all


def prop_reduce(eqn: JaxprEqn, deps: Deps) -> None:
    """An output element depends on every input element reduced into it.

    Covers reduce_sum, reduce_max, reduce_min and reduce_prod.

    Example: y = sum(x, axis=1) with x.shape = (2, 3)
        Input deps:  [{0}, {1}, {2}, {3}, {4}, {5}]
        Output deps: [{0, 1, 2}, {3, 4, 5}]
    """
    operand = eqn.invars[0]
    sets = index_sets(deps, operand)
    shape = atom_shape(operand)
    axes = tuple(eqn.params.get("axes", ()))
    if not axes:
        axes = tuple(range(len(shape)))
    kept = [d for d in range(len(shape)) if d not in axes]
    n_reduced = 1
    for d in axes:
        n_reduced *= shape[d]
    groups = position_map(shape).transpose(kept + list(axes)).reshape(-1, n_reduced)
    deps[eqn.outvars[0]] = [union_all(sets[p] for p in row) for row in groups]


def prop_dot_general(eqn: JaxprEqn, deps: Deps) -> None:
    """Generalized matrix product.

    With the operands arranged as ``lhs[b, i, k]`` and ``rhs[b, k, j]``,
    ``out[b, i, j]`` depends on the whole row ``lhs[b, i, :]``
    and the whole column ``rhs[b, :, j]``.
    Row and column unions are computed once and combined per output element.
    """
    lhs, rhs = eqn.invars[0], eqn.invars[1]
    lhs_sets = index_sets(deps, lhs)
    rhs_sets = index_sets(deps, rhs)
    lhs_shape, rhs_shape = atom_shape(lhs), atom_shape(rhs)
    (lhs_contract, rhs_contract), (lhs_batch, rhs_batch) = eqn.params["dimension_numbers"]

    def arrange(shape, contract, batch):
        free = [d for d in range(len(shape)) if d not in contract and d not in batch]
        n_batch = n_free = n_contract = 1
        for d in batch:
            n_batch *= shape[d]
        for d in free:
            n_free *= shape[d]
        for d in contract:
            n_contract *= shape[d]
        order = list(batch) + free + list(contract)
        return position_map(shape).transpose(order).reshape(n_batch, n_free, n_contract)

    lhs_pos = arrange(lhs_shape, tuple(lhs_contract), tuple(lhs_batch))
    rhs_pos = arrange(rhs_shape, tuple(rhs_contract), tuple(rhs_batch))
    n_batch, n_lhs, _ = lhs_pos.shape
    _, n_rhs, _ = rhs_pos.shape

    lhs_rows = [
        [union_all(lhs_sets[p] for p in lhs_pos[b, i]) for i in range(n_lhs)]
        for b in range(n_batch)
    ]
    rhs_cols = [
        [union_all(rhs_sets[p] for p in rhs_pos[b, j]) for j in range(n_rhs)]
        for b in range(n_batch)
    ]
    deps[eqn.outvars[0]] = [
        lhs_rows[b][i] | rhs_cols[b][j]
        for b in range(n_batch)
        for i in range(n_lhs)
        for j in range(n_rhs)
    ]
