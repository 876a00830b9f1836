"""Dependency rules for element-wise primitives."""

from __future__ import annotations

import numpy as np
from jax._src.core import JaxprEqn

from ._commons import Deps, atom_numel, atom_shape, empty_sets, index_sets, numel, position_map


def prop_elementwise(eqn: JaxprEqn, deps: Deps) -> None:
    """Each output element depends on the matching element of every operand.

    Operands broadcast against the output shape: scalars and size-1 axes
    are read at every output position along that axis.

    Example: z = x * y with x = [a, b] and y = [c, d]
        Input deps:  [{0}, {1}], [{2}, {3}]
        Output deps: [{0, 2}, {1, 3}]
    """
    shape = atom_shape(eqn.outvars[0])
    out = empty_sets(numel(shape))
    for v in eqn.invars:
        sets = index_sets(deps, v)
        if not sets:
            continue
        positions = np.broadcast_to(position_map(atom_shape(v)), shape)
        for merged, p in zip(out, np.ravel(positions), strict=True):
            merged |= sets[p]
    deps[eqn.outvars[0]] = out


def prop_passthrough(eqn: JaxprEqn, deps: Deps) -> None:
    """Identity-like primitives (dtype conversions, copies)."""
    deps[eqn.outvars[0]] = [s.copy() for s in index_sets(deps, eqn.invars[0])]


def prop_integer_pow(eqn: JaxprEqn, deps: Deps) -> None:
    """``x ** n`` is element-wise, and constant for ``n == 0``."""
    if eqn.params.get("y", 1) == 0:
        prop_zero_derivative(eqn, deps)
    else:
        prop_passthrough(eqn, deps)


def prop_zero_derivative(eqn: JaxprEqn, deps: Deps) -> None:
    """Piecewise-constant primitives (floor, sign, comparisons, ...).

    Their derivative vanishes almost everywhere,
    so the outputs depend on no input.
    """
    for outvar in eqn.outvars:
        deps[outvar] = empty_sets(atom_numel(outvar))
