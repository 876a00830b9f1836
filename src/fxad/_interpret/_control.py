"""Dependency rules for selection, branching and nested jaxprs."""

from __future__ import annotations

from jax._src.core import JaxprEqn

from ._commons import Deps, IndexSets, PropJaxprFn, atom_numel, index_sets


def prop_select_n(eqn: JaxprEqn, deps: Deps) -> None:
    """``select_n(which, *cases)`` may return any case at any element.

    The selector is piecewise constant and contributes nothing.
    """
    size = atom_numel(eqn.outvars[0])
    cases = [index_sets(deps, c) for c in eqn.invars[1:]]
    out: IndexSets = []
    for k in range(size):
        merged: set[int] = set()
        for sets in cases:
            merged |= sets[k % len(sets)]
        out.append(merged)
    deps[eqn.outvars[0]] = out


def prop_cond(eqn: JaxprEqn, deps: Deps, prop_jaxpr: PropJaxprFn) -> None:
    """The branch taken is unknown when tracing, so outputs union over all branches.

    Example: cond(p, lambda x: x[:2], lambda x: x[1:], x)
        Branch deps: [{0}, {1}] and [{1}, {2}]
        Output deps: [{0, 1}, {1, 2}]
    """
    operands = [index_sets(deps, v) for v in eqn.invars[1:]]
    merged: list[IndexSets] | None = None
    for branch in eqn.params["branches"]:
        out = prop_jaxpr(branch.jaxpr, operands)
        if merged is None:
            merged = [[s.copy() for s in sets] for sets in out]
            continue
        for acc, sets in zip(merged, out, strict=True):
            for a, s in zip(acc, sets, strict=True):
                a |= s
    for outvar, sets in zip(eqn.outvars, merged or [], strict=False):
        deps[outvar] = sets


def inner_jaxpr(eqn: JaxprEqn):
    """The jaxpr a call-like primitive (jit, custom_jvp, ...) wraps, if any."""
    for key in ("jaxpr", "call_jaxpr", "fun_jaxpr"):
        inner = eqn.params.get(key)
        if inner is not None:
            return getattr(inner, "jaxpr", inner)
    return None


def prop_call(eqn: JaxprEqn, deps: Deps, prop_jaxpr: PropJaxprFn) -> bool:
    """Propagate through the wrapped jaxpr of a call-like primitive.

    Returns:
        False if the primitive wraps no jaxpr.
    """
    inner = inner_jaxpr(eqn)
    if inner is None:
        return False
    operands = [index_sets(deps, v) for v in eqn.invars]
    for outvar, sets in zip(eqn.outvars, prop_jaxpr(inner, operands), strict=False):
        deps[outvar] = sets
    return True
