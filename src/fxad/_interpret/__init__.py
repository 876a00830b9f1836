"""Propagate per-element dependency sets through a jaxpr.

Every primitive has a rule mapping the dependency sets of its operands
to those of its results.
Element-wise primitives keep per-element dependencies,
reductions union them, data movement permutes them.

`prop_jaxpr` walks the equations of a jaxpr and applies the rule of each.
Primitives without a rule get the conservative all-to-all rule.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from jax._src.core import Jaxpr, JaxprEqn

from ._commons import Deps, IndexSets, atom_numel, empty_sets, index_sets, union_all
from ._contraction import prop_dot_general, prop_reduce
from ._control import prop_call, prop_cond, prop_select_n
from ._elementwise import (
    prop_elementwise,
    prop_integer_pow,
    prop_passthrough,
    prop_zero_derivative,
)
from ._structural import (
    prop_broadcast_in_dim,
    prop_concatenate,
    prop_dynamic_slice,
    prop_dynamic_update_slice,
    prop_pad,
    prop_reshape,
    prop_rev,
    prop_slice,
    prop_split,
    prop_squeeze,
    prop_transpose,
)

logger = logging.getLogger(__name__)

Rule = Callable[[JaxprEqn, Deps], None]

_ELEMENTWISE = (
    "neg", "exp", "exp2", "log", "log1p", "expm1", "sin", "cos", "tan",
    "asin", "acos", "atan", "sinh", "cosh", "tanh", "asinh", "acosh", "atanh",
    "sqrt", "rsqrt", "cbrt", "abs", "logistic", "square", "erf", "erfc",
    "erf_inv", "lgamma", "digamma", "real", "imag", "conj",
    "add", "add_any", "sub", "mul", "div", "pow", "max", "min", "atan2",
    "rem", "nextafter", "complex", "clamp",
)  # fmt: skip

_ZERO_DERIVATIVE = (
    "floor", "ceil", "round", "sign", "is_finite", "eq", "ne", "lt", "le",
    "gt", "ge", "and", "or", "not", "xor", "argmax", "argmin", "iota",
    "reduce_and", "reduce_or", "reduce_xor", "population_count", "clz",
    "shift_left", "shift_right_logical", "shift_right_arithmetic", "stop_gradient",
)  # fmt: skip

_PASSTHROUGH = (
    "convert_element_type", "bitcast_convert_type", "reduce_precision",
    "copy", "copy_p",
)  # fmt: skip

RULES: dict[str, Rule] = {
    **dict.fromkeys(_ELEMENTWISE, prop_elementwise),
    **dict.fromkeys(_ZERO_DERIVATIVE, prop_zero_derivative),
    **dict.fromkeys(_PASSTHROUGH, prop_passthrough),
    **dict.fromkeys(("reduce_sum", "reduce_max", "reduce_min", "reduce_prod"), prop_reduce),
    "integer_pow": prop_integer_pow,
    "broadcast_in_dim": prop_broadcast_in_dim,
    "reshape": prop_reshape,
    "squeeze": prop_squeeze,
    "transpose": prop_transpose,
    "rev": prop_rev,
    "slice": prop_slice,
    "concatenate": prop_concatenate,
    "split": prop_split,
    "dynamic_slice": prop_dynamic_slice,
    "dynamic_update_slice": prop_dynamic_update_slice,
    "pad": prop_pad,
    "dot_general": prop_dot_general,
    "select_n": prop_select_n,
}

_CALLS = frozenset(
    {
        "jit", "pjit", "closed_call", "core_call", "named_call", "remat", "checkpoint",
        "custom_jvp_call", "custom_vjp_call", "custom_vjp_call_jaxpr",
    }
)  # fmt: skip

_warned: set[str] = set()


def prop_jaxpr(jaxpr: Jaxpr, input_indices: list[IndexSets]) -> list[IndexSets]:
    """Propagate dependency sets from the inputs of a jaxpr to its outputs.

    Args:
        jaxpr: The jaxpr to analyze.
        input_indices: Dependency sets of each input variable,
            in row-major element order.

    Returns:
        Dependency sets of each output variable.
        Captured constants depend on nothing.
    """
    deps: Deps = {}
    for var, sets in zip(jaxpr.invars, input_indices, strict=False):
        deps[var] = sets
    for var in jaxpr.constvars:
        deps[var] = empty_sets(atom_numel(var))
    for eqn in jaxpr.eqns:
        prop_dispatch(eqn, deps)
    return [index_sets(deps, outvar) for outvar in jaxpr.outvars]


def prop_dispatch(eqn: JaxprEqn, deps: Deps) -> None:
    """Apply the rule of a single equation."""
    name = eqn.primitive.name
    rule = RULES.get(name)
    if rule is not None:
        rule(eqn, deps)
    elif name == "cond":
        prop_cond(eqn, deps, prop_jaxpr)
    elif name in _CALLS and prop_call(eqn, deps, prop_jaxpr):
        pass
    else:
        prop_conservative_fallback(eqn, deps)


def prop_conservative_fallback(eqn: JaxprEqn, deps: Deps) -> None:
    """Every output element may depend on every input element.

    Sound but possibly far from tight; a warning is logged once per primitive.
    """
    name = eqn.primitive.name
    if name not in _warned:
        _warned.add(name)
        logger.warning(
            "No dependency rule for primitive '%s', "
            "assuming every output depends on every input",
            name,
        )
    combined = union_all(union_all(index_sets(deps, v)) for v in eqn.invars)
    for outvar in eqn.outvars:
        deps[outvar] = [combined.copy() for _ in range(atom_numel(outvar))]


__all__ = ["RULES", "prop_conservative_fallback", "prop_dispatch", "prop_jaxpr"]
