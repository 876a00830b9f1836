"""Types and helpers shared by the dependency rules."""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Sequence

import numpy as np
from jax._src.core import Jaxpr, Literal, Var

IndexSets = list[set[int]]
"""Per-element dependency sets of an array, in row-major element order."""

Deps = dict[Var, IndexSets]
"""Dependency sets of every variable seen so far."""

Atom = Var | Literal

PropJaxprFn = Callable[[Jaxpr, list[IndexSets]], list[IndexSets]]
"""Signature of ``prop_jaxpr``, handed to rules that recurse into nested jaxprs."""


def numel(shape: Sequence[int]) -> int:
    return math.prod(shape) if shape else 1


def atom_shape(atom: Atom) -> tuple[int, ...]:
    if isinstance(atom, Literal):
        return tuple(np.shape(atom.val))
    return tuple(getattr(atom.aval, "shape", ()))


def atom_numel(atom: Atom) -> int:
    return numel(atom_shape(atom))


def empty_sets(n: int) -> IndexSets:
    return [set() for _ in range(n)]


def index_sets(deps: Deps, atom: Atom) -> IndexSets:
    """Dependency sets of an atom; literals and unknown variables depend on nothing."""
    if isinstance(atom, Literal):
        return empty_sets(atom_numel(atom))
    found = deps.get(atom)
    return found if found is not None else empty_sets(atom_numel(atom))


def union_all(sets: Iterable[set[int]]) -> set[int]:
    result: set[int] = set()
    for s in sets:
        result |= s
    return result


def position_map(shape: Sequence[int]) -> np.ndarray:
    """Array holding the row-major flat position of each of its elements.

    Applying a data-movement operation to it shows which input element
    every output element reads.
    """
    return np.arange(numel(shape)).reshape(shape)


def take_sets(sets: IndexSets, positions: np.ndarray) -> IndexSets:
    """Output element ``k`` copies the set of input element ``positions.flat[k]``."""
    return [sets[p].copy() for p in np.ravel(positions)]
