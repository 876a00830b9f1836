"""Evaluation of a function in one representation with forward and adjoint seeds.

The numeric path reads and writes the slot buffers of the function.
The symbolic paths take and return values directly:
sympy matrices for the scalar graph, jax arrays or tracers for the matrix graph.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any, NamedTuple

import jax
import jax.numpy as jnp
import numpy as np

from fxad.errors import (
    DimensionMismatchError,
    EvaluationError,
    FunctionError,
    OutOfRangeError,
    UnsupportedOperationError,
)

if TYPE_CHECKING:
    from fxad.function import Function
    from fxad.pattern import SparsityPattern

logger = logging.getLogger(__name__)


class Representation(str, Enum):
    """Domain a function can be evaluated in."""

    NUMERIC = "numeric"
    SCALAR_GRAPH = "sx"
    MATRIX_GRAPH = "mx"

    def __str__(self) -> str:
        return self.value


class EvalResult(NamedTuple):
    """Outputs and directional derivatives of a symbolic evaluation.

    Attributes:
        res: One value per output slot.
        fsens: ``fsens[d][j]``, forward sensitivity of output ``j`` in direction ``d``.
        asens: ``asens[d][i]``, adjoint sensitivity of input ``i`` in direction ``d``.
    """

    res: list
    fsens: list[list]
    asens: list[list]


@contextmanager
def representation_errors(rep: Representation, slot: int | None = None) -> Iterator[None]:
    """Re-raise failures of a representation kernel as `EvaluationError`.

    Errors of this package pass through unchanged.
    """
    try:
        yield
    except FunctionError:
        raise
    except Exception as exc:
        raise EvaluationError(rep, slot, f"{type(exc).__name__}: {exc}") from exc


def _single_slot(count: int) -> int | None:
    """A pass that produces one slot can blame its failures on that slot."""
    return 0 if count == 1 else None


def require_representation(fcn: Function, rep: Representation) -> None:
    if rep not in fcn.representations:
        supported = ", ".join(sorted(str(r) for r in fcn.representations))
        msg = (
            f"{type(fcn).__name__} '{fcn.name}' cannot be evaluated in "
            f"representation '{rep}' (supported: {supported})"
        )
        raise UnsupportedOperationError(msg)


def _check_values(
    values: Sequence[Any],
    sparsity: Sequence[SparsityPattern],
    what: str,
) -> None:
    if len(values) != len(sparsity):
        msg = f"Expected {len(sparsity)} {what} values, got {len(values)}"
        raise DimensionMismatchError(msg)
    for k, (value, pattern) in enumerate(zip(values, sparsity, strict=True)):
        shape = tuple(getattr(value, "shape", ()))
        if shape != pattern.shape:
            msg = f"{what} {k} has shape {shape}, expected {pattern.shape}"
            raise DimensionMismatchError(msg)


def _store_numeric(
    buffers: Sequence[np.ndarray],
    values: Sequence[Any],
    sparsity: Sequence[SparsityPattern],
    what: str,
) -> None:
    arrays = []
    for k, v in enumerate(values):
        with representation_errors(Representation.NUMERIC, k):
            arrays.append(np.asarray(v, dtype=np.float64))
    _check_values(arrays, sparsity, what)
    for buf, arr in zip(buffers, arrays, strict=True):
        buf[...] = arr


def evaluate_buffers(
    fcn: Function, nfdir: int, nadir: int, *, output_given: bool = False
) -> None:
    """Numeric evaluation on the slot buffers of ``fcn``.

    Seeds of directions ``>= nfdir`` (``>= nadir``) are left untouched
    and their sensitivity buffers keep their previous contents.

    Raises:
        OutOfRangeError: If more directions are requested than allocated.
        UnsupportedOperationError: If the function lacks a requested sweep.
        EvaluationError: If the numeric kernel fails.
    """
    fcn.assert_init()
    store = fcn._store
    if not (0 <= nfdir <= store.n_fwd and 0 <= nadir <= store.n_adj):
        msg = (
            f"Requested {nfdir} forward and {nadir} adjoint directions, "
            f"'{fcn.name}' has {store.n_fwd} and {store.n_adj}; "
            "call request_directions() first"
        )
        raise OutOfRangeError(msg)
    rep = Representation.NUMERIC
    require_representation(fcn, rep)

    in_sp = [s.sparsity for s in store.inputs]
    out_sp = [s.sparsity for s in store.outputs]
    args = [s.data for s in store.inputs]
    for arg in args:
        arg.flags.writeable = False
    start = time.perf_counter()
    try:
        if not output_given:
            with representation_errors(rep, _single_slot(fcn.n_out)):
                res = fcn._evaluate(rep, args)
            _store_numeric([s.data for s in store.outputs], res, out_sp, "output")
        res = [s.data for s in store.outputs]

        if nfdir:
            fseeds = [[s.fwd[d] for s in store.inputs] for d in range(nfdir)]
            with representation_errors(rep, _single_slot(fcn.n_out)):
                fsens = fcn._forward(rep, args, res, fseeds)
            for d in range(nfdir):
                _store_numeric(
                    [s.fwd[d] for s in store.outputs], fsens[d], out_sp, "forward sensitivity"
                )

        if nadir:
            aseeds = [[s.adj[d] for s in store.outputs] for d in range(nadir)]
            with representation_errors(rep, _single_slot(fcn.n_in)):
                asens = fcn._adjoint(rep, args, res, aseeds)
            for d in range(nadir):
                _store_numeric(
                    [s.adj[d] for s in store.inputs], asens[d], in_sp, "adjoint sensitivity"
                )
    finally:
        for arg in args:
            arg.flags.writeable = True

    elapsed = time.perf_counter() - start
    fcn._stats = {
        "n_eval": fcn._stats.get("n_eval", 0) + 1,
        "t_eval": elapsed,
        "n_fwd": nfdir,
        "n_adj": nadir,
        "output_given": output_given,
    }
    logger.debug(
        "Evaluated '%s' numerically with %d forward and %d adjoint directions in %.3g s",
        fcn.name,
        nfdir,
        nadir,
        elapsed,
    )


def evaluate_symbolic(
    fcn: Function,
    rep: Representation,
    arg: Sequence[Any],
    fseed: Sequence[Sequence[Any]],
    aseed: Sequence[Sequence[Any]],
    res: Sequence[Any] | None = None,
) -> EvalResult:
    """Evaluate ``fcn`` on symbolic values of representation ``rep``."""
    fcn.assert_init()
    require_representation(fcn, rep)
    in_sp = list(fcn._input_sparsity)
    out_sp = list(fcn._output_sparsity)

    arg = list(arg)
    _check_values(arg, in_sp, "argument")
    fseed = [list(s) for s in fseed]
    aseed = [list(s) for s in aseed]
    for seeds in fseed:
        _check_values(seeds, in_sp, "forward seed")
    for seeds in aseed:
        _check_values(seeds, out_sp, "adjoint seed")

    if res is None:
        with representation_errors(rep, _single_slot(fcn.n_out)):
            res = list(fcn._evaluate(rep, arg))
    else:
        res = list(res)
    _check_values(res, out_sp, "output")

    fsens: list[list] = []
    asens: list[list] = []
    if fseed:
        with representation_errors(rep, _single_slot(fcn.n_out)):
            fsens = [list(s) for s in fcn._forward(rep, arg, res, fseed)]
    if aseed:
        with representation_errors(rep, _single_slot(fcn.n_in)):
            asens = [list(s) for s in fcn._adjoint(rep, arg, res, aseed)]
    logger.debug(
        "Evaluated '%s' in representation '%s' with %d forward and %d adjoint directions",
        fcn.name,
        rep,
        len(fseed),
        len(aseed),
    )
    return EvalResult(res, fsens, asens)


def map_matrix_graph(
    fcn: Function, arg_sets: Sequence[Sequence[Any]], *, parallel: bool = False
) -> list[list]:
    """Outputs of ``fcn`` for several argument sets in the matrix graph.

    With ``parallel`` the sets are stacked and evaluated in one ``jax.vmap``;
    otherwise they are evaluated one after the other.
    """
    fcn.assert_init()
    rep = Representation.MATRIX_GRAPH
    require_representation(fcn, rep)
    arg_sets = [list(a) for a in arg_sets]
    for k, arg in enumerate(arg_sets):
        if len(arg) != fcn.n_in:
            msg = f"Argument set {k} has {len(arg)} values, expected {fcn.n_in}"
            raise DimensionMismatchError(msg)
    logger.debug(
        "Mapping '%s' over %d argument sets (parallel=%s)", fcn.name, len(arg_sets), parallel
    )
    # vmap needs at least one mapped argument
    if not parallel or not arg_sets or fcn.n_in == 0:
        return [evaluate_symbolic(fcn, rep, arg, (), ()).res for arg in arg_sets]

    def one(*arg):
        return evaluate_symbolic(fcn, rep, arg, (), ()).res

    stacked = [jnp.stack([jnp.asarray(a[i]) for a in arg_sets]) for i in range(fcn.n_in)]
    batched = jax.vmap(one)(*stacked)
    return [[out[k] for out in batched] for k in range(len(arg_sets))]
