"""Functions defined by a JAX-traceable callable (matrix expression graph).

The callable is traced once into a jaxpr at ``init()``.
Numeric evaluation runs the compiled jaxpr,
directional derivatives use ``jax.linearize`` and ``jax.vjp``,
and dependency bits are propagated through the jaxpr equations.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from functools import cached_property
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np
from jax._src.core import eval_jaxpr
from numpy.typing import NDArray

from fxad._interpret import prop_jaxpr
from fxad.coloring import color_jacobian_pattern
from fxad.derivatives import Block, derived_options
from fxad.dispatch import Representation
from fxad.errors import ShapeError, UnsupportedOperationError
from fxad.function import Function
from fxad.options import FunctionOptions
from fxad.pattern import ColoredPattern, SparsityPattern
from fxad.propagation import DependencyBits, propagate_dependencies
from fxad.slots import unvec, vec

logger = logging.getLogger(__name__)


def slot_shape(shape: int | Sequence[int]) -> tuple[int, int]:
    """2-D slot shape of an array shape: scalars are 1x1, vectors are columns."""
    shape = (shape,) if isinstance(shape, int) else tuple(shape)
    if len(shape) == 0:
        return (1, 1)
    if len(shape) == 1:
        return (shape[0], 1)
    if len(shape) == 2:
        return (shape[0], shape[1])
    msg = f"Slots hold at most 2-D values, got shape {shape}"
    raise ShapeError(msg)


def as_slot_value(x: jax.Array) -> jax.Array:
    x = jnp.asarray(x)
    return jnp.reshape(x, slot_shape(x.shape))


def jax_forward(
    fn: Callable, primals: Sequence[Any], fseeds: Sequence[Sequence[Any]]
) -> list[list]:
    """Forward directional derivatives of ``fn``, linearizing once for all directions."""
    _, lin = jax.linearize(fn, *primals)
    result = []
    for seeds in fseeds:
        tangents = [jnp.asarray(s, dtype=p.dtype) for s, p in zip(seeds, primals, strict=True)]
        result.append(list(lin(*tangents)))
    return result


def jax_adjoint(
    fn: Callable, primals: Sequence[Any], aseeds: Sequence[Sequence[Any]]
) -> list[list]:
    """Adjoint directional derivatives of ``fn``, pulling back each direction."""
    out, pullback = jax.vjp(fn, *primals)
    result = []
    for seeds in aseeds:
        cotangents = [jnp.asarray(w, dtype=o.dtype) for w, o in zip(seeds, out, strict=True)]
        result.append(list(pullback(cotangents)))
    return result


def _require_x64() -> None:
    """Numeric slot values are float64, which JAX computes only with x64 enabled."""
    if jnp.result_type(float) != jnp.float64:
        msg = (
            "MXFunction needs 64-bit JAX floats; call "
            "jax.config.update(\"jax_enable_x64\", True) before building functions"
        )
        raise UnsupportedOperationError(msg)


def _to_numeric(values: Sequence[Any]) -> list[NDArray[np.float64]]:
    return [np.asarray(v, dtype=np.float64) for v in values]


class MXFunction(Function):
    """Function of dense matrix inputs given as a JAX-traceable callable.

    Args:
        fn: Callable taking one array per input and returning an array
            or a tuple of arrays.
            Every returned array becomes an output slot:
            scalars become ``1x1``, vectors become columns.
        input_shapes: Shape of each argument of ``fn``;
            an integer stands for a vector of that length.
        options: Function options.

    Example:
        >>> f = MXFunction(lambda x: (x[0] * x[1], x[0] + x[1]), [2]).init()
        >>> f([2.0, 5.0])
    """

    representations = frozenset({Representation.NUMERIC, Representation.MATRIX_GRAPH})

    def __init__(
        self,
        fn: Callable,
        input_shapes: Sequence[int | Sequence[int]],
        options: FunctionOptions | dict[str, Any] | None = None,
    ) -> None:
        _require_x64()
        self.fn = fn
        self._arg_shapes = [
            (s,) if isinstance(s, int) else tuple(s) for s in input_shapes
        ]
        in_shapes = [slot_shape(s) for s in self._arg_shapes]
        self._dtype = jnp.result_type(float)
        specs = [jax.ShapeDtypeStruct(s, self._dtype) for s in in_shapes]
        out_specs = jax.eval_shape(self._slot_fn, *specs)
        super().__init__(
            [SparsityPattern.dense(*s) for s in in_shapes],
            [SparsityPattern.dense(*o.shape) for o in out_specs],
            options,
        )
        self._closed = None
        self._compiled = None

    def _slot_fn(self, *args):
        """``fn`` on slot-shaped arguments, returning slot-shaped outputs."""
        out = self.fn(*[jnp.reshape(a, s) for a, s in zip(args, self._arg_shapes, strict=True)])
        outs = out if isinstance(out, (tuple, list)) else (out,)
        return [as_slot_value(o) for o in outs]

    def _init(self) -> None:
        dummies = [jnp.zeros(sp.shape, dtype=self._dtype) for sp in self._input_sparsity]
        self._closed = jax.make_jaxpr(self._slot_fn)(*dummies)
        self._compiled = jax.jit(self._graph)
        logger.debug(
            "Traced '%s' into a jaxpr with %d equations",
            self.name,
            len(self._closed.jaxpr.eqns),
        )

    @property
    def jaxpr(self):
        """The traced ``ClosedJaxpr``, available after ``init()``."""
        self.assert_init()
        return self._closed

    def _graph(self, *args) -> list:
        return eval_jaxpr(self._closed.jaxpr, self._closed.consts, *args)

    def _primals(self, rep: Representation, args: list) -> list:
        if rep is Representation.NUMERIC:
            _require_x64()
            return [jnp.asarray(a, dtype=self._dtype) for a in args]
        return list(args)

    def _evaluate(self, rep, args):
        if rep is Representation.NUMERIC:
            return _to_numeric(self._compiled(*self._primals(rep, args)))
        return self._graph(*args)

    def _forward(self, rep, args, res, fseeds):
        fn = self._compiled if rep is Representation.NUMERIC else self._graph
        sens = jax_forward(fn, self._primals(rep, args), fseeds)
        if rep is Representation.NUMERIC:
            return [_to_numeric(s) for s in sens]
        return sens

    def _adjoint(self, rep, args, res, aseeds):
        fn = self._compiled if rep is Representation.NUMERIC else self._graph
        sens = jax_adjoint(fn, self._primals(rep, args), aseeds)
        if rep is Representation.NUMERIC:
            return [_to_numeric(s) for s in sens]
        return sens

    # Sparsity

    @cached_property
    def _dependencies(self) -> list[list[NDArray[np.intp]]]:
        """Global input ids each output entry depends on, in column-major order.

        JAX numbers elements row-major while slot entries are numbered
        column-major, so ids are permuted on the way in and out.
        """
        input_indices = []
        offset = 0
        for sp in self._input_sparsity:
            ids = unvec(np.arange(sp.numel) + offset, sp.shape)
            input_indices.append([{int(k)} for k in ids.ravel()])
            offset += sp.numel
        output_indices = prop_jaxpr(self._closed.jaxpr, input_indices)

        dependencies = []
        for sets, sp in zip(output_indices, self._output_sparsity, strict=True):
            row_major = vec(np.arange(sp.numel).reshape(sp.shape))
            dependencies.append(
                [np.array(sorted(sets[p]), dtype=np.intp) for p in row_major]
            )
        return dependencies

    def _can_propagate(self, fwd: bool) -> bool:
        return True

    def _propagate(self, fwd: bool, bits: DependencyBits) -> None:
        propagate_dependencies(self._dependencies, bits, fwd)

    # Derivatives

    def _jacobian_blocks(self, blocks: list[Block]) -> MXFunction:
        """Trace colored directional derivatives and their decompression.

        The result is again an `MXFunction`, so it can be differentiated
        and its sparsity propagated like any other.
        """
        plans = []
        for iind in dict.fromkeys(b.iind for b in blocks if b.iind is not None):
            oinds = sorted({b.oind for b in blocks if b.iind == iind})
            stacked = SparsityPattern.vstack([self.jac_sparsity(iind, o) for o in oinds])
            colored = color_jacobian_pattern(stacked, self.options.ad_mode)
            plans.append((iind, oinds, colored, _color_masks(colored)))

        graph = self._graph
        in_sp = self._input_sparsity
        out_sp = self._output_sparsity

        def jacobian_fn(*args):
            args = list(args)
            outputs = None
            lin = pullback = None
            jacobians = {}
            for iind, oinds, colored, masks in plans:
                jac = jnp.zeros(colored.sparsity.shape, dtype=args[iind].dtype)
                seeds = colored.seed_matrix
                if colored.mode == "forward":
                    if lin is None and colored.num_colors:
                        outputs, lin = jax.linearize(graph, *args)
                    for c in range(colored.num_colors):
                        tangents = [jnp.zeros_like(a) for a in args]
                        tangents[iind] = unvec(
                            jnp.asarray(seeds[c], dtype=args[iind].dtype), in_sp[iind].shape, jnp
                        )
                        t_out = lin(*tangents)
                        column = jnp.concatenate([vec(t_out[o], jnp) for o in oinds])
                        jac = jac + column[:, None] * masks[c]
                else:
                    if pullback is None and colored.num_colors:
                        outputs, pullback = jax.vjp(graph, *args)
                    for c in range(colored.num_colors):
                        cotangents = [jnp.zeros_like(o) for o in outputs]
                        offset = 0
                        for o in oinds:
                            n = out_sp[o].numel
                            cotangents[o] = unvec(
                                jnp.asarray(seeds[c, offset : offset + n], dtype=outputs[o].dtype),
                                out_sp[o].shape,
                                jnp,
                            )
                            offset += n
                        row = vec(pullback(cotangents)[iind], jnp)
                        jac = jac + masks[c] * row[None, :]
                offset = 0
                for o in oinds:
                    n = out_sp[o].numel
                    jacobians[(iind, o)] = jac[offset : offset + n]
                    offset += n

            if outputs is None and any(b.iind is None for b in blocks):
                outputs = graph(*args)
            result = []
            for block in blocks:
                if block.iind is None:
                    result.append(outputs[block.oind])
                else:
                    jac = jacobians[(block.iind, block.oind)]
                    result.append(jac.T if block.transpose else jac)
            return tuple(result)

        return MXFunction(
            jacobian_fn,
            [sp.shape for sp in in_sp],
            derived_options(self, blocks),
        )


def _color_masks(colored: ColoredPattern) -> list[NDArray[np.float64]]:
    """Per-color 0/1 masks scattering compressed derivatives back into the Jacobian.

    Forward: ``J = sum_c column_c[:, None] * masks[c]``.
    Adjoint: ``J = sum_c masks[c] * row_c[None, :]``.
    """
    pattern = colored.sparsity.mask()
    if colored.mode == "forward":
        select = colored.colors[None, :]
    else:
        select = colored.colors[:, None]
    return [(pattern & (select == c)).astype(np.float64) for c in range(colored.num_colors)]
