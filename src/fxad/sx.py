"""Functions defined by sympy expressions (scalar expression graph).

Inputs are matrices of distinct sympy symbols, outputs are matrices of
expressions in those symbols.
Exact zeros are structural zeros of the slot patterns,
and dependencies come straight from the free symbols of every entry,
so the detected Jacobian sparsity is exact.

Create symbols with ``real=True``:
sympy differentiates ``Abs`` and friends as complex functions otherwise.
"""

from __future__ import annotations

import functools
import logging
import operator
from collections.abc import Sequence
from functools import cached_property
from typing import Any

import jax.numpy as jnp
import numpy as np
import sympy as sp
from numpy.typing import NDArray

from fxad.derivatives import Block, derived_options
from fxad.dispatch import Representation, representation_errors
from fxad.function import Function
from fxad.mx import jax_adjoint, jax_forward
from fxad.options import FunctionOptions
from fxad.pattern import SparsityPattern
from fxad.propagation import DependencyBits, propagate_dependencies
from fxad.slots import unvec, vec

logger = logging.getLogger(__name__)

_UNARY: dict[type, str] = {
    sp.sin: "sin",
    sp.cos: "cos",
    sp.tan: "tan",
    sp.exp: "exp",
    sp.log: "log",
    sp.Abs: "abs",
    sp.sign: "sign",
    sp.sinh: "sinh",
    sp.cosh: "cosh",
    sp.tanh: "tanh",
    sp.asin: "arcsin",
    sp.acos: "arccos",
    sp.atan: "arctan",
    sp.asinh: "arcsinh",
    sp.acosh: "arccosh",
    sp.atanh: "arctanh",
    sp.floor: "floor",
    sp.ceiling: "ceil",
}


class ArrayLowering:
    """Evaluate sympy expressions with an array namespace (``numpy`` or ``jax.numpy``).

    Shared subexpressions are evaluated once per lowering.
    """

    def __init__(self, env: dict[sp.Symbol, Any], xp=np) -> None:
        self.env = env
        self.xp = xp
        self._memo: dict[sp.Basic, Any] = {}

    def __call__(self, e: sp.Basic):
        if e in self._memo:
            return self._memo[e]
        value = self._lower(e)
        self._memo[e] = value
        return value

    def _lower(self, e: sp.Basic):
        xp = self.xp
        if e.is_Symbol:
            return self.env[e]
        if e.is_number:
            return float(e)
        if e.func in _UNARY:
            return getattr(xp, _UNARY[e.func])(self(e.args[0]))
        if e.is_Add:
            return functools.reduce(operator.add, map(self, e.args))
        if e.is_Mul:
            return functools.reduce(operator.mul, map(self, e.args))
        if e.is_Pow:
            base, exponent = e.args
            if exponent.is_Integer:
                return self(base) ** int(exponent)
            if exponent.is_number:
                return self(base) ** float(exponent)
            return xp.power(self(base), self(exponent))
        if e.func is sp.atan2:
            return xp.arctan2(self(e.args[0]), self(e.args[1]))
        if e.func is sp.Max:
            return functools.reduce(xp.maximum, map(self, e.args))
        if e.func is sp.Min:
            return functools.reduce(xp.minimum, map(self, e.args))
        if e.func is sp.Heaviside:
            at_zero = float(e.args[1]) if len(e.args) > 1 else 0.5
            return xp.heaviside(self(e.args[0]), at_zero)
        msg = f"Cannot evaluate '{e.func.__name__}' numerically: {e}"
        raise NotImplementedError(msg)


def as_matrix(x: Any) -> sp.Matrix:
    """Sympy matrix of ``x``; scalars become ``1x1``."""
    if isinstance(x, sp.MatrixBase):
        return sp.Matrix(x)
    return sp.Matrix([[sp.sympify(x)]])


def sx_sparsity(m: sp.MatrixBase) -> SparsityPattern:
    """Pattern of the entries of ``m`` that are not exactly zero."""
    mask = np.zeros(m.shape, dtype=bool)
    for r in range(m.rows):
        for c in range(m.cols):
            mask[r, c] = m[r, c] != 0
    return SparsityPattern.from_dense(mask) if mask.size else SparsityPattern.empty(*m.shape)


def sx_vec(m: sp.MatrixBase) -> list[sp.Basic]:
    """Column-major entries of a sympy matrix."""
    return [m[r, c] for c in range(m.cols) for r in range(m.rows)]


def sx_unvec(entries: Sequence[sp.Basic], shape: tuple[int, int]) -> sp.Matrix:
    nrow, ncol = shape
    return sp.Matrix(nrow, ncol, lambda r, c: entries[r + c * nrow])


class SXFunction(Function):
    """Function of symbolic matrices.

    Args:
        inputs: One matrix of distinct symbols per input slot.
            Exact zeros mark structural zeros of the input.
        outputs: One matrix (or scalar expression) per output slot.
        options: Function options.

    Example:
        >>> z = sp.Matrix(sp.symbols("z0 z1", real=True))
        >>> f = SXFunction([z], [sp.Matrix([z[0] * z[1], z[0] + z[1]])]).init()
        >>> f.jacobian()([2.0, 5.0])[0]
        array([[5., 2.],
               [1., 1.]])
    """

    representations = frozenset(Representation)

    def __init__(
        self,
        inputs: Sequence[Any],
        outputs: Sequence[Any],
        options: FunctionOptions | dict[str, Any] | None = None,
    ) -> None:
        self._in_exprs = [as_matrix(x) for x in inputs]
        self._out_exprs = [as_matrix(y) for y in outputs]
        seen: set[sp.Symbol] = set()
        for k, m in enumerate(self._in_exprs):
            for e in m:
                if e == 0:
                    continue
                if not isinstance(e, sp.Symbol):
                    msg = f"Input {k} must contain only symbols and zeros, got {e}"
                    raise ValueError(msg)
                if e in seen:
                    msg = f"Symbol {e} appears in more than one input entry"
                    raise ValueError(msg)
                seen.add(e)
        super().__init__(
            [sx_sparsity(m) for m in self._in_exprs],
            [sx_sparsity(m) for m in self._out_exprs],
            options,
        )

    def input_expr(self, iind: int = 0) -> sp.Matrix:
        return self._in_exprs[iind].copy()

    def output_expr(self, oind: int = 0) -> sp.Matrix:
        return self._out_exprs[oind].copy()

    def _init(self) -> None:
        self._in_entries = [sx_vec(m) for m in self._in_exprs]
        self._out_entries = [sx_vec(m) for m in self._out_exprs]
        self._ids: dict[sp.Symbol, int] = {}
        offset = 0
        for entries in self._in_entries:
            for k, e in enumerate(entries):
                if isinstance(e, sp.Symbol):
                    self._ids[e] = offset + k
            offset += len(entries)
        for j, m in enumerate(self._out_exprs):
            unknown = m.free_symbols - self._ids.keys()
            if unknown:
                msg = f"Output {j} of '{self.name}' has free symbols {sorted(map(str, unknown))}"
                raise ValueError(msg)
        self._blocks: dict[tuple[int, int], list[tuple[int, int, sp.Basic]]] = {}

    # Evaluation

    def _env(self, args: list, xp) -> dict[sp.Symbol, Any]:
        env = {}
        for entries, arg in zip(self._in_entries, args, strict=True):
            flat = vec(arg, xp)
            for k, e in enumerate(entries):
                if isinstance(e, sp.Symbol):
                    env[e] = flat[k]
        return env

    def _subs(self, args: list) -> dict[sp.Symbol, sp.Basic]:
        subs = {}
        for entries, arg in zip(self._in_entries, args, strict=True):
            for e, value in zip(entries, sx_vec(arg), strict=True):
                if isinstance(e, sp.Symbol):
                    subs[e] = value
        return subs

    def _lower_outputs(self, args: list, xp) -> list:
        lower = ArrayLowering(self._env(args, xp), xp)
        rep = Representation.NUMERIC if xp is np else Representation.MATRIX_GRAPH
        result = []
        for k, (entries, sp_out) in enumerate(
            zip(self._out_entries, self._output_sparsity, strict=True)
        ):
            with representation_errors(rep, k):
                if xp is np:
                    flat = np.array([lower(e) for e in entries], dtype=np.float64)
                elif entries:
                    flat = jnp.stack([jnp.asarray(lower(e)) for e in entries])
                else:
                    flat = jnp.zeros(0)
            result.append(unvec(flat, sp_out.shape, xp))
        return result

    def _mx_graph(self, *args) -> list:
        return self._lower_outputs(list(args), jnp)

    def _evaluate(self, rep, args):
        if rep is Representation.SCALAR_GRAPH:
            subs = self._subs(args)
            return [m.xreplace(subs) for m in self._out_exprs]
        return self._lower_outputs(args, np if rep is Representation.NUMERIC else jnp)

    def _block(self, oind: int, iind: int) -> list[tuple[int, int, sp.Basic]]:
        """Symbolic nonzeros ``(row, col, derivative)`` of one Jacobian block."""
        key = (oind, iind)
        if key not in self._blocks:
            pattern = self.jac_sparsity(iind, oind)
            outs = self._out_entries[oind]
            syms = self._in_entries[iind]
            triples = []
            for r, c in zip(pattern.row.tolist(), pattern.cols.tolist(), strict=True):
                if not isinstance(syms[c], sp.Symbol):
                    continue
                d = sp.diff(outs[r], syms[c])
                if d != 0:
                    triples.append((r, c, d))
            self._blocks[key] = triples
        return self._blocks[key]

    def _jacobians(self, rep: Representation, args: list) -> dict[tuple[int, int], Any]:
        """Jacobian blocks at ``args``: dense arrays when numeric, sympy matrices otherwise."""
        if rep is Representation.NUMERIC:
            lower = ArrayLowering(self._env(args, np), np)
        else:
            subs = self._subs(args)
        jacobians = {}
        for o, sp_out in enumerate(self._output_sparsity):
            for i, sp_in in enumerate(self._input_sparsity):
                triples = self._block(o, i)
                if not triples:
                    continue
                if rep is Representation.NUMERIC:
                    jac = np.zeros((sp_out.numel, sp_in.numel))
                    for r, c, d in triples:
                        jac[r, c] = lower(d)
                else:
                    jac = sp.zeros(sp_out.numel, sp_in.numel)
                    for r, c, d in triples:
                        jac[r, c] = d.xreplace(subs)
                jacobians[(o, i)] = jac
        return jacobians

    def _forward(self, rep, args, res, fseeds):
        if rep is Representation.MATRIX_GRAPH:
            return jax_forward(self._mx_graph, args, fseeds)
        jacobians = self._jacobians(rep, args)
        return [
            [
                self._apply(rep, jacobians, seeds, o, transpose=False)
                for o in range(self.n_out)
            ]
            for seeds in fseeds
        ]

    def _adjoint(self, rep, args, res, aseeds):
        if rep is Representation.MATRIX_GRAPH:
            return jax_adjoint(self._mx_graph, args, aseeds)
        jacobians = self._jacobians(rep, args)
        return [
            [
                self._apply(rep, jacobians, seeds, i, transpose=True)
                for i in range(self.n_in)
            ]
            for seeds in aseeds
        ]

    def _apply(self, rep, jacobians, seeds, target: int, transpose: bool):
        """Sum of ``J @ vec(seed)`` (or ``J.T @ vec(seed)``) into slot ``target``."""
        if transpose:
            shape = self._input_sparsity[target].shape
            terms = [
                (jacobians[(j, target)].T, seeds[j])
                for j in range(self.n_out)
                if (j, target) in jacobians
            ]
        else:
            shape = self._output_sparsity[target].shape
            terms = [
                (jacobians[(target, i)], seeds[i])
                for i in range(self.n_in)
                if (target, i) in jacobians
            ]
        if rep is Representation.NUMERIC:
            acc = np.zeros(shape[0] * shape[1])
            for jac, seed in terms:
                acc = acc + jac @ vec(seed)
            return unvec(acc, shape)
        acc = sp.zeros(shape[0] * shape[1], 1)
        for jac, seed in terms:
            acc = acc + jac * sp.Matrix(sx_vec(seed))
        return sx_unvec(list(acc), shape)

    # Sparsity

    @cached_property
    def _dependencies(self) -> list[list[NDArray[np.intp]]]:
        dependencies = []
        for entries in self._out_entries:
            dependencies.append(
                [
                    np.array(sorted(self._ids[s] for s in e.free_symbols), dtype=np.intp)
                    for e in entries
                ]
            )
        return dependencies

    def _can_propagate(self, fwd: bool) -> bool:
        return True

    def _propagate(self, fwd: bool, bits: DependencyBits) -> None:
        propagate_dependencies(self._dependencies, bits, fwd)

    # Derivatives

    def _jacobian_blocks(self, blocks: list[Block]) -> SXFunction:
        """Differentiate the structural nonzeros symbolically."""
        outputs = []
        for block in blocks:
            if block.iind is None:
                outputs.append(self._out_exprs[block.oind])
                continue
            sp_out = self._output_sparsity[block.oind]
            sp_in = self._input_sparsity[block.iind]
            jac = sp.zeros(sp_out.numel, sp_in.numel)
            for r, c, d in self._block(block.oind, block.iind):
                jac[r, c] = d
            outputs.append(jac.T if block.transpose else jac)
        return SXFunction(self._in_exprs, outputs, derived_options(self, blocks))
