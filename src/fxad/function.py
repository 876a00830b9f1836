"""Generic multi-input, multi-output function with derivative and sparsity support.

A function is a grid of primitive blocks ``f[i, j]``,
one per (input slot ``i``, output slot ``j``) pair.
Every slot holds a 2-D value.
Writing ``vec`` for the column-major vectorization of a slot,
the directional derivatives computed by `Function.evaluate` are::

    vec(fwd_sens[j]) = sum_i J[j, i] @ vec(fwd_seed[i])
    vec(adj_sens[i]) = sum_j J[j, i].T @ vec(adj_seed[j])

where ``J[j, i]`` is the Jacobian of ``vec(output j)`` w.r.t. ``vec(input i)``.

Concrete functions implement a small capability interface
(`_evaluate`, `_forward`, `_adjoint`, `_can_propagate`, `_propagate`)
once per representation they support.
Evaluation, sparsity propagation and differentiation are written once
against that interface in `fxad.dispatch`, `fxad.propagation` and
`fxad.derivatives`.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np
import sympy as sp
from numpy.typing import ArrayLike, NDArray

from fxad import derivatives, dispatch, propagation
from fxad.dispatch import EvalResult, Representation
from fxad.errors import NotInitializedError, OutOfRangeError, UnsupportedOperationError
from fxad.options import FunctionOptions
from fxad.pattern import SparsityPattern
from fxad.slots import SlotKind, SlotStore, assign

if TYPE_CHECKING:
    from fxad.derivatives import Block
    from fxad.propagation import DependencyBits

logger = logging.getLogger(__name__)

SlotIndex = int | str


class State(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class Function(ABC):
    """Base class of all functions.

    Lifecycle: ``UNINITIALIZED -> INITIALIZING -> READY``.
    Slot counts and options are fixed at construction;
    `init` performs the one-time structural setup and allocates the buffers.
    Evaluation, derivative construction and sparsity queries require READY.
    """

    representations: ClassVar[frozenset[Representation]] = frozenset(
        {Representation.NUMERIC}
    )

    def __init__(
        self,
        input_sparsity: Sequence[SparsityPattern],
        output_sparsity: Sequence[SparsityPattern],
        options: FunctionOptions | dict[str, Any] | None = None,
    ) -> None:
        self.options = (
            options
            if isinstance(options, FunctionOptions)
            else FunctionOptions.from_dict(options)
        )
        self._input_sparsity = tuple(input_sparsity)
        self._output_sparsity = tuple(output_sparsity)
        for kind, scheme, count in (
            (SlotKind.INPUT, self.options.input_scheme, self.n_in),
            (SlotKind.OUTPUT, self.options.output_scheme, self.n_out),
        ):
            if scheme is not None and len(scheme) != count:
                msg = (
                    f"{kind.value} scheme {scheme!r} has {len(scheme)} entries "
                    f"but the function has {count} {kind.value}s"
                )
                raise ValueError(msg)

        self._state = State.UNINITIALIZED
        self._store: SlotStore | None = None
        self._bits: DependencyBits | None = None
        self._stats: dict[str, Any] = {}
        self._sparsity_cache: dict[tuple[int, int, bool], SparsityPattern] = {}
        self._sparsity_lock = threading.RLock()
        self._derivative_cache: dict[tuple, Function] = {}

    # Descriptor

    @property
    def name(self) -> str:
        return self.options.name

    @property
    def n_in(self) -> int:
        return len(self._input_sparsity)

    @property
    def n_out(self) -> int:
        return len(self._output_sparsity)

    @property
    def n_fwd(self) -> int:
        """Number of allocated forward directions."""
        return self._store.n_fwd if self._store is not None else 0

    @property
    def n_adj(self) -> int:
        """Number of allocated adjoint directions."""
        return self._store.n_adj if self._store is not None else 0

    @property
    def state(self) -> State:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._state is State.READY

    def input_sparsity(self, iind: SlotIndex = 0) -> SparsityPattern:
        return self._input_sparsity[self._index(SlotKind.INPUT, iind)]

    def output_sparsity(self, oind: SlotIndex = 0) -> SparsityPattern:
        return self._output_sparsity[self._index(SlotKind.OUTPUT, oind)]

    # Capabilities

    @property
    def has_forward(self) -> bool:
        """Whether forward directional derivatives are available."""
        return True

    @property
    def has_adjoint(self) -> bool:
        """Whether adjoint directional derivatives are available."""
        return True

    @property
    def differentiable(self) -> bool:
        """Whether Jacobian blocks of this function can be built."""
        return self.has_forward or self.has_adjoint

    # Lifecycle

    def init(self) -> Function:
        """Run the one-time structural initialization and allocate the buffers.

        Calling ``init`` on a ready function does nothing.
        If initialization fails the function goes back to UNINITIALIZED
        and may be initialized again later.

        Returns:
            The function itself, for chaining.
        """
        if self._state is State.READY:
            return self
        self._state = State.INITIALIZING
        ready = False
        try:
            self._init()
            self._store = SlotStore(list(self._input_sparsity), list(self._output_sparsity))
            self._store.resize(self.options.number_of_fwd_dir, self.options.number_of_adj_dir)
            ready = True
        finally:
            self._state = State.READY if ready else State.UNINITIALIZED
        logger.debug(
            "Initialized %s '%s': %d inputs, %d outputs, %d/%d directions",
            type(self).__name__,
            self.name,
            self.n_in,
            self.n_out,
            self.n_fwd,
            self.n_adj,
        )
        return self

    def assert_init(self) -> None:
        if self._state is not State.READY:
            msg = (
                f"Function '{self.name}' is {self._state.value}; "
                "call init() before using it"
            )
            raise NotInitializedError(msg)

    def request_directions(self, nfdir: int, nadir: int) -> None:
        """Make sure at least ``nfdir`` forward and ``nadir`` adjoint directions exist.

        Growing the direction counts reallocates nothing that already exists,
        but the slot sensitivity lists are extended.
        """
        self.assert_init()
        self._store.resize(max(nfdir, self._store.n_fwd), max(nadir, self._store.n_adj))

    def reset_directions(self, nfdir: int, nadir: int) -> None:
        """Explicitly drop directions beyond ``nfdir``/``nadir``."""
        self.assert_init()
        self._store.shrink(nfdir, nadir)

    # Slot access

    def _index(self, kind: SlotKind, ind: SlotIndex) -> int:
        count = self.n_in if kind is SlotKind.INPUT else self.n_out
        if isinstance(ind, str):
            scheme = (
                self.options.input_scheme
                if kind is SlotKind.INPUT
                else self.options.output_scheme
            )
            if scheme is None:
                msg = f"Function '{self.name}' has no {kind.value} scheme to resolve {ind!r}"
                raise OutOfRangeError(msg)
            return scheme.index(ind)
        if not 0 <= ind < count:
            msg = f"{kind.value} index {ind} out of range, function has {count}"
            raise OutOfRangeError(msg)
        return ind

    def input(self, iind: SlotIndex = 0) -> NDArray[np.float64]:
        """Mutable reference to the value buffer of input ``iind``."""
        self.assert_init()
        return self._store.value(SlotKind.INPUT, self._index(SlotKind.INPUT, iind))

    def output(self, oind: SlotIndex = 0) -> NDArray[np.float64]:
        """Mutable reference to the value buffer of output ``oind``.

        Copy it if you need the value after the next evaluation.
        """
        self.assert_init()
        return self._store.value(SlotKind.OUTPUT, self._index(SlotKind.OUTPUT, oind))

    def fwd_seed(self, iind: SlotIndex = 0, direction: int = 0) -> NDArray[np.float64]:
        self.assert_init()
        return self._store.forward(
            SlotKind.INPUT, self._index(SlotKind.INPUT, iind), direction
        )

    def fwd_sens(self, oind: SlotIndex = 0, direction: int = 0) -> NDArray[np.float64]:
        self.assert_init()
        return self._store.forward(
            SlotKind.OUTPUT, self._index(SlotKind.OUTPUT, oind), direction
        )

    def adj_seed(self, oind: SlotIndex = 0, direction: int = 0) -> NDArray[np.float64]:
        self.assert_init()
        return self._store.adjoint(
            SlotKind.OUTPUT, self._index(SlotKind.OUTPUT, oind), direction
        )

    def adj_sens(self, iind: SlotIndex = 0, direction: int = 0) -> NDArray[np.float64]:
        self.assert_init()
        return self._store.adjoint(
            SlotKind.INPUT, self._index(SlotKind.INPUT, iind), direction
        )

    def set_input(self, val: ArrayLike, iind: SlotIndex = 0) -> None:
        assign(self.input(iind), val, self.input_sparsity(iind), "input")

    def set_output(self, val: ArrayLike, oind: SlotIndex = 0) -> None:
        assign(self.output(oind), val, self.output_sparsity(oind), "output")

    def set_fwd_seed(self, val: ArrayLike, iind: SlotIndex = 0, direction: int = 0) -> None:
        assign(self.fwd_seed(iind, direction), val, self.input_sparsity(iind), "forward seed")

    def set_fwd_sens(self, val: ArrayLike, oind: SlotIndex = 0, direction: int = 0) -> None:
        assign(
            self.fwd_sens(oind, direction), val, self.output_sparsity(oind), "forward sensitivity"
        )

    def set_adj_seed(self, val: ArrayLike, oind: SlotIndex = 0, direction: int = 0) -> None:
        assign(self.adj_seed(oind, direction), val, self.output_sparsity(oind), "adjoint seed")

    def set_adj_sens(self, val: ArrayLike, iind: SlotIndex = 0, direction: int = 0) -> None:
        assign(
            self.adj_sens(iind, direction), val, self.input_sparsity(iind), "adjoint sensitivity"
        )

    def get_input(self, iind: SlotIndex = 0) -> NDArray[np.float64]:
        return self.input(iind).copy()

    def get_output(self, oind: SlotIndex = 0) -> NDArray[np.float64]:
        return self.output(oind).copy()

    def get_fwd_seed(self, iind: SlotIndex = 0, direction: int = 0) -> NDArray[np.float64]:
        return self.fwd_seed(iind, direction).copy()

    def get_fwd_sens(self, oind: SlotIndex = 0, direction: int = 0) -> NDArray[np.float64]:
        return self.fwd_sens(oind, direction).copy()

    def get_adj_seed(self, oind: SlotIndex = 0, direction: int = 0) -> NDArray[np.float64]:
        return self.adj_seed(oind, direction).copy()

    def get_adj_sens(self, iind: SlotIndex = 0, direction: int = 0) -> NDArray[np.float64]:
        return self.adj_sens(iind, direction).copy()

    # Evaluation

    def evaluate(self, nfdir: int = 0, nadir: int = 0, *, output_given: bool = False) -> None:
        """Evaluate numerically with the first ``nfdir``/``nadir`` directions.

        Reads inputs and seeds from the slot buffers
        and writes outputs and sensitivities back in place.
        With ``output_given`` the current output buffers are taken as the
        nondifferentiated result and the zero-order pass is skipped.
        """
        dispatch.evaluate_buffers(self, nfdir, nadir, output_given=output_given)

    def __call__(self, *args: ArrayLike) -> list[NDArray[np.float64]]:
        """Evaluate numerically at ``args`` and return copies of all outputs."""
        self.assert_init()
        if len(args) != self.n_in:
            msg = f"Function '{self.name}' takes {self.n_in} inputs, got {len(args)}"
            raise OutOfRangeError(msg)
        for i, arg in enumerate(args):
            self.set_input(arg, i)
        self.evaluate()
        return [self.get_output(j) for j in range(self.n_out)]

    def eval_sx(
        self,
        arg: Sequence[sp.MatrixBase],
        fseed: Sequence[Sequence[sp.MatrixBase]] = (),
        aseed: Sequence[Sequence[sp.MatrixBase]] = (),
        *,
        res: Sequence[sp.MatrixBase] | None = None,
    ) -> EvalResult:
        """Evaluate on sympy matrices (scalar expression graph).

        ``fseed[d][i]`` seeds input ``i`` in forward direction ``d``,
        ``aseed[d][j]`` seeds output ``j`` in adjoint direction ``d``.
        Passing ``res`` marks the outputs as given.
        """
        return dispatch.evaluate_symbolic(
            self, Representation.SCALAR_GRAPH, arg, fseed, aseed, res
        )

    def eval_mx(
        self,
        arg: Sequence[Any],
        fseed: Sequence[Sequence[Any]] = (),
        aseed: Sequence[Sequence[Any]] = (),
        *,
        res: Sequence[Any] | None = None,
    ) -> EvalResult:
        """Evaluate on jax arrays or tracers (matrix expression graph).

        Calling this inside ``jax.jit`` or ``jax.make_jaxpr`` embeds the
        function and its directional derivatives into the outer graph.
        """
        return dispatch.evaluate_symbolic(
            self, Representation.MATRIX_GRAPH, arg, fseed, aseed, res
        )

    def map_mx(
        self, arg_sets: Sequence[Sequence[Any]], *, parallel: bool = False
    ) -> list[list]:
        """Outputs of `eval_mx` for each argument set, in order.

        With ``parallel`` the sets are batched through ``jax.vmap``,
        so every set must hold values of the same shapes.
        """
        return dispatch.map_matrix_graph(self, arg_sets, parallel=parallel)

    def symbolic_input_sx(self) -> list[sp.Matrix]:
        """Sympy matrices of fresh symbols shaped like the inputs.

        Structural zeros of the input pattern are exact zeros.
        """
        result = []
        for i, pattern in enumerate(self._input_sparsity):
            label = (
                self.options.input_scheme.entry(i)
                if self.options.input_scheme is not None
                else f"x{i}"
            )
            mask = pattern.mask()
            result.append(
                sp.Matrix(
                    pattern.m,
                    pattern.n,
                    lambda r, c, label=label, mask=mask: (
                        sp.Symbol(f"{label}_{r}_{c}") if mask[r, c] else sp.S.Zero
                    ),
                )
            )
        return result

    @property
    def stats(self) -> dict[str, Any]:
        """Statistics of the last numeric evaluation."""
        return dict(self._stats)

    def stat(self, name: str) -> Any:
        if name not in self._stats:
            msg = f"No statistic '{name}', available: {sorted(self._stats)}"
            raise OutOfRangeError(msg)
        return self._stats[name]

    # Sparsity propagation

    def sp_can_evaluate(self, fwd: bool) -> bool:
        """Whether dependency bits can be propagated in the given direction."""
        self.assert_init()
        return self._can_propagate(fwd)

    def sp_init(self, fwd: bool) -> None:
        """Reset all dependency bit-sets before seeding a propagation pass."""
        propagation.sp_init(self, fwd)

    def sp_evaluate(self, fwd: bool) -> None:
        """Propagate the seeded dependency bits forward or backward."""
        propagation.sp_evaluate(self, fwd)

    def sp_input(self, iind: SlotIndex = 0) -> NDArray[np.uint64]:
        """Dependency bit-set of an input (seed in forward mode)."""
        return propagation.bits(self, SlotKind.INPUT, self._index(SlotKind.INPUT, iind))

    def sp_output(self, oind: SlotIndex = 0) -> NDArray[np.uint64]:
        """Dependency bit-set of an output (seed in adjoint mode)."""
        return propagation.bits(self, SlotKind.OUTPUT, self._index(SlotKind.OUTPUT, oind))

    def jac_sparsity(
        self, iind: SlotIndex = 0, oind: SlotIndex = 0, compact: bool = False
    ) -> SparsityPattern:
        """Sparsity of the Jacobian block ``d vec(output oind) / d vec(input iind)``.

        With ``compact`` the rows and columns only count the structural
        nonzeros of the output and input; otherwise every entry.
        Computed once and cached.
        """
        self.assert_init()
        return propagation.jacobian_sparsity(
            self,
            self._index(SlotKind.INPUT, iind),
            self._index(SlotKind.OUTPUT, oind),
            compact,
        )

    def set_jac_sparsity(
        self,
        sparsity: SparsityPattern,
        iind: SlotIndex = 0,
        oind: SlotIndex = 0,
        compact: bool = False,
    ) -> None:
        """Provide the sparsity of a Jacobian block instead of detecting it."""
        self.assert_init()
        propagation.set_jacobian_sparsity(
            self,
            sparsity,
            self._index(SlotKind.INPUT, iind),
            self._index(SlotKind.OUTPUT, oind),
            compact,
        )

    # Derivatives

    def jacobian(self, iind: SlotIndex = 0, oind: SlotIndex = 0) -> Function:
        """Function with the same inputs whose only output is the Jacobian block."""
        return derivatives.jacobian(self, iind, oind)

    def jacobian_blocks(self, blocks: Sequence[tuple[SlotIndex | None, SlotIndex]]) -> Function:
        """Function computing several Jacobian blocks at once.

        Each block is ``(iind, oind)``;
        ``(None, oind)`` stands for the nondifferentiated output ``oind``.
        Outputs come in block order.
        """
        return derivatives.jacobian_blocks(self, blocks)

    def gradient(self, iind: SlotIndex = 0, oind: SlotIndex = 0) -> Function:
        """Column gradient of a scalar output."""
        return derivatives.gradient(self, iind, oind)

    def hessian(self, iind: SlotIndex = 0, oind: SlotIndex = 0) -> Function:
        """Hessian of a scalar output, the Jacobian of its gradient."""
        return derivatives.hessian(self, iind, oind)

    def __getitem__(self, oind: SlotIndex) -> Function:
        """Function with the same inputs and only output ``oind``."""
        return derivatives.jacobian_blocks(self, [(None, oind)])

    # Capability interface

    def _init(self) -> None:
        """Structural initialization, run once by `init`."""

    @abstractmethod
    def _evaluate(self, rep: Representation, args: list) -> list:
        """Map input values to output values in representation ``rep``."""

    def _forward(self, rep: Representation, args: list, res: list, fseeds: list[list]) -> list[list]:
        """Forward sensitivities ``fsens[d][j]`` for seeds ``fseeds[d][i]``."""
        msg = f"Function '{self.name}' has no forward derivatives"
        raise UnsupportedOperationError(msg)

    def _adjoint(self, rep: Representation, args: list, res: list, aseeds: list[list]) -> list[list]:
        """Adjoint sensitivities ``asens[d][i]`` for seeds ``aseeds[d][j]``."""
        msg = f"Function '{self.name}' has no adjoint derivatives"
        raise UnsupportedOperationError(msg)

    def _can_propagate(self, fwd: bool) -> bool:
        return False

    def _propagate(self, fwd: bool, bits: DependencyBits) -> None:
        msg = f"Function '{self.name}' cannot propagate dependency bits"
        raise UnsupportedOperationError(msg)

    def _jacobian_blocks(self, blocks: list[Block]) -> Function:
        """Build the function for `jacobian_blocks`.

        The default assembles blocks from colored numeric directional derivatives.
        Representations that can differentiate symbolically override this.
        """
        from fxad.numeric import NumericJacobian

        return NumericJacobian(self, blocks)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}('{self.name}', n_in={self.n_in}, "
            f"n_out={self.n_out}, {self._state.value})"
        )
