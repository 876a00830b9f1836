"""Functions backed by plain Python callables on numpy arrays."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import numpy as np
from numpy.typing import NDArray

from fxad.dispatch import Representation, representation_errors
from fxad.function import Function
from fxad.mx import slot_shape
from fxad.options import FunctionOptions
from fxad.pattern import SparsityPattern
from fxad.slots import unvec

ForwardCallback = Callable[[list, list, list], Sequence[Any]]
"""``forward(args, res, seeds) -> sens``, one sensitivity per output."""

AdjointCallback = Callable[[list, list, list], Sequence[Any]]
"""``adjoint(args, res, seeds) -> sens``, one sensitivity per input."""


def _coerce(value: Any, shape: tuple[int, int]) -> NDArray[np.float64]:
    """Accept flat values of the right size, laid out column-major."""
    arr = np.asarray(value, dtype=np.float64)
    if arr.shape != shape and arr.size == shape[0] * shape[1]:
        arr = unvec(arr.ravel(), shape)
    return arr


def _coerce_all(values: Any, sparsity: Sequence[SparsityPattern]) -> list[NDArray[np.float64]]:
    values = list(values) if isinstance(values, (tuple, list)) else [values]
    if len(values) != len(sparsity):
        # the dispatcher reports the count mismatch
        return values
    coerced = []
    for k, (v, s) in enumerate(zip(values, sparsity, strict=True)):
        with representation_errors(Representation.NUMERIC, k):
            coerced.append(_coerce(v, s.shape))
    return coerced


class CallbackFunction(Function):
    """Numeric-only function evaluated by a user callable.

    Derivatives are available only where the matching callback is given.
    Dependencies cannot be propagated, so Jacobian blocks are assumed dense.

    Args:
        fn: ``fn(*args)`` returning one array, or a tuple of arrays,
            per output.
        input_shapes: Shape of every input; an integer is a column vector.
        output_shapes: Shape of every output.
        forward: Optional forward directional derivative callback.
        adjoint: Optional adjoint directional derivative callback.
        options: Function options.
    """

    representations = frozenset({Representation.NUMERIC})

    def __init__(
        self,
        fn: Callable[..., Any],
        input_shapes: Sequence[int | Sequence[int]],
        output_shapes: Sequence[int | Sequence[int]],
        *,
        forward: ForwardCallback | None = None,
        adjoint: AdjointCallback | None = None,
        options: FunctionOptions | dict[str, Any] | None = None,
    ) -> None:
        self.fn = fn
        self.forward_fn = forward
        self.adjoint_fn = adjoint
        super().__init__(
            [SparsityPattern.dense(*slot_shape(s)) for s in input_shapes],
            [SparsityPattern.dense(*slot_shape(s)) for s in output_shapes],
            options,
        )

    @property
    def has_forward(self) -> bool:
        return self.forward_fn is not None

    @property
    def has_adjoint(self) -> bool:
        return self.adjoint_fn is not None

    def _evaluate(self, rep, args):
        return _coerce_all(self.fn(*args), self._output_sparsity)

    def _forward(self, rep, args, res, fseeds):
        if self.forward_fn is None:
            return super()._forward(rep, args, res, fseeds)
        return [
            _coerce_all(self.forward_fn(args, res, seeds), self._output_sparsity)
            for seeds in fseeds
        ]

    def _adjoint(self, rep, args, res, aseeds):
        if self.adjoint_fn is None:
            return super()._adjoint(rep, args, res, aseeds)
        return [
            _coerce_all(self.adjoint_fn(args, res, seeds), self._input_sparsity)
            for seeds in aseeds
        ]
