"""Numeric buffers of the input and output slots of a function.

Each slot owns a value buffer plus one buffer per active forward direction
and one per active adjoint direction.
For an input slot the forward buffers hold seeds and the adjoint buffers
hold sensitivities; for an output slot it is the other way round.

Buffers are allocated once and reused across evaluations.
Only a change of the number of directions allocates,
which invalidates references handed out before.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from numpy.typing import ArrayLike, NDArray

from fxad.errors import DimensionMismatchError, OutOfRangeError
from fxad.pattern import SparsityPattern


class SlotKind(Enum):
    INPUT = "input"
    OUTPUT = "output"


def vec(x, xp=np):
    """Column-major vectorization of a 2-D slot value.

    All Jacobian relations are written on ``vec``,
    so row-shaped and column-shaped slots follow the same convention.
    """
    return xp.ravel(x, order="F")


def unvec(v, shape: tuple[int, int], xp=np):
    """Inverse of `vec`."""
    return xp.reshape(v, shape, order="F")


@dataclass
class IOSlot:
    """Value buffer of one slot and its per-direction sensitivity buffers."""

    sparsity: SparsityPattern
    data: NDArray[np.float64] = field(init=False)
    fwd: list[NDArray[np.float64]] = field(default_factory=list)
    adj: list[NDArray[np.float64]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.data = np.zeros(self.sparsity.shape)

    @property
    def shape(self) -> tuple[int, int]:
        return self.sparsity.shape

    def grow(self, n_fwd: int, n_adj: int) -> None:
        """Append zero buffers until the requested direction counts are reached."""
        while len(self.fwd) < n_fwd:
            self.fwd.append(np.zeros(self.shape))
        while len(self.adj) < n_adj:
            self.adj.append(np.zeros(self.shape))

    def truncate(self, n_fwd: int, n_adj: int) -> None:
        del self.fwd[n_fwd:]
        del self.adj[n_adj:]


class SlotStore:
    """Buffers of all input and output slots of one function instance."""

    def __init__(
        self,
        input_sparsity: list[SparsityPattern],
        output_sparsity: list[SparsityPattern],
    ) -> None:
        self.inputs = [IOSlot(sp) for sp in input_sparsity]
        self.outputs = [IOSlot(sp) for sp in output_sparsity]
        self.n_fwd = 0
        self.n_adj = 0

    def slots(self, kind: SlotKind) -> list[IOSlot]:
        return self.inputs if kind is SlotKind.INPUT else self.outputs

    def slot(self, kind: SlotKind, index: int) -> IOSlot:
        slots = self.slots(kind)
        if not 0 <= index < len(slots):
            msg = f"{kind.value} index {index} out of range, function has {len(slots)}"
            raise OutOfRangeError(msg)
        return slots[index]

    def resize(self, n_fwd: int, n_adj: int) -> None:
        """Grow the number of forward and adjoint directions.

        New buffers are zero-initialized,
        existing buffers keep their identity and contents.
        Requesting the current counts again is a no-op.

        Raises:
            ValueError: If either count is below the current one.
                Use `shrink` to drop directions.
        """
        if n_fwd < self.n_fwd or n_adj < self.n_adj:
            msg = (
                f"resize({n_fwd}, {n_adj}) would drop directions "
                f"(currently {self.n_fwd} forward, {self.n_adj} adjoint); "
                "use shrink() to reduce the direction counts"
            )
            raise ValueError(msg)
        if (n_fwd, n_adj) == (self.n_fwd, self.n_adj):
            return
        for slot in (*self.inputs, *self.outputs):
            slot.grow(n_fwd, n_adj)
        self.n_fwd, self.n_adj = n_fwd, n_adj

    def shrink(self, n_fwd: int, n_adj: int) -> None:
        """Drop the trailing directions beyond the requested counts."""
        if n_fwd > self.n_fwd or n_adj > self.n_adj:
            msg = f"shrink({n_fwd}, {n_adj}) exceeds ({self.n_fwd}, {self.n_adj})"
            raise ValueError(msg)
        for slot in (*self.inputs, *self.outputs):
            slot.truncate(n_fwd, n_adj)
        self.n_fwd, self.n_adj = n_fwd, n_adj

    def value(self, kind: SlotKind, index: int) -> NDArray[np.float64]:
        return self.slot(kind, index).data

    def forward(self, kind: SlotKind, index: int, direction: int) -> NDArray[np.float64]:
        slot = self.slot(kind, index)
        if not 0 <= direction < self.n_fwd:
            msg = f"Forward direction {direction} out of range, {self.n_fwd} active"
            raise OutOfRangeError(msg)
        return slot.fwd[direction]

    def adjoint(self, kind: SlotKind, index: int, direction: int) -> NDArray[np.float64]:
        slot = self.slot(kind, index)
        if not 0 <= direction < self.n_adj:
            msg = f"Adjoint direction {direction} out of range, {self.n_adj} active"
            raise OutOfRangeError(msg)
        return slot.adj[direction]


def assign(
    buffer: NDArray[np.float64],
    value: ArrayLike,
    sparsity: SparsityPattern,
    what: str = "value",
) -> None:
    """Copy ``value`` into ``buffer`` after checking it against the slot shape.

    Accepted forms:
        - a scalar, written to every structural nonzero;
        - an array of the slot shape;
        - a flat array of the slot size, read in column-major order;
        - for vector slots, the transposed shape.

    Raises:
        DimensionMismatchError: If the value fits none of these forms,
            or is nonzero at a structural zero of the slot.
    """
    arr = np.asarray(value, dtype=np.float64)
    shape = sparsity.shape
    if arr.ndim == 0:
        buffer[...] = 0.0
        buffer[sparsity.row, sparsity.cols] = arr
        return
    if arr.shape == shape:
        pass
    elif arr.ndim == 1 and arr.size == buffer.size:
        arr = unvec(arr, shape)
    elif 1 in shape and arr.shape == shape[::-1]:
        arr = arr.T
    else:
        msg = f"Cannot set {what} of shape {arr.shape} into a slot of shape {shape}"
        raise DimensionMismatchError(msg)
    if not sparsity.is_dense and np.any(arr[~sparsity.mask()] != 0):
        msg = f"{what} has nonzeros outside the structural pattern of its slot"
        raise DimensionMismatchError(msg)
    buffer[...] = arr
