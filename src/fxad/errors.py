"""Exceptions raised by function evaluation, sparsity propagation and differentiation."""

from __future__ import annotations


class FunctionError(Exception):
    """Base class for all errors raised by fxad."""


class NotInitializedError(FunctionError):
    """Raised when a function is used before ``init()`` completed.

    The call fails but the instance remains usable:
    calling ``init()`` afterwards makes it ready.
    """


class ShapeError(FunctionError, ValueError):
    """Raised when a requested block or buffer has an inconsistent shape."""


class DimensionMismatchError(ShapeError):
    """Raised when a value or seed does not match its slot's declared shape."""


class OutOfRangeError(FunctionError, IndexError):
    """Raised for slot, direction or name lookups outside the configuration."""


class UnsupportedOperationError(FunctionError, NotImplementedError):
    """Raised when a representation or backend lacks a requested capability."""


class EvaluationError(FunctionError, RuntimeError):
    """Raised when a representation fails during an evaluation pass.

    Attributes:
        representation: Tag of the representation that failed.
        slot: Index of the failing slot, or ``None`` if the failure
            cannot be attributed to a single slot.
    """

    def __init__(self, representation, slot: int | None, message: str) -> None:
        self.representation = representation
        self.slot = slot
        where = f"slot {slot}" if slot is not None else "all slots"
        super().__init__(f"[{representation}] evaluation failed for {where}: {message}")
