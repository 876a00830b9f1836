"""Construction of Jacobian, gradient and Hessian functions.

Every derivative is itself a `Function` with the same inputs as its parent.
Representations that can differentiate symbolically build a new function of
their own kind; all others fall back to `NumericJacobian`, which assembles
the blocks from colored directional derivatives of the parent.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, NamedTuple

from fxad.errors import ShapeError, UnsupportedOperationError
from fxad.options import AdMode
from fxad.pattern import SparsityPattern
from fxad.slots import SlotKind

if TYPE_CHECKING:
    from fxad.function import Function, SlotIndex

logger = logging.getLogger(__name__)


class Block(NamedTuple):
    """One output of a derivative function.

    Attributes:
        iind: Input differentiated against,
            or ``None`` for the nondifferentiated output ``oind``.
        oind: Output being differentiated.
        transpose: Return the transposed block (a column gradient for a scalar output).
    """

    iind: int | None
    oind: int
    transpose: bool = False


def block_sparsity(fcn: Function, block: Block) -> SparsityPattern:
    """Sparsity of the output a block contributes to a derivative function."""
    if block.iind is None:
        return fcn._output_sparsity[block.oind]
    pattern = fcn.jac_sparsity(block.iind, block.oind)
    return pattern.T if block.transpose else pattern


def derived_options(fcn: Function, blocks: Sequence[Block]):
    """Options of a derivative function: the parent's, renamed, without output names."""
    prefix = "grad" if all(b.transpose for b in blocks) else "jac"
    return replace(fcn.options, name=f"{prefix}_{fcn.name}", output_scheme=None)


def _require_column(fcn: Function, kind: SlotKind, index: int) -> None:
    sparsity = (fcn._input_sparsity if kind is SlotKind.INPUT else fcn._output_sparsity)[index]
    if not sparsity.is_column:
        msg = (
            f"Jacobian blocks need column-shaped slots, "
            f"{kind.value} {index} of '{fcn.name}' has shape {sparsity.shape}"
        )
        raise ShapeError(msg)


def _require_scalar(fcn: Function, oind: int, what: str) -> None:
    sparsity = fcn._output_sparsity[oind]
    if not sparsity.is_scalar:
        msg = (
            f"{what} needs a scalar output, "
            f"output {oind} of '{fcn.name}' has shape {sparsity.shape}"
        )
        raise ShapeError(msg)


def _build(fcn: Function, blocks: list[Block]) -> Function:
    if any(b.iind is not None for b in blocks) and not fcn.differentiable:
        msg = f"{type(fcn).__name__} '{fcn.name}' cannot be differentiated"
        raise UnsupportedOperationError(msg)
    if fcn.options.numeric_jacobian:
        from fxad.numeric import NumericJacobian

        result = NumericJacobian(fcn, blocks)
    else:
        result = fcn._jacobian_blocks(blocks)
    result.init()
    logger.debug(
        "Built %s '%s' with blocks %s",
        type(result).__name__,
        result.name,
        [(b.iind, b.oind) for b in blocks],
    )
    return result


def jacobian(fcn: Function, iind: SlotIndex, oind: SlotIndex) -> Function:
    fcn.assert_init()
    i = fcn._index(SlotKind.INPUT, iind)
    o = fcn._index(SlotKind.OUTPUT, oind)
    key = ("jacobian", i, o)
    cached = fcn._derivative_cache.get(key)
    if cached is not None:
        return cached
    _require_column(fcn, SlotKind.INPUT, i)
    _require_column(fcn, SlotKind.OUTPUT, o)
    result = _build(fcn, [Block(i, o)])
    fcn._derivative_cache[key] = result
    return result


def jacobian_blocks(
    fcn: Function, blocks: Sequence[tuple[SlotIndex | None, SlotIndex]]
) -> Function:
    fcn.assert_init()
    if not blocks:
        msg = "jacobian_blocks needs at least one block"
        raise ValueError(msg)
    resolved = []
    for iind, oind in blocks:
        o = fcn._index(SlotKind.OUTPUT, oind)
        if iind is None:
            resolved.append(Block(None, o))
            continue
        i = fcn._index(SlotKind.INPUT, iind)
        _require_column(fcn, SlotKind.INPUT, i)
        _require_column(fcn, SlotKind.OUTPUT, o)
        resolved.append(Block(i, o))
    return _build(fcn, resolved)


def gradient(fcn: Function, iind: SlotIndex, oind: SlotIndex) -> Function:
    fcn.assert_init()
    i = fcn._index(SlotKind.INPUT, iind)
    o = fcn._index(SlotKind.OUTPUT, oind)
    key = ("gradient", i, o)
    cached = fcn._derivative_cache.get(key)
    if cached is not None:
        return cached
    _require_column(fcn, SlotKind.INPUT, i)
    _require_scalar(fcn, o, "Gradient")
    result = _build(fcn, [Block(i, o, transpose=True)])
    fcn._derivative_cache[key] = result
    return result


def hessian(fcn: Function, iind: SlotIndex, oind: SlotIndex) -> Function:
    """Jacobian of the gradient w.r.t. the same input."""
    fcn.assert_init()
    i = fcn._index(SlotKind.INPUT, iind)
    o = fcn._index(SlotKind.OUTPUT, oind)
    _require_scalar(fcn, o, "Hessian")
    return gradient(fcn, i, o).jacobian(i, 0)


def resolve_sweep(fcn: Function, mode: AdMode) -> AdMode:
    """Restrict an AD mode to the sweeps ``fcn`` actually provides."""
    if not fcn.has_adjoint:
        return "forward"
    if not fcn.has_forward:
        return "adjoint"
    return mode


