"""Verification utilities for checking derivative functions against unit-seed references."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import numpy as np
from numpy.typing import ArrayLike, NDArray

from fxad.function import Function, SlotIndex
from fxad.slots import SlotKind, unvec, vec


class VerificationError(AssertionError):
    """Raised when a built Jacobian or a detected pattern disagrees with the reference.

    Detected sparsity patterns must be conservative,
    i.e. contain at least every entry that can be numerically nonzero.
    """


def dense_jacobian(
    fcn: Function,
    iind: SlotIndex = 0,
    oind: SlotIndex = 0,
    args: Sequence[ArrayLike] | None = None,
) -> NDArray[np.float64]:
    """Dense Jacobian block assembled from one unit seed per column (or row).

    Uses forward seeds if the function has them, adjoint seeds otherwise.
    No sparsity information is used.

    Args:
        fcn: Initialized function.
        iind: Input slot.
        oind: Output slot.
        args: Point of evaluation.
            If None, the current input buffers are used.
    """
    fcn.assert_init()
    iind = fcn._index(SlotKind.INPUT, iind)
    oind = fcn._index(SlotKind.OUTPUT, oind)
    if args is not None:
        for i, arg in enumerate(args):
            fcn.set_input(arg, i)
    fcn.request_directions(1, 1)
    n = fcn._input_sparsity[iind].numel
    m = fcn._output_sparsity[oind].numel
    jac = np.zeros((m, n))

    if fcn.has_forward:
        for i in range(fcn.n_in):
            fcn.fwd_seed(i, 0)[...] = 0.0
        seed = fcn.fwd_seed(iind, 0)
        unit = np.eye(n)
        for k in range(n):
            seed[...] = unvec(unit[k], seed.shape)
            fcn.evaluate(1, 0)
            jac[:, k] = vec(fcn.fwd_sens(oind, 0))
    else:
        for j in range(fcn.n_out):
            fcn.adj_seed(j, 0)[...] = 0.0
        seed = fcn.adj_seed(oind, 0)
        unit = np.eye(m)
        for k in range(m):
            seed[...] = unvec(unit[k], seed.shape)
            fcn.evaluate(0, 1)
            jac[k, :] = vec(fcn.adj_sens(iind, 0))
    return jac


def check_jacobian_correctness(
    fcn: Function,
    iind: SlotIndex = 0,
    oind: SlotIndex = 0,
    *,
    args: Sequence[ArrayLike] | None = None,
    rtol: float = 1e-7,
    atol: float = 1e-7,
) -> None:
    """Verify ``fcn.jacobian(iind, oind)`` against `dense_jacobian`.

    Args:
        fcn: Initialized function.
        iind: Input slot.
        oind: Output slot.
        args: Point of evaluation.
            If None, the current input buffers are used.
        rtol: Relative tolerance for comparison.
        atol: Absolute tolerance for comparison.

    Raises:
        VerificationError: If the two Jacobians disagree.
    """
    fcn.assert_init()
    if args is None:
        args = [fcn.get_input(i) for i in range(fcn.n_in)]
    built = fcn.jacobian(iind, oind).init()(*args)[0]
    reference = dense_jacobian(fcn, iind, oind, args)
    _check_allclose(built, reference, f"Jacobian of '{fcn.name}'", rtol=rtol, atol=atol)


def check_sparsity_soundness(
    fcn: Function,
    iind: SlotIndex = 0,
    oind: SlotIndex = 0,
    points: Iterable[Sequence[ArrayLike]] = (),
    tol: float = 0.0,
) -> None:
    """Verify that the detected Jacobian pattern covers every nonzero at ``points``.

    Args:
        fcn: Initialized function.
        iind: Input slot.
        oind: Output slot.
        points: Input values, one sequence of arguments per point.
        tol: Entries with magnitude at most ``tol`` count as zero.

    Raises:
        VerificationError: If a numerically nonzero entry is structurally zero.
    """
    mask = fcn.jac_sparsity(iind, oind).mask()
    for k, point in enumerate(points):
        jac = dense_jacobian(fcn, iind, oind, point)
        missing = np.argwhere((np.abs(jac) > tol) & ~mask)
        if len(missing):
            raise VerificationError(
                f"The detected Jacobian pattern of '{fcn.name}' misses "
                f"{len(missing)} nonzeros at point {k}, "
                f"first at (row, col) = {tuple(int(v) for v in missing[0])}"
            )


def _check_allclose(
    built: ArrayLike,
    reference: ArrayLike,
    name: str,
    *,
    rtol: float,
    atol: float,
) -> None:
    """Compare built and reference results, raising VerificationError on mismatch."""
    built_np = np.asarray(built)
    reference_np = np.asarray(reference)

    if built_np.shape != reference_np.shape:
        raise VerificationError(
            f"The built {name} has shape {built_np.shape} "
            f"but the unit-seed reference has shape {reference_np.shape}"
        )

    try:
        np.testing.assert_allclose(built_np, reference_np, rtol=rtol, atol=atol)
    except AssertionError as exc:
        raise VerificationError(
            f"The built {name} does not match the unit-seed reference.\n{exc}"
        ) from None
