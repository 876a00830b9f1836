"""fxad - Generic functions with forward/adjoint AD and sparsity propagation.

A function maps a fixed number of 2-D input slots to 2-D output slots.
It can be evaluated numerically on its slot buffers
or on sympy (scalar graph) and jax (matrix graph) values,
propagates dependency bits to detect Jacobian sparsity without evaluating derivatives,
and builds new functions for its Jacobian, gradient and Hessian blocks.
"""

import logging

from fxad.callback import CallbackFunction
from fxad.coloring import color_cols, color_jacobian_pattern, color_rows
from fxad.dispatch import EvalResult, Representation
from fxad.errors import (
    DimensionMismatchError,
    EvaluationError,
    FunctionError,
    NotInitializedError,
    OutOfRangeError,
    ShapeError,
    UnsupportedOperationError,
)
from fxad.function import Function, State
from fxad.implicit import ImplicitFunction
from fxad.linsol import DenseLUSolver, LinearSolver, SingleRhsSolver, SuperLUSolver
from fxad.mx import MXFunction
from fxad.numeric import NumericJacobian
from fxad.options import FunctionOptions, ImplicitOptions
from fxad.pattern import ColoredPattern, SparsityPattern
from fxad.scheme import IOScheme
from fxad.sx import SXFunction
from fxad.verify import (
    VerificationError,
    check_jacobian_correctness,
    check_sparsity_soundness,
    dense_jacobian,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "CallbackFunction",
    "ColoredPattern",
    "DenseLUSolver",
    "DimensionMismatchError",
    "EvalResult",
    "EvaluationError",
    "Function",
    "FunctionError",
    "FunctionOptions",
    "IOScheme",
    "ImplicitFunction",
    "ImplicitOptions",
    "LinearSolver",
    "MXFunction",
    "NotInitializedError",
    "NumericJacobian",
    "OutOfRangeError",
    "Representation",
    "SXFunction",
    "ShapeError",
    "SingleRhsSolver",
    "SparsityPattern",
    "State",
    "SuperLUSolver",
    "UnsupportedOperationError",
    "VerificationError",
    "check_jacobian_correctness",
    "check_sparsity_soundness",
    "color_cols",
    "color_jacobian_pattern",
    "color_rows",
    "dense_jacobian",
]
