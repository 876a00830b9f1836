"""Configuration of function instances."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Literal

from fxad.scheme import IOScheme

AdMode = Literal["automatic", "forward", "adjoint"]


@dataclass(frozen=True)
class FunctionOptions:
    """Options fixed when a function is initialized.

    Attributes:
        name: Name used in log records and error messages.
        number_of_fwd_dir: Forward directions allocated at ``init()``.
        number_of_adj_dir: Adjoint directions allocated at ``init()``.
        ad_mode: Sweep direction used for sparsity propagation and
            numeric Jacobians.
            ``"automatic"`` picks the side with fewer structural nonzeros
            (or fewer colors).
        numeric_jacobian: Always build Jacobians from colored numeric
            directional derivatives,
            even when the representation can differentiate symbolically.
        sparse: Detect Jacobian sparsity.
            If False, every Jacobian block is treated as dense.
        input_scheme: Optional names for the input slots.
        output_scheme: Optional names for the output slots.
    """

    name: str = "unnamed_function"
    number_of_fwd_dir: int = 1
    number_of_adj_dir: int = 1
    ad_mode: AdMode = "automatic"
    numeric_jacobian: bool = False
    sparse: bool = True
    input_scheme: IOScheme | None = None
    output_scheme: IOScheme | None = None

    def __post_init__(self) -> None:
        """Validate option values."""
        if self.number_of_fwd_dir < 0 or self.number_of_adj_dir < 0:
            msg = (
                "Direction counts must be non-negative, got "
                f"{self.number_of_fwd_dir} forward and {self.number_of_adj_dir} adjoint"
            )
            raise ValueError(msg)
        if self.ad_mode not in ("automatic", "forward", "adjoint"):
            msg = f"Unknown ad_mode {self.ad_mode!r}"
            raise ValueError(msg)

    @classmethod
    def from_dict(cls, opts: dict[str, Any] | None) -> FunctionOptions:
        """Build options from a plain dictionary, rejecting unknown keys."""
        if not opts:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(opts) - known)
        if unknown:
            msg = f"Unknown options {unknown}. Available options are {sorted(known)}"
            raise ValueError(msg)
        return cls(**opts)


@dataclass(frozen=True)
class ImplicitOptions:
    """Newton iteration settings of an implicit function.

    Attributes:
        abstol: Stop when the residual infinity norm drops below this.
        max_iter: Maximum number of Newton steps.
    """

    abstol: float = 1e-12
    max_iter: int = 50
