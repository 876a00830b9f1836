"""Jacobian blocks assembled from colored numeric directional derivatives."""

from __future__ import annotations

import numpy as np

from fxad.coloring import color_jacobian_pattern
from fxad.derivatives import Block, block_sparsity, derived_options, resolve_sweep
from fxad.dispatch import Representation
from fxad.errors import UnsupportedOperationError
from fxad.function import Function
from fxad.pattern import ColoredPattern, SparsityPattern
from fxad.slots import unvec, vec


class NumericJacobian(Function):
    """Jacobian blocks of a parent function, one forward or adjoint sweep per color.

    Blocks that share an input share their seed passes:
    the Jacobians of all their outputs are stacked and colored together.
    Evaluation drives the parent's slot buffers,
    so a numeric Jacobian must not be used concurrently with its parent.
    """

    representations = frozenset({Representation.NUMERIC})

    def __init__(self, parent: Function, blocks: list[Block]) -> None:
        parent.assert_init()
        self.parent = parent
        self.blocks = list(blocks)
        super().__init__(
            parent._input_sparsity,
            [block_sparsity(parent, b) for b in self.blocks],
            derived_options(parent, self.blocks),
        )
        self._groups: dict[int, tuple[list[int], ColoredPattern]] = {}

    @property
    def differentiable(self) -> bool:
        return False

    def _init(self) -> None:
        parent = self.parent
        mode = resolve_sweep(parent, parent.options.ad_mode)
        nfwd = nadj = 0
        for iind in dict.fromkeys(b.iind for b in self.blocks if b.iind is not None):
            oinds = sorted({b.oind for b in self.blocks if b.iind == iind})
            stacked = SparsityPattern.vstack([parent.jac_sparsity(iind, o) for o in oinds])
            colored = color_jacobian_pattern(stacked, mode)
            self._groups[iind] = (oinds, colored)
            if colored.mode == "forward":
                nfwd = max(nfwd, colored.num_colors)
            else:
                nadj = max(nadj, colored.num_colors)
        parent.request_directions(nfwd, nadj)

    def _evaluate(self, rep, args):
        parent = self.parent
        for i, arg in enumerate(args):
            parent.input(i)[...] = arg

        jacobians: dict[tuple[int, int], np.ndarray] = {}
        evaluated = False
        for iind, (oinds, colored) in self._groups.items():
            stacked = self._sweep(iind, oinds, colored)
            evaluated = evaluated or colored.num_colors > 0
            offset = 0
            for o in oinds:
                m = parent._output_sparsity[o].numel
                jacobians[(iind, o)] = stacked[offset : offset + m]
                offset += m
        if not evaluated:
            parent.evaluate()

        result = []
        for block in self.blocks:
            if block.iind is None:
                result.append(parent.output(block.oind).copy())
                continue
            jac = jacobians[(block.iind, block.oind)]
            result.append(jac.T if block.transpose else jac)
        return result

    def _sweep(self, iind: int, oinds: list[int], colored: ColoredPattern) -> np.ndarray:
        """Stacked dense Jacobian of outputs ``oinds`` w.r.t. input ``iind``."""
        parent = self.parent
        ncolors = colored.num_colors
        if ncolors == 0:
            return np.zeros(colored.sparsity.shape)
        seeds = colored.seed_matrix

        if colored.mode == "forward":
            shape = parent._input_sparsity[iind].shape
            for c in range(ncolors):
                for i in range(parent.n_in):
                    parent.fwd_seed(i, c)[...] = 0.0
                parent.fwd_seed(iind, c)[...] = unvec(seeds[c], shape)
            parent.evaluate(ncolors, 0)
            compressed = np.stack(
                [
                    np.concatenate([vec(parent.fwd_sens(o, c)) for o in oinds])
                    for c in range(ncolors)
                ]
            )
        else:
            for c in range(ncolors):
                for j in range(parent.n_out):
                    parent.adj_seed(j, c)[...] = 0.0
                offset = 0
                for o in oinds:
                    sp = parent._output_sparsity[o]
                    parent.adj_seed(o, c)[...] = unvec(seeds[c, offset : offset + sp.numel], sp.shape)
                    offset += sp.numel
            parent.evaluate(0, ncolors)
            compressed = np.stack([vec(parent.adj_sens(iind, c)) for c in range(ncolors)])
        return colored.decompress(compressed)

    def _jacobian_blocks(self, blocks):
        msg = f"Numeric Jacobian '{self.name}' cannot be differentiated further"
        raise UnsupportedOperationError(msg)
