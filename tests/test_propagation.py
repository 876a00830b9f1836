"""Tests for dependency-bit propagation and Jacobian sparsity detection."""

import logging

import jax.numpy as jnp
import numpy as np
import pytest
import sympy as sp

import fxad._interpret
from fxad import (
    CallbackFunction,
    MXFunction,
    NotInitializedError,
    ShapeError,
    SparsityPattern,
    SXFunction,
    UnsupportedOperationError,
    check_sparsity_soundness,
)
from fxad.propagation import LANES

a, b, c = sp.symbols("a b c", real=True)


@pytest.fixture
def sparse_input_sx():
    """Input ``[[a, 0], [b, c]]`` with a structural zero, outputs ``(a * b, c)``."""
    return SXFunction([sp.Matrix([[a, 0], [b, c]])], [sp.Matrix([a * b, c])]).init()


class TestBitSets:
    @pytest.mark.sparsity
    def test_forward_propagation(self, sparse_input_sx):
        """Each lane set on an input reaches the outputs depending on it."""
        f = sparse_input_sx
        assert f.sp_can_evaluate(True)
        f.sp_init(True)
        f.sp_input(0)[0, 0] = 1
        f.sp_input(0)[1, 1] = 2
        f.sp_evaluate(True)
        np.testing.assert_array_equal(f.sp_output(0), [[1], [2]])

    @pytest.mark.sparsity
    def test_backward_propagation(self, sparse_input_sx):
        f = sparse_input_sx
        f.sp_init(False)
        f.sp_output(0)[0, 0] = 1
        f.sp_output(0)[1, 0] = 4
        f.sp_evaluate(False)
        np.testing.assert_array_equal(f.sp_input(0), [[1, 0], [1, 4]])

    @pytest.mark.sparsity
    def test_init_clears_bits(self, sparse_input_sx):
        f = sparse_input_sx
        f.sp_init(True)
        f.sp_input(0)[...] = 1
        f.sp_init(True)
        assert not f.sp_input(0).any()

    @pytest.mark.sparsity
    def test_evaluate_before_init(self, sparse_input_sx):
        with pytest.raises(NotInitializedError, match="sp_init"):
            sparse_input_sx.sp_evaluate(True)

    @pytest.mark.sparsity
    @pytest.mark.fallback
    def test_callback_cannot_propagate(self):
        f = CallbackFunction(lambda v: v, [2], [2]).init()
        assert not f.sp_can_evaluate(True)
        assert not f.sp_can_evaluate(False)
        with pytest.raises(UnsupportedOperationError):
            f.sp_init(True)


class TestJacobianSparsity:
    @pytest.mark.sparsity
    def test_compact_and_full(self, sparse_input_sx):
        """Compact patterns count nonzeros, full patterns count every entry."""
        f = sparse_input_sx
        compact = f.jac_sparsity(0, 0, compact=True)
        full = f.jac_sparsity(0, 0)

        np.testing.assert_array_equal(compact.todense(), [[1, 1, 0], [0, 0, 1]])
        np.testing.assert_array_equal(full.todense(), [[1, 1, 0, 0], [0, 0, 0, 1]])

    @pytest.mark.sparsity
    def test_cached(self, sparse_input_sx):
        f = sparse_input_sx
        assert f.jac_sparsity(0, 0) is f.jac_sparsity(0, 0)

    @pytest.mark.sparsity
    @pytest.mark.parametrize("ad_mode", ["forward", "adjoint", "automatic"])
    def test_mx_difference_operator(self, ad_mode):
        """Both directions detect the bidiagonal pattern of a finite difference."""
        n = 100
        f = MXFunction(lambda x: x[1:] - x[:-1], [n], {"ad_mode": ad_mode}).init()
        expected = np.eye(n - 1, n, k=1) + np.eye(n - 1, n)
        np.testing.assert_array_equal(f.jac_sparsity().todense(), expected)

    @pytest.mark.sparsity
    def test_more_seeds_than_lanes(self):
        """Blocks with more nonzeros than lanes take several passes."""
        n = 2 * LANES + 5
        f = MXFunction(lambda x: jnp.sin(x) * 2.0, [n]).init()
        assert f.jac_sparsity() == SparsityPattern.from_dense(np.eye(n))

    @pytest.mark.sparsity
    def test_matrix_slots_are_column_major(self):
        """Row-major jax elements map onto column-major slot entries."""
        f = MXFunction(lambda x: x.T, [(2, 3)]).init()
        jac = f.jac_sparsity().todense()
        # vec(x.T)[k] = x[k // 2 ... ] is a permutation of vec(x)
        expected = np.zeros((6, 6), dtype=int)
        for r in range(2):
            for col in range(3):
                expected[col + r * 3, r + col * 2] = 1
        np.testing.assert_array_equal(jac, expected)

    @pytest.mark.sparsity
    def test_multiple_slots(self):
        f = MXFunction(lambda x, y: (x * y[0], jnp.sum(y)), [2, 3]).init()
        np.testing.assert_array_equal(f.jac_sparsity(0, 0).todense(), np.eye(2))
        np.testing.assert_array_equal(f.jac_sparsity(1, 0).todense(), [[1, 0, 0], [1, 0, 0]])
        assert f.jac_sparsity(0, 1).nnz == 0
        assert f.jac_sparsity(1, 1).is_dense

    @pytest.mark.sparsity
    def test_sparse_option_off(self):
        f = MXFunction(lambda x: x**2, [3], {"sparse": False}).init()
        assert f.jac_sparsity().is_dense

    @pytest.mark.sparsity
    @pytest.mark.fallback
    def test_callback_dense(self):
        f = CallbackFunction(lambda v: v, [2], [3]).init()
        assert f.jac_sparsity() == SparsityPattern.dense(3, 2)

    @pytest.mark.sparsity
    def test_zero_times_x_overapproximates(self):
        """Vacuous dependencies are kept; dropping a real one would be a bug."""
        f = MXFunction(lambda x: 0.0 * x, [2]).init()
        assert f.jac_sparsity() == SparsityPattern.from_dense(np.eye(2))

    @pytest.mark.sparsity
    @pytest.mark.parametrize("kind", ["sx", "mx"])
    def test_soundness_at_random_points(self, kind, rng):
        """Detected patterns cover the numerically nonzero entries."""
        if kind == "sx":
            v = sp.Matrix(sp.symbols("v0:4", real=True))
            f = SXFunction([v], [sp.Matrix([v[0] * v[3], sp.sin(v[1]), v[2] ** 2 + v[0]])])
        else:
            f = MXFunction(
                lambda v: jnp.stack([v[0] * v[3], jnp.sin(v[1]), v[2] ** 2 + v[0]]), [4]
            )
        f.init()
        check_sparsity_soundness(f, 0, 0, [[rng.normal(size=4)] for _ in range(3)])


class TestSetSparsity:
    @pytest.mark.sparsity
    def test_user_pattern_is_used(self):
        f = CallbackFunction(lambda v: 2 * v, [3], [3]).init()
        diag = SparsityPattern.from_dense(np.eye(3))
        f.set_jac_sparsity(diag)
        assert f.jac_sparsity() == diag
        assert f.jac_sparsity(compact=True) == diag

    @pytest.mark.sparsity
    def test_compact_pattern_expanded(self, sparse_input_sx):
        f = sparse_input_sx
        f.set_jac_sparsity(SparsityPattern.from_dense([[0, 0, 1], [0, 0, 0]]), compact=True)
        np.testing.assert_array_equal(
            f.jac_sparsity().todense(), [[0, 0, 0, 1], [0, 0, 0, 0]]
        )

    @pytest.mark.sparsity
    def test_wrong_shape(self):
        f = CallbackFunction(lambda v: v, [3], [3]).init()
        with pytest.raises(ShapeError, match="expected"):
            f.set_jac_sparsity(SparsityPattern.dense(2, 3))


class TestConservativeFallback:
    @pytest.mark.sparsity
    @pytest.mark.fallback
    def test_unknown_primitive_warns_and_is_dense(self, caplog, monkeypatch):
        """Primitives without a rule make every output depend on every input."""
        monkeypatch.setattr(fxad._interpret, "_warned", set())
        f = MXFunction(lambda x: jnp.cumsum(x), [4]).init()
        with caplog.at_level(logging.WARNING, logger="fxad._interpret"):
            pattern = f.jac_sparsity()
        assert pattern.is_dense
        assert "cumsum" in caplog.text
