"""Tests for functions of JAX-traceable callables."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from fxad import (
    MXFunction,
    NotInitializedError,
    Representation,
    ShapeError,
    UnsupportedOperationError,
    check_jacobian_correctness,
    check_sparsity_soundness,
)
from fxad.mx import as_slot_value, slot_shape


class TestShapes:
    @pytest.mark.parametrize(
        ("shape", "expected"),
        [((), (1, 1)), (3, (3, 1)), ((4,), (4, 1)), ((2, 5), (2, 5))],
    )
    def test_slot_shape(self, shape, expected):
        assert slot_shape(shape) == expected

    def test_three_dims_rejected(self):
        with pytest.raises(ShapeError, match="2-D"):
            slot_shape((2, 2, 2))

    def test_as_slot_value(self):
        assert as_slot_value(jnp.zeros(3)).shape == (3, 1)
        assert as_slot_value(1.0).shape == (1, 1)

    def test_output_shapes_from_tracing(self):
        f = MXFunction(lambda x: (jnp.sum(x), jnp.outer(x, x), x), [3])
        assert [sp.shape for sp in f._output_sparsity] == [(1, 1), (3, 3), (3, 1)]


class TestTracing:
    def test_jaxpr_available_after_init(self):
        f = MXFunction(lambda x: jnp.sin(x), [2])
        with pytest.raises(NotInitializedError):
            f.jaxpr  # noqa: B018
        f.init()
        assert "sin" in str(f.jaxpr)

    @pytest.mark.numeric
    def test_receives_declared_shapes(self):
        seen = []

        def fn(v, m):
            seen.append((v.shape, m.shape))
            return m @ v

        f = MXFunction(fn, [2, (2, 2)]).init()
        (out,) = f([1.0, 1.0], [[1.0, 2.0], [3.0, 4.0]])
        np.testing.assert_allclose(out, [[3.0], [7.0]])
        assert seen[0] == ((2,), (2, 2))

    @pytest.mark.numeric
    def test_matrix_values_column_major(self):
        """Flat values fill matrix slots column by column."""
        f = MXFunction(lambda m: m.T, [(2, 2)]).init()
        (out,) = f([1.0, 2.0, 3.0, 4.0])
        np.testing.assert_allclose(out, [[1.0, 2.0], [3.0, 4.0]])

    @pytest.mark.numeric
    def test_captured_constants(self):
        weights = jnp.array([1.0, 2.0, 3.0])
        f = MXFunction(lambda x: jnp.dot(weights, x), [3]).init()
        np.testing.assert_allclose(f([1.0, 1.0, 1.0])[0], [[6.0]])
        np.testing.assert_array_equal(f.jac_sparsity().todense(), [[1, 1, 1]])

    @pytest.mark.numeric
    def test_outputs_are_numpy(self):
        f = MXFunction(lambda x: x * 2.0, [2]).init()
        (out,) = f([1.0, 2.0])
        assert isinstance(out, np.ndarray)
        assert out.dtype == np.float64

    @pytest.mark.symbolic
    def test_no_scalar_graph(self):
        assert Representation.SCALAR_GRAPH not in MXFunction.representations

    @pytest.mark.symbolic
    def test_nested_in_jax_transformations(self, product_sum_mx):
        batched = jax.vmap(lambda z: product_sum_mx.eval_mx([z]).res[0])
        out = batched(jnp.array([[[1.0], [2.0]], [[3.0], [4.0]]]))
        np.testing.assert_allclose(out[:, :, 0], [[2.0, 3.0], [12.0, 7.0]])


class TestBroadcastSparsity:
    @pytest.mark.sparsity
    def test_outer_product_pattern_is_sound(self, rng):
        """``x * x.T`` broadcasts both operands over a size-1 axis."""
        f = MXFunction(lambda x: x * x.T, [(3, 1)]).init()
        check_sparsity_soundness(f, points=[[rng.normal(size=(3, 1))]])
        assert f.jac_sparsity().nnz == 15

    @pytest.mark.jacobian
    def test_outer_product_jacobian(self, rng):
        f = MXFunction(lambda v: (v * v.T).reshape(-1), [(3, 1)]).init()
        check_jacobian_correctness(f, args=[rng.normal(size=(3, 1))])


class TestPrecision:
    @pytest.fixture
    def x32(self):
        jax.config.update("jax_enable_x64", False)
        try:
            yield
        finally:
            jax.config.update("jax_enable_x64", True)

    def test_construction_requires_x64(self, x32):
        with pytest.raises(UnsupportedOperationError, match="jax_enable_x64"):
            MXFunction(lambda x: x * (1 + 1e-10), [1])

    def test_evaluation_requires_x64(self):
        f = MXFunction(lambda x: x * (1 + 1e-10), [1]).init()
        jax.config.update("jax_enable_x64", False)
        try:
            with pytest.raises(UnsupportedOperationError, match="64-bit"):
                f(1.0)
        finally:
            jax.config.update("jax_enable_x64", True)

    def test_small_increments_survive(self):
        f = MXFunction(lambda x: x * (1 + 1e-10), [1]).init()
        (out,) = f(1.0)
        assert out[0, 0] - 1.0 == pytest.approx(1e-10, abs=1e-14)
