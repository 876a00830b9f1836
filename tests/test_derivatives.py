"""Tests for Jacobian, gradient and Hessian construction."""

import jax.numpy as jnp
import numpy as np
import pytest
import sympy as sp

from fxad import (
    CallbackFunction,
    MXFunction,
    NumericJacobian,
    ShapeError,
    SparsityPattern,
    SXFunction,
    UnsupportedOperationError,
    check_jacobian_correctness,
)

PRODUCT_SUM_JAC = [[5.0, 2.0], [1.0, 1.0]]


def _product_sum_callback():
    """``(z0 z1, z0 + z1)`` with hand-written derivative callbacks."""

    def forward(args, res, seeds):
        z, dz = args[0].ravel(), seeds[0].ravel()
        return [[z[1] * dz[0] + z[0] * dz[1], dz[0] + dz[1]]]

    def adjoint(args, res, seeds):
        z, w = args[0].ravel(), seeds[0].ravel()
        return [[z[1] * w[0] + w[1], z[0] * w[0] + w[1]]]

    return CallbackFunction(
        lambda z: np.array([z[0, 0] * z[1, 0], z[0, 0] + z[1, 0]]),
        [2],
        [2],
        forward=forward,
        adjoint=adjoint,
    ).init()


class TestJacobian:
    @pytest.mark.jacobian
    @pytest.mark.parametrize("kind", ["sx", "mx", "numeric"])
    def test_product_sum(self, kind, product_sum_sx, product_sum_mx):
        """Jacobian of (z0 z1, z0 + z1) at (2, 5)."""
        if kind == "sx":
            jac = product_sum_sx.jacobian()
        elif kind == "mx":
            jac = product_sum_mx.jacobian()
        else:
            jac = _product_sum_callback().jacobian()
        (value,) = jac([2.0, 5.0])
        np.testing.assert_allclose(value, PRODUCT_SUM_JAC)

    @pytest.mark.jacobian
    def test_kinds(self, product_sum_sx, product_sum_mx):
        assert isinstance(product_sum_sx.jacobian(), SXFunction)
        assert isinstance(product_sum_mx.jacobian(), MXFunction)
        assert isinstance(_product_sum_callback().jacobian(), NumericJacobian)

    @pytest.mark.jacobian
    def test_forced_numeric(self):
        z = sp.Matrix(sp.symbols("z0 z1", real=True))
        f = SXFunction(
            [z], [sp.Matrix([z[0] * z[1], z[0] + z[1]])], {"numeric_jacobian": True}
        ).init()
        jac = f.jacobian()
        assert isinstance(jac, NumericJacobian)
        np.testing.assert_allclose(jac([2.0, 5.0])[0], PRODUCT_SUM_JAC)

    @pytest.mark.jacobian
    def test_is_initialized_and_cached(self, product_sum_sx):
        jac = product_sum_sx.jacobian()
        assert jac.is_initialized
        assert product_sum_sx.jacobian(0, 0) is jac

    @pytest.mark.jacobian
    def test_name_and_inputs(self, product_sum_mx):
        jac = product_sum_mx.jacobian()
        assert jac.name == "jac_unnamed_function"
        assert jac.n_in == product_sum_mx.n_in
        assert jac.output_sparsity().shape == (2, 2)

    @pytest.mark.jacobian
    def test_matrix_slot_rejected(self):
        """Matrix-shaped slots must be reshaped to columns first."""
        f = MXFunction(lambda x: x * 2.0, [(2, 2)]).init()
        with pytest.raises(ShapeError, match="column"):
            f.jacobian()

    @pytest.mark.jacobian
    @pytest.mark.parametrize("ad_mode", ["forward", "adjoint"])
    def test_sparse_banded_numeric(self, ad_mode, rng):
        """Colored numeric Jacobians of a banded function are exact."""
        n = 12

        def fn(x):
            return x[1:] * x[:-1] + jnp.sin(x[1:])

        f = MXFunction(fn, [n], {"ad_mode": ad_mode, "numeric_jacobian": True}).init()
        check_jacobian_correctness(f, args=[rng.normal(size=n)])

    @pytest.mark.jacobian
    @pytest.mark.parametrize("ad_mode", ["forward", "adjoint"])
    def test_sparse_banded_traced(self, ad_mode, rng):
        n = 12
        f = MXFunction(lambda x: x[1:] ** 2 - x[:-1], [n], {"ad_mode": ad_mode}).init()
        check_jacobian_correctness(f, args=[rng.normal(size=n)])

    @pytest.mark.jacobian
    def test_callback_without_derivatives(self):
        f = CallbackFunction(lambda v: v, [2], [2]).init()
        with pytest.raises(UnsupportedOperationError):
            f.jacobian()

    @pytest.mark.jacobian
    def test_numeric_jacobian_not_differentiable(self):
        """Output 0 of the block function is the column-shaped value."""
        fj = _product_sum_callback().jacobian_blocks([(None, 0), (0, 0)])
        assert isinstance(fj, NumericJacobian)
        assert not fj.differentiable
        with pytest.raises(UnsupportedOperationError, match="cannot be differentiated"):
            fj.jacobian(0, 0)
        with pytest.raises(UnsupportedOperationError, match="cannot be differentiated"):
            fj.jacobian_blocks([(0, 0)])

    @pytest.mark.jacobian
    def test_multiple_inputs(self):
        f = MXFunction(lambda x, y: x * y[0] + y[1], [3, 2]).init()
        (jx,) = f.jacobian(0, 0)([1.0, 2.0, 3.0], [4.0, 5.0])
        (jy,) = f.jacobian(1, 0)([1.0, 2.0, 3.0], [4.0, 5.0])
        np.testing.assert_allclose(jx, 4.0 * np.eye(3))
        np.testing.assert_allclose(jy, [[1.0, 1.0], [2.0, 1.0], [3.0, 1.0]])


class TestJacobianBlocks:
    @pytest.mark.jacobian
    @pytest.mark.parametrize("kind", ["sx", "mx", "numeric"])
    def test_value_and_jacobian(self, kind, product_sum_sx, product_sum_mx):
        """``(None, o)`` returns the output itself next to the Jacobian."""
        if kind == "sx":
            f = product_sum_sx
        elif kind == "mx":
            f = product_sum_mx
        else:
            f = _product_sum_callback()
        fj = f.jacobian_blocks([(None, 0), (0, 0)])
        value, jac = fj([2.0, 5.0])
        np.testing.assert_allclose(value, [[10.0], [7.0]])
        np.testing.assert_allclose(jac, PRODUCT_SUM_JAC)

    @pytest.mark.jacobian
    def test_several_outputs_share_passes(self, rng):
        f = MXFunction(lambda x: (jnp.sin(x), jnp.sum(x**2)), [4], {"numeric_jacobian": True}).init()
        x = rng.normal(size=4)
        j0, j1 = f.jacobian_blocks([(0, 0), (0, 1)])(x)
        np.testing.assert_allclose(j0, np.diag(np.cos(x)))
        np.testing.assert_allclose(j1, [2 * x])

    @pytest.mark.jacobian
    def test_empty_block_list(self, product_sum_sx):
        with pytest.raises(ValueError, match="at least one"):
            product_sum_sx.jacobian_blocks([])

    @pytest.mark.jacobian
    def test_getitem_selects_output(self):
        f = MXFunction(lambda x: (x * 2.0, x + 1.0), [2]).init()
        second = f[1]
        assert second.n_out == 1
        np.testing.assert_allclose(second([1.0, 2.0])[0], [[2.0], [3.0]])


class TestGradientHessian:
    @pytest.fixture
    def rosenbrock_sx(self):
        x, y = sp.symbols("x y", real=True)
        return SXFunction([sp.Matrix([x, y])], [(1 - x) ** 2 + 100 * (y - x**2) ** 2]).init()

    @pytest.fixture
    def rosenbrock_mx(self):
        return MXFunction(
            lambda v: (1 - v[0]) ** 2 + 100 * (v[1] - v[0] ** 2) ** 2, [2]
        ).init()

    @staticmethod
    def _expected(x, y):
        grad = [[-2 * (1 - x) - 400 * x * (y - x**2)], [200 * (y - x**2)]]
        hess = [[2 - 400 * (y - x**2) + 800 * x**2, -400 * x], [-400 * x, 200.0]]
        return grad, hess

    @pytest.mark.hessian
    @pytest.mark.parametrize("kind", ["sx", "mx"])
    def test_gradient_is_column(self, kind, rosenbrock_sx, rosenbrock_mx):
        f = rosenbrock_sx if kind == "sx" else rosenbrock_mx
        (grad,) = f.gradient()([0.5, -1.0])
        assert grad.shape == (2, 1)
        np.testing.assert_allclose(grad, self._expected(0.5, -1.0)[0])
        assert f.gradient().name == "grad_unnamed_function"

    @pytest.mark.hessian
    @pytest.mark.parametrize("kind", ["sx", "mx"])
    def test_hessian(self, kind, rosenbrock_sx, rosenbrock_mx):
        f = rosenbrock_sx if kind == "sx" else rosenbrock_mx
        (hess,) = f.hessian()([0.5, -1.0])
        np.testing.assert_allclose(hess, self._expected(0.5, -1.0)[1])

    @pytest.mark.hessian
    def test_hessian_sparsity(self):
        """A separable objective has a diagonal Hessian pattern."""
        f = MXFunction(lambda v: jnp.sum(jnp.sin(v) * v), [5]).init()
        assert f.gradient().jac_sparsity() == SparsityPattern.from_dense(np.eye(5))
        np.testing.assert_allclose(f.hessian()(np.zeros(5))[0], 2.0 * np.eye(5))

    @pytest.mark.hessian
    def test_vector_output_rejected(self, product_sum_mx):
        with pytest.raises(ShapeError, match="scalar"):
            product_sum_mx.gradient()
        with pytest.raises(ShapeError, match="scalar"):
            product_sum_mx.hessian()

    @pytest.mark.hessian
    def test_numeric_hessian_unsupported(self):
        f = CallbackFunction(
            lambda v: v[0, 0] * v[1, 0],
            [2],
            [()],
            forward=lambda args, res, seeds: [
                args[0][1, 0] * seeds[0][0, 0] + args[0][0, 0] * seeds[0][1, 0]
            ],
        ).init()
        np.testing.assert_allclose(f.gradient()([3.0, 4.0])[0], [[4.0], [3.0]])
        with pytest.raises(UnsupportedOperationError):
            f.hessian()
