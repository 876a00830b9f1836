"""Tests for evaluation in the numeric, scalar-graph and matrix-graph representations."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
import sympy as sp

from fxad import (
    CallbackFunction,
    DimensionMismatchError,
    EvalResult,
    EvaluationError,
    MXFunction,
    NotInitializedError,
    Representation,
    SXFunction,
    UnsupportedOperationError,
)

a, b = sp.symbols("a b", real=True)


def test_representation_tags():
    assert str(Representation.NUMERIC) == "numeric"
    assert Representation("sx") is Representation.SCALAR_GRAPH
    assert Representation.MATRIX_GRAPH == "mx"


class TestScalarGraph:
    @pytest.mark.symbolic
    def test_eval_sx_with_seeds(self, product_sum_sx):
        """Symbolic sensitivities are exact expressions in the arguments."""
        arg = sp.Matrix([a, b])
        result = product_sum_sx.eval_sx(
            [arg], fseed=[[sp.Matrix([1, 0])]], aseed=[[sp.Matrix([1, 0])]]
        )

        assert isinstance(result, EvalResult)
        assert (result.res[0] - sp.Matrix([a * b, a + b])).is_zero_matrix
        assert (result.fsens[0][0] - sp.Matrix([b, 1])).is_zero_matrix
        assert (result.asens[0][0] - sp.Matrix([b, a])).is_zero_matrix

    @pytest.mark.symbolic
    def test_symbolic_linearity_is_exact(self, product_sum_sx):
        arg = sp.Matrix([a, b])
        s, t = sp.symbols("s t", real=True)
        result = product_sum_sx.eval_sx(
            [arg],
            fseed=[[sp.Matrix([1, 0])], [sp.Matrix([0, 1])], [sp.Matrix([s, t])]],
        )
        combined = s * result.fsens[0][0] + t * result.fsens[1][0]
        assert sp.simplify(result.fsens[2][0] - combined).is_zero_matrix

    @pytest.mark.symbolic
    def test_res_given_skips_base_pass(self, product_sum_sx):
        given = sp.Matrix([7, 8])
        result = product_sum_sx.eval_sx([sp.Matrix([a, b])], res=[given])
        assert result.res[0] == given
        assert result.fsens == []
        assert result.asens == []

    @pytest.mark.symbolic
    def test_wrong_argument_shape(self, product_sum_sx):
        with pytest.raises(DimensionMismatchError, match="expected"):
            product_sum_sx.eval_sx([sp.Matrix([a])])

    @pytest.mark.symbolic
    def test_wrong_argument_count(self, product_sum_sx):
        with pytest.raises(DimensionMismatchError, match="Expected 1"):
            product_sum_sx.eval_sx([sp.Matrix([a, b]), sp.Matrix([a, b])])

    @pytest.mark.symbolic
    def test_mx_function_cannot_evaluate_sx(self, product_sum_mx):
        with pytest.raises(UnsupportedOperationError, match="representation 'sx'"):
            product_sum_mx.eval_sx([sp.Matrix([a, b])])


class TestMatrixGraph:
    @pytest.mark.symbolic
    @pytest.mark.parametrize("kind", ["sx", "mx"])
    def test_eval_mx_inside_jit(self, kind, product_sum_sx, product_sum_mx):
        """Functions embed into an outer jax computation."""
        f = product_sum_sx if kind == "sx" else product_sum_mx

        @jax.jit
        def outer(z):
            return f.eval_mx([z]).res[0] * 2.0

        z = jnp.array([[2.0], [5.0]])
        np.testing.assert_allclose(outer(z), [[20.0], [14.0]])

    @pytest.mark.symbolic
    @pytest.mark.parametrize("kind", ["sx", "mx"])
    def test_eval_mx_sensitivities(self, kind, product_sum_sx, product_sum_mx):
        f = product_sum_sx if kind == "sx" else product_sum_mx
        z = jnp.array([[2.0], [5.0]])
        result = f.eval_mx(
            [z],
            fseed=[[jnp.array([[1.0], [0.0]])]],
            aseed=[[jnp.array([[0.0], [1.0]])]],
        )
        np.testing.assert_allclose(result.fsens[0][0], [[5.0], [1.0]])
        np.testing.assert_allclose(result.asens[0][0], [[1.0], [1.0]])

    @pytest.mark.symbolic
    def test_eval_mx_is_differentiable(self, product_sum_mx):
        """jax transformations see through an embedded function."""

        def total(z):
            return jnp.sum(product_sum_mx.eval_mx([z]).res[0])

        grad = jax.grad(total)(jnp.array([[2.0], [5.0]]))
        np.testing.assert_allclose(grad, [[6.0], [3.0]])

    @pytest.mark.symbolic
    @pytest.mark.parametrize("parallel", [False, True])
    @pytest.mark.parametrize("kind", ["sx", "mx"])
    def test_map_mx_matches_single_calls(self, kind, parallel, product_sum_sx, product_sum_mx):
        f = product_sum_sx if kind == "sx" else product_sum_mx
        points = [jnp.array([[2.0], [5.0]]), jnp.array([[-1.0], [3.0]]), jnp.zeros((2, 1))]
        mapped = f.map_mx([[z] for z in points], parallel=parallel)
        assert len(mapped) == len(points)
        for z, res in zip(points, mapped, strict=True):
            np.testing.assert_allclose(res[0], f.eval_mx([z]).res[0])

    @pytest.mark.symbolic
    def test_map_mx_checks_argument_sets(self, product_sum_mx):
        assert product_sum_mx.map_mx([]) == []
        with pytest.raises(DimensionMismatchError, match="Argument set 1"):
            product_sum_mx.map_mx([[jnp.zeros((2, 1))], []])

    @pytest.mark.symbolic
    def test_callback_is_numeric_only(self):
        f = CallbackFunction(lambda v: v, [1], [1]).init()
        with pytest.raises(UnsupportedOperationError):
            f.eval_mx([jnp.zeros((1, 1))])


class TestErrors:
    def test_kernel_failure_is_wrapped(self):
        """Failures inside a representation carry the representation tag."""
        x = sp.Symbol("x", real=True)
        f = SXFunction([x], [sp.gamma(x)]).init()
        with pytest.raises(EvaluationError, match="gamma") as excinfo:
            f.evaluate()
        assert excinfo.value.representation is Representation.NUMERIC
        assert excinfo.value.slot == 0
        assert isinstance(excinfo.value.__cause__, NotImplementedError)

    def test_failing_output_is_attributed(self):
        x = sp.Symbol("x", real=True)
        f = SXFunction([x], [x + 1, sp.gamma(x)]).init()
        with pytest.raises(EvaluationError, match="slot 1") as excinfo:
            f.evaluate()
        assert excinfo.value.slot == 1

    @pytest.mark.parametrize(("n_out", "slot"), [(1, 0), (2, None)])
    def test_callback_failure_slot(self, n_out, slot):
        """A kernel failure names its slot when the pass produces only one."""

        def fail(v):
            raise ValueError("bad value")

        f = CallbackFunction(fail, [1], [1] * n_out).init()
        with pytest.raises(EvaluationError, match="bad value") as excinfo:
            f.evaluate()
        assert excinfo.value.representation is Representation.NUMERIC
        assert excinfo.value.slot == slot

    def test_unconvertible_output_is_attributed(self):
        f = CallbackFunction(lambda v: (v, "abc"), [1], [1, 1]).init()
        with pytest.raises(EvaluationError) as excinfo:
            f.evaluate()
        assert excinfo.value.slot == 1

    def test_wrong_output_count_from_kernel(self):
        f = CallbackFunction(lambda v: (v, v), [1], [1]).init()
        with pytest.raises(DimensionMismatchError, match="Expected 1 output"):
            f.evaluate()

    def test_missing_sweep(self):
        f = CallbackFunction(lambda v: v, [1], [1]).init()
        with pytest.raises(UnsupportedOperationError, match="no forward"):
            f.evaluate(1, 0)

    def test_not_initialized(self):
        f = MXFunction(lambda v: v, [1])
        with pytest.raises(NotInitializedError, match="init"):
            f.eval_mx([jnp.zeros((1, 1))])
