"""Pytest configuration and fixtures for fxad tests."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
import sympy as sp

from fxad import MXFunction, SXFunction

jax.config.update("jax_enable_x64", True)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "numeric: numeric evaluation on slot buffers")
    config.addinivalue_line("markers", "symbolic: evaluation on sympy or jax values")
    config.addinivalue_line(
        "markers", "sparsity: dependency propagation and Jacobian sparsity"
    )
    config.addinivalue_line(
        "markers", "fallback: documents conservative fallback behavior"
    )
    config.addinivalue_line("markers", "coloring: row and column coloring tests")
    config.addinivalue_line("markers", "jacobian: Jacobian construction tests")
    config.addinivalue_line("markers", "hessian: gradient and Hessian construction")
    config.addinivalue_line("markers", "solver: linear solvers and implicit functions")


@pytest.fixture
def product_sum_sx():
    """SX function ``z -> (z0 * z1, z0 + z1)`` with a single 2-vector input."""
    z = sp.Matrix(sp.symbols("z0 z1", real=True))
    return SXFunction([z], [sp.Matrix([z[0] * z[1], z[0] + z[1]])]).init()


@pytest.fixture
def product_sum_mx():
    """MX version of ``z -> (z0 * z1, z0 + z1)``."""
    return MXFunction(lambda z: jnp.stack([z[0] * z[1], z[0] + z[1]]), [2]).init()


@pytest.fixture
def rng():
    return np.random.default_rng(0)
