import jax
import jax.numpy as jnp
import numpy as np
import pytest

from fxad._interpret import prop_jaxpr


def dependency_matrix(fn, *shapes) -> np.ndarray:
    """0/1 dependency matrix of ``fn`` with elements numbered row-major.

    Rows are the output elements, all outputs stacked;
    columns are the input elements, all inputs stacked.
    """
    closed = jax.make_jaxpr(fn)(*[jnp.zeros(s) for s in shapes])
    input_indices = []
    offset = 0
    for shape in shapes:
        n = int(np.prod(shape))
        input_indices.append([{offset + k} for k in range(n)])
        offset += n
    outputs = prop_jaxpr(closed.jaxpr, input_indices)
    rows = [s for sets in outputs for s in sets]
    matrix = np.zeros((len(rows), offset), dtype=int)
    for r, deps in enumerate(rows):
        matrix[r, sorted(deps)] = 1
    return matrix


@pytest.fixture
def deps():
    return dependency_matrix
