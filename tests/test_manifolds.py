import jaxlie
import numpy as onp
import pytest
from jax import numpy as jnp

import lscov


def test_euclidean() -> None:
    manifold = lscov.EuclideanManifold(3)
    x = onp.array([1.0, 2.0, 3.0])
    delta = onp.array([0.5, -1.0, 0.0])
    onp.testing.assert_allclose(manifold.plus(x, delta), x + delta)
    onp.testing.assert_allclose(manifold.minus(x + delta, x), delta)
    onp.testing.assert_array_equal(manifold.plus_jacobian(x), onp.eye(3))


def test_subset() -> None:
    manifold = lscov.SubsetManifold.make(4, [2, 0])
    assert manifold.ambient_size == 4
    assert manifold.tangent_size == 2

    x = onp.array([1.0, 2.0, 3.0, 4.0])
    onp.testing.assert_allclose(
        manifold.plus(x, onp.array([10.0, 20.0])), [1.0, 12.0, 3.0, 24.0]
    )
    onp.testing.assert_allclose(
        manifold.minus(onp.array([0.0, 5.0, 0.0, 6.0]), x), [3.0, 2.0]
    )
    onp.testing.assert_array_equal(
        manifold.plus_jacobian(x),
        [[0.0, 0.0], [1.0, 0.0], [0.0, 0.0], [0.0, 1.0]],
    )


def test_subset_zero_tangent() -> None:
    manifold = lscov.SubsetManifold.make(1, [0])
    assert manifold.tangent_size == 0
    assert manifold.plus_jacobian(onp.zeros(1)).shape == (1, 0)


@pytest.mark.parametrize("constant_indices", [[0, 0], [3], [-1]])
def test_subset_invalid(constant_indices: list[int]) -> None:
    with pytest.raises(ValueError):
        lscov.SubsetManifold.make(3, constant_indices)


def test_retract() -> None:
    manifold = lscov.RetractManifold(
        retract_fn=lambda x, delta: x * jnp.exp(delta[0]),
        ambient_dim=2,
        tangent_dim=1,
    )
    x = onp.array([2.0, -3.0])
    onp.testing.assert_allclose(
        manifold.plus(x, onp.array([onp.log(2.0)])), [4.0, -6.0], rtol=1e-12
    )
    onp.testing.assert_allclose(manifold.plus_jacobian(x), [[2.0], [-3.0]])
    with pytest.raises(NotImplementedError):
        manifold.minus(x, x)


@pytest.mark.parametrize(
    "manifold,group",
    [
        (lscov.SO2Manifold(), jaxlie.SO2),
        (lscov.SO3Manifold(), jaxlie.SO3),
        (lscov.SE2Manifold(), jaxlie.SE2),
        (lscov.SE3Manifold(), jaxlie.SE3),
    ],
)
def test_lie_group(manifold: lscov.LieGroupManifold, group) -> None:
    assert manifold.ambient_size == group.parameters_dim
    assert manifold.tangent_size == group.tangent_dim

    x = onp.asarray(
        group.exp(onp.linspace(0.1, 0.5, group.tangent_dim)).parameters()
    )
    delta = onp.linspace(-0.2, 0.2, group.tangent_dim)
    onp.testing.assert_allclose(
        manifold.minus(manifold.plus(x, delta), x), delta, atol=1e-10
    )

    # Plus Jacobian matches finite differences.
    jac = manifold.plus_jacobian(x)
    assert jac.shape == (group.parameters_dim, group.tangent_dim)
    eps = 1e-6
    for i in range(group.tangent_dim):
        step = onp.zeros(group.tangent_dim)
        step[i] = eps
        numerical = (manifold.plus(x, step) - manifold.plus(x, -step)) / (2 * eps)
        onp.testing.assert_allclose(jac[:, i], numerical, atol=1e-6)
