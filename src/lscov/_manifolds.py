"""Local parameterizations for parameter blocks.

A manifold maps a tangent-space perturbation `delta` to an update of the
ambient parameters via `plus(x, delta)`. Covariances are computed in tangent
space and lifted back using `plus_jacobian(x)`, the derivative of `plus` with
respect to `delta` at `delta = 0`.
"""

from __future__ import annotations

import abc
from typing import Any, Callable, Sequence

import jax
import jax_dataclasses as jdc
import jaxlie
import numpy as onp
from jax import numpy as jnp


class Manifold(abc.ABC):
    """Abstract base class for manifolds.

    The operation set is fixed: sizes, `plus`, `minus`, and `plus_jacobian`.
    All array outputs are float64 numpy arrays.
    """

    @property
    @abc.abstractmethod
    def ambient_size(self) -> int:
        """Dimension of the parameters as stored."""

    @property
    @abc.abstractmethod
    def tangent_size(self) -> int:
        """Dimension of the tangent space. Can be zero."""

    @abc.abstractmethod
    def plus(self, x: onp.ndarray, delta: onp.ndarray) -> onp.ndarray: ...

    @abc.abstractmethod
    def minus(self, y: onp.ndarray, x: onp.ndarray) -> onp.ndarray: ...

    @abc.abstractmethod
    def plus_jacobian(self, x: onp.ndarray) -> onp.ndarray:
        """Local-to-global Jacobian. Shape: `(ambient_size, tangent_size)`."""


@jdc.pytree_dataclass
class EuclideanManifold(Manifold):
    size: jdc.Static[int]

    @property
    def ambient_size(self) -> int:
        return self.size

    @property
    def tangent_size(self) -> int:
        return self.size

    def plus(self, x: onp.ndarray, delta: onp.ndarray) -> onp.ndarray:
        return onp.asarray(x, dtype=onp.float64) + delta

    def minus(self, y: onp.ndarray, x: onp.ndarray) -> onp.ndarray:
        return onp.asarray(y, dtype=onp.float64) - x

    def plus_jacobian(self, x: onp.ndarray) -> onp.ndarray:
        return onp.eye(self.size)


@jdc.pytree_dataclass
class SubsetManifold(Manifold):
    """Holds a subset of the coordinates constant. The tangent space is made
    up of the remaining coordinates, in order."""

    size: jdc.Static[int]
    constant_indices: jdc.Static[tuple[int, ...]]

    @staticmethod
    def make(size: int, constant_indices: Sequence[int]) -> SubsetManifold:
        constant_indices = tuple(sorted(int(i) for i in constant_indices))
        if len(set(constant_indices)) != len(constant_indices):
            raise ValueError(
                f"Duplicate constant indices in subset manifold: {constant_indices}"
            )
        if any(i < 0 or i >= size for i in constant_indices):
            raise ValueError(
                f"Constant indices {constant_indices} out of range for size {size}"
            )
        return SubsetManifold(size=size, constant_indices=constant_indices)

    @property
    def ambient_size(self) -> int:
        return self.size

    @property
    def tangent_size(self) -> int:
        return self.size - len(self.constant_indices)

    def _free_indices(self) -> list[int]:
        return [i for i in range(self.size) if i not in self.constant_indices]

    def plus(self, x: onp.ndarray, delta: onp.ndarray) -> onp.ndarray:
        out = onp.array(x, dtype=onp.float64)
        out[self._free_indices()] += delta
        return out

    def minus(self, y: onp.ndarray, x: onp.ndarray) -> onp.ndarray:
        free = self._free_indices()
        return onp.asarray(y, dtype=onp.float64)[free] - onp.asarray(x)[free]

    def plus_jacobian(self, x: onp.ndarray) -> onp.ndarray:
        jac = onp.zeros((self.size, self.tangent_size))
        for col, row in enumerate(self._free_indices()):
            jac[row, col] = 1.0
        return jac


@jdc.pytree_dataclass
class RetractManifold(Manifold):
    """Manifold defined by a retraction function, `retract_fn(x, delta)`.

    The local-to-global Jacobian is computed with forward-mode autodiff.
    """

    retract_fn: jdc.Static[Callable[[jax.Array, jax.Array], jax.Array]]
    ambient_dim: jdc.Static[int]
    tangent_dim: jdc.Static[int]
    minus_fn: jdc.Static[Callable[[jax.Array, jax.Array], jax.Array] | None] = None

    @property
    def ambient_size(self) -> int:
        return self.ambient_dim

    @property
    def tangent_size(self) -> int:
        return self.tangent_dim

    def plus(self, x: onp.ndarray, delta: onp.ndarray) -> onp.ndarray:
        return onp.asarray(
            self.retract_fn(jnp.asarray(x), jnp.asarray(delta)), dtype=onp.float64
        )

    def minus(self, y: onp.ndarray, x: onp.ndarray) -> onp.ndarray:
        if self.minus_fn is None:
            raise NotImplementedError("No minus_fn was provided for this manifold.")
        return onp.asarray(
            self.minus_fn(jnp.asarray(y), jnp.asarray(x)), dtype=onp.float64
        )

    def plus_jacobian(self, x: onp.ndarray) -> onp.ndarray:
        if self.tangent_dim == 0:
            return onp.zeros((self.ambient_dim, 0))
        jac = jax.jacfwd(self.retract_fn, argnums=1)(
            jnp.asarray(x), jnp.zeros(self.tangent_dim)
        )
        jac = onp.asarray(jac, dtype=onp.float64)
        assert jac.shape == (self.ambient_dim, self.tangent_dim)
        return jac


@jdc.pytree_dataclass
class LieGroupManifold(Manifold):
    """Manifold for a `jaxlie` group, parameterized by its raw parameters
    (for example, `wxyz` quaternions for SO3). Uses right-plus retraction."""

    group: jdc.Static[type[jaxlie.MatrixLieGroup]]

    @property
    def ambient_size(self) -> int:
        return self.group.parameters_dim

    @property
    def tangent_size(self) -> int:
        return self.group.tangent_dim

    def _as_group(self, x: Any) -> jaxlie.MatrixLieGroup:
        return self.group(jnp.asarray(x))  # type: ignore

    def plus(self, x: onp.ndarray, delta: onp.ndarray) -> onp.ndarray:
        out = jaxlie.manifold.rplus(self._as_group(x), jnp.asarray(delta))
        return onp.asarray(out.parameters(), dtype=onp.float64)

    def minus(self, y: onp.ndarray, x: onp.ndarray) -> onp.ndarray:
        return onp.asarray(
            jaxlie.manifold.rminus(self._as_group(x), self._as_group(y)),
            dtype=onp.float64,
        )

    def plus_jacobian(self, x: onp.ndarray) -> onp.ndarray:
        return onp.asarray(
            jaxlie.manifold.rplus_jacobian_parameters_wrt_delta(self._as_group(x)),
            dtype=onp.float64,
        )


def SO2Manifold() -> LieGroupManifold:
    return LieGroupManifold(jaxlie.SO2)


def SO3Manifold() -> LieGroupManifold:
    return LieGroupManifold(jaxlie.SO3)


def SE2Manifold() -> LieGroupManifold:
    return LieGroupManifold(jaxlie.SE2)


def SE3Manifold() -> LieGroupManifold:
    return LieGroupManifold(jaxlie.SE3)
