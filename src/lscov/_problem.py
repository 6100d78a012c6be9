from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Sequence

import jax
import numpy as onp
import scipy.sparse
from jax import numpy as jnp
from loguru import logger

from ._losses import LossFunction, correct_jacobians
from ._manifolds import Manifold
from ._parallel import parallel_for
from ._sparse_matrices import SparseCooCoordinates, SparseCooMatrix

if TYPE_CHECKING:
    from ._sparsity import ColumnBounds


@dataclass
class ParameterBlock:
    """Record for a single parameter block. Owned by a `Problem`, and referred
    to everywhere else by its integer handle."""

    values: onp.ndarray
    """Ambient parameters, flattened. Shape should be `(ambient_size,)`."""
    manifold: Manifold | None = None
    constant: bool = False
    """True if the block was explicitly held constant."""

    @property
    def ambient_size(self) -> int:
        return self.values.shape[0]

    @property
    def tangent_size(self) -> int:
        if self.manifold is None:
            return self.ambient_size
        return self.manifold.tangent_size

    @property
    def is_constant(self) -> bool:
        """Blocks with an empty tangent space can't move, so they count as
        constant."""
        return self.constant or self.tangent_size == 0

    def plus_jacobian(self) -> onp.ndarray:
        """Local-to-global Jacobian. Shape: `(ambient_size, tangent_size)`."""
        if self.manifold is None:
            return onp.eye(self.ambient_size)
        return self.manifold.plus_jacobian(self.values)


@dataclass(frozen=True)
class Cost:
    """A residual block: a residual function of one or more parameter blocks.

    `compute_residual` is called with one flat array per parameter block (in
    the order of `parameter_blocks`) and should return the residual vector.
    Jacobians are computed with `jax.jacfwd` unless `jac_custom_fn` is set;
    it takes the same inputs and returns one `(num_residuals, ambient_size)`
    Jacobian per parameter block.
    """

    compute_residual: Callable[..., Any]
    parameter_blocks: tuple[int, ...]
    jac_custom_fn: Callable[..., Sequence[Any]] | None = None
    loss: LossFunction | None = None

    def compute_residual_and_jacobians(
        self, values: Sequence[onp.ndarray]
    ) -> tuple[onp.ndarray, list[onp.ndarray]]:
        """Evaluate the residual and the ambient-space Jacobians."""
        args = [jnp.asarray(v) for v in values]
        residual = onp.asarray(self.compute_residual(*args), dtype=onp.float64)
        residual = residual.reshape((-1,))
        (num_residuals,) = residual.shape

        if self.jac_custom_fn is not None:
            jacs = self.jac_custom_fn(*args)
        else:
            jacs = jax.jacfwd(
                lambda *a: jnp.ravel(self.compute_residual(*a)),
                argnums=tuple(range(len(args))),
            )(*args)

        out = list[onp.ndarray]()
        for value, jac in zip(values, jacs):
            jac = onp.asarray(jac, dtype=onp.float64)
            if jac.size != num_residuals * value.shape[0]:
                raise ValueError(
                    f"Jacobian with shape {jac.shape} does not match "
                    f"{num_residuals} residuals and a parameter block of size "
                    f"{value.shape[0]}."
                )
            out.append(jac.reshape((num_residuals, value.shape[0])))
        return residual, out


class Problem:
    """An arena of parameter blocks and residual blocks.

    Parameter blocks are identified by integer handles, assigned in creation
    order. Identity is by handle: two blocks with equal values are still
    different blocks.
    """

    def __init__(self) -> None:
        self._parameter_blocks = list[ParameterBlock]()
        self._residual_blocks = list[Cost]()

    def add_parameter_block(
        self, values: Any, manifold: Manifold | None = None
    ) -> int:
        """Add a parameter block and return its handle. Values are copied."""
        block = ParameterBlock(onp.array(values, dtype=onp.float64).reshape((-1,)))
        self._parameter_blocks.append(block)
        handle = len(self._parameter_blocks) - 1
        if manifold is not None:
            self.set_manifold(handle, manifold)
        return handle

    def add_residual_block(self, cost: Cost) -> int:
        if len(cost.parameter_blocks) == 0:
            raise ValueError("Residual blocks need at least one parameter block.")
        if len(set(cost.parameter_blocks)) != len(cost.parameter_blocks):
            raise ValueError(
                f"Residual block has repeated parameter blocks: {cost.parameter_blocks}"
            )
        for handle in cost.parameter_blocks:
            self.parameter_block(handle)
        self._residual_blocks.append(cost)
        return len(self._residual_blocks) - 1

    def parameter_block(self, handle: int) -> ParameterBlock:
        if not self.has_parameter_block(handle):
            raise KeyError(f"Parameter block {handle} is not part of the problem.")
        return self._parameter_blocks[handle]

    def has_parameter_block(self, handle: int) -> bool:
        return isinstance(handle, (int, onp.integer)) and 0 <= handle < len(
            self._parameter_blocks
        )

    def parameter_block_handles(self) -> range:
        """All handles, in creation order."""
        return range(len(self._parameter_blocks))

    @property
    def residual_blocks(self) -> tuple[Cost, ...]:
        return tuple(self._residual_blocks)

    def set_parameter_block_constant(self, handle: int) -> None:
        self.parameter_block(handle).constant = True

    def set_parameter_block_variable(self, handle: int) -> None:
        self.parameter_block(handle).constant = False

    def set_manifold(self, handle: int, manifold: Manifold | None) -> None:
        block = self.parameter_block(handle)
        if manifold is not None and manifold.ambient_size != block.ambient_size:
            raise ValueError(
                f"Manifold with ambient size {manifold.ambient_size} can't be "
                f"used for parameter block {handle} of size {block.ambient_size}."
            )
        block.manifold = manifold

    def parameter_blocks_in_use(self) -> set[int]:
        """Handles of parameter blocks referenced by at least one residual block."""
        out = set[int]()
        for cost in self._residual_blocks:
            out.update(cost.parameter_blocks)
        return out

    def evaluate_jacobian(
        self,
        column_bounds: ColumnBounds,
        apply_loss_function: bool = True,
        num_threads: int = 1,
    ) -> scipy.sparse.csr_matrix:
        """Evaluate the Jacobian of the stacked residuals, restricted to the
        free tangent-space columns described by `column_bounds`.

        Residual blocks are evaluated in parallel. Rows follow residual block
        order regardless of the thread count.
        """
        # Local-to-global Jacobians are computed once per free block.
        plus_jacobian_from_handle = {
            handle: block.plus_jacobian()
            for handle, block in enumerate(self._parameter_blocks)
            if block.manifold is not None and not column_bounds.is_empty(handle)
        }

        num_costs = len(self._residual_blocks)
        evaluated: list[tuple[onp.ndarray, list[onp.ndarray]] | None] = [
            None
        ] * num_costs

        def evaluate_range(begin: int, end: int) -> None:
            for i in range(begin, end):
                cost = self._residual_blocks[i]
                residual, jacs = cost.compute_residual_and_jacobians(
                    [self._parameter_blocks[h].values for h in cost.parameter_blocks]
                )
                if apply_loss_function and cost.loss is not None:
                    jacs = correct_jacobians(cost.loss, residual, jacs)
                jacs = [
                    jac @ plus_jacobian_from_handle[handle]
                    if handle in plus_jacobian_from_handle
                    else jac
                    for handle, jac in zip(cost.parameter_blocks, jacs)
                ]
                evaluated[i] = (residual, jacs)

        parallel_for(0, num_costs, num_threads, evaluate_range)

        # Assemble triplets.
        rows = list[onp.ndarray]()
        cols = list[onp.ndarray]()
        values = list[onp.ndarray]()
        row_offset = 0
        for cost, result in zip(self._residual_blocks, evaluated):
            assert result is not None
            residual, jacs = result
            num_residuals = residual.shape[0]
            for handle, jac in zip(cost.parameter_blocks, jacs):
                col_begin, col_end = column_bounds[handle]
                if col_begin == col_end:
                    continue
                assert jac.shape == (num_residuals, col_end - col_begin)
                block_rows, block_cols = onp.meshgrid(
                    onp.arange(row_offset, row_offset + num_residuals),
                    onp.arange(col_begin, col_end),
                    indexing="ij",
                )
                rows.append(block_rows.flatten())
                cols.append(block_cols.flatten())
                values.append(jac.flatten())
            row_offset += num_residuals

        shape = (row_offset, column_bounds.num_cols)
        if len(values) == 0:
            return scipy.sparse.csr_matrix(shape, dtype=onp.float64)

        jacobian = SparseCooMatrix(
            values=onp.concatenate(values),
            coords=SparseCooCoordinates(
                rows=onp.concatenate(rows), cols=onp.concatenate(cols), shape=shape
            ),
        ).as_scipy_csr()
        logger.info(
            "Evaluated Jacobian with {} residual blocks: {} rows, {} columns, {} non-zeros",
            num_costs,
            shape[0],
            shape[1],
            jacobian.nnz,
        )
        return jacobian
