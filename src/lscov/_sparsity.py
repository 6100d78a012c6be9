from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Hashable, Sequence, TypeVar

import numpy as onp
from loguru import logger

from ._problem import Problem
from ._sparse_matrices import SparseCsrCoordinates

T = TypeVar("T")


@dataclass(frozen=True)
class ColumnBounds:
    """Half-open column range for every parameter block in a problem, indexed
    by handle.

    Ranges are assigned by a single ascending walk over handles. Constant
    blocks (explicitly held constant, not used by any residual block, or with
    an empty tangent space) get an empty range at the current offset, so the
    non-empty ranges tile `[0, num_cols)` exactly.
    """

    bounds: tuple[tuple[int, int], ...]
    num_cols: int
    tangent_space: bool

    @staticmethod
    def make(problem: Problem, tangent_space: bool = True) -> ColumnBounds:
        in_use = problem.parameter_blocks_in_use()
        bounds = list[tuple[int, int]]()
        col = 0
        for handle in problem.parameter_block_handles():
            block = problem.parameter_block(handle)
            if block.is_constant or handle not in in_use:
                bounds.append((col, col))
                continue
            size = block.tangent_size if tangent_space else block.ambient_size
            bounds.append((col, col + size))
            col += size
        return ColumnBounds(
            bounds=tuple(bounds), num_cols=col, tangent_space=tangent_space
        )

    def __getitem__(self, handle: int) -> tuple[int, int]:
        if not 0 <= handle < len(self.bounds):
            raise KeyError(f"No column bounds for parameter block {handle}.")
        return self.bounds[handle]

    def size(self, handle: int) -> int:
        begin, end = self[handle]
        return end - begin

    def is_empty(self, handle: int) -> bool:
        return self.size(handle) == 0


class DuplicateBlocksError(ValueError):
    """Raised when a covariance request names the same block (or the same
    unordered pair of blocks) more than once."""

    def __init__(self, indices: tuple[tuple[int, ...], ...]) -> None:
        self.indices = indices
        groups = " and ".join(
            "(" + ", ".join(str(i) for i in group) + ")" for group in indices
        )
        super().__init__(f"compute() called with duplicate blocks at indices {groups}")


def check_for_duplicates(
    items: Sequence[T], key: Callable[[T], Hashable] | None = None
) -> None:
    """Raise a `DuplicateBlocksError` listing every group of positions in
    `items` that share a key. Groups are ordered by their first position."""
    positions_from_key: dict[Hashable, list[int]] = {}
    for i, item in enumerate(items):
        k = item if key is None else key(item)
        positions_from_key.setdefault(k, []).append(i)

    duplicates = tuple(
        tuple(positions)
        for positions in positions_from_key.values()
        if len(positions) > 1
    )
    if len(duplicates) > 0:
        raise DuplicateBlocksError(duplicates)


def unordered_pair(pair: tuple[int, int]) -> tuple[int, int]:
    a, b = pair
    return (a, b) if a <= b else (b, a)


@dataclass(frozen=True)
class CovarianceSparsityPlan:
    """Which entries of the free covariance matrix will be computed."""

    coords: SparseCsrCoordinates
    column_bounds: ColumnBounds

    def find_block_offsets(self, handle_a: int, handle_b: int) -> onp.ndarray | None:
        """For each row of block `a`, the offset into the values array where
        the columns of block `b` start. `None` if the pair was not planned."""
        row_begin, row_end = self.column_bounds[handle_a]
        col_begin, _ = self.column_bounds[handle_b]

        offsets = onp.zeros(row_end - row_begin, dtype=onp.int64)
        for i, row in enumerate(range(row_begin, row_end)):
            row_slice = self.coords.row_slice(row)
            row_cols = self.coords.indices[row_slice]
            pos = int(onp.searchsorted(row_cols, col_begin))
            if pos == row_cols.shape[0] or row_cols[pos] != col_begin:
                return None
            offsets[i] = row_slice.start + pos
        return offsets


def plan_covariance_sparsity(
    pairs: Sequence[tuple[int, int]], problem: Problem
) -> CovarianceSparsityPlan:
    """Build the sparsity pattern of the requested covariance blocks.

    The footprint is symmetric: a pair `(a, b)` fills the columns of `b` in
    every row of `a`, and the columns of `a` in every row of `b`. Only the
    request is used; the residual structure of the problem is not consulted,
    so the pattern can be denser than `inv(J'J)` actually is.
    """
    for pair in pairs:
        if len(pair) != 2:
            raise ValueError(f"Covariance blocks should be pairs, got {pair}.")
        for handle in pair:
            problem.parameter_block(handle)
    check_for_duplicates(pairs, key=unordered_pair)

    column_bounds = ColumnBounds.make(problem, tangent_space=True)

    partners_from_handle: dict[int, set[int]] = {}
    for a, b in pairs:
        if column_bounds.is_empty(a) or column_bounds.is_empty(b):
            continue
        partners_from_handle.setdefault(a, set()).add(b)
        partners_from_handle.setdefault(b, set()).add(a)

    row_lengths = onp.zeros(column_bounds.num_cols, dtype=onp.int64)
    indices = list[onp.ndarray]()
    for handle in problem.parameter_block_handles():
        row_begin, row_end = column_bounds[handle]
        if handle not in partners_from_handle:
            continue

        # Column ranges ascend with handle, so sorted partners give sorted
        # column indices.
        row_cols = onp.concatenate(
            [
                onp.arange(*column_bounds[partner])
                for partner in sorted(partners_from_handle[handle])
            ]
        )
        row_lengths[row_begin:row_end] = row_cols.shape[0]
        indices.extend([row_cols] * (row_end - row_begin))

    indptr = onp.zeros(column_bounds.num_cols + 1, dtype=onp.int64)
    onp.cumsum(row_lengths, out=indptr[1:])
    coords = SparseCsrCoordinates(
        indptr=indptr,
        indices=(
            onp.concatenate(indices)
            if len(indices) > 0
            else onp.zeros(0, dtype=onp.int64)
        ),
        shape=(column_bounds.num_cols, column_bounds.num_cols),
    )
    logger.info(
        "Planned covariance sparsity: {} requested pairs, {} free columns, {} non-zeros",
        len(pairs),
        column_bounds.num_cols,
        coords.num_nonzeros,
    )
    return CovarianceSparsityPlan(coords=coords, column_bounds=column_bounds)


def as_pairs(blocks: Sequence[Any]) -> list[tuple[int, int]]:
    """Normalize a covariance request.

    A sequence of handles is expanded to every `(i, j)` pair with `i <= j`,
    after checking the handles themselves for duplicates.
    """
    if all(isinstance(block, (int, onp.integer)) for block in blocks):
        check_for_duplicates(blocks)
        return [
            (int(blocks[i]), int(blocks[j]))
            for i in range(len(blocks))
            for j in range(i, len(blocks))
        ]
    return [(int(a), int(b)) for a, b in blocks]
