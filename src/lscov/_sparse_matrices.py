from __future__ import annotations

import jax_dataclasses as jdc
import numpy as onp
import scipy.sparse

from ._parallel import parallel_for


@jdc.pytree_dataclass
class SparseCsrCoordinates:
    """Sparsity pattern of a compressed-row matrix."""

    indptr: onp.ndarray
    """Index of start to each row. Shape should be `(num_rows + 1,)`."""
    indices: onp.ndarray
    """Column indices of non-zero entries. Shape should be `(N,)`; ascending
    within each row."""
    shape: jdc.Static[tuple[int, int]]
    """Shape of matrix."""

    @property
    def num_rows(self) -> int:
        return self.shape[0]

    @property
    def num_cols(self) -> int:
        return self.shape[1]

    @property
    def num_nonzeros(self) -> int:
        return int(self.indptr[-1])

    def row_slice(self, row: int) -> slice:
        """Slice into `indices` (and matching values) for one row."""
        return slice(int(self.indptr[row]), int(self.indptr[row + 1]))

    def transpose_permutation(self) -> onp.ndarray:
        """For a structurally symmetric pattern, position of the `(j, i)` entry
        for each stored `(i, j)` entry."""
        assert self.num_rows == self.num_cols
        # Offset by one so that no stored position is an explicit zero.
        positions = scipy.sparse.csr_matrix(
            (
                onp.arange(1, self.num_nonzeros + 1, dtype=onp.float64),
                self.indices,
                self.indptr,
            ),
            shape=self.shape,
        )
        transposed = positions.T.tocsr()
        transposed.sort_indices()
        assert onp.array_equal(transposed.indptr, self.indptr)
        assert onp.array_equal(transposed.indices, self.indices)
        return transposed.data.astype(onp.int64) - 1


@jdc.pytree_dataclass
class SparseCsrMatrix:
    """Data structure for sparse CSR matrices."""

    values: onp.ndarray
    """Non-zero matrix values. Shape should be `(N,)`."""
    coords: SparseCsrCoordinates
    """Indices describing non-zero entries."""

    @property
    def num_rows(self) -> int:
        return self.coords.num_rows

    def as_scipy_csr(self) -> scipy.sparse.csr_matrix:
        return scipy.sparse.csr_matrix(
            (self.values, self.coords.indices, self.coords.indptr),
            shape=self.coords.shape,
        )

    def to_dense(self) -> onp.ndarray:
        """Convert to a dense matrix. Entries outside the pattern are zero."""
        return self.as_scipy_csr().toarray()

    def right_multiply_and_accumulate(
        self, x: onp.ndarray, y: onp.ndarray, num_threads: int = 1
    ) -> None:
        """Compute `y += M @ x` in place. Rows are split across threads."""
        assert x.shape == (self.coords.num_cols,)
        assert y.shape == (self.coords.num_rows,)
        A = self.as_scipy_csr()

        def accumulate_rows(row_begin: int, row_end: int) -> None:
            y[row_begin:row_end] += A[row_begin:row_end] @ x

        parallel_for(0, self.num_rows, num_threads, accumulate_rows)


@jdc.pytree_dataclass
class SparseCooCoordinates:
    rows: onp.ndarray
    """Row indices of non-zero entries. Shape should be `(N,)`."""
    cols: onp.ndarray
    """Column indices of non-zero entries. Shape should be `(N,)`."""
    shape: jdc.Static[tuple[int, int]]
    """Shape of matrix."""


@jdc.pytree_dataclass
class SparseCooMatrix:
    """Sparse matrix in COO form."""

    values: onp.ndarray
    """Non-zero matrix values. Shape should be `(N,)`."""
    coords: SparseCooCoordinates
    """Indices describing non-zero entries."""

    def as_scipy_csr(self) -> scipy.sparse.csr_matrix:
        # Duplicate coordinates are summed.
        return scipy.sparse.coo_matrix(
            (self.values, (self.coords.rows, self.coords.cols)),
            shape=self.coords.shape,
        ).tocsr()
