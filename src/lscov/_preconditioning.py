from __future__ import annotations

import abc
from typing import Literal, Sequence

import numpy as onp
import scipy.sparse
from loguru import logger

from ._sparse_matrices import SparseCsrMatrix

PreconditionerType = Literal[
    "identity",
    "jacobi",
    "schur_jacobi",
    "schur_power_series_expansion",
    "cluster_jacobi",
    "cluster_tridiagonal",
    "subset",
]

MatrixLike = (
    SparseCsrMatrix | scipy.sparse.sparray | scipy.sparse.spmatrix | onp.ndarray
)


def preconditioner_for_zero_e_blocks(
    preconditioner_type: PreconditionerType,
) -> PreconditionerType:
    """Effective preconditioner when the problem has no e-blocks. Schur and
    cluster based variants need e-blocks, and fall back to Jacobi."""
    if preconditioner_type in ("schur_jacobi", "cluster_jacobi", "cluster_tridiagonal"):
        return "jacobi"
    return preconditioner_type


class Preconditioner(abc.ABC):
    """Linear operator approximating the inverse of `A'A + diag(D)^2`."""

    @abc.abstractmethod
    def update(self, A: MatrixLike, D: onp.ndarray | None = None) -> bool:
        """Recompute the preconditioner for a new `A` and damping `D`.
        Returns False on failure."""

    @abc.abstractmethod
    def right_multiply_and_accumulate(self, x: onp.ndarray, y: onp.ndarray) -> None:
        """`y += M @ x`, in place."""

    @property
    @abc.abstractmethod
    def num_rows(self) -> int: ...

    def __call__(self, x: onp.ndarray) -> onp.ndarray:
        y = onp.zeros(self.num_rows)
        self.right_multiply_and_accumulate(x, y)
        return y


class SparseMatrixPreconditionerWrapper(Preconditioner):
    """Use an already assembled sparse matrix, for example a computed
    covariance matrix, as a preconditioner."""

    def __init__(self, matrix: SparseCsrMatrix, num_threads: int = 1) -> None:
        assert matrix is not None
        self.matrix = matrix
        self.num_threads = num_threads

    def update(self, A: MatrixLike, D: onp.ndarray | None = None) -> bool:
        del A, D
        return True

    def right_multiply_and_accumulate(self, x: onp.ndarray, y: onp.ndarray) -> None:
        self.matrix.right_multiply_and_accumulate(x, y, num_threads=self.num_threads)

    @property
    def num_rows(self) -> int:
        return self.matrix.num_rows


class BlockJacobiPreconditioner(Preconditioner):
    """Block Jacobi preconditioner. Inverts the diagonal blocks of
    `A'A + diag(D)^2`, one block per parameter block."""

    def __init__(self, block_sizes: Sequence[int]) -> None:
        self.block_sizes = tuple(int(size) for size in block_sizes)
        self._offsets = onp.concatenate([[0], onp.cumsum(self.block_sizes)]).astype(
            onp.int64
        )
        self._inv_blocks: list[onp.ndarray] | None = None

    @property
    def num_rows(self) -> int:
        return int(self._offsets[-1])

    def update(self, A: MatrixLike, D: onp.ndarray | None = None) -> bool:
        if isinstance(A, SparseCsrMatrix):
            A = A.as_scipy_csr()
        A_csc = scipy.sparse.csc_matrix(A)
        assert A_csc.shape[1] == self.num_rows

        inv_blocks = list[onp.ndarray]()
        for i, size in enumerate(self.block_sizes):
            start, end = self._offsets[i], self._offsets[i + 1]
            A_cols = A_csc[:, start:end]
            gram_block = (A_cols.T @ A_cols).toarray()
            if D is not None:
                gram_block += onp.diag(onp.asarray(D[start:end]) ** 2)
            try:
                inv_block = onp.linalg.inv(gram_block)
            except onp.linalg.LinAlgError:
                logger.error("Block Jacobi preconditioner: block {} is singular", i)
                return False
            if not onp.all(onp.isfinite(inv_block)):
                logger.error("Block Jacobi preconditioner: block {} is singular", i)
                return False
            inv_blocks.append(inv_block)

        self._inv_blocks = inv_blocks
        return True

    def right_multiply_and_accumulate(self, x: onp.ndarray, y: onp.ndarray) -> None:
        assert self._inv_blocks is not None, "update() must be called first"
        for i, inv_block in enumerate(self._inv_blocks):
            start, end = self._offsets[i], self._offsets[i + 1]
            y[start:end] += inv_block @ x[start:end]
