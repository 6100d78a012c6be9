from __future__ import annotations

import importlib.util
from typing import Callable, Literal, Sequence, assert_never, get_args

import jax_dataclasses as jdc
import numpy as onp
import scipy.sparse
import scipy.sparse.linalg
from loguru import logger

from ._parallel import linear_index_to_upper_triangular_index, parallel_for
from ._problem import Problem
from ._sparse_matrices import SparseCsrCoordinates, SparseCsrMatrix
from ._sparsity import (
    ColumnBounds,
    CovarianceSparsityPlan,
    as_pairs,
    plan_covariance_sparsity,
)
from .utils import stopwatch

AlgorithmType = Literal["dense_svd", "sparse_qr"]
SparseLinearAlgebraLibraryType = Literal["suite_sparse", "scipy"]

_DEFAULT_SPARSE_LIBRARY: SparseLinearAlgebraLibraryType = (
    "suite_sparse" if importlib.util.find_spec("sksparse") is not None else "scipy"
)

# Number of right-hand sides solved together by a single worker.
_ROWS_PER_SOLVE = 128


@jdc.pytree_dataclass
class CovarianceOptions:
    algorithm_type: jdc.Static[AlgorithmType] = "sparse_qr"
    """`dense_svd` handles rank deficient Jacobians, but scales cubically with
    the number of free columns. `sparse_qr` requires full column rank."""
    sparse_linear_algebra_library_type: jdc.Static[SparseLinearAlgebraLibraryType] = (
        _DEFAULT_SPARSE_LIBRARY
    )
    """Backend for `sparse_qr`. `suite_sparse` requires scikit-sparse."""
    min_reciprocal_condition_number: jdc.Static[float] = 1e-14
    """Directions with `sigma_i^2 / sigma_max^2` below this are numerically
    null. For `sparse_qr`, a factor with a smaller pivot ratio is a failure."""
    null_space_rank: jdc.Static[int] = 0
    """Number of smallest singular directions to drop with `dense_svd`. Set to
    -1 to drop every direction that fails the condition number test."""
    num_threads: jdc.Static[int] = 1
    apply_loss_function: jdc.Static[bool] = True
    """Whether to correct residual block Jacobians for their robust losses."""


class Covariance:
    """Estimate blocks of `inv(J'J)` for a problem at its solution.

    Usage: call `compute()` with the blocks of interest, then query them.
    Blocks are computed in the tangent space of each parameter block and
    lifted to the ambient space on request.
    """

    def __init__(self, options: CovarianceOptions = CovarianceOptions()) -> None:
        if options.algorithm_type not in get_args(AlgorithmType):
            raise ValueError(f"Unknown algorithm type: {options.algorithm_type}")
        if options.sparse_linear_algebra_library_type not in get_args(
            SparseLinearAlgebraLibraryType
        ):
            raise ValueError(
                "Unknown sparse linear algebra library: "
                f"{options.sparse_linear_algebra_library_type}"
            )
        if options.num_threads < 1:
            raise ValueError(f"num_threads must be positive, got {options.num_threads}")
        if options.null_space_rank < -1:
            raise ValueError(
                f"null_space_rank must be >= -1, got {options.null_space_rank}"
            )
        if options.min_reciprocal_condition_number < 0.0:
            raise ValueError("min_reciprocal_condition_number must be non-negative")

        self.options = options
        self._problem: Problem | None = None
        self._plan: CovarianceSparsityPlan | None = None
        self._covariance_matrix: SparseCsrMatrix | None = None
        self._is_computed = False
        self._is_valid = False

    @property
    def covariance_matrix(self) -> SparseCsrMatrix | None:
        """The computed tangent-space covariance over free columns, or `None`
        if the last `compute()` failed."""
        return self._covariance_matrix

    @property
    def column_bounds(self) -> ColumnBounds | None:
        return None if self._plan is None else self._plan.column_bounds

    def compute(
        self,
        blocks: Sequence[tuple[int, int]] | Sequence[int],
        problem: Problem,
    ) -> bool:
        """Compute the covariance blocks for either a sequence of handle pairs,
        or a sequence of handles (all pairs between them).

        Returns False if the computation failed numerically. Raises
        `DuplicateBlocksError` for duplicate requests and `KeyError` for
        handles that aren't part of the problem.
        """
        # Results of a previous call are invalidated even if planning raises.
        self._plan = None
        self._covariance_matrix = None
        self._is_valid = False

        pairs = as_pairs(blocks)
        with stopwatch("planning covariance sparsity"):
            plan = plan_covariance_sparsity(pairs, problem)

        self._problem = problem
        self._plan = plan
        self._is_computed = True

        coords = plan.coords
        if coords.num_nonzeros == 0:
            logger.info("No free covariance blocks were requested")
            self._covariance_matrix = SparseCsrMatrix(
                values=onp.zeros(0), coords=coords
            )
            self._is_valid = True
            return True

        with stopwatch("evaluating Jacobian"):
            jacobian = problem.evaluate_jacobian(
                plan.column_bounds,
                apply_loss_function=self.options.apply_loss_function,
                num_threads=self.options.num_threads,
            )
        if jacobian.shape[0] == 0 or jacobian.shape[1] == 0:
            logger.error(
                "Covariance computation failed: Jacobian with shape {} is empty",
                jacobian.shape,
            )
            return False

        algorithm = self.options.algorithm_type
        if algorithm == "dense_svd":
            values = self._compute_values_dense_svd(jacobian, coords)
        elif algorithm == "sparse_qr":
            library = self.options.sparse_linear_algebra_library_type
            if library == "suite_sparse":
                values = self._compute_values_sparse_qr_suite_sparse(jacobian, coords)
            elif library == "scipy":
                values = self._compute_values_sparse_qr_scipy(jacobian, coords)
            else:
                assert_never(library)
        else:
            assert_never(algorithm)

        if values is None:
            return False

        # Mirrored entries come from different solves; make them agree exactly.
        values = 0.5 * (values + values[coords.transpose_permutation()])
        self._covariance_matrix = SparseCsrMatrix(values=values, coords=coords)
        self._is_valid = True
        return True

    def _compute_values_dense_svd(
        self, jacobian: scipy.sparse.csr_matrix, coords: SparseCsrCoordinates
    ) -> onp.ndarray | None:
        with stopwatch("dense SVD"):
            _, singular_values, vt = onp.linalg.svd(
                jacobian.toarray(), full_matrices=False
            )

        num_singular_values = singular_values.shape[0]
        automatic_truncation = self.options.null_space_rank < 0
        max_rank = min(
            num_singular_values, num_singular_values - self.options.null_space_rank
        )
        min_singular_value_ratio = onp.sqrt(
            self.options.min_reciprocal_condition_number
        )

        # Singular values are sorted in decreasing order.
        if singular_values[0] > 0.0:
            ratios = singular_values / singular_values[0]
        else:
            ratios = onp.zeros_like(singular_values)

        inverse_squared_singular_values = onp.zeros(num_singular_values)
        for i in range(max_rank):
            if ratios[i] < min_singular_value_ratio:
                if automatic_truncation:
                    break
                logger.error(
                    "Covariance computation failed with dense_svd: the Jacobian is "
                    "near rank deficient (singular value ratio {:.3e} < {:.3e}). Set "
                    "null_space_rank to compute a pseudo-inverse.",
                    ratios[i],
                    min_singular_value_ratio,
                )
                return None
            inverse_squared_singular_values[i] = 1.0 / (
                singular_values[i] * singular_values[i]
            )

        rank = int(onp.count_nonzero(inverse_squared_singular_values))
        logger.info(
            "dense_svd kept {} of {} singular directions", rank, num_singular_values
        )
        dense_covariance = (vt.T * inverse_squared_singular_values) @ vt
        dense_covariance = 0.5 * (dense_covariance + dense_covariance.T)

        row_indices = onp.repeat(
            onp.arange(coords.num_rows), onp.diff(coords.indptr)
        )
        return dense_covariance[row_indices, coords.indices]

    def _compute_values_sparse_qr_suite_sparse(
        self, jacobian: scipy.sparse.csr_matrix, coords: SparseCsrCoordinates
    ) -> onp.ndarray | None:
        try:
            import sksparse.cholmod
        except ImportError:
            logger.error(
                "Covariance computation failed: sparse_qr with suite_sparse "
                "requires scikit-sparse, which is not installed"
            )
            return None

        # Matrix is transposed when we convert CSR to CSC.
        A_T_scipy = scipy.sparse.csc_matrix(
            (jacobian.data, jacobian.indices, jacobian.indptr),
            shape=jacobian.shape[::-1],
        )
        with stopwatch("CHOLMOD factorization"):
            try:
                factor = sksparse.cholmod.cholesky_AAt(A_T_scipy)
                L = factor.L()
            except sksparse.cholmod.CholmodError as e:
                logger.error(
                    "Covariance computation failed with sparse_qr/suite_sparse: "
                    "the Jacobian is rank deficient ({})",
                    e,
                )
                return None

        # `L` is the transpose of the triangular factor of a QR decomposition,
        # up to signs. Pivots are the squared diagonal.
        pivots = L.diagonal() ** 2
        if not self._pivots_are_well_conditioned(pivots, "suite_sparse"):
            return None

        perm = factor.P()
        L_csr = L.tocsr()
        L_T_csr = L.T.tocsr()

        def solve(rhs: onp.ndarray) -> onp.ndarray:
            w = scipy.sparse.linalg.spsolve_triangular(L_csr, rhs[perm], lower=True)
            w = scipy.sparse.linalg.spsolve_triangular(L_T_csr, w, lower=False)
            out = onp.empty_like(w)
            out[perm] = w
            return out

        with stopwatch("selective inversion"):
            return self._solve_for_pattern(solve, coords)

    def _compute_values_sparse_qr_scipy(
        self, jacobian: scipy.sparse.csr_matrix, coords: SparseCsrCoordinates
    ) -> onp.ndarray | None:
        JtJ = (jacobian.T @ jacobian).tocsc()
        with stopwatch("SuperLU factorization"):
            try:
                lu = scipy.sparse.linalg.splu(
                    JtJ,
                    permc_spec="MMD_AT_PLUS_A",
                    diag_pivot_thresh=0.0,
                    options=dict(SymmetricMode=True),
                )
            except RuntimeError as e:
                logger.error(
                    "Covariance computation failed with sparse_qr/scipy: "
                    "the Jacobian is rank deficient ({})",
                    e,
                )
                return None

        if not self._pivots_are_well_conditioned(onp.abs(lu.U.diagonal()), "scipy"):
            return None

        def solve(rhs: onp.ndarray) -> onp.ndarray:
            return lu.solve(rhs)

        with stopwatch("selective inversion"):
            return self._solve_for_pattern(solve, coords)

    def _pivots_are_well_conditioned(
        self, pivots: onp.ndarray, library: SparseLinearAlgebraLibraryType
    ) -> bool:
        max_pivot = float(onp.max(pivots))
        ratio = float(onp.min(pivots)) / max_pivot if max_pivot > 0.0 else 0.0
        if not (ratio > 0.0 and ratio >= self.options.min_reciprocal_condition_number):
            logger.error(
                "Covariance computation failed with sparse_qr/{}: the Jacobian is "
                "rank deficient (pivot ratio {:.3e} < {:.3e})",
                library,
                ratio,
                self.options.min_reciprocal_condition_number,
            )
            return False
        return True

    def _solve_for_pattern(
        self,
        solve: Callable[[onp.ndarray], onp.ndarray],
        coords: SparseCsrCoordinates,
    ) -> onp.ndarray:
        """Fill in `inv(J'J)` at every entry of the pattern.

        Only rows with at least one planned entry are solved for. Each worker
        owns a contiguous range of those rows and writes to their slices of the
        output only.
        """
        n = coords.num_rows
        values = onp.zeros(coords.num_nonzeros)
        rows = onp.flatnonzero(onp.diff(coords.indptr))

        def solve_rows(begin: int, end: int) -> None:
            for chunk_begin in range(begin, end, _ROWS_PER_SOLVE):
                chunk = rows[chunk_begin : min(end, chunk_begin + _ROWS_PER_SOLVE)]
                rhs = onp.zeros((n, chunk.shape[0]))
                rhs[chunk, onp.arange(chunk.shape[0])] = 1.0
                x = solve(rhs).reshape((n, chunk.shape[0]))
                for k, row in enumerate(chunk):
                    row_slice = coords.row_slice(int(row))
                    values[row_slice] = x[coords.indices[row_slice], k]

        parallel_for(0, rows.shape[0], self.options.num_threads, solve_rows)
        return values

    def _ensure_computed(self) -> bool:
        if not self._is_computed:
            raise RuntimeError("compute() must be called before querying covariances")
        if not self._is_valid:
            logger.error("Covariance is unavailable: the last compute() failed")
            return False
        return True

    def _get_block(
        self, handle_a: int, handle_b: int, lift_to_ambient: bool
    ) -> onp.ndarray | None:
        assert self._problem is not None
        assert self._plan is not None
        assert self._covariance_matrix is not None
        block_a = self._problem.parameter_block(handle_a)
        block_b = self._problem.parameter_block(handle_b)
        column_bounds = self._plan.column_bounds

        # Constant blocks have zero covariance.
        if column_bounds.is_empty(handle_a) or column_bounds.is_empty(handle_b):
            if lift_to_ambient:
                return onp.zeros((block_a.ambient_size, block_b.ambient_size))
            return onp.zeros((block_a.tangent_size, block_b.tangent_size))

        offsets = self._plan.find_block_offsets(handle_a, handle_b)
        if offsets is None:
            logger.error(
                "Unable to find covariance block for parameter blocks ({}, {}); it "
                "was not requested in compute()",
                handle_a,
                handle_b,
            )
            return None

        size_b = column_bounds.size(handle_b)
        values = self._covariance_matrix.values
        tangent_block = values[offsets[:, None] + onp.arange(size_b)[None, :]]
        if not lift_to_ambient:
            return tangent_block

        out = tangent_block
        if block_a.manifold is not None:
            out = block_a.plus_jacobian() @ out
        if block_b.manifold is not None:
            out = out @ block_b.plus_jacobian().T
        if handle_a == handle_b:
            out = 0.5 * (out + out.T)
        return out

    def get_covariance_block(
        self, handle_a: int, handle_b: int
    ) -> onp.ndarray | None:
        """Covariance of two parameter blocks in ambient coordinates. Shape is
        `(ambient_size_a, ambient_size_b)`. `None` on failure."""
        if not self._ensure_computed():
            return None
        return self._get_block(handle_a, handle_b, lift_to_ambient=True)

    def get_covariance_block_in_tangent_space(
        self, handle_a: int, handle_b: int
    ) -> onp.ndarray | None:
        """Covariance of two parameter blocks in tangent coordinates. Shape is
        `(tangent_size_a, tangent_size_b)`. `None` on failure."""
        if not self._ensure_computed():
            return None
        return self._get_block(handle_a, handle_b, lift_to_ambient=False)

    def get_covariance_matrix(self, handles: Sequence[int]) -> onp.ndarray | None:
        """Dense joint covariance of `handles` in ambient coordinates, with
        rows and columns in the order given."""
        if not self._ensure_computed():
            return None
        return self._get_matrix(handles, lift_to_ambient=True)

    def get_covariance_matrix_in_tangent_space(
        self, handles: Sequence[int]
    ) -> onp.ndarray | None:
        if not self._ensure_computed():
            return None
        return self._get_matrix(handles, lift_to_ambient=False)

    def _get_matrix(
        self, handles: Sequence[int], lift_to_ambient: bool
    ) -> onp.ndarray | None:
        assert self._problem is not None
        sizes = [
            block.ambient_size if lift_to_ambient else block.tangent_size
            for block in map(self._problem.parameter_block, handles)
        ]
        offsets = onp.concatenate([[0], onp.cumsum(sizes)]).astype(onp.int64)
        out = onp.zeros((offsets[-1], offsets[-1]))

        num_blocks = len(handles)
        num_pairs = num_blocks * (num_blocks + 1) // 2
        failed = [False] * num_pairs

        def fill_pairs(begin: int, end: int) -> None:
            for k in range(begin, end):
                i, j = linear_index_to_upper_triangular_index(k, num_blocks)
                block = self._get_block(handles[i], handles[j], lift_to_ambient)
                if block is None:
                    failed[k] = True
                    continue
                rows = slice(offsets[i], offsets[i + 1])
                cols = slice(offsets[j], offsets[j + 1])
                out[rows, cols] = block
                if i != j:
                    out[cols, rows] = block.T

        with stopwatch("assembling covariance matrix"):
            parallel_for(0, num_pairs, self.options.num_threads, fill_pairs)

        if any(failed):
            return None
        return out
