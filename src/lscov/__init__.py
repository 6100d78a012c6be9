from . import utils as utils
from ._covariance import AlgorithmType as AlgorithmType
from ._covariance import Covariance as Covariance
from ._covariance import CovarianceOptions as CovarianceOptions
from ._covariance import (
    SparseLinearAlgebraLibraryType as SparseLinearAlgebraLibraryType,
)
from ._losses import CauchyLoss as CauchyLoss
from ._losses import HuberLoss as HuberLoss
from ._losses import LossFunction as LossFunction
from ._losses import TrivialLoss as TrivialLoss
from ._manifolds import EuclideanManifold as EuclideanManifold
from ._manifolds import LieGroupManifold as LieGroupManifold
from ._manifolds import Manifold as Manifold
from ._manifolds import RetractManifold as RetractManifold
from ._manifolds import SE2Manifold as SE2Manifold
from ._manifolds import SE3Manifold as SE3Manifold
from ._manifolds import SO2Manifold as SO2Manifold
from ._manifolds import SO3Manifold as SO3Manifold
from ._manifolds import SubsetManifold as SubsetManifold
from ._preconditioning import BlockJacobiPreconditioner as BlockJacobiPreconditioner
from ._preconditioning import Preconditioner as Preconditioner
from ._preconditioning import PreconditionerType as PreconditionerType
from ._preconditioning import (
    SparseMatrixPreconditionerWrapper as SparseMatrixPreconditionerWrapper,
)
from ._preconditioning import (
    preconditioner_for_zero_e_blocks as preconditioner_for_zero_e_blocks,
)
from ._problem import Cost as Cost
from ._problem import ParameterBlock as ParameterBlock
from ._problem import Problem as Problem
from ._sparse_matrices import SparseCsrCoordinates as SparseCsrCoordinates
from ._sparse_matrices import SparseCsrMatrix as SparseCsrMatrix
from ._sparsity import ColumnBounds as ColumnBounds
from ._sparsity import CovarianceSparsityPlan as CovarianceSparsityPlan
from ._sparsity import DuplicateBlocksError as DuplicateBlocksError
from ._sparsity import plan_covariance_sparsity as plan_covariance_sparsity
