"""Tests for covariance sparsity planning."""

import numpy as onp
import pytest
from jax import numpy as jnp

import lscov
from lscov._sparsity import as_pairs, check_for_duplicates


def unary_cost(handle: int, size: int) -> lscov.Cost:
    return lscov.Cost(
        compute_residual=lambda values: jnp.ones(1),
        parameter_blocks=(handle,),
        jac_custom_fn=lambda values: [onp.zeros((1, size))],
    )


def make_problem() -> tuple[lscov.Problem, list[int]]:
    """Four blocks of sizes 1, 2, 3, 4. Residual blocks are added out of
    order, which should not affect the column ordering."""
    problem = lscov.Problem()
    blocks = [problem.add_parameter_block(onp.zeros(size)) for size in (1, 2, 3, 4)]
    for i in (0, 3, 2, 1):
        problem.add_residual_block(unary_cost(blocks[i], i + 1))
    return problem, blocks


def requested_pairs(blocks: list[int]) -> list[tuple[int, int]]:
    block1, block2, block3, block4 = blocks
    return [
        (block1, block1),
        (block4, block4),
        (block2, block2),
        (block3, block3),
        (block2, block3),
        (block4, block1),  # Reversed.
    ]


def test_compute_covariance_sparsity() -> None:
    problem, blocks = make_problem()

    # All residual blocks are unary, so the problem structure does not imply
    # this pattern. Only the requested pairs are used.
    #
    #  X . . . . . X X X X
    #  . X X X X X . . . .
    #  . X X X X X . . . .
    #  . X X X X X . . . .
    #  . X X X X X . . . .
    #  . X X X X X . . . .
    #  X . . . . . X X X X
    #  X . . . . . X X X X
    #  X . . . . . X X X X
    #  X . . . . . X X X X
    plan = lscov.plan_covariance_sparsity(requested_pairs(blocks), problem)

    assert plan.coords.shape == (10, 10)
    assert plan.coords.num_nonzeros == 50
    onp.testing.assert_array_equal(
        plan.coords.indptr, [0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50]
    )
    onp.testing.assert_array_equal(
        plan.coords.indices,
        [0, 6, 7, 8, 9]
        + [1, 2, 3, 4, 5] * 5
        + [0, 6, 7, 8, 9] * 4,
    )
    assert plan.column_bounds.bounds == ((0, 1), (1, 3), (3, 6), (6, 10))


@pytest.mark.parametrize("make_constant", [True, False])
def test_compute_covariance_sparsity_with_constant_block(make_constant: bool) -> None:
    if make_constant:
        problem, blocks = make_problem()
        problem.set_parameter_block_constant(blocks[2])
    else:
        # A block that no residual block uses is constant too.
        problem = lscov.Problem()
        blocks = [
            problem.add_parameter_block(onp.zeros(size)) for size in (1, 2, 3, 4)
        ]
        for i in (0, 3, 1):
            problem.add_residual_block(unary_cost(blocks[i], i + 1))

    #  X . . X X X X
    #  . X X . . . .
    #  . X X . . . .
    #  X . . X X X X
    #  X . . X X X X
    #  X . . X X X X
    #  X . . X X X X
    plan = lscov.plan_covariance_sparsity(requested_pairs(blocks), problem)

    assert plan.coords.shape == (7, 7)
    assert plan.coords.num_nonzeros == 29
    onp.testing.assert_array_equal(
        plan.coords.indptr, [0, 5, 7, 9, 14, 19, 24, 29]
    )
    onp.testing.assert_array_equal(
        plan.coords.indices,
        [0, 3, 4, 5, 6] + [1, 2] * 2 + [0, 3, 4, 5, 6] * 4,
    )
    assert plan.column_bounds.bounds == ((0, 1), (1, 3), (3, 3), (3, 7))


def test_columns_ascend_within_rows() -> None:
    problem, blocks = make_problem()
    plan = lscov.plan_covariance_sparsity(
        [(blocks[3], blocks[0]), (blocks[2], blocks[1]), (blocks[3], blocks[1])],
        problem,
    )
    for row in range(plan.coords.num_rows):
        row_cols = plan.coords.indices[plan.coords.row_slice(row)]
        assert onp.all(onp.diff(row_cols) > 0)

    onp.testing.assert_array_equal(
        plan.coords.indptr, [0, 4, 11, 18, 20, 22, 24, 27, 30, 33, 36]
    )

    # Rows of blocks without any requested pair are empty.
    plan = lscov.plan_covariance_sparsity([(blocks[3], blocks[0])], problem)
    onp.testing.assert_array_equal(
        plan.coords.indptr, [0, 4, 4, 4, 4, 4, 4, 5, 6, 7, 8]
    )
    onp.testing.assert_array_equal(plan.coords.indices, [6, 7, 8, 9, 0, 0, 0, 0])


def test_column_bounds_tile_free_columns() -> None:
    problem, blocks = make_problem()
    problem.set_manifold(blocks[3], lscov.SubsetManifold.make(4, [0, 2]))
    problem.set_manifold(blocks[1], lscov.SubsetManifold.make(2, [0, 1]))

    tangent = lscov.ColumnBounds.make(problem)
    assert tangent.bounds == ((0, 1), (1, 1), (1, 4), (4, 6))
    assert tangent.num_cols == 6
    assert tangent.is_empty(blocks[1])

    ambient = lscov.ColumnBounds.make(problem, tangent_space=False)
    assert ambient.bounds == ((0, 1), (1, 1), (1, 4), (4, 8))
    assert ambient.num_cols == 8

    with pytest.raises(KeyError):
        tangent[17]


def test_unknown_handle() -> None:
    problem, blocks = make_problem()
    with pytest.raises(KeyError):
        lscov.plan_covariance_sparsity([(blocks[0], 10)], problem)


def test_duplicates() -> None:
    check_for_duplicates([0, 1, 2])

    with pytest.raises(lscov.DuplicateBlocksError) as e:
        check_for_duplicates([3, 5, 3, 5, 5, 7])
    assert e.value.indices == ((0, 2), (1, 3, 4))
    assert isinstance(e.value, ValueError)

    problem, blocks = make_problem()
    with pytest.raises(lscov.DuplicateBlocksError) as e:
        lscov.plan_covariance_sparsity(
            [(blocks[0], blocks[1]), (blocks[2], blocks[2]), (blocks[1], blocks[0])],
            problem,
        )
    assert e.value.indices == ((0, 2),)


def test_as_pairs() -> None:
    assert as_pairs([4, 2, 7]) == [(4, 4), (4, 2), (4, 7), (2, 2), (2, 7), (7, 7)]
    assert as_pairs([(1, 0), (2, 2)]) == [(1, 0), (2, 2)]
    assert as_pairs([]) == []
    with pytest.raises(lscov.DuplicateBlocksError):
        as_pairs([1, 2, 1])
