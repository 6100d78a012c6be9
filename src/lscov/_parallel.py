"""Fork-join helpers for splitting work over disjoint index ranges."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable


def partition_range(start: int, end: int, num_partitions: int) -> list[tuple[int, int]]:
    """Split `[start, end)` into at most `num_partitions` contiguous, non-empty
    ranges. Sizes differ by at most one, and the ranges tile the input exactly.
    """
    assert num_partitions >= 1
    size = end - start
    if size <= 0:
        return []

    num_partitions = min(num_partitions, size)
    base, remainder = divmod(size, num_partitions)

    out = list[tuple[int, int]]()
    begin = start
    for i in range(num_partitions):
        # The first `remainder` partitions get one extra element.
        part_end = begin + base + (1 if i < remainder else 0)
        out.append((begin, part_end))
        begin = part_end
    assert begin == end
    return out


def parallel_for(
    start: int,
    end: int,
    num_threads: int,
    fn: Callable[[int, int], None],
) -> None:
    """Run `fn(begin, end)` over a partition of `[start, end)`.

    Each worker gets its own range, so writes indexed by that range never
    overlap. With a single thread everything runs inline on the caller.
    Exceptions raised by a worker are re-raised here.
    """
    partitions = partition_range(start, end, max(num_threads, 1))
    if len(partitions) <= 1:
        for begin, part_end in partitions:
            fn(begin, part_end)
        return

    with ThreadPoolExecutor(max_workers=len(partitions)) as executor:
        futures = [
            executor.submit(fn, begin, part_end) for begin, part_end in partitions
        ]
        for future in futures:
            future.result()


def linear_index_to_upper_triangular_index(k: int, n: int) -> tuple[int, int]:
    """Map `k` in `[0, n(n+1)/2)` to the k-th `(i, j)` pair with `i <= j`,
    enumerated row by row."""
    assert 0 <= k < n * (n + 1) // 2
    i = 0
    row_length = n
    while k >= row_length:
        k -= row_length
        i += 1
        row_length -= 1
    return i, i + k
