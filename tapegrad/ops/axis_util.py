"""
Axis bookkeeping shared by reduction ops and their gradients.

Reductions run over the innermost dimensions only. An op wrapper asked to
reduce other axes first permutes them to the back with
``get_axes_permutation`` and, on the way back, undoes that with
``get_undo_axes_permutation``.
"""

import numbers
from typing import List, Optional, Sequence, Tuple

from tapegrad.errors import InvalidAxisError


def parse_axis_param(axis, shape: Sequence[int]) -> List[int]:
    """Normalizes ``axis`` (None, int or sequence of ints) to non-negative axes.

    ``None`` means every axis. Negative axes count from the last dimension.
    Out-of-range or repeated axes raise ``InvalidAxisError``.
    """
    rank = len(shape)
    if axis is None:
        return list(range(rank))
    if isinstance(axis, numbers.Integral) and not isinstance(axis, bool):
        axes = [axis]
    elif isinstance(axis, (list, tuple)):
        axes = list(axis)
    else:
        raise InvalidAxisError(axis, rank)

    result = []
    for ax in axes:
        if isinstance(ax, bool) or not isinstance(ax, numbers.Integral):
            raise InvalidAxisError(axis, rank)
        if not -rank <= ax < rank:
            raise InvalidAxisError(axis, rank)
        ax = int(ax) + rank if ax < 0 else int(ax)
        if ax in result:
            raise InvalidAxisError(axis, rank)
        result.append(ax)
    return result


def axes_are_inner_most(axes: Sequence[int], rank: int) -> bool:
    for i in range(len(axes)):
        if axes[len(axes) - i - 1] != rank - 1 - i:
            return False
    return True


def assert_axes_are_inner_most(op_name: str, axes: Sequence[int], rank: int):
    if not axes_are_inner_most(axes, rank):
        raise InvalidAxisError(
            f"{op_name} supports only inner-most axes, got {list(axes)}", rank
        )


def get_axes_permutation(axes: Sequence[int], rank: int) -> Optional[List[int]]:
    """Permutation moving ``axes`` to the back, or None if they already are."""
    if axes_are_inner_most(axes, rank):
        return None
    result = [i for i in range(rank) if i not in axes]
    result.extend(axes)
    return result


def get_undo_axes_permutation(perm: Sequence[int]) -> List[int]:
    """Inverse of ``perm``: transposing by ``perm`` then by this is the identity."""
    inverse = [-1] * len(perm)
    for i, p in enumerate(perm):
        inverse[p] = i
    if -1 in inverse:
        raise InvalidAxisError(list(perm), len(perm))
    return inverse


def get_inner_most_axes(num_axes: int, rank: int) -> List[int]:
    return list(range(rank - num_axes, rank))


def expand_shape_to_keep_dim(shape: Sequence[int], axes: Sequence[int]) -> Tuple[int, ...]:
    reduce_sub_shape = [1] * len(axes)
    return combine_locations(shape, reduce_sub_shape, axes)


def combine_locations(
    out_shape: Sequence[int], reduce_shape: Sequence[int], axes: Sequence[int]
) -> Tuple[int, ...]:
    rank = len(out_shape) + len(reduce_shape)
    result = []
    out_idx = 0
    reduce_idx = 0
    for dim in range(rank):
        if dim in axes:
            result.append(reduce_shape[reduce_idx])
            reduce_idx += 1
        else:
            result.append(out_shape[out_idx])
            out_idx += 1
    return tuple(result)
