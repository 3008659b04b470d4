from typing import Tuple

from tapegrad.errors import MismatchShapesError


def calculate_broadcast_shape(
    x_shape: Tuple[int, ...], y_shape: Tuple[int, ...]
) -> Tuple[int, ...]:
    if len(x_shape) < len(y_shape):
        x_shape = (1,) * (len(y_shape) - len(x_shape)) + x_shape
    elif len(x_shape) > len(y_shape):
        y_shape = (1,) * (len(x_shape) - len(y_shape)) + y_shape
    ans = []
    for i, j in zip(x_shape, y_shape):
        if not (i == j or i == 1 or j == 1):
            raise MismatchShapesError([x_shape, y_shape])
        ans.append(j if i == 1 else i)
    return tuple(ans)


def get_broadcast_reduction_axes(
    in_shape: Tuple[int, ...], out_shape: Tuple[int, ...]
) -> Tuple[int, ...]:
    # axes of out_shape that were expanded from in_shape by broadcasting
    result = []
    offset = len(out_shape) - len(in_shape)
    for i in range(len(out_shape)):
        in_dim = i - offset
        if in_dim < 0 or (in_shape[in_dim] == 1 and out_shape[i] > 1):
            result.append(i)
    return tuple(result)


def calculate_reshaped_shape(
    original_shape: Tuple[int, ...], target_shape: Tuple[int, ...]
):
    from tapegrad.tensor import shape_size

    total_elements = shape_size(original_shape)
    target_elements = 1
    unknown_dim_index = None

    for i, dim in enumerate(target_shape):
        if dim == -1:
            if unknown_dim_index is not None:
                raise ValueError("can only specify one unknown dimension")
            unknown_dim_index = i
        else:
            if dim < 0:
                raise ValueError("negative dimensions not allowed except -1")
            target_elements *= dim

    if unknown_dim_index is not None:
        if target_elements == 0 or total_elements % target_elements != 0:
            raise ValueError(
                f"cannot reshape array of size {total_elements} into shape {target_shape}"
            )
        unknown_dim = total_elements // target_elements
        target_shape_ls = list(target_shape)
        target_shape_ls[unknown_dim_index] = unknown_dim
        return tuple(target_shape_ls)
    else:
        if total_elements != target_elements:
            raise ValueError(
                f"cannot reshape array of size {total_elements} into shape {target_shape}"
            )
        return tuple(target_shape)
