from tapegrad import kernel_names
from tapegrad.engine import Engine
from tapegrad.ops.axis_util import (
    expand_shape_to_keep_dim,
    get_axes_permutation,
    get_inner_most_axes,
    get_undo_axes_permutation,
    parse_axis_param,
)
from tapegrad.ops.basic_ops import cast, reshape, transpose
from tapegrad.ops.binary_ops import equal, mul
from tapegrad.tensor import Tensor, convert_to_tensor


def max(x, axis=None, keep_dims=False) -> Tensor:
    """Maximum of the elements of ``x`` across ``axis``.

    ``axis`` is None (every axis), an int or a sequence of ints; negative
    values count from the last dimension. Unless ``keep_dims`` is set, each
    reduced axis is dropped from the result, otherwise it is kept with
    length 1.

    Axes that are not innermost are first transposed to the back so the
    backend only ever reduces trailing dimensions. The gradient goes to
    every element equal to the maximum (ties all receive the full upstream
    gradient).
    """
    engine = Engine.instance()
    converted = not isinstance(x, Tensor)
    x = convert_to_tensor(x, "x", "max")
    try:
        orig_axes = parse_axis_param(axis, x.shape)
        permutation = get_axes_permutation(orig_axes, x.rank)
        axes = orig_axes
        if permutation is not None:
            axes = get_inner_most_axes(len(orig_axes), x.rank)

        def forward(backend, save):
            x_perm = x
            if permutation is not None:
                x_perm = backend.run_kernel(
                    kernel_names.TRANSPOSE, {"x": x}, {"perm": permutation}
                )
            try:
                y = backend.run_kernel(kernel_names.MAX, {"x": x_perm}, {"axes": axes})
            finally:
                if x_perm is not x:
                    x_perm.dispose()
            save([x, y])
            return y

        res = engine.run_kernel_func(
            forward,
            {"x": x},
            max_grad,
            kernel_names.MAX,
            {"axes": axes, "reduction_axes": orig_axes, "permutation": permutation},
            inputs_to_save=("x",),
            outputs_to_save=(True,),
        )
        if keep_dims:
            reshaped = reshape(res, expand_shape_to_keep_dim(res.shape, orig_axes))
            res.dispose()
            res = reshaped
        return res
    finally:
        if converted:
            x.dispose()


def max_grad(dy: Tensor, saved, config):
    x, y = saved
    permutation = config["permutation"]

    # work in the permuted frame, where the reduced axes are the trailing ones
    x_perm = x if permutation is None else transpose(x, permutation)
    kept_shape = tuple(y.shape) + (1,) * len(config["axes"])
    y_kept = reshape(y, kept_shape)
    dy_kept = reshape(dy, kept_shape)
    mask = cast(equal(x_perm, y_kept), dy.dtype)
    dx_perm = mul(dy_kept, mask)
    if permutation is None:
        return {"x": dx_perm}
    return {"x": transpose(dx_perm, get_undo_axes_permutation(permutation))}
