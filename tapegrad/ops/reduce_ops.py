from tapegrad import kernel_names
from tapegrad.engine import Engine
from tapegrad.kernel_registry import KernelRegistry
from tapegrad.ops.axis_util import expand_shape_to_keep_dim, parse_axis_param
from tapegrad.ops.basic_ops import cast, ones, reshape
from tapegrad.ops.binary_ops import mul
from tapegrad.tensor import Tensor, convert_to_tensor


def sum(x: Tensor, axis=None, keep_dims=False) -> Tensor:
    converted = not isinstance(x, Tensor)
    x = convert_to_tensor(x, "x", "sum")
    try:
        axes = parse_axis_param(axis, x.shape)
        return Engine.instance().run_kernel(
            kernel_names.SUM,
            {"x": x},
            {
                "axes": axes,
                "keep_dims": keep_dims,
                "input_shape": x.shape,
                "input_dtype": x.dtype,
            },
        )
    finally:
        if converted:
            x.dispose()


@KernelRegistry.instance().register_gradient(kernel_names.SUM)
def sum_grad(dy: Tensor, saved, config):
    input_shape = config["input_shape"]
    if config["keep_dims"]:
        dy_kept = dy
    else:
        dy_kept = reshape(dy, expand_shape_to_keep_dim(dy.shape, config["axes"]))
    dx = mul(dy_kept, ones(input_shape, dy.dtype))
    if dx.dtype is not config["input_dtype"]:
        dx = cast(dx, config["input_dtype"])
    return {"x": dx}
