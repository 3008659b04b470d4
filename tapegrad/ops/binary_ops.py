import numbers

import numpy as np

from tapegrad import kernel_names
from tapegrad.backends.utils import calculate_broadcast_shape, get_broadcast_reduction_axes
from tapegrad.engine import Engine
from tapegrad.kernel_registry import KernelRegistry
from tapegrad.tensor import Tensor, convert_to_tensor, tensor


def _cast_other_to_tensor(other, like, op_name: str) -> Tensor:
    if like is not None and isinstance(other, (numbers.Number, np.number)):
        return tensor(np.array(other, dtype=like.dtype.np_dtype))
    return convert_to_tensor(other, "other", op_name)


def _binary_op(kernel_name, a, b):
    """Runs a broadcasting binary kernel, disposing operands it converted itself."""
    converted = []
    try:
        if not isinstance(a, Tensor):
            a = _cast_other_to_tensor(a, b if isinstance(b, Tensor) else None, kernel_name)
            converted.append(a)
        if not isinstance(b, Tensor):
            b = _cast_other_to_tensor(b, a, kernel_name)
            converted.append(b)
        a = convert_to_tensor(a, "a", kernel_name)
        b = convert_to_tensor(b, "b", kernel_name)
        calculate_broadcast_shape(a.shape, b.shape)
        config = {
            "a_shape": a.shape,
            "b_shape": b.shape,
            "a_dtype": a.dtype,
            "b_dtype": b.dtype,
        }
        return Engine.instance().run_kernel(kernel_name, {"a": a, "b": b}, config)
    finally:
        for t in converted:
            t.dispose()


def _unbroadcast(dy: Tensor, input_info) -> Tensor:
    from tapegrad.ops.basic_ops import cast, reshape
    from tapegrad.ops.reduce_ops import sum

    shape, dtype = input_info
    res = dy
    axes = get_broadcast_reduction_axes(tuple(shape), dy.shape)
    if axes:
        res = sum(res, list(axes))
    if res.dtype is not dtype:
        res = cast(res, dtype)
    return reshape(res, shape)


def add(a, b) -> Tensor:
    return _binary_op(kernel_names.ADD, a, b)


@KernelRegistry.instance().register_gradient(kernel_names.ADD)
def add_grad(dy: Tensor, saved, config):
    return {
        "a": _unbroadcast(dy, (config["a_shape"], config["a_dtype"])),
        "b": _unbroadcast(dy, (config["b_shape"], config["b_dtype"])),
    }


def mul(a, b) -> Tensor:
    return _binary_op(kernel_names.MULTIPLY, a, b)


@KernelRegistry.instance().register_gradient(kernel_names.MULTIPLY, inputs_to_save=("a", "b"))
def mul_grad(dy: Tensor, saved, config):
    a, b = saved
    return {
        "a": _unbroadcast(mul(dy, b), (a.shape, a.dtype)),
        "b": _unbroadcast(mul(dy, a), (b.shape, b.dtype)),
    }


KernelRegistry.instance().register_kernel(kernel_names.EQUAL)


def equal(a, b) -> Tensor:
    return _binary_op(kernel_names.EQUAL, a, b)
