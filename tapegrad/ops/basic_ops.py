from typing import Optional, Sequence, Tuple

from tapegrad import kernel_names
from tapegrad.backends.utils import calculate_reshaped_shape
from tapegrad.dtype import DType, float32
from tapegrad.engine import Engine
from tapegrad.errors import InvalidAxisError, InvalidDataTypeError
from tapegrad.kernel_registry import KernelRegistry
from tapegrad.ops.axis_util import get_undo_axes_permutation
from tapegrad.tensor import Tensor, convert_to_tensor


def reshape(x: Tensor, shape: Tuple[int, ...]) -> Tensor:
    x = convert_to_tensor(x, "x", "reshape")
    new_shape = calculate_reshaped_shape(x.shape, tuple(shape))
    return Engine.instance().run_kernel(
        kernel_names.RESHAPE,
        {"x": x},
        {"shape": new_shape, "input_shape": x.shape},
    )


@KernelRegistry.instance().register_gradient(kernel_names.RESHAPE)
def reshape_grad(dy: Tensor, saved, config):
    return {"x": reshape(dy, config["input_shape"])}


def _normalize_perm(perm, rank) -> Tuple[int, ...]:
    if perm is None:
        return tuple(range(rank - 1, -1, -1))
    if len(perm) != rank:
        raise InvalidAxisError(perm, rank)
    dims = tuple((i + rank if i < 0 else i) for i in perm)
    if sorted(dims) != list(range(rank)):
        raise InvalidAxisError(perm, rank)
    return dims


def transpose(x: Tensor, perm: Optional[Sequence[int]] = None) -> Tensor:
    x = convert_to_tensor(x, "x", "transpose")
    perm = _normalize_perm(perm, x.rank)
    return Engine.instance().run_kernel(kernel_names.TRANSPOSE, {"x": x}, {"perm": perm})


@KernelRegistry.instance().register_gradient(kernel_names.TRANSPOSE)
def transpose_grad(dy: Tensor, saved, config):
    return {"x": transpose(dy, get_undo_axes_permutation(config["perm"]))}


def cast(x: Tensor, dtype: DType) -> Tensor:
    x = convert_to_tensor(x, "x", "cast")
    if not isinstance(dtype, DType):
        raise InvalidDataTypeError(dtype)
    if x.dtype is dtype:
        return reshape(x, x.shape)
    return Engine.instance().run_kernel(
        kernel_names.CAST, {"x": x}, {"dtype": dtype, "input_dtype": x.dtype}
    )


@KernelRegistry.instance().register_gradient(kernel_names.CAST)
def cast_grad(dy: Tensor, saved, config):
    return {"x": cast(dy, config["input_dtype"])}


KernelRegistry.instance().register_kernel(kernel_names.FILL)


def fill(shape: Sequence[int], value, dtype: DType = float32) -> Tensor:
    shape = tuple(int(i) for i in shape)
    if any(i < 0 for i in shape):
        raise ValueError(f"negative dimensions are not allowed: {shape}")
    return Engine.instance().run_kernel(
        kernel_names.FILL, {}, {"shape": shape, "value": value, "dtype": dtype}
    )


def ones(shape: Sequence[int], dtype: DType = float32) -> Tensor:
    return fill(shape, 1, dtype)


def zeros(shape: Sequence[int], dtype: DType = float32) -> Tensor:
    return fill(shape, 0, dtype)


def ones_like(x: Tensor) -> Tensor:
    return fill(x.shape, 1, x.dtype)


def zeros_like(x: Tensor) -> Tensor:
    return fill(x.shape, 0, x.dtype)
