import numpy as np
import numpy.typing as npt
from typing import Optional, Tuple, Any

from tapegrad.dtype import DType
from tapegrad.errors import InvalidDataTypeError, TensorDisposedError


def shape_size(shape):
    from functools import reduce

    return reduce(lambda x, y: x * y, shape, 1)


def tensor(data, dtype: Optional[DType] = None, engine=None) -> "Tensor":
    from tapegrad.engine import Engine

    if isinstance(data, Tensor):
        raise InvalidDataTypeError(type(data))
    data = np.array(data)
    if dtype is not None:
        if not isinstance(dtype, DType):
            raise InvalidDataTypeError(dtype)
        data = data.astype(dtype.np_dtype)
    engine = engine if engine is not None else Engine.instance()
    return engine.make_tensor(data)


def convert_to_tensor(x, name: str, op_name: str, engine=None) -> "Tensor":
    if isinstance(x, Tensor):
        if x.is_disposed:
            raise TensorDisposedError(x.id)
        return x
    if isinstance(x, (list, tuple, np.ndarray, int, float, bool, np.number)):
        return tensor(x, engine=engine)
    raise InvalidDataTypeError(f"argument '{name}' passed to '{op_name}': {type(x)}")


class Tensor:
    """Immutable handle to backend-resident storage.

    A handle is created with one reference, owned by whoever received it.
    The engine moves ``ref_count``; storage is released when it reaches zero.
    """

    id: int
    shape: Tuple[int, ...]
    dtype: DType
    data_id: Any
    ref_count: int

    def __init__(self, tensor_id: int, shape, dtype: DType, data_id, backend, engine):
        self.id = tensor_id
        self.shape = tuple(int(i) for i in shape)
        self.dtype = dtype
        self.data_id = data_id
        self.backend = backend
        self.ref_count = 1
        self._engine = engine
        self._caller_released = False

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        return shape_size(self.shape)

    @property
    def is_disposed(self) -> bool:
        return self.ref_count == 0

    def _check_live(self):
        if self.is_disposed:
            raise TensorDisposedError(self.id)

    def numpy(self) -> npt.NDArray:
        self._check_live()
        return self.backend.read(self.data_id).reshape(self.shape).copy()

    def item(self):
        return self.numpy().item()

    def dispose(self):
        self._engine.dispose_tensor(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.dispose()

    def __repr__(self):
        if self.is_disposed:
            return f"tensor(<disposed>, id={self.id}, shape={self.shape}, dtype={self.dtype})"
        array_str = np.array2string(self.numpy(), threshold=50, separator=", ")
        return f"tensor({array_str}, dtype={self.dtype})"

    def max(self, axis=None, keep_dims=False) -> "Tensor":
        from tapegrad.ops.max import max as func

        return func(self, axis, keep_dims)

    def sum(self, axis=None, keep_dims=False) -> "Tensor":
        from tapegrad.ops.reduce_ops import sum as func

        return func(self, axis, keep_dims)

    def reshape(self, shape) -> "Tensor":
        from tapegrad.ops.basic_ops import reshape as func

        return func(self, shape)

    def transpose(self, perm=None) -> "Tensor":
        from tapegrad.ops.basic_ops import transpose as func

        return func(self, perm)

    def cast(self, dtype: DType) -> "Tensor":
        from tapegrad.ops.basic_ops import cast as func

        return func(self, dtype)

    def equal(self, other) -> "Tensor":
        from tapegrad.ops.binary_ops import equal as func

        return func(self, other)

    def __add__(self, other) -> "Tensor":
        from tapegrad.ops.binary_ops import add

        return add(self, other)

    def __radd__(self, other) -> "Tensor":
        from tapegrad.ops.binary_ops import add

        return add(other, self)

    def __mul__(self, other) -> "Tensor":
        from tapegrad.ops.binary_ops import mul

        return mul(self, other)

    def __rmul__(self, other) -> "Tensor":
        from tapegrad.ops.binary_ops import mul

        return mul(other, self)
