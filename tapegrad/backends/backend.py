from typing import Any, Dict

import numpy as np
import numpy.typing as npt

from tapegrad.backends.backend_dispatcher import BackendDispatcher
from tapegrad.dtype import DType


class Backend:
    """Kernel executor plus the storage its tensors live in.

    Subclasses provide the storage methods; kernels are looked up by
    ``(name, kernel_name)`` in the ``BackendDispatcher`` table and called as
    ``kernel(backend, inputs, config)``.
    """

    name: str = ""

    def __init__(self, engine):
        self.engine = engine

    def write(self, values: npt.NDArray) -> Any:
        raise NotImplementedError

    def read(self, data_id) -> npt.NDArray:
        raise NotImplementedError

    def inc_data_ref(self, data_id):
        raise NotImplementedError

    def dispose_data(self, data_id) -> bool:
        """Drops one reference to ``data_id``; returns True if storage was freed."""
        raise NotImplementedError

    def num_data_ids(self) -> int:
        raise NotImplementedError

    def memory(self) -> Dict[str, Any]:
        raise NotImplementedError

    def dispose(self):
        pass

    def read_tensor(self, tensor) -> npt.NDArray:
        # tensors created on another backend are readable too
        return tensor.backend.read(tensor.data_id).reshape(tensor.shape)

    def make_output(self, values: npt.NDArray, dtype: DType = None):
        values = np.asarray(values)
        if dtype is not None:
            values = values.astype(dtype.np_dtype, copy=False)
        else:
            dtype = DType.from_np_dtype(values.dtype)
        data_id = self.write(values)
        return self.engine.make_tensor_from_data_id(data_id, values.shape, dtype, self)

    def share_output(self, tensor, shape):
        if tensor.backend is not self:
            return self.make_output(self.read_tensor(tensor).reshape(shape), tensor.dtype)
        self.inc_data_ref(tensor.data_id)
        return self.engine.make_tensor_from_data_id(
            tensor.data_id, shape, tensor.dtype, self
        )

    def has_kernel(self, kernel_name: str) -> bool:
        return BackendDispatcher.instance().has_kernel(self.name, kernel_name)

    def run_kernel(self, kernel_name: str, inputs: Dict[str, Any], config=None):
        func = BackendDispatcher.instance().dispatch(self.name, kernel_name)
        return func(self, inputs, config if config is not None else {})

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r})"
