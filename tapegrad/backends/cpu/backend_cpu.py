import itertools
from typing import Dict, List, Optional

import numpy as np
import numpy.typing as npt

from tapegrad.backends.backend import Backend
from tapegrad.logger_manager import LoggerManager


class CPUBackend(Backend):
    """NumPy backend. Storage is a table of ``data_id -> [array, ref_count]``.

    ``max_bytes`` caps resident memory; a write that would exceed it raises
    ``MemoryError`` the way an exhausted device allocator would; inside a
    kernel call the engine reports it as that kernel's ``KernelExecutionError``.
    """

    name = "cpu"

    def __init__(self, engine, max_bytes: Optional[int] = None):
        super().__init__(engine)
        self.max_bytes = max_bytes
        self._data: Dict[int, List] = {}
        self._next_data_id = itertools.count()
        self._num_bytes = 0

    def write(self, values: npt.NDArray) -> int:
        values = np.ascontiguousarray(values)
        if self.max_bytes is not None and self._num_bytes + values.nbytes > self.max_bytes:
            raise MemoryError(
                f"out of memory: {values.nbytes} bytes requested, "
                f"{self.max_bytes - self._num_bytes} bytes available"
            )
        data_id = next(self._next_data_id)
        self._data[data_id] = [values, 1]
        self._num_bytes += values.nbytes
        return data_id

    def read(self, data_id) -> npt.NDArray:
        return self._data[data_id][0]

    def inc_data_ref(self, data_id):
        self._data[data_id][1] += 1

    def dispose_data(self, data_id) -> bool:
        entry = self._data.get(data_id)
        if entry is None:
            return False
        entry[1] -= 1
        if entry[1] > 0:
            return False
        del self._data[data_id]
        self._num_bytes -= entry[0].nbytes
        LoggerManager.instance().logger.debug(
            f"cpu backend released data {data_id} ({entry[0].nbytes} bytes)"
        )
        return True

    def num_data_ids(self) -> int:
        return len(self._data)

    def memory(self):
        return {"num_bytes": self._num_bytes, "unreliable": False}

    def dispose(self):
        self._data = {}
        self._num_bytes = 0
