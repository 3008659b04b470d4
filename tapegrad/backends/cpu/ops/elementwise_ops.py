import numpy as np

from tapegrad.backends.backend_dispatcher import BackendDispatcher


@BackendDispatcher.instance().register_backend_function("cpu", "Fill")
def cpu_fill(backend, inputs, config):
    dtype = config["dtype"]
    return backend.make_output(
        np.full(tuple(config["shape"]), config["value"], dtype=dtype.np_dtype), dtype
    )
