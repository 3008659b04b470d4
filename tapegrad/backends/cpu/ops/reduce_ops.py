import numpy as np

from tapegrad.backends.backend_dispatcher import BackendDispatcher
from tapegrad.dtype import int32, bool_


@BackendDispatcher.instance().register_backend_function("cpu", "Sum")
def cpu_sum(backend, inputs, config):
    x = inputs["x"]
    axes = tuple(config["axes"])
    keep_dims = config.get("keep_dims", False)
    dtype = int32 if x.dtype == bool_ else x.dtype
    output_cpu_array = np.sum(backend.read_tensor(x), axis=axes, keepdims=keep_dims)
    return backend.make_output(output_cpu_array, dtype)
