import numpy as np

from tapegrad.backends.backend_dispatcher import BackendDispatcher
from tapegrad.ops.axis_util import assert_axes_are_inner_most


@BackendDispatcher.instance().register_backend_function("cpu", "Max")
def cpu_max(backend, inputs, config):
    x = inputs["x"]
    axes = tuple(config["axes"])
    assert_axes_are_inner_most("max", axes, x.rank)

    output_cpu_array = np.max(backend.read_tensor(x), axis=axes)
    return backend.make_output(output_cpu_array, x.dtype)
