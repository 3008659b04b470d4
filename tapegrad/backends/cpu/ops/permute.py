import numpy as np

from tapegrad.backends.backend_dispatcher import BackendDispatcher


@BackendDispatcher.instance().register_backend_function("cpu", "Transpose")
def cpu_transpose(backend, inputs, config):
    x = inputs["x"]
    perm = tuple(config["perm"])
    return backend.make_output(np.transpose(backend.read_tensor(x), perm), x.dtype)
