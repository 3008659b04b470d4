from tapegrad.backends.backend_dispatcher import BackendDispatcher


@BackendDispatcher.instance().register_backend_function("cpu", "Cast")
def cpu_cast(backend, inputs, config):
    x = inputs["x"]
    dtype = config["dtype"]
    return backend.make_output(backend.read_tensor(x).astype(dtype.np_dtype), dtype)
