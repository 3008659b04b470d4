from tapegrad.backends.utils import calculate_broadcast_shape
from tapegrad.backends.backend_dispatcher import BackendDispatcher
from tapegrad.dtype import upcast, bool_


def _operands(backend, inputs):
    a, b = inputs["a"], inputs["b"]
    calculate_broadcast_shape(a.shape, b.shape)
    return a, b, backend.read_tensor(a), backend.read_tensor(b)


@BackendDispatcher.instance().register_backend_function("cpu", "Add")
def cpu_add(backend, inputs, config):
    a, b, a_array, b_array = _operands(backend, inputs)
    return backend.make_output(a_array + b_array, upcast(a.dtype, b.dtype))


@BackendDispatcher.instance().register_backend_function("cpu", "Multiply")
def cpu_mul(backend, inputs, config):
    a, b, a_array, b_array = _operands(backend, inputs)
    return backend.make_output(a_array * b_array, upcast(a.dtype, b.dtype))


@BackendDispatcher.instance().register_backend_function("cpu", "Equal")
def cpu_equal(backend, inputs, config):
    _, _, a_array, b_array = _operands(backend, inputs)
    return backend.make_output(a_array == b_array, bool_)
