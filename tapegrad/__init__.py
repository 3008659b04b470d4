from .engine import Engine
from .autograd import no_grad, evaluate_gradients, Tape, KernelInvocationRecord, GradientMap
from .tensor import Tensor, tensor
from .kernel_registry import KernelRegistry
from .ops.basic_ops import reshape, transpose, cast, fill, ones, zeros, ones_like, zeros_like
from .ops.binary_ops import add, mul, equal
from .ops.reduce_ops import sum
from .ops.max import max
from .errors import (
    TapegradError,
    InvalidAxisError,
    KernelExecutionError,
    KernelNotFoundError,
    KernelAlreadyRegisteredError,
    BackendNotFoundError,
    NotDifferentiable,
    NotDifferentiableError,
    NoGradientError,
    NestedRecordingError,
    TensorDisposedError,
    RefCountError,
    InvalidDataTypeError,
    MismatchShapesError,
    InvalidGradientSeedError,
)

from .dtype import (
    DType,
    float16,
    float32,
    float64,
    int8,
    int16,
    int32,
    int64,
    uint8,
    uint16,
    uint32,
    uint64,
    bool_,
)


def gradients(f, xs, dy=None):
    return Engine.instance().gradients(f, xs, dy)


def tidy(fn, *args, **kwargs):
    return Engine.instance().tidy(fn, *args, **kwargs)


def keep(t):
    return Engine.instance().keep(t)


def dispose(container):
    Engine.instance().dispose(container)


def memory():
    return Engine.instance().memory()


def set_backend(name):
    Engine.instance().set_backend(name)


def get_backend():
    return Engine.instance().backend_name
