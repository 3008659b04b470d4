class TapegradError(RuntimeError):
    pass


class InvalidAxisError(TapegradError):
    def __init__(self, axis, rank):
        message = f"Invalid axis {axis} for tensor of rank {rank}"
        super().__init__(message)
        self.axis = axis
        self.rank = rank


class InvalidDataTypeError(TapegradError):
    def __init__(self, data_type):
        message = f"Invalid data type: {data_type}"
        super().__init__(message)
        self.data_type = data_type


class MismatchShapesError(TapegradError):
    def __init__(self, shapes):
        message = f"Mismatch shapes between tensors: {shapes}"
        super().__init__(message)
        self.shapes = shapes


class KernelExecutionError(TapegradError):
    def __init__(self, kernel_name, reason):
        message = f"Kernel {kernel_name} failed: {reason}"
        super().__init__(message)
        self.kernel_name = kernel_name
        self.reason = reason


class KernelNotFoundError(TapegradError):
    def __init__(self, backend, kernel_name):
        message = f"There's no function registered for {kernel_name} on {backend} backend"
        super().__init__(message)
        self.backend = backend
        self.kernel_name = kernel_name


class KernelAlreadyRegisteredError(TapegradError):
    def __init__(self, backend, kernel_name):
        message = f"Kernel {kernel_name} is already registered for {backend} backend"
        super().__init__(message)
        self.backend = backend
        self.kernel_name = kernel_name


class BackendNotFoundError(TapegradError):
    def __init__(self, name):
        message = f"Backend '{name}' is not registered or failed to initialize"
        super().__init__(message)
        self.name = name


class NotDifferentiableError(TapegradError):
    def __init__(self, kernel_name):
        message = f"Kernel {kernel_name} has no gradient rule registered"
        super().__init__(message)
        self.kernel_name = kernel_name


NotDifferentiable = NotDifferentiableError


class NoGradientError(NotDifferentiableError):
    def __init__(self, message, kernel_name=None):
        TapegradError.__init__(self, message)
        self.kernel_name = kernel_name


class NestedRecordingError(TapegradError):
    def __init__(self):
        super().__init__(
            "A recording session is already active; nested sessions are not supported"
        )


class TensorDisposedError(TapegradError):
    def __init__(self, tensor_id):
        message = f"Tensor {tensor_id} is disposed"
        super().__init__(message)
        self.tensor_id = tensor_id


class RefCountError(TapegradError):
    def __init__(self, tensor_id):
        message = f"Reference count of tensor {tensor_id} would drop below zero"
        super().__init__(message)
        self.tensor_id = tensor_id


class InvalidGradientSeedError(TapegradError):
    def __init__(self, shape):
        message = (
            f"Cannot seed gradients of a tensor of shape {shape} implicitly, "
            "pass dy explicitly for non-scalar outputs"
        )
        super().__init__(message)
        self.shape = shape
