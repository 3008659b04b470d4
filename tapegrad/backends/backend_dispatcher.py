from typing import Callable, Dict, List

from tapegrad.errors import KernelAlreadyRegisteredError, KernelNotFoundError
from tapegrad.logger_manager import LoggerManager


KernelFunc = Callable  # kernel(backend, inputs, config) -> Tensor


class BackendDispatcher:
    """Kernel tables keyed by backend name, then kernel name.

    Backend packages fill their table at import time with
    ``register_backend_function``; ``Backend.run_kernel`` resolves through
    ``dispatch``.
    """

    _instance = None

    @classmethod
    def instance(cls):
        if cls._instance is None:
            cls._instance = BackendDispatcher()
            cls._instance._register_modules()
        return cls._instance

    def __init__(self):
        self._tables: Dict[str, Dict[str, KernelFunc]] = {}

    def _register_modules(self):
        import tapegrad.backends.cpu

    def register_backend_function(self, backend: str, kernel_name: str):
        def decorator(func: KernelFunc) -> KernelFunc:
            table = self._tables.setdefault(backend, {})
            if kernel_name in table:
                raise KernelAlreadyRegisteredError(backend, kernel_name)
            table[kernel_name] = func
            LoggerManager.instance().logger.debug(
                f"registered kernel {kernel_name} for {backend} backend"
            )
            return func

        return decorator

    def unregister_backend_function(self, backend: str, kernel_name: str):
        table = self._tables.get(backend, {})
        if kernel_name not in table:
            raise KernelNotFoundError(backend, kernel_name)
        del table[kernel_name]
        if not table:
            del self._tables[backend]

    def dispatch(self, backend: str, kernel_name: str) -> KernelFunc:
        try:
            return self._tables[backend][kernel_name]
        except KeyError:
            raise KernelNotFoundError(backend, kernel_name) from None

    def has_kernel(self, backend: str, kernel_name: str) -> bool:
        return kernel_name in self._tables.get(backend, {})

    def kernel_names(self, backend: str) -> List[str]:
        return sorted(self._tables.get(backend, {}))

    def backend_names(self) -> List[str]:
        return sorted(self._tables)
