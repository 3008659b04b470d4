from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

from tapegrad.errors import NotDifferentiableError


@dataclass(frozen=True)
class KernelConfig:
    """Registry entry for one kernel name.

    ``gradient(dy, saved, config)`` returns ``{input_name: Tensor}``. ``saved``
    holds the tensors listed by ``inputs_to_save`` followed by the outputs
    flagged in ``outputs_to_save``, in that order.
    """

    kernel_name: str
    gradient: Optional[Callable] = None
    inputs_to_save: Sequence[str] = ()
    outputs_to_save: Sequence[bool] = ()


class KernelRegistry:
    _instance = None

    @classmethod
    def instance(cls):
        if cls._instance is None:
            cls._instance = KernelRegistry()
        return cls._instance

    def __init__(self):
        self._configs: Dict[str, KernelConfig] = {}

    def register_gradient(self, kernel_name: str, inputs_to_save=(), outputs_to_save=()):
        def decorator(func):
            if kernel_name in self._configs:
                raise RuntimeError(
                    f"There's already a gradient registered for {kernel_name}"
                )
            self._configs[kernel_name] = KernelConfig(
                kernel_name, func, tuple(inputs_to_save), tuple(outputs_to_save)
            )
            return func

        return decorator

    def register_kernel(self, kernel_name: str, inputs_to_save=(), outputs_to_save=()):
        """Declares a kernel without a gradient rule (not differentiable)."""
        if kernel_name in self._configs:
            raise RuntimeError(f"Kernel {kernel_name} is already registered")
        self._configs[kernel_name] = KernelConfig(
            kernel_name, None, tuple(inputs_to_save), tuple(outputs_to_save)
        )

    def get(self, kernel_name: str) -> Optional[KernelConfig]:
        return self._configs.get(kernel_name)

    def get_gradient(self, kernel_name: Optional[str]) -> Optional[Callable]:
        if kernel_name is None:
            return None
        config = self._configs.get(kernel_name)
        return None if config is None else config.gradient

    def require_gradient(self, kernel_name: str) -> Callable:
        gradient = self.get_gradient(kernel_name)
        if gradient is None:
            raise NotDifferentiableError(kernel_name)
        return gradient

    def unregister(self, kernel_name: str):
        self._configs.pop(kernel_name, None)

    def kernel_names(self):
        return sorted(self._configs)
