"""
Kernel dispatch, tape recording and tensor memory accounting.

Every operator funnels through ``Engine.run_kernel_func``: the engine pins the
inputs, runs the forward closure against the active backend, appends a tape
record when a recording session is active and unpins the inputs again. A
forward failure leaves no trace: no record, no leftover references, no
leftover tensors.

Reference counting rules:

- a new handle starts with one reference, owned by whoever receives it;
- a kernel call holds one extra reference per input while it runs;
- a tape holds one extra reference per saved tensor until the session ends;
- storage is released when the count reaches zero.
"""

import contextlib
import itertools
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from tapegrad.autograd import KernelInvocationRecord, Tape, TensorInfo, evaluate_gradients
from tapegrad.dtype import DType
from tapegrad.environment import Environment
from tapegrad.errors import (
    BackendNotFoundError,
    InvalidDataTypeError,
    InvalidGradientSeedError,
    KernelExecutionError,
    MismatchShapesError,
    NestedRecordingError,
    NoGradientError,
    RefCountError,
    TapegradError,
    TensorDisposedError,
)
from tapegrad.kernel_registry import KernelRegistry
from tapegrad.logger_manager import LoggerManager
from tapegrad.tensor import Tensor


def _flatten_tensors(result) -> List[Tensor]:
    if isinstance(result, Tensor):
        return [result]
    if isinstance(result, dict):
        result = result.values()
    if isinstance(result, (list, tuple, type({}.values()))):
        tensors = []
        for item in result:
            tensors.extend(_flatten_tensors(item))
        return tensors
    return []


class _Scope:
    def __init__(self, name: Optional[str]):
        self.name = name
        self.tracked: List[Tensor] = []


class _ThreadState(threading.local):
    """Scopes, tape and recording switches of one thread.

    Handles, reference counts and backends are shared by every thread using
    the engine; what a thread is currently tidying or recording is not.
    """

    def __init__(self):
        self.scope_stack: List[_Scope] = []
        self.tape: Optional[Tape] = None
        self.no_grad_depth = 0
        self.paused_depth = 0
        self.kernel_depth = 0
        self.kernel_calls: List[List[Tensor]] = []


class Engine:
    _local = threading.local()
    _default = None
    _default_lock = threading.Lock()

    @classmethod
    def instance(cls) -> "Engine":
        stack = getattr(cls._local, "stack", None)
        if stack:
            return stack[-1]
        with cls._default_lock:
            if cls._default is None:
                cls._default = Engine()
        return cls._default

    @classmethod
    def reset_default(cls):
        with cls._default_lock:
            if cls._default is not None:
                cls._default.reset()
            cls._default = None

    def __init__(self, register_default_backends: bool = True):
        self._lock = threading.RLock()
        self._logger = LoggerManager.instance().logger

        self._registry_factory: Dict[str, Tuple[Callable, int]] = {}
        self._registry: Dict[str, Any] = {}
        self._backend_name: Optional[str] = None

        self._next_tensor_id = itertools.count()
        self._live: Dict[int, Tensor] = {}
        self._kept_ids = set()
        self._state = _ThreadState()

        if register_default_backends:
            from tapegrad.backends.cpu import CPUBackend

            self.register_backend(CPUBackend.name, CPUBackend, priority=1)

    @contextlib.contextmanager
    def use(self):
        """Makes this engine ``Engine.instance()`` for the current thread."""
        stack = getattr(Engine._local, "stack", None)
        if stack is None:
            stack = Engine._local.stack = []
        stack.append(self)
        try:
            yield self
        finally:
            stack.pop()

    # backends

    def register_backend(self, name: str, factory: Callable, priority: int = 1) -> bool:
        with self._lock:
            if name in self._registry_factory:
                self._logger.warning(
                    f"{name} backend was already registered, reusing existing backend factory"
                )
                return False
            self._registry_factory[name] = (factory, priority)
            self._logger.info(f"registered backend {name} with priority {priority}")
            return True

    def remove_backend(self, name: str):
        with self._lock:
            if name not in self._registry_factory:
                raise BackendNotFoundError(name)
            if name in self._registry:
                backend = self._registry.pop(name)
                orphans = [t for t in self._live.values() if t.backend is backend]
                for t in orphans:
                    t.ref_count = 0
                    t._caller_released = True
                    self._live.pop(t.id)
                    self._kept_ids.discard(t.id)
                if orphans:
                    self._logger.warning(
                        f"removing backend {name} released {len(orphans)} live tensors"
                    )
                backend.dispose()
            del self._registry_factory[name]
            if self._backend_name == name:
                self._backend_name = None

    def find_backend(self, name: str):
        with self._lock:
            if name not in self._registry:
                if name not in self._registry_factory:
                    return None
                factory, _ = self._registry_factory[name]
                try:
                    self._registry[name] = factory(self)
                except Exception as e:
                    self._logger.warning(f"Initialization of backend {name} failed: {e}")
                    return None
            return self._registry[name]

    def set_backend(self, name: str):
        with self._lock:
            if self.find_backend(name) is None:
                raise BackendNotFoundError(name)
            if self._backend_name != name:
                self._logger.info(f"switched to backend {name}")
            self._backend_name = name

    def backend_names(self) -> List[str]:
        return sorted(self._registry_factory)

    def _best_backend_name(self) -> str:
        preferred = Environment.instance().get("BACKEND")
        if preferred is not None:
            return preferred
        names = sorted(
            self._registry_factory,
            key=lambda name: self._registry_factory[name][1],
            reverse=True,
        )
        for name in names:
            if self.find_backend(name) is not None:
                return name
        raise BackendNotFoundError("<any>")

    @property
    def backend_name(self) -> str:
        if self._backend_name is None:
            self.set_backend(self._best_backend_name())
        return self._backend_name

    @property
    def backend(self):
        return self._registry[self.backend_name]

    # tensors and reference counts

    def make_tensor(self, values: np.ndarray, dtype: Optional[DType] = None) -> Tensor:
        return self.backend.make_output(values, dtype)

    def make_tensor_from_data_id(self, data_id, shape, dtype: DType, backend) -> Tensor:
        with self._lock:
            t = Tensor(next(self._next_tensor_id), shape, dtype, data_id, backend, self)
            self._live[t.id] = t
            if self._state.scope_stack:
                self._state.scope_stack[-1].tracked.append(t)
            if self._state.kernel_calls:
                self._state.kernel_calls[-1].append(t)
            return t

    def inc_ref(self, t: Tensor):
        with self._lock:
            if t.is_disposed:
                raise TensorDisposedError(t.id)
            t.ref_count += 1

    def dec_ref(self, t: Tensor):
        with self._lock:
            if t.ref_count <= 0:
                raise RefCountError(t.id)
            t.ref_count -= 1
            if t.ref_count == 0:
                self._release(t)

    def _release(self, t: Tensor):
        self._live.pop(t.id, None)
        self._kept_ids.discard(t.id)
        t.backend.dispose_data(t.data_id)
        self._logger.debug(f"released tensor {t.id} shape={t.shape} dtype={t.dtype}")

    def dispose_tensor(self, t: Tensor):
        """Drops the caller's reference. Disposing twice is a no-op."""
        with self._lock:
            if t._caller_released:
                self._logger.debug(f"tensor {t.id} already disposed by its owner")
                return
            t._caller_released = True
            self.dec_ref(t)

    def dispose(self, container):
        for t in _flatten_tensors(container):
            self.dispose_tensor(t)

    def keep(self, t: Tensor) -> Tensor:
        """Exempts ``t`` from disposal by enclosing tidy scopes."""
        with self._lock:
            if t.is_disposed:
                raise TensorDisposedError(t.id)
            self._kept_ids.add(t.id)
            return t

    def num_tensors(self) -> int:
        return len(self._live)

    def memory(self) -> Dict[str, Any]:
        with self._lock:
            infos = [backend.memory() for backend in self._registry.values()]
            return {
                "num_tensors": len(self._live),
                "num_data_buffers": sum(b.num_data_ids() for b in self._registry.values()),
                "num_bytes": sum(info["num_bytes"] for info in infos),
                "unreliable": any(info.get("unreliable", False) for info in infos),
            }

    # tidy scopes

    def start_scope(self, name: Optional[str] = None):
        with self._lock:
            self._state.scope_stack.append(_Scope(name))

    def end_scope(self, result=None):
        with self._lock:
            scope = self._state.scope_stack.pop()
            result_tensors = _flatten_tensors(result)
            keep_ids = {t.id for t in result_tensors}
            for t in scope.tracked:
                if t.id in keep_ids or t.id in self._kept_ids or t._caller_released:
                    continue
                self.dispose_tensor(t)
            if self._state.scope_stack:
                tracked_ids = {t.id for t in scope.tracked}
                parent = self._state.scope_stack[-1]
                for t in result_tensors:
                    if t.id in tracked_ids:
                        parent.tracked.append(t)

    def tidy(self, fn: Callable, *args, **kwargs):
        """Runs ``fn`` and disposes every tensor it created except its result."""
        self.start_scope(getattr(fn, "__name__", None))
        result = None
        try:
            result = fn(*args, **kwargs)
            return result
        finally:
            self.end_scope(result)

    @contextlib.contextmanager
    def scope(self, name: Optional[str] = None):
        self.start_scope(name)
        try:
            yield self
        finally:
            self.end_scope()

    # recording session

    def no_grad(self, value: bool):
        with self._lock:
            if value:
                self._state.no_grad_depth += 1
            else:
                self._state.no_grad_depth = max(0, self._state.no_grad_depth - 1)

    @contextlib.contextmanager
    def pause_recording(self):
        with self._lock:
            self._state.paused_depth += 1
        try:
            yield
        finally:
            with self._lock:
                self._state.paused_depth -= 1

    def is_recording(self) -> bool:
        return (
            self._state.tape is not None
            and self._state.no_grad_depth == 0
            and self._state.paused_depth == 0
        )

    @property
    def tape(self) -> Optional[Tape]:
        return self._state.tape

    def start_recording(self) -> Tape:
        with self._lock:
            if self._state.tape is not None:
                raise NestedRecordingError()
            self._state.tape = Tape()
            self._logger.info("recording session started")
            return self._state.tape

    def end_recording(self):
        with self._lock:
            if self._state.tape is None:
                return
            tape, self._state.tape = self._state.tape, None
            for t in tape.saved_tensors():
                # already released together with a removed backend
                if t.id not in self._live:
                    continue
                self.dec_ref(t)
            self._logger.info(f"recording session ended ({len(tape)} records)")
            tape.clear()

    @contextlib.contextmanager
    def record(self):
        tape = self.start_recording()
        try:
            yield tape
        finally:
            self.end_recording()

    # dispatch

    def run_kernel(self, kernel_name: str, inputs: Dict[str, Tensor], config=None):
        """Runs a kernel through the registry: backend kernel + registered gradient."""
        kernel_config = KernelRegistry.instance().get(kernel_name)

        def forward(backend, save):
            return backend.run_kernel(kernel_name, inputs, config)

        return self.run_kernel_func(
            forward,
            inputs,
            kernel_name=kernel_name,
            config=config,
            inputs_to_save=None if kernel_config is None else kernel_config.inputs_to_save,
            outputs_to_save=None if kernel_config is None else kernel_config.outputs_to_save,
        )

    def run_kernel_func(
        self,
        forward: Callable,
        inputs: Dict[str, Tensor],
        gradient: Optional[Callable] = None,
        kernel_name: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        inputs_to_save: Optional[Sequence[str]] = None,
        outputs_to_save: Optional[Sequence[bool]] = None,
    ):
        """Runs ``forward(backend, save)`` and records it if a session is active.

        ``save(tensors)`` pins the tensors the gradient rule will receive as
        ``saved``. If ``forward`` never calls it, ``inputs_to_save`` and
        ``outputs_to_save`` decide what gets pinned.
        """
        kernel_name = kernel_name if kernel_name is not None else "anonymous"
        config = dict(config) if config is not None else {}

        with self._lock:
            for name, t in inputs.items():
                if not isinstance(t, Tensor):
                    raise InvalidDataTypeError(f"input '{name}' of {kernel_name}: {type(t)}")
                if t.is_disposed:
                    raise TensorDisposedError(t.id)

            recording = self.is_recording() and self._state.kernel_depth == 0
            backend = self.backend
            saved: List[Tensor] = []
            save_called = False

            def save(tensors):
                nonlocal save_called
                save_called = True
                if not recording:
                    return
                for t in tensors:
                    self.inc_ref(t)
                    saved.append(t)

            pinned = []
            created: List[Tensor] = []
            self._state.kernel_calls.append(created)
            self._state.kernel_depth += 1
            self._logger.debug(f"dispatching {kernel_name} on {backend.name} backend")
            try:
                for t in inputs.values():
                    self.inc_ref(t)
                    pinned.append(t)
                result = forward(backend, save)
                outputs = [result] if isinstance(result, Tensor) else list(result)
                for out in outputs:
                    if not isinstance(out, Tensor):
                        raise InvalidDataTypeError(f"output of {kernel_name}: {type(out)}")
                self._check_outputs(kernel_name, outputs)
            except TapegradError:
                self._rollback(saved, created)
                raise
            except Exception as e:
                self._rollback(saved, created)
                raise KernelExecutionError(kernel_name, str(e)) from e
            finally:
                self._state.kernel_depth -= 1
                self._state.kernel_calls.pop()
                for t in pinned:
                    self.dec_ref(t)

            if self._state.kernel_calls:
                self._state.kernel_calls[-1].extend(created)

            if recording:
                if not save_called:
                    for name in inputs_to_save or ():
                        self.inc_ref(inputs[name])
                        saved.append(inputs[name])
                    for out, flag in zip(outputs, outputs_to_save or ()):
                        if flag:
                            self.inc_ref(out)
                            saved.append(out)
                if gradient is None:
                    gradient = KernelRegistry.instance().get_gradient(kernel_name)
                record = KernelInvocationRecord(
                    kernel_name=kernel_name,
                    inputs={name: TensorInfo.of(t) for name, t in inputs.items()},
                    outputs=tuple(TensorInfo.of(out) for out in outputs),
                    saved=tuple(saved),
                    gradient=gradient,
                    config=config,
                )
                self._state.tape.append(record)
                self._logger.debug(
                    f"recorded {kernel_name} as record {record.id} "
                    f"(saved {list(record.saved_ids)})"
                )

            return result

    def _rollback(self, saved: List[Tensor], created: List[Tensor]):
        for t in saved:
            self.dec_ref(t)
        for t in created:
            if not t._caller_released:
                self.dispose_tensor(t)

    def _check_outputs(self, kernel_name: str, outputs: List[Tensor]):
        env = Environment.instance()
        check = env.get_bool("CHECK_COMPUTATION_FOR_ERRORS")
        if not (check or env.get_bool("DEBUG")):
            return
        for out in outputs:
            if not out.dtype.is_floating:
                continue
            if np.isnan(out.backend.read_tensor(out)).any():
                if check:
                    raise KernelExecutionError(kernel_name, "output contains NaN")
                self._logger.warning(f"the result of {kernel_name} contains NaN")

    # gradients

    def gradients(self, f: Callable[[], Tensor], xs: Sequence[Tensor], dy: Optional[Tensor] = None):
        """Returns ``(y, grads)`` where ``y = f()`` and ``grads[i]`` is dy/dxs[i].

        ``dy`` defaults to ones and may only be omitted when ``y`` has a
        single element. Raises ``NoGradientError`` if some ``x`` does not
        reach ``y``.
        """
        xs = list(xs)
        for x in xs:
            if not isinstance(x, Tensor):
                raise InvalidDataTypeError(type(x))
            if x.is_disposed:
                raise TensorDisposedError(x.id)

        with self.use(), self.record() as tape:
            y = self.tidy(f)
            if not isinstance(y, Tensor):
                raise InvalidDataTypeError(f"f must return a Tensor, got {type(y)}")

            try:
                if dy is None:
                    if y.size != 1:
                        raise InvalidGradientSeedError(y.shape)
                    with self.pause_recording():
                        from tapegrad.ops.basic_ops import ones

                        seed = ones(y.shape, y.dtype)
                else:
                    if tuple(dy.shape) != tuple(y.shape):
                        raise MismatchShapesError([tuple(dy.shape), tuple(y.shape)])
                    if dy.dtype is not y.dtype:
                        raise InvalidDataTypeError(
                            f"gradient seed dy is {dy.dtype}, the value of f is {y.dtype}"
                        )
                    seed = dy

                try:
                    grads = evaluate_gradients(tape, {y.id: seed}, [x.id for x in xs], engine=self)
                finally:
                    if dy is None:
                        seed.dispose()
            except Exception:
                y.dispose()
                raise

        missing = [x.id for x in xs if x.id not in grads]
        if missing:
            grads.dispose()
            y.dispose()
            raise NoGradientError(
                f"Cannot compute gradient of y=f(x) with respect to tensors {missing}. "
                "Make sure that f encloses all operations that lead from x to y."
            )
        result = []
        for x in xs:
            grad = grads[x.id]
            if any(grad is g for g in result):
                grad = grad.reshape(grad.shape)
            result.append(grad)
        return y, result

    def reset(self):
        with self._lock:
            self._state = _ThreadState()
            for t in list(self._live.values()):
                t.ref_count = 0
                t._caller_released = True
            self._live = {}
            self._kept_ids = set()
            for backend in self._registry.values():
                backend.dispose()
            self._registry = {}
            self._backend_name = None
