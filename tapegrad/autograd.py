"""
Tape recording and reverse-mode gradient evaluation.

While a recording session is active the engine appends one
``KernelInvocationRecord`` per executed kernel. Records hold tensor metadata
(id, shape, dtype) for every input and output, and full handles only for the
tensors the kernel saved for its gradient rule. ``evaluate_gradients`` replays
the tape backwards, calling each record's gradient rule with the upstream
gradient and the saved tensors, and sums contributions per tensor id.
"""

import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from tapegrad.dtype import DType
from tapegrad.errors import (
    InvalidDataTypeError,
    MismatchShapesError,
    NoGradientError,
)
from tapegrad.logger_manager import LoggerManager


_record_ids = itertools.count()


@dataclass(frozen=True)
class TensorInfo:
    id: int
    shape: Tuple[int, ...]
    dtype: DType

    @staticmethod
    def of(tensor) -> "TensorInfo":
        return TensorInfo(tensor.id, tuple(tensor.shape), tensor.dtype)


@dataclass(frozen=True)
class KernelInvocationRecord:
    kernel_name: str
    inputs: Dict[str, TensorInfo]
    outputs: Tuple[TensorInfo, ...]
    saved: Tuple[Any, ...] = ()
    gradient: Optional[Callable] = None
    config: Dict[str, Any] = field(default_factory=dict)
    id: int = field(default_factory=lambda: next(_record_ids))

    @property
    def saved_ids(self) -> Tuple[int, ...]:
        return tuple(t.id for t in self.saved)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kernel_name": self.kernel_name,
            "inputs": {name: info.id for name, info in self.inputs.items()},
            "outputs": [info.id for info in self.outputs],
            "saved": list(self.saved_ids),
            "gradient": None if self.gradient is None else self.gradient.__name__,
            "config": {k: repr(v) for k, v in self.config.items()},
        }


class Tape:
    def __init__(self):
        self._records: List[KernelInvocationRecord] = []

    def append(self, record: KernelInvocationRecord):
        self._records.append(record)

    def __len__(self):
        return len(self._records)

    def __iter__(self):
        return iter(self._records)

    def __getitem__(self, index):
        return self._records[index]

    def reversed(self):
        return reversed(self._records)

    def saved_tensors(self) -> List[Any]:
        # one entry per pin, so a tensor saved twice appears twice
        return [t for record in self._records for t in record.saved]

    def clear(self):
        self._records = []

    def to_dict(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self._records]


class GradientMap(dict):
    """``tensor id -> accumulated gradient``. The caller owns the gradients."""

    def dispose(self):
        for grad in self.values():
            grad.dispose()


def filter_tape(
    tape: Iterable[KernelInvocationRecord],
    target_ids: Sequence[int],
    seed_ids: Sequence[int],
) -> List[KernelInvocationRecord]:
    """Records lying on a path from a target tensor to a seeded output.

    Inputs of the kept records that do not descend from a target are pruned,
    so gradient rules are only asked for gradients that matter.
    """
    records = list(tape)

    tensors_from_x = set(target_ids)
    node_from_x = set()
    for i, record in enumerate(records):
        if any(info.id in tensors_from_x for info in record.inputs.values()):
            tensors_from_x.update(info.id for info in record.outputs)
            node_from_x.add(i)

    tensors_lead_to_y = set(seed_ids)
    node_lead_to_y = set()
    for i in range(len(records) - 1, -1, -1):
        record = records[i]
        if any(info.id in tensors_lead_to_y for info in record.outputs):
            tensors_lead_to_y.update(info.id for info in record.inputs.values())
            node_lead_to_y.add(i)

    filtered = []
    for i, record in enumerate(records):
        if i not in node_from_x or i not in node_lead_to_y:
            continue
        pruned_inputs = {
            name: info
            for name, info in record.inputs.items()
            if info.id in tensors_from_x
        }
        filtered.append(
            KernelInvocationRecord(
                kernel_name=record.kernel_name,
                inputs=pruned_inputs,
                outputs=record.outputs,
                saved=record.saved,
                gradient=record.gradient,
                config=record.config,
                id=record.id,
            )
        )
    return filtered


def _backpropagate(filtered, seeds, target_ids) -> GradientMap:
    from tapegrad.ops.basic_ops import zeros, reshape
    from tapegrad.ops.binary_ops import add

    logger = LoggerManager.instance().logger
    accumulated: Dict[int, Any] = dict(seeds)

    for record in reversed(filtered):
        dys = [accumulated.get(info.id) for info in record.outputs]
        if all(dy is None for dy in dys):
            continue
        if record.gradient is None:
            raise NoGradientError(
                f"Cannot compute gradient: kernel {record.kernel_name} has no gradient rule",
                record.kernel_name,
            )
        dys = [
            dy if dy is not None else zeros(info.shape, info.dtype)
            for dy, info in zip(dys, record.outputs)
        ]
        dy = dys[0] if len(dys) == 1 else dys
        input_grads = record.gradient(dy, list(record.saved), record.config)
        logger.debug(
            f"gradient of {record.kernel_name} (record {record.id}) "
            f"for inputs {list(record.inputs)}"
        )

        for name, info in record.inputs.items():
            if name not in input_grads:
                raise NoGradientError(
                    f"Gradient rule of {record.kernel_name} returned no gradient for input '{name}'",
                    record.kernel_name,
                )
            grad = input_grads[name]
            if tuple(grad.shape) != info.shape:
                raise MismatchShapesError([tuple(grad.shape), info.shape])
            if grad.dtype is not info.dtype:
                raise InvalidDataTypeError(
                    f"gradient of {record.kernel_name}.{name} is {grad.dtype}, input is {info.dtype}"
                )
            current = accumulated.get(info.id)
            accumulated[info.id] = grad if current is None else add(current, grad)

    # seeds stay owned by the caller, and two targets never share a handle
    taken = {id(t) for t in seeds.values()}
    result = GradientMap()
    for tensor_id in target_ids:
        grad = accumulated.get(tensor_id)
        if grad is None or tensor_id in result:
            continue
        if id(grad) in taken:
            grad = reshape(grad, grad.shape)
        taken.add(id(grad))
        result[tensor_id] = grad
    return result


def evaluate_gradients(
    tape: Iterable[KernelInvocationRecord],
    output_gradient_seeds: Dict[int, Any],
    target_input_ids: Sequence[int],
    engine=None,
) -> GradientMap:
    """Reverse-mode pass over ``tape``.

    ``output_gradient_seeds`` maps output tensor ids to upstream gradients.
    Returns gradients for the ``target_input_ids`` that are connected to a
    seeded output; unconnected targets are absent from the map. Every
    temporary created on the way is disposed before returning.
    """
    from tapegrad.engine import Engine

    engine = engine if engine is not None else Engine.instance()
    target_input_ids = list(target_input_ids)
    filtered = filter_tape(tape, target_input_ids, list(output_gradient_seeds))

    with engine.use(), engine.pause_recording():
        result = engine.tidy(
            _backpropagate, filtered, output_gradient_seeds, target_input_ids
        )
    return GradientMap(result)


class no_grad:
    def __init__(self, engine=None):
        self._engine = engine

    def __enter__(self):
        from tapegrad.engine import Engine

        if self._engine is None:
            self._engine = Engine.instance()
        self._engine.no_grad(True)

    def __exit__(self, exc_type, exc_value, traceback):
        self._engine.no_grad(False)
