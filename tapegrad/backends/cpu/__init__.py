from .backend_cpu import CPUBackend
from .ops.max import cpu_max
from .ops.reshape import cpu_reshape
from .ops.permute import cpu_transpose
from .ops.broadcast_binary_ops import cpu_add, cpu_mul, cpu_equal
from .ops.reduce_ops import cpu_sum
from .ops.cast import cpu_cast
from .ops.elementwise_ops import cpu_fill
