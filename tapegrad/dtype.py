import numpy as np
import numpy.typing as npt


class DType:
    def __init__(self, name: str, np_dtype: npt.DTypeLike, is_floating: bool):
        self.name = name
        self.np_dtype = np_dtype
        self.is_floating = is_floating

    def __repr__(self):
        return self.name

    @staticmethod
    def from_np_dtype(np_dtype: npt.DTypeLike) -> "DType":
        for _, v in globals().items():
            if isinstance(v, DType) and np.dtype(v.np_dtype) == np.dtype(np_dtype):
                return v
        raise RuntimeError(f"There's no matching tapegrad dtype for {np_dtype}")

    @staticmethod
    def from_name(name: str) -> "DType":
        for _, v in globals().items():
            if isinstance(v, DType) and v.name == name:
                return v
        raise RuntimeError(f"There's no matching tapegrad dtype for {name}")

    def itemsize(self) -> int:
        return np.dtype(self.np_dtype).itemsize


def upcast(x: DType, y: DType) -> DType:
    # never narrows: float32 + float64 -> float64, bool + int32 -> int32
    return DType.from_np_dtype(np.result_type(x.np_dtype, y.np_dtype))


float16 = DType("float16", np.float16, True)
float32 = DType("float32", np.float32, True)
float64 = DType("float64", np.float64, True)
int8 = DType("int8", np.int8, False)
int16 = DType("int16", np.int16, False)
int32 = DType("int32", np.int32, False)
int64 = DType("int64", np.int64, False)
uint8 = DType("uint8", np.uint8, False)
uint16 = DType("uint16", np.uint16, False)
uint32 = DType("uint32", np.uint32, False)
uint64 = DType("uint64", np.uint64, False)
bool_ = DType("bool", np.bool_, False)
