import numpy as np
from onnx import TensorProto

ONNX_DTYPES_TO_NUMPY_DTYPES = {
    TensorProto.FLOAT16: np.dtype('float16'),
    TensorProto.FLOAT: np.dtype('float32'),
    TensorProto.DOUBLE: np.dtype('float64'),

    TensorProto.UINT8: np.dtype('uint8'),
    TensorProto.UINT16: np.dtype('uint16'),
    TensorProto.UINT32: np.dtype('uint32'),
    TensorProto.UINT64: np.dtype('uint64'),

    TensorProto.INT8: np.dtype('int8'),
    TensorProto.INT16: np.dtype('int16'),
    TensorProto.INT32: np.dtype('int32'),
    TensorProto.INT64: np.dtype('int64'),

    TensorProto.BOOL: np.dtype('bool'),

    # TensorProto.STRING
    # TensorProto.BFLOAT16
    # TensorProto.COMPLEX64
    # TensorProto.COMPLEX128
}

# Element types as spelled in the generated C++ sources
NUMPY_DTYPES_TO_C_TYPES = {
    np.dtype('float16'): 'half',
    np.dtype('float32'): 'float',
    np.dtype('float64'): 'double',

    np.dtype('uint8'): 'uint8_t',
    np.dtype('uint16'): 'uint16_t',
    np.dtype('uint32'): 'uint32_t',
    np.dtype('uint64'): 'uint64_t',

    np.dtype('int8'): 'int8_t',
    np.dtype('int16'): 'int16_t',
    np.dtype('int32'): 'int32_t',
    np.dtype('int64'): 'int64_t',

    np.dtype('bool'): 'bool',
}

UNDEFINED_DTYPE = 'undefined'

# ONNX zero_point defaults to uint8 when omitted
DEFAULT_ZERO_POINT_DTYPE = np.dtype('uint8')


def dtype_name_from_onnx_elem_type(elem_type: int) -> str:
    dtype = ONNX_DTYPES_TO_NUMPY_DTYPES.get(int(elem_type), None)
    if dtype is None:
        return UNDEFINED_DTYPE
    return str(dtype)


def c_type_from_numpy_dtype(dtype) -> str:
    return NUMPY_DTYPES_TO_C_TYPES.get(np.dtype(dtype), str(np.dtype(dtype)))
