from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import onnx

from onnx2stub.stub_builder.ir import QuantParamIR, QuantValueIR, get_constant_map
from onnx2stub.utils.enums import DEFAULT_ZERO_POINT_DTYPE, c_type_from_numpy_dtype


_QLINEAR_BINARY_OPS = {
    "QLinearConv",
    "QLinearMatMul",
    "QLinearAdd",
    "QLinearMul",
}

_QLINEAR_UNARY_OPS = {
    "QLinearLeakyRelu",
    "QLinearSigmoid",
    "QLinearSoftmax",
    "QLinearAveragePool",
    "QLinearGlobalAveragePool",
}

_PASSTHROUGH_OPS = {
    "Transpose",
    "Reshape",
    "Identity",
    "Squeeze",
    "Unsqueeze",
    "Flatten",
    "Slice",
    "Pad",
}


def _read_onnx_attr_int(node: onnx.NodeProto, attr_name: str) -> Optional[int]:
    for attr in node.attribute:
        if str(attr.name) == str(attr_name):
            try:
                return int(onnx.helper.get_attribute_value(attr))
            except (TypeError, ValueError):
                return None
    return None


def _read_constant_array(
    constant_map: Dict[str, np.ndarray],
    tensor_name: str,
) -> Optional[np.ndarray]:
    if str(tensor_name) == "":
        return None
    array = constant_map.get(str(tensor_name), None)
    if array is None:
        return None
    return np.asarray(array)


def normalize_scale_zero(
    *,
    scale_array: Optional[np.ndarray],
    zero_point_array: Optional[np.ndarray],
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """Flatten scale/zero point and broadcast a single element to the other's size.

    Returns None when the pair cannot describe a quantization.
    """
    if scale_array is None:
        return None
    scales = np.asarray(scale_array, dtype=np.float32).reshape(-1)
    if scales.size == 0:
        return None
    if zero_point_array is None or np.asarray(zero_point_array).size == 0:
        zeros = np.zeros_like(scales, dtype=DEFAULT_ZERO_POINT_DTYPE)
    else:
        zeros = np.asarray(zero_point_array).reshape(-1)
    if zeros.size == 1 and scales.size > 1:
        zeros = np.full((int(scales.size),), zeros[0], dtype=zeros.dtype)
    if scales.size == 1 and zeros.size > 1:
        scales = np.full((int(zeros.size),), float(scales[0]), dtype=np.float32)
    if scales.size != zeros.size:
        return None
    return scales, zeros


def _entries_equal(prev: Dict[str, Any], nxt: Dict[str, Any]) -> bool:
    return (
        prev["scale"].shape == nxt["scale"].shape
        and np.array_equal(prev["scale"], nxt["scale"])
        and prev["zero_point"].shape == nxt["zero_point"].shape
        and np.array_equal(prev["zero_point"], nxt["zero_point"])
        and prev["zero_point"].dtype == nxt["zero_point"].dtype
        and prev["axis"] == nxt["axis"]
    )


def _to_quant_value(array: np.ndarray, per_tensor: bool) -> QuantValueIR:
    values = np.asarray(array).reshape(-1)
    return QuantValueIR(
        value=values[0].item() if per_tensor else values.tolist(),
        type_str=c_type_from_numpy_dtype(values.dtype),
    )


def to_quant_param_ir(entry: Dict[str, Any]) -> QuantParamIR:
    per_tensor = int(entry["scale"].size) == 1
    return QuantParamIR(
        zero_point=_to_quant_value(entry["zero_point"], per_tensor),
        scale=_to_quant_value(entry["scale"], per_tensor),
        is_per_tensor=per_tensor,
        axis=None if per_tensor else entry["axis"],
    )


def _collect_raw_quant_entries(
    onnx_graph: onnx.ModelProto,
    constant_map: Optional[Dict[str, np.ndarray]] = None,
) -> Dict[str, Dict[str, Any]]:
    if constant_map is None:
        constant_map = get_constant_map(onnx_graph)
    quant_map: Dict[str, Dict[str, Any]] = {}

    def _upsert(
        *,
        tensor_name: str,
        scale_name: str,
        zero_name: str = "",
        axis: Optional[int] = None,
    ) -> None:
        if str(tensor_name) == "":
            return
        normalized = normalize_scale_zero(
            scale_array=_read_constant_array(constant_map, scale_name),
            zero_point_array=_read_constant_array(constant_map, zero_name),
        )
        if normalized is None:
            return
        scales, zeros = normalized
        next_entry = {
            "scale": scales,
            "zero_point": zeros,
            "axis": axis,
        }
        prev = quant_map.get(str(tensor_name), None)
        if prev is not None and _entries_equal(prev, next_entry):
            return
        quant_map[str(tensor_name)] = next_entry

    for node in onnx_graph.graph.node:
        op_type = str(node.op_type)
        inputs = [str(v) for v in node.input]
        outputs = [str(v) for v in node.output if str(v) != ""]

        if op_type in {"QuantizeLinear", "DequantizeLinear"}:
            if len(inputs) < 2:
                continue
            zero_name = inputs[2] if len(inputs) >= 3 else ""
            axis = _read_onnx_attr_int(node, "axis")
            if axis is None:
                axis = 1
            if op_type == "DequantizeLinear":
                _upsert(tensor_name=inputs[0], scale_name=inputs[1], zero_name=zero_name, axis=axis)
            for output_name in outputs:
                _upsert(tensor_name=output_name, scale_name=inputs[1], zero_name=zero_name, axis=axis)
        elif op_type == "QLinearConcat":
            # y_scale, y_zero_point, then (x_i, x_i_scale, x_i_zero_point) triplets
            if len(inputs) < 2:
                continue
            for output_name in outputs:
                _upsert(tensor_name=output_name, scale_name=inputs[0], zero_name=inputs[1])
            triplet_start = 2
            while triplet_start + 2 < len(inputs):
                _upsert(
                    tensor_name=inputs[triplet_start],
                    scale_name=inputs[triplet_start + 1],
                    zero_name=inputs[triplet_start + 2],
                )
                triplet_start += 3
        elif op_type in _QLINEAR_BINARY_OPS:
            # x, x_scale, x_zp, w/b, w/b_scale, w/b_zp, y_scale, y_zp, (bias)
            if len(inputs) < 8:
                continue
            for output_name in outputs:
                _upsert(tensor_name=output_name, scale_name=inputs[6], zero_name=inputs[7])
            _upsert(tensor_name=inputs[0], scale_name=inputs[1], zero_name=inputs[2])
            _upsert(tensor_name=inputs[3], scale_name=inputs[4], zero_name=inputs[5])
        elif op_type in _QLINEAR_UNARY_OPS:
            # x, x_scale, x_zp, y_scale, y_zp
            if len(inputs) < 5:
                continue
            for output_name in outputs:
                _upsert(tensor_name=output_name, scale_name=inputs[3], zero_name=inputs[4])
            _upsert(tensor_name=inputs[0], scale_name=inputs[1], zero_name=inputs[2])
        elif op_type.startswith("QLinear"):
            if len(inputs) < 2:
                continue
            for output_name in outputs:
                _upsert(tensor_name=output_name, scale_name=inputs[-2], zero_name=inputs[-1])
            if len(inputs) >= 3:
                _upsert(tensor_name=inputs[0], scale_name=inputs[1], zero_name=inputs[2])

    _propagate_through_passthrough_ops(onnx_graph, quant_map, constant_map)
    return quant_map


def _transposed_axis(
    node: onnx.NodeProto,
    axis: Optional[int],
    constant_map: Dict[str, np.ndarray],
) -> Optional[int]:
    perm_list: Optional[List[int]] = None
    for attr in node.attribute:
        if attr.name == "perm":
            perm_list = [int(v) for v in attr.ints]
    if perm_list is None and len(node.input) >= 2:
        perm = _read_constant_array(constant_map, str(node.input[1]))
        if perm is not None:
            perm_list = [int(v) for v in perm.reshape(-1).tolist()]
    if perm_list is None or axis is None:
        return None
    old_axis = int(axis)
    if old_axis < 0:
        old_axis += len(perm_list)
    for out_dim, in_dim in enumerate(perm_list):
        if int(in_dim) == old_axis:
            return int(out_dim)
    return None


def _propagate_through_passthrough_ops(
    onnx_graph: onnx.ModelProto,
    quant_map: Dict[str, Dict[str, Any]],
    constant_map: Dict[str, np.ndarray],
) -> None:
    # Records stated by the graph itself always win over propagated ones.
    explicit_names = set(quant_map.keys())
    changed = True
    while changed:
        changed = False
        for node in onnx_graph.graph.node:
            op_type = str(node.op_type)
            if op_type not in _PASSTHROUGH_OPS or len(node.input) == 0:
                continue
            src_q = quant_map.get(str(node.input[0]), None)
            if src_q is None:
                continue
            axis = src_q["axis"]
            if src_q["scale"].size > 1:
                # Per-axis records only survive a Transpose, whose axis can be remapped.
                if op_type != "Transpose":
                    continue
                axis = _transposed_axis(node, axis, constant_map)
                if axis is None:
                    continue
            next_entry = {
                "scale": src_q["scale"],
                "zero_point": src_q["zero_point"],
                "axis": axis,
            }
            for output_name in node.output:
                out_name = str(output_name)
                if out_name == "" or out_name in explicit_names:
                    continue
                prev = quant_map.get(out_name, None)
                if prev is not None and _entries_equal(prev, next_entry):
                    continue
                quant_map[out_name] = next_entry
                changed = True


def build_quant_params_map(
    onnx_graph: onnx.ModelProto,
    constant_map: Optional[Dict[str, np.ndarray]] = None,
) -> Dict[str, QuantParamIR]:
    """Tensor name to quantization record for every QDQ/QLinear tensor.

    `constant_map` may be passed in when the caller already holds the
    graph constants from `get_constant_map`.
    """
    raw_entries = _collect_raw_quant_entries(onnx_graph, constant_map)
    return {
        tensor_name: to_quant_param_ir(entry)
        for tensor_name, entry in raw_entries.items()
    }
