from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import onnx
from onnx import numpy_helper

from onnx2stub.utils.enums import (
    UNDEFINED_DTYPE,
    dtype_name_from_onnx_elem_type,
)


@dataclass
class QuantValueIR:
    value: Union[int, float, List[int], List[float]]
    type_str: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "type_str": self.type_str,
        }


@dataclass
class QuantParamIR:
    zero_point: QuantValueIR
    scale: QuantValueIR
    is_per_tensor: bool = True
    axis: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zero_point": self.zero_point.to_dict(),
            "scale": self.scale.to_dict(),
            "is_per_tensor": bool(self.is_per_tensor),
            "axis": self.axis,
        }


@dataclass
class TensorIR:
    name: str
    dtype: str
    shape: Optional[List[int]] = None
    data: Optional[np.ndarray] = None


@dataclass
class OperatorIR:
    name: str
    op_type: str
    inputs: List[str]
    outputs: List[str]
    domain: str = ""
    attrs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelIR:
    name: str
    tensors: Dict[str, TensorIR] = field(default_factory=dict)
    operators: List[OperatorIR] = field(default_factory=list)
    inputs: List[str] = field(default_factory=list)
    outputs: List[str] = field(default_factory=list)
    opset_version: Optional[int] = None

    def input_tensors_of(self, op: OperatorIR) -> List[TensorIR]:
        return [self.tensors[name] for name in op.inputs]

    def output_tensors_of(self, op: OperatorIR) -> List[TensorIR]:
        return [self.tensors[name] for name in op.outputs]


def infer_shapes_with_fallback(onnx_graph: onnx.ModelProto) -> onnx.ModelProto:
    try:
        return onnx.shape_inference.infer_shapes(onnx_graph)
    except Exception:
        # Custom domains and malformed value_info make inference fail;
        # the raw graph still has everything a stub needs.
        return onnx_graph


def extract_tensor_info(
    onnx_graph: onnx.ModelProto,
    constants: Optional[Dict[str, np.ndarray]] = None,
) -> Tuple[Dict[str, Optional[List[int]]], Dict[str, str]]:
    shape_map: Dict[str, Optional[List[int]]] = {}
    dtype_map: Dict[str, str] = {}

    def _fill_value_info(value_info):
        if not value_info.type.HasField("tensor_type"):
            return
        name = value_info.name
        tensor_type = value_info.type.tensor_type
        if tensor_type.HasField("shape"):
            dims: List[int] = []
            for d in tensor_type.shape.dim:
                if d.HasField("dim_value") and d.dim_value >= 0:
                    dims.append(int(d.dim_value))
                else:
                    dims.append(-1)
            shape_map[name] = dims
        else:
            shape_map[name] = None
        dtype_map[name] = dtype_name_from_onnx_elem_type(tensor_type.elem_type)

    for vi in onnx_graph.graph.input:
        _fill_value_info(vi)
    for vi in onnx_graph.graph.value_info:
        _fill_value_info(vi)
    for vi in onnx_graph.graph.output:
        _fill_value_info(vi)

    for ini in onnx_graph.graph.initializer:
        arr = constants.get(ini.name, None) if constants is not None else None
        if arr is None:
            arr = numpy_helper.to_array(ini)
        shape_map[ini.name] = list(arr.shape)
        dtype_map[ini.name] = str(arr.dtype)

    return shape_map, dtype_map


def get_constant_map(onnx_graph: onnx.ModelProto) -> Dict[str, np.ndarray]:
    """Initializers and the outputs of `Constant` nodes, by tensor name."""
    constants: Dict[str, np.ndarray] = {}
    for ini in onnx_graph.graph.initializer:
        constants[str(ini.name)] = np.asarray(numpy_helper.to_array(ini))
    for node in onnx_graph.graph.node:
        if node.op_type != "Constant" or len(node.output) == 0:
            continue
        for attr in node.attribute:
            if attr.name == "value":
                constants[str(node.output[0])] = np.asarray(numpy_helper.to_array(attr.t))
                break
    return constants


def _read_attrs(node: onnx.NodeProto) -> Dict[str, Any]:
    attrs: Dict[str, Any] = {}
    for a in node.attribute:
        if a.type == onnx.AttributeProto.INT:
            attrs[a.name] = int(a.i)
        elif a.type == onnx.AttributeProto.FLOAT:
            attrs[a.name] = float(a.f)
        elif a.type == onnx.AttributeProto.INTS:
            attrs[a.name] = [int(v) for v in a.ints]
        elif a.type == onnx.AttributeProto.FLOATS:
            attrs[a.name] = [float(v) for v in a.floats]
        elif a.type == onnx.AttributeProto.STRING:
            attrs[a.name] = a.s.decode("utf-8")
        else:
            # Tensors and subgraphs are not rendered into stubs, only noted.
            attrs[a.name] = None
    return attrs


def _default_opset_version(onnx_graph: onnx.ModelProto) -> Optional[int]:
    for opset in onnx_graph.opset_import:
        if opset.domain in ("", "ai.onnx"):
            return int(opset.version)
    return None


def load_model_ir(
    onnx_graph: onnx.ModelProto,
    name: str = "model",
    constants: Optional[Dict[str, np.ndarray]] = None,
) -> ModelIR:
    """Load an ONNX graph into a ModelIR.

    Operator names are unique in the result: unnamed nodes become
    `<op_type>_<index>` and a repeated name gets `_1`, `_2`, ... suffixes.
    """
    if constants is None:
        constants = get_constant_map(onnx_graph)
    onnx_graph = infer_shapes_with_fallback(onnx_graph)
    shape_map, dtype_map = extract_tensor_info(onnx_graph, constants)

    model_ir = ModelIR(
        name=name,
        opset_version=_default_opset_version(onnx_graph),
    )

    def _ensure_tensor(tensor_name: str) -> None:
        if tensor_name in model_ir.tensors:
            return
        data = constants.get(tensor_name, None)
        dtype = dtype_map.get(tensor_name, None)
        shape = shape_map.get(tensor_name, None)
        if data is not None:
            if dtype is None:
                dtype = str(data.dtype)
            if shape is None:
                shape = list(data.shape)
        model_ir.tensors[tensor_name] = TensorIR(
            name=tensor_name,
            dtype=dtype if dtype is not None else UNDEFINED_DTYPE,
            shape=list(shape) if shape is not None else None,
            data=data,
        )

    initializer_names = {ini.name for ini in onnx_graph.graph.initializer}
    for graph_input in onnx_graph.graph.input:
        if graph_input.name in initializer_names:
            continue
        _ensure_tensor(graph_input.name)
        model_ir.inputs.append(graph_input.name)

    op_name_counts: Dict[str, int] = {}
    used_op_names: set = set()
    for idx, node in enumerate(onnx_graph.graph.node):
        base_name = str(node.name) if node.name else f"{node.op_type}_{idx}"
        op_name = base_name
        while op_name in used_op_names:
            op_name_counts[base_name] = op_name_counts.get(base_name, 0) + 1
            op_name = f"{base_name}_{op_name_counts[base_name]}"
        used_op_names.add(op_name)
        inputs = [str(i) for i in node.input if str(i) != ""]
        outputs = [str(o) for o in node.output if str(o) != ""]
        for tensor_name in inputs + outputs:
            _ensure_tensor(tensor_name)
        model_ir.operators.append(
            OperatorIR(
                name=op_name,
                op_type=str(node.op_type),
                inputs=inputs,
                outputs=outputs,
                domain=str(node.domain),
                attrs=_read_attrs(node),
            )
        )

    for graph_output in onnx_graph.graph.output:
        _ensure_tensor(graph_output.name)
        model_ir.outputs.append(graph_output.name)

    return model_ir


_INVALID_IDENTIFIER_CHARS = re.compile(r"[^A-Za-z0-9_]")


def sanitize_var_name(name: str) -> str:
    var_name = _INVALID_IDENTIFIER_CHARS.sub("_", str(name))
    if var_name == "":
        var_name = "t"
    if var_name[0].isdigit():
        var_name = f"t_{var_name}"
    return var_name


def build_out_var_names(model_ir: ModelIR) -> Dict[str, str]:
    """Map every operator output tensor to a unique C identifier.

    Names are assigned in graph order; the first tensor to claim a
    sanitized name keeps it and later ones get `_1`, `_2`, ... suffixes.
    """
    taken: Dict[str, int] = {}
    used: set = set()
    var_names: Dict[str, str] = {}
    for op in model_ir.operators:
        for tensor_name in op.outputs:
            if tensor_name in var_names:
                continue
            base = sanitize_var_name(tensor_name)
            candidate = base
            while candidate in used:
                taken[base] = taken.get(base, 0) + 1
                candidate = f"{base}_{taken[base]}"
            used.add(candidate)
            var_names[tensor_name] = candidate
    return var_names
