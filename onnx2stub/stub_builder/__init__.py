from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import onnx

from onnx2stub.stub_builder.ir import (
    ModelIR,
    OperatorIR,
    build_out_var_names,
    get_constant_map,
    load_model_ir,
)
from onnx2stub.stub_builder.op_registry import (
    NodeSupportError,
    resolve_node_support,
)
from onnx2stub.stub_builder.quantization import build_quant_params_map
from onnx2stub.stub_builder.snippets import (
    render_missing_ops_source,
    render_stubs_by_node,
)


def classify_operators(
    *,
    model_ir: ModelIR,
    out_var_names_map: Dict[str, str],
    extra_supported_ops: Optional[Iterable[str]] = None,
    force_stub_ops: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    node_reports: List[Dict[str, Any]] = []
    unsupported_operators: List[OperatorIR] = []
    for op in model_ir.operators:
        out_var_names = [out_var_names_map[name] for name in op.outputs]
        try:
            resolution = resolve_node_support(
                op,
                extra_supported_ops=extra_supported_ops,
                force_stub_ops=force_stub_ops,
            )
        except NodeSupportError as ex:
            issue = ex.to_dict()
            issue["supported"] = False
            issue["target_op"] = None
            issue["out_var_names"] = out_var_names
            node_reports.append(issue)
            unsupported_operators.append(op)
            continue
        node_reports.append(
            {
                "node_name": op.name,
                "onnx_op": op.op_type,
                "supported": True,
                "target_op": resolution.entry.target_op,
                "reason_code": resolution.reason_code,
                "message": resolution.message,
                "out_var_names": out_var_names,
            }
        )
    return {
        "node_reports": node_reports,
        "unsupported_operators": unsupported_operators,
    }


def build_missing_op_stubs(
    *,
    onnx_graph: onnx.ModelProto,
    output_file_name: str = "model",
    extra_supported_ops: Optional[Iterable[str]] = None,
    force_stub_ops: Optional[Iterable[str]] = None,
    generator_version: str = "",
) -> Dict[str, Any]:
    constants = get_constant_map(onnx_graph)
    model_ir = load_model_ir(onnx_graph, name=output_file_name, constants=constants)
    quant_params_map = build_quant_params_map(onnx_graph, constant_map=constants)
    out_var_names_map = build_out_var_names(model_ir)
    classified = classify_operators(
        model_ir=model_ir,
        out_var_names_map=out_var_names_map,
        extra_supported_ops=extra_supported_ops,
        force_stub_ops=force_stub_ops,
    )
    unsupported_operators = classified["unsupported_operators"]
    source = render_missing_ops_source(
        model_ir=model_ir,
        operators=unsupported_operators,
        out_var_names_map=out_var_names_map,
        quant_params_map=quant_params_map,
        generator_version=generator_version,
    )
    stubs = render_stubs_by_node(
        model_ir=model_ir,
        operators=unsupported_operators,
        out_var_names_map=out_var_names_map,
        quant_params_map=quant_params_map,
    )
    return {
        "model_ir": model_ir,
        "quant_params_map": quant_params_map,
        "out_var_names_map": out_var_names_map,
        "node_reports": classified["node_reports"],
        "unsupported_operators": unsupported_operators,
        "source": source,
        "stubs": stubs,
    }
