from __future__ import annotations

import csv
import json
import os
from typing import Any, Dict, List, Mapping, Optional, Tuple

from onnx2stub.stub_builder.ir import ModelIR, QuantParamIR
from onnx2stub.stub_builder.op_registry import get_supported_onnx_ops

_CSV_FIELDNAMES = [
    "node_name",
    "onnx_op",
    "supported",
    "target_op",
    "reason_code",
    "message",
    "out_var_names",
]


def default_output_paths(model_stem: str, output_dir: str) -> Tuple[str, str, str]:
    json_path = os.path.join(output_dir, f"{model_stem}_op_stub_report.json")
    csv_path = os.path.join(output_dir, f"{model_stem}_op_stub_report.csv")
    cpp_path = os.path.join(output_dir, f"{model_stem}_missing_ops.cpp")
    return json_path, csv_path, cpp_path


def build_op_stub_report(
    *,
    model_ir: ModelIR,
    node_reports: List[Dict[str, Any]],
    quant_params_map: Optional[Mapping[str, QuantParamIR]] = None,
    generator_version: str = "",
) -> Dict[str, Any]:
    unsupported_nodes = [r for r in node_reports if not r.get("supported", False)]
    supported_nodes = [r for r in node_reports if r.get("supported", False)]

    unsupported_reason_counts: Dict[str, int] = {}
    for r in unsupported_nodes:
        reason = str(r.get("reason_code", "unknown"))
        unsupported_reason_counts[reason] = int(unsupported_reason_counts.get(reason, 0) + 1)

    quant_params_map = quant_params_map if quant_params_map is not None else {}
    return {
        "model_name": model_ir.name,
        "generator_version": generator_version,
        "opset_version": model_ir.opset_version,
        "graph_ops": sorted({op.op_type for op in model_ir.operators}),
        "graph_supported_ops": sorted({str(r["onnx_op"]) for r in supported_nodes}),
        "graph_unsupported_ops": sorted({str(r["onnx_op"]) for r in unsupported_nodes}),
        "graph_node_reports": node_reports,
        "unsupported_nodes": unsupported_nodes,
        "unsupported_reason_counts": unsupported_reason_counts,
        "graph_summary": {
            "total_nodes": len(node_reports),
            "supported_nodes": len(supported_nodes),
            "unsupported_nodes": len(unsupported_nodes),
            "quantized_tensors": len(quant_params_map),
        },
        "quantized_tensors": {
            name: param.to_dict() for name, param in sorted(quant_params_map.items())
        },
        "supported_onnx_ops_registry": get_supported_onnx_ops(),
    }


def write_report_json(
    *,
    report: Dict[str, Any],
    output_report_path: str,
) -> str:
    os.makedirs(os.path.dirname(output_report_path) or ".", exist_ok=True)
    with open(output_report_path, "w", encoding="utf-8") as f:
        json.dump(report, f, ensure_ascii=False, indent=2)
    return output_report_path


def write_report_csv(
    *,
    node_reports: List[Dict[str, Any]],
    output_csv_path: str,
) -> str:
    os.makedirs(os.path.dirname(output_csv_path) or ".", exist_ok=True)
    with open(output_csv_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=_CSV_FIELDNAMES)
        writer.writeheader()
        for row in node_reports:
            writer.writerow(
                {
                    "node_name": row.get("node_name", ""),
                    "onnx_op": row.get("onnx_op", ""),
                    "supported": row.get("supported", ""),
                    "target_op": row.get("target_op", "") or "",
                    "reason_code": row.get("reason_code", "") or "",
                    "message": row.get("message", "") or "",
                    "out_var_names": " ".join(row.get("out_var_names", [])),
                }
            )
    return output_csv_path
