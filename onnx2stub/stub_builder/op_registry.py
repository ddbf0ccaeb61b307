from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from onnx2stub.stub_builder.ir import OperatorIR


class NodeSupportError(ValueError):
    def __init__(
        self,
        *,
        reason_code: str,
        message: str,
        node_name: str,
        node_op: str,
    ) -> None:
        super().__init__(message)
        self.reason_code = str(reason_code)
        self.node_name = str(node_name)
        self.node_op = str(node_op)
        self.message = str(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_name": self.node_name,
            "onnx_op": self.node_op,
            "reason_code": self.reason_code,
            "message": self.message,
        }


@dataclass(frozen=True)
class ValidationSpec:
    min_inputs: int = 0
    max_inputs: Optional[int] = None
    min_outputs: int = 1
    max_outputs: Optional[int] = 1
    required_attrs: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SupportEntry:
    onnx_op: str
    target_op: str
    validation: ValidationSpec = field(default_factory=ValidationSpec)


@dataclass(frozen=True)
class SupportResolution:
    entry: SupportEntry
    reason_code: Optional[str] = None
    message: Optional[str] = None


_DEFAULT_DOMAINS = {"", "ai.onnx"}

_UNARY = ValidationSpec(min_inputs=1, max_inputs=1)
_BINARY = ValidationSpec(min_inputs=2, max_inputs=2)

# ONNX ops with a reference kernel on the target runtime.
_SUPPORT_REGISTRY: Dict[str, SupportEntry] = {
    entry.onnx_op: entry
    for entry in [
        SupportEntry("Add", "AddOperator", _BINARY),
        SupportEntry("Mul", "MulOperator", _BINARY),
        SupportEntry("MatMul", "MatrixMultOperator", _BINARY),
        SupportEntry(
            "Gemm",
            "FullyConnectedOperator",
            ValidationSpec(min_inputs=2, max_inputs=3),
        ),
        SupportEntry(
            "Conv",
            "ConvOperator",
            ValidationSpec(min_inputs=2, max_inputs=3),
        ),
        SupportEntry(
            "MaxPool",
            "MaxPoolOperator",
            ValidationSpec(min_inputs=1, max_inputs=1, max_outputs=2, required_attrs=["kernel_shape"]),
        ),
        SupportEntry(
            "AveragePool",
            "AvgPoolOperator",
            ValidationSpec(min_inputs=1, max_inputs=1, required_attrs=["kernel_shape"]),
        ),
        SupportEntry("Relu", "ReLUOperator", _UNARY),
        SupportEntry("Sigmoid", "SigmoidOperator", _UNARY),
        SupportEntry("Tanh", "TanhOperator", _UNARY),
        SupportEntry("Softmax", "SoftmaxOperator", _UNARY),
        SupportEntry("Reshape", "ReshapeOperator", _BINARY),
        SupportEntry("Flatten", "FlattenOperator", _UNARY),
        SupportEntry("Min", "MinOperator", ValidationSpec(min_inputs=1)),
        SupportEntry("Max", "MaxOperator", ValidationSpec(min_inputs=1)),
        SupportEntry("ArgMax", "ArgMaxOperator", _UNARY),
        SupportEntry("ArgMin", "ArgMinOperator", _UNARY),
        SupportEntry(
            "QuantizeLinear",
            "QuantizeOperator",
            ValidationSpec(min_inputs=2, max_inputs=3),
        ),
        SupportEntry(
            "DequantizeLinear",
            "DequantizeOperator",
            ValidationSpec(min_inputs=2, max_inputs=3),
        ),
    ]
}

_INLINE_OPS = {"Constant"}


def _validate_counts(node: OperatorIR, spec: ValidationSpec) -> None:
    input_count = len(node.inputs)
    output_count = len(node.outputs)
    if input_count < spec.min_inputs or (
        spec.max_inputs is not None and input_count > spec.max_inputs
    ):
        raise NodeSupportError(
            reason_code="unsupported_input_count",
            message=(
                f"{node.op_type} expects between {spec.min_inputs} and "
                f"{spec.max_inputs if spec.max_inputs is not None else 'any'} inputs, "
                f"got {input_count}"
            ),
            node_name=node.name,
            node_op=node.op_type,
        )
    if output_count < spec.min_outputs or (
        spec.max_outputs is not None and output_count > spec.max_outputs
    ):
        raise NodeSupportError(
            reason_code="unsupported_output_count",
            message=(
                f"{node.op_type} expects between {spec.min_outputs} and "
                f"{spec.max_outputs if spec.max_outputs is not None else 'any'} outputs, "
                f"got {output_count}"
            ),
            node_name=node.name,
            node_op=node.op_type,
        )


def _validate_attrs(node: OperatorIR, spec: ValidationSpec) -> None:
    for attr_name in spec.required_attrs:
        if attr_name not in node.attrs:
            raise NodeSupportError(
                reason_code="missing_required_attribute",
                message=f"{node.op_type} requires attribute '{attr_name}'",
                node_name=node.name,
                node_op=node.op_type,
            )


def _normalize_op_list(ops: Optional[Iterable[str]]) -> set:
    if ops is None:
        return set()
    if isinstance(ops, str):
        ops = [ops]
    return {str(op).strip() for op in ops if str(op).strip() != ""}


def get_support_entry(onnx_op: str) -> Optional[SupportEntry]:
    return _SUPPORT_REGISTRY.get(str(onnx_op))


def get_supported_onnx_ops() -> List[str]:
    return sorted(_SUPPORT_REGISTRY.keys())


def resolve_node_support(
    node: OperatorIR,
    extra_supported_ops: Optional[Iterable[str]] = None,
    force_stub_ops: Optional[Iterable[str]] = None,
) -> SupportResolution:
    if node.op_type in _normalize_op_list(force_stub_ops):
        raise NodeSupportError(
            reason_code="forced_stub",
            message=f"{node.op_type} was requested to be emitted as a stub",
            node_name=node.name,
            node_op=node.op_type,
        )
    if node.op_type in _normalize_op_list(extra_supported_ops):
        return SupportResolution(
            entry=SupportEntry(
                onnx_op=node.op_type,
                target_op=f"{node.op_type}Operator",
                validation=ValidationSpec(min_inputs=0, max_inputs=None, min_outputs=0, max_outputs=None),
            ),
            reason_code="extra_supported_op",
            message=f"{node.op_type} is declared supported by the caller",
        )
    if node.domain not in _DEFAULT_DOMAINS:
        raise NodeSupportError(
            reason_code="unsupported_domain",
            message=f"ONNX op domain is not supported: {node.domain}::{node.op_type}",
            node_name=node.name,
            node_op=node.op_type,
        )
    if node.op_type in _INLINE_OPS:
        return SupportResolution(
            entry=SupportEntry(
                onnx_op=node.op_type,
                target_op="",
                validation=ValidationSpec(),
            ),
            reason_code="handled_inline",
            message=f"{node.op_type} node is folded into the generated constants.",
        )
    entry = get_support_entry(node.op_type)
    if entry is None:
        raise NodeSupportError(
            reason_code="unsupported_onnx_op",
            message=f"ONNX op has no implementation on the target runtime: {node.op_type}",
            node_name=node.name,
            node_op=node.op_type,
        )
    _validate_counts(node, entry.validation)
    _validate_attrs(node, entry.validation)
    return SupportResolution(entry=entry)
