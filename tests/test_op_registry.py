import pytest

from onnx2stub.stub_builder.ir import OperatorIR
from onnx2stub.stub_builder.op_registry import (
    NodeSupportError,
    get_support_entry,
    get_supported_onnx_ops,
    resolve_node_support,
)


def _op(op_type: str, inputs=None, outputs=None, domain: str = "", attrs=None) -> OperatorIR:
    return OperatorIR(
        name=f"{op_type}Node",
        op_type=op_type,
        inputs=list(inputs) if inputs is not None else ["x"],
        outputs=list(outputs) if outputs is not None else ["y"],
        domain=domain,
        attrs=dict(attrs) if attrs is not None else {},
    )


def _reason_code(node: OperatorIR, **kwargs) -> str:
    with pytest.raises(NodeSupportError) as ex:
        resolve_node_support(node, **kwargs)
    return ex.value.reason_code


def test_supported_ops_registry_is_sorted_and_resolvable() -> None:
    ops = get_supported_onnx_ops()
    assert ops == sorted(ops)
    assert "Add" in ops
    assert get_support_entry("Add").target_op == "AddOperator"
    assert get_support_entry("Erf") is None


def test_resolve_node_support_builtin() -> None:
    resolution = resolve_node_support(_op("Add", inputs=["a", "b"]))
    assert resolution.entry.target_op == "AddOperator"
    assert resolution.reason_code is None


def test_resolve_node_support_unsupported_op() -> None:
    assert _reason_code(_op("Erf")) == "unsupported_onnx_op"


def test_resolve_node_support_input_and_output_counts() -> None:
    assert _reason_code(_op("Add", inputs=["a", "b", "c"])) == "unsupported_input_count"
    assert _reason_code(_op("Relu", outputs=["y", "y2"])) == "unsupported_output_count"


def test_resolve_node_support_required_attribute() -> None:
    assert _reason_code(_op("MaxPool")) == "missing_required_attribute"
    resolution = resolve_node_support(_op("MaxPool", attrs={"kernel_shape": [2, 2]}))
    assert resolution.entry.target_op == "MaxPoolOperator"


def test_resolve_node_support_custom_domain() -> None:
    assert _reason_code(_op("FusedMatMul", inputs=["a", "b"], domain="com.microsoft")) == "unsupported_domain"


def test_resolve_node_support_constant_is_inline() -> None:
    resolution = resolve_node_support(_op("Constant", inputs=[]))
    assert resolution.reason_code == "handled_inline"


def test_resolve_node_support_caller_overrides() -> None:
    resolution = resolve_node_support(_op("Erf"), extra_supported_ops=["Erf"])
    assert resolution.reason_code == "extra_supported_op"
    assert resolution.entry.target_op == "ErfOperator"

    assert _reason_code(_op("Relu"), force_stub_ops=["Relu"]) == "forced_stub"
    assert _reason_code(_op("Relu"), force_stub_ops="Relu") == "forced_stub"


def test_node_support_error_to_dict() -> None:
    with pytest.raises(NodeSupportError) as ex:
        resolve_node_support(_op("Erf"))
    assert ex.value.to_dict() == {
        "node_name": "ErfNode",
        "onnx_op": "Erf",
        "reason_code": "unsupported_onnx_op",
        "message": "ONNX op has no implementation on the target runtime: Erf",
    }
