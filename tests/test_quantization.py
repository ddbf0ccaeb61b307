import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper, numpy_helper

from onnx2stub.stub_builder.ir import get_constant_map
from onnx2stub.stub_builder.quantization import (
    build_quant_params_map,
    normalize_scale_zero,
)


def _make_qdq_model() -> onnx.ModelProto:
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 4])
    z = helper.make_tensor_value_info("z", TensorProto.FLOAT, [4])
    scale = numpy_helper.from_array(np.array(0.5, dtype=np.float32), name="s")
    zero_point = numpy_helper.from_array(np.array(128, dtype=np.uint8), name="zp")
    shape = numpy_helper.from_array(np.array([4], dtype=np.int64), name="shape")
    nodes = [
        helper.make_node("QuantizeLinear", ["x", "s", "zp"], ["xq"], name="Q"),
        helper.make_node("DequantizeLinear", ["xq", "s", "zp"], ["y"], name="DQ"),
        helper.make_node("Reshape", ["y", "shape"], ["z"], name="ReshapeNode"),
    ]
    graph = helper.make_graph(
        nodes,
        "qdq_graph",
        [x],
        [z],
        initializer=[scale, zero_point, shape],
    )
    return helper.make_model(graph, opset_imports=[helper.make_operatorsetid("", 13)])


def _make_per_axis_weight_model() -> onnx.ModelProto:
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, [3, 2])
    w = numpy_helper.from_array(
        np.array([[1, -1], [2, -2], [3, -3]], dtype=np.int8),
        name="w",
    )
    scale = numpy_helper.from_array(
        np.array([0.5, 0.25, 0.125], dtype=np.float32),
        name="w_scale",
    )
    zero_point = numpy_helper.from_array(np.zeros((3,), dtype=np.int8), name="w_zp")
    node = helper.make_node(
        "DequantizeLinear",
        ["w", "w_scale", "w_zp"],
        ["y"],
        name="WeightDQ",
        axis=0,
    )
    graph = helper.make_graph(
        [node],
        "per_axis_graph",
        [],
        [y],
        initializer=[w, scale, zero_point],
    )
    return helper.make_model(graph, opset_imports=[helper.make_operatorsetid("", 13)])


def _make_qlinear_matmul_model() -> onnx.ModelProto:
    a = helper.make_tensor_value_info("a", TensorProto.UINT8, [1, 2])
    b = helper.make_tensor_value_info("b", TensorProto.UINT8, [2, 2])
    y = helper.make_tensor_value_info("y", TensorProto.UINT8, [1, 2])
    initializers = [
        numpy_helper.from_array(np.array(0.1, dtype=np.float32), name="a_scale"),
        numpy_helper.from_array(np.array(10, dtype=np.uint8), name="a_zp"),
        numpy_helper.from_array(np.array(0.2, dtype=np.float32), name="b_scale"),
        numpy_helper.from_array(np.array(20, dtype=np.uint8), name="b_zp"),
        numpy_helper.from_array(np.array(0.25, dtype=np.float32), name="y_scale"),
        numpy_helper.from_array(np.array(30, dtype=np.uint8), name="y_zp"),
    ]
    node = helper.make_node(
        "QLinearMatMul",
        ["a", "a_scale", "a_zp", "b", "b_scale", "b_zp", "y_scale", "y_zp"],
        ["y"],
        name="QMatMul",
    )
    graph = helper.make_graph(
        [node],
        "qlinear_matmul_graph",
        [a, b],
        [y],
        initializer=initializers,
    )
    return helper.make_model(graph, opset_imports=[helper.make_operatorsetid("", 13)])


def test_quant_params_map_qdq_per_tensor() -> None:
    quant_map = build_quant_params_map(_make_qdq_model())

    assert "x" not in quant_map
    for tensor_name in ["xq", "y"]:
        param = quant_map[tensor_name]
        assert param.is_per_tensor is True
        assert param.axis is None
        assert param.zero_point.value == 128
        assert param.zero_point.type_str == "uint8_t"
        assert param.scale.value == pytest.approx(0.5)
        assert param.scale.type_str == "float"


def test_quant_params_map_propagates_through_reshape() -> None:
    quant_map = build_quant_params_map(_make_qdq_model())

    assert quant_map["z"].to_dict() == quant_map["y"].to_dict()


def test_quant_params_map_per_axis_weights() -> None:
    quant_map = build_quant_params_map(_make_per_axis_weight_model())

    for tensor_name in ["w", "y"]:
        param = quant_map[tensor_name]
        assert param.is_per_tensor is False
        assert param.axis == 0
        assert param.zero_point.value == [0, 0, 0]
        assert param.zero_point.type_str == "int8_t"
        assert param.scale.value == pytest.approx([0.5, 0.25, 0.125])


def test_quant_params_map_qlinear_matmul() -> None:
    quant_map = build_quant_params_map(_make_qlinear_matmul_model())

    assert quant_map["a"].zero_point.value == 10
    assert quant_map["b"].zero_point.value == 20
    assert quant_map["y"].zero_point.value == 30
    assert quant_map["y"].scale.value == pytest.approx(0.25)


def test_quant_params_map_ignores_non_constant_scale() -> None:
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 4])
    s = helper.make_tensor_value_info("s", TensorProto.FLOAT, [])
    xq = helper.make_tensor_value_info("xq", TensorProto.UINT8, [1, 4])
    node = helper.make_node("QuantizeLinear", ["x", "s"], ["xq"], name="Q")
    graph = helper.make_graph([node], "dynamic_scale_graph", [x, s], [xq])
    model = helper.make_model(graph, opset_imports=[helper.make_operatorsetid("", 13)])

    assert build_quant_params_map(model) == {}


def test_quant_params_map_default_zero_point_is_uint8() -> None:
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 4])
    xq = helper.make_tensor_value_info("xq", TensorProto.UINT8, [1, 4])
    scale = numpy_helper.from_array(np.array(0.5, dtype=np.float32), name="s")
    node = helper.make_node("QuantizeLinear", ["x", "s"], ["xq"], name="Q")
    graph = helper.make_graph([node], "no_zp_graph", [x], [xq], initializer=[scale])
    model = helper.make_model(graph, opset_imports=[helper.make_operatorsetid("", 13)])

    param = build_quant_params_map(model)["xq"]
    assert param.zero_point.value == 0
    assert param.zero_point.type_str == "uint8_t"


def test_normalize_scale_zero_broadcast_and_mismatch() -> None:
    scales, zeros = normalize_scale_zero(
        scale_array=np.array([0.5, 0.25], dtype=np.float32),
        zero_point_array=np.array(3, dtype=np.int8),
    )
    assert zeros.tolist() == [3, 3]
    assert zeros.dtype == np.int8
    assert scales.tolist() == [0.5, 0.25]

    assert normalize_scale_zero(
        scale_array=np.array([0.5, 0.25], dtype=np.float32),
        zero_point_array=np.array([1, 2, 3], dtype=np.int8),
    ) is None
    assert normalize_scale_zero(scale_array=None, zero_point_array=None) is None


def _make_graph_model(nodes, initializers, name) -> onnx.ModelProto:
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, None)
    graph = helper.make_graph(nodes, name, [], [y], initializer=initializers)
    return helper.make_model(graph, opset_imports=[helper.make_operatorsetid("", 13)])


def _scale_zero(prefix: str, scale: float, zero_point: int):
    return [
        numpy_helper.from_array(np.array(scale, dtype=np.float32), name=f"{prefix}_scale"),
        numpy_helper.from_array(np.array(zero_point, dtype=np.uint8), name=f"{prefix}_zp"),
    ]


def _per_axis_weight_initializers():
    return [
        numpy_helper.from_array(
            np.array([[1, -1], [2, -2], [3, -3]], dtype=np.int8),
            name="w",
        ),
        numpy_helper.from_array(
            np.array([0.5, 0.25, 0.125], dtype=np.float32),
            name="w_scale",
        ),
        numpy_helper.from_array(np.zeros((3,), dtype=np.int8), name="w_zp"),
    ]


def test_quant_params_map_keeps_explicit_record_after_reshape() -> None:
    initializers = (
        _scale_zero("q", 0.5, 10)
        + _scale_zero("dq", 0.25, 20)
        + [numpy_helper.from_array(np.array([4], dtype=np.int64), name="shape")]
    )
    nodes = [
        helper.make_node("QuantizeLinear", ["x", "q_scale", "q_zp"], ["xq"], name="Q"),
        helper.make_node("Reshape", ["xq", "shape"], ["r"], name="ReshapeNode"),
        helper.make_node("DequantizeLinear", ["r", "dq_scale", "dq_zp"], ["y"], name="DQ"),
    ]
    quant_map = build_quant_params_map(
        _make_graph_model(nodes, initializers, "requantized_reshape_graph")
    )

    assert quant_map["xq"].zero_point.value == 10
    assert quant_map["r"].zero_point.value == 20
    assert quant_map["r"].scale.value == pytest.approx(0.25)
    assert quant_map["y"].zero_point.value == 20


@pytest.mark.parametrize("perm_as_input", [False, True])
def test_quant_params_map_per_axis_remapped_through_transpose(perm_as_input) -> None:
    initializers = _per_axis_weight_initializers()
    if perm_as_input:
        initializers.append(
            numpy_helper.from_array(np.array([1, 0], dtype=np.int64), name="perm")
        )
        transpose = helper.make_node("Transpose", ["wf", "perm"], ["y"], name="T")
    else:
        transpose = helper.make_node("Transpose", ["wf"], ["y"], name="T", perm=[1, 0])
    nodes = [
        helper.make_node(
            "DequantizeLinear",
            ["w", "w_scale", "w_zp"],
            ["wf"],
            name="WeightDQ",
            axis=0,
        ),
        transpose,
    ]
    quant_map = build_quant_params_map(
        _make_graph_model(nodes, initializers, "per_axis_transpose_graph")
    )

    assert quant_map["wf"].axis == 0
    assert quant_map["y"].is_per_tensor is False
    assert quant_map["y"].axis == 1
    assert quant_map["y"].scale.value == pytest.approx([0.5, 0.25, 0.125])


def test_quant_params_map_per_axis_stops_at_layout_changing_op() -> None:
    initializers = _per_axis_weight_initializers() + [
        numpy_helper.from_array(np.array([6], dtype=np.int64), name="shape")
    ]
    nodes = [
        helper.make_node(
            "DequantizeLinear",
            ["w", "w_scale", "w_zp"],
            ["wf"],
            name="WeightDQ",
            axis=0,
        ),
        helper.make_node("Reshape", ["wf", "shape"], ["y"], name="ReshapeNode"),
    ]
    quant_map = build_quant_params_map(
        _make_graph_model(nodes, initializers, "per_axis_reshape_graph")
    )

    assert quant_map["wf"].is_per_tensor is False
    assert "y" not in quant_map


def test_quant_params_map_qlinear_concat_triplets() -> None:
    initializers = (
        _scale_zero("y", 0.5, 5)
        + _scale_zero("a", 0.1, 1)
        + _scale_zero("b", 0.2, 2)
    )
    node = helper.make_node(
        "QLinearConcat",
        ["y_scale", "y_zp", "a", "a_scale", "a_zp", "b", "b_scale", "b_zp"],
        ["y"],
        name="QConcat",
        domain="com.microsoft",
        axis=1,
    )
    quant_map = build_quant_params_map(
        _make_graph_model([node], initializers, "qlinear_concat_graph")
    )

    assert quant_map["y"].zero_point.value == 5
    assert quant_map["y"].scale.value == pytest.approx(0.5)
    assert quant_map["a"].zero_point.value == 1
    assert quant_map["a"].scale.value == pytest.approx(0.1)
    assert quant_map["b"].zero_point.value == 2
    assert quant_map["b"].scale.value == pytest.approx(0.2)


def test_quant_params_map_qlinear_unary_op() -> None:
    initializers = _scale_zero("x", 0.1, 3) + _scale_zero("y", 1.0 / 256.0, 0)
    node = helper.make_node(
        "QLinearSigmoid",
        ["x", "x_scale", "x_zp", "y_scale", "y_zp"],
        ["y"],
        name="QSigmoid",
        domain="com.microsoft",
    )
    quant_map = build_quant_params_map(
        _make_graph_model([node], initializers, "qlinear_sigmoid_graph")
    )

    assert quant_map["x"].zero_point.value == 3
    assert quant_map["x"].scale.value == pytest.approx(0.1)
    assert quant_map["y"].zero_point.value == 0
    assert quant_map["y"].scale.value == pytest.approx(1.0 / 256.0)


def test_quant_params_map_generic_qlinear_fallback() -> None:
    # x, x_scale, x_zp, ..., y_scale, y_zp
    initializers = _scale_zero("x", 0.3, 7) + _scale_zero("y", 0.6, 9)
    node = helper.make_node(
        "QLinearReduceMean",
        ["x", "x_scale", "x_zp", "y_scale", "y_zp"],
        ["y"],
        name="QReduceMean",
        domain="com.microsoft",
    )
    quant_map = build_quant_params_map(
        _make_graph_model([node], initializers, "qlinear_generic_graph")
    )

    assert quant_map["x"].zero_point.value == 7
    assert quant_map["x"].scale.value == pytest.approx(0.3)
    assert quant_map["y"].zero_point.value == 9
    assert quant_map["y"].scale.value == pytest.approx(0.6)


def test_quant_params_map_scale_from_constant_node() -> None:
    nodes = [
        helper.make_node(
            "Constant",
            [],
            ["s"],
            name="ScaleConst",
            value=numpy_helper.from_array(np.array(0.125, dtype=np.float32)),
        ),
        helper.make_node(
            "Constant",
            [],
            ["zp"],
            name="ZeroPointConst",
            value=numpy_helper.from_array(np.array(-4, dtype=np.int8)),
        ),
        helper.make_node("QuantizeLinear", ["x", "s", "zp"], ["y"], name="Q"),
    ]
    quant_map = build_quant_params_map(_make_graph_model(nodes, [], "constant_node_graph"))

    assert quant_map["y"].zero_point.value == -4
    assert quant_map["y"].zero_point.type_str == "int8_t"
    assert quant_map["y"].scale.value == pytest.approx(0.125)


def test_quant_params_map_uses_given_constant_map() -> None:
    model = _make_qdq_model()
    constant_map = get_constant_map(model)

    assert build_quant_params_map(model, constant_map=constant_map) == build_quant_params_map(model)

    constant_map["s"] = np.array(0.75, dtype=np.float32)
    quant_map = build_quant_params_map(model, constant_map=constant_map)
    assert quant_map["y"].scale.value == pytest.approx(0.75)
