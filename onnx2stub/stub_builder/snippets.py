from __future__ import annotations

import os
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Sequence

from jinja2 import Environment, FileSystemLoader

from onnx2stub.stub_builder.ir import ModelIR, OperatorIR

_TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
OP_MISSING_TEMPLATE_NAME = "op_missing.cpp"

_env = Environment(
    loader=FileSystemLoader(_TEMPLATE_DIR),
    trim_blocks=True,
    lstrip_blocks=True,
)
_env.globals.update(zip=zip)


class SnippetRenderError(ValueError):
    def __init__(
        self,
        *,
        reason_code: str,
        message: str,
        op_type: str,
    ) -> None:
        super().__init__(message)
        self.reason_code = str(reason_code)
        self.op_type = str(op_type)
        self.message = str(message)


def render_missing_op(
    op_type: str,
    input_tensors: Sequence[Any],
    output_tensors: Sequence[Any],
    out_var_names: Sequence[str],
    quant_params_map: Optional[Mapping[str, Any]] = None,
) -> str:
    """Render the FIXME comment block for an operator with no implementation.

    Parameters
    ----------
    op_type: str
        Operator type named in the FIXME line.

    input_tensors: Sequence
        Tensor descriptors with `name` and `dtype` (TensorIR or mappings).

    output_tensors: Sequence
        Tensor descriptors, paired positionally with out_var_names.

    out_var_names: Sequence[str]
        Variable name each output tensor must be bound to.

    quant_params_map: Optional[Mapping]
        Tensor name to quantization record. Tensors without an entry
        are rendered without a quantization block.

    Returns
    ----------
    snippet: str
        The rendered comment block.
    """
    input_tensors = list(input_tensors)
    output_tensors = list(output_tensors)
    out_var_names = [str(v) for v in out_var_names]
    if len(output_tensors) != len(out_var_names):
        raise SnippetRenderError(
            reason_code="out_var_names_length_mismatch",
            message=(
                f"{op_type}: {len(output_tensors)} output tensor(s) but "
                f"{len(out_var_names)} output variable name(s)"
            ),
            op_type=op_type,
        )
    template = _env.get_template(OP_MISSING_TEMPLATE_NAME)
    return template.render(
        op_type=op_type,
        input_tensors=input_tensors,
        output_tensors=output_tensors,
        out_var_names=out_var_names,
        quant_params_map=defaultdict(
            lambda: None,
            quant_params_map if quant_params_map is not None else {},
        ),
    )


def render_operator_stub(
    model_ir: ModelIR,
    op: OperatorIR,
    out_var_names_map: Mapping[str, str],
    quant_params_map: Optional[Mapping[str, Any]] = None,
) -> str:
    return render_missing_op(
        op_type=op.op_type,
        input_tensors=model_ir.input_tensors_of(op),
        output_tensors=model_ir.output_tensors_of(op),
        out_var_names=[out_var_names_map[name] for name in op.outputs],
        quant_params_map=quant_params_map,
    )


def render_missing_ops_source(
    model_ir: ModelIR,
    operators: List[OperatorIR],
    out_var_names_map: Mapping[str, str],
    quant_params_map: Optional[Mapping[str, Any]] = None,
    generator_version: str = "",
    header: bool = True,
) -> str:
    blocks: List[str] = []
    if header:
        blocks.append(
            "\n".join(
                [
                    "/*",
                    f" * Generated by onnx2stub {generator_version}".rstrip(),
                    f" * model: {model_ir.name}",
                    f" * {len(operators)} operator(s) need a hand-written implementation.",
                    " */",
                ]
            )
        )
    for op in operators:
        stub = render_operator_stub(
            model_ir=model_ir,
            op=op,
            out_var_names_map=out_var_names_map,
            quant_params_map=quant_params_map,
        )
        blocks.append(f"// {op.name} ({op.op_type})\n{stub}")
    return "\n\n".join(blocks) + "\n"


def render_stubs_by_node(
    model_ir: ModelIR,
    operators: List[OperatorIR],
    out_var_names_map: Mapping[str, str],
    quant_params_map: Optional[Mapping[str, Any]] = None,
) -> Dict[str, str]:
    return {
        op.name: render_operator_stub(
            model_ir=model_ir,
            op=op,
            out_var_names_map=out_var_names_map,
            quant_params_map=quant_params_map,
        )
        for op in operators
    }
