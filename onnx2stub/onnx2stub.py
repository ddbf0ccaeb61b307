#! /usr/bin/env python

import os
import sys
import onnx
from typing import Optional, List, Any, Dict
from argparse import ArgumentParser

from onnx2stub import __version__
from onnx2stub.stub_builder import build_missing_op_stubs
from onnx2stub.stub_builder.op_registry import _normalize_op_list
from onnx2stub.utils.op_stub_report import (
    build_op_stub_report,
    default_output_paths,
    write_report_csv,
    write_report_json,
)
from onnx2stub.utils.logging import *

def generate(
    input_onnx_file_path: Optional[str] = '',
    onnx_graph: Optional[onnx.ModelProto] = None,
    output_folder_path: Optional[str] = 'stub_output',
    extra_supported_ops: Optional[List[str]] = None,
    force_stub_ops: Optional[List[str]] = None,
    output_csv_report: Optional[bool] = False,
    disable_file_save: Optional[bool] = False,
    non_verbose: Optional[bool] = False,
    verbosity: Optional[str] = 'debug',
) -> Dict[str, Any]:
    """Generate placeholder C++ stubs for ONNX operators with no implementation.

    Parameters
    ----------
    input_onnx_file_path: Optional[str]
        Input onnx file path.\n
        Either input_onnx_file_path or onnx_graph must be specified.

    onnx_graph: Optional[onnx.ModelProto]
        onnx.ModelProto.\n
        Either input_onnx_file_path or onnx_graph must be specified.\n
        onnx_graph If specified, ignore input_onnx_file_path and process onnx_graph.

    output_folder_path: Optional[str]
        Output folder path. Default: "stub_output"

    extra_supported_ops: Optional[List[str]]
        ONNX op types to treat as implemented on the target runtime\n
        in addition to the built-in registry.\n
        e.g. ['Gelu', 'LayerNormalization']\n
        A single op type string is also accepted.

    force_stub_ops: Optional[List[str]]
        ONNX op types to always emit as stubs, even when the registry supports them.\n
        e.g. ['Conv']

    output_csv_report: Optional[bool]
        Also write the per-node report in CSV format.\n
        Default: False

    disable_file_save: Optional[bool]
        Does not write the generated source and reports. For CI.\n
        Default: False

    non_verbose: Optional[bool]
        Shorthand to specify a verbosity of "error".\n
        Default: False

    verbosity: Optional[str]
        Change the level of information printed.\n
        Values are "debug", "info", "warn", and "error".\n
        Default: "debug"

    Returns
    ----------
    result: Dict[str, Any]
        "source": generated C++ source text\n
        "stubs": node name to rendered stub\n
        "report": op stub report
    """

    if verbosity is None:
        verbosity = 'debug'
    set_log_level('error' if non_verbose else verbosity)

    # Either designation required
    if not input_onnx_file_path and onnx_graph is None:
        error(
            f'One of input_onnx_file_path or onnx_graph must be specified.'
        )
        sys.exit(1)

    # If output_folder_path is empty, set the initial value
    if not output_folder_path:
        output_folder_path = 'stub_output'

    # Input file existence check
    if onnx_graph is None and not os.path.exists(input_onnx_file_path):
        error(
            f'The specified *.onnx file does not exist. ' +
            f'input_onnx_file_path: {input_onnx_file_path}'
        )
        sys.exit(1)

    # An op cannot be both declared supported and forced to a stub
    extra_supported_ops = sorted(_normalize_op_list(extra_supported_ops))
    force_stub_ops = sorted(_normalize_op_list(force_stub_ops))
    overlapping_ops = set(extra_supported_ops) & set(force_stub_ops)
    if overlapping_ops:
        error(
            f'extra_supported_ops and force_stub_ops must not overlap. ' +
            f'overlapping ops: {sorted(overlapping_ops)}'
        )
        sys.exit(1)

    # Extracting onnx filenames
    if input_onnx_file_path and onnx_graph is None:
        output_file_name = os.path.splitext(
            os.path.basename(input_onnx_file_path)
        )[0]
    else:
        output_file_name = 'model'

    if onnx_graph is None:
        onnx_graph = onnx.load(input_onnx_file_path)

    info('')
    info(Color.REVERSE(f'Model loaded'), '=' * 72)
    info(
        Color.GREEN(f'INFO:'),
        f'nodes: {len(onnx_graph.graph.node)} ' +
        f'initializers: {len(onnx_graph.graph.initializer)}'
    )

    info('')
    info(Color.REVERSE(f'Stub generation started'), '=' * 60)
    built = build_missing_op_stubs(
        onnx_graph=onnx_graph,
        output_file_name=output_file_name,
        extra_supported_ops=extra_supported_ops,
        force_stub_ops=force_stub_ops,
        generator_version=__version__,
    )
    for node_report in built['node_reports']:
        if node_report['supported']:
            debug(
                Color.GREEN(f'INFO:'),
                f'{node_report["onnx_op"]}: {node_report["node_name"]} ' +
                f'-> {node_report["target_op"] or node_report["reason_code"]}'
            )
        else:
            warn(
                f'{node_report["onnx_op"]}: {node_report["node_name"]} ' +
                f'will be emitted as a stub. reason: {node_report["reason_code"]}'
            )

    # A "*/" inside a name ends the generated comment block early
    for op in built['unsupported_operators']:
        names = [op.op_type] + op.inputs + op.outputs + [
            built['out_var_names_map'][name] for name in op.outputs
        ]
        unsafe_names = [name for name in names if '*/' in name]
        if unsafe_names:
            warn(
                f'{op.op_type}: {op.name} has names containing "*/" ' +
                f'that close the stub comment early. names: {unsafe_names}'
            )

    report = build_op_stub_report(
        model_ir=built['model_ir'],
        node_reports=built['node_reports'],
        quant_params_map=built['quant_params_map'],
        generator_version=__version__,
    )
    summary = report['graph_summary']
    info(
        Color.GREEN(f'INFO:'),
        f'supported: {summary["supported_nodes"]} ' +
        f'unsupported: {summary["unsupported_nodes"]} ' +
        f'quantized tensors: {summary["quantized_tensors"]}'
    )

    if not disable_file_save:
        json_path, csv_path, cpp_path = default_output_paths(
            output_file_name,
            output_folder_path,
        )
        os.makedirs(output_folder_path, exist_ok=True)
        with open(cpp_path, 'w', encoding='utf-8') as f:
            f.write(built['source'])
        info(Color.GREEN(f'Stub source output complete!'), cpp_path)
        write_report_json(
            report=report,
            output_report_path=json_path,
        )
        info(Color.GREEN(f'Op stub report output complete!'), json_path)
        if output_csv_report:
            write_report_csv(
                node_reports=built['node_reports'],
                output_csv_path=csv_path,
            )
            info(Color.GREEN(f'Op stub report (CSV) output complete!'), csv_path)

    if summary['unsupported_nodes'] == 0:
        info(Color.GREEN(f'All operators are supported. No stubs were generated.'))

    return {
        'source': built['source'],
        'stubs': built['stubs'],
        'report': report,
    }


def main():
    parser = ArgumentParser()
    iV_group = parser.add_mutually_exclusive_group(required=True)
    iV_group.add_argument(
        '-i',
        '--input_onnx_file_path',
        type=str,
        help='Input onnx file path.'
    )
    iV_group.add_argument(
        '-V',
        '--version',
        action='store_true',
        help='Show version and exit.'
    )
    parser.add_argument(
        '-o',
        '--output_folder_path',
        type=str,
        help=\
            'Output folder path. \n' +
            'Default: "stub_output"'
    )
    parser.add_argument(
        '-eso',
        '--extra_supported_ops',
        type=str,
        nargs='+',
        help=\
            'ONNX op types to treat as implemented on the target runtime \n' +
            'in addition to the built-in registry. \n' +
            'e.g. -eso Gelu LayerNormalization'
    )
    parser.add_argument(
        '-fso',
        '--force_stub_ops',
        type=str,
        nargs='+',
        help=\
            'ONNX op types to always emit as stubs. \n' +
            'e.g. -fso Conv'
    )
    parser.add_argument(
        '-ocsv',
        '--output_csv_report',
        action='store_true',
        help=\
            'Also write the per-node report in CSV format.'
    )
    parser.add_argument(
        '-dfs',
        '--disable_file_save',
        action='store_true',
        help=\
            'Does not write the generated source and reports.'
    )
    verbosity_group = parser.add_mutually_exclusive_group()
    verbosity_group.add_argument(
        '-n',
        '--non_verbose',
        action='store_true',
        help=\
            'Shorthand to specify a verbosity of "error".'
    )
    verbosity_group.add_argument(
        '-v',
        '--verbosity',
        type=str,
        choices=['debug', 'info', 'warn', 'error'],
        default='debug',
        help=\
            'Change the level of information printed. \n' +
            'Default: "debug"'
    )
    args = parser.parse_args()

    # Print version
    if args.version:
        print(__version__)
        sys.exit(0)

    # Generate
    generate(
        input_onnx_file_path=args.input_onnx_file_path,
        output_folder_path=args.output_folder_path,
        extra_supported_ops=args.extra_supported_ops,
        force_stub_ops=args.force_stub_ops,
        output_csv_report=args.output_csv_report,
        disable_file_save=args.disable_file_save,
        non_verbose=args.non_verbose,
        verbosity=args.verbosity,
    )


if __name__ == '__main__':
    main()
