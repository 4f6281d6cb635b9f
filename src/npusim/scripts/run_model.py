#!/usr/bin/env python
"""
Compile and simulate a model description on the NPU model.

Usage:
    # Tiny 4x4 array, random input
    npusim examples/mlp.json --preset tiny

    # Custom hardware, given input, JSON report
    npusim model.json --config hw.json --input x.npy --output run.json

    # Per-layer CSV, low-power operating point, verify against the reference
    npusim model.json --low-power --output layers.csv --verify

    # Drive the run through the host command protocol
    npusim model.json --protocol
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import numpy as np

from npusim.core.errors import NPUError, ValidationError
from npusim.core.structures import CompiledModel, num_elements
from npusim.execution.reference import reference_forward
from npusim.frontends.description import description_to_json, parse_model_description
from npusim.hardware.config import (
    HardwareConfig,
    PowerMode,
    create_edge_npu_config,
    create_tiny_config,
)
from npusim.log import LogConfig, setup_logging
from npusim.protocol import Device, Opcode, ProtocolEngine, encode_packet
from npusim.reporting import ReportGenerator

PRESETS = {
    'tiny': create_tiny_config,
    'edge': create_edge_npu_config,
}


def build_config(args) -> HardwareConfig:
    if args.config:
        config = HardwareConfig.from_json(Path(args.config))
    else:
        config = PRESETS[args.preset]()
    if args.vectorized:
        config.cycle_accurate = False
    if args.no_sparsity:
        config.sparsity_enabled = False
    return config


def make_input(graph, args) -> np.ndarray:
    if args.input:
        x = np.load(args.input)
        if not np.issubdtype(x.dtype, np.integer):
            raise ValidationError(f"{args.input}: input must be an integer array, got {x.dtype}")
        if x.size and (x.min() < -128 or x.max() > 127):
            raise ValidationError(f"{args.input}: input values outside int8 range")
        if x.size != num_elements(graph.input_shape):
            raise ValidationError(
                f"{args.input}: {x.size} elements, model expects {graph.input_shape}"
            )
        return x.astype(np.int8).reshape(graph.input_shape)
    rng = np.random.default_rng(args.seed)
    return rng.integers(-128, 128, size=graph.input_shape, dtype=np.int8)


def run_direct(device: Device, model_id: int, description, x: np.ndarray):
    model: CompiledModel = device.load_model(model_id, description)
    result = device.simulator.run(model, x)
    return model, result.output, result.report


def run_protocol(device: Device, model_id: int, description, x: np.ndarray):
    engine = ProtocolEngine(device)
    payload = description_to_json(description).encode('utf-8')
    if len(payload) > 0xFFFF:
        device.register_model(model_id, description)
        payload = b''
    if device.power_mode == PowerMode.LOW_POWER:
        engine.handle(encode_packet(Opcode.POWER_CONTROL, 0, b'\x01'))
    engine.handle(encode_packet(Opcode.INITIALIZE, model_id, payload))

    data = x.tobytes()
    chunk = 0xFFFF
    for offset in range(0, len(data), chunk):
        engine.handle(encode_packet(Opcode.WRITE_INPUT, offset, data[offset:offset + chunk]))
    engine.handle(encode_packet(Opcode.EXECUTE))
    engine.wait()
    response = engine.handle(encode_packet(Opcode.READ_OUTPUT))

    output_shape = device.model.graph.primary_output.output_shape
    output = np.frombuffer(response.payload, dtype=np.int8).reshape(output_shape)
    return device.model, output, engine.last_report


def main():
    parser = argparse.ArgumentParser(
        description='Compile a quantized model description and simulate it on the NPU',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument('description', help='Model description JSON')
    parser.add_argument('--preset', choices=sorted(PRESETS), default='edge',
                        help='Hardware preset (default: edge)')
    parser.add_argument('--config', help='HardwareConfig JSON (overrides --preset)')
    parser.add_argument('--input', help='.npy int8 input (default: random)')
    parser.add_argument('--seed', type=int, default=0, help='Seed for random input')
    parser.add_argument('--model-id', type=int, default=1)
    parser.add_argument('--low-power', action='store_true', help='Low-power operating point')
    parser.add_argument('--vectorized', action='store_true',
                        help='Vectorized array arithmetic instead of the cycle loop')
    parser.add_argument('--no-sparsity', action='store_true', help='Disable zero-skip cost model')
    parser.add_argument('--protocol', action='store_true',
                        help='Drive the run through the host command protocol')
    parser.add_argument('--verify', action='store_true',
                        help='Compare the output with the reference computation')
    parser.add_argument('--output', '-o', help='Report file (.json, .csv or text)')
    parser.add_argument('--save-output', help='Write the output tensor to this .npy file')
    parser.add_argument('--log-dir', help='Also write a debug log here')
    parser.add_argument('--verbose', '-v', action='store_true')
    parser.add_argument('--quiet', '-q', action='store_true')
    args = parser.parse_args()

    setup_logging(LogConfig(
        output_dir=Path(args.log_dir) if args.log_dir else None,
        filename_prefix=Path(args.description).stem,
        console_level=logging.DEBUG if args.verbose else logging.WARNING,
    ))

    try:
        config = build_config(args)
        with open(args.description, 'r') as f:
            description = json.load(f)
        graph = parse_model_description(description)
        x = make_input(graph, args)

        device = Device(config)
        if args.low_power:
            device.set_power_mode(PowerMode.LOW_POWER)
        runner = run_protocol if args.protocol else run_direct
        model, output, report = runner(device, args.model_id, description, x)
    except (NPUError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    generator = ReportGenerator()
    if not args.quiet:
        print(generator.generate_text_report(report, model.schedule))

    if args.output:
        generator.save_report(report, args.output)
        if not args.quiet:
            print(f"\nReport saved to: {args.output}")

    if args.save_output:
        np.save(args.save_output, output)

    if args.verify:
        expected = reference_forward(graph, x)[graph.primary_output.layer_id]
        if not np.array_equal(expected, output):
            mismatches = int(np.count_nonzero(expected != output))
            print(f"Verification FAILED: {mismatches} mismatching elements", file=sys.stderr)
            return 1
        if not args.quiet:
            print("Verification passed: output matches reference bit-exactly")

    return 0


if __name__ == '__main__':
    sys.exit(main())
