#!/usr/bin/env python
"""
Host protocol: packet framing and the command state machine.
"""

import json

import numpy as np
import pytest

from npusim.core.errors import HardwareFault, ProtocolError, SequenceError, ValidationError
from npusim.execution import reference_forward
from npusim.frontends import description_to_json, parse_model_description
from npusim.hardware import PowerMode
from npusim.protocol import (
    HEADER_BYTES,
    Device,
    EngineState,
    Opcode,
    ProtocolEngine,
    decode_packet,
    encode_packet,
)

from conftest import random_input


@pytest.fixture
def engine(tiny_config):
    return ProtocolEngine(Device(tiny_config))


def initialize(engine, description, model_id=1):
    payload = description_to_json(description).encode('utf-8')
    return engine.handle(encode_packet(Opcode.INITIALIZE, model_id, payload))


def execute(engine, x):
    engine.handle(encode_packet(Opcode.WRITE_INPUT, 0, x.tobytes()))
    engine.handle(encode_packet(Opcode.EXECUTE))
    assert engine.wait(timeout=30)


class TestFraming:
    def test_header_layout(self):
        packet = encode_packet(Opcode.WRITE_INPUT, 0x01020304, b'\xAA\xBB')
        assert packet == b'\x02\x01\x02\x03\x04\x00\x02\xAA\xBB'
        command = decode_packet(packet)
        assert command.opcode == Opcode.WRITE_INPUT
        assert command.address == 0x01020304
        assert command.payload == b'\xAA\xBB'
        assert HEADER_BYTES == 7

    def test_length_mismatch_rejected(self, engine):
        # Declares 10 payload bytes, carries 8
        packet = bytes([Opcode.WRITE_INPUT]) + (0).to_bytes(4, 'big') + (10).to_bytes(2, 'big') + bytes(8)
        with pytest.raises(ProtocolError, match="length"):
            engine.handle(packet)
        assert engine.state == EngineState.IDLE

    def test_short_header(self):
        with pytest.raises(ProtocolError):
            decode_packet(b'\x01\x00\x00')

    def test_unknown_opcode(self, engine):
        with pytest.raises(ProtocolError):
            engine.handle(b'\x09' + bytes(6))
        assert engine.state == EngineState.IDLE


class TestSequencing:
    def test_execute_before_initialize(self, engine):
        with pytest.raises(SequenceError) as exc_info:
            engine.handle(encode_packet(Opcode.EXECUTE))
        assert exc_info.value.command == 'EXECUTE'
        assert engine.state == EngineState.IDLE

    @pytest.mark.parametrize("opcode", [Opcode.WRITE_INPUT, Opcode.READ_OUTPUT, Opcode.CANCEL])
    def test_rejected_in_idle(self, engine, opcode):
        with pytest.raises(SequenceError):
            engine.handle(encode_packet(opcode))
        assert engine.state == EngineState.IDLE

    def test_end_to_end(self, engine, mlp, rng):
        """Initialize -> WriteInput -> Execute -> ReadOutput."""
        response = initialize(engine, mlp)
        assert response.state == 'loaded'

        x = random_input(rng, (4, 8))
        execute(engine, x)
        assert engine.state == EngineState.LOADED
        assert engine.output_ready

        response = engine.handle(encode_packet(Opcode.READ_OUTPUT))
        output = np.frombuffer(response.payload, dtype=np.int8).reshape(4, 4)
        expected = reference_forward(parse_model_description(mlp), x)[1]
        np.testing.assert_array_equal(output, expected)
        assert response.report['total_cycles'] > 0
        assert engine.state == EngineState.LOADED

        # The right to read is consumed
        with pytest.raises(SequenceError):
            engine.handle(encode_packet(Opcode.READ_OUTPUT))

    def test_write_input_invalidates_output(self, engine, mlp, rng):
        initialize(engine, mlp)
        execute(engine, random_input(rng, (4, 8)))
        engine.handle(encode_packet(Opcode.WRITE_INPUT, 0, b'\x01'))
        with pytest.raises(SequenceError):
            engine.handle(encode_packet(Opcode.READ_OUTPUT))

    def test_partial_writes_and_output_offset(self, engine, mlp, rng):
        initialize(engine, mlp)
        x = random_input(rng, (4, 8))
        data = x.tobytes()
        engine.handle(encode_packet(Opcode.WRITE_INPUT, 0, data[:16]))
        engine.handle(encode_packet(Opcode.WRITE_INPUT, 16, data[16:]))
        engine.handle(encode_packet(Opcode.EXECUTE))
        engine.wait(timeout=30)

        response = engine.handle(encode_packet(Opcode.READ_OUTPUT, 8))
        expected = reference_forward(parse_model_description(mlp), x)[1]
        assert response.payload == expected.tobytes()[8:]

    def test_write_outside_input_buffer(self, engine, mlp):
        initialize(engine, mlp)
        with pytest.raises(ProtocolError):
            engine.handle(encode_packet(Opcode.WRITE_INPUT, 30, b'\x00' * 4))
        assert engine.state == EngineState.LOADED

    def test_reinitialize_requires_reset(self, engine, mlp):
        initialize(engine, mlp)
        with pytest.raises(SequenceError):
            initialize(engine, mlp)
        engine.handle(encode_packet(Opcode.RESET))
        assert engine.state == EngineState.IDLE
        assert engine.device.model is None
        initialize(engine, mlp)
        assert engine.state == EngineState.LOADED


class TestInitialize:
    def test_registered_description(self, engine, mlp):
        engine.device.register_model(5, mlp)
        engine.handle(encode_packet(Opcode.INITIALIZE, 5))
        assert engine.state == EngineState.LOADED
        assert engine.device.model.model_id == 5

    def test_unknown_model_id(self, engine):
        with pytest.raises(ValidationError):
            engine.handle(encode_packet(Opcode.INITIALIZE, 42))
        assert engine.state == EngineState.IDLE

    def test_bad_json(self, engine):
        with pytest.raises(ProtocolError):
            engine.handle(encode_packet(Opcode.INITIALIZE, 1, b'{not json'))
        assert engine.state == EngineState.IDLE

    def test_invalid_graph_returns_to_idle(self, engine, mlp):
        mlp['layers'][1]['input_shape'] = [4, 9]
        with pytest.raises(ValidationError):
            initialize(engine, mlp)
        assert engine.state == EngineState.IDLE

    @pytest.mark.parametrize("description", [
        {'input': {'shape': [2, 8], 'scale': 0.1}, 'layers': [5]},
        {'input': [2, 8], 'layers': []},
        {'input': {'shape': [2, 8], 'scale': 0.1},
         'layers': [{'name': 'fc', 'op_kind': 'matmul', 'input_shape': [2, 8],
                     'output_shape': [2, 2], 'weight': {'data': [[1, 2], [3]], 'scale': 0.1}}]},
    ])
    def test_malformed_json_description(self, engine, description):
        payload = json.dumps(description).encode('utf-8')
        with pytest.raises(ValidationError):
            engine.handle(encode_packet(Opcode.INITIALIZE, 1, payload))
        assert engine.state == EngineState.IDLE
        assert engine.device.model is None

    def test_schedule_cache_reused(self, engine, mlp):
        initialize(engine, mlp)
        engine.handle(encode_packet(Opcode.RESET))
        initialize(engine, mlp)
        cache = engine.device.schedule_cache
        assert (cache.hits, cache.misses) == (1, 1)


class TestCancel:
    def test_cancel_returns_to_loaded(self, engine, mlp, rng):
        initialize(engine, mlp)
        engine.handle(encode_packet(Opcode.WRITE_INPUT, 0, random_input(rng, (4, 8)).tobytes()))

        def hook(index, step):
            if index == 5:
                engine.request_cancel()

        engine.device.simulator.step_hook = hook
        engine.handle(encode_packet(Opcode.EXECUTE))
        assert engine.wait(timeout=30)

        assert engine.state == EngineState.LOADED
        assert not engine.output_ready
        assert engine.device.hierarchy.activation_dma.pending(10 ** 6) == []
        with pytest.raises(SequenceError):
            engine.handle(encode_packet(Opcode.READ_OUTPUT))

        engine.device.simulator.step_hook = None
        engine.handle(encode_packet(Opcode.EXECUTE))
        engine.wait(timeout=30)
        assert engine.output_ready

    def test_cancel_outside_execute(self, engine, mlp):
        initialize(engine, mlp)
        with pytest.raises(SequenceError):
            engine.cancel()
        with pytest.raises(SequenceError):
            engine.handle(encode_packet(Opcode.CANCEL))


class TestHardwareFault:
    def test_persistent_stall_unloads_model(self, engine, mlp, rng):
        initialize(engine, mlp)
        engine.device.hierarchy.inject_activation_delay((0, 1), 10000)
        engine.handle(encode_packet(Opcode.WRITE_INPUT, 0, random_input(rng, (4, 8)).tobytes()))
        engine.handle(encode_packet(Opcode.EXECUTE))

        with pytest.raises(HardwareFault):
            engine.wait(timeout=30)
        assert engine.state == EngineState.IDLE
        assert engine.device.model is None

        # Recovers with a fresh Initialize
        initialize(engine, mlp)
        execute(engine, random_input(rng, (4, 8)))
        assert engine.output_ready

    def start_failing_run(self, engine, mlp, rng):
        initialize(engine, mlp)
        engine.device.hierarchy.inject_activation_delay((0, 1), 10000)
        engine.handle(encode_packet(Opcode.WRITE_INPUT, 0, random_input(rng, (4, 8)).tobytes()))
        engine.handle(encode_packet(Opcode.EXECUTE))
        # let the run finish without reaping it
        engine._thread.join(timeout=30)
        assert engine.state == EngineState.EXECUTING

    def test_reset_completes_and_reports_fault(self, engine, mlp, rng):
        engine.handle(encode_packet(Opcode.POWER_CONTROL, 0, b'\x01'))
        self.start_failing_run(engine, mlp, rng)

        response = engine.handle(encode_packet(Opcode.RESET))
        assert response.opcode == Opcode.RESET
        assert response.state == 'idle'
        assert "HardwareFault" in response.fault
        assert engine.state == EngineState.IDLE
        assert engine.device.model is None
        assert engine.device.power_mode == PowerMode.NOMINAL

    def test_clean_reset_has_no_fault(self, engine, mlp):
        initialize(engine, mlp)
        assert engine.handle(encode_packet(Opcode.RESET)).fault is None

    def test_malformed_packet_leaves_fault_pending(self, engine, mlp, rng):
        self.start_failing_run(engine, mlp, rng)
        with pytest.raises(ProtocolError):
            engine.handle(b'\x06\x00')
        assert engine.state == EngineState.EXECUTING
        with pytest.raises(HardwareFault):
            engine.poll()
        assert engine.state == EngineState.IDLE


class TestPowerControl:
    def test_low_power_in_idle(self, engine, mlp, rng):
        response = engine.handle(encode_packet(Opcode.POWER_CONTROL, 0, b'\x01'))
        assert response.state == 'idle'
        assert engine.device.power_mode == PowerMode.LOW_POWER

        initialize(engine, mlp)
        execute(engine, random_input(rng, (4, 8)))
        report = engine.handle(encode_packet(Opcode.READ_OUTPUT)).report
        assert report['power_mode'] == 'low_power'
        assert report['clock_hz'] == engine.device.config.low_power_clock_hz

    def test_not_allowed_when_loaded(self, engine, mlp):
        initialize(engine, mlp)
        with pytest.raises(SequenceError):
            engine.handle(encode_packet(Opcode.POWER_CONTROL, 0, b'\x01'))
        assert engine.device.power_mode == PowerMode.NOMINAL

    @pytest.mark.parametrize("payload", [b'', b'\x02', b'\x00\x01'])
    def test_bad_payload(self, engine, payload):
        with pytest.raises(ProtocolError):
            engine.handle(encode_packet(Opcode.POWER_CONTROL, 0, payload))
        assert engine.state == EngineState.IDLE

    def test_reset_restores_nominal(self, engine):
        engine.handle(encode_packet(Opcode.POWER_CONTROL, 0, b'\x01'))
        engine.handle(encode_packet(Opcode.RESET))
        assert engine.device.power_mode == PowerMode.NOMINAL
