"""
Host Protocol Engine

Finite-state machine that sequences host commands against one Device.

States and permitted commands:

    IDLE              Initialize, PowerControl, Reset
    INITIALIZING      Reset                      (transient, while compiling)
    LOADED            WriteInput, Execute, ReadOutput*, Reset
    EXECUTING         Cancel, Reset
    READING_OUTPUT    Reset                      (transient)
    POWER_TRANSITION  Reset                      (transient)

    * ReadOutput only immediately after a completed Execute. Any other accepted
      command, or a first ReadOutput, consumes that right.

A command outside its state's set raises SequenceError and changes nothing.
A malformed packet raises ProtocolError and changes nothing.

Execute is asynchronous: the simulator runs on a background thread and the
engine sits in EXECUTING until poll()/wait() reaps the result. cancel() stops
the run at the next step boundary, flushes in-flight transfers and returns to
LOADED. A HardwareFault unloads the model, drops to IDLE and is re-raised from
the poll()/wait()/handle() call that reaps it, except a Reset, which completes
and carries the fault in its Response.

Usage:
    engine = ProtocolEngine(Device(config))
    engine.handle(encode_packet(Opcode.INITIALIZE, 1, json_bytes))
    engine.handle(encode_packet(Opcode.WRITE_INPUT, 0, input_bytes))
    engine.handle(encode_packet(Opcode.EXECUTE))
    engine.wait()
    response = engine.handle(encode_packet(Opcode.READ_OUTPUT))
"""

import json
import logging
import threading
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from npusim.core.errors import (
    ExecutionCancelled,
    HardwareFault,
    ProtocolError,
    SequenceError,
)
from npusim.execution.results import ExecutionReport
from npusim.hardware.config import PowerMode
from .device import Device
from .packets import Command, Opcode, Response, decode_packet

logger = logging.getLogger(__name__)


class EngineState(Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    LOADED = "loaded"
    EXECUTING = "executing"
    READING_OUTPUT = "reading_output"
    POWER_TRANSITION = "power_transition"


ALLOWED_COMMANDS = {
    EngineState.IDLE: {Opcode.INITIALIZE, Opcode.POWER_CONTROL, Opcode.RESET},
    EngineState.INITIALIZING: {Opcode.RESET},
    EngineState.LOADED: {Opcode.WRITE_INPUT, Opcode.EXECUTE, Opcode.READ_OUTPUT, Opcode.RESET},
    EngineState.EXECUTING: {Opcode.CANCEL, Opcode.RESET},
    EngineState.READING_OUTPUT: {Opcode.RESET},
    EngineState.POWER_TRANSITION: {Opcode.RESET},
}


class ProtocolEngine:
    def __init__(self, device: Device):
        self.device = device
        self.state = EngineState.IDLE
        self.output_ready = False
        self.last_report: Optional[ExecutionReport] = None

        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._cancel_event = threading.Event()
        self._done = threading.Event()
        self._outcome: Optional[Tuple[str, Any]] = None

    # ------------------------------------------------------------------
    # Host entry points
    # ------------------------------------------------------------------

    def handle(self, packet: bytes) -> Response:
        """
        Decode and execute one packet.

        A malformed packet is rejected before anything else happens. Reset
        always completes; an error from a finished Execute that it reaps is
        returned in Response.fault instead of being raised.
        """
        with self._lock:
            command = decode_packet(packet)
            if command.opcode == Opcode.RESET:
                fault = None
                try:
                    self._reap()
                except Exception as e:
                    fault = f"{type(e).__name__}: {e}"
                    logger.warning("Reset after failed Execute: %s", fault)
                response = self._dispatch(command)
                response.fault = fault
                return response
            self._reap()
            return self._dispatch(command)

    def poll(self) -> EngineState:
        with self._lock:
            self._reap()
            return self.state

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until a running Execute finishes.

        Returns:
            True if no execution is outstanding afterwards
        """
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        with self._lock:
            self._reap()
            return self.state != EngineState.EXECUTING

    def request_cancel(self):
        """Ask the running Execute to stop at its next step boundary. Non-blocking."""
        self._cancel_event.set()

    def cancel(self, timeout: Optional[float] = None) -> EngineState:
        """Stop the running Execute and return to LOADED."""
        with self._lock:
            self._reap()
            if self.state != EngineState.EXECUTING:
                raise SequenceError(Opcode.CANCEL.name, self.state.name)
            self._stop_worker(timeout)
            return self.state

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, command: Command) -> Response:
        opcode = command.opcode
        if opcode not in ALLOWED_COMMANDS[self.state]:
            raise SequenceError(opcode.name, self.state.name)
        if opcode == Opcode.READ_OUTPUT and not self.output_ready:
            raise SequenceError(opcode.name, f"{self.state.name} (no completed Execute)")

        logger.debug("%s in %s (address=%d, %d bytes)",
                     opcode.name, self.state.name, command.address, command.length)

        if opcode == Opcode.INITIALIZE:
            return self._initialize(command)
        elif opcode == Opcode.WRITE_INPUT:
            return self._write_input(command)
        elif opcode == Opcode.EXECUTE:
            return self._execute(command)
        elif opcode == Opcode.READ_OUTPUT:
            return self._read_output(command)
        elif opcode == Opcode.POWER_CONTROL:
            return self._power_control(command)
        elif opcode == Opcode.RESET:
            return self._reset(command)
        elif opcode == Opcode.CANCEL:
            self._stop_worker(None)
            return self._respond(command)
        raise ProtocolError(f"Unhandled opcode {opcode!r}")

    def _respond(self, command: Command, payload: bytes = b'',
                 report: Optional[Dict[str, Any]] = None) -> Response:
        return Response(opcode=command.opcode, state=self.state.value, payload=payload, report=report)

    def _initialize(self, command: Command) -> Response:
        description = None
        if command.payload:
            try:
                description = json.loads(command.payload.decode('utf-8'))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                raise ProtocolError(f"Initialize payload is not a JSON model description: {e}")

        self.state = EngineState.INITIALIZING
        try:
            self.device.load_model(command.address, description)
        except Exception:
            self.state = EngineState.IDLE
            raise
        self.state = EngineState.LOADED
        self.output_ready = False
        self.last_report = None
        return self._respond(command)

    def _write_input(self, command: Command) -> Response:
        self.device.write_input(command.address, command.payload)
        self.output_ready = False
        return self._respond(command)

    def _execute(self, command: Command) -> Response:
        self.state = EngineState.EXECUTING
        self.output_ready = False
        self._cancel_event.clear()
        self._done.clear()
        self._outcome = None
        self._thread = threading.Thread(target=self._worker, name="npusim-execute", daemon=True)
        self._thread.start()
        return self._respond(command)

    def _read_output(self, command: Command) -> Response:
        self.state = EngineState.READING_OUTPUT
        try:
            payload = self.device.output_bytes(command.address)
        finally:
            self.state = EngineState.LOADED
        self.output_ready = False
        report = self.last_report.to_dict() if self.last_report is not None else None
        return self._respond(command, payload, report)

    def _power_control(self, command: Command) -> Response:
        if len(command.payload) != 1 or command.payload[0] not in (0, 1):
            raise ProtocolError("PowerControl payload must be one byte: 0x00 or 0x01")
        self.state = EngineState.POWER_TRANSITION
        try:
            self.device.set_power_mode(PowerMode(command.payload[0]))
        finally:
            self.state = EngineState.IDLE
        return self._respond(command)

    def _reset(self, command: Command) -> Response:
        if self.state == EngineState.EXECUTING:
            self._cancel_event.set()
            self._thread.join()
            self._thread = None
            self._outcome = None
        self.device.reset()
        self.state = EngineState.IDLE
        self.output_ready = False
        self.last_report = None
        return self._respond(command)

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    def _worker(self):
        try:
            result = self.device.execute(self._cancel_event)
            self._outcome = ('done', result)
        except ExecutionCancelled as e:
            self._outcome = ('cancelled', e)
        except Exception as e:
            self._outcome = ('error', e)
        finally:
            self._done.set()

    def _stop_worker(self, timeout: Optional[float]):
        self._cancel_event.set()
        self._thread.join(timeout)
        self._reap()
        if self.state == EngineState.LOADED:
            # A run that finished before the request is discarded as well
            self.output_ready = False

    def _reap(self):
        if self.state != EngineState.EXECUTING or not self._done.is_set():
            return
        self._thread.join()
        self._thread = None
        kind, value = self._outcome
        self._outcome = None

        if kind == 'done':
            self.state = EngineState.LOADED
            self.output_ready = True
            self.last_report = value.report
            logger.info("Execute complete: %d cycles", value.report.total_cycles)
        elif kind == 'cancelled':
            self.state = EngineState.LOADED
            logger.info("Execute cancelled: %s", value)
        elif isinstance(value, HardwareFault):
            self.device.unload()
            self.state = EngineState.IDLE
            logger.error("Hardware fault, model unloaded: %s", value)
            raise value
        else:
            self.state = EngineState.LOADED
            raise value
