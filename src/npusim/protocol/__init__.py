"""
Host protocol: packet framing, simulated Device and the command FSM.
"""

from .packets import (
    HEADER_BYTES,
    Opcode,
    Command,
    Response,
    encode_packet,
    decode_packet,
)
from .device import Device
from .engine import EngineState, ALLOWED_COMMANDS, ProtocolEngine

__all__ = [
    # Framing
    'HEADER_BYTES',
    'Opcode',
    'Command',
    'Response',
    'encode_packet',
    'decode_packet',

    # Device / FSM
    'Device',
    'EngineState',
    'ALLOWED_COMMANDS',
    'ProtocolEngine',
]
