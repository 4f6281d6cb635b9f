"""
Host packet framing.

    [opcode:1 byte][address:4 bytes][length:2 bytes][payload:length bytes]

Fields are big-endian. A packet whose payload size differs from the declared
length, whose header is short, or whose opcode is unknown is rejected with
ProtocolError before anything else looks at it.
"""

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional

from npusim.core.errors import ProtocolError

HEADER = struct.Struct('>BIH')
HEADER_BYTES = HEADER.size       # 7
MAX_ADDRESS = 0xFFFFFFFF
MAX_PAYLOAD = 0xFFFF


class Opcode(IntEnum):
    INITIALIZE = 0x01
    WRITE_INPUT = 0x02
    EXECUTE = 0x03
    READ_OUTPUT = 0x04
    POWER_CONTROL = 0x05
    RESET = 0x06
    CANCEL = 0x07


@dataclass(frozen=True)
class Command:
    opcode: Opcode
    address: int
    length: int
    payload: bytes = b''


@dataclass
class Response:
    """Reply to one command."""
    opcode: Opcode
    state: str
    payload: bytes = b''
    report: Optional[Dict[str, Any]] = field(default=None)
    fault: Optional[str] = None       # error from an Execute that ended before a Reset


def encode_packet(opcode: int, address: int = 0, payload: bytes = b'') -> bytes:
    if not 0 <= address <= MAX_ADDRESS:
        raise ProtocolError(f"Address {address} outside 32-bit range")
    if len(payload) > MAX_PAYLOAD:
        raise ProtocolError(f"Payload of {len(payload)} bytes exceeds {MAX_PAYLOAD}")
    return HEADER.pack(int(opcode), address, len(payload)) + bytes(payload)


def decode_packet(packet: bytes) -> Command:
    if len(packet) < HEADER_BYTES:
        raise ProtocolError(f"Short packet: {len(packet)} bytes, header needs {HEADER_BYTES}")
    raw_opcode, address, length = HEADER.unpack_from(packet)
    try:
        opcode = Opcode(raw_opcode)
    except ValueError:
        raise ProtocolError(f"Unknown opcode 0x{raw_opcode:02x}")
    payload = bytes(packet[HEADER_BYTES:])
    if len(payload) != length:
        raise ProtocolError(
            f"{opcode.name}: declared length {length}, received {len(payload)} payload bytes"
        )
    return Command(opcode=opcode, address=address, length=length, payload=payload)
