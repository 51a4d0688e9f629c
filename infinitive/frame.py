"""Frames of the thermostat bus: layout, checksum and text form."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional


class Op(IntEnum):
    """Frame operation codes."""

    RESPONSE = 0x06
    READ = 0x0B
    WRITE = 0x0C
    ERROR = 0x15


class FrameError(ValueError):
    """A frame cannot be encoded or decoded."""


def _make_crc_table():
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ 0xA001 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _make_crc_table()

_HEADER = struct.Struct(">HHBBBB")


def checksum(data):
    """Return the 2-byte little-endian CRC-16 (poly 0x8005, reflected) of data."""
    crc = 0
    for byte in bytes(data):
        crc = (crc >> 8) ^ _CRC_TABLE[(crc ^ byte) & 0xFF]
    return crc.to_bytes(2, "little")


@dataclass
class InfinityFrame:
    """One bus frame: addresses, operation and payload."""

    dst: int = 0
    src: int = 0
    op: int = 0
    data: bytes = b""
    data_len: Optional[int] = field(default=None, compare=False)

    def __post_init__(self):
        self.data = bytes(self.data)
        if self.data_len is None:
            self.data_len = len(self.data)

    def op_string(self):
        try:
            return Op(self.op).name
        except ValueError:
            return f"UNKNOWN({self.op:x})"

    def __str__(self):
        return f"{self.src:x} -> {self.dst:x}: {self.op_string():<8} {self.data.hex()}"

    def encode(self):
        """Return the wire bytes of the frame, checksum included."""
        if len(self.data) > 255:
            raise FrameError("frame data too large")
        body = _HEADER.pack(self.dst, self.src, len(self.data), 0, 0, self.op) + self.data
        return body + checksum(body)

    @classmethod
    def decode(cls, buf):
        """Parse one complete frame; raise FrameError if it is not valid."""
        buf = bytes(buf)
        if not any(buf):
            raise FrameError("frame is all zero bytes")
        if len(buf) < _HEADER.size + 2:
            raise FrameError("frame too short")
        body, crc = buf[:-2], buf[-2:]
        if checksum(body) != crc:
            raise FrameError("checksum mismatch")
        dst, src, data_len, _, _, op = _HEADER.unpack_from(body)
        return cls(dst=dst, src=src, op=op, data=body[_HEADER.size:], data_len=data_len)