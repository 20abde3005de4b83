"""Wire format of the datagrams exchanged between peers."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum

from .log import ensure

MAX_COMPRESSED_BITS = 4096
UDP_MSG_MAX_PLAYERS = 4

_U32 = 0xFFFFFFFF
_LOW31 = 0x7FFFFFFF

_HEADER = struct.Struct("<HHB")
HEADER_SIZE = _HEADER.size

_SYNC_REQUEST = struct.Struct("<IHB")
_U32_BODY = struct.Struct("<I")
_QUALITY_REPORT = struct.Struct("<bI")
_INPUT_FIXED = struct.Struct(f"<{UDP_MSG_MAX_PLAYERS}IIIHB")
INPUT_BITS_OFFSET = _INPUT_FIXED.size


class MsgType(IntEnum):
    INVALID = 0
    SYNC_REQUEST = 1
    SYNC_REPLY = 2
    INPUT = 3
    QUALITY_REPORT = 4
    QUALITY_REPLY = 5
    KEEP_ALIVE = 6
    INPUT_ACK = 7


# A sync request only ever carries the size of a sync reply on the wire.
_FIXED_PAYLOAD_SIZES = {
    MsgType.SYNC_REQUEST: _U32_BODY.size,
    MsgType.SYNC_REPLY: _U32_BODY.size,
    MsgType.QUALITY_REPORT: _QUALITY_REPORT.size,
    MsgType.QUALITY_REPLY: _U32_BODY.size,
    MsgType.INPUT_ACK: _U32_BODY.size,
    MsgType.KEEP_ALIVE: 0,
}


@dataclass
class ConnectStatus:
    """Whether a player has disconnected and the last frame seen from them."""

    disconnected: bool = False
    last_frame: int = 0


def _signed31(value: int) -> int:
    value &= _LOW31
    return value - (1 << 31) if value & 0x40000000 else value


def _status_word(status: ConnectStatus) -> int:
    return (1 if status.disconnected else 0) | ((status.last_frame & _LOW31) << 1)


def _status_from_word(word: int) -> ConnectStatus:
    return ConnectStatus(bool(word & 1), _signed31(word >> 1))


def _int8(value: int) -> int:
    return ((value + 128) & 0xFF) - 128


def _padded(data: bytes, size: int) -> bytes:
    return data[:size].ljust(size, b"\x00")


def _default_statuses() -> list[ConnectStatus]:
    return [ConnectStatus() for _ in range(UDP_MSG_MAX_PLAYERS)]


@dataclass
class UdpMsg:
    """One protocol message; only the fields of its type go on the wire."""

    type: MsgType
    magic: int = 0
    sequence_number: int = 0
    random_request: int = 0
    remote_magic: int = 0
    remote_endpoint: int = 0
    random_reply: int = 0
    frame_advantage: int = 0
    ping: int = 0
    pong: int = 0
    peer_connect_status: list[ConnectStatus] = field(default_factory=_default_statuses)
    start_frame: int = 0
    disconnect_requested: bool = False
    ack_frame: int = 0
    num_bits: int = 0
    input_size: int = 0
    bits: bytes = b""

    def payload_size(self) -> int:
        """Bytes of payload that follow the header on the wire."""
        if self.type is MsgType.INPUT:
            return INPUT_BITS_OFFSET + (self.num_bits + 7) // 8
        size = _FIXED_PAYLOAD_SIZES.get(self.type)
        ensure(size is not None, f"no payload size for message type {self.type!r}")
        return size

    def packet_size(self) -> int:
        return HEADER_SIZE + self.payload_size()

    def _payload(self) -> bytes:
        if self.type is MsgType.SYNC_REQUEST:
            return _SYNC_REQUEST.pack(
                self.random_request & _U32, self.remote_magic & 0xFFFF, self.remote_endpoint & 0xFF
            )
        if self.type is MsgType.SYNC_REPLY:
            return _U32_BODY.pack(self.random_reply & _U32)
        if self.type is MsgType.QUALITY_REPORT:
            return _QUALITY_REPORT.pack(_int8(self.frame_advantage), self.ping & _U32)
        if self.type is MsgType.QUALITY_REPLY:
            return _U32_BODY.pack(self.pong & _U32)
        if self.type is MsgType.INPUT_ACK:
            return _U32_BODY.pack(self.ack_frame & _LOW31)
        if self.type is MsgType.INPUT:
            ensure(
                len(self.peer_connect_status) == UDP_MSG_MAX_PLAYERS,
                "input message needs one connect status per player slot",
            )
            byte_count = (self.num_bits + 7) // 8
            ensure(byte_count <= MAX_COMPRESSED_BITS, "compressed input too large")
            fixed = _INPUT_FIXED.pack(
                *(_status_word(status) for status in self.peer_connect_status),
                self.start_frame & _U32,
                (1 if self.disconnect_requested else 0) | ((self.ack_frame & _LOW31) << 1),
                self.num_bits & 0xFFFF,
                self.input_size & 0xFF,
            )
            return fixed + _padded(bytes(self.bits), byte_count)
        return b""

    def pack(self) -> bytes:
        """Serialize the message exactly as it is sent."""
        size = self.payload_size()
        header = _HEADER.pack(self.magic & 0xFFFF, self.sequence_number & 0xFFFF, int(self.type))
        return header + self._payload()[:size]

    @classmethod
    def unpack(cls, data: bytes) -> UdpMsg:
        """Parse a received datagram; missing trailing bytes read as zero."""
        data = bytes(data)
        if len(data) < HEADER_SIZE:
            raise ValueError(f"datagram of {len(data)} bytes is shorter than the header")
        magic, sequence_number, type_value = _HEADER.unpack_from(data)
        try:
            msg_type = MsgType(type_value)
        except ValueError as exc:
            raise ValueError(f"unknown message type {type_value}") from exc

        msg = cls(msg_type, magic=magic, sequence_number=sequence_number)
        body = data[HEADER_SIZE:]

        if msg_type is MsgType.SYNC_REQUEST:
            msg.random_request, msg.remote_magic, msg.remote_endpoint = _SYNC_REQUEST.unpack(
                _padded(body, _SYNC_REQUEST.size)
            )
        elif msg_type is MsgType.SYNC_REPLY:
            (msg.random_reply,) = _U32_BODY.unpack(_padded(body, _U32_BODY.size))
        elif msg_type is MsgType.QUALITY_REPORT:
            msg.frame_advantage, msg.ping = _QUALITY_REPORT.unpack(_padded(body, _QUALITY_REPORT.size))
        elif msg_type is MsgType.QUALITY_REPLY:
            (msg.pong,) = _U32_BODY.unpack(_padded(body, _U32_BODY.size))
        elif msg_type is MsgType.INPUT_ACK:
            (word,) = _U32_BODY.unpack(_padded(body, _U32_BODY.size))
            msg.ack_frame = _signed31(word)
        elif msg_type is MsgType.INPUT:
            *status_words, start_frame, ack_word, num_bits, input_size = _INPUT_FIXED.unpack(
                _padded(body, INPUT_BITS_OFFSET)
            )
            msg.peer_connect_status = [_status_from_word(word) for word in status_words]
            msg.start_frame = start_frame
            msg.disconnect_requested = bool(ack_word & 1)
            msg.ack_frame = _signed31(ack_word >> 1)
            msg.num_bits = num_bits
            msg.input_size = input_size
            byte_count = (num_bits + 7) // 8
            msg.bits = _padded(body[INPUT_BITS_OFFSET:], byte_count)
        return msg