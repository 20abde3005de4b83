"""Delta compression of consecutive inputs into a bit stream.

Each frame is written as a run of changed bits followed by a single 0 bit.
A changed bit is written as a 1 bit, its new value, then its index in
``NIBBLE_SIZE`` bits. Bits are packed least-significant first.
"""

from __future__ import annotations

from collections.abc import Iterable

from .input_queue import NULL_FRAME, GameInput
from .log import ensure, log
from .udp_msg import MAX_COMPRESSED_BITS

NIBBLE_SIZE = 8


class _BitWriter:
    def __init__(self) -> None:
        self.data = bytearray()
        self.offset = 0

    def write_bit(self, on: bool) -> None:
        if self.offset % 8 == 0:
            self.data.append(0)
        if on:
            self.data[-1] |= 1 << (self.offset % 8)
        self.offset += 1

    def write_nibblet(self, value: int) -> None:
        ensure(0 <= value < 1 << NIBBLE_SIZE, "value does not fit a nibblet")
        for shift in range(NIBBLE_SIZE):
            self.write_bit(bool((value >> shift) & 1))


class _BitReader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    def read_bit(self) -> bool:
        ensure(self.offset < len(self.data) * 8, "read past the end of the bit stream")
        on = bool(self.data[self.offset // 8] & (1 << (self.offset % 8)))
        self.offset += 1
        return on

    def read_nibblet(self) -> int:
        return sum(1 << shift for shift in range(NIBBLE_SIZE) if self.read_bit())


def _bit(game_input: GameInput, index: int) -> bool:
    byte = index // 8
    return byte < len(game_input.bits) and bool(game_input.bits[byte] & (1 << (index % 8)))


def encode_inputs(inputs: Iterable[GameInput], last_acked: GameInput) -> tuple[bytes, int]:
    """Encode ``inputs`` as changes relative to ``last_acked``.

    Returns the packed bytes and the number of bits used.
    """
    pending = list(inputs)
    if pending:
        ensure(
            last_acked.frame == NULL_FRAME or last_acked.frame + 1 == pending[0].frame,
            "inputs must follow the last acknowledged frame",
        )
    writer = _BitWriter()
    last = last_acked
    for current in pending:
        for index in range(current.size * 8):
            on = _bit(current, index)
            if on != _bit(last, index):
                ensure(index < 1 << NIBBLE_SIZE, "input bit index too large to encode")
                writer.write_bit(True)
                writer.write_bit(on)
                writer.write_nibblet(index)
        writer.write_bit(False)
        last = current
    ensure(writer.offset < MAX_COMPRESSED_BITS, "compressed input too large")
    return bytes(writer.data), writer.offset


def decode_inputs(
    data: bytes, num_bits: int, start_frame: int, last_received: GameInput
) -> list[GameInput]:
    """Decode a stream starting at ``start_frame`` on top of ``last_received``.

    Frames already covered by ``last_received`` are skipped; the newly
    received inputs are returned in frame order.
    """
    data = bytes(data)
    ensure(num_bits <= len(data) * 8, "bit count exceeds the data supplied")
    reader = _BitReader(data)
    current = last_received.copy()
    if current.frame < 0:
        current.frame = start_frame - 1

    decoded: list[GameInput] = []
    frame = start_frame
    while reader.offset < num_bits:
        ensure(frame <= current.frame + 1, "gap between received inputs")
        use_inputs = frame == current.frame + 1

        while reader.read_bit():
            on = reader.read_bit()
            button = reader.read_nibblet()
            if use_inputs:
                ensure(button < current.size * 8, "decoded bit index outside the input")
                if on:
                    current.set(button)
                else:
                    current.clear(button)
        ensure(reader.offset <= num_bits, "frame ran past the end of the stream")

        if use_inputs:
            current.frame = frame
            decoded.append(current.copy())
            log(f"decoded frame {frame} {current.describe()}.\n")
        else:
            log(f"Skipping past frame:({frame}) current is {current.frame}.\n")
        frame += 1
    return decoded