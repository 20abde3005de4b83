"""Per-player input history with frame delay and prediction."""

from __future__ import annotations

from dataclasses import dataclass, field

from .log import ensure, log

NULL_FRAME = -1
INPUT_QUEUE_LENGTH = 128
DEFAULT_INPUT_SIZE = 4


@dataclass
class GameInput:
    """The input of one player (or several) for one frame, as raw bits."""

    frame: int = NULL_FRAME
    size: int = DEFAULT_INPUT_SIZE
    bits: bytearray = field(default_factory=bytearray)

    def __post_init__(self) -> None:
        data = bytes(self.bits)[: self.size]
        self.bits = bytearray(data.ljust(self.size, b"\x00"))

    def erase(self) -> None:
        """Clear every bit, keeping the frame number."""
        self.bits = bytearray(self.size)

    def equal(self, other: GameInput, bits_only: bool = False) -> bool:
        """Compare sizes and bits, and frames too unless ``bits_only``."""
        if not bits_only and self.frame != other.frame:
            log(f"frames don't match: {self.frame}, {other.frame}\n")
        if self.size != other.size:
            log(f"sizes don't match: {self.size}, {other.size}\n")
        same_bits = self.bits[: self.size] == other.bits[: other.size]
        if not same_bits:
            log("bits don't match\n")
        return (bits_only or self.frame == other.frame) and self.size == other.size and same_bits

    def value(self, bit: int) -> bool:
        return bool(self.bits[bit // 8] & (1 << (bit % 8)))

    def set(self, bit: int) -> None:
        self.bits[bit // 8] |= 1 << (bit % 8)

    def clear(self, bit: int) -> None:
        self.bits[bit // 8] &= ~(1 << (bit % 8)) & 0xFF

    def describe(self) -> str:
        """A short text form listing the frame, size and set bits."""
        on = " ".join(str(bit) for bit in range(self.size * 8) if self.value(bit))
        return f"(frame:{self.frame} size:{self.size} {on})"

    def copy(self) -> GameInput:
        return GameInput(self.frame, self.size, bytearray(self.bits))


def _previous(slot: int) -> int:
    return (slot - 1) % INPUT_QUEUE_LENGTH


class InputQueue:
    """Confirmed inputs for one player plus the prediction used in their absence."""

    def __init__(self, input_size: int = DEFAULT_INPUT_SIZE) -> None:
        self.reset(-1, input_size)

    def reset(self, queue_id: int, input_size: int) -> None:
        """Return the queue to its empty state."""
        self.queue_id = queue_id
        self.frame_delay = 0
        self._head = 0
        self._tail = 0
        self._length = 0
        self._first_frame = True
        self._last_user_added_frame = NULL_FRAME
        self._first_incorrect_frame = NULL_FRAME
        self._last_frame_requested = NULL_FRAME
        self._last_added_frame = NULL_FRAME
        self._prediction = GameInput(NULL_FRAME, input_size)
        self._inputs = [GameInput(0, input_size) for _ in range(INPUT_QUEUE_LENGTH)]

    def _log(self, message: str) -> None:
        log(f"input q{self.queue_id} | {message}")

    @property
    def last_confirmed_frame(self) -> int:
        self._log(f"returning last confirmed frame {self._last_added_frame}.\n")
        return self._last_added_frame

    @property
    def first_incorrect_frame(self) -> int:
        return self._first_incorrect_frame

    @property
    def length(self) -> int:
        return self._length

    def discard_confirmed_frames(self, frame: int) -> None:
        """Drop inputs up to and including ``frame`` from the queue."""
        ensure(frame >= 0, "discard frame must not be negative")
        if self._last_frame_requested != NULL_FRAME:
            frame = min(frame, self._last_frame_requested)

        self._log(
            f"discarding confirmed frames up to {frame} (last_added:{self._last_added_frame} "
            f"length:{self._length} [head:{self._head} tail:{self._tail}]).\n"
        )
        if frame >= self._last_added_frame:
            self._tail = self._head
        else:
            offset = frame - self._inputs[self._tail].frame + 1
            ensure(offset >= 0, "discard offset must not be negative")
            self._tail = (self._tail + offset) % INPUT_QUEUE_LENGTH
            self._length -= offset

        self._log(f"after discarding, new tail is {self._tail} (frame:{self._inputs[self._tail].frame}).\n")
        ensure(self._length >= 0, "queue length must not be negative")

    def reset_prediction(self, frame: int) -> None:
        """Forget all prediction state, going back to ``frame``."""
        ensure(
            self._first_incorrect_frame == NULL_FRAME or frame <= self._first_incorrect_frame,
            "cannot reset prediction past the first incorrect frame",
        )
        self._log(f"resetting all prediction errors back to frame {frame}.\n")
        self._prediction.frame = NULL_FRAME
        self._first_incorrect_frame = NULL_FRAME
        self._last_frame_requested = NULL_FRAME

    def get_confirmed_input(self, frame: int) -> GameInput | None:
        """The stored input for ``frame``, or None if it is not held."""
        ensure(
            self._first_incorrect_frame == NULL_FRAME or frame < self._first_incorrect_frame,
            "confirmed input requested past the first incorrect frame",
        )
        stored = self._inputs[frame % INPUT_QUEUE_LENGTH]
        if stored.frame != frame:
            return None
        return stored.copy()

    def get_input(self, frame: int) -> tuple[GameInput, bool]:
        """Return the input for ``frame`` and whether it is confirmed.

        When the frame has not arrived yet, a prediction is returned that
        repeats the last input added.
        """
        self._log(f"requesting input frame {frame}.\n")
        ensure(self._first_incorrect_frame == NULL_FRAME, "input requested during a prediction error")

        self._last_frame_requested = frame
        ensure(frame >= self._inputs[self._tail].frame, "requested frame already discarded")

        if self._prediction.frame == NULL_FRAME:
            offset = frame - self._inputs[self._tail].frame
            if offset < self._length:
                slot = (offset + self._tail) % INPUT_QUEUE_LENGTH
                ensure(self._inputs[slot].frame == frame, "queued frame does not match request")
                self._log(f"returning confirmed frame number {frame}.\n")
                return self._inputs[slot].copy(), True

            if frame == 0 or self._last_added_frame == NULL_FRAME:
                self._log("basing new prediction frame from nothing.\n")
                self._prediction.erase()
            else:
                previous = _previous(self._head)
                self._log(
                    f"basing new prediction frame from previously added frame "
                    f"(queue entry:{previous}, frame:{self._inputs[previous].frame}).\n"
                )
                self._prediction = self._inputs[previous].copy()
            self._prediction.frame += 1

        ensure(self._prediction.frame >= 0, "prediction frame must not be negative")

        result = self._prediction.copy()
        result.frame = frame
        self._log(f"returning prediction frame number {frame} ({self._prediction.frame}).\n")
        return result, False

    def add_input(self, game_input: GameInput) -> int:
        """Queue an input, applying the frame delay.

        ``game_input.frame`` is rewritten to the frame it was stored at, or
        to ``NULL_FRAME`` if it was dropped; that frame is also returned.
        """
        self._log(f"adding input frame number {game_input.frame} to queue.\n")
        ensure(
            self._last_user_added_frame == NULL_FRAME
            or game_input.frame == self._last_user_added_frame + 1,
            "inputs must be added sequentially",
        )
        self._last_user_added_frame = game_input.frame

        new_frame = self._advance_queue_head(game_input.frame)
        if new_frame != NULL_FRAME:
            self._add_delayed_input(game_input, new_frame)

        game_input.frame = new_frame
        return new_frame

    def _add_delayed_input(self, game_input: GameInput, frame_number: int) -> None:
        self._log(f"adding delayed input frame number {frame_number} to queue.\n")
        ensure(game_input.size == self._prediction.size, "input size mismatch")
        ensure(
            self._last_added_frame == NULL_FRAME or frame_number == self._last_added_frame + 1,
            "delayed inputs must be added sequentially",
        )
        ensure(
            frame_number == 0 or self._inputs[_previous(self._head)].frame == frame_number - 1,
            "queue head out of step",
        )

        stored = game_input.copy()
        stored.frame = frame_number
        self._inputs[self._head] = stored
        self._head = (self._head + 1) % INPUT_QUEUE_LENGTH
        self._length += 1
        self._first_frame = False
        self._last_added_frame = frame_number

        if self._prediction.frame != NULL_FRAME:
            ensure(frame_number == self._prediction.frame, "input does not follow prediction")
            if self._first_incorrect_frame == NULL_FRAME and not self._prediction.equal(game_input, True):
                self._log(f"frame {frame_number} does not match prediction.  marking error.\n")
                self._first_incorrect_frame = frame_number

            if (
                self._prediction.frame == self._last_frame_requested
                and self._first_incorrect_frame == NULL_FRAME
            ):
                self._log("prediction is correct!  dumping out of prediction mode.\n")
                self._prediction.frame = NULL_FRAME
            else:
                self._prediction.frame += 1

        ensure(self._length <= INPUT_QUEUE_LENGTH, "input queue overflow")

    def _advance_queue_head(self, frame: int) -> int:
        self._log(f"advancing queue head to frame {frame}.\n")
        expected = 0 if self._first_frame else self._inputs[_previous(self._head)].frame + 1
        frame += self.frame_delay

        if expected > frame:
            self._log(f"Dropping input frame {frame} (expected next frame to be {expected}).\n")
            return NULL_FRAME

        while expected < frame:
            self._log(f"Adding padding frame {expected} to account for change in frame delay.\n")
            self._add_delayed_input(self._inputs[_previous(self._head)], expected)
            expected += 1

        ensure(
            frame == 0 or frame == self._inputs[_previous(self._head)].frame + 1,
            "queue head out of step after padding",
        )
        return frame