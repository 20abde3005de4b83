"""Frame bookkeeping, state saving and rollback for a session."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .buffers import RingBuffer
from .input_queue import NULL_FRAME, GameInput, InputQueue
from .log import ensure, log
from .udp_msg import ConnectStatus

MAX_PREDICTION_FRAMES = 8
SAVED_FRAME_COUNT = MAX_PREDICTION_FRAMES + 2
EVENT_QUEUE_LENGTH = 32


class SyncCallbacks(ABC):
    """Hooks the game supplies so the session can save, load and replay it."""

    @abstractmethod
    def save_game_state(self, frame: int) -> tuple[bytes, int]:
        """Capture the game state at ``frame``; return the buffer and its checksum."""

    @abstractmethod
    def load_game_state(self, buffer: bytes) -> None:
        """Restore the game from a buffer returned by :meth:`save_game_state`."""

    @abstractmethod
    def advance_frame(self, flags: int) -> None:
        """Run one frame of the game during a rollback."""

    def free_buffer(self, buffer: bytes | bytearray | memoryview) -> None:
        """Release a saved buffer that is no longer needed.

        Mutable buffers are emptied and views are released; immutable bytes
        are left to the garbage collector.
        """
        if isinstance(buffer, memoryview):
            buffer.release()
        elif isinstance(buffer, bytearray):
            buffer.clear()


@dataclass
class SyncConfig:
    callbacks: SyncCallbacks
    num_prediction_frames: int
    num_players: int
    input_size: int


@dataclass
class SavedFrame:
    """One saved game state."""

    buffer: bytes | None = None
    frame: int = NULL_FRAME
    checksum: int = 0

    @property
    def size(self) -> int:
        return len(self.buffer) if self.buffer is not None else 0


class Sync:
    """Tracks the current frame, every player's inputs and the saved states."""

    def __init__(self, connect_status: Sequence[ConnectStatus], config: SyncConfig) -> None:
        ensure(len(connect_status) >= config.num_players, "a connect status is needed per player")
        self._local_connect_status = connect_status
        self.config = config
        self._callbacks = config.callbacks
        self._framecount = 0
        self._last_confirmed_frame = -1
        self._rollingback = False
        self._max_prediction_frames = config.num_prediction_frames
        self._saved_frames = [SavedFrame() for _ in range(SAVED_FRAME_COUNT)]
        self._saved_head = 0
        self._input_queues: list[InputQueue] = []
        for queue_id in range(config.num_players):
            queue = InputQueue(config.input_size)
            queue.reset(queue_id, config.input_size)
            self._input_queues.append(queue)
        self._event_queue: RingBuffer[GameInput] = RingBuffer(EVENT_QUEUE_LENGTH)

    @property
    def frame_count(self) -> int:
        return self._framecount

    @property
    def in_rollback(self) -> bool:
        return self._rollingback

    def close(self) -> None:
        """Hand every saved buffer back to the game."""
        for saved in self._saved_frames:
            if saved.buffer is not None:
                self._callbacks.free_buffer(saved.buffer)
                saved.buffer = None

    def set_last_confirmed_frame(self, frame: int) -> None:
        """Note that every player's input is known up to ``frame``."""
        self._last_confirmed_frame = frame
        if frame > 0:
            for queue in self._input_queues:
                queue.discard_confirmed_frames(frame - 1)

    def set_frame_delay(self, queue: int, delay: int) -> None:
        self._input_queues[queue].frame_delay = delay

    def add_local_input(self, queue: int, game_input: GameInput) -> bool:
        """Queue a local input for the current frame.

        Returns False when the prediction barrier has been reached.
        """
        frames_behind = self._framecount - self._last_confirmed_frame
        if (
            self._framecount >= self._max_prediction_frames
            and frames_behind >= self._max_prediction_frames
        ):
            log("Rejecting input from emulator: reached prediction barrier.\n")
            return False

        if self._framecount == 0:
            self.save_current_frame()

        log(f"Sending undelayed local frame {self._framecount} to queue {queue}.\n")
        game_input.frame = self._framecount
        self._input_queues[queue].add_input(game_input)
        return True

    def add_remote_input(self, queue: int, game_input: GameInput) -> None:
        self._input_queues[queue].add_input(game_input)

    def _gather(self, frame: int, fetch: Callable[[InputQueue], GameInput | None]) -> tuple[bytes, int]:
        size = self.config.input_size
        chunks: list[bytes] = []
        disconnect_flags = 0
        for player, queue in enumerate(self._input_queues):
            status = self._local_connect_status[player]
            if status.disconnected and frame > status.last_frame:
                disconnect_flags |= 1 << player
                chunks.append(bytes(size))
                continue
            game_input = fetch(queue)
            bits = bytes(game_input.bits) if game_input is not None else b""
            chunks.append(bits[:size].ljust(size, b"\x00"))
        return b"".join(chunks), disconnect_flags

    def get_confirmed_inputs(self, frame: int) -> tuple[bytes, int]:
        """Every player's confirmed input for ``frame`` and the disconnect flags."""
        return self._gather(frame, lambda queue: queue.get_confirmed_input(frame))

    def synchronize_inputs(self) -> tuple[bytes, int]:
        """Every player's input for the current frame, predicted where needed."""
        return self._gather(self._framecount, lambda queue: queue.get_input(self._framecount)[0])

    def check_simulation(self, timeout: int) -> None:
        """Roll back and replay if any prediction turned out wrong."""
        seek_to = self.check_simulation_consistency()
        if seek_to is not None:
            self.adjust_simulation(seek_to)

    def increment_frame(self) -> None:
        self._framecount += 1
        self.save_current_frame()

    def adjust_simulation(self, seek_to: int) -> None:
        """Load the state at ``seek_to`` and replay up to the current frame."""
        framecount = self._framecount
        count = self._framecount - seek_to

        log("Catching up\n")
        self._rollingback = True
        try:
            self.load_frame(seek_to)
            ensure(self._framecount == seek_to, "rollback did not reach the requested frame")

            self.reset_prediction(self._framecount)
            for _ in range(count):
                self._callbacks.advance_frame(0)
            ensure(self._framecount == framecount, "replay did not return to the current frame")
        finally:
            self._rollingback = False
        log("---\n")

    def load_frame(self, frame: int) -> None:
        """Restore the saved state for ``frame`` unless it is the current one."""
        if frame == self._framecount:
            log("Skipping NOP.\n")
            return

        self._saved_head = self.find_saved_frame_index(frame)
        state = self._saved_frames[self._saved_head]
        log(
            f"=== Loading frame info {state.frame} (size: {state.size}  "
            f"checksum: {state.checksum & 0xFFFFFFFF:08x}).\n"
        )
        ensure(state.buffer is not None and state.size, "saved frame has no state")
        self._callbacks.load_game_state(state.buffer)

        self._framecount = state.frame
        self._saved_head = (self._saved_head + 1) % SAVED_FRAME_COUNT

    def save_current_frame(self) -> None:
        """Save the game state for the current frame into the next slot."""
        state = self._saved_frames[self._saved_head]
        if state.buffer is not None:
            self._callbacks.free_buffer(state.buffer)
            state.buffer = None
        state.frame = self._framecount
        state.buffer, state.checksum = self._callbacks.save_game_state(state.frame)
        log(
            f"=== Saved frame info {state.frame} (size: {state.size}  "
            f"checksum: {state.checksum & 0xFFFFFFFF:08x}).\n"
        )
        self._saved_head = (self._saved_head + 1) % SAVED_FRAME_COUNT

    def get_last_saved_frame(self) -> SavedFrame:
        return self._saved_frames[self._saved_head - 1]

    def find_saved_frame_index(self, frame: int) -> int:
        index = next(
            (i for i, saved in enumerate(self._saved_frames) if saved.frame == frame), None
        )
        ensure(index is not None, f"no saved state for frame {frame}")
        return index

    def check_simulation_consistency(self) -> int | None:
        """The earliest mispredicted frame across all players, or None."""
        first_incorrect = NULL_FRAME
        for queue_id, queue in enumerate(self._input_queues):
            incorrect = queue.first_incorrect_frame
            log(f"considering incorrect frame {incorrect} reported by queue {queue_id}.\n")
            if incorrect != NULL_FRAME and (first_incorrect == NULL_FRAME or incorrect < first_incorrect):
                first_incorrect = incorrect

        if first_incorrect == NULL_FRAME:
            log("prediction ok.  proceeding.\n")
            return None
        return first_incorrect

    def reset_prediction(self, frame: int) -> None:
        for queue in self._input_queues:
            queue.reset_prediction(frame)

    def get_event(self) -> GameInput | None:
        """The next confirmed-input event, or None if there is none."""
        if len(self._event_queue):
            return self._event_queue.pop()
        return None