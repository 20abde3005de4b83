"""Frame-advantage tracking used to recommend how long a peer should wait."""

from __future__ import annotations

from .input_queue import GameInput
from .log import log

FRAME_WINDOW_SIZE = 40
MIN_UNIQUE_FRAMES = 10
MIN_FRAME_ADVANTAGE = 3
MAX_FRAME_ADVANTAGE = 9


class TimeSync:
    """Keeps a sliding window of local and remote frame advantages."""

    def __init__(self) -> None:
        self._local = [0] * FRAME_WINDOW_SIZE
        self._remote = [0] * FRAME_WINDOW_SIZE
        self._last_inputs = [GameInput() for _ in range(MIN_UNIQUE_FRAMES)]
        self._next_prediction = FRAME_WINDOW_SIZE * 3
        self._iterations = 0

    def advance_frame(self, game_input: GameInput, advantage: int, remote_advantage: int) -> None:
        """Record the input and both frame advantages for the input's frame."""
        frame = game_input.frame
        self._last_inputs[frame % MIN_UNIQUE_FRAMES] = game_input.copy()
        self._local[frame % FRAME_WINDOW_SIZE] = advantage
        self._remote[frame % FRAME_WINDOW_SIZE] = remote_advantage

    def recommend_frame_wait_duration(self, require_idle_input: bool) -> int:
        """Number of frames this peer should sleep so the other can catch up."""
        advantage = sum(self._local) / float(FRAME_WINDOW_SIZE)
        remote_advantage = sum(self._remote) / float(FRAME_WINDOW_SIZE)

        self._iterations += 1

        # Only the peer that both sides agree is ahead slows down.
        if advantage >= remote_advantage:
            return 0

        sleep_frames = int(((remote_advantage - advantage) / 2) + 0.5)
        log(f"iteration {self._iterations}:  sleep frames is {sleep_frames}\n")

        if sleep_frames < MIN_FRAME_ADVANTAGE:
            return 0

        if require_idle_input:
            first = self._last_inputs[0]
            for position, recorded in enumerate(self._last_inputs[1:], start=1):
                if not recorded.equal(first, True):
                    log(
                        f"iteration {self._iterations}:  rejecting due to input stuff "
                        f"at position {position}...!!!\n"
                    )
                    return 0

        return min(sleep_frames, MAX_FRAME_ADVANTAGE)