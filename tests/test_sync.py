import pytest

from rollnet.input_queue import GameInput
from rollnet.log import InvariantError
from rollnet.sync import Sync, SyncCallbacks, SyncConfig
from rollnet.udp_msg import ConnectStatus


class Game(SyncCallbacks):
    def __init__(self):
        self.state = 0
        self.sync = None
        self.loaded = []
        self.freed = []
        self.replayed = []

    def save_game_state(self, frame):
        return self.state.to_bytes(4, "little"), self.state

    def load_game_state(self, buffer):
        self.loaded.append(buffer)
        self.state = int.from_bytes(buffer, "little")

    def advance_frame(self, flags):
        inputs, _ = self.sync.synchronize_inputs()
        self.replayed.append((inputs, self.sync.in_rollback))
        self.state += 1
        self.sync.increment_frame()

    def free_buffer(self, buffer):
        self.freed.append(buffer)


class FrameTagGame(Game):
    def save_game_state(self, frame):
        return bytes([frame]), frame


def make_sync(game, players=2, prediction=8, statuses=None):
    if statuses is None:
        statuses = [ConnectStatus(False, -1) for _ in range(4)]
    sync = Sync(statuses, SyncConfig(game, prediction, players, 1))
    game.sync = sync
    return sync


def local(bits):
    return GameInput(0, 1, bytearray(bits))


def test_fresh_sync_state():
    sync = make_sync(Game())
    assert sync.frame_count == 0
    assert sync.get_event() is None
    assert sync.check_simulation_consistency() is None
    assert sync.in_rollback is False


def test_first_local_input_saves_frame_zero():
    game = Game()
    sync = make_sync(game)
    assert sync.add_local_input(0, local(b"\x01"))
    saved = sync.get_last_saved_frame()
    assert saved.frame == 0
    assert saved.buffer == (0).to_bytes(4, "little")


def test_synchronize_predicts_missing_player():
    sync = make_sync(Game())
    sync.add_local_input(0, local(b"\x01"))
    assert sync.synchronize_inputs() == (b"\x01\x00", 0)


def test_disconnected_player_sets_flag():
    statuses = [ConnectStatus(False, -1) for _ in range(4)]
    statuses[1] = ConnectStatus(True, -1)
    sync = make_sync(Game(), statuses=statuses)
    sync.add_local_input(0, local(b"\x01"))
    assert sync.synchronize_inputs() == (b"\x01\x00", 0b10)


def test_confirmed_inputs_from_both_players():
    sync = make_sync(Game())
    sync.add_local_input(0, local(b"\x05"))
    sync.add_remote_input(1, GameInput(0, 1, bytearray(b"\x07")))
    assert sync.get_confirmed_inputs(0) == (b"\x05\x07", 0)


def test_prediction_barrier_rejects_input():
    sync = make_sync(Game(), prediction=2)
    assert sync.add_local_input(0, local(b"\x01"))
    sync.increment_frame()
    assert sync.add_local_input(0, local(b"\x01"))
    sync.increment_frame()
    assert sync.add_local_input(0, local(b"\x01")) is False


def test_misprediction_rolls_back_and_replays():
    game = Game()
    sync = make_sync(game)
    for _ in range(3):
        sync.add_local_input(0, local(b"\x01"))
        inputs, _ = sync.synchronize_inputs()
        assert inputs == b"\x01\x00"
        game.state += 1
        sync.increment_frame()

    sync.add_remote_input(1, GameInput(0, 1, bytearray(b"\x02")))
    assert sync.check_simulation_consistency() == 0

    sync.check_simulation(0)
    assert game.loaded == [(0).to_bytes(4, "little")]
    assert game.replayed == [(b"\x01\x02", True)] * 3
    assert sync.frame_count == 3
    assert game.state == 3
    assert sync.in_rollback is False
    assert sync.get_last_saved_frame().frame == sync.frame_count


def test_consistent_simulation_does_not_load():
    game = Game()
    sync = make_sync(game)
    sync.add_local_input(0, local(b"\x01"))
    sync.increment_frame()
    sync.check_simulation(0)
    assert game.loaded == []
    assert sync.frame_count == 1


def test_load_current_frame_is_noop():
    game = Game()
    sync = make_sync(game)
    sync.add_local_input(0, local(b"\x01"))
    sync.load_frame(sync.frame_count)
    assert game.loaded == []


def test_missing_saved_frame_raises():
    sync = make_sync(Game())
    sync.add_local_input(0, local(b"\x01"))
    with pytest.raises(InvariantError):
        sync.find_saved_frame_index(99)