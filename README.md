# rollnet

Building blocks for rollback netcode in peer-to-peer games. Each machine runs
the game ahead on predicted inputs for remote players. When a real input
arrives and differs from the prediction, the game loads a saved state and
replays the frames since then.

## Install

```
pip install rollnet
```

There are no runtime dependencies. To run the tests, install the `test` extra:

```
pip install "rollnet[test]"
pytest
```

## Modules

- `rollnet.input_queue`
  - `GameInput` holds the input bits of one frame. It has `value`, `set`, `clear`, `erase`, `equal`, `describe` and `copy`.
  - `InputQueue` keeps the input history of one player and supports a `frame_delay`.
    - `get_input(frame)` returns a `(GameInput, confirmed)` pair. When the frame has not arrived, the input is a prediction that repeats the last input added.
    - `add_input` stores an input. When it contradicts an earlier prediction, the frame is recorded in `first_incorrect_frame`.
    - `get_confirmed_input`, `discard_confirmed_frames` and `reset_prediction` cover the rest of the queue's life.
- `rollnet.sync`
  - `Sync` tracks the current frame, one `InputQueue` per player and a ring of saved states.
  - The game supplies a `SyncCallbacks` subclass:
    - `save_game_state(frame)` returns `(buffer, checksum)`.
    - `load_game_state(buffer)` restores a state.
    - `advance_frame(flags)` runs one frame.
    - `free_buffer(buffer)` releases a buffer.
  - `synchronize_inputs()` and `get_confirmed_inputs(frame)` return the inputs of all players, concatenated, together with a bit mask of disconnected players.
  - `check_simulation(timeout)` rolls back and replays when a prediction was wrong.
  - The session is configured with a `SyncConfig`.
- `rollnet.timesync`: `TimeSync` keeps a window of local and remote frame advantages. `recommend_frame_wait_duration` tells the peer that is ahead how many frames to wait. The result is 0 or a value from 3 to 9.
- `rollnet.udp_msg`: `UdpMsg`, `MsgType` and `ConnectStatus` describe the wire format. `UdpMsg.pack()` and `UdpMsg.unpack(data)` convert messages to and from bytes. `unpack` raises `ValueError` on a short header or an unknown type.
- `rollnet.input_codec`: `encode_inputs(inputs, last_acked)` delta-compresses a run of inputs into a bit stream. `decode_inputs(data, num_bits, start_frame, last_received)` turns it back into new inputs, skipping frames already received.
- `rollnet.udp`
  - `create_socket(bind_port, retries)` opens a non-blocking UDP socket on the first free port in the range. It raises `OSError` if no port can be bound.
  - `Udp` registers with a `Poll`, reads every waiting datagram, and passes each parsed `UdpMsg` to a `UdpCallbacks` object.
  - `Udp` is a context manager that closes its socket.
- `rollnet.udp_proto`: `UdpProtocol` is the conversation with one peer. It handles:
  - the sync handshake
  - sending and resending inputs
  - input acks
  - quality reports and round-trip time
  - keep-alives
  - disconnect notification and timeout

  It reports what happens as `ProtocolEvent` values, read with `get_event()`. `get_network_stats()` returns a `NetworkStats`.
- `rollnet.poll`: `Poll` is a small loop.
  - `pump(timeout)` waits on registered `Event` handles. It then calls the handle, message, periodic and loop hooks of `PollSink` objects.
  - `pump` returns True if any hook returned False.
- `rollnet.events`: `Event` is an auto-reset or manual-reset event. `wait_for_multiple_events` waits for any one of several events, or for all of them. It returns an index, or None on timeout.
- `rollnet.buffers`: `RingBuffer` (FIFO) and `StaticBuffer` (append-only) are bounded containers. Each holds at most `capacity - 1` items.
- `rollnet.log`
  - `log`, `log_flush` and `ensure` handle logging and internal checks. `ensure` raises `InvariantError`.
  - `current_time_ms`, `sleep_ms` and `create_directory` are small helpers.

## Examples

Prediction and misprediction:

```python
from rollnet.input_queue import GameInput, InputQueue

queue = InputQueue(4)
game_input, confirmed = queue.get_input(0)  # nothing added yet: confirmed is False
queue.add_input(GameInput(frame=0, size=4, bits=bytes([1, 0, 0, 0])))
print(queue.first_incorrect_frame)          # 0: the prediction was wrong
```

A message round trip:

```python
from rollnet.udp_msg import MsgType, UdpMsg

data = UdpMsg(MsgType.SYNC_REPLY, random_reply=7).pack()
print(UdpMsg.unpack(data).random_reply)     # 7
```

## Logging

Logging is off by default. Three environment variables control it:

- Set `rollnet.log` to append log entries to `log-<pid>.log` in the working directory.
- Set `rollnet.log.ignore` to suppress logging even when `rollnet.log` is set.
- Set `rollnet.log.timestamps` to prefix each entry with the seconds elapsed since the first entry.

## Simulating network conditions

`UdpProtocol` reads two integer environment variables when it is created:

- `rollnet.network.delay` holds packets in the send queue for a jittered latency, in milliseconds.
- `rollnet.oop.percent` is the percentage chance that a packet is held back and sent later, out of order.

## What this package does not do

The package provides the parts of a rollback session, not a finished one.

- No session object ties several `UdpProtocol` peers, a `Udp` socket and a `Sync` together into player handles. Nothing routes received messages to the right peer or feeds peer events into `Sync`; the application has to do that wiring.
- There is no spectator mode and no sync-test mode.
- There is no command-line tool.