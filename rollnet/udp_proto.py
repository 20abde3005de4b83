"""Per-peer protocol state machine: sync handshake, input exchange and keep-alives."""

from __future__ import annotations

import os
import random
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Callable

from .buffers import RingBuffer
from .input_codec import decode_inputs, encode_inputs
from .input_queue import NULL_FRAME, GameInput
from .log import current_time_ms, ensure, log
from .poll import Poll, PollSink
from .timesync import TimeSync
from .udp import Address, Udp
from .udp_msg import UDP_MSG_MAX_PLAYERS, ConnectStatus, MsgType, UdpMsg

UDP_HEADER_SIZE = 28  # IP + UDP headers
NUM_SYNC_PACKETS = 5
SYNC_RETRY_INTERVAL = 2000
SYNC_FIRST_RETRY_INTERVAL = 500
RUNNING_RETRY_INTERVAL = 200
KEEP_ALIVE_INTERVAL = 200
QUALITY_REPORT_INTERVAL = 1000
NETWORK_STATS_INTERVAL = 1000
UDP_SHUTDOWN_TIMER = 5000
MAX_SEQ_DISTANCE = 1 << 15

QUEUE_LENGTH = 64

NETWORK_DELAY_ENV = "rollnet.network.delay"
OOP_PERCENT_ENV = "rollnet.oop.percent"


class ProtocolEventType(IntEnum):
    UNKNOWN = -1
    CONNECTED = 0
    SYNCHRONIZING = 1
    SYNCHRONIZED = 2
    INPUT = 3
    DISCONNECTED = 4
    NETWORK_INTERRUPTED = 5
    NETWORK_RESUMED = 6


@dataclass
class ProtocolEvent:
    """Something the protocol reports to its owner."""

    type: ProtocolEventType = ProtocolEventType.UNKNOWN
    input: GameInput | None = None
    total: int = 0
    count: int = 0
    disconnect_timeout: int = 0


@dataclass
class NetworkStats:
    ping: int = 0
    send_queue_len: int = 0
    kbps_sent: int = 0
    remote_frames_behind: int = 0
    local_frames_behind: int = 0


class _State(Enum):
    SYNCING = 0
    SYNCHRONIZED = 1
    RUNNING = 2
    DISCONNECTED = 3


@dataclass
class _QueueEntry:
    queue_time: int
    dest_addr: Address
    msg: UdpMsg


@dataclass
class _RoguePacket:
    send_time: int
    dest_addr: Address
    msg: UdpMsg


def _env_int(name: str) -> int:
    value = os.environ.get(name)
    if not value:
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


class UdpProtocol(PollSink):
    """The conversation with one remote endpoint."""

    def __init__(self) -> None:
        self._udp: Udp | None = None
        self._peer_addr: Address = ("", 0)
        self._magic_number = 0
        self._queue = -1
        self._remote_magic_number = 0
        self._connected = False
        self._send_latency = _env_int(NETWORK_DELAY_ENV)
        self._oop_percent = _env_int(OOP_PERCENT_ENV)
        self._oo_packet: _RoguePacket | None = None
        self._send_queue: RingBuffer[_QueueEntry] = RingBuffer(QUEUE_LENGTH)

        self._round_trip_time = 0
        self._packets_sent = 0
        self._bytes_sent = 0
        self._kbps_sent = 0
        self._stats_start_time = 0

        self._local_connect_status: Sequence[ConnectStatus] | None = None
        self._peer_connect_status = [
            ConnectStatus(False, -1) for _ in range(UDP_MSG_MAX_PLAYERS)
        ]

        self._current_state = _State.SYNCING
        self._roundtrips_remaining = 0
        self._sync_random = 0
        self._last_quality_report_time = 0
        self._last_network_stats_interval = 0
        self._last_input_packet_recv_time = 0

        self._local_frame_advantage = 0
        self._remote_frame_advantage = 0

        self._pending_output: RingBuffer[GameInput] = RingBuffer(QUEUE_LENGTH)
        self._last_received_input = GameInput(NULL_FRAME, 1)
        self._last_sent_input = GameInput(NULL_FRAME, 1)
        self._last_acked_input = GameInput(NULL_FRAME, 1)
        self._last_send_time = 0
        self._last_recv_time = 0
        self._shutdown_timeout = 0
        self._disconnect_event_sent = False
        self._disconnect_timeout = 0
        self._disconnect_notify_start = 0
        self._disconnect_notify_sent = False

        self._next_send_seq = 0
        self._next_recv_seq = 0

        self._timesync = TimeSync()
        self._event_queue: RingBuffer[ProtocolEvent] = RingBuffer(QUEUE_LENGTH)

        self._handlers: dict[MsgType, Callable[[UdpMsg, int], bool]] = {
            MsgType.INVALID: self._on_invalid,
            MsgType.SYNC_REQUEST: self._on_sync_request,
            MsgType.SYNC_REPLY: self._on_sync_reply,
            MsgType.INPUT: self._on_input,
            MsgType.QUALITY_REPORT: self._on_quality_report,
            MsgType.QUALITY_REPLY: self._on_quality_reply,
            MsgType.KEEP_ALIVE: self._on_keep_alive,
            MsgType.INPUT_ACK: self._on_input_ack,
        }

    # -- setup and state -------------------------------------------------

    def init(
        self,
        udp: Udp,
        poll: Poll,
        queue: int,
        ip: str,
        port: int,
        local_connect_status: Sequence[ConnectStatus] | None,
    ) -> None:
        """Attach to a transport and poll loop, talking to ``ip:port``."""
        ensure(bool(ip), "peer address must not be empty")
        self._udp = udp
        self._queue = queue
        self._local_connect_status = local_connect_status
        self._peer_addr = (ip, port)
        self._magic_number = random.randint(1, 0xFFFF)
        poll.register_loop(self)

    def synchronize(self) -> None:
        """Start the sync handshake with the peer."""
        if self._udp is not None:
            self._current_state = _State.SYNCING
            self._roundtrips_remaining = NUM_SYNC_PACKETS
            self._send_sync_request()

    def get_peer_connect_status(self, peer_id: int) -> tuple[bool, int]:
        """Whether the peer still sees player ``peer_id`` connected, and its last frame."""
        status = self._peer_connect_status[peer_id]
        return not status.disconnected, status.last_frame

    def is_initialized(self) -> bool:
        return self._udp is not None

    def is_synchronized(self) -> bool:
        return self._current_state is _State.RUNNING

    def is_running(self) -> bool:
        return self._current_state is _State.RUNNING

    def disconnect(self) -> None:
        """Ask the peer to disconnect and shut down after a grace period."""
        self._current_state = _State.DISCONNECTED
        self._shutdown_timeout = current_time_ms() + UDP_SHUTDOWN_TIMER

    def set_disconnect_timeout(self, timeout: int) -> None:
        self._disconnect_timeout = timeout

    def set_disconnect_notify_start(self, timeout: int) -> None:
        self._disconnect_notify_start = timeout

    # -- outgoing --------------------------------------------------------

    def send_input(self, game_input: GameInput) -> None:
        """Queue a local input and send everything not yet acknowledged."""
        if self._udp is None:
            return
        if self._current_state is _State.RUNNING:
            self._timesync.advance_frame(
                game_input, self._local_frame_advantage, self._remote_frame_advantage
            )
            self._pending_output.push(game_input.copy())
        self._send_pending_output()

    def send_input_ack(self) -> None:
        self._send_msg(UdpMsg(MsgType.INPUT_ACK, ack_frame=self._last_received_input.frame))

    def _connect_status_snapshot(self) -> list[ConnectStatus]:
        statuses = [
            ConnectStatus(status.disconnected, status.last_frame)
            for status in (self._local_connect_status or [])[:UDP_MSG_MAX_PLAYERS]
        ]
        statuses.extend(ConnectStatus() for _ in range(UDP_MSG_MAX_PLAYERS - len(statuses)))
        return statuses

    def _send_pending_output(self) -> None:
        msg = UdpMsg(MsgType.INPUT)
        pending = list(self._pending_output)
        if pending:
            msg.start_frame = pending[0].frame
            msg.input_size = pending[0].size
            msg.bits, msg.num_bits = encode_inputs(pending, self._last_acked_input)
            self._last_sent_input = pending[-1].copy()
        msg.ack_frame = self._last_received_input.frame
        msg.disconnect_requested = self._current_state is _State.DISCONNECTED
        msg.peer_connect_status = self._connect_status_snapshot()
        self._send_msg(msg)

    def _send_sync_request(self) -> None:
        self._sync_random = random.randint(0, 0xFFFF)
        self._send_msg(UdpMsg(MsgType.SYNC_REQUEST, random_request=self._sync_random))

    def _send_msg(self, msg: UdpMsg) -> None:
        self._log_msg("send", msg)
        now = current_time_ms()
        self._packets_sent += 1
        self._last_send_time = now
        self._bytes_sent += msg.packet_size()

        msg.magic = self._magic_number
        msg.sequence_number = self._next_send_seq
        self._next_send_seq = (self._next_send_seq + 1) & 0xFFFF

        self._send_queue.push(_QueueEntry(now, self._peer_addr, msg))
        self._pump_send_queue()

    def _pump_send_queue(self) -> None:
        if self._udp is None:
            return
        while not self._send_queue.empty():
            entry = self._send_queue.front()
            if self._send_latency > 0:
                jitter = (self._send_latency * 2 // 3) + (random.randrange(self._send_latency) // 3)
                if current_time_ms() < entry.queue_time + jitter:
                    break
            if (
                self._oop_percent
                and self._oo_packet is None
                and random.randrange(100) < self._oop_percent
            ):
                delay = random.randrange(max(self._send_latency * 10 + 1000, 1))
                self._log(
                    f"creating rogue oop (seq: {entry.msg.sequence_number}  delay: {delay})\n"
                )
                self._oo_packet = _RoguePacket(current_time_ms() + delay, entry.dest_addr, entry.msg)
            else:
                ensure(bool(entry.dest_addr[0]), "queued packet has no destination")
                self._udp.send_to(entry.msg.pack(), entry.dest_addr)
            self._send_queue.pop()

        if self._oo_packet is not None and self._oo_packet.send_time < current_time_ms():
            self._log("sending rogue oop!")
            self._udp.send_to(self._oo_packet.msg.pack(), self._oo_packet.dest_addr)
            self._oo_packet = None

    # -- incoming --------------------------------------------------------

    def handles_msg(self, from_addr: Address, msg: UdpMsg) -> bool:
        """Whether a datagram from ``from_addr`` belongs to this peer."""
        if self._udp is None:
            return False
        return tuple(from_addr) == self._peer_addr

    def on_msg(self, msg: UdpMsg, length: int) -> None:
        """Filter and dispatch one message received from the peer."""
        seq = msg.sequence_number
        if msg.type not in (MsgType.SYNC_REQUEST, MsgType.SYNC_REPLY):
            if msg.magic != self._remote_magic_number:
                self._log_msg("recv rejecting", msg)
                return
            skipped = (seq - self._next_recv_seq) & 0xFFFF
            if skipped > MAX_SEQ_DISTANCE:
                self._log(
                    f"dropping out of order packet (seq: {seq}, last seq:{self._next_recv_seq})\n"
                )
                return

        self._next_recv_seq = seq
        self._log_msg("recv", msg)
        handler = self._handlers.get(msg.type, self._on_invalid)
        if handler(msg, length):
            self._last_recv_time = current_time_ms()
            if self._disconnect_notify_sent and self._current_state is _State.RUNNING:
                self._queue_event(ProtocolEvent(ProtocolEventType.NETWORK_RESUMED))
                self._disconnect_notify_sent = False

    def _on_invalid(self, msg: UdpMsg, length: int) -> bool:
        ensure(False, "Invalid msg in UdpProtocol")
        return False

    def _on_sync_request(self, msg: UdpMsg, length: int) -> bool:
        if self._remote_magic_number != 0 and msg.magic != self._remote_magic_number:
            self._log(
                f"Ignoring sync request from unknown endpoint "
                f"({msg.magic} != {self._remote_magic_number}).\n"
            )
            return False
        self._send_msg(UdpMsg(MsgType.SYNC_REPLY, random_reply=msg.random_request))
        return True

    def _on_sync_reply(self, msg: UdpMsg, length: int) -> bool:
        if self._current_state is not _State.SYNCING:
            self._log("Ignoring SyncReply while not synching.\n")
            return msg.magic == self._remote_magic_number

        if msg.random_reply != self._sync_random:
            self._log(f"sync reply {msg.random_reply} != {self._sync_random}.  Keep looking...\n")
            return False

        if not self._connected:
            self._queue_event(ProtocolEvent(ProtocolEventType.CONNECTED))
            self._connected = True

        self._log(f"Checking sync state ({self._roundtrips_remaining} round trips remaining).\n")
        self._roundtrips_remaining -= 1
        if self._roundtrips_remaining == 0:
            self._log("Synchronized!\n")
            self._queue_event(ProtocolEvent(ProtocolEventType.SYNCHRONIZED))
            self._current_state = _State.RUNNING
            self._last_quality_report_time = 0
            self._last_network_stats_interval = 0
            self._last_input_packet_recv_time = 0
            self._last_received_input.frame = NULL_FRAME
            self._remote_magic_number = msg.magic
        else:
            self._queue_event(
                ProtocolEvent(
                    ProtocolEventType.SYNCHRONIZING,
                    total=NUM_SYNC_PACKETS,
                    count=NUM_SYNC_PACKETS - self._roundtrips_remaining,
                )
            )
            self._send_sync_request()
        return True

    def _on_input(self, msg: UdpMsg, length: int) -> bool:
        if msg.disconnect_requested:
            if self._current_state is not _State.DISCONNECTED and not self._disconnect_event_sent:
                self._log("Disconnecting endpoint on remote request.\n")
                self._queue_event(ProtocolEvent(ProtocolEventType.DISCONNECTED))
                self._disconnect_event_sent = True
        else:
            for local, remote in zip(self._peer_connect_status, msg.peer_connect_status):
                ensure(remote.last_frame >= local.last_frame, "peer connect status went backwards")
                local.disconnected = local.disconnected or remote.disconnected
                local.last_frame = max(local.last_frame, remote.last_frame)

        last_received_frame_number = self._last_received_input.frame
        if msg.num_bits:
            base = GameInput(
                self._last_received_input.frame, msg.input_size, bytearray(self._last_received_input.bits)
            )
            if base.frame < 0:
                base.frame = msg.start_frame - 1
            decoded = decode_inputs(msg.bits, msg.num_bits, msg.start_frame, base)
            for received in decoded:
                self._last_input_packet_recv_time = current_time_ms()
                self._log(
                    f"Sending frame {received.frame} to emu queue {self._queue} "
                    f"({received.describe()}).\n"
                )
                self._queue_event(ProtocolEvent(ProtocolEventType.INPUT, input=received))
            self._last_received_input = decoded[-1].copy() if decoded else base
        ensure(
            self._last_received_input.frame >= last_received_frame_number,
            "received input frame went backwards",
        )

        self._discard_acked_output(msg.ack_frame)
        return True

    def _on_input_ack(self, msg: UdpMsg, length: int) -> bool:
        self._discard_acked_output(msg.ack_frame)
        return True

    def _discard_acked_output(self, ack_frame: int) -> None:
        while not self._pending_output.empty() and self._pending_output.front().frame < ack_frame:
            self._log(f"Throwing away pending output frame {self._pending_output.front().frame}\n")
            self._last_acked_input = self._pending_output.pop()

    def _on_quality_report(self, msg: UdpMsg, length: int) -> bool:
        self._send_msg(UdpMsg(MsgType.QUALITY_REPLY, pong=msg.ping))
        self._remote_frame_advantage = msg.frame_advantage
        return True

    def _on_quality_reply(self, msg: UdpMsg, length: int) -> bool:
        self._round_trip_time = current_time_ms() - msg.pong
        return True

    def _on_keep_alive(self, msg: UdpMsg, length: int) -> bool:
        return True

    # -- polling ---------------------------------------------------------

    def on_loop_poll(self, cookie: Any) -> bool:
        """Drive retries, keep-alives, quality reports and timeouts."""
        if self._udp is None:
            return True

        now = current_time_ms()
        self._pump_send_queue()

        if self._current_state is _State.SYNCING:
            next_interval = (
                SYNC_FIRST_RETRY_INTERVAL
                if self._roundtrips_remaining == NUM_SYNC_PACKETS
                else SYNC_RETRY_INTERVAL
            )
            if self._last_send_time and self._last_send_time + next_interval < now:
                self._log(f"No luck syncing after {next_interval} ms... Re-queueing sync packet.\n")
                self._send_sync_request()

        elif self._current_state is _State.RUNNING:
            if (
                not self._last_input_packet_recv_time
                or self._last_input_packet_recv_time + RUNNING_RETRY_INTERVAL < now
            ):
                self._log(
                    f"Haven't exchanged packets in a while (last received:"
                    f"{self._last_received_input.frame}  last sent:{self._last_sent_input.frame}).  "
                    f"Resending.\n"
                )
                self._send_pending_output()
                self._last_input_packet_recv_time = now

            if (
                not self._last_quality_report_time
                or self._last_quality_report_time + QUALITY_REPORT_INTERVAL < now
            ):
                self._send_msg(
                    UdpMsg(
                        MsgType.QUALITY_REPORT,
                        ping=current_time_ms(),
                        frame_advantage=self._local_frame_advantage,
                    )
                )
                self._last_quality_report_time = now

            if (
                not self._last_network_stats_interval
                or self._last_network_stats_interval + NETWORK_STATS_INTERVAL < now
            ):
                self._update_network_stats()
                self._last_network_stats_interval = now

            if self._last_send_time and self._last_send_time + KEEP_ALIVE_INTERVAL < now:
                self._log("Sending keep alive packet\n")
                self._send_msg(UdpMsg(MsgType.KEEP_ALIVE))

            if (
                self._disconnect_timeout
                and self._disconnect_notify_start
                and not self._disconnect_notify_sent
                and self._last_recv_time + self._disconnect_notify_start < now
            ):
                self._log(
                    f"Endpoint has stopped receiving packets for {self._disconnect_notify_start} ms."
                    f"  Sending notification.\n"
                )
                self._queue_event(
                    ProtocolEvent(
                        ProtocolEventType.NETWORK_INTERRUPTED,
                        disconnect_timeout=self._disconnect_timeout - self._disconnect_notify_start,
                    )
                )
                self._disconnect_notify_sent = True

            if self._disconnect_timeout and self._last_recv_time + self._disconnect_timeout < now:
                if not self._disconnect_event_sent:
                    self._log(
                        f"Endpoint has stopped receiving packets for {self._disconnect_timeout} ms."
                        f"  Disconnecting.\n"
                    )
                    self._queue_event(ProtocolEvent(ProtocolEventType.DISCONNECTED))
                    self._disconnect_event_sent = True

        elif self._current_state is _State.DISCONNECTED:
            if self._shutdown_timeout < now:
                self._log("Shutting down udp connection.\n")
                self._udp = None
                self._shutdown_timeout = 0

        return True

    # -- stats and events ------------------------------------------------

    def _update_network_stats(self) -> None:
        now = current_time_ms()
        if self._stats_start_time == 0:
            self._stats_start_time = now

        overhead_bytes = UDP_HEADER_SIZE * self._packets_sent
        total_bytes_sent = self._bytes_sent + overhead_bytes
        elapsed_ms = now - self._stats_start_time
        seconds = elapsed_ms / 1000.0
        self._kbps_sent = int(total_bytes_sent / seconds / 1024) if seconds > 0 else 0
        udp_overhead = 100.0 * overhead_bytes / self._bytes_sent if self._bytes_sent else 0.0
        pps = self._packets_sent * 1000 / elapsed_ms if elapsed_ms > 0 else 0.0

        self._log(
            f"Network Stats -- Bandwidth: {self._kbps_sent:.2f} KBps   Packets Sent: "
            f"{self._packets_sent:5d} ({pps:.2f} pps)   KB Sent: {total_bytes_sent / 1024.0:.2f}    "
            f"UDP Overhead: {udp_overhead:.2f} %.\n"
        )

    def get_network_stats(self) -> NetworkStats:
        return NetworkStats(
            ping=self._round_trip_time,
            send_queue_len=len(self._pending_output),
            kbps_sent=self._kbps_sent,
            remote_frames_behind=self._remote_frame_advantage,
            local_frames_behind=self._local_frame_advantage,
        )

    def get_event(self) -> ProtocolEvent | None:
        """The next queued event, or None."""
        if self._event_queue.empty():
            return None
        return self._event_queue.pop()

    def set_local_frame_number(self, frame: int) -> None:
        """Estimate how many frames this side is behind the peer."""
        remote_frame = self._last_received_input.frame + int(self._round_trip_time * 60 / 1000)
        self._local_frame_advantage = remote_frame - frame

    def recommend_frame_delay(self) -> int:
        return self._timesync.recommend_frame_wait_duration(False)

    def _queue_event(self, event: ProtocolEvent) -> None:
        if event.type is ProtocolEventType.SYNCHRONIZED:
            self._log("Queuing event (event: Synchronized).\n")
        self._event_queue.push(event)

    # -- logging ---------------------------------------------------------

    def _log(self, message: str) -> None:
        log(f"udpproto{self._queue} | {message}")

    def _log_msg(self, prefix: str, msg: UdpMsg) -> None:
        if msg.type is MsgType.SYNC_REQUEST:
            self._log(f"{prefix} sync-request ({msg.random_request}).\n")
        elif msg.type is MsgType.SYNC_REPLY:
            self._log(f"{prefix} sync-reply ({msg.random_reply}).\n")
        elif msg.type is MsgType.QUALITY_REPORT:
            self._log(f"{prefix} quality report.\n")
        elif msg.type is MsgType.QUALITY_REPLY:
            self._log(f"{prefix} quality reply.\n")
        elif msg.type is MsgType.KEEP_ALIVE:
            self._log(f"{prefix} keep alive.\n")
        elif msg.type is MsgType.INPUT:
            self._log(f"{prefix} game-compressed-input {msg.start_frame} (+ {msg.num_bits} bits).\n")
        elif msg.type is MsgType.INPUT_ACK:
            self._log(f"{prefix} input ack.\n")
        else:
            self._log(f"{prefix} invalid message.\n")