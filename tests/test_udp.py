import time

import pytest

from rollnet.log import InvariantError
from rollnet.poll import Poll
from rollnet.udp import Udp, UdpCallbacks, create_socket
from rollnet.udp_msg import MsgType, UdpMsg


class Collector(UdpCallbacks):
    def __init__(self):
        self.received = []

    def on_msg(self, from_addr, msg, length):
        self.received.append((from_addr, msg, length))


def _drain(udp, collector, count):
    for _ in range(400):
        udp.on_loop_poll(None)
        if len(collector.received) >= count:
            break
        time.sleep(0.005)


def _endpoint():
    poll = Poll()
    collector = Collector()
    udp = Udp()
    udp.init(0, poll, collector)
    return udp, poll, collector


def test_create_socket_is_nonblocking_and_bound():
    with create_socket(0, 0) as sock:
        assert sock.getblocking() is False
        assert sock.getsockname()[1] > 0


def test_send_and_receive_roundtrip():
    sender, _, _ = _endpoint()
    receiver, _, collector = _endpoint()
    with sender, receiver:
        msg = UdpMsg(MsgType.QUALITY_REPLY, magic=77, sequence_number=3, pong=123456)
        sender.send_to(msg.pack(), ("127.0.0.1", receiver.local_address[1]))
        _drain(receiver, collector, 1)
        assert len(collector.received) == 1
        from_addr, got, length = collector.received[0]
        assert got == msg
        assert length == msg.packet_size()
        assert from_addr[1] == sender.local_address[1]


def test_malformed_datagram_is_skipped():
    sender, _, _ = _endpoint()
    receiver, _, collector = _endpoint()
    with sender, receiver:
        destination = ("127.0.0.1", receiver.local_address[1])
        sender.send_to(b"\x01", destination)
        good = UdpMsg(MsgType.KEEP_ALIVE, magic=5, sequence_number=9)
        sender.send_to(good.pack(), destination)
        _drain(receiver, collector, 1)
        assert [entry[1] for entry in collector.received] == [good]


def test_poll_pump_drives_receiving():
    sender, _, _ = _endpoint()
    receiver, poll, collector = _endpoint()
    with sender, receiver:
        msg = UdpMsg(MsgType.SYNC_REPLY, magic=1, sequence_number=2, random_reply=42)
        sender.send_to(msg.pack(), ("127.0.0.1", receiver.local_address[1]))
        results = []
        for _ in range(400):
            results.append(poll.pump(0))
            if collector.received:
                break
            time.sleep(0.005)
        assert collector.received[0][1] == msg
        assert not any(results)


def test_on_loop_poll_with_nothing_pending():
    receiver, _, collector = _endpoint()
    with receiver:
        assert receiver.on_loop_poll(None) is True
        assert collector.received == []


def test_send_without_socket_raises():
    with pytest.raises(InvariantError):
        Udp().send_to(b"data", ("127.0.0.1", 9))


def test_on_loop_poll_without_socket_returns_true():
    assert Udp().on_loop_poll(None) is True


def test_context_manager_closes_socket():
    udp, _, _ = _endpoint()
    with udp:
        assert udp.local_address[1] > 0
    with pytest.raises(InvariantError):
        udp.local_address