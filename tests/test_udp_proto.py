import time

import pytest

from rollnet.input_queue import GameInput
from rollnet.log import InvariantError, current_time_ms
from rollnet.poll import Poll
from rollnet.udp_msg import MsgType, UdpMsg
from rollnet.udp_proto import NUM_SYNC_PACKETS, ProtocolEventType, UdpProtocol

ADDR_A = ("127.0.0.1", 7001)
ADDR_B = ("127.0.0.1", 7002)


class FakeUdp:
    def __init__(self):
        self.sent = []

    def send_to(self, data, destination):
        self.sent.append((data, destination))

    def take(self):
        out, self.sent = self.sent, []
        return [UdpMsg.unpack(data) for data, _ in out]


def make(peer=ADDR_B, queue=0):
    udp = FakeUdp()
    proto = UdpProtocol()
    proto.init(udp, Poll(), queue, peer[0], peer[1], None)
    return proto, udp


def drain(proto):
    return list(iter(proto.get_event, None))


def exchange(a, a_udp, b, b_udp):
    while a_udp.sent or b_udp.sent:
        for data, _ in a_udp.sent[:]:
            a_udp.sent.remove((data, _))
            b.on_msg(UdpMsg.unpack(data), len(data))
        for data, _ in b_udp.sent[:]:
            b_udp.sent.remove((data, _))
            a.on_msg(UdpMsg.unpack(data), len(data))


def connected_pair():
    a, a_udp = make(ADDR_B, 0)
    b, b_udp = make(ADDR_A, 1)
    a.synchronize()
    b.synchronize()
    exchange(a, a_udp, b, b_udp)
    return a, a_udp, b, b_udp


def test_init_and_handles_msg():
    proto = UdpProtocol()
    msg = UdpMsg(MsgType.KEEP_ALIVE)
    assert proto.handles_msg(ADDR_B, msg) is False
    proto, _ = make()
    assert proto.is_initialized() is True
    assert proto.handles_msg(ADDR_B, msg) is True
    assert proto.handles_msg(("127.0.0.1", 9999), msg) is False


def test_synchronize_sends_sync_requests_in_sequence():
    proto, udp = make()
    proto.synchronize()
    proto.synchronize()
    sent = udp.take()
    assert [m.type for m in sent] == [MsgType.SYNC_REQUEST, MsgType.SYNC_REQUEST]
    assert [m.sequence_number for m in sent] == [0, 1]
    assert sent[0].magic == sent[1].magic != 0
    assert udp.sent == []


def test_sync_handshake_events():
    proto, udp = make()
    proto.synchronize()
    for _ in range(NUM_SYNC_PACKETS):
        request = udp.take()[-1]
        reply = UdpMsg(MsgType.SYNC_REPLY, magic=4321, random_reply=request.random_request)
        proto.on_msg(reply, reply.packet_size())
    events = drain(proto)
    assert [e.type for e in events] == (
        [ProtocolEventType.CONNECTED]
        + [ProtocolEventType.SYNCHRONIZING] * (NUM_SYNC_PACKETS - 1)
        + [ProtocolEventType.SYNCHRONIZED]
    )
    assert [e.count for e in events[1:-1]] == list(range(1, NUM_SYNC_PACKETS))
    assert all(e.total == NUM_SYNC_PACKETS for e in events[1:-1])
    assert proto.is_running() and proto.is_synchronized()


def test_wrong_sync_reply_ignored():
    proto, udp = make()
    proto.synchronize()
    request = udp.take()[-1]
    reply = UdpMsg(MsgType.SYNC_REPLY, random_reply=(request.random_request + 1) & 0xFFFF)
    proto.on_msg(reply, reply.packet_size())
    assert drain(proto) == []
    assert proto.is_running() is False


def test_sync_request_is_answered():
    proto, udp = make()
    request = UdpMsg(MsgType.SYNC_REQUEST, magic=77, random_request=1234)
    proto.on_msg(request, request.packet_size())
    sent = udp.take()
    assert len(sent) == 1
    assert sent[0].type is MsgType.SYNC_REPLY
    assert sent[0].random_reply == 1234


def test_pair_synchronizes():
    a, _, b, _ = connected_pair()
    assert a.is_running() and b.is_running()
    assert drain(a)[-1].type is ProtocolEventType.SYNCHRONIZED
    assert drain(b)[-1].type is ProtocolEventType.SYNCHRONIZED


def test_inputs_are_delivered_and_acked():
    a, a_udp, b, b_udp = connected_pair()
    drain(a)
    drain(b)
    payloads = [b"\x01\x00\x00\x00", b"\x03\x00\x00\x00", b"\x00\x80\x00\x00"]
    for frame, bits in enumerate(payloads):
        a.send_input(GameInput(frame, 4, bytearray(bits)))
    assert a.get_network_stats().send_queue_len == 3
    for data, _ in a_udp.sent:
        b.on_msg(UdpMsg.unpack(data), len(data))
    a_udp.sent.clear()

    events = drain(b)
    assert [e.type for e in events] == [ProtocolEventType.INPUT] * 3
    assert [e.input.frame for e in events] == [0, 1, 2]
    assert [bytes(e.input.bits) for e in events] == payloads

    b.send_input_ack()
    ack = b_udp.take()[-1]
    assert ack.type is MsgType.INPUT_ACK
    assert ack.ack_frame == 2
    a.on_msg(ack, ack.packet_size())
    assert a.get_network_stats().send_queue_len == 1

    b.set_local_frame_number(5)
    assert b.get_network_stats().local_frames_behind == 2 - 5


def test_disconnect_request_reaches_peer():
    a, a_udp, b, _ = connected_pair()
    drain(b)
    a.disconnect()
    a.send_input(GameInput(0, 4))
    sent = a_udp.take()
    assert sent[-1].disconnect_requested is True
    b.on_msg(sent[-1], sent[-1].packet_size())
    assert [e.type for e in drain(b)] == [ProtocolEventType.DISCONNECTED]


def test_quality_report_reply_and_filtering():
    proto, udp = make()
    report = UdpMsg(MsgType.QUALITY_REPORT, magic=0, sequence_number=10, ping=555, frame_advantage=-4)
    proto.on_msg(report, report.packet_size())
    replies = udp.take()
    assert [m.type for m in replies] == [MsgType.QUALITY_REPLY]
    assert replies[0].pong == 555
    assert proto.get_network_stats().remote_frames_behind == -4

    stale = UdpMsg(MsgType.QUALITY_REPORT, magic=0, sequence_number=5, ping=1)
    proto.on_msg(stale, stale.packet_size())
    wrong_magic = UdpMsg(MsgType.QUALITY_REPORT, magic=99, sequence_number=11, ping=1)
    proto.on_msg(wrong_magic, wrong_magic.packet_size())
    assert udp.take() == []


def test_quality_reply_sets_ping():
    proto, _ = make()
    reply = UdpMsg(MsgType.QUALITY_REPLY, magic=0, sequence_number=1, pong=current_time_ms())
    proto.on_msg(reply, reply.packet_size())
    ping = proto.get_network_stats().ping
    assert 0 <= ping < 1000


def test_invalid_message_raises():
    proto, _ = make()
    with pytest.raises(InvariantError):
        proto.on_msg(UdpMsg(MsgType.INVALID), 5)


def test_initial_peer_status_and_frame_delay():
    proto, _ = make()
    assert proto.get_peer_connect_status(0) == (True, -1)
    assert proto.recommend_frame_delay() == 0


def test_timeout_interrupt_disconnect_and_resume():
    a, a_udp, b, b_udp = connected_pair()
    drain(a)
    a.set_disconnect_notify_start(1)
    a.set_disconnect_timeout(5)
    time.sleep(0.03)
    assert a.on_loop_poll(None) is True
    events = drain(a)
    assert [e.type for e in events] == [
        ProtocolEventType.NETWORK_INTERRUPTED,
        ProtocolEventType.DISCONNECTED,
    ]
    assert events[0].disconnect_timeout == 4

    a_udp.sent.clear()
    b.on_loop_poll(None)
    keep = [m for m in b_udp.take() if m.type is not MsgType.SYNC_REQUEST]
    assert keep
    a.on_msg(keep[0], keep[0].packet_size())
    assert [e.type for e in drain(a)] == [ProtocolEventType.NETWORK_RESUMED]


def test_running_loop_sends_pending_and_quality_report():
    a, a_udp, _, _ = connected_pair()
    a_udp.sent.clear()
    a.on_loop_poll(None)
    types = [m.type for m in a_udp.take()]
    assert MsgType.INPUT in types
    assert MsgType.QUALITY_REPORT in types
    assert a.get_network_stats().kbps_sent >= 0


def test_shutdown_after_disconnect_keeps_until_timer():
    a, _, _, _ = connected_pair()
    a.disconnect()
    a.on_loop_poll(None)
    assert a.is_initialized() is True
    assert a.is_running() is False