"""Non-blocking UDP endpoint driven by a poll loop."""

from __future__ import annotations

import contextlib
import socket
import struct
from abc import ABC, abstractmethod
from typing import Any

from .log import ensure, log
from .poll import Poll, PollSink
from .udp_msg import UdpMsg

MAX_UDP_ENDPOINTS = 16
MAX_UDP_PACKET_SIZE = 4096

Address = tuple[str, int]


def _log(message: str) -> None:
    log(f"udp | {message}")


class UdpCallbacks(ABC):
    """Receiver of datagrams read by :class:`Udp`."""

    @abstractmethod
    def on_msg(self, from_addr: Address, msg: UdpMsg, length: int) -> None:
        """Handle one message received from ``from_addr``."""


def create_socket(bind_port: int, retries: int) -> socket.socket:
    """Open a non-blocking UDP socket bound to the first free port of a range.

    Ports ``bind_port`` through ``bind_port + retries`` are tried in turn;
    OSError is raised if none can be bound.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        with contextlib.suppress(OSError):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 0, 0))
        sock.setblocking(False)
        last_error: OSError | None = None
        for port in range(bind_port, bind_port + retries + 1):
            try:
                sock.bind(("", port))
            except OSError as exc:
                last_error = exc
                continue
            log(f"Udp bound to port: {port}.\n")
            return sock
    except BaseException:
        sock.close()
        raise
    sock.close()
    raise OSError(f"could not bind a udp socket to ports {bind_port}-{bind_port + retries}") from last_error


class Udp(PollSink):
    """Sends datagrams and hands every received one to its callbacks."""

    def __init__(self) -> None:
        self._socket: socket.socket | None = None
        self._callbacks: UdpCallbacks | None = None
        self._poll: Poll | None = None

    @property
    def local_address(self) -> Address:
        ensure(self._socket is not None, "udp socket is not open")
        return self._socket.getsockname()

    def init(self, port: int, poll: Poll, callbacks: UdpCallbacks) -> None:
        """Register with ``poll`` and bind the socket to ``port``."""
        self._callbacks = callbacks
        self._poll = poll
        poll.register_loop(self)
        _log(f"binding udp socket to port {port}.\n")
        self._socket = create_socket(port, 0)

    def send_to(self, data: bytes, destination: Address) -> None:
        """Send one datagram to ``destination``."""
        ensure(self._socket is not None, "udp socket is not open")
        try:
            sent = self._socket.sendto(data, destination)
        except OSError as exc:
            _log(f"unknown error in sendto ({exc}).\n")
            raise
        _log(f"sent packet length {len(data)} to {destination[0]}:{destination[1]} (ret:{sent}).\n")

    def on_loop_poll(self, cookie: Any) -> bool:
        """Read and dispatch every datagram waiting on the socket."""
        if self._socket is None:
            return True
        while True:
            try:
                data, addr = self._socket.recvfrom(MAX_UDP_PACKET_SIZE)
            except BlockingIOError:
                break
            except OSError as exc:
                _log(f"recvfrom failed: {exc}.\n")
                break
            if not data:
                continue
            _log(f"recvfrom returned (len:{len(data)}  from:{addr[0]}:{addr[1]}).\n")
            try:
                msg = UdpMsg.unpack(data)
            except ValueError as exc:
                _log(f"dropping malformed datagram: {exc}.\n")
                continue
            if self._callbacks is not None:
                self._callbacks.on_msg(addr, msg, len(data))
        return True

    def close(self) -> None:
        """Close the socket if it is open."""
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    def __enter__(self) -> Udp:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()