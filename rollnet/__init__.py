"""Rollback netcode building blocks: input queues with prediction, state rollback, time sync and a UDP peer protocol."""

__version__ = "1.0.0"

__all__ = [
    "buffers",
    "events",
    "input_codec",
    "input_queue",
    "log",
    "poll",
    "sync",
    "timesync",
    "udp",
    "udp_msg",
    "udp_proto",
]