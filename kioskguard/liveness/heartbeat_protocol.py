"""
Wire format of the out-of-band heartbeat exchange between the kiosk host and
its supervisor. The host sends `heartbeat:ping`; the supervisor records it and
answers `heartbeat:pong`.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

if TYPE_CHECKING:
    from kioskguard.watchdog.heartbeat import HeartbeatMonitor


HEARTBEAT_PING = "heartbeat:ping"
HEARTBEAT_PONG = "heartbeat:pong"
STATUS_REQUEST = "status:request"
STATUS_RESPONSE = "status:response"

DEFAULT_CHANNEL = "kiosk-heartbeat"

MessageType = Literal["heartbeat:ping", "heartbeat:pong", "status:request", "status:response"]


class HeartbeatMessage(BaseModel):
    type: MessageType
    pid: Optional[int] = None
    sent_at: float = Field(default_factory=time.time)
    channel: str = DEFAULT_CHANNEL


def create_heartbeat_ping(pid: Optional[int] = None, *, channel: str = DEFAULT_CHANNEL) -> HeartbeatMessage:
    return HeartbeatMessage(type=HEARTBEAT_PING, pid=os.getpid() if pid is None else pid, channel=channel)


def create_heartbeat_pong(pid: Optional[int] = None, *, channel: str = DEFAULT_CHANNEL) -> HeartbeatMessage:
    return HeartbeatMessage(type=HEARTBEAT_PONG, pid=os.getpid() if pid is None else pid, channel=channel)


def encode_heartbeat(message: HeartbeatMessage) -> Dict[str, Any]:
    return message.model_dump()


def decode_heartbeat(payload: Any) -> HeartbeatMessage:
    """
    Parse an incoming message. A bare type string ("heartbeat:ping") is accepted
    for peers that only send the message type. Raises ValueError when malformed.
    """
    if isinstance(payload, str):
        payload = {"type": payload}
    if not isinstance(payload, dict):
        raise ValueError("heartbeat message must be an object or a message type string")
    try:
        return HeartbeatMessage.model_validate(payload)
    except ValidationError as e:
        raise ValueError(f"invalid heartbeat message: {e.errors()[0].get('msg', 'invalid')}") from e


def is_heartbeat_ping(message: HeartbeatMessage | str) -> bool:
    return (message if isinstance(message, str) else message.type) == HEARTBEAT_PING


def is_heartbeat_pong(message: HeartbeatMessage | str) -> bool:
    return (message if isinstance(message, str) else message.type) == HEARTBEAT_PONG


@dataclass(frozen=True)
class HeartbeatHandler:
    handle_ping: Callable[[], HeartbeatMessage]
    handle_pong: Callable[[], None]


def create_heartbeat_handler(monitor: "HeartbeatMonitor", *, pid: Optional[int] = None) -> HeartbeatHandler:
    """
    Receiver side of the exchange: a ping counts as a heartbeat and is answered
    with a pong; a pong (reply to our own ping) also counts as a heartbeat.
    """
    channel = monitor.get_config().channel

    def _ping() -> HeartbeatMessage:
        monitor.receive()
        return create_heartbeat_pong(pid, channel=channel)

    def _pong() -> None:
        monitor.receive()

    return HeartbeatHandler(handle_ping=_ping, handle_pong=_pong)
