"""
Duplex channel wire protocol.

Frames are newline-delimited UTF-8 text of the form
``<workerId>:<messageType>:<value>``. Only the first two colons are
delimiters; the value may contain further colons.
"""

import codecs
from dataclasses import dataclass
from typing import List

from .errors import ProtocolViolation

FRAME_DELIMITER = "\n"

# Message types
HEALTH = "Health"
PLAYER_CLASS = "PlayerClass"
MAP = "Map"
SERVER_INFO = "ServerInfo"
STATUS = "Status"
COMMAND = "Command"
COMMAND_RESPONSE = "CommandResponse"
LOCAL_BOT = "LocalBot"


@dataclass(frozen=True)
class Frame:
    worker_id: int
    message_type: str
    value: str = ""

    def encode(self) -> str:
        return format_frame(self.worker_id, self.message_type, self.value)


def format_frame(worker_id: int, message_type: str, value: str) -> str:
    """Serialize one frame including its trailing delimiter."""
    if FRAME_DELIMITER in value:
        raise ValueError("frame value must not contain a newline")
    return f"{worker_id}:{message_type}:{value}{FRAME_DELIMITER}"


def parse_frame(line: str) -> Frame:
    """
    Parse one frame (without its delimiter).

    Raises:
        ProtocolViolation: fewer than two fields or a non-numeric worker id
    """
    line = line.rstrip("\r")
    parts = line.split(":", 2)
    if len(parts) < 2:
        raise ProtocolViolation(f"Malformed message (not enough parts): {line}")

    raw_id, message_type = parts[0], parts[1]
    value = parts[2] if len(parts) == 3 else ""

    try:
        worker_id = int(raw_id.strip())
    except ValueError:
        raise ProtocolViolation(f"Received message with invalid worker id: {raw_id}") from None
    if worker_id <= 0:
        raise ProtocolViolation(f"Received message with invalid worker id: {raw_id}")
    if not message_type:
        raise ProtocolViolation(f"Malformed message (empty type): {line}")

    return Frame(worker_id=worker_id, message_type=message_type, value=value)


class FrameBuffer:
    """
    Reassemble frames across reads.

    Bytes are decoded incrementally so a multi-byte character split across
    two reads is not corrupted; an incomplete trailing fragment is kept until
    a later read completes it.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, data: bytes) -> List[str]:
        """Add raw bytes and return every complete, non-blank frame line."""
        self._pending += self._decoder.decode(data)
        *lines, self._pending = self._pending.split(FRAME_DELIMITER)
        return [line for line in lines if line.strip()]
