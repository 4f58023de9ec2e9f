"""Data models for the bufferflow library."""

import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Literal, NamedTuple


class ReleaseKind(IntEnum):
    """Payload delivered to a sender blocked in block_until_ready()."""

    RESUME = 1  # Proceed to send the command that triggered the wait
    WIPE = 2  # Abandon the pending send, the queue has been cleared


class PortState(Enum):
    """Serial port driver lifecycle states."""

    CLOSED = "closed"
    OPEN = "open"


@dataclass(frozen=True)
class Command:
    """A command handed to the device and awaiting acknowledgement.

    Attributes:
        text: Command text exactly as sent, including terminator.
        id: Caller-supplied correlation id echoed back in completion events.
        byte_length: Bytes this command occupies in the device receive buffer.
    """

    text: str
    id: str
    byte_length: int


class BlockResult(NamedTuple):
    """Outcome of Bufferflow.block_until_ready().

    Attributes:
        proceed: True if the caller may transmit the command.
        ack: True if the device is expected to acknowledge it.
        rewritten: Replacement text to transmit, "" to send the command as given.
    """

    proceed: bool
    ack: bool
    rewritten: str = ""


@dataclass
class ConnectionSnapshot:
    """Latest values observed in incoming data.

    Used to answer synthetic *status* / *init* queries without re-querying
    the device.
    """

    last_status: str = ""
    firmware_version: str = ""


# ============================================================================
# Events published to the event sink
# ============================================================================


@dataclass
class CommandComplete:
    """A queued command was acknowledged ("Complete") or rejected ("Error").

    buf_size and data are for in-process consumers only and are left out of
    the wire form.
    """

    cmd: Literal["Complete", "Error"]
    id: str
    port: str
    buf_size: int = 0
    data: str = ""

    def to_wire(self) -> Dict[str, Any]:
        return {"Cmd": self.cmd, "Id": self.id, "P": self.port}


@dataclass
class LineData:
    """One line (or raw chunk) of device output forwarded to clients."""

    port: str
    data: str

    def to_wire(self) -> Dict[str, Any]:
        return {"P": self.port, "D": self.data}


@dataclass
class WipedQueue:
    """The local buffer was wiped; qcnt is the port's remaining in-flight count."""

    qcnt: int
    port: str
    cmd: str = field(default="WipedQueue", init=False)

    def to_wire(self) -> Dict[str, Any]:
        return {"Cmd": self.cmd, "QCnt": self.qcnt, "Port": self.port}


@dataclass
class PortError:
    """Free-text diagnostic, e.g. a failed write to the transport."""

    message: str

    def to_wire(self) -> str:
        return self.message


def to_json(event: Any) -> str:
    """Serialize an event to the text sent to remote clients."""
    wire = event.to_wire()
    if isinstance(wire, str):
        return wire
    return json.dumps(wire)
