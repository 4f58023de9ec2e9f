"""
bufferflow_lib - Serial flow control for motion-control firmware.

Keeps a small, unacknowledged device receive buffer from overflowing by
counting in-flight command bytes and blocking the sender until the firmware
acknowledges enough of them. Supports Repetier firmware and a passthrough mode.
"""

from bufferflow_lib.bufferflow import Bufferflow, DefaultBufferflow
from bufferflow_lib.command_queue import CommandQueue
from bufferflow_lib.errors import (
    BufferflowError,
    PortStateError,
    SerialIOError,
    UnknownBufferAlgorithm,
)
from bufferflow_lib.events import CollectingSink, EventSink, Hub
from bufferflow_lib.models import (
    BlockResult,
    CommandComplete,
    LineData,
    PortError,
    PortState,
    ReleaseKind,
    WipedQueue,
)
from bufferflow_lib.pause_gate import PauseGate
from bufferflow_lib.registry import AVAILABLE_BUFFER_ALGORITHMS, create_bufferflow
from bufferflow_lib.repetier import RepetierBufferflow
from bufferflow_lib.serial_port import SerialPort

__version__ = "0.1.0"

__all__ = [
    "AVAILABLE_BUFFER_ALGORITHMS",
    "BlockResult",
    "Bufferflow",
    "BufferflowError",
    "CollectingSink",
    "CommandComplete",
    "CommandQueue",
    "DefaultBufferflow",
    "EventSink",
    "Hub",
    "LineData",
    "PauseGate",
    "PortError",
    "PortState",
    "PortStateError",
    "ReleaseKind",
    "RepetierBufferflow",
    "SerialIOError",
    "SerialPort",
    "UnknownBufferAlgorithm",
    "WipedQueue",
    "create_bufferflow",
]
