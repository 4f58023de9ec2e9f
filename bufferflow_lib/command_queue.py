"""Thread-safe FIFO of commands awaiting acknowledgement from the device."""

import logging
import threading
from collections import deque
from typing import Optional, Tuple

from bufferflow_lib.models import Command

logger = logging.getLogger(__name__)


class CommandQueue:
    """Ordered record of in-flight commands with byte-length accounting.

    Commands are polled in the order they were pushed, matching the firmware's
    FIFO execution order. No upper bound is enforced here; the flow controller
    decides when the device buffer is full.
    """

    def __init__(self) -> None:
        self._commands: deque[Command] = deque()
        self._lock = threading.Lock()
        self._total_bytes = 0

    def push(self, text: str, id: str) -> None:
        """Append a command (thread-safe).

        Args:
            text: Command text as it will be sent to the device
            id: Correlation id reported back on completion
        """
        command = Command(text=text, id=id, byte_length=len(text))
        with self._lock:
            self._commands.append(command)
            self._total_bytes += command.byte_length
            logger.debug(
                f"Pushed {text!r} (id={id}), queue: {len(self._commands)} items, "
                f"{self._total_bytes} bytes"
            )

    def poll(self) -> Optional[Tuple[str, str]]:
        """Remove and return the oldest command as (text, id).

        Returns:
            (text, id) of the oldest command, or None if the queue is empty
        """
        with self._lock:
            if not self._commands:
                logger.error("poll() called on an empty command queue")
                return None

            command = self._commands.popleft()
            self._total_bytes -= command.byte_length
            return command.text, command.id

    def clear(self) -> int:
        """Remove all commands without returning them (thread-safe).

        Returns:
            Number of commands discarded
        """
        with self._lock:
            count = len(self._commands)
            self._commands.clear()
            self._total_bytes = 0
            logger.debug(f"Cleared {count} commands from queue")
            return count

    def total_bytes(self) -> int:
        """Sum of byte lengths of all queued commands."""
        with self._lock:
            return self._total_bytes

    def count_of_items(self) -> int:
        """Number of queued commands."""
        with self._lock:
            return len(self._commands)

    def __len__(self) -> int:
        return self.count_of_items()

    def __repr__(self) -> str:
        with self._lock:
            ids = [c.id for c in self._commands]
            return f"CommandQueue(items={len(ids)}, bytes={self._total_bytes}, ids={ids})"
