"""In-memory stand-in for the port that owns a buffer flow."""

import threading
from typing import List, Tuple

from bufferflow_lib.errors import SerialIOError


class FakePort:
    """Records direct writes and holds a staging list the wipe path can drain."""

    def __init__(self, name: str = "/dev/ttyFAKE0") -> None:
        self.name = name
        self.written: List[bytes] = []
        self.staged: List[Tuple[str, str]] = []
        self.fail_writes = False
        self._lock = threading.Lock()
        self._write_event = threading.Event()

    @property
    def items_in_buffer(self) -> int:
        with self._lock:
            return len(self.staged)

    def stage(self, cmd: str, id: str = "") -> None:
        with self._lock:
            self.staged.append((cmd, id))

    def write_direct(self, data: bytes) -> int:
        if self.fail_writes:
            raise SerialIOError("Failed to write to port: device disconnected")
        with self._lock:
            self.written.append(data)
        self._write_event.set()
        return len(data)

    def drain_staged(self) -> int:
        with self._lock:
            count = len(self.staged)
            self.staged.clear()
            return count

    def wait_for_write(self, timeout: float = 5.0) -> bool:
        return self._write_event.wait(timeout=timeout)
