"""Fake serial port that simulates Repetier firmware behavior.

Models the parts of the firmware that matter for flow control: a receive
buffer of limited size, one "ok" per executed command, the M114 status
report, realtime feed hold / resume / reset characters and the boot banner.
"""

import logging
import threading
from collections import deque
from typing import Deque, List, Optional, Set

logger = logging.getLogger(__name__)

BANNER_LINES = ("start", "FIRMWARE_NAME:Repetier_{version} FIRMWARE_URL:https://github.com/repetier/Repetier-Firmware/")


class FakeSerial:
    """Deterministic simulator of a Repetier controller on a serial line.

    Commands written by the host sit in a simulated receive buffer until
    executed. With auto_execute=True (default) each complete line executes
    immediately; otherwise tests call execute() to acknowledge commands one
    at a time, which lets them hold the device buffer full.
    """

    def __init__(
        self,
        rx_buffer_size: int = 127,
        auto_execute: bool = True,
        firmware_version: str = "1.0.4",
        boot_banner: bool = False,
    ) -> None:
        """Initialize fake controller.

        Args:
            rx_buffer_size: Device receive buffer size in bytes
            auto_execute: Acknowledge each command as soon as it arrives
            firmware_version: Version reported in the boot banner
            boot_banner: Emit the boot banner immediately
        """
        self.rx_buffer_size = rx_buffer_size
        self.auto_execute = auto_execute
        self.firmware_version = firmware_version

        # Commands answered with "error" instead of "ok"
        self.reject: Set[str] = set()

        # Raise on every write, to simulate a pulled cable
        self.fail_writes = False

        # Receive buffer accounting
        self.rx_used = 0
        self.max_rx_used = 0
        self.overflowed = False

        # Every complete line and realtime character received, in order
        self.received: List[str] = []
        self.realtime: List[str] = []

        self.held = False
        self.position = {"X": 0.0, "Y": 0.0, "Z": 0.0, "E": 0.0}

        self._pending: Deque[str] = deque()
        self._input = bytearray()
        self._output = bytearray()
        self._cond = threading.Condition()

        # Port state
        self.is_open = True
        self.timeout = 0.1

        if boot_banner:
            self.reboot()

    # ========================================================================
    # SerialLike interface
    # ========================================================================

    def close(self) -> None:
        with self._cond:
            self.is_open = False
            self._cond.notify_all()
        logger.debug("FakeSerial closed")

    def write(self, data: bytes) -> int:
        """Write data to device (from host perspective)."""
        if not self.is_open:
            raise RuntimeError("Port is closed")
        if self.fail_writes:
            raise OSError("Device not configured")

        with self._cond:
            for byte in data:
                char = chr(byte)
                if char in "!~\x18":
                    self._handle_realtime(char)
                else:
                    self._input.append(byte)
            self._process_input()

        return len(data)

    def read(self, size: int = 1) -> bytes:
        """Read up to size bytes, waiting up to timeout for the first."""
        with self._cond:
            if not self.is_open:
                raise RuntimeError("Port is closed")
            if not self._output:
                self._cond.wait(timeout=self.timeout)
            chunk = bytes(self._output[:size])
            del self._output[:size]
            return chunk

    @property
    def in_waiting(self) -> int:
        with self._cond:
            return len(self._output)

    def flush(self) -> None:
        """Flush output buffer (no-op for fake serial)."""
        pass

    # ========================================================================
    # Test controls
    # ========================================================================

    def execute(self, count: Optional[int] = None) -> int:
        """Execute queued commands, emitting one response each.

        Args:
            count: Number of commands to execute, None for all

        Returns:
            Number of commands executed
        """
        with self._cond:
            return self._execute(count)

    def pending_commands(self) -> List[str]:
        with self._cond:
            return list(self._pending)

    def reboot(self) -> None:
        """Simulate a reset: drop everything buffered and print the banner."""
        with self._cond:
            self._pending.clear()
            self._input.clear()
            self.rx_used = 0
            self.held = False
            for line in BANNER_LINES:
                self._emit(line.format(version=self.firmware_version))

    def emit(self, text: str) -> None:
        """Send raw text to the host."""
        with self._cond:
            self._output.extend(text.encode("ascii"))
            self._cond.notify_all()

    # ========================================================================
    # Internal: Input Processing
    # ========================================================================

    def _handle_realtime(self, char: str) -> None:
        self.realtime.append(char)
        if char == "!":
            self.held = True
        elif char == "~":
            self.held = False
            if self.auto_execute:
                self._execute(None)
        elif char == "\x18":
            self.reboot()

    def _process_input(self) -> None:
        while b"\n" in self._input:
            idx = self._input.index(b"\n")
            line = self._input[:idx].decode("ascii", errors="ignore")
            del self._input[: idx + 1]

            self.received.append(line)
            self._pending.append(line)
            self.rx_used += len(line) + 1
            self.max_rx_used = max(self.max_rx_used, self.rx_used)
            if self.rx_used > self.rx_buffer_size:
                self.overflowed = True
                logger.warning(f"FakeSerial receive buffer overflow: {self.rx_used} bytes")

        if self.auto_execute and not self.held:
            self._execute(None)

    def _execute(self, count: Optional[int]) -> int:
        executed = 0
        while self._pending and (count is None or executed < count):
            line = self._pending.popleft()
            self.rx_used -= len(line) + 1
            executed += 1

            if line == "M114":
                self._emit(
                    "ok C: X:{X:.2f} Y:{Y:.2f} Z:{Z:.3f} E:{E:.4f}".format(**self.position)
                )
            elif line in self.reject:
                self._emit(f"error:Unknown command: {line}")
            else:
                self._apply_move(line)
                self._emit("ok")
        return executed

    def _apply_move(self, line: str) -> None:
        if not (line.startswith("G0") or line.startswith("G1")):
            return
        axis = None
        number = ""
        for char in line[2:] + " ":
            if char in self.position:
                if axis and number:
                    self.position[axis] = float(number)
                axis, number = char, ""
            elif char in "-.0123456789" and axis:
                number += char
            else:
                if axis and number:
                    self.position[axis] = float(number)
                axis, number = None, ""

    def _emit(self, line: str) -> None:
        self._output.extend((line + "\n").encode("ascii"))
        self._cond.notify_all()
