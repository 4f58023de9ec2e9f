"""Byte-level serial link shared by a port's writer, reader and status poller."""

import logging
import threading
from typing import Protocol

from bufferflow_lib import protocol
from bufferflow_lib.errors import SerialIOError

logger = logging.getLogger(__name__)


class SerialLike(Protocol):
    """The subset of serial.Serial a transport uses (FakeSerial implements it too)."""

    def write(self, data: bytes) -> int:
        ...

    def read(self, size: int = 1) -> bytes:
        """Return up to size bytes, or b"" once the read timeout expires."""
        ...

    def flush(self) -> None:
        """Block until written bytes have left the host."""
        ...

    def close(self) -> None:
        ...

    @property
    def in_waiting(self) -> int:
        """Bytes received and not yet read."""
        ...

    @property
    def is_open(self) -> bool:
        ...


class Transport:
    """Raw byte pipe to the controller.

    Three threads use one transport: the port writer (commands), the status
    poller (queries) and a caller writing realtime characters. Writes hold
    a lock so one write's bytes never land in the middle of another's. Reads
    come only from the port reader thread and take no lock.
    """

    def __init__(self, serial_port: SerialLike) -> None:
        """Wrap an already-open serial object.

        Args:
            serial_port: serial.Serial, or FakeSerial in tests
        """
        self._serial = serial_port
        self._write_lock = threading.Lock()

    @classmethod
    def open(
        cls,
        port: str,
        baud: int = protocol.DEFAULT_BAUD,
        timeout_s: float = protocol.DEFAULT_READ_TIMEOUT,
    ) -> "Transport":
        """Open a controller's serial device with pyserial, 8N1, no handshaking.

        Args:
            port: Device path or name ("/dev/ttyUSB0", "COM3")
            baud: Line speed, 115200 for Repetier boards
            timeout_s: Read timeout. Kept short so the reader thread notices
                a stop request within one timeout.

        Raises:
            SerialIOError: If pyserial is missing or the device cannot be opened
        """
        try:
            import serial  # type: ignore
        except ImportError as e:
            raise SerialIOError("pyserial is required to open a real port: pip install pyserial") from e

        try:
            link = serial.Serial(
                port=port,
                baudrate=baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=timeout_s,
                write_timeout=2.0,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
        except Exception as e:
            raise SerialIOError(f"Failed to open {port} at {baud} baud: {e}") from e

        logger.info(f"Opened {port} at {baud} baud (read timeout {timeout_s}s)")
        return cls(link)

    def close(self) -> None:
        with self._write_lock:
            if self._serial.is_open:
                self._serial.close()
                logger.info("Serial link closed")

    @property
    def is_open(self) -> bool:
        return self._serial.is_open

    def write_bytes(self, data: bytes) -> int:
        """Send bytes to the controller and flush them out.

        Returns:
            Number of bytes written

        Raises:
            SerialIOError: If the link is closed or the write fails
        """
        with self._write_lock:
            if not self._serial.is_open:
                raise SerialIOError("Serial link is closed")

            try:
                sent = self._serial.write(data)
                self._serial.flush()
            except Exception as e:
                raise SerialIOError(f"Failed to write to port: {e}") from e

        logger.debug(f"Wrote {sent} bytes: {data!r}")
        return sent

    def write_text(self, text: str) -> int:
        """Write command text as ASCII. The caller adds any terminator."""
        return self.write_bytes(text.encode("ascii", errors="replace"))

    def read_available(self, max_bytes: int = protocol.READ_CHUNK_SIZE) -> bytes:
        """Read what the controller has sent so far.

        Waits up to the read timeout for the first byte, then returns at most
        max_bytes without waiting for more.

        Returns:
            Received bytes, b"" if the timeout expired first

        Raises:
            SerialIOError: If the link is closed or the read fails
        """
        if not self._serial.is_open:
            raise SerialIOError("Serial link is closed")

        try:
            chunk = self._serial.read(min(max(self._serial.in_waiting, 1), max_bytes))
        except Exception as e:
            raise SerialIOError(f"Failed to read from port: {e}") from e

        if chunk:
            logger.debug(f"Read {len(chunk)} bytes: {chunk!r}")
        return chunk
