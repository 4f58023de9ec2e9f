"""Serial port driver wiring a transport to a buffer flow.

The port owns the threads a buffer flow runs inside: an outbound writer
that hands each staged command to block_until_ready() before writing it,
and an inbound reader that feeds device output to on_incoming_data().
"""

import logging
import queue
import threading
import time
from typing import Optional, Tuple

from bufferflow_lib import protocol
from bufferflow_lib.bufferflow import Bufferflow
from bufferflow_lib.errors import PortStateError, SerialIOError
from bufferflow_lib.events import EventSink
from bufferflow_lib.models import LineData, PortError, PortState
from bufferflow_lib.registry import create_bufferflow
from bufferflow_lib.transport import SerialLike, Transport

logger = logging.getLogger(__name__)


class SerialPort:
    """One open serial connection with flow-controlled command sending.

    Manages the port lifecycle, the outbound staging queue and the
    writer/reader threads. Thread-safe: send() may be called from any thread.
    """

    def __init__(
        self,
        name: str,
        sink: EventSink,
        buffer_algorithm: str = "default",
        baud: int = protocol.DEFAULT_BAUD,
    ) -> None:
        """Initialize port driver (does not open the port).

        Args:
            name: Serial device name, also the display name in events
            sink: Receives device events and diagnostics
            buffer_algorithm: Firmware buffer flow to use (see registry)
            baud: Baud rate used when opening a real port
        """
        self.name = name
        self.buffer_algorithm = buffer_algorithm
        self.baud = baud
        self._sink = sink

        self._state = PortState.CLOSED
        self._state_lock = threading.Lock()

        self._transport: Optional[Transport] = None
        self._bufferflow: Optional[Bufferflow] = None

        # Commands accepted by send() but not yet taken by the writer
        self._staged: "queue.Queue[Tuple[str, str]]" = queue.Queue()
        self._items_in_buffer = 0
        self._items_lock = threading.Lock()
        # Set while nothing is staged and the writer holds no command
        self._idle = threading.Event()
        self._idle.set()
        self._writer_busy = False

        self._writer_thread: Optional[threading.Thread] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def open(self, serial_port: Optional[SerialLike] = None) -> None:
        """Open the port, create its buffer flow and start I/O threads.

        Args:
            serial_port: Pre-configured serial port object (for testing). If
                        None, the device `name` is opened with pyserial.

        Raises:
            PortStateError: If already open
            SerialIOError: If the port cannot be opened
            UnknownBufferAlgorithm: If buffer_algorithm is not registered
        """
        with self._state_lock:
            if self._state != PortState.CLOSED:
                raise PortStateError(f"Port {self.name} is already open")

            if serial_port is not None:
                transport = Transport(serial_port)
            else:
                transport = Transport.open(self.name, self.baud)

            try:
                self._bufferflow = create_bufferflow(
                    self.buffer_algorithm, self.name, self._sink, port=self
                )
            except Exception:
                transport.close()
                raise

            self._transport = transport
            self._stop_event.clear()
            self._start_threads()
            self._state = PortState.OPEN
            logger.info(f"Opened {self.name} with {self._bufferflow.name} buffer flow")

    def close(self) -> None:
        """Stop the buffer flow and I/O threads, then close the transport.

        A writer blocked on a full device buffer is released by wiping the
        local buffer; nothing still staged is sent.
        """
        with self._state_lock:
            if self._state == PortState.CLOSED:
                return

            logger.info(f"Closing {self.name}...")
            self._stop_event.set()

            assert self._bufferflow is not None
            self._bufferflow.close()
            self._bufferflow.local_buffer_wipe()

            for thread in (self._writer_thread, self._reader_thread):
                if thread and thread.is_alive():
                    thread.join(timeout=5.0)
                    if thread.is_alive():
                        logger.warning(f"{thread.name} did not stop cleanly")
            self._writer_thread = None
            self._reader_thread = None

            if self._transport:
                self._transport.close()
                self._transport = None

            self._state = PortState.CLOSED
            logger.info(f"Closed {self.name}")

    # ========================================================================
    # Sending
    # ========================================================================

    def send(self, submission: str, id: str = "") -> int:
        """Submit command text for sending.

        Realtime directives (pause, resume, reset) are written immediately and
        also applied to the buffer flow. Everything else is broken into
        atomic commands and staged for the writer thread.

        Args:
            submission: One or more lines of command text
            id: Correlation id reported back in completion events

        Returns:
            Number of commands staged (0 for realtime or fully consumed directives)

        Raises:
            PortStateError: If the port is not open
            SerialIOError: If writing a realtime directive fails
        """
        bufferflow = self._require_open()

        if bufferflow.see_if_specific_commands_should_skip_buffer(submission):
            if bufferflow.see_if_specific_commands_should_pause_buffer(submission):
                bufferflow.pause()
            if bufferflow.see_if_specific_commands_should_unpause_buffer(submission):
                bufferflow.unpause()
            if bufferflow.see_if_specific_commands_should_wipe_buffer(submission):
                bufferflow.local_buffer_wipe()

            logger.debug(f"Skipping buffer for realtime cmd {submission!r}")
            self.write_direct(submission.encode("ascii", errors="replace"))
            return 0

        commands = bufferflow.break_apart_commands(submission)
        for cmd in commands:
            with self._items_lock:
                self._items_in_buffer += 1
                self._idle.clear()
            self._staged.put((cmd, id))

        logger.debug(f"Staged {len(commands)} commands on {self.name}, itemsInBuffer: {self.items_in_buffer}")
        return len(commands)

    def write_direct(self, data: bytes) -> int:
        """Write bytes to the device now, bypassing the buffer flow.

        Raises:
            SerialIOError: If the port is closed or the write fails
        """
        transport = self._transport
        if transport is None:
            raise SerialIOError(f"Port {self.name} is not open")
        return transport.write_bytes(data)

    def drain_staged(self) -> int:
        """Discard staged commands that the writer has not taken yet.

        Returns:
            Number of commands discarded
        """
        count = 0
        while True:
            try:
                cmd, id = self._staged.get_nowait()
            except queue.Empty:
                break
            logger.debug(f"Consuming staged cmd {cmd!r} (id={id})")
            with self._items_lock:
                self._items_in_buffer -= 1
            count += 1
        self._mark_idle_if_drained()
        return count

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every staged command has been written or dropped.

        Returns:
            True if the writer went idle, False on timeout
        """
        return self._idle.wait(timeout=timeout)

    def _mark_idle_if_drained(self) -> None:
        with self._items_lock:
            if self._items_in_buffer == 0 and not self._writer_busy:
                self._idle.set()

    # ========================================================================
    # State
    # ========================================================================

    @property
    def items_in_buffer(self) -> int:
        with self._items_lock:
            return self._items_in_buffer

    @property
    def state(self) -> PortState:
        return self._state

    def is_open(self) -> bool:
        return (
            self._state == PortState.OPEN
            and self._transport is not None
            and self._transport.is_open
        )

    @property
    def bufferflow(self) -> Optional[Bufferflow]:
        return self._bufferflow

    def _require_open(self) -> Bufferflow:
        if self._state != PortState.OPEN or self._bufferflow is None:
            raise PortStateError(f"Port {self.name} is not open")
        return self._bufferflow

    # ========================================================================
    # Internal Helpers: I/O Threads
    # ========================================================================

    def _start_threads(self) -> None:
        self._writer_thread = threading.Thread(
            target=self._writer_loop,
            name=f"PortWriter-{self.name}",
            daemon=True,
        )
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            name=f"PortReader-{self.name}",
            daemon=True,
        )
        self._writer_thread.start()
        self._reader_thread.start()
        logger.debug(f"Started writer and reader threads for {self.name}")

    def _writer_loop(self) -> None:
        """Hand staged commands to the buffer flow and write those it allows."""
        logger.info(f"Writer loop started (thread {threading.get_ident()})")
        bufferflow = self._bufferflow
        transport = self._transport
        assert bufferflow is not None and transport is not None

        while not self._stop_event.is_set():
            try:
                cmd, id = self._staged.get(timeout=0.1)
            except queue.Empty:
                continue

            with self._items_lock:
                self._items_in_buffer -= 1
                self._writer_busy = True

            result = bufferflow.block_until_ready(cmd, id)
            if not result.proceed:
                logger.info(f"Not sending {cmd!r} (id={id}), buffer was wiped")
                self._writer_done()
                continue

            if self._stop_event.is_set():
                break

            try:
                transport.write_text(result.rewritten or cmd)
            except SerialIOError as e:
                message = f"Error writing to {self.name} {e}"
                logger.error(message)
                self._sink.publish(PortError(message))
                break
            self._writer_done()

        # Nothing more will be written; release anyone waiting for idle
        with self._items_lock:
            self._writer_busy = False
        self._idle.set()
        logger.info("Writer loop stopped")

    def _writer_done(self) -> None:
        with self._items_lock:
            self._writer_busy = False
        self._mark_idle_if_drained()

    def _reader_loop(self) -> None:
        """Feed device output to the buffer flow."""
        logger.info(f"Reader loop started (thread {threading.get_ident()})")
        bufferflow = self._bufferflow
        transport = self._transport
        assert bufferflow is not None and transport is not None

        while not self._stop_event.is_set():
            try:
                data = transport.read_available()
            except SerialIOError as e:
                if self._stop_event.is_set():
                    break
                message = f"Error reading from {self.name} {e}"
                logger.error(message)
                self._sink.publish(PortError(message))
                break

            if not data:
                continue

            try:
                text = data.decode("ascii", errors="replace")
                bufferflow.on_incoming_data(text)
                if not bufferflow.is_buffer_globally_sending_back_incoming_data():
                    self._sink.publish(LineData(self.name, text))
            except Exception as e:
                logger.error(f"Error in reader loop: {e}", exc_info=True)
                # Don't crash thread on transient errors
                time.sleep(0.1)

        logger.info("Reader loop stopped")
