"""Buffer flow controllers: per-connection protocol engines.

A buffer flow sits between a port's outbound writer and the device. It
counts bytes of unacknowledged command text on the device, blocks the
writer while the device receive buffer is full, classifies incoming lines
to release it again, and interprets out-of-band directives.

Firmware dialects subclass Bufferflow and supply their capacity, line
patterns and directive characters as class attributes; queue, gate and
line assembly logic is shared.
"""

import logging
import re
from typing import ClassVar, List, Optional, Protocol

from bufferflow_lib import parsing, protocol
from bufferflow_lib.command_queue import CommandQueue
from bufferflow_lib.events import EventSink
from bufferflow_lib.models import (
    BlockResult,
    CommandComplete,
    ConnectionSnapshot,
    LineData,
    ReleaseKind,
    WipedQueue,
)
from bufferflow_lib.pause_gate import PauseGate
from bufferflow_lib.status_poller import StatusPoller

logger = logging.getLogger(__name__)


class PortLike(Protocol):
    """What a buffer flow needs from the port that owns it."""

    @property
    def name(self) -> str:
        """Port display name used in event payloads."""
        ...

    @property
    def items_in_buffer(self) -> int:
        """Commands accepted by the port but not yet handed to the buffer flow."""
        ...

    def write_direct(self, data: bytes) -> int:
        """Write bytes to the device immediately, bypassing the buffer flow."""
        ...

    def drain_staged(self) -> int:
        """Discard staged, unwritten commands. Returns how many were dropped."""
        ...


class Bufferflow:
    """Character-counting buffer flow shared by all firmware variants.

    Subclasses set the class attributes below. A pattern left as None never
    matches.
    """

    name: ClassVar[str] = "base"

    # Device receive buffer size in bytes
    buffer_max: ClassVar[int] = protocol.REPETIER_BUFFER_MAX

    # Status query written by the background poller, None disables polling
    status_query: ClassVar[Optional[str]] = None
    status_interval_s: ClassVar[float] = protocol.REPETIER_STATUS_INTERVAL

    re_ok: ClassVar[Optional["re.Pattern[str]"]] = None
    re_error: ClassVar[Optional["re.Pattern[str]"]] = None
    re_init: ClassVar[Optional["re.Pattern[str]"]] = None
    re_status: ClassVar[Optional["re.Pattern[str]"]] = None

    re_skip_buffer: ClassVar[Optional["re.Pattern[str]"]] = None
    re_pause_buffer: ClassVar[Optional["re.Pattern[str]"]] = None
    re_unpause_buffer: ClassVar[Optional["re.Pattern[str]"]] = None
    re_wipe_buffer: ClassVar[Optional["re.Pattern[str]"]] = None
    re_no_response: ClassVar[Optional["re.Pattern[str]"]] = None

    def __init__(
        self,
        port_name: str,
        sink: EventSink,
        port: Optional[PortLike] = None,
        start_poller: bool = True,
        buffer_max: Optional[int] = None,
    ) -> None:
        """Initialize buffer flow for one open connection.

        Args:
            port_name: Port display name used in event payloads
            sink: Receives classified events (completions, lines, wipes)
            port: Owning port. Needed for the status poller and to drain
                staged commands on a wipe. Optional for standalone use.
            start_poller: Start the background status poller if the variant
                defines a status query and a port is attached.
            buffer_max: Override the variant's device buffer size in bytes
        """
        if buffer_max is not None:
            if buffer_max <= 0:
                raise ValueError(f"buffer_max must be positive, got {buffer_max}")
            self.buffer_max = buffer_max

        self.port_name = port_name
        self._sink = sink
        self._port = port

        self._queue = CommandQueue()
        self._gate = PauseGate()
        self._lines = parsing.LineAssembler()
        self._snapshot = ConnectionSnapshot()
        self._manual_paused = False

        self._poller: Optional[StatusPoller] = None
        if start_poller and port is not None and self.status_query:
            query = (self.status_query + protocol.COMMAND_TERMINATOR).encode("ascii")
            self._poller = StatusPoller(
                write=port.write_direct,
                query=query,
                interval_s=self.status_interval_s,
                port_name=port_name,
                sink=sink,
            )
            self._poller.start()

        logger.info(f"Initting {self.name} buffer flow on {port_name} (buffer max {self.buffer_max})")

    # ========================================================================
    # Sender Path
    # ========================================================================

    def block_until_ready(self, cmd: str, id: str) -> BlockResult:
        """Wait until the device can take `cmd`, then record it as in flight.

        Blocks only while the gate is paused, i.e. after a previous command
        filled the device buffer or a pause directive arrived. The command
        that crosses the capacity threshold is still sent; the next one waits.

        Args:
            cmd: Atomic command text including terminator
            id: Correlation id echoed back in the completion event

        Returns:
            BlockResult(True, True, rewritten) to send, or
            BlockResult(False, False, "") if a wipe cancelled the send. In the
            cancelled case the caller must not transmit `cmd`.
        """
        release = self._gate.wait_if_paused()
        if release is ReleaseKind.WIPE:
            logger.info(f"Send of {cmd!r} (id={id}) cancelled by buffer wipe")
            return BlockResult(False, False, "")

        with self._gate:
            self._queue.push(cmd, id)
            total = self._queue.total_bytes()
            logger.debug(f"New line length: {len(cmd)}, buffer size increased to: {total}")

            if total >= self.buffer_max:
                self._gate.set_paused(True)
                logger.info(
                    f"Buffer full ({total}/{self.buffer_max} bytes) - "
                    "next command will wait for space"
                )

        ack = not self.see_if_specific_commands_return_no_response(cmd)
        return BlockResult(True, ack, self.rewrite_serial_data(cmd, id))

    def rewrite_serial_data(self, cmd: str, id: str) -> str:
        """Protocol-specific re-encoding of a command, "" to send it unchanged."""
        return ""

    # ========================================================================
    # Receiver Path
    # ========================================================================

    def on_incoming_data(self, data: str) -> None:
        """Classify complete lines of device output.

        Partial trailing text is kept for the next call. A failure while
        handling one line is logged and the remaining lines still processed.

        Args:
            data: Decoded chunk of device output, any size
        """
        lines = self._lines.feed(data)
        if not lines:
            return

        logger.debug(f"We have data lines to analyze. numLines: {len(lines)}")
        for line in lines:
            try:
                self._classify_line(line)
            except Exception as e:
                logger.error(f"Error classifying line {line!r}: {e}", exc_info=True)

            self._sink.publish(LineData(self.port_name, line + protocol.COMMAND_TERMINATOR))

    def _classify_line(self, line: str) -> None:
        if self._matches(self.re_ok, line) or self._matches(self.re_error, line):
            self._on_command_done(line)
        elif self._matches(self.re_init, line):
            self._on_firmware_banner(line)
        elif self._matches(self.re_status, line):
            # Every status line is forwarded, even if unchanged
            self._snapshot.last_status = line

    def _on_command_done(self, line: str) -> None:
        """Handle an "ok" or "error" response to the oldest queued command."""
        kind = "Complete" if self._matches(self.re_ok, line) else "Error"

        with self._gate:
            polled = None
            if self._queue.count_of_items() > 0:
                polled = self._queue.poll()
            else:
                logger.error(
                    f"Got {line!r} with an empty command queue; "
                    "nothing to acknowledge, ignoring"
                )
            buf_size = self._queue.total_bytes()

            # A manual pause holds until unpause(), whatever the buffer level
            if buf_size < self.buffer_max and self._gate.get_paused() and not self._manual_paused:
                self._gate.set_paused(False, ReleaseKind.RESUME)
                logger.debug("Buffer has room again, unpaused")

        if polled is None:
            return

        text, id = polled
        if kind == "Error":
            logger.warning(f"Error response received: {text!r}, id: {id}")
        self._sink.publish(CommandComplete(kind, id, self.port_name, buf_size, text))
        logger.debug(f"Buffer decreased to itemCnt: {self._queue.count_of_items()}, lenOfBuf: {buf_size}")

    def _on_firmware_banner(self, line: str) -> None:
        """Device rebooted: nothing queued before now will be acknowledged."""
        logger.info(f"Firmware banner received, wiping buffer: {line!r}")
        self.local_buffer_wipe()

        with self._gate:
            if self._gate.get_paused():
                self._gate.set_paused(False, ReleaseKind.WIPE)

        self._snapshot.firmware_version = line

    # ========================================================================
    # Preprocessing and Directives
    # ========================================================================

    def break_apart_commands(self, cmd: str) -> List[str]:
        """Split a multi-line submission into atomic, cleaned commands.

        Comments and whitespace are removed. Synthetic directives (*init*,
        *status*, %) are handled here and not returned.

        Args:
            cmd: Raw submission, possibly many lines

        Returns:
            Commands with trailing terminator, in submission order
        """
        logger.debug(f"Command before break-apart: {cmd!r}")

        final_cmds: List[str] = []
        for raw in parsing.split_submission(cmd):
            item = parsing.clean_command(raw)

            if not item:
                continue
            elif item == protocol.DIRECTIVE_INIT:
                self._sink.publish(LineData(
                    self.port_name, self._snapshot.firmware_version + protocol.COMMAND_TERMINATOR
                ))
            elif item == protocol.DIRECTIVE_STATUS:
                self._sink.publish(LineData(
                    self.port_name, self._snapshot.last_status + protocol.COMMAND_TERMINATOR
                ))
            elif item == self.status_query:
                logger.debug(f"Status query queued: {item!r}")
                final_cmds.append(item + protocol.COMMAND_TERMINATOR)
            elif item == protocol.DIRECTIVE_WIPE:
                logger.info(f"Wiping {self.name} buffer flow")
                self.local_buffer_wipe()
            else:
                final_cmds.append(item + protocol.COMMAND_TERMINATOR)

        logger.debug(f"Final array of cmds after break-apart: {final_cmds}")
        return final_cmds

    def see_if_specific_commands_should_skip_buffer(self, cmd: str) -> bool:
        """True if cmd holds a realtime character sent directly to the device."""
        return self._matches(self.re_skip_buffer, cmd)

    def see_if_specific_commands_should_pause_buffer(self, cmd: str) -> bool:
        return self._matches(self.re_pause_buffer, cmd)

    def see_if_specific_commands_should_unpause_buffer(self, cmd: str) -> bool:
        return self._matches(self.re_unpause_buffer, cmd)

    def see_if_specific_commands_should_wipe_buffer(self, cmd: str) -> bool:
        return self._matches(self.re_wipe_buffer, cmd)

    def see_if_specific_commands_return_no_response(self, cmd: str) -> bool:
        """True if the device never acknowledges cmd."""
        return self._matches(self.re_no_response, cmd)

    @staticmethod
    def _matches(pattern: Optional["re.Pattern[str]"], text: str) -> bool:
        return pattern is not None and pattern.search(text) is not None

    # ========================================================================
    # Pause / Wipe
    # ========================================================================

    def pause(self) -> None:
        """Pause sending; the next block_until_ready() call waits."""
        self._gate.set_paused(True)
        logger.info("Paused buffer on next block_until_ready() call")

    def unpause(self) -> None:
        """Unpause, ending any manual pause, and let a waiting sender proceed."""
        with self._gate:
            self._manual_paused = False
            self._gate.set_paused(False, ReleaseKind.RESUME)
        logger.info("Unpaused buffer")

    def get_paused(self) -> bool:
        return self._gate.get_paused()

    def get_manual_paused(self) -> bool:
        """User-initiated pause flag.

        While set, acknowledgements that free device buffer space do not
        unpause the gate; only unpause() or a wipe does.
        """
        return self._manual_paused

    def set_manual_paused(self, is_paused: bool) -> None:
        with self._gate:
            self._manual_paused = is_paused

    def clear_out_semaphore(self) -> int:
        """Discard stale releases so the next wait truly blocks."""
        return self._gate.drain_signal()

    def release_lock(self) -> None:
        """Clear the command queue and cancel any blocked sender."""
        logger.info(f"Lock being released in {self.name} buffer")
        with self._gate:
            cleared = self._queue.clear()
            self._manual_paused = False
            self._gate.set_paused(False, ReleaseKind.WIPE)
        logger.debug(f"Released lock, {cleared} queued commands discarded")

    def local_buffer_wipe(self) -> None:
        """Wipe the local buffer without forwarding anything to the device.

        Drains commands staged on the port but not yet written, clears the
        queue, cancels a blocked sender and reports the wipe to the sink.
        """
        logger.info(f"Wiping {self.name} buffer on {self.port_name} (not sent to controller)")

        drained = self._port.drain_staged() if self._port is not None else 0
        logger.debug(f"Done consuming staged cmds. count: {drained}")

        self.release_lock()

        qcnt = self._port.items_in_buffer if self._port is not None else 0
        logger.info(f"itemsInBuffer: {qcnt}")
        self._sink.publish(WipedQueue(qcnt, self.port_name))

    # ========================================================================
    # Capabilities and Lifecycle
    # ========================================================================

    def is_buffer_globally_sending_back_incoming_data(self) -> bool:
        """True if this buffer flow publishes incoming lines itself."""
        return True

    def close(self) -> None:
        """Stop the status poller. Called when the port closes."""
        if self._poller is not None:
            logger.info("Stopping the status query loop")
            self._poller.stop()
            self._poller = None

    @property
    def snapshot(self) -> ConnectionSnapshot:
        """Latest firmware banner and status line seen on this connection."""
        return self._snapshot

    @property
    def queue(self) -> CommandQueue:
        return self._queue

    @property
    def gate(self) -> PauseGate:
        return self._gate


class DefaultBufferflow(Bufferflow):
    """Passthrough buffer flow: no accounting, never blocks.

    Incoming data is not classified; the port republishes raw chunks itself.
    """

    name = "default"

    def block_until_ready(self, cmd: str, id: str) -> BlockResult:
        return BlockResult(True, True, "")

    def on_incoming_data(self, data: str) -> None:
        pass

    def break_apart_commands(self, cmd: str) -> List[str]:
        return [cmd]

    def is_buffer_globally_sending_back_incoming_data(self) -> bool:
        return False
