"""Background periodic status query, independent of buffer accounting."""

import logging
import threading
from typing import Callable, Optional

from bufferflow_lib.errors import SerialIOError
from bufferflow_lib.events import EventSink
from bufferflow_lib.models import PortError

logger = logging.getLogger(__name__)


class StatusPoller:
    """Writes a status query directly to the port on a fixed interval.

    Queries bypass the command queue and pause gate: they are fire-and-forget
    and the device answers them with a status report, not an "ok". A write
    failure stops the poller and is reported to the sink; the port itself is
    left open.
    """

    def __init__(
        self,
        write: Callable[[bytes], int],
        query: bytes,
        interval_s: float,
        port_name: str,
        sink: EventSink,
    ) -> None:
        """Initialize poller (does not start it).

        Args:
            write: Direct write to the transport, raising SerialIOError on failure
            query: Bytes to write each tick (e.g. b"M114\\n")
            interval_s: Seconds between queries
            port_name: Port display name for diagnostics
            sink: Where write failures are reported
        """
        self._write = write
        self._query = query
        self._interval_s = interval_s
        self._port_name = port_name
        self._sink = sink

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            name=f"StatusPoller-{self._port_name}",
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"Started status poller every {self._interval_s}s on {self._port_name}")

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the poll loop to exit and join it."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Status poller did not stop cleanly")
        self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _poll_loop(self) -> None:
        logger.info(f"Status poller loop started (thread {threading.get_ident()})")

        # Event.wait doubles as a cancellable sleep
        while not self._stop_event.wait(timeout=self._interval_s):
            try:
                sent = self._write(self._query)
                logger.debug(f"Just wrote {sent} bytes to serial: {self._query!r}")
            except SerialIOError as e:
                message = f"Error writing to {self._port_name} {e}"
                logger.error(message)
                self._sink.publish(PortError(message))
                break

        logger.info("Status poller loop stopped")
