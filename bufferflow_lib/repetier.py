"""Buffer flow for Repetier firmware.

Repetier acknowledges each command with "ok" (or "error..."), announces a
reboot with a banner containing "Repetier", and answers the M114 position
query with a single "ok C: X:.. Y:.." line, which is a status report rather
than an acknowledgement of a queued command.
"""

from bufferflow_lib import protocol
from bufferflow_lib.bufferflow import Bufferflow


class RepetierBufferflow(Bufferflow):
    """Character-counting flow control for a 127 byte Repetier receive buffer."""

    name = "repetier"

    buffer_max = protocol.REPETIER_BUFFER_MAX

    status_query = protocol.REPETIER_STATUS_QUERY
    status_interval_s = protocol.REPETIER_STATUS_INTERVAL

    re_ok = protocol.REPETIER_RE_OK
    re_error = protocol.REPETIER_RE_ERROR
    re_init = protocol.REPETIER_RE_INIT
    re_status = protocol.REPETIER_RE_STATUS

    re_skip_buffer = protocol.REPETIER_RE_SKIP_BUFFER
    re_pause_buffer = protocol.REPETIER_RE_PAUSE_BUFFER
    re_unpause_buffer = protocol.REPETIER_RE_UNPAUSE_BUFFER
    re_wipe_buffer = protocol.REPETIER_RE_WIPE_BUFFER

    # Every Repetier command gets a response
    re_no_response = None
