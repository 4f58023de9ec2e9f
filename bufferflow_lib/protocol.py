"""Wire protocol constants and patterns for supported motion-control firmware.

Each firmware dialect gets its own block of constants. Buffer flow variants
read their capacity, line patterns and directive characters from here.
"""

import re
from typing import Final

# ============================================================================
# Line Termination
# ============================================================================

# Commands are sent to the device terminated with LF
COMMAND_TERMINATOR: Final[str] = "\n"

# Device output lines end in LF, CRLF or a doubled LF
RE_NEWLINE: Final[re.Pattern[str]] = re.compile(r"\r?\n{1,2}")

# ============================================================================
# Comment Stripping
# ============================================================================

# Parenthesized G-code comment: "G1 X1 (move to start)"
RE_PAREN_COMMENT: Final[re.Pattern[str]] = re.compile(r"\(.*?\)")

# Semicolon comment running to end of line: "G1 X1 ; move to start"
RE_SEMICOLON_COMMENT: Final[re.Pattern[str]] = re.compile(r";.*")

RE_WHITESPACE: Final[re.Pattern[str]] = re.compile(r"\s+")

# ============================================================================
# Synthetic Directives (handled on the host, never sent to the device)
# ============================================================================

DIRECTIVE_INIT: Final[str] = "*init*"  # Replay last firmware banner to clients
DIRECTIVE_STATUS: Final[str] = "*status*"  # Replay last status line to clients
DIRECTIVE_WIPE: Final[str] = "%"  # Wipe the local buffer, do not forward

# ============================================================================
# Realtime Control Characters
# ============================================================================

CTRL_PAUSE: Final[str] = "!"  # Feed hold
CTRL_RESUME: Final[str] = "~"  # Cycle start / resume
CTRL_RESET: Final[str] = "\x18"  # Ctrl-X soft reset

# ============================================================================
# Repetier Firmware
# ============================================================================

# Repetier serial receive buffer holds 127 bytes of unacknowledged commands
REPETIER_BUFFER_MAX: Final[int] = 127

# Position query, also used by the background status poller
REPETIER_STATUS_QUERY: Final[str] = "M114"

# Seconds between background status queries
REPETIER_STATUS_INTERVAL: Final[float] = 2.0

# Command acknowledged
REPETIER_RE_OK: Final[re.Pattern[str]] = re.compile(r"^ok$")

# Command rejected
REPETIER_RE_ERROR: Final[re.Pattern[str]] = re.compile(r"^error")

# Boot banner (device reset, all queued commands lost)
REPETIER_RE_INIT: Final[re.Pattern[str]] = re.compile(r"Repetier")

# Status report in answer to M114: "ok C: X:0.00 Y:0.00 Z:0.00 E:0.00"
REPETIER_RE_STATUS: Final[re.Pattern[str]] = re.compile(r"^(ok C:|ok X:)")

# Realtime characters written immediately, bypassing the buffer
REPETIER_RE_SKIP_BUFFER: Final[re.Pattern[str]] = re.compile(r"[!~]|\x18")

REPETIER_RE_PAUSE_BUFFER: Final[re.Pattern[str]] = re.compile(r"[!]")

REPETIER_RE_UNPAUSE_BUFFER: Final[re.Pattern[str]] = re.compile(r"[~]")

REPETIER_RE_WIPE_BUFFER: Final[re.Pattern[str]] = re.compile(r"\x18")

# ============================================================================
# Serial Defaults
# ============================================================================

DEFAULT_BAUD: Final[int] = 115200

# Read timeout for the port reader loop (seconds)
DEFAULT_READ_TIMEOUT: Final[float] = 0.1

# Maximum bytes pulled from the port per read
READ_CHUNK_SIZE: Final[int] = 1024
