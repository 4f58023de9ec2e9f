"""Line assembly over streaming device output and command text cleanup."""

import logging
import re
from typing import List

from bufferflow_lib import protocol

logger = logging.getLogger(__name__)


class LineAssembler:
    """Incremental line assembler over a streaming text source.

    Text arrives in arbitrary chunks. feed() returns every line completed so
    far and keeps the trailing partial fragment for the next call, so any
    chunking of a stream produces the same lines as feeding it whole.

    Not thread-safe; owned by the single receiver path.
    """

    def __init__(self, newline: "re.Pattern[str]" = protocol.RE_NEWLINE) -> None:
        self._newline = newline
        self._pending = ""

    def feed(self, data: str) -> List[str]:
        """Append data and return the complete lines it produced.

        Args:
            data: Decoded text received from the device

        Returns:
            Completed lines without terminators, oldest first (may be empty)
        """
        self._pending += data

        fragments = self._newline.split(self._pending)
        if len(fragments) < 2:
            # No line boundary yet, keep everything for the next call
            return []

        self._pending = fragments[-1]
        # A doubled terminator split across two chunks leaves an empty
        # fragment; blank lines carry nothing, so drop them everywhere
        return [line for line in fragments[:-1] if line]

    @property
    def pending(self) -> str:
        """Text received but not yet resolved into a complete line."""
        return self._pending

    def reset(self) -> None:
        self._pending = ""


def strip_comments(line: str) -> str:
    """Remove parenthesized and semicolon comments from a G-code line.

    Example: "G1 X1 (rapid) ; to start" -> "G1 X1 "
    """
    line = protocol.RE_PAREN_COMMENT.sub("", line)
    return protocol.RE_SEMICOLON_COMMENT.sub("", line)


def clean_command(line: str) -> str:
    """Strip comments and all whitespace from a single command line.

    Example: "G1 X1 ; to start" -> "G1X1"
    """
    return protocol.RE_WHITESPACE.sub("", strip_comments(line))


def split_submission(submission: str) -> List[str]:
    """Split a multi-line submission into raw lines (terminators removed)."""
    return re.split(r"\r?\n|\r", submission)
