"""Custom exceptions for the bufferflow library."""


class BufferflowError(Exception):
    """Base exception for all bufferflow library errors."""

    pass


class SerialIOError(BufferflowError):
    """Raised when serial communication fails (port closed, write error, etc)."""

    pass


class UnknownBufferAlgorithm(BufferflowError):
    """Raised when a buffer algorithm name is not in the registry."""

    pass


class PortStateError(BufferflowError):
    """Raised when a port operation is not valid in the port's current state."""

    pass
